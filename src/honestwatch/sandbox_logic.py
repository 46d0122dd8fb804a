"""
QA 沙盒注入：调用方提交（可能故意损坏的）incident，走与真实入库相同的 normalize + score，
强制 isMockedData=true、key 加 mock_ 前缀、timestamp 加固定偏移后整体写入。
生产聚合（计数/地图/地区统计）必须过滤 isMockedData 记录。
"""
from __future__ import annotations

import logging
import uuid
from typing import Any

from honestwatch.config import SANDBOX_TIMESTAMP_BIAS_MS
from honestwatch.incidents_logic import enrich_incident, incident_key, sandbox_key
from honestwatch.store import IncidentStore
from honestwatch.timestamps import now_ms as _now_ms

logger = logging.getLogger(__name__)


def inject_mock_incident(
    store: IncidentStore,
    candidate: dict[str, Any],
    now_ms: int | None = None,
    bias_ms: int = SANDBOX_TIMESTAMP_BIAS_MS,
) -> dict[str, Any]:
    """返回写入后的完整记录；candidate 非 dict 时 raise ValueError（路由层转 400）。"""
    if not isinstance(candidate, dict):
        raise ValueError("incident body must be a JSON object")
    now = _now_ms() if now_ms is None else now_ms
    doc, _ = enrich_incident(candidate, now)
    caller_id = incident_key(candidate.get("id"))
    if caller_id is None:
        # 未给 id 时生成一个，保证 key 仍落在沙盒命名空间
        caller_id = uuid.uuid4().hex[:12]
        doc["id"] = caller_id
    doc["isMockedData"] = True
    doc["timestamp"] = doc["timestamp"] + bias_ms
    key = sandbox_key(caller_id)
    stored = store.put(key, doc)
    logger.info(
        "sandbox incident injected key=%s score=%s",
        key,
        stored["qa_integrity"]["score"],
    )
    return stored
