from __future__ import annotations

import copy
from typing import Any

from honestwatch.config import SANDBOX_KEY_PREFIX
from honestwatch.integrity_logic import score_incident
from honestwatch.timestamps import feed_datetime_to_epoch_ms

# 派生字段：每次入库整体重算/覆盖，不参与 merge；调用方传入的同名字段一律丢弃
DERIVED_FIELDS = ("qa_integrity", "timestamp", "isMockedData")


def incident_key(incident_id: Any) -> str | None:
    """真实记录 key = str(id)；id 缺失/空返回 None（无法入库）。"""
    if incident_id is None or isinstance(incident_id, bool):
        return None
    if isinstance(incident_id, (dict, list)):
        return None
    key = str(incident_id).strip()
    return key or None


def is_sandbox_key(key: str) -> bool:
    return key.startswith(SANDBOX_KEY_PREFIX)


def sandbox_key(incident_id: str) -> str:
    return f"{SANDBOX_KEY_PREFIX}{incident_id}"


def strip_derived_fields(raw: dict[str, Any]) -> dict[str, Any]:
    return {k: copy.deepcopy(v) for k, v in raw.items() if k not in DERIVED_FIELDS}


def _merge_fields(existing: dict[str, Any], incoming: dict[str, Any]) -> dict[str, Any]:
    """字段级 merge：incoming 有的字段覆盖；两边都是 dict 时递归；incoming 没有的字段保留。"""
    out = copy.deepcopy(existing)
    for field, value in incoming.items():
        old = out.get(field)
        if isinstance(old, dict) and isinstance(value, dict):
            out[field] = _merge_fields(old, value)
        else:
            out[field] = copy.deepcopy(value)
    return out


def merge_incident_record(
    existing: dict[str, Any] | None, incoming: dict[str, Any]
) -> dict[str, Any]:
    """
    create-or-merge：existing 为 None 时直接取 incoming 副本。
    源字段按 _merge_fields 合并；DERIVED_FIELDS 在 incoming 中出现时整体替换（qa_integrity 不做部分更新），
    incoming 未带的派生字段（如真实记录没有 isMockedData）从结果中移除，避免沿用旧值。
    """
    if existing is None:
        return copy.deepcopy(incoming)
    source_existing = {k: v for k, v in existing.items() if k not in DERIVED_FIELDS}
    source_incoming = {k: v for k, v in incoming.items() if k not in DERIVED_FIELDS}
    merged = _merge_fields(source_existing, source_incoming)
    for field in DERIVED_FIELDS:
        if field in incoming:
            merged[field] = copy.deepcopy(incoming[field])
    return merged


def enrich_incident(raw: dict[str, Any], now_ms: int) -> tuple[dict[str, Any], int | None]:
    """
    normalize + score：返回 (enriched_doc, parsed_event_ms)。
    timestamp 解析失败回退 now_ms（保证留存查询不会漏掉该记录）。
    """
    source = strip_derived_fields(raw)
    event_ms = feed_datetime_to_epoch_ms(source.get("datetime"))
    doc = dict(source)
    doc["qa_integrity"] = score_incident(source, now_ms=now_ms)
    doc["timestamp"] = event_ms if event_ms is not None else now_ms
    return doc, event_ms


def build_stored_incident(raw: Any, now_ms: int) -> tuple[str, dict[str, Any]] | None:
    """feed 原始事件 -> (key, StoredIncident)；不可 key 或 key 落入沙盒命名空间时返回 None。"""
    if not isinstance(raw, dict):
        return None
    key = incident_key(raw.get("id"))
    if key is None or is_sandbox_key(key):
        return None
    doc, _ = enrich_incident(raw, now_ms)
    return key, doc
