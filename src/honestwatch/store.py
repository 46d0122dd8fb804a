# src/honestwatch/store.py
"""
incidents 文档仓库：按 key 存 StoredIncident。
pipeline 只依赖四个能力：merge upsert、整体写入、按 key 批量删除、按 timestamp 范围查询（排序 + limit）。
InMemoryIncidentStore 为进程内实现（单 Lock），要求 uvicorn --workers 1。
"""
from __future__ import annotations

import copy
from threading import Lock
from typing import Any, Iterable

from honestwatch.incidents_logic import merge_incident_record


class StoreUnavailableError(RuntimeError):
    """存储不可用（连接失败、超时等）；读路径映射为 500，写路径只记日志。"""


class IncidentStore:
    """存储接口；具体后端实现这些方法即可接入 pipeline。"""

    def upsert_merge(self, key: str, doc: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    def put(self, key: str, doc: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    def get(self, key: str) -> dict[str, Any] | None:
        raise NotImplementedError

    def delete_batch(self, keys: Iterable[str]) -> int:
        raise NotImplementedError

    def keys_with_timestamp_before(self, cutoff_ms: int) -> list[str]:
        raise NotImplementedError

    def list_recent(self, limit: int, exclude_mocked: bool = False) -> list[dict[str, Any]]:
        raise NotImplementedError


class InMemoryIncidentStore(IncidentStore):
    """进程内实现；所有方法返回副本，调用方修改不影响仓库内状态。"""

    def __init__(self) -> None:
        self._lock = Lock()
        # key -> StoredIncident
        self._docs: dict[str, dict[str, Any]] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._docs)

    def upsert_merge(self, key: str, doc: dict[str, Any]) -> dict[str, Any]:
        """不存在则创建；存在则字段级 merge（派生字段整体替换）。返回合并后的副本。"""
        with self._lock:
            existing = self._docs.get(key)
            merged = merge_incident_record(existing, doc)
            self._docs[key] = merged
            return copy.deepcopy(merged)

    def put(self, key: str, doc: dict[str, Any]) -> dict[str, Any]:
        """整体写入（覆盖旧文档，不 merge）。"""
        stored = copy.deepcopy(doc)
        with self._lock:
            self._docs[key] = stored
            return copy.deepcopy(stored)

    def get(self, key: str) -> dict[str, Any] | None:
        with self._lock:
            doc = self._docs.get(key)
            return copy.deepcopy(doc) if doc is not None else None

    def delete_batch(self, keys: Iterable[str]) -> int:
        """一次加锁内删除全部 key（原子批量）；不存在的 key 忽略。返回实际删除条数。"""
        deleted = 0
        with self._lock:
            for key in keys:
                if self._docs.pop(key, None) is not None:
                    deleted += 1
        return deleted

    def keys_with_timestamp_before(self, cutoff_ms: int) -> list[str]:
        """timestamp 严格小于 cutoff 的 key；缺 timestamp 的文档不会命中。"""
        with self._lock:
            return [
                key
                for key, doc in self._docs.items()
                if isinstance(doc.get("timestamp"), (int, float)) and doc["timestamp"] < cutoff_ms
            ]

    def list_recent(self, limit: int, exclude_mocked: bool = False) -> list[dict[str, Any]]:
        """按 timestamp desc 返回最多 limit 条；tie-breaker 为 key desc 保证稳定。
        exclude_mocked=True 时先剔除沙盒记录再截断，limit 全部留给真实数据。"""
        if limit <= 0:
            return []
        with self._lock:
            items = [(k, d) for k, d in self._docs.items() if not (exclude_mocked and d.get("isMockedData"))]
            items.sort(key=lambda kv: (kv[1].get("timestamp") or 0, kv[0]), reverse=True)
            return [copy.deepcopy(doc) for _, doc in items[:limit]]
