from __future__ import annotations

import logging

from honestwatch.config import RETENTION_DAYS, days_to_ms
from honestwatch.store import IncidentStore, StoreUnavailableError
from honestwatch.timestamps import now_ms as _now_ms

logger = logging.getLogger(__name__)


def retention_cutoff_ms(now_ms: int, retention_days: int = RETENTION_DAYS) -> int:
    return now_ms - days_to_ms(retention_days)


def prune_old_incidents(
    store: IncidentStore,
    now_ms: int | None = None,
    retention_days: int = RETENTION_DAYS,
) -> int:
    """
    删除 timestamp < now - retention_days 的记录（严格小于），一次批量删除。
    无命中为 no-op；store 不可用只记日志返回 0，下一轮收敛。
    与同步并发时被删后又被 upsert 回来是允许的。
    """
    now = _now_ms() if now_ms is None else now_ms
    cutoff = retention_cutoff_ms(now, retention_days)
    try:
        keys = store.keys_with_timestamp_before(cutoff)
        if not keys:
            logger.info("no incidents older than %s days to prune", retention_days)
            return 0
        deleted = store.delete_batch(keys)
    except StoreUnavailableError as e:
        logger.error("prune failed, store unavailable: %s", e)
        return 0
    logger.info("pruned %s incidents older than %s days", deleted, retention_days)
    return deleted
