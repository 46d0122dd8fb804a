from __future__ import annotations

import logging
import time
from typing import Any, Callable, Iterable

from honestwatch.config import BACKFILL_DAYS, BACKFILL_DELAY_SECONDS
from honestwatch.feed_client import FeedError
from honestwatch.incidents_logic import build_stored_incident
from honestwatch.store import IncidentStore
from honestwatch.timestamps import now_ms as _now_ms, utc_date_str

logger = logging.getLogger(__name__)


def upsert_incidents(
    store: IncidentStore,
    raw_events: Iterable[Any],
    now_ms: int | None = None,
) -> int:
    """逐条 normalize -> score -> merge upsert；无法 key 的记录跳过并告警。store 异常向上抛给周期处理。"""
    now = _now_ms() if now_ms is None else now_ms
    upserted = 0
    skipped = 0
    for raw in raw_events:
        built = build_stored_incident(raw, now)
        if built is None:
            skipped += 1
            continue
        key, doc = built
        store.upsert_merge(key, doc)
        upserted += 1
    if skipped:
        logger.warning("skipped %s feed events without usable id", skipped)
    return upserted


def sync_latest(store: IncidentStore, feed_client: Any, now_ms: int | None = None) -> int:
    """拉 latest 并入库；FeedError / StoreUnavailableError 由调用方（scheduler）捕获记录。"""
    logger.info("fetching latest incidents from %s", getattr(feed_client, "feed_url", "feed"))
    events = feed_client.fetch_latest()
    count = upsert_incidents(store, events, now_ms)
    logger.info("synced %s latest incidents", count)
    return count


def backfill_history(
    store: IncidentStore,
    feed_client: Any,
    days: int = BACKFILL_DAYS,
    delay_seconds: float = BACKFILL_DELAY_SECONDS,
    now_ms: int | None = None,
    sleep: Callable[[float], Any] = time.sleep,
    clock: Callable[[], int] | None = None,
    stop_requested: Callable[[], bool] | None = None,
) -> dict[str, Any]:
    """
    历史回填：每个 day-offset（1..days，UTC 日期）一次请求，请求后固定礼貌延迟。
    单日失败只记日志，不影响其余日期。stop_requested 返回 True 时提前结束。
    返回 {total, days_ok, days_failed}。
    """
    base_ms = _now_ms() if now_ms is None else now_ms
    get_now = clock or (lambda: base_ms)
    total = 0
    days_ok: list[str] = []
    days_failed: list[str] = []
    logger.info("backfilling incidents for the past %s days", days)
    for offset in range(1, days + 1):
        if stop_requested is not None and stop_requested():
            logger.info("backfill interrupted by stop request")
            break
        date_str = utc_date_str(base_ms, offset)
        try:
            events = feed_client.fetch_day(date_str)
            count = upsert_incidents(store, events, get_now())
            total += count
            days_ok.append(date_str)
            logger.info("fetched %s incidents for %s", count, date_str)
        except FeedError as e:
            days_failed.append(date_str)
            logger.warning("backfill fetch failed for %s: %s", date_str, e)
        except Exception:
            days_failed.append(date_str)
            logger.exception("backfill upsert failed for %s", date_str)
        if delay_seconds > 0:
            sleep(delay_seconds)
    logger.info("backfill complete, added/updated %s incidents (failed days=%s)", total, len(days_failed))
    return {"total": total, "days_ok": days_ok, "days_failed": days_failed}
