from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from honestwatch.feed_client import FeedError
from honestwatch.store import InMemoryIncidentStore, StoreUnavailableError

# 2026-02-24 12:00:00 UTC
BASE_NOW_MS = 1771934400000
HOUR_MS = 60 * 60 * 1000
DAY_MS = 24 * HOUR_MS

_STOCKHOLM_WINTER = timezone(timedelta(hours=1))


def feed_datetime(ts_ms: int, single_digit_hour: bool = False) -> str:
    """按 feed 格式输出 "YYYY-MM-DD HH:MM:SS +01:00"。"""
    dt = datetime.fromtimestamp(ts_ms / 1000, tz=_STOCKHOLM_WINTER)
    hour = str(dt.hour) if single_digit_hour else f"{dt.hour:02d}"
    return f"{dt:%Y-%m-%d} {hour}:{dt:%M:%S} +01:00"


def make_incident(incident_id: Any = 1, now_ms: int = BASE_NOW_MS, **overrides: Any) -> dict[str, Any]:
    inc = {
        "id": incident_id,
        "name": "24 februari 12.00, Rån, Stockholm",
        "type": "Rån",
        "summary": "A robbery occurred at a downtown shop.",
        "description": "",
        "datetime": feed_datetime(now_ms - HOUR_MS),
        "location": {"name": "Stockholm", "gps": "59.3326,18.0649"},
        "url": "/aktuellt/handelser/2026/februari/24/ran-stockholm/",
    }
    inc.update(overrides)
    return inc


class FakeClock:
    def __init__(self, now_ms: int = BASE_NOW_MS) -> None:
        self.now_ms = now_ms
        self.sleeps: list[float] = []

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, seconds: float) -> None:
        self.now_ms += int(seconds * 1000)

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds)


class FakeFeedClient:
    """按日期返回预置事件；failing_days 中的日期抛 FeedError；latest_error 非空时 latest 抛错。"""

    feed_url = "https://feed.invalid/api/events"

    def __init__(
        self,
        latest: list[Any] | None = None,
        by_day: dict[str, list[Any]] | None = None,
        failing_days: set[str] | None = None,
    ) -> None:
        self.latest = latest or []
        self.by_day = by_day or {}
        self.failing_days = failing_days or set()
        self.latest_error: Exception | None = None
        self.calls: list[tuple[str, str | None]] = []
        self.closed = False

    def fetch_latest(self) -> list[Any]:
        self.calls.append(("latest", None))
        if self.latest_error is not None:
            raise self.latest_error
        return list(self.latest)

    def fetch_day(self, date_str: str) -> list[Any]:
        self.calls.append(("day", date_str))
        if date_str in self.failing_days:
            raise FeedError(f"upstream 503 for {date_str}")
        return list(self.by_day.get(date_str, []))

    def close(self) -> None:
        self.closed = True


class UnavailableStore(InMemoryIncidentStore):
    """所有操作抛 StoreUnavailableError。"""

    def upsert_merge(self, key, doc):
        raise StoreUnavailableError("store offline")

    def put(self, key, doc):
        raise StoreUnavailableError("store offline")

    def delete_batch(self, keys):
        raise StoreUnavailableError("store offline")

    def keys_with_timestamp_before(self, cutoff_ms):
        raise StoreUnavailableError("store offline")

    def list_recent(self, limit, exclude_mocked=False):
        raise StoreUnavailableError("store offline")
