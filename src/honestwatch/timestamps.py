"""
警方 feed 时间字符串归一化：评分、入库 timestamp、overview 聚合统一走这里。
feed 原始格式 "2026-02-24 13:55:28 +01:00"，小时偶尔为一位数（"2026-02-24 9:05:00 +01:00"），
不改写直接交给 fromisoformat 会失败。
"""
from __future__ import annotations

import re
import time
from datetime import datetime, timezone
from typing import Any

_FEED_DATETIME_RE = re.compile(
    r"^(\d{4}-\d{2}-\d{2})\s+(\d{1,2}):(\d{2}):(\d{2})\s*([+-]\d{2}):?(\d{2})$"
)


def now_ms() -> int:
    return int(time.time() * 1000)


def normalize_feed_datetime(raw: Any) -> str | None:
    """
    把 feed 格式改写为 YYYY-MM-DDTHH:MM:SS±HH:MM（小时补零、offset 内无空格）。
    不匹配 feed 格式时返回 None；非字符串/空串也返回 None。
    """
    if not isinstance(raw, str):
        return None
    s = raw.strip()
    if not s:
        return None
    m = _FEED_DATETIME_RE.match(s)
    if not m:
        return None
    date_part, hh, mm, ss, off_h, off_m = m.groups()
    return f"{date_part}T{hh.zfill(2)}:{mm}:{ss}{off_h}:{off_m}"


def parse_feed_datetime(raw: Any) -> datetime | None:
    """
    解析为带时区的 datetime；失败返回 None（不抛）。
    - feed 格式：先 normalize 再 fromisoformat
    - 其他字符串：按 ISO8601 尝试（Z/z 视作 +00:00），无时区按 UTC
    """
    if not isinstance(raw, str):
        return None
    s = raw.strip()
    if not s:
        return None
    candidate = normalize_feed_datetime(s)
    if candidate is None:
        candidate = s[:-1] + "+00:00" if s.endswith(("Z", "z")) else s
    try:
        dt = datetime.fromisoformat(candidate)
    except (ValueError, TypeError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def feed_datetime_to_epoch_ms(raw: Any) -> int | None:
    dt = parse_feed_datetime(raw)
    if dt is None:
        return None
    try:
        return int(dt.timestamp() * 1000)
    except (OverflowError, OSError, ValueError):
        return None


def utc_date_str(ts_ms: int, days_back: int = 0) -> str:
    """epoch ms 往前 days_back 天的 UTC 日期 YYYY-MM-DD（backfill 的 DateTime 参数）。"""
    ts = ts_ms / 1000.0 - days_back * 86400
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d")
