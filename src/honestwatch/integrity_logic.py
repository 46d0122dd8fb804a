from __future__ import annotations

from typing import Any, Iterable

from honestwatch.config import (
    ADMIN_PHRASES,
    DAY_MS,
    LOW_CONFIDENCE_THRESHOLD,
    STALE_EVENT_DAYS,
)
from honestwatch.timestamps import feed_datetime_to_epoch_ms, now_ms as _now_ms

# 四项独立计分，满分合计 100
GPS_POINTS = 30
NARRATIVE_POINTS = 30
NARRATIVE_SHORT_POINTS = 15
TEMPORAL_POINTS = 20
TEMPORAL_STALE_POINTS = 10
LOCATION_TAG_POINTS = 20

# 叙述长度阈值：> 15 才算完整
NARRATIVE_MIN_LEN = 15
GPS_NULL_SENTINEL = "0,0"

REASON_MISSING_GPS = "Missing GPS coordinates"
REASON_ADMIN_NOTICE = "Administrative notice (not a specific incident)"
REASON_SHORT_DESCRIPTION = "Very short description"
REASON_NO_DESCRIPTION = "No description at all"
REASON_INVALID_TIMESTAMP = "Invalid timestamp format"
REASON_FUTURE_EVENT = "Event date is in the future"
REASON_STALE_EVENT = "Event is significantly delayed/old"
REASON_MISSING_LOCATION_TAGS = "Missing proper location tags"


def _location_of(incident: dict[str, Any]) -> dict[str, Any]:
    loc = incident.get("location")
    return loc if isinstance(loc, dict) else {}


def _text_of(value: Any) -> str:
    return value if isinstance(value, str) else ""


def is_admin_notice(summary: str, admin_phrases: Iterable[str] | None = None) -> bool:
    """行政公告判定：小写 summary 含任一触发短语（短语本身按小写存储）。"""
    phrases = ADMIN_PHRASES if admin_phrases is None else admin_phrases
    lowered = summary.lower()
    return any(p.lower() in lowered for p in phrases if p)


def score_gps(incident: dict[str, Any]) -> tuple[int, str | None]:
    # 只做文本比较："0,0" 以外的任何非空值都给分，数值合法性由地图层自行判断
    gps = _location_of(incident).get("gps")
    if gps and gps != GPS_NULL_SENTINEL:
        return GPS_POINTS, None
    return 0, REASON_MISSING_GPS


def score_narrative(
    incident: dict[str, Any], admin_phrases: Iterable[str] | None = None
) -> tuple[int, str | None]:
    summary = _text_of(incident.get("summary"))
    description = _text_of(incident.get("description"))
    if is_admin_notice(summary, admin_phrases):
        return 0, REASON_ADMIN_NOTICE
    text_len = len(summary) + len(description)
    if text_len > NARRATIVE_MIN_LEN:
        return NARRATIVE_POINTS, None
    if text_len > 0:
        return NARRATIVE_SHORT_POINTS, REASON_SHORT_DESCRIPTION
    return 0, REASON_NO_DESCRIPTION


def score_temporal(incident: dict[str, Any], now_ms: int) -> tuple[int, str | None]:
    event_ms = feed_datetime_to_epoch_ms(incident.get("datetime"))
    if event_ms is None:
        return 0, REASON_INVALID_TIMESTAMP
    if event_ms > now_ms:
        return 0, REASON_FUTURE_EVENT
    if (now_ms - event_ms) / DAY_MS > STALE_EVENT_DAYS:
        return TEMPORAL_STALE_POINTS, REASON_STALE_EVENT
    return TEMPORAL_POINTS, None


def score_location_tags(incident: dict[str, Any]) -> tuple[int, str | None]:
    name = _location_of(incident).get("name")
    if isinstance(name, str) and name:
        return LOCATION_TAG_POINTS, None
    return 0, REASON_MISSING_LOCATION_TAGS


def score_incident(
    incident: Any,
    now_ms: int | None = None,
    admin_phrases: Iterable[str] | None = None,
) -> dict[str, Any]:
    """
    计算 qa_integrity：{score, reasons, isLowConfidence}。
    纯函数、不抛：缺字段/格式错误一律按 0 分处理并写 reason；reasons 按四项顺序，满分项不出现。
    """
    if not isinstance(incident, dict):
        incident = {}
    now = _now_ms() if now_ms is None else now_ms
    parts = (
        score_gps(incident),
        score_narrative(incident, admin_phrases),
        score_temporal(incident, now),
        score_location_tags(incident),
    )
    score = sum(points for points, _ in parts)
    reasons = [reason for _, reason in parts if reason]
    return {
        "score": score,
        "reasons": reasons,
        "isLowConfidence": score < LOW_CONFIDENCE_THRESHOLD,
    }
