from __future__ import annotations

import math
import re
from typing import Any

from honestwatch.config import DAY_MS
from honestwatch.timestamps import parse_feed_datetime

UNKNOWN_LABEL = "Okänd"
SCORE_BUCKETS = ("0-24", "25-49", "50-74", "75-100")
# feed 的 name 字段形如 "25 februari 15.00, Brand"，小时偶尔一位数
_NAME_TIME_RE = re.compile(r"\b(\d{1,2})\.(\d{2})\b")


def real_incidents(records: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """生产聚合一律排除沙盒记录。"""
    return [r for r in records if isinstance(r, dict) and not r.get("isMockedData")]


def _score_of(rec: dict[str, Any]) -> int:
    qa = rec.get("qa_integrity")
    if isinstance(qa, dict) and isinstance(qa.get("score"), (int, float)):
        return int(qa["score"])
    return 0


def _is_low_confidence(rec: dict[str, Any]) -> bool:
    qa = rec.get("qa_integrity")
    return bool(isinstance(qa, dict) and qa.get("isLowConfidence"))


def _score_bucket(score: int) -> str:
    if score < 25:
        return "0-24"
    if score < 50:
        return "25-49"
    if score < 75:
        return "50-74"
    return "75-100"


def region_of(rec: dict[str, Any]) -> str:
    """地区 = location.name 最后一个逗号分段（通常是län）。"""
    loc = rec.get("location")
    name = loc.get("name") if isinstance(loc, dict) else None
    if not isinstance(name, str) or not name:
        name = UNKNOWN_LABEL
    return name.split(",")[-1].strip()


def event_hour(rec: dict[str, Any]) -> int | None:
    """优先取 name 里的 HH.MM（事件发生时刻），否则取 datetime 在其自身 offset 下的小时。"""
    name = rec.get("name")
    if isinstance(name, str):
        m = _NAME_TIME_RE.search(name)
        if m:
            hour = int(m.group(1))
            if 0 <= hour <= 23:
                return hour
    dt = parse_feed_datetime(rec.get("datetime"))
    return dt.hour if dt is not None else None


def build_incidents_overview(records: list[dict[str, Any]]) -> dict[str, Any]:
    real = real_incidents(records)
    flagged = sum(1 for r in real if _is_low_confidence(r))

    score_distribution = {b: 0 for b in SCORE_BUCKETS}
    by_type: dict[str, int] = {}
    region_counts: dict[str, int] = {}
    region_score_totals: dict[str, int] = {}
    hours = [0] * 24
    weekdays = [0] * 7  # Monday = 0
    timestamps: list[int] = []

    for r in real:
        score = _score_of(r)
        score_distribution[_score_bucket(score)] += 1

        t = r.get("type")
        t = t if isinstance(t, str) and t else UNKNOWN_LABEL
        by_type[t] = by_type.get(t, 0) + 1

        region = region_of(r)
        region_counts[region] = region_counts.get(region, 0) + 1
        region_score_totals[region] = region_score_totals.get(region, 0) + score

        hour = event_hour(r)
        if hour is not None:
            hours[hour] += 1
        dt = parse_feed_datetime(r.get("datetime"))
        if dt is not None:
            weekdays[dt.weekday()] += 1

        ts = r.get("timestamp")
        if isinstance(ts, (int, float)):
            timestamps.append(int(ts))

    span_days = None
    if len(timestamps) >= 2:
        span_days = max(1, math.ceil((max(timestamps) - min(timestamps)) / DAY_MS))

    regions = [
        {
            "region": name,
            "count": count,
            # 四舍五入（.5 向上），不用 round() 的银行家舍入
            "avg_score": math.floor(region_score_totals[name] / count + 0.5),
        }
        for name, count in region_counts.items()
    ]
    regions.sort(key=lambda x: (-x["count"], x["region"]))
    region_integrity = sorted(regions, key=lambda x: (-x["avg_score"], x["region"]))

    return {
        "total": len(real),
        "verified": len(real) - flagged,
        "flagged": flagged,
        "score_distribution": score_distribution,
        "by_type": dict(sorted(by_type.items(), key=lambda kv: (-kv[1], kv[0]))),
        "regions": regions,
        "region_integrity": region_integrity,
        "hour_of_day": hours,
        "day_of_week": weekdays,
        "span_days": span_days,
    }
