"""
路由层统一入口校验：失败一律 HTTP 400，detail 形如 "invalid <field_name>"。
"""
from __future__ import annotations

import json
from typing import Any

from fastapi import HTTPException


def norm_limit(field: str, v: Any, default: int, max_value: int) -> int:
    """可选正整数：None/空 -> default；非整数或 <=0 -> 400；超过 max_value 截到 max_value。"""
    if v is None or (isinstance(v, str) and not v.strip()):
        return min(default, max_value)
    if isinstance(v, bool):
        raise HTTPException(status_code=400, detail=f"invalid {field}")
    try:
        n = int(v.strip()) if isinstance(v, str) else int(v)
    except (TypeError, ValueError):
        raise HTTPException(status_code=400, detail=f"invalid {field}")
    if n <= 0:
        raise HTTPException(status_code=400, detail=f"invalid {field}")
    return min(n, max_value)


def parse_json_object(raw: bytes, field: str = "incident body") -> dict[str, Any]:
    """请求体必须是合法 JSON 且为 object；否则 400。"""
    try:
        data = json.loads(raw)
    except ValueError:
        raise HTTPException(status_code=400, detail="invalid json body")
    if not isinstance(data, dict):
        raise HTTPException(status_code=400, detail=f"invalid {field}")
    return data
