from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Request

from honestwatch.config import INCIDENTS_READ_LIMIT
from honestwatch.stats_logic import build_incidents_overview
from honestwatch.store import StoreUnavailableError

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/api/stats")
def api_stats(request: Request):
    """真实数据概览（排除 isMockedData）：分数分布、类型、地区、24h / 星期分布、覆盖天数。"""
    store = request.state.store
    try:
        records = store.list_recent(INCIDENTS_READ_LIMIT, exclude_mocked=True)
    except StoreUnavailableError as e:
        logger.error("error fetching incidents for stats: %s", e)
        raise HTTPException(status_code=500, detail="Database error")
    return build_incidents_overview(records)
