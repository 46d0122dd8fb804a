from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel

from honestwatch.config import INCIDENTS_READ_LIMIT
from honestwatch.routes._input_norm import norm_limit
from honestwatch.store import StoreUnavailableError

logger = logging.getLogger(__name__)

router = APIRouter()


class LastSyncOut(BaseModel):
    trigger: Optional[str] = None
    started_at: Optional[int] = None
    finished_at: Optional[int] = None
    synced: Optional[int] = None
    pruned: Optional[int] = None
    error: Optional[str] = None


class FetchPoliceDataOut(BaseModel):
    message: str
    sync: LastSyncOut


class SyncStatusOut(BaseModel):
    state: str
    next_sync_due_at: Optional[int] = None
    sync_count: int
    last_sync: LastSyncOut
    backfill: Optional[dict[str, Any]] = None


@router.get("/api/incidents")
def api_incidents(request: Request, limit: Optional[str] = None):
    """最近的 StoredIncident（timestamp desc），条数上限 INCIDENTS_READ_LIMIT；含沙盒记录，由消费方按 isMockedData 过滤。"""
    n = norm_limit("limit", limit, INCIDENTS_READ_LIMIT, INCIDENTS_READ_LIMIT)
    store = request.state.store
    try:
        return store.list_recent(n)
    except StoreUnavailableError as e:
        logger.error("error fetching incidents from store: %s", e)
        raise HTTPException(status_code=500, detail="Database error")


@router.get("/api/fetch-police-data", response_model=FetchPoliceDataOut)
def api_fetch_police_data(request: Request):
    """手动触发一次周期外 live sync（含 prune）；同步失败也返回 200，错误写在 sync.error。"""
    scheduler = request.state.scheduler
    result = scheduler.run_live_sync(trigger="manual")
    return {"message": "Sync triggered successfully!", "sync": result}


@router.get("/api/sync-status", response_model=SyncStatusOut)
def api_sync_status(request: Request):
    return request.state.scheduler.status()
