from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel

from honestwatch.routes._input_norm import parse_json_object
from honestwatch.sandbox_logic import inject_mock_incident
from honestwatch.store import StoreUnavailableError

logger = logging.getLogger(__name__)

router = APIRouter()


class SandboxInjectOut(BaseModel):
    message: str
    result: dict[str, Any]


@router.post("/api/test-sandbox/inject", response_model=SandboxInjectOut)
async def api_test_sandbox_inject(request: Request):
    """注入一条（可能故意损坏的）incident：打分、标 isMockedData、mock_ 前缀 key 写入，返回完整记录。
    body 不是合法 JSON 或不是 object -> 400；字段本身不做 schema 校验，交给评分。"""
    candidate = parse_json_object(await request.body())
    store = request.state.store
    try:
        stored = inject_mock_incident(store, candidate)
    except StoreUnavailableError as e:
        logger.error("error injecting mock data: %s", e)
        raise HTTPException(status_code=500, detail="Failed to inject Mock Data")
    return {"message": "Corrupt data injected and scored!", "result": stored}
