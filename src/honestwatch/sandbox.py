from __future__ import annotations

import logging
import time
from threading import Lock
from typing import Optional

from fastapi import Request
from fastapi.responses import Response

from honestwatch.config import SANDBOX_RATE_LIMIT_PER_IP_PER_MIN

logger = logging.getLogger(__name__)

SANDBOX_PATH_PREFIX = "/api/test-sandbox/"

# 限流计数：(client_ip, minute_bucket) -> count
_RL_IP: dict[tuple[str, int], int] = {}
_RL_LOCK = Lock()


def _check_sandbox_rate_limit(request: Request, limit_per_min: int) -> Optional[Response]:
    """沙盒注入按 IP 每分钟限流；返回 None 表示通过，返回 Response 表示被限流。"""
    now_ts = time.time()
    minute_bucket = int(now_ts // 60)
    client_ip = request.client.host if request.client else "unknown"

    with _RL_LOCK:
        ip_key = (client_ip, minute_bucket)
        ip_count = _RL_IP.get(ip_key, 0)
        if ip_count >= limit_per_min:
            logger.warning("sandbox rate limited ip=%s", client_ip)
            return Response(status_code=429, content="rate limited", media_type="text/plain")
        _RL_IP[ip_key] = ip_count + 1

        # 清理旧 bucket（删除所有 bucket < minute_bucket-1 的 key）
        cutoff_bucket = minute_bucket - 1
        for k in [k for k in _RL_IP.keys() if k[1] < cutoff_bucket]:
            _RL_IP.pop(k, None)

    return None


def reset_rate_limits() -> None:
    with _RL_LOCK:
        _RL_IP.clear()


async def sandbox_middleware(request: Request, call_next):
    """共享 store/scheduler 挂到 request.state；沙盒路径先过 IP 限流。"""
    if request.url.path.startswith(SANDBOX_PATH_PREFIX):
        limit = getattr(request.app.state, "sandbox_rate_limit", SANDBOX_RATE_LIMIT_PER_IP_PER_MIN)
        rate_limit_response = _check_sandbox_rate_limit(request, limit)
        if rate_limit_response:
            return rate_limit_response

    request.state.store = request.app.state.store
    request.state.scheduler = request.app.state.scheduler
    return await call_next(request)
