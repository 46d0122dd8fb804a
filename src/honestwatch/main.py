# src/honestwatch/main.py
from __future__ import annotations

import logging
import os
import sys
import tempfile
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import FastAPI

from honestwatch.config import ENABLE_SCHEDULER, LOG_LEVEL, SANDBOX_RATE_LIMIT_PER_IP_PER_MIN
from honestwatch.feed_client import PoliceFeedClient
from honestwatch.routes.incidents import router as incidents_router
from honestwatch.routes.sandbox import router as sandbox_router
from honestwatch.routes.stats import router as stats_router
from honestwatch.sandbox import sandbox_middleware
from honestwatch.scheduler import SyncScheduler
from honestwatch.store import IncidentStore, InMemoryIncidentStore

if sys.platform == "win32":
    fcntl = None
else:
    import fcntl

logger = logging.getLogger(__name__)

# 进程持有 OS 文件锁（非阻塞独占 flock）；进程退出锁自动释放。
_SINGLE_WORKER_LOCK_FILENAME = "honestwatch_single_worker.lock"
_SINGLE_WORKER_LOCK_FD: Optional[int] = None

_SINGLE_WORKER_ERROR_MSG = (
    "Honest Watchdog requires --workers 1. Multiple workers use separate process memory and would each run "
    "their own sync scheduler against the upstream feed. "
    "Start with: python -m uvicorn honestwatch.main:app --host 127.0.0.1 --port 3030 --workers 1"
)


def _single_worker_lock_path() -> str:
    return os.environ.get("HONESTWATCH_LOCK_FILE") or os.path.join(
        tempfile.gettempdir(), _SINGLE_WORKER_LOCK_FILENAME
    )


def _acquire_single_worker_lock() -> None:
    """第二个 worker 拿不到锁时 raise RuntimeError，uvicorn 随即退出该 worker。"""
    global _SINGLE_WORKER_LOCK_FD
    if os.environ.get("HONESTWATCH_DISABLE_SINGLE_WORKER_LOCK") == "1" or _SINGLE_WORKER_LOCK_FD is not None:
        return
    if fcntl is None:
        logger.warning("single-worker lock unavailable on %s; make sure only one worker runs", sys.platform)
        return
    fd = os.open(_single_worker_lock_path(), os.O_CREAT | os.O_RDWR)
    try:
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except OSError:
        os.close(fd)
        raise RuntimeError(_SINGLE_WORKER_ERROR_MSG) from None
    _SINGLE_WORKER_LOCK_FD = fd


def _release_single_worker_lock() -> None:
    global _SINGLE_WORKER_LOCK_FD
    fd, _SINGLE_WORKER_LOCK_FD = _SINGLE_WORKER_LOCK_FD, None
    if fd is None:
        return
    try:
        fcntl.flock(fd, fcntl.LOCK_UN)
    except OSError:
        pass
    finally:
        os.close(fd)


def _configure_logging() -> None:
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _run_startup_warnings() -> None:
    """配置回退告警统一以 WARN: 打印到 stderr（仅启动时一次）。"""
    from honestwatch import config
    for msg in getattr(config, "_STARTUP_WARNINGS", []) or []:
        print("WARN:", msg, file=sys.stderr)


def _close_feed_client(feed_client: Any) -> None:
    """调度线程停下后释放上游连接池（requests.Session）。"""
    close = getattr(feed_client, "close", None)
    if callable(close):
        close()


def create_app(
    store: IncidentStore | None = None,
    feed_client: Any = None,
    scheduler: SyncScheduler | None = None,
    start_scheduler: bool | None = None,
    sandbox_rate_limit: int = SANDBOX_RATE_LIMIT_PER_IP_PER_MIN,
) -> FastAPI:
    """组装 app；store/feed_client/scheduler 可注入（测试用）。start_scheduler 默认取 HONESTWATCH_ENABLE_SCHEDULER。"""
    store = store if store is not None else InMemoryIncidentStore()
    if scheduler is None:
        feed_client = feed_client if feed_client is not None else PoliceFeedClient()
        scheduler = SyncScheduler(store, feed_client)
    run_scheduler = ENABLE_SCHEDULER if start_scheduler is None else start_scheduler

    @asynccontextmanager
    async def _lifespan(app: FastAPI):
        try:
            _acquire_single_worker_lock()
            _configure_logging()
            _run_startup_warnings()
            if run_scheduler:
                app.state.scheduler.start()
            else:
                logger.info("sync scheduler disabled")
            yield
        finally:
            app.state.scheduler.stop()
            _close_feed_client(app.state.scheduler.feed_client)
            _release_single_worker_lock()

    app = FastAPI(title="Honest Watchdog API", lifespan=_lifespan)
    app.state.store = store
    app.state.scheduler = scheduler
    app.state.sandbox_rate_limit = sandbox_rate_limit
    app.middleware("http")(sandbox_middleware)
    app.include_router(incidents_router)
    app.include_router(sandbox_router)
    app.include_router(stats_router)
    return app


app = create_app()
