"""
后台同步调度：STARTING -> BACKFILLING -> SYNCING <-> IDLE（stop 后 STOPPED）。
- 启动：回填历史窗口，完成后立即一次 live sync
- 稳态：每次 live sync（含紧随其后的 prune，手动触发也算）完成后才重新计时，周期之间不重叠
- 任一周期失败只记日志并写入 status，定时器照常继续
clock / sleep 可注入，测试里用虚拟时钟手动推进并调用 step()。
"""
from __future__ import annotations

import logging
from threading import Event, Lock, Thread
from typing import Any, Callable

from honestwatch.config import (
    BACKFILL_DAYS,
    BACKFILL_DELAY_SECONDS,
    RETENTION_DAYS,
    SYNC_INTERVAL_SECONDS,
)
from honestwatch.feed_client import FeedError
from honestwatch.ingestion_logic import backfill_history, sync_latest
from honestwatch.retention_logic import prune_old_incidents
from honestwatch.store import IncidentStore
from honestwatch.timestamps import now_ms as _now_ms

logger = logging.getLogger(__name__)

STATE_STARTING = "STARTING"
STATE_BACKFILLING = "BACKFILLING"
STATE_SYNCING = "SYNCING"
STATE_IDLE = "IDLE"
STATE_STOPPED = "STOPPED"

# 后台线程等待手动同步结束时的单次阻塞上限，兼顾 stop() 响应
_CYCLE_WAIT_SECONDS = 1.0


class SyncScheduler:
    def __init__(
        self,
        store: IncidentStore,
        feed_client: Any,
        interval_seconds: int = SYNC_INTERVAL_SECONDS,
        backfill_days: int = BACKFILL_DAYS,
        backfill_delay_seconds: float = BACKFILL_DELAY_SECONDS,
        retention_days: int = RETENTION_DAYS,
        clock: Callable[[], int] | None = None,
        sleep: Callable[[float], Any] | None = None,
    ) -> None:
        self._store = store
        self._feed_client = feed_client
        self._interval_ms = int(interval_seconds * 1000)
        self._backfill_days = backfill_days
        self._backfill_delay_seconds = backfill_delay_seconds
        self._retention_days = retention_days
        self._clock = clock or _now_ms
        self._stop_event = Event()
        self._sleep = sleep or self._stop_event.wait
        # 保证 live sync（定时/手动）互不重叠
        self._cycle_lock = Lock()
        self._status_lock = Lock()
        self._thread: Thread | None = None
        self._state = STATE_STARTING
        self._next_due_ms: int | None = None
        self._backfill_result: dict[str, Any] | None = None
        self._last_sync: dict[str, Any] = {
            "trigger": None,
            "started_at": None,
            "finished_at": None,
            "synced": None,
            "pruned": None,
            "error": None,
        }
        self._sync_count = 0

    # --- 状态 ---

    @property
    def feed_client(self) -> Any:
        return self._feed_client

    @property
    def state(self) -> str:
        with self._status_lock:
            return self._state

    @property
    def next_due_ms(self) -> int | None:
        with self._status_lock:
            return self._next_due_ms

    def _set_state(self, state: str) -> None:
        with self._status_lock:
            if self._state == STATE_STOPPED and state != STATE_STOPPED:
                return
            self._state = state

    def status(self) -> dict[str, Any]:
        with self._status_lock:
            return {
                "state": self._state,
                "next_sync_due_at": self._next_due_ms,
                "sync_count": self._sync_count,
                "last_sync": dict(self._last_sync),
                "backfill": dict(self._backfill_result) if self._backfill_result else None,
            }

    def seconds_until_due(self) -> float | None:
        due = self.next_due_ms
        if due is None:
            return None
        return max(0.0, (due - self._clock()) / 1000.0)

    # --- 周期 ---

    def step(self) -> bool:
        """执行当前（虚拟）时间点到期的工作；有工作返回 True。"""
        state = self.state
        if state == STATE_STOPPED:
            return False
        if state == STATE_STARTING:
            self.run_startup()
            return True
        if state == STATE_IDLE and self._is_due():
            return self._run_timer_sync()
        return False

    def _is_due(self) -> bool:
        due = self.next_due_ms
        return due is not None and self._clock() >= due

    def _run_timer_sync(self) -> bool:
        with self._cycle_lock:
            # 等锁期间手动同步可能已跑完并重新计时，本次到期视为已覆盖
            if self.state != STATE_IDLE or not self._is_due():
                return False
            self._run_cycle("timer")
        return True

    def run_startup(self) -> None:
        self._set_state(STATE_BACKFILLING)
        try:
            result = backfill_history(
                self._store,
                self._feed_client,
                days=self._backfill_days,
                delay_seconds=self._backfill_delay_seconds,
                now_ms=self._clock(),
                sleep=self._sleep,
                clock=self._clock,
                stop_requested=self._stop_event.is_set,
            )
        except Exception:
            logger.exception("historical backfill crashed")
            result = {"total": 0, "days_ok": [], "days_failed": [], "error": "backfill crashed"}
        with self._status_lock:
            self._backfill_result = result
        if self._stop_event.is_set():
            return
        self.run_live_sync(trigger="startup")
        self._arm_timer()

    def run_live_sync(self, trigger: str = "manual") -> dict[str, Any]:
        """一次 live sync + prune；失败只记录，不抛。返回本次结果。"""
        with self._cycle_lock:
            return self._run_cycle(trigger)

    def _run_cycle(self, trigger: str) -> dict[str, Any]:
        # 调用方持有 _cycle_lock
        prev_state = self.state
        self._set_state(STATE_SYNCING)
        started = self._clock()
        synced: int | None = None
        pruned: int | None = None
        error: str | None = None
        try:
            synced = sync_latest(self._store, self._feed_client, started)
        except FeedError as e:
            error = str(e)
            logger.warning("live sync failed: %s", e)
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            logger.exception("live sync crashed")
        try:
            pruned = prune_old_incidents(self._store, self._clock(), self._retention_days)
        except Exception as e:
            error = error or f"prune {type(e).__name__}: {e}"
            logger.exception("prune crashed")
        result = {
            "trigger": trigger,
            "started_at": started,
            "finished_at": self._clock(),
            "synced": synced,
            "pruned": pruned,
            "error": error,
        }
        with self._status_lock:
            self._last_sync = result
            self._sync_count += 1
        # 启动阶段被手动触发时恢复原状态，避免 step() 跳过回填；回填结束后由 run_startup 计时
        if prev_state in (STATE_STARTING, STATE_BACKFILLING):
            self._set_state(prev_state)
        else:
            self._arm_timer()
        return dict(result)

    def _wait_for_running_cycle(self, timeout: float) -> None:
        """手动同步占着 _cycle_lock 时阻塞等它结束（最多 timeout 秒）。"""
        if self._cycle_lock.acquire(timeout=timeout):
            self._cycle_lock.release()

    def _arm_timer(self) -> None:
        # 完成后才重新计时（不是固定墙钟网格）
        with self._status_lock:
            if self._state == STATE_STOPPED:
                return
            self._next_due_ms = self._clock() + self._interval_ms
            self._state = STATE_IDLE

    # --- 线程生命周期 ---

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        with self._status_lock:
            if self._state == STATE_STOPPED:
                self._state = STATE_STARTING if self._backfill_result is None else STATE_IDLE
        self._thread = Thread(target=self._run_loop, name="honestwatch-sync", daemon=True)
        self._thread.start()
        logger.info("sync scheduler started interval=%ss", self._interval_ms // 1000)

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop_event.set()
        with self._status_lock:
            self._state = STATE_STOPPED
        thread = self._thread
        if thread is not None and thread.is_alive():
            thread.join(timeout)
        self._thread = None
        logger.info("sync scheduler stopped")

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.step()
            except Exception:
                logger.exception("sync scheduler step crashed")
            if self.state == STATE_SYNCING:
                self._wait_for_running_cycle(_CYCLE_WAIT_SECONDS)
                continue
            wait_seconds = self.seconds_until_due()
            if wait_seconds is None:
                wait_seconds = self._interval_ms / 1000.0
            self._stop_event.wait(wait_seconds)
