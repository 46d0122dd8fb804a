#!/usr/bin/env python3
"""
同步调度（虚拟时钟）：启动回填 7 天 + 礼貌延迟 -> 立即 live sync -> 间隔到期才再同步；
单日失败/整轮失败只记录，定时器继续；每次 live sync 后跟 prune。
"""
from __future__ import annotations

import threading
import time

from _fakes import BASE_NOW_MS, DAY_MS, FakeClock, FakeFeedClient, make_incident

from honestwatch.feed_client import FeedError
from honestwatch.scheduler import STATE_IDLE, STATE_STARTING, STATE_STOPPED, SyncScheduler
from honestwatch.store import InMemoryIncidentStore

INTERVAL = 600


def _scheduler(client, clock, store=None):
    return SyncScheduler(
        store if store is not None else InMemoryIncidentStore(),
        client,
        interval_seconds=INTERVAL,
        backfill_days=7,
        backfill_delay_seconds=0.5,
        retention_days=7,
        clock=clock,
        sleep=clock.sleep,
    )


def test_startup_backfills_then_syncs_latest():
    clock = FakeClock()
    client = FakeFeedClient(
        latest=[make_incident(1)],
        by_day={"2026-02-23": [make_incident(2)], "2026-02-17": [make_incident(3)]},
    )
    store = InMemoryIncidentStore()
    sched = _scheduler(client, clock, store)
    assert sched.state == STATE_STARTING

    assert sched.step() is True
    day_calls = [c[1] for c in client.calls if c[0] == "day"]
    assert day_calls == [
        "2026-02-23", "2026-02-22", "2026-02-21", "2026-02-20",
        "2026-02-19", "2026-02-18", "2026-02-17",
    ], day_calls
    # backfill 全部完成后才有 latest
    assert client.calls[-1] == ("latest", None)
    assert [c[0] for c in client.calls].count("latest") == 1
    assert clock.sleeps == [0.5] * 7
    assert sched.state == STATE_IDLE
    assert len(store) == 3

    status = sched.status()
    assert status["backfill"]["total"] == 2
    assert status["last_sync"]["trigger"] == "startup"
    assert status["last_sync"]["synced"] == 1
    assert status["next_sync_due_at"] == clock() + INTERVAL * 1000


def test_timer_rearms_only_after_interval():
    clock = FakeClock()
    client = FakeFeedClient(latest=[make_incident(1)])
    sched = _scheduler(client, clock)
    sched.step()
    latest_calls = lambda: sum(1 for c in client.calls if c[0] == "latest")  # noqa: E731

    assert sched.step() is False
    clock.advance(INTERVAL - 1)
    assert sched.step() is False
    assert latest_calls() == 1
    clock.advance(1)
    assert sched.step() is True
    assert latest_calls() == 2
    assert sched.status()["last_sync"]["trigger"] == "timer"
    assert sched.next_due_ms == clock() + INTERVAL * 1000


def test_failed_backfill_day_does_not_abort_remaining_days():
    clock = FakeClock()
    client = FakeFeedClient(
        by_day={"2026-02-21": [make_incident(21)], "2026-02-19": [make_incident(19)]},
        failing_days={"2026-02-22", "2026-02-20"},
    )
    sched = _scheduler(client, clock)
    sched.step()
    backfill = sched.status()["backfill"]
    assert backfill["days_failed"] == ["2026-02-22", "2026-02-20"]
    assert len(backfill["days_ok"]) == 5
    assert backfill["total"] == 2
    assert sum(1 for c in client.calls if c[0] == "day") == 7
    assert clock.sleeps == [0.5] * 7


def test_failed_live_sync_is_recorded_and_timer_continues():
    clock = FakeClock()
    client = FakeFeedClient(latest=[make_incident(1)])
    client.latest_error = FeedError("feed timeout after 15s")
    sched = _scheduler(client, clock)
    sched.step()
    last = sched.status()["last_sync"]
    assert last["error"] == "feed timeout after 15s"
    assert last["synced"] is None
    assert sched.state == STATE_IDLE
    assert sched.next_due_ms is not None

    client.latest_error = None
    clock.advance(INTERVAL)
    assert sched.step() is True
    assert sched.status()["last_sync"]["error"] is None
    assert sched.status()["last_sync"]["synced"] == 1


def test_unexpected_error_does_not_escape_cycle():
    clock = FakeClock()
    client = FakeFeedClient()
    client.latest_error = RuntimeError("boom")
    sched = _scheduler(client, clock)
    sched.step()
    assert "RuntimeError" in sched.status()["last_sync"]["error"]
    assert sched.state == STATE_IDLE


def test_prune_runs_after_each_live_sync():
    clock = FakeClock()
    store = InMemoryIncidentStore()
    store.put("ancient", {"id": "ancient", "timestamp": BASE_NOW_MS - 10 * DAY_MS})
    client = FakeFeedClient(latest=[make_incident(1)])
    client.latest_error = FeedError("down")
    sched = _scheduler(client, clock, store)
    sched.step()
    assert store.get("ancient") is None
    assert sched.status()["last_sync"]["pruned"] == 1

    # 第二轮无可删记录
    client.latest_error = None
    clock.advance(INTERVAL)
    sched.step()
    assert sched.status()["last_sync"]["pruned"] == 0


def test_manual_sync_rearms_timer():
    clock = FakeClock()
    client = FakeFeedClient(latest=[make_incident(1)])
    sched = _scheduler(client, clock)
    sched.step()
    clock.advance(60)
    result = sched.run_live_sync(trigger="manual")
    assert result["trigger"] == "manual"
    assert result["synced"] == 1
    assert sched.next_due_ms == clock() + INTERVAL * 1000
    assert sched.state == STATE_IDLE
    assert sched.status()["sync_count"] == 2


def test_due_tick_covered_by_manual_sync_is_skipped():
    clock = FakeClock()
    client = FakeFeedClient(latest=[make_incident(1)])
    sched = _scheduler(client, clock)
    sched.step()
    clock.advance(INTERVAL)
    sched.run_live_sync(trigger="manual")
    # 定时器已到期但刚被手动同步覆盖，不再紧接着打一次上游
    assert sched.step() is False
    assert sum(1 for c in client.calls if c[0] == "latest") == 2
    clock.advance(INTERVAL)
    assert sched.step() is True
    assert sched.status()["last_sync"]["trigger"] == "timer"


_MANUAL_THREAD_NAME = "manual-sync"


class _BlockingFeedClient(FakeFeedClient):
    """手动同步线程里的 fetch_latest 阻塞到 release（模拟慢上游）；后台线程的调用不阻塞。"""

    def __init__(self):
        super().__init__(latest=[make_incident(1)])
        self.entered = threading.Event()
        self.release = threading.Event()

    def fetch_latest(self):
        if threading.current_thread().name == _MANUAL_THREAD_NAME:
            self.entered.set()
            self.release.wait(5)
        return super().fetch_latest()


class _CountingScheduler(SyncScheduler):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.steps = 0

    def step(self):
        self.steps += 1
        return super().step()


def _wait_until(cond, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if cond():
            return True
        time.sleep(0.01)
    return cond()


def test_background_loop_waits_for_slow_manual_sync():
    client = _BlockingFeedClient()
    sched = _CountingScheduler(
        InMemoryIncidentStore(),
        client,
        interval_seconds=0.3,
        backfill_days=0,
        backfill_delay_seconds=0,
        retention_days=7,
    )
    sched.start()
    try:
        assert _wait_until(lambda: sched.status()["sync_count"] >= 1)
        manual = threading.Thread(
            target=sched.run_live_sync, kwargs={"trigger": "manual"}, name=_MANUAL_THREAD_NAME
        )
        manual.start()
        assert client.entered.wait(3)
        latest_before = sum(1 for c in client.calls if c[0] == "latest")
        steps_before = sched.steps
        # 阻塞期间定时器到期；后台线程应阻塞等待，而不是空转
        time.sleep(0.8)
        assert sched.steps - steps_before < 5, sched.steps - steps_before
        client.release.set()
        manual.join(3)
        assert not manual.is_alive()
        assert sched.status()["last_sync"]["trigger"] == "manual"
        # 手动同步刚结束并重新计时，定时 sync 不会紧跟着再拉一次
        time.sleep(0.1)
        assert sum(1 for c in client.calls if c[0] == "latest") == latest_before + 1
    finally:
        client.release.set()
        sched.stop()
    assert sched.state == STATE_STOPPED


def test_start_and_stop_background_thread():
    client = FakeFeedClient(latest=[make_incident(1)])
    sched = SyncScheduler(
        InMemoryIncidentStore(),
        client,
        interval_seconds=60,
        backfill_days=1,
        backfill_delay_seconds=0,
        retention_days=7,
    )
    sched.start()
    try:
        assert _wait_until(lambda: sched.state == STATE_IDLE)
        assert sched.status()["last_sync"]["trigger"] == "startup"
        assert [c[0] for c in client.calls] == ["day", "latest"]
    finally:
        sched.stop()
    assert sched.state == STATE_STOPPED
    assert not any(t.name == "honestwatch-sync" and t.is_alive() for t in threading.enumerate())


def test_manual_sync_before_startup_keeps_startup_pending():
    clock = FakeClock()
    client = FakeFeedClient(latest=[make_incident(1)])
    sched = _scheduler(client, clock)
    sched.run_live_sync(trigger="manual")
    assert sched.state == STATE_STARTING
    assert sched.step() is True
    assert sum(1 for c in client.calls if c[0] == "day") == 7


def test_stop_halts_stepping():
    clock = FakeClock()
    sched = _scheduler(FakeFeedClient(), clock)
    sched.stop()
    assert sched.state == STATE_STOPPED
    assert sched.step() is False


def main() -> None:
    for name, fn in sorted(globals().items()):
        if name.startswith("test_") and callable(fn):
            fn()
            print(f"PASS: {name}")


if __name__ == "__main__":
    main()
