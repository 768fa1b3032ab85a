import asyncio

import pytest

from services.scheduling import AdaptiveBackoff, PeriodicWorker


class _ScriptedWorker(PeriodicWorker):
    name = "scripted_worker"

    def __init__(self, outcomes, **kwargs):
        kwargs.setdefault("base_interval_seconds", 10)
        kwargs.setdefault("max_interval_seconds", 70)
        kwargs.setdefault("backoff_factor", 2)
        super().__init__(**kwargs)
        self.outcomes = list(outcomes)
        self.runs = 0

    async def run_once(self):
        self.runs += 1
        outcome = self.outcomes.pop(0) if self.outcomes else "ok"
        if outcome == "crash":
            raise RuntimeError("store unavailable")
        return outcome


def test_backoff_grows_monotonically_and_caps():
    backoff = AdaptiveBackoff(base_interval=60, max_interval=900, factor=2)
    intervals = [backoff.record_failure() for _ in range(8)]

    assert intervals == sorted(intervals)
    assert intervals[:4] == [120, 240, 480, 900]
    assert max(intervals) == 900
    assert backoff.record_success() == 60


def test_backoff_rejects_non_growing_factor():
    backoff = AdaptiveBackoff(base_interval=5, max_interval=50, factor=1)
    assert backoff.record_failure() == 10


@pytest.mark.asyncio
async def test_tick_crash_grows_interval_and_alerts(metrics):
    worker = _ScriptedWorker(["crash", "crash", "crash"], metrics=metrics)

    delays = [await worker.tick() for _ in range(3)]

    assert delays == [20, 40, 70]
    status = worker.get_status()
    assert status.consecutive_failures == 3
    assert status.last_successful_run_at is None
    assert status.last_run_at is not None
    assert metrics.alert_counts == {"scripted_worker_loop_crash": 3}


@pytest.mark.asyncio
async def test_tick_success_resets_interval(metrics):
    worker = _ScriptedWorker(["crash", "crash", "ok"], metrics=metrics)

    await worker.tick()
    await worker.tick()
    assert await worker.tick() == 10

    status = worker.get_status()
    assert status.consecutive_failures == 0
    assert status.last_successful_run_at is not None
    assert status.current_interval_seconds == 10


@pytest.mark.asyncio
async def test_start_is_idempotent_and_stop_halts_scheduling():
    slept = []
    worker = None

    async def fake_sleep(delay):
        slept.append(delay)
        if len(slept) >= 3:
            worker.stop()
        await asyncio.sleep(0)

    worker = _ScriptedWorker(["ok", "crash"], sleep=fake_sleep)

    assert worker.start() is True
    assert worker.start() is False
    await asyncio.wait_for(worker.join(), timeout=2)

    assert worker.runs == 2
    assert slept == [10, 10, 20]
    assert worker.get_status().running is False


@pytest.mark.asyncio
async def test_stop_while_sleeping_cancels_pending_wait():
    worker = _ScriptedWorker([], base_interval_seconds=3600)
    worker.start()
    await asyncio.sleep(0)

    worker.stop()
    await asyncio.wait_for(worker.join(), timeout=2)

    assert worker.runs == 0


def test_status_serialises_timestamps():
    worker = _ScriptedWorker([])
    payload = worker.get_status().to_dict()

    assert payload == {
        "running": False,
        "last_run_at": None,
        "last_successful_run_at": None,
        "consecutive_failures": 0,
        "current_interval_seconds": 10.0,
    }
