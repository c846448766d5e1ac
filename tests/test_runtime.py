import asyncio

import pytest

from zestswap.runtime import BackgroundRuntime


async def _yield(_seconds):
    await asyncio.sleep(0)


# =============================================================================
# Registration
# =============================================================================

def test_duplicate_job_is_rejected():
    runtime = BackgroundRuntime()

    async def job():
        return None

    runtime.register_job("sweep", 60, job)
    with pytest.raises(ValueError, match="already registered"):
        runtime.register_job("sweep", 60, job)


@pytest.mark.parametrize("interval", [0, -5])
def test_interval_must_be_positive(interval):
    runtime = BackgroundRuntime()

    async def job():
        return None

    with pytest.raises(ValueError, match="must be positive"):
        runtime.register_job("sweep", interval, job)


# =============================================================================
# Ticks
# =============================================================================

@pytest.mark.asyncio
async def test_failed_tick_is_recorded_and_cleared_by_success():
    runtime = BackgroundRuntime()
    outcomes = [RuntimeError("redis down"), RuntimeError("redis down"), None]

    async def job():
        outcome = outcomes.pop(0)
        if outcome is not None:
            raise outcome

    runtime.register_job("flaky", 10, job)

    assert await runtime.run_once("flaky") is False
    assert await runtime.run_once("flaky") is False
    state = runtime.list_jobs()[0]
    assert state["last_error"] == "redis down"
    assert state["consecutive_errors"] == 2

    assert await runtime.run_once("flaky") is True
    state = runtime.list_jobs()[0]
    assert state["last_error"] is None
    assert state["consecutive_errors"] == 0
    assert state["run_count"] == 3
    assert state["status"] == "idle"


@pytest.mark.asyncio
async def test_tick_timeout():
    runtime = BackgroundRuntime(tick_timeout_seconds=0.01)

    async def slow():
        await asyncio.sleep(1)

    runtime.register_job("slow", 10, slow)

    assert await runtime.run_once("slow") is False
    assert "timed out" in runtime.list_jobs()[0]["last_error"]


@pytest.mark.asyncio
async def test_unknown_job():
    runtime = BackgroundRuntime()

    assert await runtime.run_once("missing") is False
    assert runtime.pause_job("missing") is False
    assert runtime.resume_job("missing") is False


# =============================================================================
# Lifecycle
# =============================================================================

@pytest.mark.asyncio
async def test_start_runs_jobs_until_stopped():
    runtime = BackgroundRuntime(sleep=_yield)
    ticked = asyncio.Event()
    calls = []

    async def job():
        calls.append(1)
        if len(calls) >= 3:
            ticked.set()

    runtime.register_job("sweep", 30, job, description="Sweep caches")
    await runtime.start()
    assert runtime.is_running

    await asyncio.wait_for(ticked.wait(), timeout=1)
    await runtime.stop()

    assert not runtime.is_running
    status = runtime.status()
    assert status["running"] is False
    assert status["job_count"] == 1
    assert status["started_at"] is not None
    assert status["jobs"][0]["description"] == "Sweep caches"
    assert status["jobs"][0]["run_count"] >= 3


@pytest.mark.asyncio
async def test_run_on_start_and_late_registration():
    runtime = BackgroundRuntime(sleep=_yield)
    first = asyncio.Event()
    late = asyncio.Event()

    async def first_job():
        first.set()

    async def late_job():
        late.set()

    runtime.register_job("first", 3600, first_job, run_on_start=True)
    await runtime.start()
    await asyncio.wait_for(first.wait(), timeout=1)

    runtime.register_job("late", 3600, late_job)
    await asyncio.wait_for(late.wait(), timeout=1)
    await runtime.stop()


@pytest.mark.asyncio
async def test_paused_job_does_not_tick():
    runtime = BackgroundRuntime(sleep=_yield)
    calls = []

    async def job():
        calls.append(1)

    runtime.register_job("sweep", 30, job)
    assert runtime.pause_job("sweep")
    await runtime.start()
    for _ in range(10):
        await asyncio.sleep(0)
    await runtime.stop()

    assert calls == []
    assert runtime.list_jobs()[0]["paused"] is True

    assert runtime.resume_job("sweep")
    assert runtime.list_jobs()[0]["paused"] is False


@pytest.mark.asyncio
async def test_unregister_cancels_task():
    runtime = BackgroundRuntime(sleep=_yield)

    async def job():
        return None

    runtime.register_job("sweep", 30, job)
    await runtime.start()
    runtime.unregister_job("sweep")
    await runtime.stop()

    assert runtime.list_jobs() == []
