from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest

from scheduler.cron import CronError
from scheduler.runner import CronRunner, UnknownJobError


def at(hour: int, minute: int = 0, day: int = 1) -> datetime:
    return datetime(2026, 7, day, hour, minute, tzinfo=timezone.utc)


def state_of(runner: CronRunner, name: str):
    [state] = [s for s in runner.states() if s.name == name]
    return state


class Gate:
    """Job body that blocks until released."""

    def __init__(self) -> None:
        self.entered = asyncio.Event()
        self.release = asyncio.Event()
        self.calls = 0

    async def __call__(self) -> int:
        self.calls += 1
        self.entered.set()
        await self.release.wait()
        return self.calls


async def test_start_and_stop_are_idempotent():
    runner = CronRunner(check_interval=3600)

    await runner.start()
    await runner.start()
    assert runner.is_running

    await runner.stop()
    await runner.stop()
    assert not runner.is_running


async def test_due_job_fires_once_per_minute():
    runner = CronRunner()
    done = asyncio.Event()

    async def job():
        done.set()

    runner.add_job("every_minute", "* * * * *", job)

    assert runner.tick(at(10, 5)) == ["every_minute"]
    assert runner.tick(at(10, 5).replace(second=40)) == []
    await asyncio.wait_for(done.wait(), timeout=1)
    assert state_of(runner, "every_minute").run_count == 1


async def test_disabled_and_unmatched_jobs_do_not_fire():
    runner = CronRunner()

    async def job():
        return None

    runner.add_job("hourly", "0 * * * *", job)
    runner.add_job("off", "* * * * *", job, enabled=False)

    assert runner.tick(at(10, 30)) == []
    assert runner.job_names() == ["hourly"]
    assert runner.job_names(enabled_only=False) == ["hourly", "off"]


async def test_overlapping_tick_is_skipped_and_counted():
    runner = CronRunner()
    gate = Gate()
    runner.add_job("slow", "* * * * *", gate)

    runner.tick(at(10, 0))
    await asyncio.wait_for(gate.entered.wait(), timeout=1)

    assert runner.tick(at(10, 1)) == []
    state = state_of(runner, "slow")
    assert state.skipped_overlaps == 1
    assert state.last_status == "skipped"
    assert gate.calls == 1

    gate.release.set()
    result = await runner.run_job("slow")
    assert result.value == 2


async def test_manual_run_waits_for_the_running_invocation():
    runner = CronRunner()
    gate = Gate()
    runner.add_job("slow", "* * * * *", gate)

    runner.tick(at(10, 0))
    await asyncio.wait_for(gate.entered.wait(), timeout=1)
    manual = asyncio.create_task(runner.run_job("slow"))
    await asyncio.sleep(0)

    assert not manual.done()
    assert gate.calls == 1

    gate.release.set()
    result = await asyncio.wait_for(manual, timeout=1)
    assert result.status == "success"
    assert state_of(runner, "slow").run_count == 2


async def test_failing_job_does_not_affect_siblings():
    runner = CronRunner()
    healthy_ran = asyncio.Event()

    async def broken():
        raise RuntimeError("database locked")

    async def healthy():
        healthy_ran.set()
        return "ok"

    runner.add_job("broken", "0 1 * * *", broken)
    runner.add_job("healthy", "0 1 * * *", healthy)

    assert runner.tick(at(1)) == ["broken", "healthy"]
    await asyncio.wait_for(healthy_ran.wait(), timeout=1)

    assert state_of(runner, "broken").last_status == "error"
    assert state_of(runner, "broken").last_error == "database locked"
    assert state_of(runner, "healthy").last_status == "success"


async def test_run_job_reports_errors_instead_of_raising():
    runner = CronRunner()

    async def broken():
        raise ValueError

    runner.add_job("broken", "0 1 * * *", broken)
    result = await runner.run_job("broken")

    assert result.status == "error"
    assert result.error == "ValueError"


async def test_schedule_is_read_in_configured_timezone():
    runner = CronRunner(timezone="America/New_York")

    async def job():
        return None

    runner.add_job("morning", "0 9 * * *", job)

    # July: New York is UTC-4
    assert runner.tick(at(9)) == []
    assert runner.tick(at(13)) == ["morning"]
    await runner.run_job("morning")


async def test_unknown_job_raises():
    runner = CronRunner()
    with pytest.raises(UnknownJobError):
        await runner.run_job("nope")


def test_bad_registrations_are_rejected():
    runner = CronRunner()

    async def job():
        return None

    runner.add_job("a", "0 * * * *", job)
    with pytest.raises(ValueError):
        runner.add_job("a", "0 * * * *", job)
    with pytest.raises(CronError):
        runner.add_job("b", "61 * * * *", job)


async def test_stop_lets_running_jobs_finish():
    runner = CronRunner(check_interval=3600)
    gate = Gate()
    runner.add_job("slow", "* * * * *", gate)
    # The loop's first tick fires the every-minute job
    await runner.start()
    await asyncio.wait_for(gate.entered.wait(), timeout=1)
    stopping = asyncio.create_task(runner.stop())
    await asyncio.sleep(0)
    assert not stopping.done()

    gate.release.set()
    await asyncio.wait_for(stopping, timeout=1)
    state = state_of(runner, "slow")
    assert state.last_status == "success"
    assert state.run_count == 1


async def test_guard_holds_the_job_lock():
    runner = CronRunner()
    gate = Gate()
    runner.add_job("slow", "* * * * *", gate)

    async with runner.guard("slow") as state:
        assert state.running
        assert runner.tick(at(10, 0)) == []
        manual = asyncio.create_task(runner.run_job("slow"))
        await asyncio.sleep(0)
        assert gate.calls == 0

    gate.release.set()
    result = await asyncio.wait_for(manual, timeout=1)
    assert result.value == 1
    assert state_of(runner, "slow").skipped_overlaps == 1

    with pytest.raises(UnknownJobError):
        async with runner.guard("nope"):
            pass
