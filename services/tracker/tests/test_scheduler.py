from __future__ import annotations

import asyncio
import threading

import pytest
from tracker.models import RecomputeRun
from tracker.scheduler import RecomputeScheduler

pytestmark = pytest.mark.unit


class FakeJob:
    def __init__(self) -> None:
        self.triggers: list[str] = []
        self.stop_events: list[threading.Event | None] = []

    def run(self, *, trigger: str = "manual", stop_event: threading.Event | None = None):
        self.triggers.append(trigger)
        self.stop_events.append(stop_event)
        return RecomputeRun(
            trigger=trigger,  # type: ignore[arg-type]
            started_at="2026-02-12T10:00:00+00:00",
            finished_at="2026-02-12T10:00:01+00:00",
        )


def test_interval_must_be_positive() -> None:
    with pytest.raises(ValueError):
        RecomputeScheduler(FakeJob(), interval_seconds=0)  # type: ignore[arg-type]


@pytest.mark.asyncio
async def test_run_once_records_last_run() -> None:
    job = FakeJob()
    scheduler = RecomputeScheduler(job, interval_seconds=3600)  # type: ignore[arg-type]

    run = await scheduler.run_once("manual")

    assert run.trigger == "manual"
    assert scheduler.last_run == run
    assert job.triggers == ["manual"]


@pytest.mark.asyncio
async def test_loop_fires_on_interval_and_stops_cleanly() -> None:
    job = FakeJob()
    scheduler = RecomputeScheduler(job, interval_seconds=0.01)  # type: ignore[arg-type]
    task = asyncio.create_task(scheduler.run())

    for _ in range(200):
        if len(job.triggers) >= 2:
            break
        await asyncio.sleep(0.01)
    scheduler.stop()
    await asyncio.wait_for(task, timeout=1.0)

    assert len(job.triggers) >= 2
    assert set(job.triggers) == {"scheduled"}
    assert scheduler.stopping
    assert all(event is not None and event.is_set() for event in job.stop_events)


@pytest.mark.asyncio
async def test_trigger_wakes_loop_before_interval() -> None:
    job = FakeJob()
    scheduler = RecomputeScheduler(job, interval_seconds=3600)  # type: ignore[arg-type]
    task = asyncio.create_task(scheduler.run())
    await asyncio.sleep(0)

    scheduler.trigger()
    for _ in range(200):
        if scheduler.last_run is not None:
            break
        await asyncio.sleep(0.01)
    scheduler.stop()
    await asyncio.wait_for(task, timeout=1.0)

    assert job.triggers == ["scheduled"]


@pytest.mark.asyncio
async def test_failing_job_does_not_kill_the_loop() -> None:
    class FailingJob(FakeJob):
        def run(self, *, trigger: str = "manual", stop_event: threading.Event | None = None):
            self.triggers.append(trigger)
            raise RuntimeError("ledger offline")

    job = FailingJob()
    scheduler = RecomputeScheduler(job, interval_seconds=0.01)  # type: ignore[arg-type]
    task = asyncio.create_task(scheduler.run())

    for _ in range(200):
        if len(job.triggers) >= 2:
            break
        await asyncio.sleep(0.01)
    scheduler.stop()
    await asyncio.wait_for(task, timeout=1.0)

    assert len(job.triggers) >= 2
    assert scheduler.last_run is None
