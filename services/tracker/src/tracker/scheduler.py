from __future__ import annotations

import asyncio
import logging
import threading

from fastapi.concurrency import run_in_threadpool

from tracker.job import RecomputationJob
from tracker.models import RecomputeRun, Trigger

LOGGER = logging.getLogger("assistant.tracker.scheduler")

DEFAULT_INTERVAL_SECONDS = 24 * 60 * 60


class RecomputeScheduler:
    def __init__(
        self,
        job: RecomputationJob,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.job = job
        self.interval_seconds = interval_seconds
        self.last_run: RecomputeRun | None = None
        self._wake = asyncio.Event()
        self._stopping = threading.Event()

    @property
    def stopping(self) -> bool:
        return self._stopping.is_set()

    async def run(self) -> None:
        LOGGER.info("recompute scheduler started: interval=%ss", self.interval_seconds)
        while not self._stopping.is_set():
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.interval_seconds)
            except TimeoutError:
                pass
            self._wake.clear()
            if self._stopping.is_set():
                break
            try:
                await self.run_once("scheduled")
            except Exception:
                LOGGER.exception("scheduled recompute failed")
        LOGGER.info("recompute scheduler stopped")

    async def run_once(self, trigger: Trigger = "manual") -> RecomputeRun:
        run = await run_in_threadpool(self.job.run, trigger=trigger, stop_event=self._stopping)
        self.last_run = run
        return run

    def trigger(self) -> None:
        self._wake.set()

    def stop(self) -> None:
        self._stopping.set()
        self._wake.set()
