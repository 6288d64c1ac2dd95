"""
In-process periodic scheduler.

Runs each registered job when its interval has elapsed, one pass at a time,
in registration order. A shared asyncio.Event is the shutdown signal: it is
checked between ticks here and between items inside each job, so an
in-flight item always finishes before exit.
"""

import asyncio
import signal
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from structlog import get_logger

from displex.models.domain import PassReport

logger = get_logger(__name__)

JobFunc = Callable[[asyncio.Event], Awaitable[PassReport]]


@dataclass
class ScheduledJob:
    name: str
    interval_seconds: float
    func: JobFunc
    next_run: float = field(default=0.0)


class PeriodicScheduler:
    """Single-flow tick loop; a slow pass delays the next tick instead of overlapping it."""

    def __init__(self, shutdown: asyncio.Event | None = None) -> None:
        self.shutdown = shutdown or asyncio.Event()
        self.jobs: list[ScheduledJob] = []

    def add_job(self, name: str, interval_seconds: float, func: JobFunc) -> None:
        if interval_seconds <= 0:
            raise ValueError(f"interval for {name} must be positive: {interval_seconds}")
        self.jobs.append(ScheduledJob(name=name, interval_seconds=interval_seconds, func=func))

    def install_signal_handlers(self) -> None:
        """Set the shutdown event on SIGINT/SIGTERM."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._request_shutdown, sig)
            except NotImplementedError:
                # Windows event loops have no signal handler support
                signal.signal(sig, lambda signum, frame: self._request_shutdown(signum))

    def _request_shutdown(self, sig: int) -> None:
        logger.info("scheduler_shutdown_requested", signal=signal.Signals(sig).name)
        self.shutdown.set()

    async def run(self) -> None:
        logger.info(
            "scheduler_started",
            jobs=[{"name": j.name, "interval_seconds": j.interval_seconds} for j in self.jobs],
        )
        while not self.shutdown.is_set():
            await self.tick()
            if self.shutdown.is_set():
                break

            delay = self._seconds_until_next_run()
            try:
                await asyncio.wait_for(self.shutdown.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass

        logger.info("scheduler_stopped")

    async def tick(self) -> None:
        """Run every job that is due, in registration order."""
        for job in self.jobs:
            if self.shutdown.is_set():
                return
            if time.monotonic() < job.next_run:
                continue

            try:
                report = await job.func(self.shutdown)
            except Exception as e:
                # Retried on the next tick
                logger.error("scheduled_job_crashed", job=job.name, error=str(e), exc_info=True)
            else:
                logger.info("scheduled_job_finished", job=job.name, completed=report.completed)
            job.next_run = time.monotonic() + job.interval_seconds

    def _seconds_until_next_run(self) -> float:
        if not self.jobs:
            return 60.0
        return max(0.0, min(job.next_run for job in self.jobs) - time.monotonic())
