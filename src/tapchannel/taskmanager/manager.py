"""Cron scheduler for the engine's background jobs.

Each registered ``CronJob`` gets its own asyncio task that sleeps for the
job's period and then runs the handler. Handlers may raise: the failure is
logged and kept as the job's last error until its next clean run, and the
loop carries on.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from tapchannel.metrics.collector import EngineMetrics

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CronJob:
    """A recurring background job."""

    handler: Callable[[], Awaitable[None]]
    period: float  # seconds
    name: str = ""


class TaskManager:
    """Schedules cron jobs on the running event loop.

    Usage::

        tm = TaskManager(metrics=engine.metrics)
        tm.register("settlement_reconcile", CronJob(handler=sweep, period=60))
        await tm.start()
        ...
        await tm.stop()
    """

    def __init__(self, *, metrics: EngineMetrics | None = None) -> None:
        self._metrics = metrics
        self._jobs: dict[str, CronJob] = {}
        self._loops: dict[str, asyncio.Task[None]] = {}
        self._runs: dict[str, int] = {}
        self._errors: dict[str, str] = {}
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def jobs(self) -> dict[str, CronJob]:
        """Registered jobs by name (a copy)."""
        return dict(self._jobs)

    @property
    def failing(self) -> dict[str, str]:
        """Jobs whose most recent run raised, with the error text."""
        return dict(self._errors)

    def run_count(self, name: str) -> int:
        """Completed runs of *name*, failed ones included."""
        return self._runs.get(name, 0)

    def register(self, name: str, job: CronJob) -> None:
        """Add *job* under *name*, replacing any job of that name.

        A job registered while the manager runs is scheduled at once.

        Raises:
            ValueError: If the period is not positive.
        """
        if job.period <= 0:
            msg = f"cron job {name!r} needs a positive period, got {job.period}"
            raise ValueError(msg)
        named = CronJob(handler=job.handler, period=job.period, name=name)
        self._jobs[name] = named
        if self._running:
            self._schedule(named)

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        for job in self._jobs.values():
            self._schedule(job)
        logger.info("Task manager started: %s", ", ".join(self._jobs) or "no jobs")

    async def stop(self) -> None:
        """Cancel every job loop and wait until they have unwound."""
        if not self._running:
            return
        self._running = False
        loops = list(self._loops.values())
        self._loops.clear()
        for loop in loops:
            loop.cancel()
        for outcome in await asyncio.gather(*loops, return_exceptions=True):
            if isinstance(outcome, Exception):
                logger.error("Cron loop ended with %r", outcome)
        logger.info("Task manager stopped")

    async def trigger(self, name: str) -> None:
        """Run *name* once now, outside its schedule.

        Raises:
            KeyError: If no job of that name is registered.
        """
        await self._execute(self._jobs[name])

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _schedule(self, job: CronJob) -> None:
        previous = self._loops.pop(job.name, None)
        if previous is not None:
            previous.cancel()
        self._loops[job.name] = asyncio.create_task(self._loop(job), name=f"cron:{job.name}")

    async def _loop(self, job: CronJob) -> None:
        while self._running:
            await asyncio.sleep(job.period)
            if self._running:
                await self._execute(job)

    async def _execute(self, job: CronJob) -> None:
        name = job.name or "unnamed"
        try:
            if self._metrics is not None:
                with self._metrics.track_cron(name):
                    await job.handler()
            else:
                await job.handler()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Cron job %r failed", name)
            self._errors[name] = f"{type(exc).__name__}: {exc}"
        else:
            self._errors.pop(name, None)
        finally:
            self._runs[name] = self._runs.get(name, 0) + 1
