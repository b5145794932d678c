"""Periodic jobs: auto-execution sweep, notification flush, daily digest, weekly report."""

import asyncio
import time
from datetime import date, datetime
from typing import Callable, Optional
import structlog

from core.config import SchedulerConfig
from notifications.service import NotificationService
from orchestrator.executor import ActionExecutor, SweepResult


logger = structlog.get_logger()


class EngineScheduler:
    """
    Drives the executor and notification service on fixed intervals.

    Guarantees at most one sweep in flight per process: a sweep requested
    while another is running is skipped, not queued.
    """

    def __init__(
        self,
        executor: ActionExecutor,
        notifications: Optional[NotificationService] = None,
        config: Optional[SchedulerConfig] = None,
        digest_recipients: Optional[list[str]] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.executor = executor
        self.notifications = notifications
        self.config = config or SchedulerConfig()
        self.digest_recipients = list(digest_recipients or [])
        self._clock = clock or time.time

        self._sweep_lock = asyncio.Lock()
        self._shutdown_event = asyncio.Event()
        self._tasks: list[asyncio.Task] = []
        self._last_digest_date: Optional[date] = None
        self._last_weekly_report_date: Optional[date] = None
        self._last_sweep: Optional[SweepResult] = None

    @property
    def sweep_in_progress(self) -> bool:
        return self._sweep_lock.locked()

    @property
    def last_sweep(self) -> Optional[SweepResult]:
        return self._last_sweep

    async def start(self) -> None:
        """Start background loops."""
        self._shutdown_event.clear()
        self._tasks = [
            asyncio.create_task(self._periodic(
                "sweep", self.config.sweep_interval_seconds, self.run_sweep
            )),
        ]
        if self.notifications:
            self._tasks.append(asyncio.create_task(self._periodic(
                "flush", self.config.flush_interval_seconds, self.run_flush
            )))
            self._tasks.append(asyncio.create_task(self._periodic(
                "digest", 60, self.run_digest_if_due
            )))
            self._tasks.append(asyncio.create_task(self._periodic(
                "weekly_report", 60, self.run_weekly_report_if_due
            )))
        logger.info(
            "scheduler_started",
            sweep_interval=self.config.sweep_interval_seconds,
            flush_interval=self.config.flush_interval_seconds,
            digest_hour=self.config.digest_hour,
            weekly_report_weekday=self.config.weekly_report_weekday,
        )

    async def stop(self, timeout: float = 30.0) -> None:
        """Stop loops, letting an in-flight sweep finish."""
        self._shutdown_event.set()
        if self._tasks:
            done, pending = await asyncio.wait(self._tasks, timeout=timeout)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        self._tasks = []
        logger.info("scheduler_stopped")

    async def run_sweep(self) -> Optional[SweepResult]:
        """Run one sweep unless one is already running."""
        if self._sweep_lock.locked():
            logger.info("sweep_skipped_already_running")
            return None

        async with self._sweep_lock:
            result = await self.executor.execute_auto_actions()
            self._last_sweep = result
            return result

    async def run_flush(self) -> int:
        """Deliver expired notification batches."""
        if not self.notifications:
            return 0
        return await self.notifications.flush_batched_notifications()

    async def run_digest_if_due(self) -> bool:
        """Send the daily digest once per day at the configured hour."""
        if not self.notifications or not self.digest_recipients:
            return False

        now = datetime.fromtimestamp(self._clock())
        if now.hour != self.config.digest_hour or self._last_digest_date == now.date():
            return False

        self._last_digest_date = now.date()
        for recipient in self.digest_recipients:
            await self.notifications.send_daily_digest(recipient)
        logger.info("daily_digest_sent", recipients=len(self.digest_recipients))
        return True

    async def run_weekly_report_if_due(self) -> bool:
        """Send the weekly report once on the configured weekday at the digest hour."""
        if not self.notifications or not self.digest_recipients:
            return False

        now = datetime.fromtimestamp(self._clock())
        if (
            now.weekday() != self.config.weekly_report_weekday
            or now.hour != self.config.digest_hour
            or self._last_weekly_report_date == now.date()
        ):
            return False

        self._last_weekly_report_date = now.date()
        for recipient in self.digest_recipients:
            await self.notifications.send_weekly_report(recipient)
        logger.info("weekly_report_sent", recipients=len(self.digest_recipients))
        return True

    async def _periodic(self, name: str, interval: float, job) -> None:
        """Run a job every interval until shutdown."""
        while not self._shutdown_event.is_set():
            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=interval)
                break
            except asyncio.TimeoutError:
                pass

            try:
                await job()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("scheduled_job_error", job=name)
