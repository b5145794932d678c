"""Hourly/daily caps on automatic executions."""

import time
from dataclasses import dataclass
from typing import Callable, Optional
import structlog

from core.models import TriggerSource
from core.store import StateStore


logger = structlog.get_logger()

HOUR_SECONDS = 3600
DAY_SECONDS = 86400


@dataclass
class RateLimitStatus:
    """Current auto-execution usage against the caps."""
    hourly_count: int
    daily_count: int
    hourly_limit: int
    daily_limit: int

    @property
    def exhausted(self) -> bool:
        return self.hourly_count >= self.hourly_limit or self.daily_count >= self.daily_limit

    @property
    def hourly_remaining(self) -> int:
        return max(0, self.hourly_limit - self.hourly_count)

    @property
    def daily_remaining(self) -> int:
        return max(0, self.daily_limit - self.daily_count)

    def to_dict(self) -> dict:
        return {
            "hourly_count": self.hourly_count,
            "hourly_limit": self.hourly_limit,
            "daily_count": self.daily_count,
            "daily_limit": self.daily_limit,
            "exhausted": self.exhausted,
        }


class ExecutionRateLimiter:
    """
    Counts auto-triggered executions from the audit log.

    Every execution log written with executed_by="auto" counts, whether the
    attempt succeeded or not. Approved and manual executions are not capped.
    """

    def __init__(
        self,
        store: StateStore,
        max_per_hour: int = 10,
        max_per_day: int = 50,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.store = store
        self.max_per_hour = max_per_hour
        self.max_per_day = max_per_day
        self._clock = clock or time.time

    async def check(self) -> RateLimitStatus:
        """Get usage for the trailing hour and day."""
        now = self._clock()
        hourly = await self.store.count_execution_logs(
            since=now - HOUR_SECONDS,
            executed_by=TriggerSource.AUTO.value,
        )
        daily = await self.store.count_execution_logs(
            since=now - DAY_SECONDS,
            executed_by=TriggerSource.AUTO.value,
        )
        status = RateLimitStatus(
            hourly_count=hourly,
            daily_count=daily,
            hourly_limit=self.max_per_hour,
            daily_limit=self.max_per_day,
        )
        if status.exhausted:
            logger.debug("rate_limit_exhausted", **status.to_dict())
        return status
