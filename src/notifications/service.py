"""
Notification routing.

Decides per event whether to deliver immediately, batch, or suppress, and
consults the recipient's stored preferences (category toggles and quiet
hours) before any delivery.
"""

import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional, Union

import structlog

from core.config import NotificationConfig
from core.store import StateStore
from notifications.email_notifier import EmailNotifier
from notifications.formatter import (
    DailyDigestStats,
    OpportunityNotice,
    RunNotice,
    WeeklyReportStats,
    format_circuit_breaker,
    format_execution_failures,
)
from notifications.queue import (
    BatchPolicy,
    NotificationPayload,
    NotificationPriority,
    NotificationQueue,
    NotificationType,
)
from notifications.slack_notifier import SlackNotifier


logger = structlog.get_logger()

OPPORTUNITY_BATCH_KEY = "opportunities_standard"
EXECUTION_FAILURE_BATCH_KEY = "executions_failed"


class NotificationEvent(Enum):
    """Events the engine can notify about."""
    OPPORTUNITY_DETECTED = "opportunity_detected"
    OPPORTUNITY_APPROVED = "opportunity_approved"
    OPPORTUNITY_REJECTED = "opportunity_rejected"
    RUN_COMPLETE = "run_complete"
    RUN_FAILED = "run_failed"
    EXECUTION_SUCCESS = "execution_success"
    EXECUTION_FAILED = "execution_failed"
    CRITICAL_ERROR = "critical_error"
    CIRCUIT_BREAKER_TRIPPED = "circuit_breaker_tripped"
    DAILY_DIGEST = "daily_digest"
    WEEKLY_REPORT = "weekly_report"


# Preference toggle gating each event
EVENT_CATEGORIES = {
    NotificationEvent.CRITICAL_ERROR: "critical_alerts",
    NotificationEvent.CIRCUIT_BREAKER_TRIPPED: "critical_alerts",
    NotificationEvent.OPPORTUNITY_DETECTED: "opportunity_alerts",
    NotificationEvent.OPPORTUNITY_APPROVED: "opportunity_alerts",
    NotificationEvent.OPPORTUNITY_REJECTED: "opportunity_alerts",
    NotificationEvent.EXECUTION_SUCCESS: "execution_alerts",
    NotificationEvent.EXECUTION_FAILED: "execution_alerts",
    NotificationEvent.RUN_COMPLETE: "execution_alerts",
    NotificationEvent.RUN_FAILED: "execution_alerts",
    NotificationEvent.DAILY_DIGEST: "digest_alerts",
    NotificationEvent.WEEKLY_REPORT: "digest_alerts",
}


@dataclass
class ChannelPermissions:
    """Which channels may deliver an event."""
    slack: bool
    email: bool


@dataclass
class ExecutionNotice:
    """Outcome of one action execution."""
    action_id: str
    action_type: str
    success: bool
    error: Optional[str] = None


def is_quiet_hour(hour: int, start: Optional[int], end: Optional[int]) -> bool:
    """
    Check an hour of day against a quiet-hours range.

    start < end is a same-day range [start, end); start > end wraps past
    midnight. Unset bounds mean no quiet hours, and start == end is
    deliberately read as no quiet hours rather than quiet all day.
    """
    if start is None or end is None or start == end:
        return False
    if start < end:
        return start <= hour < end
    return hour >= start or hour < end


class NotificationService:
    """Coordinates Slack and email delivery, batching and preferences."""

    def __init__(
        self,
        store: StateStore,
        slack: SlackNotifier,
        email: EmailNotifier,
        config: Optional[NotificationConfig] = None,
        queue: Optional[NotificationQueue] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.store = store
        self.slack = slack
        self.email = email
        self.config = config or NotificationConfig()
        self._clock = clock or time.time
        self.queue = queue or NotificationQueue(
            policies={
                NotificationPriority.STANDARD: BatchPolicy(
                    max_batch_size=self.config.standard_batch_max_size,
                    max_batch_age_seconds=self.config.standard_batch_max_age_seconds,
                ),
            },
            clock=self._clock,
        )

    # ==================== Preferences ====================

    async def check_user_preferences(
        self,
        user_id: Optional[str],
        event: NotificationEvent,
        hour: Optional[int] = None,
    ) -> ChannelPermissions:
        """
        Resolve channel permissions for a recipient and event.

        Stored quiet hours win when both bounds are set; otherwise the
        configured quiet hours apply. No stored preferences means every
        category and channel is enabled.
        """
        prefs = await self.store.get_notification_preferences(user_id) if user_id else None

        if prefs and prefs.quiet_hours_start is not None and prefs.quiet_hours_end is not None:
            quiet_start, quiet_end = prefs.quiet_hours_start, prefs.quiet_hours_end
        else:
            quiet_start, quiet_end = self.config.quiet_hours_start, self.config.quiet_hours_end

        if hour is None:
            hour = datetime.fromtimestamp(self._clock()).hour
        if is_quiet_hour(hour, quiet_start, quiet_end):
            return ChannelPermissions(slack=False, email=False)

        if not prefs:
            return ChannelPermissions(slack=True, email=True)

        enabled = getattr(prefs, EVENT_CATEGORIES.get(event, ""), True)
        return ChannelPermissions(
            slack=prefs.slack_enabled and enabled,
            email=prefs.email_enabled and enabled,
        )

    async def _permissions(self, event: NotificationEvent) -> ChannelPermissions:
        permissions = await self.check_user_preferences(self.config.recipient_id, event)
        if not (permissions.slack and permissions.email):
            logger.debug(
                "notification_channels_restricted",
                notification_event=event.value,
                slack=permissions.slack,
                email=permissions.email,
            )
        return permissions

    async def _slack_allowed(self, event: NotificationEvent) -> bool:
        allowed = (await self._permissions(event)).slack
        if not allowed:
            logger.info("notification_suppressed", notification_event=event.value, channel="slack")
        return allowed

    # ==================== Events ====================

    async def notify_opportunities(self, opportunities: list[OpportunityNotice]) -> None:
        """High-impact opportunities alert immediately; otherwise queue them all."""
        if not opportunities:
            return

        threshold = self.config.high_impact_threshold
        high_impact = [o for o in opportunities if o.impact >= threshold]

        if not high_impact:
            for opp in opportunities:
                await self._enqueue(
                    NotificationPayload(
                        type=NotificationType.OPPORTUNITY,
                        priority=NotificationPriority.STANDARD,
                        title=opp.title,
                        body=f"{opp.opportunity_type}: +${opp.impact:.2f}/mo",
                        metadata={
                            "opportunity_id": opp.id,
                            "opportunity_type": opp.opportunity_type,
                            "estimated_revenue_impact": opp.impact,
                            "confidence": opp.confidence,
                            "page_url": opp.page_url,
                        },
                    ),
                    OPPORTUNITY_BATCH_KEY,
                )
            return

        if await self._slack_allowed(NotificationEvent.OPPORTUNITY_DETECTED):
            await self.slack.send_opportunity_alert(high_impact)

    async def notify_run_complete(self, run: RunNotice) -> None:
        """Only failed runs and full runs that found something are announced."""
        if run.status == "FAILED":
            event = NotificationEvent.RUN_FAILED
        elif run.run_type == "FULL" and run.opportunities_found > 0:
            event = NotificationEvent.RUN_COMPLETE
        else:
            return

        if await self._slack_allowed(event):
            await self.slack.send_run_result(run)

    async def notify_execution_result(self, execution: ExecutionNotice) -> None:
        """Failures are always batched, never sent immediately."""
        if execution.success:
            logger.debug("execution_success_not_announced", action_id=execution.action_id)
            return

        await self._enqueue(
            NotificationPayload(
                type=NotificationType.EXECUTION,
                priority=NotificationPriority.STANDARD,
                title=f"Execution failed: {execution.action_type}",
                body=execution.error or "Unknown error",
                metadata={"action_id": execution.action_id},
            ),
            EXECUTION_FAILURE_BATCH_KEY,
        )

    async def notify_critical_error(self, error: Union[BaseException, str], context: str) -> None:
        if await self._slack_allowed(NotificationEvent.CRITICAL_ERROR):
            await self.slack.send_critical_error(error, context)

    async def notify_circuit_breaker(self, opened: bool) -> None:
        """Announce the breaker opening (trip) or closing (manual reset)."""
        if await self._slack_allowed(NotificationEvent.CIRCUIT_BREAKER_TRIPPED):
            await self.slack.send_text(format_circuit_breaker(opened), event="circuit_breaker")

    # ==================== Batching ====================

    async def _enqueue(self, payload: NotificationPayload, batch_key: str) -> None:
        if self.queue.add(payload, batch_key):
            await self._deliver_batch(batch_key, self.queue.flush(batch_key))

    async def flush_batched_notifications(self, now: Optional[float] = None) -> int:
        """
        Deliver every batch past its size or age limit.

        Returns the number of batches flushed.
        """
        expired = self.queue.flush_expired(now)
        for batch_key, batch in expired.items():
            await self._deliver_batch(batch_key, batch)
        return len(expired)

    async def _deliver_batch(self, batch_key: str, batch: list[NotificationPayload]) -> None:
        if not batch:
            return

        logger.info("notification_batch_flushed", batch_key=batch_key, size=len(batch))

        if batch_key == OPPORTUNITY_BATCH_KEY:
            if not await self._slack_allowed(NotificationEvent.OPPORTUNITY_DETECTED):
                return
            opportunities = [
                OpportunityNotice(
                    id=item.metadata["opportunity_id"],
                    title=item.title,
                    opportunity_type=item.metadata.get("opportunity_type", "UNKNOWN"),
                    estimated_revenue_impact=item.metadata.get("estimated_revenue_impact", 0.0),
                    confidence=item.metadata.get("confidence", 0.0),
                    page_url=item.metadata.get("page_url"),
                )
                for item in batch
                if item.metadata.get("opportunity_id")
            ]
            if opportunities:
                await self.slack.send_opportunity_alert(opportunities)

        elif batch_key == EXECUTION_FAILURE_BATCH_KEY:
            if not await self._slack_allowed(NotificationEvent.EXECUTION_FAILED):
                return
            text = format_execution_failures([(item.title, item.body) for item in batch])
            await self.slack.send_text(text, event="execution_failures")

        else:
            logger.warning("notification_batch_unrouted", batch_key=batch_key, size=len(batch))

    # ==================== Digests ====================

    def _midnight(self, now: Optional[float]) -> datetime:
        current = datetime.fromtimestamp(self._clock() if now is None else now)
        return current.replace(hour=0, minute=0, second=0, microsecond=0)

    async def send_daily_digest(self, recipient_email: str, now: Optional[float] = None) -> bool:
        """Email yesterday's opportunity activity."""
        if not (await self._permissions(NotificationEvent.DAILY_DIGEST)).email:
            logger.info("notification_suppressed", notification_event="daily_digest", channel="email")
            return False

        today = self._midnight(now)
        yesterday = today - timedelta(days=1)
        start, end = yesterday.timestamp(), today.timestamp()

        top = await self.store.top_opportunities(start, end, limit=5)
        stats = DailyDigestStats(
            date=yesterday.date(),
            new_opportunities=await self.store.count_opportunities("created_at", start, end),
            approved_opportunities=await self.store.count_opportunities("approved_at", start, end),
            rejected_opportunities=await self.store.count_opportunities("rejected_at", start, end),
            implemented_opportunities=await self.store.count_opportunities("implemented_at", start, end),
            total_estimated_impact=await self.store.sum_estimated_impact(start, end),
            top_opportunities=[
                {
                    "title": o.title,
                    "type": o.opportunity_type,
                    "estimated_impact": o.estimated_revenue_impact or 0.0,
                }
                for o in top
            ],
        )
        return await self.email.send_daily_digest(recipient_email, stats)

    async def send_weekly_report(self, recipient_email: str, now: Optional[float] = None) -> bool:
        """Email the trailing seven full days."""
        if not (await self._permissions(NotificationEvent.WEEKLY_REPORT)).email:
            logger.info("notification_suppressed", notification_event="weekly_report", channel="email")
            return False

        week_end = self._midnight(now)
        week_start = week_end - timedelta(days=7)
        start, end = week_start.timestamp(), week_end.timestamp()

        by_day = []
        for i in range(7):
            day_start = week_start + timedelta(days=i)
            day_end = day_start + timedelta(days=1)
            by_day.append({
                "date": day_start.date(),
                "opportunities": await self.store.count_opportunities(
                    "created_at", day_start.timestamp(), day_end.timestamp()
                ),
                "implemented": await self.store.count_opportunities(
                    "implemented_at", day_start.timestamp(), day_end.timestamp()
                ),
            })

        stats = WeeklyReportStats(
            week_start=week_start.date(),
            week_end=week_end.date(),
            total_opportunities=await self.store.count_opportunities("created_at", start, end),
            implemented_count=await self.store.count_opportunities("implemented_at", start, end),
            total_estimated_impact=await self.store.sum_estimated_impact(start, end),
            top_performing_actions=await self.store.executed_action_stats(start, end),
            by_day_breakdown=by_day,
        )
        return await self.email.send_weekly_report(recipient_email, stats)
