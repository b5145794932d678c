"""Email notifier backed by SendGrid's v3 mail-send API."""

from typing import Any, Optional

import httpx
import structlog

from core.errors import DeliveryError
from core.store import StateStore
from notifications.formatter import (
    DailyDigestStats,
    WeeklyReportStats,
    build_daily_digest_html,
    build_weekly_report_html,
)


logger = structlog.get_logger()

SENDGRID_URL = "https://api.sendgrid.com/v3/mail/send"


class EmailNotifier:
    """
    Sends HTML email via SendGrid.

    Safe to call when unconfigured: send() logs a preview and returns False.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        from_email: str = "noreply@example.com",
        from_name: str = "Content Action Engine",
        store: Optional[StateStore] = None,
        dashboard_url: str = "http://localhost:8080",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.from_email = from_email
        self.from_name = from_name
        self.store = store
        self.dashboard_url = dashboard_url
        self.timeout = timeout
        self._transport = transport

    def is_configured(self) -> bool:
        return bool(self.api_key)

    def build_payload(self, to: str, subject: str, html: str) -> dict[str, Any]:
        return {
            "personalizations": [{"to": [{"email": to}]}],
            "from": {"email": self.from_email, "name": self.from_name},
            "subject": subject,
            "content": [{"type": "text/html", "value": html}],
        }

    async def send(self, to: str, subject: str, html: str, event: str = "email") -> bool:
        """
        Send one HTML email.

        Returns:
            True if SendGrid accepted the message
        """
        if not self.api_key:
            logger.info(
                "email_not_configured",
                to=to,
                subject=subject,
                preview=html[:200],
            )
            return False

        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=self.timeout) as client:
                response = await client.post(
                    SENDGRID_URL,
                    json=self.build_payload(to, subject, html),
                    headers={"Authorization": f"Bearer {self.api_key}"},
                )
            if not response.is_success:
                raise DeliveryError(
                    f"SendGrid returned {response.status_code}: {response.text[:200]}",
                    channel="email",
                    status_code=response.status_code,
                )
        except DeliveryError as e:
            logger.error("email_send_failed", to=to, status_code=e.status_code, error=e.message)
            await self._log(event, to, subject, html, False, e.message)
            return False
        except httpx.HTTPError as e:
            logger.error("email_send_error", to=to, error=str(e))
            await self._log(event, to, subject, html, False, str(e))
            return False

        logger.info("email_sent", to=to, subject=subject)
        await self._log(event, to, subject, html, True)
        return True

    async def send_daily_digest(self, to: str, stats: DailyDigestStats) -> bool:
        subject = f"Daily Digest - {stats.date.isoformat()}"
        html = build_daily_digest_html(stats, self.dashboard_url)
        return await self.send(to, subject, html, event="daily_digest")

    async def send_weekly_report(self, to: str, stats: WeeklyReportStats) -> bool:
        subject = f"Weekly Report - Week of {stats.week_start.isoformat()}"
        html = build_weekly_report_html(stats, self.dashboard_url)
        return await self.send(to, subject, html, event="weekly_report")

    async def _log(
        self,
        event: str,
        to: str,
        subject: str,
        html: str,
        success: bool,
        error_message: Optional[str] = None,
    ) -> None:
        if not self.store:
            return
        try:
            await self.store.record_notification(
                channel="email",
                event=event,
                subject=subject,
                body=html,
                success=success,
                error_message=error_message,
                metadata={"recipient_email": to},
            )
        except Exception as e:
            logger.error("notification_log_write_failed", channel="email", error=str(e))
