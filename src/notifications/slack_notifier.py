"""Slack incoming-webhook notifier."""

import traceback
from typing import Any, Optional, Union

import httpx
import structlog

from core.errors import DeliveryError
from core.store import StateStore
from notifications.formatter import (
    OpportunityNotice,
    RunNotice,
    format_critical_error,
    format_opportunity_alert,
    format_run_result,
)


logger = structlog.get_logger()


class SlackNotifier:
    """
    Posts messages to a Slack incoming webhook.

    Safe to call when unconfigured: send() logs locally and returns False.
    """

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        store: Optional[StateStore] = None,
        dashboard_url: str = "http://localhost:8080",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.webhook_url = webhook_url
        self.store = store
        self.dashboard_url = dashboard_url
        self.timeout = timeout
        self._transport = transport

    def is_configured(self) -> bool:
        return bool(self.webhook_url)

    async def send(self, message: dict[str, Any], event: str = "message") -> bool:
        """
        Send a message payload ({"text", "blocks"?}).

        Returns:
            True if Slack accepted the message
        """
        if not self.webhook_url:
            logger.info("slack_not_configured", notification_event=event, text=message.get("text", "")[:200])
            return False

        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=self.timeout) as client:
                response = await client.post(self.webhook_url, json=message)
            if not response.is_success:
                raise DeliveryError(
                    f"Slack webhook returned {response.status_code}: {response.text[:200]}",
                    channel="slack",
                    status_code=response.status_code,
                )
        except DeliveryError as e:
            logger.error("slack_send_failed", notification_event=event, status_code=e.status_code, error=e.message)
            await self._log(event, message, False, e.message)
            return False
        except httpx.HTTPError as e:
            logger.error("slack_send_error", notification_event=event, error=str(e))
            await self._log(event, message, False, str(e))
            return False

        logger.debug("slack_sent", notification_event=event)
        await self._log(event, message, True)
        return True

    async def send_text(self, text: str, event: str = "message") -> bool:
        return await self.send({"text": text}, event=event)

    async def send_opportunity_alert(self, opportunities: list[OpportunityNotice]) -> bool:
        if not opportunities:
            return True
        message = format_opportunity_alert(opportunities, self.dashboard_url)
        return await self.send(message, event="opportunity_alert")

    async def send_run_result(self, run: RunNotice) -> bool:
        return await self.send(format_run_result(run), event="run_result")

    async def send_critical_error(self, error: Union[BaseException, str], context: str) -> bool:
        if isinstance(error, BaseException):
            message_text = str(error) or type(error).__name__
            tb = "".join(traceback.format_exception(type(error), error, error.__traceback__))
        else:
            message_text, tb = error, None
        return await self.send(format_critical_error(message_text, context, tb), event="critical_error")

    async def _log(
        self,
        event: str,
        message: dict[str, Any],
        success: bool,
        error_message: Optional[str] = None,
    ) -> None:
        """Write a notification_log row; failures here are only logged."""
        if not self.store:
            return
        try:
            await self.store.record_notification(
                channel="slack",
                event=event,
                subject=message.get("text", ""),
                success=success,
                error_message=error_message,
            )
        except Exception as e:
            logger.error("notification_log_write_failed", channel="slack", error=str(e))
