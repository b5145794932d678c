"""Notifications - batching, routing and Slack/email delivery."""

from .queue import NotificationPayload, NotificationPriority, NotificationQueue, NotificationType
from .formatter import OpportunityNotice, RunNotice
from .slack_notifier import SlackNotifier
from .email_notifier import EmailNotifier
from .service import ExecutionNotice, NotificationEvent, NotificationService

__all__ = [
    "NotificationPayload",
    "NotificationPriority",
    "NotificationQueue",
    "NotificationType",
    "OpportunityNotice",
    "RunNotice",
    "SlackNotifier",
    "EmailNotifier",
    "ExecutionNotice",
    "NotificationEvent",
    "NotificationService",
]
