"""In-memory batching buffer for notifications."""

import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Optional
import structlog


logger = structlog.get_logger()


class NotificationPriority(Enum):
    """Batching priority."""
    CRITICAL = "critical"
    STANDARD = "standard"


class NotificationType(Enum):
    """What a notification is about."""
    OPPORTUNITY = "opportunity"
    EXECUTION = "execution"
    ERROR = "error"
    DIGEST = "digest"


@dataclass
class BatchPolicy:
    """When a batch becomes ready to flush."""
    max_batch_size: int
    max_batch_age_seconds: float


DEFAULT_POLICIES = {
    NotificationPriority.CRITICAL: BatchPolicy(max_batch_size=1, max_batch_age_seconds=0),
    NotificationPriority.STANDARD: BatchPolicy(max_batch_size=20, max_batch_age_seconds=3600),
}


@dataclass
class NotificationPayload:
    """A notification waiting for delivery."""
    type: NotificationType
    priority: NotificationPriority
    title: str
    body: str
    metadata: dict[str, Any] = field(default_factory=dict)
    added_at: float = 0.0


class NotificationQueue:
    """
    Batches notifications under a batch key.

    A batch is ready once it holds as many items as its policy allows, or
    once its oldest member is older than the policy's max age. Age and policy
    are both taken from the oldest member, so a newer critical item sharing a
    key with a young standard batch waits with it in flush_expired(); callers
    must act on add() returning True for such items.
    """

    def __init__(
        self,
        policies: Optional[dict[NotificationPriority, BatchPolicy]] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.policies = dict(DEFAULT_POLICIES)
        if policies:
            self.policies.update(policies)
        self._clock = clock or time.time
        self._batches: dict[str, list[NotificationPayload]] = {}

    def add(self, payload: NotificationPayload, batch_key: str) -> bool:
        """
        Append a payload, stamping its enqueue time.

        Returns True when the batch is ready to flush under the added
        item's priority (always True for critical items).
        """
        batch = self._batches.setdefault(batch_key, [])
        batch.append(replace(payload, added_at=self._clock()))

        ready = len(batch) >= self.policies[payload.priority].max_batch_size
        logger.debug(
            "notification_queued",
            batch_key=batch_key,
            priority=payload.priority.value,
            pending=len(batch),
            ready=ready,
        )
        return ready

    def flush(self, batch_key: str) -> list[NotificationPayload]:
        """Remove and return a batch."""
        return self._batches.pop(batch_key, [])

    def flush_expired(self, now: Optional[float] = None) -> dict[str, list[NotificationPayload]]:
        """Remove and return every batch that reached its size or age limit."""
        now = self._clock() if now is None else now
        expired = {}

        for batch_key, batch in list(self._batches.items()):
            if not batch:
                continue

            oldest = batch[0]
            policy = self.policies[oldest.priority]
            age = now - oldest.added_at

            if age >= policy.max_batch_age_seconds or len(batch) >= policy.max_batch_size:
                expired[batch_key] = self.flush(batch_key)

        return expired

    def pending_count(self, batch_key: str) -> int:
        return len(self._batches.get(batch_key, []))

    def batch_keys(self) -> list[str]:
        return list(self._batches.keys())

    def total_pending(self) -> int:
        return sum(len(batch) for batch in self._batches.values())

    def clear(self) -> None:
        self._batches.clear()
