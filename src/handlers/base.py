"""Action handler contract and registry."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional, Union

import jsonschema
import structlog

from core.models import Action, ActionType, ExecutionTier
from core.store import StateStore


logger = structlog.get_logger()

# Recorded on content the engine changes
AUTOMATION_ACTOR = "content-action-engine"

# Tag key carried by every rollback payload
ROLLBACK_TAG = "action_type"


@dataclass
class ValidationResult:
    """Outcome of a handler precondition check."""
    valid: bool
    reason: Optional[str] = None

    @classmethod
    def ok(cls) -> "ValidationResult":
        return cls(valid=True)

    @classmethod
    def fail(cls, reason: str) -> "ValidationResult":
        return cls(valid=False, reason=reason)


@dataclass
class HandlerResult:
    """Outcome of a handler execution."""
    success: bool
    output: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    rollback_data: Optional[dict[str, Any]] = None


class ActionHandler(ABC):
    """
    Base class for per-action-type handlers.

    Subclasses declare ``action_type``, ``tier`` and a JSON schema for their
    action data, and implement validate/execute/prepare_rollback/rollback.

    Rollback payloads are plain dicts tagged with the producing action type,
    so they survive a round trip through the execution log and a handler
    can refuse a payload that is not its own.
    """

    action_type: ActionType
    tier: ExecutionTier = ExecutionTier.MANUAL
    data_schema: dict[str, Any] = {"type": "object"}

    def __init__(self, store: StateStore):
        self.store = store

    @abstractmethod
    async def validate(self, action: Action) -> ValidationResult:
        """Check preconditions without mutating anything."""

    @abstractmethod
    async def execute(self, action: Action) -> HandlerResult:
        """Apply the change."""

    @abstractmethod
    async def prepare_rollback(self, action: Action) -> Optional[dict[str, Any]]:
        """Capture pre-mutation state. Called before every execute."""

    @abstractmethod
    async def rollback(self, rollback_data: dict[str, Any]) -> bool:
        """Undo a previous execution. Returns False on failure."""

    # ==================== Helpers ====================

    def check_action_data(self, action: Action) -> Optional[str]:
        """Validate action data against the handler's schema; returns the problem or None."""
        try:
            jsonschema.validate(instance=action.action_data, schema=self.data_schema)
        except jsonschema.ValidationError as e:
            path = ".".join(str(p) for p in e.absolute_path)
            return f"Invalid action data{' at ' + path if path else ''}: {e.message}"
        return None

    async def resolve_content_id(self, action: Action) -> Optional[str]:
        """Content record ID from the action data, falling back to the opportunity."""
        content_id = action.action_data.get("content_id")
        if content_id:
            return content_id

        opportunity = await self.store.get_opportunity(action.opportunity_id)
        if opportunity and opportunity.content_id:
            return opportunity.content_id
        return None

    def rollback_payload(self, **fields: Any) -> dict[str, Any]:
        """Build a rollback payload tagged with this handler's type."""
        return {ROLLBACK_TAG: self.action_type.value, **fields}

    def owns_rollback_payload(self, rollback_data: Optional[dict[str, Any]]) -> bool:
        """True if the payload was produced by a handler of this type."""
        if not isinstance(rollback_data, dict):
            return False
        tag = rollback_data.get(ROLLBACK_TAG)
        if tag != self.action_type.value:
            logger.warning(
                "rollback_payload_type_mismatch",
                handler=self.action_type.value,
                payload_type=tag,
            )
            return False
        return True


class HandlerRegistry:
    """
    Maps action types to handler instances.

    Unregistered action types resolve to tier 3 and are never
    auto-executable.
    """

    def __init__(self):
        self._handlers: dict[str, ActionHandler] = {}

    def register(self, handler: ActionHandler) -> None:
        """Register a handler under its action type."""
        self._handlers[handler.action_type.value] = handler
        logger.debug("handler_registered", action_type=handler.action_type.value, tier=int(handler.tier))

    def unregister(self, action_type: Union[str, ActionType]) -> None:
        """Unregister a handler."""
        self._handlers.pop(self._key(action_type), None)

    def get_handler(self, action_type: Union[str, ActionType]) -> Optional[ActionHandler]:
        """Get handler for action type."""
        return self._handlers.get(self._key(action_type))

    def list_action_types(self) -> list[str]:
        """List all registered action types."""
        return list(self._handlers.keys())

    def get_execution_tier(self, action_type: Union[str, ActionType]) -> int:
        """Execution tier of an action type; 3 when unregistered."""
        handler = self.get_handler(action_type)
        return int(handler.tier) if handler else int(ExecutionTier.MANUAL)

    def is_auto_executable(self, action_type: Union[str, ActionType]) -> bool:
        """True only for registered tier-1 action types."""
        return self.get_execution_tier(action_type) == ExecutionTier.AUTO

    @staticmethod
    def _key(action_type: Union[str, ActionType]) -> str:
        return action_type.value if isinstance(action_type, ActionType) else action_type
