"""Record types shared by the store, handlers and executor.

Timestamps are epoch seconds (``time.time()``), ``None`` when unset.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class ActionStatus(Enum):
    """Action lifecycle status."""
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    EXECUTED = "EXECUTED"
    FAILED = "FAILED"
    ROLLED_BACK = "ROLLED_BACK"


# Statuses from which execution may start
EXECUTABLE_STATUSES = (ActionStatus.PENDING, ActionStatus.APPROVED)

# Statuses that resolve an action for opportunity closeout
TERMINAL_STATUSES = (ActionStatus.EXECUTED, ActionStatus.ROLLED_BACK)


class OpportunityStatus(Enum):
    """Opportunity lifecycle status."""
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    IMPLEMENTED = "IMPLEMENTED"


class ActionType(Enum):
    """Known action kinds. Only some have registered handlers."""
    ADD_AFFILIATE_LINK = "ADD_AFFILIATE_LINK"
    UPDATE_META_DESCRIPTION = "UPDATE_META_DESCRIPTION"
    ADD_TO_COLLECTION = "ADD_TO_COLLECTION"
    GENERATE_INTERNAL_LINKS = "GENERATE_INTERNAL_LINKS"
    EXPAND_CONTENT = "EXPAND_CONTENT"
    UPDATE_AD_PLACEMENT = "UPDATE_AD_PLACEMENT"


class ExecutionTier(int, Enum):
    """Execution autonomy level for an action type."""
    AUTO = 1
    AFTER_APPROVAL = 2
    MANUAL = 3


class TriggerSource(Enum):
    """Who started an execution attempt."""
    MANUAL = "manual"
    AUTO = "auto"
    APPROVED = "approved"


@dataclass
class Opportunity:
    """Upstream justification for one or more actions."""
    id: str
    title: str
    opportunity_type: str
    confidence: float
    estimated_revenue_impact: Optional[float]
    content_id: Optional[str]
    status: str
    created_at: float
    page_url: Optional[str] = None
    approved_at: Optional[float] = None
    rejected_at: Optional[float] = None
    implemented_at: Optional[float] = None


@dataclass
class Action:
    """A proposed content mutation with its own execution lifecycle."""
    id: str
    opportunity_id: str
    action_type: str
    action_data: dict[str, Any]
    status: str
    execution_tier: int
    auto_executable: bool
    execution_attempts: int
    created_at: float
    last_attempt_at: Optional[float] = None
    execution_result: Optional[dict[str, Any]] = None
    executed_at: Optional[float] = None
    rolled_back_at: Optional[float] = None
    measured_impact: Optional[float] = None


@dataclass
class ActionWithOpportunity:
    """An action joined with its parent opportunity."""
    action: Action
    opportunity: Opportunity


@dataclass
class ExecutionLog:
    """Audit record of one execution attempt."""
    id: str
    action_id: str
    executed_by: str
    executed_at: float
    input_data: dict[str, Any]
    output_data: Optional[dict[str, Any]]
    success: bool
    error_message: Optional[str]
    duration_ms: float
    rollback_data: Optional[dict[str, Any]] = None
    rolled_back_at: Optional[float] = None
    rolled_back_by: Optional[str] = None
    rollback_reason: Optional[str] = None


@dataclass
class ContentRecord:
    """A content page the handlers edit."""
    id: str
    title: str
    source: str = ""
    source_url: Optional[str] = None
    author: Optional[str] = None
    description: Optional[str] = None
    short_description: Optional[str] = None
    content_type: Optional[str] = None
    visual_style: Optional[str] = None
    themes: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    is_free: bool = True


@dataclass
class Collection:
    """A curated group of content records."""
    id: str
    owner: str
    name: str
    description: str = ""
    is_public: bool = True
    is_featured: bool = False


@dataclass
class CollectionItem:
    """Membership of a content record in a collection."""
    id: str
    collection_id: str
    content_id: str
    notes: Optional[str]
    created_at: float


@dataclass
class NotificationPreferences:
    """Per-recipient delivery preferences."""
    user_id: str
    slack_enabled: bool = True
    email_enabled: bool = True
    critical_alerts: bool = True
    opportunity_alerts: bool = True
    execution_alerts: bool = True
    digest_alerts: bool = True
    quiet_hours_start: Optional[int] = None
    quiet_hours_end: Optional[int] = None
