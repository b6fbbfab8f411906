"""
Event and Audit Contracts

Payloads delivered to subscribers, mutation results, and the immutable
entries recorded by the observability layer.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Tuple

from .errors import GatewayError
from .records import CommentRecord


# =============================================================================
# VIEW-MODEL EVENTS
# =============================================================================

class ViewModelEvent(Enum):
    """Event types a subscriber can register for."""
    COMMENT_ADDED = "comment_added"
    COMMENT_UPDATED = "comment_updated"
    COMMENT_DELETED = "comment_deleted"
    # Narrow: carries the parent id only
    ACTION_BAR_REFRESH = "action_bar_refresh"


class EventPhase(Enum):
    """Where in the mutation protocol an event was emitted."""
    OPTIMISTIC = "optimistic"
    CONFIRMED = "confirmed"
    REVERTED = "reverted"


@dataclass(frozen=True)
class CommentEvent:
    """
    Payload delivered to handlers.

    For ACTION_BAR_REFRESH only `comment_id` (the parent) is meaningful.
    On a reverted create `record` is None: the comment no longer exists.
    """
    event_type: ViewModelEvent
    comment_id: str
    phase: EventPhase
    record: Optional[CommentRecord] = None
    previous_id: Optional[str] = None  # temporary id replaced on create
    error: Optional[GatewayError] = None

    @property
    def is_error(self) -> bool:
        return self.error is not None


# =============================================================================
# MUTATION RESULTS
# =============================================================================

class MutationKind(Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    UPVOTE = "upvote"


class MutationOutcome(Enum):
    CONFIRMED = "confirmed"
    ROLLED_BACK = "rolled_back"


@dataclass(frozen=True)
class MutationResult:
    """
    Final state of one dispatched mutation.

    INVARIANT: error is set if and only if outcome is ROLLED_BACK.
    """
    kind: MutationKind
    comment_id: str
    outcome: MutationOutcome
    record: Optional[CommentRecord]
    error: Optional[GatewayError] = None
    previous_id: Optional[str] = None

    def __post_init__(self):
        if (self.outcome == MutationOutcome.ROLLED_BACK) != (self.error is not None):
            raise ValueError("error must be set exactly when the mutation rolled back")

    @property
    def confirmed(self) -> bool:
        return self.outcome == MutationOutcome.CONFIRMED


# =============================================================================
# AUDIT CONTRACTS
# =============================================================================

class AuditEventType(Enum):
    """Explicit audit event types."""
    MUTATION = "mutation"
    EVENT = "event"
    ERROR = "error"
    SYSTEM = "system"


@dataclass(frozen=True)
class AuditLogEntry:
    """Immutable audit log entry."""
    entry_id: str
    event_type: AuditEventType
    timestamp: datetime
    layer: str
    action: str
    entity_id: Optional[str] = None
    entity_type: Optional[str] = None
    metadata: Tuple[Tuple[str, str], ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class MetricPoint:
    """Immutable metric data point."""
    metric_name: str
    value: float
    timestamp: datetime
    labels: Tuple[Tuple[str, str], ...] = field(default_factory=tuple)
