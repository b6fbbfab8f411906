"""
Unit Test Fixtures

Fixed timestamps, deterministic contexts and wire records.
All fixtures are explicit - no random generation.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import itertools

from commentview import (
    CommentsContext, CommentsOptions, CommentViewModel, MockGateway,
)


# =============================================================================
# FIXED TIMESTAMPS (deterministic)
# =============================================================================

T0 = datetime(2026, 1, 1, 10, 0, 0, tzinfo=timezone.utc)
T1 = datetime(2026, 1, 1, 10, 5, 0, tzinfo=timezone.utc)
T2 = datetime(2026, 1, 1, 10, 10, 0, tzinfo=timezone.utc)
T3 = datetime(2026, 1, 1, 10, 15, 0, tzinfo=timezone.utc)
NOW = datetime(2026, 1, 2, 9, 0, 0, tzinfo=timezone.utc)

CURRENT_USER = "u_alice"
OTHER_USER = "u_bob"


# =============================================================================
# CONTEXT
# =============================================================================

def make_context(**option_overrides) -> CommentsContext:
    """Context with a frozen clock and sequential temporary ids."""
    options = dict(
        current_user_id=CURRENT_USER,
        current_user_display_name="Alice",
    )
    options.update(option_overrides)
    ids = itertools.count(1)
    return CommentsContext(
        options=CommentsOptions(**options),
        clock=lambda: NOW,
        id_factory=lambda: f"tmp_{next(ids)}",
    )


def make_viewmodel(
    gateway: Optional[MockGateway] = None,
    records: Optional[List[Dict[str, Any]]] = None,
    **option_overrides,
) -> CommentViewModel:
    vm = CommentViewModel(
        gateway=gateway if gateway is not None else MockGateway(id_prefix="s"),
        context=make_context(**option_overrides),
    )
    if records:
        vm.load(records)
    return vm


# =============================================================================
# WIRE RECORDS
# =============================================================================

def wire(
    comment_id: str,
    parent: Optional[str] = None,
    created: datetime = T0,
    creator: str = CURRENT_USER,
    content: str = "hello",
    upvote_count: int = 0,
    user_has_upvoted: bool = False,
    **extra,
) -> Dict[str, Any]:
    record = {
        "id": comment_id,
        "parent": parent,
        "created": created.isoformat(),
        "modified": None,
        "content": content,
        "creator": creator,
        "fullname": creator.title(),
        "upvote_count": upvote_count,
        "user_has_upvoted": user_has_upvoted,
        "is_deleted": False,
        "attachments": [],
        "pings": [],
    }
    record.update(extra)
    return record


def thread_records() -> List[Dict[str, Any]]:
    """
    Thread shape:

        c1 (alice, T0)
        +- c2 (bob, T1)
           +- c4 (alice, T3)
        c3 (bob, T2)
    """
    return [
        wire("c1", created=T0, creator=CURRENT_USER, upvote_count=1),
        wire("c2", parent="c1", created=T1, creator=OTHER_USER),
        wire("c3", created=T2, creator=OTHER_USER, upvote_count=4, user_has_upvoted=True),
        wire("c4", parent="c2", created=T3, creator=CURRENT_USER),
    ]


class EventRecorder:
    """Handler that keeps every event it receives."""

    def __init__(self):
        self.events = []

    def __call__(self, event):
        self.events.append(event)

    def phases(self):
        return [e.phase for e in self.events]

    def ids(self):
        return [e.comment_id for e in self.events]
