"""
Configuration

Options, wire field mapping and the context object shared by every
component.

CONTEXT INJECTION:
==================
A CommentsContext is built once and passed by reference to the
transformer, sorter, policy and view-model. Nothing looks options up
from a global registry.
"""

from __future__ import annotations
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, Mapping, Optional
import uuid


class SortMode(Enum):
    """Client-side orderings for top-level comments."""
    POPULARITY = "popularity"
    OLDEST = "oldest"
    NEWEST = "newest"


class TimestampFormat(Enum):
    """How timestamps are written to the wire."""
    ISO = "iso"            # ISO 8601 string
    EPOCH_MS = "epoch_ms"  # integer milliseconds since the epoch


# internal field name -> external wire key
DEFAULT_FIELD_MAPPINGS: Dict[str, str] = {
    "id": "id",
    "parent_id": "parent",
    "created_at": "created",
    "modified_at": "modified",
    "content": "content",
    "attachments": "attachments",
    "pings": "pings",
    "creator_user_id": "creator",
    "creator_display_name": "fullname",
    "creator_profile_picture_url": "profile_picture_url",
    "is_new": "is_new",
    "created_by_admin": "created_by_admin",
    "upvote_count": "upvote_count",
    "user_has_upvoted": "user_has_upvoted",
    "is_deleted": "is_deleted",
}


@dataclass(frozen=True)
class FieldMapping:
    """
    Bidirectional internal/external name table.

    Overrides are merged over DEFAULT_FIELD_MAPPINGS. The resulting table
    must be injective or the inverse mapping would be ambiguous.
    """
    overrides: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self):
        unknown = set(self.overrides) - set(DEFAULT_FIELD_MAPPINGS)
        if unknown:
            raise ValueError(f"Unknown internal field(s) in mapping: {sorted(unknown)}")
        external = list(self.to_external().values())
        if len(external) != len(set(external)):
            raise ValueError("Field mapping must not map two fields to the same key")

    def to_external(self) -> Dict[str, str]:
        merged = dict(DEFAULT_FIELD_MAPPINGS)
        merged.update(self.overrides)
        return merged

    def to_internal(self) -> Dict[str, str]:
        return {external: internal for internal, external in self.to_external().items()}

    def external(self, internal_name: str) -> str:
        return self.to_external()[internal_name]


@dataclass(frozen=True)
class CommentsOptions:
    """
    Feature switches and identity of the current user.

    WHY FROZEN:
    Options are read by several components at once; changing them means
    building a new context.
    """
    current_user_id: Optional[str] = None
    current_user_display_name: Optional[str] = None
    current_user_is_admin: bool = False

    enable_replying: bool = True
    enable_editing: bool = True
    enable_upvoting: bool = True
    enable_deleting: bool = True
    enable_deleting_comment_with_replies: bool = False
    enable_attachments: bool = False

    field_mappings: FieldMapping = field(default_factory=FieldMapping)
    timestamp_format: TimestampFormat = TimestampFormat.ISO
    default_sort: SortMode = SortMode.NEWEST

    @classmethod
    def from_mapping(cls, raw: Mapping[str, object]) -> CommentsOptions:
        """
        Build options from a plain dict (e.g. parsed JSON settings).

        `field_mappings` may be a dict of overrides; enum-valued options
        accept their string values. Unknown keys are rejected.
        """
        known = {f.name for f in fields(cls)}
        unknown = set(raw) - known
        if unknown:
            raise ValueError(f"Unknown option(s): {sorted(unknown)}")

        values = dict(raw)
        if isinstance(values.get("field_mappings"), Mapping):
            values["field_mappings"] = FieldMapping(overrides=dict(values["field_mappings"]))
        if isinstance(values.get("timestamp_format"), str):
            values["timestamp_format"] = TimestampFormat(values["timestamp_format"])
        if isinstance(values.get("default_sort"), str):
            values["default_sort"] = SortMode(values["default_sort"])
        return cls(**values)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def temporary_id() -> str:
    return f"tmp_{uuid.uuid4().hex[:16]}"


@dataclass(frozen=True)
class CommentsContext:
    """Everything a component needs besides its own inputs."""
    options: CommentsOptions = field(default_factory=CommentsOptions)
    clock: Callable[[], datetime] = utc_now
    id_factory: Callable[[], str] = temporary_id

    def now(self) -> datetime:
        return self.clock()

    def new_temporary_id(self) -> str:
        return self.id_factory()
