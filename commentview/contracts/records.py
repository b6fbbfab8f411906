"""
Comment Record Contracts

Internal (enriched) representation of a comment and its attachments.

IMMUTABILITY:
=============
Records are frozen. The store swaps whole records on every change, so a
caller holding an old reference never observes a mutation made elsewhere.

FIELD CLASSES:
==============
- WIRE_FIELDS:    carried on the wire, renamed by the field mapping
- DERIVED_FIELDS: computed locally, stripped before transport
- STORE_FIELDS:   owned by the store (child_ids), never merged from outside
"""

from __future__ import annotations
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, FrozenSet, Optional, Tuple
import copy


WIRE_FIELDS: Tuple[str, ...] = (
    "id",
    "parent_id",
    "created_at",
    "modified_at",
    "content",
    "attachments",
    "pings",
    "creator_user_id",
    "creator_display_name",
    "creator_profile_picture_url",
    "is_new",
    "created_by_admin",
    "upvote_count",
    "user_has_upvoted",
    "is_deleted",
)

DERIVED_FIELDS: Tuple[str, ...] = ("created_by_current_user",)

STORE_FIELDS: Tuple[str, ...] = ("child_ids",)

# Fields a merge may overwrite. id changes go through CommentStore.rekey.
MERGEABLE_FIELDS: FrozenSet[str] = frozenset(WIRE_FIELDS + DERIVED_FIELDS) - {"id"}


@dataclass(frozen=True)
class AttachmentRecord:
    """A file attached to a comment."""
    url: str
    mime_type: Optional[str] = None
    name: Optional[str] = None
    size: Optional[int] = None
    # Wire keys beyond mime_type/file/name/size, passed through untouched
    extra: Tuple[Tuple[str, Any], ...] = ()

    @property
    def media_type(self) -> Tuple[Optional[str], Optional[str]]:
        """(type, format) split of the mime type, e.g. ('image', 'png')."""
        if self.mime_type:
            parts = self.mime_type.split("/")
            if len(parts) == 2:
                return parts[0], parts[1]
        return None, None

    @property
    def is_previewable(self) -> bool:
        return self.media_type[0] in ("image", "video")

    @property
    def display_name(self) -> str:
        if self.name:
            return self.name
        return self.url.rstrip("/").rsplit("/", 1)[-1]

    def is_same_file(self, other: AttachmentRecord) -> bool:
        """Duplicate check used when attachments are added twice."""
        if self.name is not None and self.size is not None:
            return self.name == other.name and self.size == other.size
        return self.url == other.url


@dataclass(frozen=True)
class CommentRecord:
    """
    Enriched comment record.

    `assigned_fields` names the fields the source actually carried; a merge
    into an existing record only overwrites those. It takes no part in
    equality.
    """
    id: str
    parent_id: Optional[str] = None
    child_ids: Tuple[str, ...] = ()
    creator_user_id: Optional[str] = None
    creator_display_name: Optional[str] = None
    creator_profile_picture_url: Optional[str] = None
    created_at: Optional[datetime] = None
    modified_at: Optional[datetime] = None
    content: str = ""
    pings: Tuple[str, ...] = ()
    attachments: Tuple[AttachmentRecord, ...] = ()
    upvote_count: int = 0
    user_has_upvoted: bool = False
    is_deleted: bool = False
    is_new: bool = False
    created_by_current_user: bool = False
    created_by_admin: bool = False

    # Wire keys outside the field mapping, passed through untouched
    extra: Tuple[Tuple[str, Any], ...] = ()

    assigned_fields: FrozenSet[str] = field(
        default=frozenset(), compare=False, repr=False
    )

    def __post_init__(self):
        if not self.id or not isinstance(self.id, str):
            raise ValueError("CommentRecord id must be a non-empty string")
        if self.upvote_count < 0:
            raise ValueError(f"upvote_count must be >= 0, got {self.upvote_count}")

    @property
    def is_top_level(self) -> bool:
        return self.parent_id is None

    def has_attachments(self) -> bool:
        return len(self.attachments) > 0

    def extra_dict(self) -> dict:
        return {key: copy.deepcopy(value) for key, value in self.extra}

    def with_changes(self, **changes) -> CommentRecord:
        """Copy with the given fields replaced and marked as assigned."""
        assigned = self.assigned_fields | (frozenset(changes) & MERGEABLE_FIELDS)
        return replace(self, assigned_fields=assigned, **changes)


@dataclass(frozen=True)
class CommentSnapshot:
    """
    Immutable pre-mutation capture used for rollback.

    `record is None` means the comment did not exist. `captured_fields`
    restricts a restore to the fields this mutation touched; `None`
    restores every mergeable field.
    """
    comment_id: str
    record: Optional[CommentRecord]
    captured_fields: Optional[FrozenSet[str]] = None

    @property
    def existed(self) -> bool:
        return self.record is not None

    def values(self) -> Tuple[Tuple[str, Any], ...]:
        """The captured (field, value) pairs."""
        if self.record is None:
            return ()
        names = self.captured_fields if self.captured_fields is not None else MERGEABLE_FIELDS
        return tuple(
            (name, getattr(self.record, name))
            for name in sorted(names)
        )
