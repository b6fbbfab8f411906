"""
Comment Transformer

Converts between external wire records and enriched internal records.

MAPPING BOUNDARY:
=================
This is the ONLY place where wire dicts become CommentRecords and back.
Field names go through the configured FieldMapping; keys the mapping does
not cover pass through in `extra`, untouched.

ROUND TRIP:
===========
deplete(enrich(x)) == x for every wire record x whose
- id and parent are strings (parent may be a falsy marker only if None),
- timestamps are in the configured format (ISO with offset, or epoch ms),
- attachments carry at least `mime_type` and `file` (other keys pass through),
- booleans are real bools and upvote_count an int.
"""

from __future__ import annotations
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set
import copy

from .config import CommentsContext, TimestampFormat
from .contracts import AttachmentRecord, CommentRecord, WIRE_FIELDS


EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

_BOOL_FIELDS = frozenset({"is_new", "created_by_admin", "user_has_upvoted", "is_deleted"})
_OPTIONAL_STR_FIELDS = frozenset({
    "creator_user_id", "creator_display_name", "creator_profile_picture_url",
})
_ATTACHMENT_KEYS = frozenset({"mime_type", "file", "name", "size"})

_RECORD_DEFAULTS = CommentRecord(id="_defaults")


# =============================================================================
# TIMESTAMPS
# =============================================================================

def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Accept a datetime, epoch milliseconds or an ISO 8601 string.

    Naive values are taken as UTC; explicit offsets are kept as given.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, bool):
        raise ValueError(f"Not a timestamp: {value!r}")
    elif isinstance(value, (int, float)):
        return EPOCH + timedelta(milliseconds=value)
    elif isinstance(value, str):
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    else:
        raise ValueError(f"Not a timestamp: {value!r}")

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def format_timestamp(value: Optional[datetime], fmt: TimestampFormat) -> Any:
    if value is None:
        return None
    if fmt == TimestampFormat.EPOCH_MS:
        return (value - EPOCH) // timedelta(milliseconds=1)
    return value.isoformat()


# =============================================================================
# TRANSFORMER
# =============================================================================

class CommentTransformer:
    """
    Maps wire dicts to CommentRecords (enrich) and back (deplete).

    SINGLE POINT OF CONVERSION:
    ===========================
    Store, view-model and gateway never rename fields themselves.
    """

    def __init__(self, context: CommentsContext):
        self._context = context

    # =========================================================================
    # ENRICH
    # =========================================================================

    def enrich(
        self,
        wire: Mapping[str, Any],
        context: Optional[CommentsContext] = None,
        default_id: Optional[str] = None,
    ) -> CommentRecord:
        """
        Build an enriched record from a wire dict.

        Only fields present on the wire are marked as assigned, so merging
        a partial server response never resets the fields it left out.
        `default_id` stands in when the wire record carries no id.
        """
        context = context or self._context
        to_internal = context.options.field_mappings.to_internal()

        values: Dict[str, Any] = {}
        extra: Dict[str, Any] = {}
        for key, raw in wire.items():
            internal = to_internal.get(key)
            if internal is None:
                extra[key] = copy.deepcopy(raw)
            else:
                values[internal] = self._parse_field(internal, raw)

        if values.get("id") is None:
            if default_id is None:
                raise ValueError("Wire record carries no id")
            values["id"] = default_id

        assigned: Set[str] = set(values) - {"id"}
        if "creator_user_id" in values:
            current_user = context.options.current_user_id
            values["created_by_current_user"] = (
                current_user is not None and values["creator_user_id"] == current_user
            )
            assigned.add("created_by_current_user")

        return CommentRecord(
            extra=tuple(extra.items()),
            assigned_fields=frozenset(assigned),
            **values,
        )

    def enrich_many(
        self,
        wires: Iterable[Mapping[str, Any]],
        context: Optional[CommentsContext] = None,
    ) -> List[CommentRecord]:
        return [self.enrich(wire, context) for wire in wires]

    # =========================================================================
    # DEPLETE
    # =========================================================================

    def deplete(self, record: CommentRecord) -> Dict[str, Any]:
        """
        Wire-shaped payload for the gateway.

        Derived and store-owned fields are dropped. A mapped field is
        written when the source carried it or when it differs from the
        record default.
        """
        options = self._context.options
        to_external = options.field_mappings.to_external()

        payload: Dict[str, Any] = {}
        for internal in WIRE_FIELDS:
            value = getattr(record, internal)
            if (
                internal != "id"
                and internal not in record.assigned_fields
                and value == getattr(_RECORD_DEFAULTS, internal)
            ):
                continue
            payload[to_external[internal]] = self._format_field(
                internal, value, options.timestamp_format
            )

        for key, value in record.extra:
            payload.setdefault(key, copy.deepcopy(value))
        return payload

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _parse_field(self, internal: str, raw: Any) -> Any:
        if internal == "id":
            return None if raw is None else str(raw)
        if internal == "parent_id":
            # falsy parent markers ("" / 0 / False / None) mean top-level
            return str(raw) if raw else None
        if internal in ("created_at", "modified_at"):
            return parse_timestamp(raw)
        if internal == "content":
            return "" if raw is None else str(raw)
        if internal == "attachments":
            return tuple(self._parse_attachment(a) for a in raw or ())
        if internal == "pings":
            return tuple(raw or ())
        if internal == "upvote_count":
            return int(raw or 0)
        if internal in _BOOL_FIELDS:
            return bool(raw)
        if internal in _OPTIONAL_STR_FIELDS:
            return None if raw is None else str(raw)
        return raw

    def _format_field(self, internal: str, value: Any, fmt: TimestampFormat) -> Any:
        if internal in ("created_at", "modified_at"):
            return format_timestamp(value, fmt)
        if internal == "attachments":
            return [self._format_attachment(a) for a in value]
        if internal == "pings":
            return list(value)
        return value

    @staticmethod
    def _parse_attachment(raw: Any) -> AttachmentRecord:
        if isinstance(raw, AttachmentRecord):
            return raw
        return AttachmentRecord(
            url=raw["file"],
            mime_type=raw.get("mime_type"),
            name=raw.get("name"),
            size=raw.get("size"),
            extra=tuple(
                (key, copy.deepcopy(value))
                for key, value in raw.items()
                if key not in _ATTACHMENT_KEYS
            ),
        )

    @staticmethod
    def _format_attachment(attachment: AttachmentRecord) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "mime_type": attachment.mime_type,
            "file": attachment.url,
        }
        if attachment.name is not None:
            out["name"] = attachment.name
        if attachment.size is not None:
            out["size"] = attachment.size
        for key, value in attachment.extra:
            out.setdefault(key, copy.deepcopy(value))
        return out
