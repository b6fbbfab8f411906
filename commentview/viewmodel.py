"""
Comment View-Model

Orchestrates mutations against the store: validates, snapshots, applies
optimistically, dispatches to the gateway, then reconciles or rolls back.

MUTATION PROTOCOL:
==================
1. Validate      - ValidationError raised synchronously, store untouched
2. Snapshot      - capture the fields this mutation will touch
3. Apply         - mutate the store, emit the event (phase OPTIMISTIC)
4. Dispatch      - gateway call scheduled as an asyncio task
5. Confirm       - merge the server record, emit the same event (CONFIRMED)
6. Roll back     - restore this call's own snapshot, emit (REVERTED)

Steps 1-3 finish before the mutation method returns. The gateway await in
step 4 is the only suspension point.

RACE POLICY:
============
Overlapping mutations on one comment each roll back to their own
snapshot, never to a shared "last known good" state. Concurrent triggers
are not deduplicated.
"""

from __future__ import annotations
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import (
    Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Set
)
import asyncio
import logging
import time

from .config import CommentsContext, SortMode
from .contracts import (
    AttachmentRecord, AuditEventType, CommentEvent, CommentRecord, CommentSnapshot,
    ConsistencyError, ErrorCode, EventPhase, GatewayError, MutationKind,
    MutationOutcome, MutationResult, ValidationError, ViewModelEvent,
)
from .events import EventRegistry, Handler, Subscription
from .gateway.base import GatewayResponse, MutationGateway
from .observability import MutationObserver
from .policy import ActionPolicy, ActionSet
from .sorter import CommentSorter
from .store import CommentStore
from .transformer import CommentTransformer


logger = logging.getLogger(__name__)

_EVENT_FOR_KIND: Dict[MutationKind, ViewModelEvent] = {
    MutationKind.CREATE: ViewModelEvent.COMMENT_ADDED,
    MutationKind.UPDATE: ViewModelEvent.COMMENT_UPDATED,
    MutationKind.DELETE: ViewModelEvent.COMMENT_DELETED,
    MutationKind.UPVOTE: ViewModelEvent.COMMENT_UPDATED,
}

_EARLIEST = datetime.min.replace(tzinfo=timezone.utc)


@dataclass
class PendingMutation:
    """
    Handle for a dispatched mutation.

    `comment_id` is the id the optimistic record was stored under (a
    temporary id for creates). Await the handle for the MutationResult.
    """
    kind: MutationKind
    comment_id: str
    task: asyncio.Task = field(repr=False)

    def __await__(self):
        return self.task.__await__()

    @property
    def done(self) -> bool:
        return self.task.done()

    def result(self) -> MutationResult:
        return self.task.result()


class CommentViewModel:
    """
    Single authorized mutator of the comment store.

    GUARANTEES:
    ===========
    1. Optimistic event precedes the confirm/rollback event of one mutation
    2. A failed gateway call leaves the touched fields as they were before
       the call
    3. No error escapes the mutation API except ValidationError, which is
       raised before anything changes
    """

    def __init__(
        self,
        gateway: MutationGateway,
        context: Optional[CommentsContext] = None,
        store: Optional[CommentStore] = None,
        observer: Optional[MutationObserver] = None,
    ):
        self._gateway = gateway
        self._context = context or CommentsContext()
        self._store = store if store is not None else CommentStore()
        self._transformer = CommentTransformer(self._context)
        self._sorter = CommentSorter(self._context)
        self._policy = ActionPolicy(self._context, self._has_live_replies)
        self._observer = observer or MutationObserver(clock=self._context.clock)
        self._events = EventRegistry(on_handler_error=self._record_handler_failure)
        self._aliases: Dict[str, str] = {}  # temporary id -> canonical id
        self._unconfirmed: Set[str] = set()  # temporary ids of creates in flight
        self._in_flight: Set[asyncio.Task] = set()

    # =========================================================================
    # COLLABORATORS
    # =========================================================================

    @property
    def context(self) -> CommentsContext:
        return self._context

    @property
    def store(self) -> CommentStore:
        return self._store

    @property
    def transformer(self) -> CommentTransformer:
        return self._transformer

    @property
    def sorter(self) -> CommentSorter:
        return self._sorter

    @property
    def policy(self) -> ActionPolicy:
        return self._policy

    @property
    def observer(self) -> MutationObserver:
        return self._observer

    # =========================================================================
    # SUBSCRIPTIONS
    # =========================================================================

    def subscribe(self, event_type: ViewModelEvent, handler: Handler) -> Subscription:
        return self._events.subscribe(event_type, handler)

    # =========================================================================
    # LOADING AND READS
    # =========================================================================

    def load(self, wire_records: Iterable[Mapping[str, Any]]) -> List[CommentRecord]:
        """
        Initial load. Records are inserted oldest first so parents normally
        precede their replies and child_ids follow creation order.
        """
        records = self._transformer.enrich_many(wire_records)
        records.sort(key=lambda r: r.created_at or _EARLIEST)
        loaded = [self._store.upsert(record) for record in records]
        self._observer.audit.record(
            AuditEventType.SYSTEM, "loaded", entity_type=None,
            metadata={"count": len(loaded)},
        )
        return [self._store.get(r.id) for r in loaded]

    def canonical_id(self, comment_id: str) -> str:
        """Follow temporary-id replacements to the id the store uses now."""
        seen = set()
        while comment_id in self._aliases and comment_id not in seen:
            seen.add(comment_id)
            comment_id = self._aliases[comment_id]
        return comment_id

    def get_comment(self, comment_id: str) -> Optional[CommentRecord]:
        return self._store.get(self.canonical_id(comment_id))

    def get_comments(self) -> List[CommentRecord]:
        return self._store.all()

    def top_level_comments(self, mode: Optional[SortMode] = None) -> List[CommentRecord]:
        return self._sorter.sort(self._store.all(), mode or self._context.options.default_sort)

    def replies(self, comment_id: str) -> List[CommentRecord]:
        """All descendants of a comment, flattened, in arrival order."""
        root = self.get_comment(comment_id)
        if root is None:
            return []
        descendants: Set[str] = set()
        stack = list(root.child_ids)
        while stack:
            child_id = stack.pop()
            if child_id in descendants:
                continue
            descendants.add(child_id)
            child = self._store.get(child_id)
            if child is not None:
                stack.extend(child.child_ids)
        return [r for r in self._store.all() if r.id in descendants]

    def reply_to(self, comment_id: str) -> Optional[CommentRecord]:
        """The parent, when the parent is itself a reply (shown as "reply to")."""
        record = self.get_comment(comment_id)
        if record is None or record.parent_id is None:
            return None
        parent = self._store.get(record.parent_id)
        if parent is None or parent.parent_id is None:
            return None
        return parent

    def comments_with_attachments(self) -> List[CommentRecord]:
        """Non-deleted comments carrying attachments, newest first."""
        with_files = [
            r for r in self._store.all() if r.has_attachments() and not r.is_deleted
        ]
        return self._sorter.order(with_files, SortMode.NEWEST)

    def permitted_actions(self, comment_id: str) -> Optional[ActionSet]:
        record = self.get_comment(comment_id)
        if record is None:
            return None
        return self._policy.permitted_actions(record)

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    async def drain(self) -> None:
        """Wait until every dispatched mutation has resolved."""
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight))

    # =========================================================================
    # MUTATIONS
    # =========================================================================

    def create_comment(
        self,
        content: str,
        parent_id: Optional[str] = None,
        pings: Sequence[str] = (),
        attachments: Sequence[AttachmentRecord] = (),
    ) -> PendingMutation:
        """Add a comment (or a reply when `parent_id` is given)."""
        loop = self._require_loop()
        options = self._context.options
        attachments = self._dedupe_attachments(attachments)

        if attachments and not options.enable_attachments:
            self._reject(MutationKind.CREATE, None, ErrorCode.FEATURE_DISABLED,
                         "Attachments are disabled")
        if not (content or "").strip() and not attachments:
            self._reject(MutationKind.CREATE, None, ErrorCode.EMPTY_CONTENT,
                         "Comment content must not be empty")

        if parent_id is not None:
            parent_id = self.canonical_id(parent_id)
            parent = self._store.get(parent_id)
            if not options.enable_replying:
                self._reject(MutationKind.CREATE, parent_id, ErrorCode.FEATURE_DISABLED,
                             "Replying is disabled")
            if parent is None:
                self._reject(MutationKind.CREATE, parent_id, ErrorCode.PARENT_NOT_FOUND,
                             f"Parent comment {parent_id!r} not found")
            # A failed parent create would leave the reply dangling
            if parent_id in self._unconfirmed:
                self._reject(MutationKind.CREATE, parent_id, ErrorCode.PARENT_NOT_CONFIRMED,
                             f"Parent comment {parent_id!r} is not confirmed yet")
            if not self._policy.can_reply(parent):
                self._reject(MutationKind.CREATE, parent_id, ErrorCode.NOT_PERMITTED,
                             "Cannot reply to a deleted comment")

        now = self._context.now()
        temp_id = self._context.new_temporary_id()
        record = CommentRecord(id=temp_id).with_changes(
            parent_id=parent_id,
            creator_user_id=options.current_user_id,
            creator_display_name=options.current_user_display_name,
            created_at=now,
            modified_at=now,
            content=content or "",
            pings=tuple(pings),
            attachments=attachments,
            upvote_count=0,
            user_has_upvoted=False,
            is_deleted=False,
            is_new=True,
            created_by_current_user=True,
            created_by_admin=options.current_user_is_admin,
        )

        snapshot = self._store.snapshot(temp_id)
        stored = self._store.upsert(record)
        self._unconfirmed.add(temp_id)
        self._optimistic(MutationKind.CREATE, stored)
        if parent_id is not None:
            self._refresh_action_bar(parent_id, EventPhase.OPTIMISTIC)

        return self._dispatch(
            loop, MutationKind.CREATE, stored, snapshot, self._gateway.submit_create
        )

    def edit_comment(
        self,
        comment_id: str,
        content: str,
        pings: Optional[Sequence[str]] = None,
        attachments: Optional[Sequence[AttachmentRecord]] = None,
    ) -> Optional[PendingMutation]:
        """Replace content (and optionally pings/attachments). parent_id never changes."""
        loop = self._require_loop()
        record = self._existing(MutationKind.UPDATE, comment_id)
        if record is None:
            return None

        options = self._context.options
        if not options.enable_editing:
            self._reject(MutationKind.UPDATE, record.id, ErrorCode.FEATURE_DISABLED,
                         "Editing is disabled")
        if not self._policy.can_edit(record):
            self._reject(MutationKind.UPDATE, record.id, ErrorCode.NOT_PERMITTED,
                         "Only the author or an admin may edit this comment")

        changes: Dict[str, Any] = {"content": content or "", "modified_at": self._context.now()}
        if pings is not None:
            changes["pings"] = tuple(pings)
        if attachments is not None:
            if attachments and not options.enable_attachments:
                self._reject(MutationKind.UPDATE, record.id, ErrorCode.FEATURE_DISABLED,
                             "Attachments are disabled")
            changes["attachments"] = self._dedupe_attachments(attachments)

        has_files = bool(changes.get("attachments", record.attachments))
        if not changes["content"].strip() and not has_files:
            self._reject(MutationKind.UPDATE, record.id, ErrorCode.EMPTY_CONTENT,
                         "Comment content must not be empty")

        snapshot = self._store.snapshot(record.id, fields=changes)
        updated = self._apply(record, changes)
        self._optimistic(MutationKind.UPDATE, updated)
        return self._dispatch(
            loop, MutationKind.UPDATE, updated, snapshot, self._gateway.submit_update
        )

    def delete_comment(self, comment_id: str) -> Optional[PendingMutation]:
        """Tombstone a comment; child_ids on both sides stay as they are."""
        loop = self._require_loop()
        record = self._existing(MutationKind.DELETE, comment_id)
        if record is None:
            return None

        options = self._context.options
        if not options.enable_deleting:
            self._reject(MutationKind.DELETE, record.id, ErrorCode.FEATURE_DISABLED,
                         "Deleting is disabled")
        if not self._policy.can_delete(record):
            self._reject(MutationKind.DELETE, record.id, ErrorCode.NOT_PERMITTED,
                         "Comment may not be deleted by the current user")

        snapshot = self._store.snapshot(record.id, fields=("is_deleted",))
        deleted = self._apply(record, {"is_deleted": True})
        self._optimistic(MutationKind.DELETE, deleted)
        if deleted.parent_id is not None:
            self._refresh_action_bar(deleted.parent_id, EventPhase.OPTIMISTIC)
        return self._dispatch(
            loop, MutationKind.DELETE, deleted, snapshot, self._gateway.submit_delete
        )

    def toggle_upvote(self, comment_id: str) -> Optional[PendingMutation]:
        """Flip user_has_upvoted and move upvote_count by one, as one step."""
        loop = self._require_loop()
        record = self._existing(MutationKind.UPVOTE, comment_id)
        if record is None:
            return None

        if not self._context.options.enable_upvoting:
            self._reject(MutationKind.UPVOTE, record.id, ErrorCode.FEATURE_DISABLED,
                         "Upvoting is disabled")

        # (upvoted, 0) is inconsistent server state: the revoke clears the
        # flag and the count stays clamped at zero, so that pair cannot round-trip.
        if record.user_has_upvoted:
            changes = {"user_has_upvoted": False, "upvote_count": max(record.upvote_count - 1, 0)}
        else:
            changes = {"user_has_upvoted": True, "upvote_count": record.upvote_count + 1}

        snapshot = self._store.snapshot(record.id, fields=("upvote_count", "user_has_upvoted"))
        updated = self._apply(record, changes)
        self._optimistic(MutationKind.UPVOTE, updated)
        return self._dispatch(
            loop, MutationKind.UPVOTE, updated, snapshot, self._gateway.submit_upvote_toggle
        )

    # =========================================================================
    # DISPATCH AND COMPLETION
    # =========================================================================

    def _dispatch(
        self,
        loop: asyncio.AbstractEventLoop,
        kind: MutationKind,
        record: CommentRecord,
        snapshot: CommentSnapshot,
        submit: Callable[[Dict[str, Any]], Awaitable[GatewayResponse]],
    ) -> PendingMutation:
        payload = self._transformer.deplete(record)
        task = loop.create_task(self._complete(kind, record, snapshot, submit, payload))
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)
        return PendingMutation(kind=kind, comment_id=record.id, task=task)

    async def _complete(
        self,
        kind: MutationKind,
        record: CommentRecord,
        snapshot: CommentSnapshot,
        submit: Callable[[Dict[str, Any]], Awaitable[GatewayResponse]],
        payload: Dict[str, Any],
    ) -> MutationResult:
        started = time.monotonic()
        try:
            response = await submit(payload)
        except Exception as e:
            response = GatewayResponse.failure(
                ErrorCode.GATEWAY_EXCEPTION, f"{type(e).__name__}: {e}"
            )
        if not isinstance(response, GatewayResponse):
            response = GatewayResponse.failure(
                ErrorCode.INVALID_RESPONSE,
                f"Gateway returned {type(response).__name__}, expected GatewayResponse",
            )
        self._observer.metrics.record(
            "gateway_latency_ms", (time.monotonic() - started) * 1000, {"kind": kind.value}
        )

        if kind == MutationKind.CREATE:
            self._unconfirmed.discard(record.id)

        if response.success:
            try:
                return self._confirm(kind, record, response.record)
            except Exception as e:
                response = GatewayResponse.failure(
                    ErrorCode.INVALID_RESPONSE,
                    f"Unusable server record: {type(e).__name__}: {e}",
                )
        return self._roll_back(kind, record, snapshot, response.to_error(record.id))

    def _confirm(
        self,
        kind: MutationKind,
        record: CommentRecord,
        server_record: Dict[str, Any],
    ) -> MutationResult:
        current_id = self.canonical_id(record.id)
        if current_id not in self._store:
            return self._skip_completion(kind, current_id)

        enriched = self._transformer.enrich(server_record, default_id=current_id)
        previous_id = None
        if kind == MutationKind.CREATE:
            if enriched.id != current_id:
                if enriched.id in self._store:
                    raise ValueError(f"Server id {enriched.id!r} already exists")
                self._store.rekey(current_id, enriched.id)
                self._aliases[current_id] = enriched.id
                previous_id = current_id
        else:
            enriched = replace(enriched, id=current_id)
        if kind == MutationKind.DELETE:
            enriched = enriched.with_changes(is_deleted=True)

        merged = self._store.upsert(enriched)
        self._emit(kind, merged.id, EventPhase.CONFIRMED, merged, previous_id=previous_id)
        self._observer.audit.record(
            AuditEventType.MUTATION, "confirmed", entity_id=merged.id,
            metadata={"kind": kind.value, "previous_id": previous_id or ""},
        )
        return MutationResult(
            kind=kind, comment_id=merged.id, outcome=MutationOutcome.CONFIRMED,
            record=merged, previous_id=previous_id,
        )

    def _roll_back(
        self,
        kind: MutationKind,
        record: CommentRecord,
        snapshot: CommentSnapshot,
        error: GatewayError,
    ) -> MutationResult:
        current_id = self.canonical_id(record.id)
        if snapshot.existed:
            if current_id not in self._store:
                self._skip_completion(kind, current_id)
                return MutationResult(
                    kind=kind, comment_id=current_id,
                    outcome=MutationOutcome.ROLLED_BACK, record=None, error=error,
                )
            if current_id != snapshot.comment_id:
                snapshot = CommentSnapshot(
                    comment_id=current_id,
                    record=replace(snapshot.record, id=current_id),
                    captured_fields=snapshot.captured_fields,
                )
        else:
            snapshot = replace(snapshot, comment_id=current_id)

        restored = self._store.restore(snapshot)
        logger.warning(
            "Rolled back %s of comment %s: %s", kind.value, current_id, error.message
        )
        self._observer.metrics.record("rollbacks_total", 1, {"kind": kind.value})
        self._observer.audit.record(
            AuditEventType.MUTATION, "rolled_back", entity_id=current_id,
            metadata={"kind": kind.value, "code": error.code.value, "message": error.message},
        )

        self._emit(kind, current_id, EventPhase.REVERTED, restored, error=error)
        refresh_parent = kind == MutationKind.DELETE or (
            kind == MutationKind.CREATE and restored is None
        )
        if refresh_parent and record.parent_id is not None:
            self._refresh_action_bar(record.parent_id, EventPhase.REVERTED)

        return MutationResult(
            kind=kind, comment_id=current_id, outcome=MutationOutcome.ROLLED_BACK,
            record=restored, error=error,
        )

    # =========================================================================
    # HELPERS
    # =========================================================================

    @staticmethod
    def _require_loop() -> asyncio.AbstractEventLoop:
        try:
            return asyncio.get_running_loop()
        except RuntimeError:
            raise RuntimeError(
                "Comment mutations must be started from a running event loop"
            ) from None

    def _existing(self, kind: MutationKind, comment_id: str) -> Optional[CommentRecord]:
        """The live target of a mutation, or None (audited as skipped)."""
        record = self.get_comment(comment_id)
        if record is None:
            error = ConsistencyError(
                ErrorCode.COMMENT_NOT_FOUND, f"Comment {comment_id!r} not found", comment_id
            )
        elif record.is_deleted:
            # Usually a click that raced a delete
            error = ConsistencyError(
                ErrorCode.ALREADY_DELETED, f"Comment {record.id!r} is deleted", record.id
            )
        else:
            return record
        self._observer.audit.record(
            AuditEventType.MUTATION, "skipped", entity_id=error.comment_id,
            metadata=dict(error.context(), kind=kind.value),
        )
        return None

    def _skip_completion(self, kind: MutationKind, comment_id: str) -> MutationResult:
        self._observer.audit.record(
            AuditEventType.MUTATION, "skipped", entity_id=comment_id,
            metadata={"kind": kind.value, "code": ErrorCode.COMMENT_NOT_FOUND.value},
        )
        return MutationResult(
            kind=kind, comment_id=comment_id, outcome=MutationOutcome.CONFIRMED, record=None,
        )

    def _reject(
        self,
        kind: MutationKind,
        comment_id: Optional[str],
        code: ErrorCode,
        message: str,
    ) -> None:
        error = ValidationError(code, message, comment_id)
        self._observer.audit.record(
            AuditEventType.MUTATION, "rejected", entity_id=comment_id,
            metadata=dict(error.context(), kind=kind.value),
        )
        raise error

    def _apply(self, record: CommentRecord, changes: Mapping[str, Any]) -> CommentRecord:
        return self._store.upsert(
            replace(record, assigned_fields=frozenset(changes), **changes)
        )

    def _optimistic(self, kind: MutationKind, record: CommentRecord) -> None:
        self._observer.metrics.record("mutations_total", 1, {"kind": kind.value})
        self._observer.audit.record(
            AuditEventType.MUTATION, "optimistic", entity_id=record.id,
            metadata={"kind": kind.value},
        )
        self._emit(kind, record.id, EventPhase.OPTIMISTIC, record)

    def _emit(
        self,
        kind: MutationKind,
        comment_id: str,
        phase: EventPhase,
        record: Optional[CommentRecord],
        previous_id: Optional[str] = None,
        error: Optional[GatewayError] = None,
    ) -> None:
        self._events.emit(CommentEvent(
            event_type=_EVENT_FOR_KIND[kind],
            comment_id=comment_id,
            phase=phase,
            record=record,
            previous_id=previous_id,
            error=error,
        ))

    def _refresh_action_bar(self, parent_id: str, phase: EventPhase) -> None:
        self._events.emit(CommentEvent(
            event_type=ViewModelEvent.ACTION_BAR_REFRESH,
            comment_id=self.canonical_id(parent_id),
            phase=phase,
        ))

    def _record_handler_failure(self, event: CommentEvent, handler: Handler, exc: Exception) -> None:
        self._observer.audit.record(
            AuditEventType.ERROR, "handler_failed", entity_id=event.comment_id,
            metadata={
                "event": event.event_type.value,
                "handler": getattr(handler, "__qualname__", repr(handler)),
                "error": f"{type(exc).__name__}: {exc}",
            },
        )

    def _has_live_replies(self, record: CommentRecord) -> bool:
        return any(
            child is not None and not child.is_deleted
            for child in (self._store.get(c) for c in record.child_ids)
        )

    @staticmethod
    def _dedupe_attachments(attachments: Sequence[AttachmentRecord]) -> tuple:
        unique: List[AttachmentRecord] = []
        for attachment in attachments:
            if not any(attachment.is_same_file(kept) for kept in unique):
                unique.append(attachment)
        return tuple(unique)
