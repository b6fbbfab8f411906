"""
Comment Store

Keyed table of comment records; the single source of truth.

MUTATORS:
=========
- upsert:  merge or insert
- restore: write a snapshot back (rollback)
- rekey:   swap a temporary id for the canonical one

Everything else is a read. Only the view-model is expected to call the
mutators; other components read through get/snapshot.

INVARIANTS:
===========
1. Ids are unique
2. A child id appears in exactly one parent's child_ids, in arrival order
3. parent_id never changes once a record is stored
4. Records are never removed, except a never-confirmed record restored
   to "absent" by its own rollback
"""

from __future__ import annotations
from dataclasses import replace
from typing import Dict, FrozenSet, Iterable, Iterator, List, Optional

from .contracts import CommentRecord, CommentSnapshot, MERGEABLE_FIELDS


class CommentStore:
    """In-memory comment table with parent/child indexing."""

    def __init__(self, records: Optional[Iterable[CommentRecord]] = None):
        # dict preserves insertion order, which is arrival order
        self._records: Dict[str, CommentRecord] = {}
        # parent id -> child ids that arrived before their parent
        self._orphans: Dict[str, List[str]] = {}
        for record in records or ():
            self.upsert(record)

    # =========================================================================
    # READS
    # =========================================================================

    def get(self, comment_id: str) -> Optional[CommentRecord]:
        return self._records.get(comment_id)

    def __contains__(self, comment_id: object) -> bool:
        return comment_id in self._records

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[CommentRecord]:
        return iter(list(self._records.values()))

    def all(self) -> List[CommentRecord]:
        """All records in arrival order."""
        return list(self._records.values())

    def children(self, comment_id: str) -> List[CommentRecord]:
        record = self._records.get(comment_id)
        if record is None:
            return []
        return [self._records[child_id] for child_id in record.child_ids]

    def snapshot(
        self,
        comment_id: str,
        fields: Optional[Iterable[str]] = None,
    ) -> CommentSnapshot:
        """
        Capture a record (or some of its fields) for a later restore.

        Records are frozen, so the capture cannot drift as the store moves on.
        """
        captured: Optional[FrozenSet[str]] = None
        if fields is not None:
            captured = frozenset(fields)
            unknown = captured - MERGEABLE_FIELDS
            if unknown:
                raise ValueError(f"Cannot snapshot non-mergeable field(s): {sorted(unknown)}")
        return CommentSnapshot(
            comment_id=comment_id,
            record=self._records.get(comment_id),
            captured_fields=captured,
        )

    # =========================================================================
    # MUTATORS
    # =========================================================================

    def upsert(self, record: CommentRecord) -> CommentRecord:
        """
        Merge into an existing record or insert a new one.

        Merge copies only `record.assigned_fields` and the record's extra
        keys; every other field of the stored record is preserved. The
        stored parent_id and child_ids are never overwritten by a merge.
        """
        existing = self._records.get(record.id)
        if existing is None:
            return self._insert(record)

        changes = {
            name: getattr(record, name)
            for name in record.assigned_fields & MERGEABLE_FIELDS
            if name != "parent_id"
        }
        extra = dict(existing.extra)
        extra.update(record.extra)
        merged = replace(
            existing,
            extra=tuple(extra.items()),
            assigned_fields=existing.assigned_fields | frozenset(changes),
            **changes,
        )
        self._records[merged.id] = merged
        return merged

    def restore(self, snapshot: CommentSnapshot) -> Optional[CommentRecord]:
        """
        Write a snapshot back.

        A snapshot of an absent record removes whatever was inserted since
        and unregisters it from its parent. Otherwise only the captured
        fields are written; child_ids always keep their current value.
        """
        current = self._records.get(snapshot.comment_id)
        if not snapshot.existed:
            if current is not None:
                self._remove(current)
            return None

        if current is None:
            # Removed after the snapshot was taken; re-insert the capture.
            return self._insert(snapshot.record)

        changes = dict(snapshot.values())
        changes.pop("parent_id", None)
        if snapshot.captured_fields is None:
            changes["extra"] = snapshot.record.extra
        restored = replace(current, **changes)
        self._records[restored.id] = restored
        return restored

    def rekey(self, old_id: str, new_id: str) -> Optional[CommentRecord]:
        """
        Replace a temporary id with the canonical server id.

        The record keeps its position in its parent's child_ids and its
        children are re-pointed at the new id.
        """
        record = self._records.get(old_id)
        if record is None or old_id == new_id:
            return record
        if new_id in self._records:
            raise ValueError(f"Cannot rekey {old_id!r}: id {new_id!r} already exists")

        renamed = replace(record, id=new_id)
        # Rebuild to keep arrival order with the new key in the old slot
        self._records = {
            (new_id if key == old_id else key): (renamed if key == old_id else value)
            for key, value in self._records.items()
        }

        if record.parent_id is not None and record.parent_id in self._records:
            parent = self._records[record.parent_id]
            self._records[parent.id] = replace(
                parent,
                child_ids=tuple(new_id if c == old_id else c for c in parent.child_ids),
            )
        elif record.parent_id in self._orphans:
            self._orphans[record.parent_id] = [
                new_id if c == old_id else c for c in self._orphans[record.parent_id]
            ]

        for child_id in renamed.child_ids:
            child = self._records.get(child_id)
            if child is not None:
                self._records[child_id] = replace(child, parent_id=new_id)

        if old_id in self._orphans:
            self._orphans[new_id] = self._orphans.pop(old_id)
        return renamed

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _insert(self, record: CommentRecord) -> CommentRecord:
        if self._creates_cycle(record):
            raise ValueError(f"Comment {record.id!r} would become its own ancestor")

        # Adopt children that arrived earlier
        pending = self._orphans.pop(record.id, [])
        child_ids = tuple(record.child_ids) + tuple(
            c for c in pending if c not in record.child_ids
        )
        record = replace(record, child_ids=child_ids)
        self._records[record.id] = record

        if record.parent_id is not None:
            parent = self._records.get(record.parent_id)
            if parent is None:
                waiting = self._orphans.setdefault(record.parent_id, [])
                if record.id not in waiting:
                    waiting.append(record.id)
            elif record.id not in parent.child_ids:
                self._records[parent.id] = replace(
                    parent, child_ids=parent.child_ids + (record.id,)
                )
        return record

    def _creates_cycle(self, record: CommentRecord) -> bool:
        seen = set()
        ancestor_id = record.parent_id
        while ancestor_id is not None and ancestor_id not in seen:
            if ancestor_id == record.id:
                return True
            seen.add(ancestor_id)
            ancestor = self._records.get(ancestor_id)
            ancestor_id = ancestor.parent_id if ancestor is not None else None
        return False

    def _remove(self, record: CommentRecord) -> None:
        del self._records[record.id]
        if record.parent_id is None:
            return
        parent = self._records.get(record.parent_id)
        if parent is not None:
            self._records[parent.id] = replace(
                parent,
                child_ids=tuple(c for c in parent.child_ids if c != record.id),
            )
        elif record.parent_id in self._orphans:
            waiting = [c for c in self._orphans[record.parent_id] if c != record.id]
            if waiting:
                self._orphans[record.parent_id] = waiting
            else:
                del self._orphans[record.parent_id]
