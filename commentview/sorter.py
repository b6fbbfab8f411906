"""
Comment Sorter

Pure ordering of top-level comments. Replies are never re-sorted; they
keep arrival order inside their parent.

DETERMINISM:
============
Every comparison ends in a tie-break, so the result does not depend on
the stability of the underlying sort.
"""

from __future__ import annotations
from datetime import datetime, timezone
from functools import cmp_to_key
from typing import Iterable, List, Optional

from .config import CommentsContext, SortMode
from .contracts import CommentRecord


# Records without a creation time sort as the oldest
_MISSING_TIME = datetime.min.replace(tzinfo=timezone.utc)


def _created(record: CommentRecord) -> datetime:
    return record.created_at or _MISSING_TIME


def _sign(value: float) -> int:
    return (value > 0) - (value < 0)


class CommentSorter:
    """Comparator-based sorter for top-level comments."""

    def __init__(self, context: Optional[CommentsContext] = None):
        self._context = context or CommentsContext()

    def popularity(self, record: CommentRecord) -> int:
        score = len(record.child_ids)
        if self._context.options.enable_upvoting:
            score += record.upvote_count
        return score

    def compare(self, a: CommentRecord, b: CommentRecord, mode: SortMode) -> int:
        """Negative when `a` sorts first."""
        if mode == SortMode.POPULARITY:
            by_score = self.popularity(b) - self.popularity(a)
            if by_score:
                return _sign(by_score)
            by_time = self._compare_time(b, a)  # newer first
        elif mode == SortMode.OLDEST:
            by_time = self._compare_time(a, b)
        elif mode == SortMode.NEWEST:
            by_time = self._compare_time(b, a)
        else:
            raise ValueError(f"Unsupported sort mode: {mode!r}")

        if by_time:
            return by_time
        # Final tie-break on id keeps the order total
        return (a.id > b.id) - (a.id < b.id)

    def sort(
        self,
        records: Iterable[CommentRecord],
        mode: SortMode,
    ) -> List[CommentRecord]:
        """New list of the top-level records in `records`, ordered by `mode`."""
        return self.order([r for r in records if r.parent_id is None], mode)

    def order(
        self,
        records: Iterable[CommentRecord],
        mode: SortMode,
    ) -> List[CommentRecord]:
        """Order `records` as given, without the top-level filter."""
        mode = SortMode(mode)
        return sorted(records, key=cmp_to_key(lambda a, b: self.compare(a, b, mode)))

    @staticmethod
    def _compare_time(a: CommentRecord, b: CommentRecord) -> int:
        ta, tb = _created(a), _created(b)
        return (ta > tb) - (ta < tb)
