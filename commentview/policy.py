"""
Action Policy

Decides which actions a comment's action bar offers. The view-model uses
the same rules to validate edit and delete requests, so the UI and the
mutation API never disagree.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Callable, Optional

from .config import CommentsContext
from .contracts import CommentRecord


@dataclass(frozen=True)
class ActionSet:
    """Actions permitted on one comment."""
    reply: bool
    upvote: bool
    edit: bool
    delete: bool

    def names(self) -> tuple:
        return tuple(
            name for name in ("reply", "upvote", "edit", "delete")
            if getattr(self, name)
        )


class ActionPolicy:
    """
    Permission rules for the current user.

    `has_live_replies` is supplied by the owner of the store; replies that
    are tombstoned do not block deleting their parent.
    """

    def __init__(
        self,
        context: CommentsContext,
        has_live_replies: Callable[[CommentRecord], bool],
    ):
        self._context = context
        self._has_live_replies = has_live_replies

    def is_owner_or_admin(self, record: CommentRecord) -> bool:
        return record.created_by_current_user or self._context.options.current_user_is_admin

    def can_reply(self, record: Optional[CommentRecord]) -> bool:
        if not self._context.options.enable_replying:
            return False
        return record is None or not record.is_deleted

    def can_upvote(self, record: CommentRecord) -> bool:
        return self._context.options.enable_upvoting and not record.is_deleted

    def can_edit(self, record: CommentRecord) -> bool:
        options = self._context.options
        return options.enable_editing and not record.is_deleted and self.is_owner_or_admin(record)

    def can_delete(self, record: CommentRecord) -> bool:
        options = self._context.options
        if not options.enable_deleting or record.is_deleted:
            return False
        if not self.is_owner_or_admin(record):
            return False
        return options.enable_deleting_comment_with_replies or not self._has_live_replies(record)

    def permitted_actions(self, record: CommentRecord) -> ActionSet:
        return ActionSet(
            reply=self.can_reply(record),
            upvote=self.can_upvote(record),
            edit=self.can_edit(record),
            delete=self.can_delete(record),
        )
