"""
Error Contracts

Explicit, enumerated failure states for the comment view-model.

ERROR CLASSES:
==============
1. ValidationError  - precondition failed, store untouched
2. GatewayError     - dispatched operation failed, triggers rollback
3. ConsistencyError - target record missing or tombstoned, mutation is a
                      silent no-op
"""

from __future__ import annotations
from enum import Enum
from typing import Optional, Tuple


class ErrorCode(Enum):
    """
    Every failure the core can produce.
    No silent fallbacks - each state is enumerated.
    """
    # Validation
    EMPTY_CONTENT = "empty_content"
    NOT_PERMITTED = "not_permitted"
    FEATURE_DISABLED = "feature_disabled"
    PARENT_NOT_FOUND = "parent_not_found"
    PARENT_NOT_CONFIRMED = "parent_not_confirmed"

    # Gateway
    GATEWAY_REJECTED = "gateway_rejected"
    GATEWAY_EXCEPTION = "gateway_exception"
    TRANSPORT_ERROR = "transport_error"
    HTTP_ERROR = "http_error"
    INVALID_RESPONSE = "invalid_response"

    # Consistency
    COMMENT_NOT_FOUND = "comment_not_found"
    ALREADY_DELETED = "already_deleted"


class CommentError(Exception):
    """Base class for all view-model errors."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        comment_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.comment_id = comment_id

    def context(self) -> Tuple[Tuple[str, str], ...]:
        """Flattened key/value context for audit entries."""
        pairs = [("code", self.code.value), ("message", self.message)]
        if self.comment_id is not None:
            pairs.append(("comment_id", self.comment_id))
        return tuple(pairs)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.code.name}, {self.message!r})"


class ValidationError(CommentError):
    """Raised synchronously before any store mutation."""


class GatewayError(CommentError):
    """
    The gateway reported failure for a dispatched mutation.

    Never raised out of the mutation API; carried on the REVERTED event
    and on the mutation result instead.
    """


class ConsistencyError(CommentError):
    """Mutation targeted an id the store does not hold, or a tombstone."""
