"""
Mutation Gateway Abstraction
============================

Abstract interface for the transport that performs comment mutations.

BOUNDARY ENFORCEMENT:
- The view-model only ever calls these four coroutines
- Each call resolves to exactly one GatewayResponse: success or failure
- Retries, timeouts and transport details belong to implementations
"""

from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

from ..contracts import ErrorCode, GatewayError


@dataclass(frozen=True)
class GatewayResponse:
    """
    Outcome of one gateway call.

    INVARIANT: Either (success=True, record set) or (success=False, error_code set)
    """
    success: bool
    record: Optional[Dict[str, Any]] = None
    error_code: Optional[ErrorCode] = None
    error_message: Optional[str] = None

    def __post_init__(self):
        if self.success and self.record is None:
            raise ValueError("Successful response must carry a record")
        if not self.success and self.error_code is None:
            raise ValueError("Failed response must have error_code")

    @staticmethod
    def ok(record: Dict[str, Any]) -> GatewayResponse:
        return GatewayResponse(success=True, record=record)

    @staticmethod
    def failure(
        code: ErrorCode = ErrorCode.GATEWAY_REJECTED,
        message: str = "Gateway rejected the mutation",
    ) -> GatewayResponse:
        return GatewayResponse(success=False, error_code=code, error_message=message)

    def to_error(self, comment_id: Optional[str] = None) -> GatewayError:
        return GatewayError(
            self.error_code or ErrorCode.GATEWAY_REJECTED,
            self.error_message or "Gateway rejected the mutation",
            comment_id=comment_id,
        )


class MutationGateway(ABC):
    """
    Abstract mutation transport.

    Each method receives a depleted (wire-shaped) payload and returns the
    server's authoritative record on success. Implementations SHOULD
    return failures rather than raise; the view-model converts anything
    raised into a GATEWAY_EXCEPTION failure.
    """

    @abstractmethod
    async def submit_create(self, payload: Dict[str, Any]) -> GatewayResponse:
        """Persist a new comment; the response carries the canonical id."""

    @abstractmethod
    async def submit_update(self, payload: Dict[str, Any]) -> GatewayResponse:
        """Persist an edited comment."""

    @abstractmethod
    async def submit_delete(self, payload: Dict[str, Any]) -> GatewayResponse:
        """Mark a comment deleted."""

    @abstractmethod
    async def submit_upvote_toggle(self, payload: Dict[str, Any]) -> GatewayResponse:
        """Persist the upvote state carried by the payload."""
