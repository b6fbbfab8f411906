"""
Mock Mutation Gateway
=====================

Deterministic in-memory gateway for tests and demos.

GUARANTEES:
- Successful calls echo the payload back (creates get a canonical id)
- Explicit failure modes can be triggered globally or per call
- Calls can be held open to interleave overlapping mutations
- No network access
"""

from __future__ import annotations
import asyncio
import copy
import itertools
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Tuple

from ..contracts import ErrorCode
from .base import GatewayResponse, MutationGateway


class MockGateway(MutationGateway):
    """
    Echo gateway.

    Response selection, in order: a queued response, the global failure
    mode, then an echo of the payload.
    """

    def __init__(
        self,
        failure_mode: Optional[ErrorCode] = None,
        id_key: str = "id",
        id_prefix: str = "c",
        latency_s: float = 0.0,
    ):
        """
        Args:
            failure_mode: If set, every call fails with this code
            id_key: Wire key holding the comment id
            id_prefix: Prefix of canonical ids assigned on create
            latency_s: Simulated latency per call
        """
        self.failure_mode = failure_mode
        self._id_key = id_key
        self._id_prefix = id_prefix
        self._latency_s = latency_s
        self._ids = itertools.count(1)
        self._queued: Deque[GatewayResponse] = deque()
        self._gate: Optional[asyncio.Event] = None
        self.calls: List[Tuple[str, Dict[str, Any]]] = []

    # =========================================================================
    # SCRIPTING
    # =========================================================================

    def queue_response(self, response: GatewayResponse) -> None:
        """Use `response` for the next call instead of the default."""
        self._queued.append(response)

    def fail_next(self, code: ErrorCode = ErrorCode.GATEWAY_REJECTED) -> None:
        self.queue_response(GatewayResponse.failure(code, f"Scripted failure: {code.value}"))

    def hold(self) -> None:
        """Calls made from now on wait until release()."""
        self._gate = asyncio.Event()

    def release(self) -> None:
        if self._gate is not None:
            self._gate.set()
            self._gate = None

    def operations(self) -> List[str]:
        return [operation for operation, _ in self.calls]

    # =========================================================================
    # GATEWAY CONTRACT
    # =========================================================================

    async def submit_create(self, payload: Dict[str, Any]) -> GatewayResponse:
        echoed = copy.deepcopy(payload)
        echoed[self._id_key] = f"{self._id_prefix}{next(self._ids)}"
        return await self._respond("create", payload, echoed)

    async def submit_update(self, payload: Dict[str, Any]) -> GatewayResponse:
        return await self._respond("update", payload, copy.deepcopy(payload))

    async def submit_delete(self, payload: Dict[str, Any]) -> GatewayResponse:
        return await self._respond("delete", payload, copy.deepcopy(payload))

    async def submit_upvote_toggle(self, payload: Dict[str, Any]) -> GatewayResponse:
        return await self._respond("upvote", payload, copy.deepcopy(payload))

    async def _respond(
        self,
        operation: str,
        payload: Dict[str, Any],
        echoed: Dict[str, Any],
    ) -> GatewayResponse:
        self.calls.append((operation, copy.deepcopy(payload)))
        # Pick the response at call time so scripting order matches call order
        if self._queued:
            response = self._queued.popleft()
        elif self.failure_mode is not None:
            response = GatewayResponse.failure(
                self.failure_mode, f"Mock failure mode: {self.failure_mode.value}"
            )
        else:
            response = GatewayResponse.ok(echoed)

        gate = self._gate
        if gate is not None:
            await gate.wait()
        if self._latency_s:
            await asyncio.sleep(self._latency_s)
        return response
