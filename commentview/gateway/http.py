"""
HTTP Mutation Gateway

REST transport for comment mutations over httpx.

PRINCIPLES:
===========
1. Failed calls are first-class responses, never exceptions
2. A 2xx response with a JSON object body is the authoritative record
3. A 2xx response without a body confirms the payload as sent

ROUTES:
=======
POST   {base}/comments                 create
PUT    {base}/comments/{id}            update
DELETE {base}/comments/{id}            delete
POST   {base}/comments/{id}/upvotes    upvote
DELETE {base}/comments/{id}/upvotes    revoke upvote
"""

from __future__ import annotations
from typing import Any, Dict, Mapping, Optional
from urllib.parse import quote

import httpx

from ..contracts import ErrorCode
from .base import GatewayResponse, MutationGateway


class HttpMutationGateway(MutationGateway):
    """
    Sends depleted payloads as JSON.

    GUARANTEES:
    ===========
    1. Every call returns a GatewayResponse
    2. Non-2xx status -> HTTP_ERROR
    3. Connection/timeout problems -> TRANSPORT_ERROR
    4. Undecodable or non-object body -> INVALID_RESPONSE
    """

    def __init__(
        self,
        base_url: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 15.0,
        headers: Optional[Mapping[str, str]] = None,
        id_key: str = "id",
        upvoted_key: str = "user_has_upvoted",
    ):
        """
        Args:
            base_url: API root, e.g. "https://example.org/api"
            client: Shared client; if omitted a client is opened per call
            id_key / upvoted_key: wire keys under the active field mapping
        """
        self._base_url = base_url.rstrip("/")
        self._client = client
        self._timeout = timeout
        self._headers = dict(headers or {})
        self._id_key = id_key
        self._upvoted_key = upvoted_key

    async def submit_create(self, payload: Dict[str, Any]) -> GatewayResponse:
        return await self._send("POST", "/comments", payload)

    async def submit_update(self, payload: Dict[str, Any]) -> GatewayResponse:
        return await self._send("PUT", self._comment_path(payload), payload)

    async def submit_delete(self, payload: Dict[str, Any]) -> GatewayResponse:
        return await self._send("DELETE", self._comment_path(payload), payload)

    async def submit_upvote_toggle(self, payload: Dict[str, Any]) -> GatewayResponse:
        method = "POST" if payload.get(self._upvoted_key) else "DELETE"
        return await self._send(method, self._comment_path(payload) + "/upvotes", payload)

    # =========================================================================
    # TRANSPORT
    # =========================================================================

    def _comment_path(self, payload: Mapping[str, Any]) -> str:
        return f"/comments/{quote(str(payload[self._id_key]), safe='')}"

    async def _send(self, method: str, path: str, payload: Dict[str, Any]) -> GatewayResponse:
        url = self._base_url + path
        try:
            if self._client is not None:
                response = await self._client.request(
                    method, url, json=payload, headers=self._headers
                )
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.request(
                        method, url, json=payload, headers=self._headers
                    )
        except httpx.HTTPError as e:
            return GatewayResponse.failure(
                ErrorCode.TRANSPORT_ERROR, f"{method} {url} failed: {e}"
            )

        if not response.is_success:
            return GatewayResponse.failure(
                ErrorCode.HTTP_ERROR, f"{method} {url} -> HTTP {response.status_code}"
            )

        if not response.content:
            return GatewayResponse.ok(dict(payload))

        try:
            body = response.json()
        except ValueError as e:
            return GatewayResponse.failure(
                ErrorCode.INVALID_RESPONSE, f"Undecodable response body: {e}"
            )
        if not isinstance(body, dict):
            return GatewayResponse.failure(
                ErrorCode.INVALID_RESPONSE,
                f"Expected a JSON object, got {type(body).__name__}",
            )
        return GatewayResponse.ok(body)
