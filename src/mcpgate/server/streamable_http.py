"""
Streamable HTTP Transport Module

This module serves the single gateway endpoint. POST carries one JSON-RPC
message per HTTP request and the direct response comes back as JSON; GET opens
the session's notification channel as a Server-Sent Events stream; DELETE
terminates the session.

Every response produced here is either a JSON-RPC response or an error
envelope. The ``mcp-session-id`` header is set on every response that belongs
to a session.
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from http import HTTPStatus
from typing import Any

import anyio
from sse_starlette import EventSourceResponse
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.types import Receive, Scope, Send

from mcpgate.server.dispatcher import RequestDispatcher
from mcpgate.server.session import NotificationChannel, SessionManager
from mcpgate.server.transport_security import TransportSecurityMiddleware, TransportSecuritySettings
from mcpgate.shared.errors import ErrorEnvelope
from mcpgate.shared.exceptions import GatewayError, ValidationFailed
from mcpgate.shared.limits import LimitPolicy, LimitViolation
from mcpgate.types import (
    MCP_PROTOCOL_VERSION_HEADER,
    MCP_SESSION_ID_HEADER,
    SUPPORTED_PROTOCOL_VERSIONS,
    JSONRPCError,
    JSONRPCNotification,
    JSONRPCRequest,
    JSONRPCResponse,
    RequestId,
    parse_message,
)
from mcpgate.utilities.logging import get_logger

logger = get_logger(__name__)

CONTENT_TYPE_SSE = "text/event-stream"


class _BodyTooLarge(Exception):
    def __init__(self, violation: LimitViolation):
        self.violation = violation


class StreamableHTTPTransport:
    """
    ASGI application for the gateway endpoint.

    The transport owns no protocol state: sessions live in the
    :class:`SessionManager` and requests are answered by the
    :class:`RequestDispatcher`. The manager must be running while the
    transport serves requests.
    """

    def __init__(
        self,
        dispatcher: RequestDispatcher,
        session_manager: SessionManager,
        limits: LimitPolicy,
        security_settings: TransportSecuritySettings | None = None,
        ping_interval: float = 15.0,
    ):
        self.dispatcher = dispatcher
        self.sessions = session_manager
        self.limits = limits
        self.ping_interval = ping_interval
        self._security = TransportSecurityMiddleware(security_settings)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        request = Request(scope, receive)
        exchange: tuple[str, RequestId] | None = None
        if request.method == "POST":
            response, exchange = await self._handle_post(request)
        elif request.method == "GET":
            response = await self._handle_get(request)
        elif request.method == "DELETE":
            response = await self._handle_delete(request)
        else:
            response = self._error_response(
                ValidationFailed(f"Method {request.method} is not allowed").envelope,
                status_code=HTTPStatus.METHOD_NOT_ALLOWED,
                headers={"Allow": "GET, POST, DELETE"},
            )

        try:
            await response(scope, receive, send)
        finally:
            if exchange is not None:
                # releases notifications held back until this response was written
                with anyio.CancelScope(shield=True):
                    await self.sessions.finish_exchange(*exchange)

    def _error_response(
        self,
        envelope: ErrorEnvelope,
        session_id: str | None = None,
        status_code: int | None = None,
        headers: dict[str, str] | None = None,
    ) -> Response:
        response_headers = dict(headers or {})
        if session_id:
            response_headers[MCP_SESSION_ID_HEADER] = session_id
        return JSONResponse(
            envelope.to_wire(None),
            status_code=status_code or envelope.http_status,
            headers=response_headers,
        )

    def _validate_request(
        self, request: Request, session_id: str | None, is_post: bool = False
    ) -> GatewayError | None:
        """Check security headers and, after the handshake, the negotiated protocol version."""
        error = self._security.validate_request(request, is_post=is_post)
        if error is not None:
            return error

        # an absent header is accepted
        protocol_version = request.headers.get(MCP_PROTOCOL_VERSION_HEADER)
        if session_id and protocol_version is not None and protocol_version not in SUPPORTED_PROTOCOL_VERSIONS:
            supported = ", ".join(SUPPORTED_PROTOCOL_VERSIONS)
            return ValidationFailed(
                f"Unsupported protocol version: {protocol_version}. Supported versions: {supported}"
            )
        return None

    async def _read_body(self, request: Request) -> bytes:
        declared = request.headers.get("content-length")
        if declared is not None and declared.isdigit():
            violation = self.limits.check_payload_size(int(declared))
            if violation is not None:
                raise _BodyTooLarge(violation)

        body = bytearray()
        async for chunk in request.stream():
            body.extend(chunk)
            violation = self.limits.check_payload_size(len(body))
            if violation is not None:
                raise _BodyTooLarge(violation)
        return bytes(body)

    async def _handle_post(self, request: Request) -> tuple[Response, tuple[str, RequestId] | None]:
        """Handle one JSON-RPC message.

        Returns the response and, for requests answered within a session, the
        exchange to complete once the response has been sent.
        """
        session_id = request.headers.get(MCP_SESSION_ID_HEADER)

        error = self._validate_request(request, session_id, is_post=True)
        if error is not None:
            return self._error_response(error.envelope, session_id), None

        try:
            body = await self._read_body(request)
        except _BodyTooLarge as e:
            return self._error_response(e.violation.as_error().envelope, session_id), None

        try:
            raw = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError):
            return self._error_response(ValidationFailed("Request body is not valid JSON").envelope, session_id), None

        if isinstance(raw, list):
            envelope = ValidationFailed("Batch requests are not supported").envelope
            return self._error_response(envelope, session_id), None

        try:
            message = parse_message(raw)
        except ValueError as e:
            envelope = ValidationFailed(f"Invalid JSON-RPC message: {e}").envelope
            return self._error_response(envelope, session_id), None

        if isinstance(message, JSONRPCRequest):
            result = await self.dispatcher.dispatch(session_id, message)
            response = JSONResponse(
                result.message,
                status_code=result.status_code,
                headers=self._session_headers(result.session_id),
            )
            if result.session_id is None or result.status_code >= 400:
                return response, None
            return response, (result.session_id, message.id)

        if isinstance(message, JSONRPCNotification):
            try:
                await self.dispatcher.handle_notification(session_id, message)
            except GatewayError as e:
                return self._error_response(e.envelope, session_id), None
        elif isinstance(message, JSONRPCResponse | JSONRPCError):
            logger.debug(f"Ignoring client response to request {message.id!r}")

        return Response(status_code=HTTPStatus.ACCEPTED, headers=self._session_headers(session_id)), None

    async def _handle_get(self, request: Request) -> Response:
        session_id = request.headers.get(MCP_SESSION_ID_HEADER)

        error = self._validate_request(request, session_id)
        if error is not None:
            return self._error_response(error.envelope, session_id)

        if CONTENT_TYPE_SSE not in request.headers.get("accept", ""):
            return self._error_response(
                ValidationFailed(f"Accept must include {CONTENT_TYPE_SSE}").envelope,
                session_id,
                status_code=HTTPStatus.NOT_ACCEPTABLE,
            )

        try:
            channel = await self.sessions.open_channel(session_id)  # type: ignore[arg-type]
        except GatewayError as e:
            return self._error_response(e.envelope, session_id)

        return EventSourceResponse(
            self._stream_notifications(channel),
            headers=self._session_headers(session_id),
            ping=int(self.ping_interval),
        )

    async def _stream_notifications(self, channel: NotificationChannel) -> AsyncIterator[dict[str, Any]]:
        try:
            async for notification in channel:
                yield {"event": "message", "data": json.dumps(notification.to_message())}
        finally:
            with anyio.CancelScope(shield=True):
                await channel.aclose()

    async def _handle_delete(self, request: Request) -> Response:
        session_id = request.headers.get(MCP_SESSION_ID_HEADER)

        error = self._validate_request(request, session_id)
        if error is not None:
            return self._error_response(error.envelope, session_id)

        if not session_id:
            return self._error_response(ValidationFailed("Missing mcp-session-id header").envelope)

        terminated = await self.sessions.terminate(session_id, reason="terminated by client")
        if not terminated:
            logger.debug("DELETE for an unknown or already terminated session")
        return Response(status_code=HTTPStatus.OK, headers=self._session_headers(session_id))

    @staticmethod
    def _session_headers(session_id: str | None) -> dict[str, str]:
        return {MCP_SESSION_ID_HEADER: session_id} if session_id else {}
