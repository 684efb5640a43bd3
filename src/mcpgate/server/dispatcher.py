"""Request dispatcher: turns one decoded JSON-RPC request into one response.

For ``tools/call`` the pipeline is: resolve the session, resolve the tool,
validate the input, check the payload size, resolve root selectors and the
page cursor, register an :class:`~mcpgate.server.session.Invocation`, run the
handler under a hard deadline, and shape the outcome. Every check that can
reject the call runs before the handler is started. Authentication has already
happened in front of the transport by the time a request gets here.

The handler runs in the session manager's task group, not in the request's
task. On deadline expiry, session termination or an out-of-band cancel the
dispatcher sets the handler's cancellation signal and answers immediately; the
handler is only cancelled through its anyio cancel scope if it is still
running after the configured grace period.
"""

from __future__ import annotations

import functools
import json
import time
from dataclasses import dataclass
from typing import Any

import anyio
import anyio.to_thread
import pydantic_core
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from mcpgate.server.context import ToolContext
from mcpgate.server.registry import MAX_PAGE_SIZE, Page, PageRequest, ToolDescriptor, ToolRegistry
from mcpgate.server.session import Invocation, InvocationStatus, SessionManager
from mcpgate.shared.errors import GENERIC_INTERNAL_MESSAGE, ErrorEnvelope
from mcpgate.shared.exceptions import (
    GatewayError,
    InternalError,
    InvalidCursor,
    SessionNotFound,
    Timeout,
    ToolCancelled,
    TransientError,
    ValidationFailed,
)
from mcpgate.shared.limits import LimitPolicy
from mcpgate.shared.pagination import CursorCodec, fingerprint
from mcpgate.types import (
    INITIALIZE,
    LATEST_PROTOCOL_VERSION,
    NOTIFICATION_CANCELLED,
    NOTIFICATION_INITIALIZED,
    PING,
    SUPPORTED_PROTOCOL_VERSIONS,
    TOOLS_CALL,
    TOOLS_LIST,
    CallToolParams,
    CallToolResult,
    CancelledParams,
    Implementation,
    InitializeParams,
    InitializeResult,
    JSONRPCNotification,
    JSONRPCRequest,
    JSONRPCResponse,
    ListToolsResult,
    PaginatedParams,
    TextContent,
    ToolInfo,
)
from mcpgate.utilities.logging import get_logger

logger = get_logger(__name__)

TOOLS_LIST_SCOPE = "tools/list"


@dataclass
class DispatchResult:
    """A serialized JSON-RPC response and how to send it."""

    message: dict[str, Any]
    session_id: str | None = None
    status_code: int = 200

    @property
    def is_error(self) -> bool:
        return "error" in self.message


def _parse_params(model: type[BaseModel], params: dict[str, Any] | None) -> Any:
    try:
        return model.model_validate(params or {})
    except PydanticValidationError as e:
        errors = [{"field": ".".join(map(str, err["loc"])) or "$", "message": err["msg"]} for err in e.errors()]
        raise ValidationFailed("Invalid request parameters", errors, caller_input=params) from None


def _is_offset(position: Any) -> bool:
    return isinstance(position, int) and not isinstance(position, bool) and position >= 0


class RequestDispatcher:
    def __init__(
        self,
        registry: ToolRegistry,
        session_manager: SessionManager,
        limits: LimitPolicy,
        cursors: CursorCodec,
        server_info: Implementation,
        instructions: str | None = None,
        cancel_grace_s: float = 2.0,
    ):
        self.registry = registry
        self.sessions = session_manager
        self.limits = limits
        self.cursors = cursors
        self.server_info = server_info
        self.instructions = instructions
        self.cancel_grace_s = cancel_grace_s
        self._methods = {
            PING: self._ping,
            TOOLS_LIST: self._list_tools,
            TOOLS_CALL: self._call_tool,
        }

    async def dispatch(self, session_id: str | None, request: JSONRPCRequest) -> DispatchResult:
        """Answer *request*. Never raises: every failure becomes an error envelope."""
        logger.debug(f"Dispatching {request.method} (id={request.id!r})")
        try:
            if request.method == INITIALIZE:
                return await self._handshake(session_id, request)

            if not session_id:
                raise ValidationFailed("Missing mcp-session-id header")
            self.sessions.get_session(session_id)

            method = self._methods.get(request.method)
            if method is None:
                raise ValidationFailed(f"Unknown method: {request.method}")

            outcome = await method(session_id, request)
        except SessionNotFound as e:
            return DispatchResult(e.envelope.to_wire(request.id), session_id, e.envelope.http_status)
        except GatewayError as e:
            outcome = e.envelope
        except Exception:
            logger.exception(f"Unexpected failure while dispatching {request.method}")
            outcome = InternalError(GENERIC_INTERNAL_MESSAGE).envelope

        if isinstance(outcome, ErrorEnvelope):
            return DispatchResult(outcome.to_wire(request.id), session_id)
        response = JSONRPCResponse(id=request.id, result=outcome)
        return DispatchResult(response.model_dump(mode="json", by_alias=True), session_id)

    async def handle_notification(self, session_id: str | None, notification: JSONRPCNotification) -> None:
        """Handle a client notification.

        Raises:
            SessionNotFound: if the session is missing, unknown or terminated.
        """
        session = self.sessions.get_session(session_id)

        if notification.method == NOTIFICATION_CANCELLED:
            params = _parse_params(CancelledParams, notification.params)
            cancelled = await self.sessions.cancel_invocation(
                session.session_id, params.request_id, params.reason or "cancelled by client"
            )
            logger.debug(f"Cancellation of request {params.request_id!r}: {'applied' if cancelled else 'no-op'}")
        elif notification.method == NOTIFICATION_INITIALIZED:
            logger.debug(f"Client finished initialization of session {session.session_id[:8]}…")
        else:
            logger.debug(f"Ignoring notification {notification.method}")

    async def _handshake(self, session_id: str | None, request: JSONRPCRequest) -> DispatchResult:
        if session_id:
            error = ValidationFailed("initialize must not carry an mcp-session-id header").envelope
            return DispatchResult(error.to_wire(request.id), None, error.http_status)

        params = _parse_params(InitializeParams, request.params)
        if params.protocol_version in SUPPORTED_PROTOCOL_VERSIONS:
            protocol_version = params.protocol_version
        else:
            protocol_version = LATEST_PROTOCOL_VERSION

        client_info = params.client_info.model_dump(mode="json") if params.client_info else None
        session = await self.sessions.create_session(protocol_version, client_info)
        result = InitializeResult(
            protocol_version=protocol_version,
            capabilities={"tools": {"listChanged": False}},
            server_info=self.server_info,
            instructions=self.instructions,
        )
        response = JSONRPCResponse(
            id=request.id,
            result=result.model_dump(mode="json", by_alias=True, exclude_none=True),
        )
        return DispatchResult(
            response.model_dump(mode="json", by_alias=True),
            session.session_id,
        )

    async def _ping(self, session_id: str, request: JSONRPCRequest) -> dict[str, Any]:
        return {}

    async def _list_tools(self, session_id: str, request: JSONRPCRequest) -> dict[str, Any]:
        params = _parse_params(PaginatedParams, request.params)
        filter_fingerprint = fingerprint(None, scope=TOOLS_LIST_SCOPE)
        offset = 0
        if params.cursor is not None:
            offset = self._decode_offset(params.cursor, filter_fingerprint)

        page = PageRequest(offset=offset, limit=MAX_PAGE_SIZE).slice(self.registry.list_tools())
        result = ListToolsResult(
            tools=[
                ToolInfo(name=tool.name, description=tool.description, input_schema=tool.advertised_schema)
                for tool in page.items
            ],
            next_cursor=(
                self.cursors.encode(page.next_position, filter_fingerprint) if page.next_position is not None else None
            ),
        )
        return result.model_dump(mode="json", by_alias=True, exclude_none=True)

    def _decode_offset(self, cursor: str, filter_fingerprint: str) -> int:
        position = self.cursors.decode(cursor, filter_fingerprint)
        if not _is_offset(position):
            raise InvalidCursor("Cursor position is not valid")
        return position

    async def _call_tool(self, session_id: str, request: JSONRPCRequest) -> dict[str, Any] | ErrorEnvelope:
        received_at = time.monotonic()
        params = _parse_params(CallToolParams, request.params)
        descriptor = self.registry.resolve(params.name)

        handler_args, core_args = self.registry.split_arguments(descriptor, params.arguments)
        self.registry.validate_core_arguments(descriptor, core_args)
        parsed = self.registry.validate_input(descriptor, handler_args)

        size = len(json.dumps(params.arguments, separators=(",", ":"), default=str).encode())
        violation = self.limits.check_payload_size(size)
        if violation is not None:
            raise violation.as_error()

        root = self.registry.resolve_root(core_args) if descriptor.uses_roots else None

        page: PageRequest | None = None
        filter_fingerprint: str | None = None
        if descriptor.paginated:
            filters = {key: value for key, value in core_args.items() if key not in ("limit", "cursor")}
            filter_fingerprint = fingerprint({**handler_args, **filters}, scope=descriptor.name)
            position = None
            if core_args.get("cursor") is not None:
                position = self.cursors.decode(core_args["cursor"], filter_fingerprint)
            limit = min(core_args.get("limit", PageRequest.limit), self.limits.settings.max_search_results)
            offset = position if _is_offset(position) else 0
            page = PageRequest(offset=offset, limit=limit, position=position)

        invocation = await self.sessions.begin_invocation(session_id, request.id, descriptor.name, params.arguments)
        context = ToolContext(
            session_id=session_id,
            request_id=request.id,
            tool_name=descriptor.name,
            signal=invocation.signal,
            limits=self.limits,
            session_manager=self.sessions,
            root=root,
            page=page,
            progress_token=params.meta.progress_token if params.meta else None,
        )
        self.sessions.start_soon(
            self._execute, invocation, descriptor, parsed, context, name=f"tool:{descriptor.name}"
        )

        deadline = received_at + self.limits.effective_timeout_ms(descriptor.timeout_ms) / 1000
        with anyio.move_on_after(max(0.0, deadline - time.monotonic())):
            await invocation.wait()

        if not invocation.settled:
            violation = self.limits.check_runtime(invocation.elapsed_ms, descriptor.timeout_ms)
            error = violation.as_error() if violation else Timeout("Tool did not complete in time")
            invocation.signal.cancel("timeout")
            invocation.fail(error.envelope)
            logger.warning(f"Tool {descriptor.name} timed out (correlation id {invocation.correlation_id})")

        if invocation.status is InvocationStatus.SUCCEEDED:
            return self._shape_result(invocation.result, page, filter_fingerprint)
        if invocation.error is None:
            return InternalError(GENERIC_INTERNAL_MESSAGE).envelope
        return invocation.error

    async def _execute(
        self,
        invocation: Invocation,
        descriptor: ToolDescriptor,
        parsed: Any,
        context: ToolContext,
    ) -> None:
        async with anyio.create_task_group() as tg:
            tg.start_soon(self._stop_after_grace, invocation, tg.cancel_scope)
            await self._run_handler(invocation, descriptor, parsed, context)
            tg.cancel_scope.cancel()

        if not invocation.settled:
            invocation.cancel("handler stopped after the cancellation grace period")

    async def _stop_after_grace(self, invocation: Invocation, scope: anyio.CancelScope) -> None:
        await invocation.signal.wait()
        await anyio.sleep(self.cancel_grace_s)
        logger.warning(
            f"Tool {invocation.tool_name} ignored cancellation for {self.cancel_grace_s:g}s, stopping it "
            f"(correlation id {invocation.correlation_id})"
        )
        scope.cancel()

    async def _run_handler(
        self,
        invocation: Invocation,
        descriptor: ToolDescriptor,
        parsed: Any,
        context: ToolContext,
    ) -> None:
        try:
            if descriptor.is_async:
                result = await descriptor.handler(parsed, invocation.signal, context)
            else:
                result = await anyio.to_thread.run_sync(
                    functools.partial(descriptor.handler, parsed, invocation.signal, context),
                    abandon_on_cancel=True,
                )
        except ToolCancelled as e:
            invocation.cancel(str(e) or "cancelled by handler")
        except GatewayError as e:
            invocation.fail(e.envelope)
        except (TransientError, ConnectionError):
            logger.exception(
                f"Tool {descriptor.name} failed transiently (correlation id {invocation.correlation_id})"
            )
            invocation.fail(
                InternalError(
                    GENERIC_INTERNAL_MESSAGE,
                    details={"correlationId": invocation.correlation_id},
                    retryable=True,
                ).envelope
            )
        except Exception:
            logger.exception(f"Tool {descriptor.name} failed (correlation id {invocation.correlation_id})")
            invocation.fail(
                InternalError(
                    GENERIC_INTERNAL_MESSAGE,
                    details={"correlationId": invocation.correlation_id},
                ).envelope
            )
        else:
            if not invocation.succeed(result):
                logger.debug(
                    f"Discarding late result of {descriptor.name}, call already ended as {invocation.status.value}"
                )

    def _shape_result(self, result: Any, page: PageRequest | None, filter_fingerprint: str | None) -> dict[str, Any]:
        if isinstance(result, Page):
            items, truncated = self.limits.truncate_results(result.items, page.limit if page else None)
            structured: dict[str, Any] = {**result.extra, "items": items, "truncated": truncated}
            next_position = result.next_position
            if truncated and page is not None and _is_offset(next_position):
                # resume right after the last item kept, not where the tool stopped
                next_position = page.offset + len(items)
            if next_position is not None and filter_fingerprint is not None:
                structured["nextCursor"] = self.cursors.encode(next_position, filter_fingerprint)
        elif isinstance(result, BaseModel):
            structured = result.model_dump(mode="json", by_alias=True)
        elif isinstance(result, dict):
            structured = result
        else:
            structured = {"result": result}

        structured = pydantic_core.to_jsonable_python(structured)
        text = result if isinstance(result, str) else json.dumps(structured)
        shaped = CallToolResult(content=[TextContent(text=text)], structured_content=structured)
        return shaped.model_dump(mode="json", by_alias=True)
