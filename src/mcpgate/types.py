"""JSON-RPC and protocol types spoken on the gateway's wire."""

from typing import Annotated, Any, Final, Literal

from pydantic import BaseModel, ConfigDict, Field

JSONRPC_VERSION: Final[str] = "2.0"

LATEST_PROTOCOL_VERSION: Final[str] = "2025-06-18"
SUPPORTED_PROTOCOL_VERSIONS: Final[tuple[str, ...]] = (
    "2025-06-18",
    "2025-03-26",
    "2024-11-05",
)

MCP_SESSION_ID_HEADER: Final[str] = "mcp-session-id"
MCP_PROTOCOL_VERSION_HEADER: Final[str] = "mcp-protocol-version"

RequestId = Annotated[int, Field(strict=True)] | str
ProgressToken = str | int

# Request methods understood by the dispatcher
INITIALIZE: Final[str] = "initialize"
PING: Final[str] = "ping"
TOOLS_LIST: Final[str] = "tools/list"
TOOLS_CALL: Final[str] = "tools/call"

# Notifications the client sends to the server
NOTIFICATION_INITIALIZED: Final[str] = "notifications/initialized"
NOTIFICATION_CANCELLED: Final[str] = "notifications/cancelled"

# Notifications the server pushes to the client
NOTIFICATION_PROGRESS: Final[str] = "notifications/progress"
NOTIFICATION_MESSAGE: Final[str] = "notifications/message"
NOTIFICATION_DROPPED: Final[str] = "notifications/dropped"

LoggingLevel = Literal["debug", "info", "notice", "warning", "error", "critical", "alert", "emergency"]


class JSONRPCBase(BaseModel):
    """Base class for all JSON-RPC messages."""

    model_config = ConfigDict(extra="allow")

    jsonrpc: Literal["2.0"] = JSONRPC_VERSION


class JSONRPCRequest(JSONRPCBase):
    """A request that expects a response."""

    id: RequestId
    method: str
    params: dict[str, Any] | None = None


class JSONRPCNotification(JSONRPCBase):
    """A notification which does not expect a response."""

    method: str
    params: dict[str, Any] | None = None


class ErrorData(BaseModel):
    """Error information in a JSON-RPC error response."""

    model_config = ConfigDict(extra="allow")

    code: int
    message: str
    data: Any | None = None


class JSONRPCResponse(JSONRPCBase):
    """A successful (non-error) response to a request."""

    id: RequestId
    result: dict[str, Any]


class JSONRPCError(JSONRPCBase):
    """A response to a request that indicates an error occurred."""

    id: RequestId | None = None
    error: ErrorData


JSONRPCMessage = JSONRPCRequest | JSONRPCNotification | JSONRPCResponse | JSONRPCError


def parse_message(data: Any) -> JSONRPCMessage:
    """Classify and validate one decoded JSON-RPC message.

    Classification is done on the keys that are present rather than by letting
    pydantic pick a union member, since every model allows extra fields.

    Raises:
        pydantic.ValidationError: if the payload does not match the selected shape.
        ValueError: if the payload is not a JSON object.
    """
    if not isinstance(data, dict):
        raise ValueError("JSON-RPC message must be an object")
    if "method" in data:
        if "id" in data:
            return JSONRPCRequest.model_validate(data)
        return JSONRPCNotification.model_validate(data)
    if "error" in data:
        return JSONRPCError.model_validate(data)
    return JSONRPCResponse.model_validate(data)


class GatewayModel(BaseModel):
    """Base class for protocol payloads. Allows extra fields for forward compatibility."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)


class RequestMeta(GatewayModel):
    progress_token: Annotated[ProgressToken | None, Field(alias="progressToken")] = None


class Implementation(GatewayModel):
    """Name and version of a client or server implementation."""

    name: str
    version: str


class InitializeParams(GatewayModel):
    protocol_version: Annotated[str, Field(alias="protocolVersion")] = LATEST_PROTOCOL_VERSION
    capabilities: dict[str, Any] = Field(default_factory=dict)
    client_info: Annotated[Implementation | None, Field(alias="clientInfo")] = None


class InitializeResult(GatewayModel):
    protocol_version: Annotated[str, Field(alias="protocolVersion")]
    capabilities: dict[str, Any]
    server_info: Annotated[Implementation, Field(alias="serverInfo")]
    instructions: str | None = None


class PaginatedParams(GatewayModel):
    cursor: str | None = None


class CallToolParams(GatewayModel):
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    meta: Annotated[RequestMeta | None, Field(alias="_meta")] = None


class CancelledParams(GatewayModel):
    request_id: Annotated[RequestId, Field(alias="requestId")]
    reason: str | None = None


class ToolInfo(GatewayModel):
    """A tool as advertised by ``tools/list``."""

    name: str
    description: str | None = None
    input_schema: Annotated[dict[str, Any], Field(alias="inputSchema")]


class ListToolsResult(GatewayModel):
    tools: list[ToolInfo]
    next_cursor: Annotated[str | None, Field(alias="nextCursor")] = None


class TextContent(GatewayModel):
    type: Literal["text"] = "text"
    text: str


class CallToolResult(GatewayModel):
    content: list[TextContent]
    structured_content: Annotated[dict[str, Any] | None, Field(alias="structuredContent")] = None
    is_error: Annotated[bool, Field(alias="isError")] = False
