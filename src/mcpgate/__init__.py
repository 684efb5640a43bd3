"""A session-oriented gateway that serves schema-validated tools over HTTP.

Callers open a session with ``initialize``, call tools with ``tools/call`` and
receive notifications over a Server-Sent Events channel. Every failure comes
back as an error envelope with a code from a closed taxonomy.

## Example

```python
from mcpgate import Gateway

gateway = Gateway("demo")

@gateway.tool(input_schema={"type": "object", "properties": {"text": {"type": "string"}}, "required": ["text"]})
async def echo(arguments, signal, ctx):
    \"\"\"Echo the text back\"\"\"
    return arguments["text"]

if __name__ == "__main__":
    gateway.run()
```
"""

from .server import Gateway, GatewaySettings, LimitSettings, Page, PageRequest, ToolContext
from .shared.cancellation import CancellationSignal
from .shared.errors import ErrorCode, ErrorEnvelope
from .shared.exceptions import (
    Cancelled,
    GatewayError,
    InternalError,
    InvalidCursor,
    LimitExceeded,
    SessionConflict,
    SessionNotFound,
    Timeout,
    ToolCancelled,
    TransientError,
    Unauthorized,
    UnknownRoot,
    UnknownTool,
    ValidationFailed,
)

__all__ = [
    "CancellationSignal",
    "Cancelled",
    "ErrorCode",
    "ErrorEnvelope",
    "Gateway",
    "GatewayError",
    "GatewaySettings",
    "InternalError",
    "InvalidCursor",
    "LimitExceeded",
    "LimitSettings",
    "Page",
    "PageRequest",
    "SessionConflict",
    "SessionNotFound",
    "Timeout",
    "ToolCancelled",
    "ToolContext",
    "TransientError",
    "Unauthorized",
    "UnknownRoot",
    "UnknownTool",
    "ValidationFailed",
]
