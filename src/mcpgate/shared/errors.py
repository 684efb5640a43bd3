"""The error envelope returned for every failure that leaves the gateway.

An envelope always carries a ``code`` from the closed taxonomy in
:class:`ErrorCode` and a human readable ``message``. ``details`` is opt-in and
goes through :func:`redact_details` before it is attached, so that neither
host filesystem paths the caller did not supply nor credential-like strings
can leak to the caller.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from enum import Enum
from typing import Any, Final

from pydantic import BaseModel, ConfigDict

from mcpgate.types import ErrorData, JSONRPCError, RequestId


class ErrorCode(str, Enum):
    UNAUTHORIZED = "Unauthorized"
    SESSION_NOT_FOUND = "SessionNotFound"
    SESSION_CONFLICT = "SessionConflict"
    UNKNOWN_TOOL = "UnknownTool"
    UNKNOWN_ROOT = "UnknownRoot"
    VALIDATION_FAILED = "ValidationFailed"
    LIMIT_EXCEEDED = "LimitExceeded"
    INVALID_CURSOR = "InvalidCursor"
    TIMEOUT = "Timeout"
    CANCELLED = "Cancelled"
    INTERNAL = "Internal"


JSONRPC_CODES: Final[dict[ErrorCode, int]] = {
    ErrorCode.UNAUTHORIZED: -32001,
    ErrorCode.SESSION_NOT_FOUND: -32002,
    ErrorCode.SESSION_CONFLICT: -32003,
    ErrorCode.UNKNOWN_TOOL: -32004,
    ErrorCode.UNKNOWN_ROOT: -32005,
    ErrorCode.VALIDATION_FAILED: -32602,
    ErrorCode.LIMIT_EXCEEDED: -32006,
    ErrorCode.INVALID_CURSOR: -32007,
    ErrorCode.TIMEOUT: -32008,
    ErrorCode.CANCELLED: -32009,
    ErrorCode.INTERNAL: -32603,
}

# Status used when the failure is reported outside of a JSON-RPC exchange
# (or prevents one from starting). Everything else travels inside a 200.
HTTP_STATUS: Final[dict[ErrorCode, int]] = {
    ErrorCode.UNAUTHORIZED: 401,
    ErrorCode.SESSION_NOT_FOUND: 404,
    ErrorCode.SESSION_CONFLICT: 409,
    ErrorCode.LIMIT_EXCEEDED: 413,
    ErrorCode.VALIDATION_FAILED: 400,
    ErrorCode.INTERNAL: 500,
}

GENERIC_INTERNAL_MESSAGE: Final[str] = "Internal error while processing the request"

REDACTED_PATH: Final[str] = "<redacted-path>"
REDACTED_SECRET: Final[str] = "***"

SENSITIVE_KEYS: Final[frozenset[str]] = frozenset(
    {
        "authorization",
        "access_token",
        "refresh_token",
        "api_key",
        "apikey",
        "client_secret",
        "credential",
        "credentials",
        "password",
        "secret",
        "token",
    }
)

# at least two segments, and never the path part of a URL
_POSIX_PATH = re.compile(r"(?<![\w.~:/])/(?:[\w.\-~@+]+/)+[\w.\-~@+]*")
_WINDOWS_PATH = re.compile(r"\b[A-Za-z]:\\(?:[^\\\s'\"<>|]+\\)*[^\\\s'\"<>|]*")
_CREDENTIAL_PATTERNS: Final[tuple[re.Pattern[str], ...]] = (
    re.compile(r"(?i)\bbearer\s+[\w\-.~+/]+=*"),
    re.compile(r"(?i)\b(?:api[_-]?key|token|secret|password|passwd)\s*[=:]\s*\S+"),
    re.compile(r"\beyJ[\w-]+\.[\w-]+\.[\w-]*"),
    re.compile(r"\b(?:sk|pk|ghp|gho|xox[abp])[-_][\w-]{10,}"),
)


class ErrorEnvelope(BaseModel):
    """Canonical, immutable description of a failure."""

    model_config = ConfigDict(frozen=True)

    code: ErrorCode
    message: str
    details: dict[str, Any] | None = None
    retryable: bool = False

    def to_error_data(self) -> ErrorData:
        return ErrorData(
            code=JSONRPC_CODES[self.code],
            message=self.message,
            data=self.model_dump(mode="json", exclude_none=True),
        )

    def to_jsonrpc(self, request_id: RequestId | None) -> JSONRPCError:
        return JSONRPCError(id=request_id, error=self.to_error_data())

    def to_wire(self, request_id: RequestId | None) -> dict[str, Any]:
        """Serialized JSON-RPC error response. ``id`` is kept even when null."""
        message = self.to_jsonrpc(request_id).model_dump(mode="json", exclude_none=True)
        message["id"] = request_id
        return message

    @property
    def http_status(self) -> int:
        return HTTP_STATUS.get(self.code, 200)


def _caller_strings(value: Any) -> Iterable[str]:
    if isinstance(value, str):
        yield value
    elif isinstance(value, Mapping):
        for key, item in value.items():
            yield str(key)
            yield from _caller_strings(item)
    elif isinstance(value, list | tuple | set | frozenset):
        for item in value:
            yield from _caller_strings(item)


def _redact_text(text: str, caller_text: str, secrets: Iterable[str]) -> str:
    for secret in secrets:
        if secret:
            text = text.replace(secret, REDACTED_SECRET)
    for pattern in _CREDENTIAL_PATTERNS:
        text = pattern.sub(REDACTED_SECRET, text)

    def _path(match: re.Match[str]) -> str:
        path = match.group(0)
        if path.rstrip("/\\") and path.rstrip("/\\") in caller_text:
            return path
        return REDACTED_PATH

    text = _POSIX_PATH.sub(_path, text)
    return _WINDOWS_PATH.sub(_path, text)


def redact_details(
    details: Mapping[str, Any] | None,
    caller_input: Any = None,
    secrets: Iterable[str] = (),
) -> dict[str, Any] | None:
    """Return a deep copy of *details* that is safe to show to the caller.

    Absolute paths survive only when they already occur somewhere in
    *caller_input*. Values under credential-like keys, strings shaped like
    credentials, and any of the explicit *secrets* are replaced.
    """
    if details is None:
        return None

    caller_text = "\n".join(_caller_strings(caller_input))
    secrets = tuple(secrets)

    def _walk(value: Any) -> Any:
        if isinstance(value, str):
            return _redact_text(value, caller_text, secrets)
        if isinstance(value, Mapping):
            return {
                str(key): REDACTED_SECRET if str(key).lower() in SENSITIVE_KEYS else _walk(item)
                for key, item in value.items()
            }
        if isinstance(value, list | tuple | set | frozenset):
            return [_walk(item) for item in value]
        return value

    return _walk(details)


def make_envelope(
    code: ErrorCode,
    message: str,
    *,
    details: Mapping[str, Any] | None = None,
    retryable: bool | None = None,
    caller_input: Any = None,
    secrets: Iterable[str] = (),
) -> ErrorEnvelope:
    """Build an envelope, redacting *details* and defaulting ``retryable``."""
    if not message:
        raise ValueError("An error envelope requires a message")
    if retryable is None:
        retryable = code is ErrorCode.TIMEOUT
    return ErrorEnvelope(
        code=code,
        message=message,
        details=redact_details(details, caller_input, secrets),
        retryable=retryable,
    )
