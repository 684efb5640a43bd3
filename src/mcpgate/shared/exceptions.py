"""Exceptions raised inside the gateway core.

Each subclass of :class:`GatewayError` corresponds to one code of the closed
error taxonomy and carries the :class:`~mcpgate.shared.errors.ErrorEnvelope`
that is eventually sent to the caller.
"""

from __future__ import annotations

from typing import Any, ClassVar

from mcpgate.shared.errors import ErrorCode, ErrorEnvelope, make_envelope


class GatewayError(Exception):
    """Base error for all failures that are reported to the caller.

    Attributes:
        envelope: the immutable, caller-safe description of the failure
    """

    code: ClassVar[ErrorCode] = ErrorCode.INTERNAL
    retryable: ClassVar[bool] = False

    envelope: ErrorEnvelope

    def __init__(
        self,
        message: str,
        *,
        details: dict[str, Any] | None = None,
        retryable: bool | None = None,
        caller_input: Any = None,
    ):
        super().__init__(message)
        self.envelope = make_envelope(
            self.code,
            message,
            details=details,
            retryable=self.retryable if retryable is None else retryable,
            caller_input=caller_input,
        )


class Unauthorized(GatewayError):
    code = ErrorCode.UNAUTHORIZED


class SessionNotFound(GatewayError):
    code = ErrorCode.SESSION_NOT_FOUND


class SessionConflict(GatewayError):
    code = ErrorCode.SESSION_CONFLICT


class UnknownTool(GatewayError):
    code = ErrorCode.UNKNOWN_TOOL


class UnknownRoot(GatewayError):
    code = ErrorCode.UNKNOWN_ROOT


class ValidationFailed(GatewayError):
    """Input did not match the tool's schema.

    ``field_errors`` is a list of ``{"field": ..., "message": ...}`` entries and
    is also exposed to the caller under ``details.errors``.
    """

    code = ErrorCode.VALIDATION_FAILED

    def __init__(
        self,
        message: str,
        field_errors: list[dict[str, str]] | None = None,
        *,
        caller_input: Any = None,
    ):
        self.field_errors = field_errors or []
        details = {"errors": self.field_errors} if self.field_errors else None
        super().__init__(message, details=details, caller_input=caller_input)


class LimitExceeded(GatewayError):
    code = ErrorCode.LIMIT_EXCEEDED


class InvalidCursor(GatewayError):
    code = ErrorCode.INVALID_CURSOR


class Timeout(GatewayError):
    code = ErrorCode.TIMEOUT
    retryable = True


class Cancelled(GatewayError):
    code = ErrorCode.CANCELLED


class InternalError(GatewayError):
    code = ErrorCode.INTERNAL


class DuplicateTool(ValueError):
    """A tool with the same name is already registered."""


class InvalidDescriptor(ValueError):
    """A tool descriptor cannot be registered as given."""


class RegistryFrozen(RuntimeError):
    """Tools can only be registered before the gateway starts serving."""


class ConfigurationError(RuntimeError):
    """The gateway refuses to start with the given configuration."""


class ToolCancelled(Exception):
    """Raised by a handler that observed its cancellation signal."""


class TransientError(Exception):
    """Raised by a handler for a failure that may succeed when retried.

    The message is logged but never shown to the caller.
    """

