"""Resource limits and the pure checks that enforce them.

None of the checks act on a violation. They return ``None`` when the value is
within bounds and a :class:`LimitViolation` otherwise, and the caller decides
whether to reject or to truncate and flag.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Literal, TypeVar

from mcpgate.shared.exceptions import GatewayError, LimitExceeded, Timeout

if TYPE_CHECKING:
    from mcpgate.server.settings import LimitSettings

T = TypeVar("T")

ViolationKind = Literal["LimitExceeded", "Timeout", "Truncated"]


@dataclass(frozen=True)
class LimitViolation:
    kind: ViolationKind
    limit_name: str
    limit: float
    observed: float
    message: str

    def as_error(self) -> GatewayError:
        """Convert a rejecting violation into the error reported to the caller."""
        details = {"limit": self.limit_name, "max": self.limit, "observed": self.observed}
        if self.kind == "Timeout":
            return Timeout(self.message, details=details)
        if self.kind == "LimitExceeded":
            return LimitExceeded(self.message, details=details)
        raise ValueError("Truncation is reported with a flag, not an error")


class LimitPolicy:
    """Holds the configured maximums and exposes side-effect free checks."""

    def __init__(self, settings: LimitSettings):
        self.settings = settings

    def check_payload_size(self, size: int) -> LimitViolation | None:
        limit = self.settings.max_request_bytes
        if size <= limit:
            return None
        return LimitViolation(
            kind="LimitExceeded",
            limit_name="maxRequestBytes",
            limit=limit,
            observed=size,
            message=f"Request payload of {size} bytes exceeds the limit of {limit} bytes",
        )

    def check_runtime(self, elapsed_ms: float, declared_timeout_ms: float) -> LimitViolation | None:
        deadline = self.effective_timeout_ms(declared_timeout_ms)
        if elapsed_ms < deadline:
            return None
        return LimitViolation(
            kind="Timeout",
            limit_name="maxToolRuntimeMs",
            limit=deadline,
            observed=elapsed_ms,
            message=f"Tool did not complete within {deadline:g} ms",
        )

    def check_result_count(self, count: int, requested: int | None = None) -> LimitViolation | None:
        limit = self.settings.max_search_results
        if requested is not None:
            limit = min(limit, requested)
        if count <= limit:
            return None
        return LimitViolation(
            kind="Truncated",
            limit_name="maxSearchResults",
            limit=limit,
            observed=count,
            message=f"Result list truncated from {count} to {limit} items",
        )

    def check_snippet_lines(self, lines: int) -> LimitViolation | None:
        limit = self.settings.max_snippet_lines
        if lines <= limit:
            return None
        return LimitViolation(
            kind="Truncated",
            limit_name="maxSnippetLines",
            limit=limit,
            observed=lines,
            message=f"Snippet truncated from {lines} to {limit} lines",
        )

    def check_memory_content(self, size: int) -> LimitViolation | None:
        limit = self.settings.max_memory_content_bytes
        if size <= limit:
            return None
        return LimitViolation(
            kind="LimitExceeded",
            limit_name="maxMemoryContentBytes",
            limit=limit,
            observed=size,
            message=f"Memory content of {size} bytes exceeds the limit of {limit} bytes",
        )

    def effective_timeout_ms(self, declared_timeout_ms: float) -> float:
        return min(declared_timeout_ms, self.settings.max_tool_runtime_ms)

    def truncate_results(self, items: Sequence[T], requested: int | None = None) -> tuple[list[T], bool]:
        """Apply :meth:`check_result_count`, returning the kept items and a truncation flag."""
        violation = self.check_result_count(len(items), requested)
        if violation is None:
            return list(items), False
        return list(items[: int(violation.limit)]), True

    def truncate_snippet(self, text: str) -> tuple[str, bool]:
        lines = text.splitlines(keepends=True)
        violation = self.check_snippet_lines(len(lines))
        if violation is None:
            return text, False
        return "".join(lines[: int(violation.limit)]), True
