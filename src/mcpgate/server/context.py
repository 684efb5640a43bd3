from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

from mcpgate.server.registry import PageRequest
from mcpgate.server.session import Notification, SessionManager
from mcpgate.shared.cancellation import CancellationSignal
from mcpgate.shared.limits import LimitPolicy
from mcpgate.types import (
    NOTIFICATION_MESSAGE,
    NOTIFICATION_PROGRESS,
    LoggingLevel,
    ProgressToken,
    RequestId,
)


@dataclass
class ToolContext:
    """Session context handed to a tool handler.

    Gives the handler the ids of the call, the resolved root (for tools that
    accept a ``root``/``project_id`` selector), the requested page (for
    paginated tools), the active limits, and a way to push notifications to
    the caller's notification channel.
    """

    session_id: str
    request_id: RequestId
    tool_name: str
    signal: CancellationSignal
    limits: LimitPolicy
    session_manager: SessionManager
    root: Path | None = None
    page: PageRequest | None = None
    progress_token: ProgressToken | None = None

    @property
    def cancelled(self) -> bool:
        return self.signal.cancelled

    async def notify(self, method: str, params: dict[str, Any] | None = None) -> bool:
        """Push a notification related to this call.

        It is delivered after the call's own response. Returns False if the
        session is gone.
        """
        return await self.session_manager.enqueue(
            self.session_id,
            Notification(method=method, params=params, related_request_id=self.request_id),
        )

    async def report_progress(self, progress: float, total: float | None = None, message: str | None = None) -> None:
        """Report progress for the current call.

        Does nothing unless the caller asked for progress with a progress token.
        """
        if self.progress_token is None:
            return
        params: dict[str, Any] = {"progressToken": self.progress_token, "progress": progress}
        if total is not None:
            params["total"] = total
        if message is not None:
            params["message"] = message
        await self.notify(NOTIFICATION_PROGRESS, params)

    async def log(self, level: LoggingLevel, data: Any, logger_name: str | None = None) -> None:
        params: dict[str, Any] = {"level": level, "data": data}
        if logger_name is not None:
            params["logger"] = logger_name
        await self.notify(NOTIFICATION_MESSAGE, params)

    async def debug(self, message: str) -> None:
        await self.log("debug", message)

    async def info(self, message: str) -> None:
        await self.log("info", message)

    async def warning(self, message: str) -> None:
        await self.log("warning", message)

    async def error(self, message: str) -> None:
        await self.log("error", message)
