"""Cooperative cancellation for tool handlers.

The dispatcher never kills a handler outright. It sets the handler's
:class:`CancellationSignal` and stops waiting; the handler is expected to poll
:attr:`CancellationSignal.cancelled`, call :meth:`CancellationSignal.raise_if_cancelled`
between steps, or race its work against :meth:`CancellationSignal.wait`.
"""

from __future__ import annotations

import anyio

from mcpgate.shared.exceptions import ToolCancelled


class CancellationSignal:
    def __init__(self) -> None:
        self._event = anyio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> bool:
        """Signal cancellation. Returns False if the signal was already set."""
        if self._event.is_set():
            return False
        self.reason = reason
        self._event.set()
        return True

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise ToolCancelled(self.reason or "cancelled")
