"""Session lifecycle, in-flight invocations and the push-notification channel.

The :class:`SessionManager` exclusively owns every :class:`Session` together
with its notification queue. Other components refer to sessions by id only and
go through the manager to change them.

Session states::

    CREATED -> ACTIVE -> (STREAMING <-> ACTIVE) -> TERMINATED

``CREATED`` after the handshake, ``ACTIVE`` once a request/response exchange
has completed, ``STREAMING`` while a notification channel is open. Closing the
channel returns the session to ``ACTIVE``. ``TERMINATED`` is final and is
reached by an explicit DELETE, by idle timeout, or when the manager shuts down.
Session ids are 256-bit random tokens, so a terminated id is never handed out again.
"""

from __future__ import annotations

import contextlib
import secrets
import time
from collections import deque
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from uuid import uuid4

import anyio
from anyio.abc import TaskGroup

from mcpgate.shared.cancellation import CancellationSignal
from mcpgate.shared.errors import ErrorEnvelope
from mcpgate.shared.exceptions import Cancelled, SessionConflict, SessionNotFound, ValidationFailed
from mcpgate.types import (
    LATEST_PROTOCOL_VERSION,
    NOTIFICATION_DROPPED,
    JSONRPCNotification,
    RequestId,
)
from mcpgate.utilities.logging import get_logger

logger = get_logger(__name__)


class SessionState(str, Enum):
    CREATED = "created"
    ACTIVE = "active"
    STREAMING = "streaming"
    TERMINATED = "terminated"


class InvocationStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(eq=False)
class Notification:
    """A server-to-client message waiting to be pushed."""

    method: str
    params: dict[str, Any] | None = None
    related_request_id: RequestId | None = None

    def to_message(self) -> dict[str, Any]:
        return JSONRPCNotification(method=self.method, params=self.params).model_dump(
            mode="json", by_alias=True, exclude_none=True
        )


@dataclass(eq=False)
class Invocation:
    """One tool call on one session.

    The outcome is settled exactly once; later attempts to settle it (a handler
    finishing after its deadline, for instance) are ignored.
    """

    session_id: str
    request_id: RequestId
    tool_name: str
    arguments: dict[str, Any]
    correlation_id: str = field(default_factory=lambda: uuid4().hex)
    started_at: float = field(default_factory=time.monotonic)
    signal: CancellationSignal = field(default_factory=CancellationSignal)
    status: InvocationStatus = InvocationStatus.PENDING
    result: Any = None
    error: ErrorEnvelope | None = None
    delivered: bool = False
    _settled: anyio.Event = field(default_factory=anyio.Event, repr=False)

    @property
    def settled(self) -> bool:
        return self.status is not InvocationStatus.PENDING

    @property
    def elapsed_ms(self) -> float:
        return (time.monotonic() - self.started_at) * 1000

    def _settle(self, status: InvocationStatus, result: Any = None, error: ErrorEnvelope | None = None) -> bool:
        if self.settled:
            return False
        self.status = status
        self.result = result
        self.error = error
        self._settled.set()
        return True

    def succeed(self, result: Any) -> bool:
        return self._settle(InvocationStatus.SUCCEEDED, result=result)

    def fail(self, error: ErrorEnvelope) -> bool:
        return self._settle(InvocationStatus.FAILED, error=error)

    def cancel(self, reason: str = "cancelled") -> bool:
        """Signal the handler and settle the invocation as cancelled."""
        self.signal.cancel(reason)
        return self._settle(
            InvocationStatus.CANCELLED,
            error=Cancelled(f"Tool call was cancelled: {reason}").envelope,
        )

    async def wait(self) -> None:
        await self._settled.wait()

    def mark_delivered(self) -> None:
        if self.delivered:
            raise RuntimeError(f"Outcome of request {self.request_id!r} was already delivered")
        self.delivered = True


@dataclass(eq=False)
class Session:
    """State of one caller session. Mutated only by :class:`SessionManager`."""

    session_id: str
    created_at: float = field(default_factory=time.time)
    last_activity: float = field(default_factory=time.monotonic)
    state: SessionState = SessionState.CREATED
    protocol_version: str = LATEST_PROTOCOL_VERSION
    client_info: dict[str, Any] | None = None
    notifications: deque[Notification] = field(default_factory=deque)
    in_flight: dict[RequestId, Invocation] = field(default_factory=dict)
    notifications_dropped: bool = False
    dropped_count: int = 0
    channel: NotificationChannel | None = None
    _held: dict[RequestId, list[Notification]] = field(default_factory=dict, repr=False)
    _lock: anyio.Lock = field(default_factory=anyio.Lock, repr=False)
    _wakeup: anyio.Event = field(default_factory=anyio.Event, repr=False)

    @property
    def terminated(self) -> bool:
        return self.state is SessionState.TERMINATED

    def touch(self) -> None:
        self.last_activity = time.monotonic()

    def wake(self) -> None:
        self._wakeup.set()
        self._wakeup = anyio.Event()


class NotificationChannel:
    """The single open push stream of a session.

    Iterating yields queued notifications in the order they were enqueued and
    then waits for new ones. Iteration ends when the channel is closed or the
    session terminates.
    """

    def __init__(self, manager: SessionManager, session: Session):
        self._manager = manager
        self._session = session
        self.closed = False

    @property
    def session_id(self) -> str:
        return self._session.session_id

    def __aiter__(self) -> AsyncIterator[Notification]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[Notification]:
        session = self._session
        while True:
            if self.closed or session.terminated:
                return
            if session.notifications:
                yield session.notifications.popleft()
                continue
            wakeup = session._wakeup
            await wakeup.wait()

    async def aclose(self) -> None:
        await self._manager.close_channel(self)


class SessionManager:
    """Creates, looks up and terminates sessions.

    Important: the manager must be running (``async with manager.run():``)
    before it can serve requests; the same instance cannot be run twice.

    Args:
        idle_timeout: seconds without activity after which a session with no
            open channel and no in-flight invocation is terminated
        reap_interval: how often idle sessions are looked for
        queue_depth: maximum number of queued notifications per session; the
            oldest is dropped on overflow
    """

    def __init__(
        self,
        idle_timeout: float = 300.0,
        reap_interval: float = 5.0,
        queue_depth: int = 100,
    ):
        if queue_depth < 1:
            raise ValueError("queue_depth must be positive")
        self.idle_timeout = idle_timeout
        self.reap_interval = reap_interval
        self.queue_depth = queue_depth

        self._sessions: dict[str, Session] = {}
        self._table_lock = anyio.Lock()

        # The task group will be set during run()
        self._task_group: TaskGroup | None = None
        self._run_lock = anyio.Lock()
        self._has_started = False

    @property
    def running(self) -> bool:
        return self._task_group is not None

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    @contextlib.asynccontextmanager
    async def run(self) -> AsyncIterator[None]:
        """Run the session manager with proper lifecycle management.

        This creates the task group that tool invocations and the idle-session
        reaper run in. All remaining sessions are terminated on exit.
        """
        async with self._run_lock:
            if self._has_started:
                raise RuntimeError(
                    "SessionManager .run() can only be called once per instance. "
                    "Create a new instance if you need to run again."
                )
            self._has_started = True

        async with anyio.create_task_group() as tg:
            self._task_group = tg
            tg.start_soon(self._reap_idle_sessions)
            logger.info("Session manager started")
            try:
                yield
            finally:
                logger.info("Session manager shutting down")
                with anyio.CancelScope(shield=True):
                    for session_id in list(self._sessions):
                        await self.terminate(session_id, reason="server shutdown")
                tg.cancel_scope.cancel()
                self._task_group = None

    def start_soon(self, func: Callable[..., Awaitable[Any]], *args: Any, name: str | None = None) -> None:
        """Run *func* in the manager's task group."""
        if self._task_group is None:
            raise RuntimeError("Task group is not initialized. Make sure to use run().")
        self._task_group.start_soon(func, *args, name=name)

    def _new_session_id(self) -> str:
        while True:
            session_id = secrets.token_urlsafe(32)
            if session_id not in self._sessions:
                return session_id

    async def create_session(
        self,
        protocol_version: str = LATEST_PROTOCOL_VERSION,
        client_info: dict[str, Any] | None = None,
    ) -> Session:
        async with self._table_lock:
            session = Session(
                session_id=self._new_session_id(),
                protocol_version=protocol_version,
                client_info=client_info,
            )
            self._sessions[session.session_id] = session
        logger.info(f"Created session {session.session_id[:8]}…")
        return session

    def get_session(self, session_id: str | None) -> Session:
        """Look up a live session and record activity on it.

        Raises:
            SessionNotFound: if the id is missing, unknown or terminated.
        """
        session = self._sessions.get(session_id) if session_id else None
        if session is None or session.terminated:
            raise SessionNotFound("Session not found")
        session.touch()
        return session

    async def terminate(self, session_id: str | None, reason: str = "terminated by client") -> bool:
        """Terminate a session and cancel everything in flight on it.

        Idempotent: returns False, without raising, for unknown or already
        terminated sessions.
        """
        async with self._table_lock:
            session = self._sessions.pop(session_id, None) if session_id else None
            if session is None:
                return False

        async with session._lock:
            session.state = SessionState.TERMINATED
            for invocation in list(session.in_flight.values()):
                invocation.cancel(reason)
            session.in_flight.clear()
            session._held.clear()
            if session.channel is not None:
                session.channel.closed = True
            session.wake()

        logger.info(f"Terminated session {session.session_id[:8]}… ({reason})")
        return True

    async def begin_invocation(
        self,
        session_id: str,
        request_id: RequestId,
        tool_name: str,
        arguments: dict[str, Any],
    ) -> Invocation:
        session = self.get_session(session_id)
        async with session._lock:
            if session.terminated:
                raise SessionNotFound("Session not found")
            if request_id in session.in_flight:
                raise ValidationFailed(f"Request id {request_id!r} is already in flight on this session")
            invocation = Invocation(
                session_id=session_id,
                request_id=request_id,
                tool_name=tool_name,
                arguments=arguments,
            )
            session.in_flight[request_id] = invocation
        return invocation

    async def cancel_invocation(self, session_id: str, request_id: RequestId, reason: str = "cancelled") -> bool:
        """Out-of-band cancellation of one in-flight invocation."""
        session = self.get_session(session_id)
        async with session._lock:
            invocation = session.in_flight.get(request_id)
            if invocation is None:
                return False
            return invocation.cancel(reason)

    async def finish_exchange(self, session_id: str, request_id: RequestId | None = None) -> None:
        """Record that the direct response to a request has been written.

        Completes the invocation for *request_id*, if there is one, and
        releases the notifications that were held back until its response was
        delivered. The first completed exchange moves the session to ``ACTIVE``.
        """
        session = self._sessions.get(session_id)
        if session is None:
            return
        async with session._lock:
            if session.terminated:
                return
            invocation = session.in_flight.pop(request_id, None) if request_id is not None else None
            if invocation is not None:
                invocation.mark_delivered()
            for notification in session._held.pop(request_id, []) if request_id is not None else []:
                self._append(session, notification)
            if session.state is SessionState.CREATED:
                session.state = SessionState.ACTIVE
            session.touch()

    async def enqueue(self, session_id: str, notification: Notification) -> bool:
        """Queue a notification for the session's channel.

        Returns False if the session no longer exists. A notification related
        to an invocation whose response has not been written yet is held until
        :meth:`finish_exchange` is called for it.
        """
        session = self._sessions.get(session_id)
        if session is None or session.terminated:
            logger.debug(f"Dropping {notification.method} for unknown or terminated session")
            return False
        async with session._lock:
            related = notification.related_request_id
            if related is not None and related in session.in_flight:
                session._held.setdefault(related, []).append(notification)
                return True
            self._append(session, notification)
        return True

    def _append(self, session: Session, notification: Notification) -> None:
        while len(session.notifications) >= self.queue_depth:
            dropped = session.notifications.popleft()
            session.notifications_dropped = True
            session.dropped_count += 1
            logger.warning(
                f"Notification queue full for session {session.session_id[:8]}…, dropped {dropped.method}"
            )
        session.notifications.append(notification)
        session.wake()

    async def open_channel(self, session_id: str) -> NotificationChannel:
        """Open the session's push channel.

        Raises:
            SessionNotFound: for unknown or terminated sessions.
            SessionConflict: if a channel is already open; the open one is left untouched.
        """
        session = self.get_session(session_id)
        async with session._lock:
            if session.terminated:
                raise SessionNotFound("Session not found")
            if session.channel is not None:
                raise SessionConflict("A notification channel is already open for this session")
            channel = NotificationChannel(self, session)
            session.channel = channel
            session.state = SessionState.STREAMING
            if session.dropped_count:
                session.notifications.appendleft(
                    Notification(NOTIFICATION_DROPPED, {"count": session.dropped_count})
                )
                session.dropped_count = 0
        logger.debug(f"Opened notification channel for session {session_id[:8]}…")
        return channel

    async def close_channel(self, channel: NotificationChannel) -> None:
        session = self._sessions.get(channel.session_id)
        channel.closed = True
        if session is None:
            return
        async with session._lock:
            if session.channel is channel:
                session.channel = None
                if session.state is SessionState.STREAMING:
                    session.state = SessionState.ACTIVE
                session.touch()
            session.wake()
        logger.debug(f"Closed notification channel for session {channel.session_id[:8]}…")

    async def _reap_idle_sessions(self) -> None:
        while True:
            await anyio.sleep(self.reap_interval)
            await self.reap_idle_sessions()

    async def reap_idle_sessions(self) -> list[str]:
        """Terminate sessions idle for longer than ``idle_timeout``."""
        now = time.monotonic()
        idle = [
            session.session_id
            for session in list(self._sessions.values())
            if session.channel is None
            and not session.in_flight
            and now - session.last_activity > self.idle_timeout
        ]
        for session_id in idle:
            await self.terminate(session_id, reason="idle timeout")
        return idle
