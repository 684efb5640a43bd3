"""Gateway - the user-facing facade that wires the core together."""

from __future__ import annotations as _annotations

import ipaddress
from collections.abc import AsyncIterator, Callable, Mapping
from contextlib import asynccontextmanager
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as package_version
from typing import Any

import anyio
import uvicorn
from pydantic import BaseModel
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.authentication import AuthenticationMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from mcpgate.server.auth import AuthGate, BearerAuthBackend, RequireAuthMiddleware, TokenVerifier
from mcpgate.server.dispatcher import RequestDispatcher
from mcpgate.server.registry import RootAllowlist, ToolDescriptor, ToolHandler, ToolRegistry
from mcpgate.server.session import SessionManager
from mcpgate.server.settings import GatewaySettings
from mcpgate.server.streamable_http import StreamableHTTPTransport
from mcpgate.shared.exceptions import ConfigurationError
from mcpgate.shared.limits import LimitPolicy
from mcpgate.shared.pagination import CursorCodec
from mcpgate.types import LATEST_PROTOCOL_VERSION, Implementation
from mcpgate.utilities.logging import configure_logging, get_logger

logger = get_logger(__name__)

try:
    __version__ = package_version("mcpgate")
except PackageNotFoundError:
    __version__ = "unknown"

_LOOPBACK_NAMES = frozenset({"localhost", "ip6-localhost"})


def is_loopback(host: str) -> bool:
    """Whether *host* only accepts connections from the local machine."""
    host = host.strip("[]")
    if host.lower() in _LOOPBACK_NAMES:
        return True
    try:
        return ipaddress.ip_address(host).is_loopback
    except ValueError:
        return False


class Gateway:
    """A session-oriented tool gateway served over HTTP.

    Tools are registered with :meth:`tool` or :meth:`add_tool` before the
    gateway starts; the registry is frozen as soon as the app starts serving.

    Example:

    ```python
    gateway = Gateway("notes")

    @gateway.tool(input_schema={"type": "object", "properties": {"text": {"type": "string"}}})
    async def echo(arguments, signal, ctx):
        return arguments["text"]

    gateway.run()
    ```
    """

    def __init__(
        self,
        name: str | None = None,
        instructions: str | None = None,
        token_verifier: TokenVerifier | None = None,
        *,
        settings: GatewaySettings | None = None,
        **settings_overrides: Any,
    ):
        if name is not None:
            settings_overrides["server_name"] = name
        if instructions is not None:
            settings_overrides["instructions"] = instructions
        if settings is None:
            settings = GatewaySettings(**settings_overrides)
        elif settings_overrides:
            settings = settings.model_copy(update=settings_overrides)
        self.settings = settings

        self.limits = LimitPolicy(settings.limits)
        self.roots = RootAllowlist(settings.roots)
        self._registry = ToolRegistry(self.limits, self.roots)
        self.auth = AuthGate(token_verifier) if token_verifier else AuthGate.from_token(settings.auth_token)
        self._cursors = CursorCodec(
            settings.cursor_secret.get_secret_value().encode() if settings.cursor_secret else None
        )
        self._session_manager = SessionManager(
            idle_timeout=settings.idle_session_timeout_s,
            reap_interval=settings.session_reap_interval_s,
            queue_depth=settings.notification_queue_depth,
        )
        self._dispatcher = RequestDispatcher(
            self._registry,
            self._session_manager,
            self.limits,
            self._cursors,
            server_info=Implementation(name=settings.server_name, version=__version__),
            instructions=settings.instructions,
            cancel_grace_s=settings.cancel_grace_ms / 1000,
        )

        configure_logging(self.settings.log_level)

    @property
    def name(self) -> str:
        return self.settings.server_name

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    @property
    def session_manager(self) -> SessionManager:
        return self._session_manager

    @property
    def dispatcher(self) -> RequestDispatcher:
        return self._dispatcher

    def add_tool(
        self,
        fn: ToolHandler,
        name: str | None = None,
        description: str | None = None,
        *,
        input_schema: Mapping[str, Any] | type[BaseModel] | None = None,
        timeout_ms: int | None = None,
        paginated: bool = False,
        uses_roots: bool = False,
    ) -> ToolDescriptor:
        """Register a tool.

        Args:
            fn: The handler, called as ``fn(arguments, signal, ctx)``
            name: Optional name for the tool (defaults to the function name)
            description: Optional description (defaults to the docstring)
            input_schema: A JSON Schema or a pydantic model for the arguments
            timeout_ms: Declared per-call timeout, at most ``maxToolRuntimeMs``
                (which is also the default)
            paginated: The tool accepts ``limit``/``cursor`` and returns a ``Page``
            uses_roots: The tool accepts a ``root``/``project_id`` selector
        """
        descriptor = ToolDescriptor.from_handler(
            fn,
            name=name,
            description=description,
            input_schema=input_schema,
            timeout_ms=timeout_ms or self.limits.settings.max_tool_runtime_ms,
            paginated=paginated,
            uses_roots=uses_roots,
        )
        return self._registry.register(descriptor)

    def tool(
        self,
        name: str | None = None,
        description: str | None = None,
        *,
        input_schema: Mapping[str, Any] | type[BaseModel] | None = None,
        timeout_ms: int | None = None,
        paginated: bool = False,
        uses_roots: bool = False,
    ) -> Callable[[ToolHandler], ToolHandler]:
        """Decorator to register a tool.

        Example:

        ```python
        @gateway.tool(paginated=True, uses_roots=True)
        async def list_files(arguments, signal, ctx):
            files = sorted(p.name for p in ctx.root.iterdir())
            return ctx.page.slice(files)
        ```
        """
        if callable(name):
            raise TypeError(
                "The @tool decorator was used incorrectly. Did you forget to call it? Use @tool() instead of @tool"
            )

        def decorator(fn: ToolHandler) -> ToolHandler:
            self.add_tool(
                fn,
                name=name,
                description=description,
                input_schema=input_schema,
                timeout_ms=timeout_ms,
                paginated=paginated,
                uses_roots=uses_roots,
            )
            return fn

        return decorator

    def check_binding(self, host: str | None = None) -> None:
        """Refuse to serve on a non-loopback binding without a credential.

        Raises:
            ConfigurationError: if the binding would be reachable from other
                hosts and no bearer credential is configured
        """
        host = host or self.settings.host
        published = self.settings.published or not is_loopback(host)
        if not published or self.auth.auth_configured:
            return
        if self.settings.allow_unauthenticated_publish:
            logger.warning(f"Serving on {host} without authentication")
            return
        raise ConfigurationError(
            f"Refusing to publish on {host} without a bearer credential. "
            "Set MCPGATE_AUTH_TOKEN or MCPGATE_ALLOW_UNAUTHENTICATED_PUBLISH=true."
        )

    @property
    def ready(self) -> bool:
        return self._registry.frozen and self._session_manager.running

    async def _health(self, request: Request) -> JSONResponse:
        if self.ready:
            return JSONResponse({"status": "ready"})
        return JSONResponse({"status": "not-ready"}, status_code=503)

    async def _version(self, request: Request) -> JSONResponse:
        return JSONResponse(
            {
                "name": self.settings.server_name,
                "version": __version__,
                "protocolVersion": LATEST_PROTOCOL_VERSION,
            }
        )

    @asynccontextmanager
    async def lifespan(self, app: Starlette) -> AsyncIterator[None]:
        self._registry.freeze()
        logger.info(f"Gateway {self.name} serving {len(self._registry)} tool(s)")
        async with self._session_manager.run():
            yield

    def streamable_http_app(self) -> Starlette:
        """Return the Starlette app serving the gateway endpoint."""
        transport = StreamableHTTPTransport(
            self._dispatcher,
            self._session_manager,
            self.limits,
            security_settings=self.settings.transport_security,
            ping_interval=self.settings.sse_ping_interval_s,
        )

        middleware: list[Middleware] = []
        if self.auth.auth_configured:
            middleware = [Middleware(AuthenticationMiddleware, backend=BearerAuthBackend(self.auth))]
            endpoint: Any = RequireAuthMiddleware(transport)
        else:
            endpoint = transport

        routes = [
            Route(self.settings.streamable_http_path, endpoint=endpoint),
            Route(self.settings.health_path, endpoint=self._health, methods=["GET"]),
            Route(self.settings.version_path, endpoint=self._version, methods=["GET"]),
        ]

        return Starlette(
            debug=self.settings.debug,
            routes=routes,
            middleware=middleware,
            lifespan=self.lifespan,
        )

    async def run_async(self) -> None:
        """Serve the gateway with uvicorn."""
        self.check_binding()
        config = uvicorn.Config(
            self.streamable_http_app(),
            host=self.settings.host,
            port=self.settings.port,
            log_level=self.settings.log_level.lower(),
        )
        server = uvicorn.Server(config)
        await server.serve()

    def run(self) -> None:
        """Run the gateway. This is a synchronous function."""
        anyio.run(self.run_async)
