"""Bearer-credential authentication for the /mcp endpoint.

The :class:`AuthGate` makes exactly one decision per request, through
:class:`BearerAuthBackend` installed as Starlette's ``AuthenticationMiddleware``.
:class:`RequireAuthMiddleware` wraps the /mcp route and rejects the request
with ``Unauthorized`` before any session or registry lookup when that decision
was negative. The health endpoint is never wrapped.
"""

from __future__ import annotations

import json
import secrets
from typing import Any, Protocol

from pydantic import SecretStr
from starlette.authentication import AuthCredentials, AuthenticationBackend, SimpleUser
from starlette.requests import HTTPConnection
from starlette.types import Receive, Scope, Send

from mcpgate.shared.exceptions import Unauthorized
from mcpgate.utilities.logging import get_logger

logger = get_logger(__name__)


class TokenVerifier(Protocol):
    """Verifies a bearer token. May perform I/O."""

    async def verify_token(self, token: str) -> str | None:
        """Return the identity the token belongs to, or None if it is not valid."""
        ...


class StaticTokenVerifier:
    """Accepts exactly one configured credential, compared in constant time."""

    def __init__(self, token: SecretStr | str, identity: str = "caller"):
        self._token = token.get_secret_value() if isinstance(token, SecretStr) else token
        if not self._token:
            raise ValueError("The configured credential must not be empty")
        self.identity = identity

    async def verify_token(self, token: str) -> str | None:
        if secrets.compare_digest(token.encode(), self._token.encode()):
            return self.identity
        return None


class AuthGate:
    """Decides whether a request carries an acceptable bearer credential."""

    def __init__(self, verifier: TokenVerifier | None = None):
        self.verifier = verifier

    @classmethod
    def from_token(cls, token: SecretStr | str | None) -> AuthGate:
        if not (token.get_secret_value() if isinstance(token, SecretStr) else token):
            return cls()
        return cls(StaticTokenVerifier(token))

    @property
    def auth_configured(self) -> bool:
        return self.verifier is not None

    async def authenticate(self, authorization: str | None) -> str | None:
        """Return the caller identity, or None if the credential is absent or wrong.

        When no credential is configured every request is accepted as anonymous
        and the header is ignored.
        """
        if self.verifier is None:
            return "anonymous"
        if not authorization or not authorization.lower().startswith("bearer "):
            return None
        return await self.verifier.verify_token(authorization[7:].strip())


class AuthenticatedUser(SimpleUser):
    """User with authentication info."""


class BearerAuthBackend(AuthenticationBackend):
    """Authentication backend that consults the :class:`AuthGate`."""

    def __init__(self, gate: AuthGate):
        self.gate = gate

    async def authenticate(self, conn: HTTPConnection):
        identity = await self.gate.authenticate(conn.headers.get("authorization"))
        if identity is None:
            return None
        return AuthCredentials(["mcp"]), AuthenticatedUser(identity)


class RequireAuthMiddleware:
    """Middleware that requires the request to have been authenticated by :class:`BearerAuthBackend`."""

    def __init__(self, app: Any):
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if not isinstance(scope.get("user"), AuthenticatedUser):
            logger.debug(f"Rejecting unauthenticated request to {scope.get('path')}")
            await self._send_auth_error(send)
            return

        await self.app(scope, receive, send)

    async def _send_auth_error(self, send: Send) -> None:
        """Send an ``Unauthorized`` error envelope with a WWW-Authenticate header."""
        envelope = Unauthorized("Missing or invalid bearer credential").envelope
        body_bytes = json.dumps(envelope.to_wire(None)).encode()

        await send(
            {
                "type": "http.response.start",
                "status": envelope.http_status,
                "headers": [
                    (b"content-type", b"application/json"),
                    (b"content-length", str(len(body_bytes)).encode()),
                    (b"www-authenticate", b'Bearer error="invalid_token"'),
                ],
            }
        )

        await send(
            {
                "type": "http.response.body",
                "body": body_bytes,
            }
        )
