"""Tests for the bearer credential gate."""

import httpx
import pytest
from pydantic import SecretStr
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.authentication import AuthenticationMiddleware
from starlette.requests import Request
from starlette.responses import PlainTextResponse
from starlette.routing import Route
from starlette.types import Receive, Scope, Send

from mcpgate.server.auth import AuthGate, BearerAuthBackend, RequireAuthMiddleware, StaticTokenVerifier


@pytest.mark.anyio
async def test_static_verifier():
    verifier = StaticTokenVerifier(SecretStr("s3cret"))
    assert await verifier.verify_token("s3cret") == "caller"
    assert await verifier.verify_token("wrong") is None


def test_empty_credential_is_refused():
    with pytest.raises(ValueError):
        StaticTokenVerifier("")


@pytest.mark.anyio
async def test_gate_without_credential_accepts_everyone():
    gate = AuthGate.from_token(None)
    assert gate.auth_configured is False
    assert await gate.authenticate(None) == "anonymous"
    assert await gate.authenticate("Bearer whatever") == "anonymous"


@pytest.mark.anyio
@pytest.mark.parametrize(
    ("header", "expected"),
    [
        ("Bearer s3cret", "caller"),
        ("bearer s3cret", "caller"),
        ("Bearer wrong", None),
        ("Basic czNjcmV0", None),
        ("", None),
        (None, None),
    ],
)
async def test_gate_with_credential(header: str | None, expected: str | None):
    gate = AuthGate.from_token(SecretStr("s3cret"))
    assert gate.auth_configured is True
    assert await gate.authenticate(header) == expected


def _protected_app(gate: AuthGate) -> Starlette:
    async def hello(scope: Scope, receive: Receive, send: Send) -> None:
        response = PlainTextResponse(f"hello {scope['user'].display_name}")
        await response(scope, receive, send)

    async def open_endpoint(request: Request) -> PlainTextResponse:
        return PlainTextResponse("open")

    return Starlette(
        routes=[
            Route("/mcp", endpoint=RequireAuthMiddleware(hello)),
            Route("/healthz", endpoint=open_endpoint),
        ],
        middleware=[Middleware(AuthenticationMiddleware, backend=BearerAuthBackend(gate))],
    )


@pytest.mark.anyio
async def test_require_auth_rejects_with_envelope():
    app = _protected_app(AuthGate.from_token("s3cret"))
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://testserver") as client:
        response = await client.post("/mcp", headers={"Authorization": "Bearer wrong"})
        assert response.status_code == 401
        assert response.headers["www-authenticate"] == 'Bearer error="invalid_token"'
        body = response.json()
        assert body["id"] is None
        assert body["error"]["data"]["code"] == "Unauthorized"

        response = await client.get("/healthz")
        assert response.status_code == 200


@pytest.mark.anyio
async def test_require_auth_passes_authenticated_requests():
    app = _protected_app(AuthGate.from_token("s3cret"))
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://testserver") as client:
        response = await client.get("/mcp", headers={"Authorization": "Bearer s3cret"})
        assert response.status_code == 200
        assert response.text == "hello caller"
