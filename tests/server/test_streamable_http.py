"""Tests for the Streamable HTTP transport, driven through the ASGI app."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import httpx
import pytest

from mcpgate.server.gateway import Gateway
from mcpgate.server.settings import LimitSettings
from mcpgate.server.transport_security import TransportSecuritySettings
from mcpgate.types import LATEST_PROTOCOL_VERSION, MCP_PROTOCOL_VERSION_HEADER, MCP_SESSION_ID_HEADER

JSON_HEADERS = {"Content-Type": "application/json", "Accept": "application/json, text/event-stream"}
ECHO_SCHEMA = {"type": "object", "properties": {"text": {"type": "string"}}, "required": ["text"]}


def make_gateway(**settings: Any) -> Gateway:
    gateway = Gateway("test-gateway", **settings)

    @gateway.tool(input_schema=ECHO_SCHEMA)
    async def echo(arguments, signal, ctx):
        return arguments["text"]

    return gateway


@asynccontextmanager
async def serve(gateway: Gateway) -> AsyncIterator[httpx.AsyncClient]:
    app = gateway.streamable_http_app()
    # ASGITransport does not run the lifespan
    async with gateway.lifespan(app):
        async with httpx.AsyncClient(
            transport=httpx.ASGITransport(app=app), base_url="http://127.0.0.1:8000"
        ) as client:
            yield client


async def initialize(client: httpx.AsyncClient) -> str:
    response = await client.post(
        "/mcp",
        headers=JSON_HEADERS,
        json={
            "jsonrpc": "2.0",
            "id": 0,
            "method": "initialize",
            "params": {"protocolVersion": LATEST_PROTOCOL_VERSION, "clientInfo": {"name": "t", "version": "1"}},
        },
    )
    assert response.status_code == 200
    return response.headers[MCP_SESSION_ID_HEADER]


def rpc(method: str, params: dict[str, Any] | None = None, request_id: int = 1) -> dict[str, Any]:
    message: dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method}
    if params is not None:
        message["params"] = params
    return message


@pytest.mark.anyio
async def test_initialize_returns_session_header():
    gateway = make_gateway()
    async with serve(gateway) as client:
        session_id = await initialize(client)
        assert session_id
        session = gateway.session_manager.get_session(session_id)
        assert session.client_info == {"name": "t", "version": "1"}


@pytest.mark.anyio
async def test_call_tool_over_http():
    async with serve(make_gateway()) as client:
        session_id = await initialize(client)
        headers = {**JSON_HEADERS, MCP_SESSION_ID_HEADER: session_id}

        response = await client.post(
            "/mcp", headers=headers, json=rpc("tools/call", {"name": "echo", "arguments": {"text": "hi"}})
        )
        assert response.status_code == 200
        assert response.headers[MCP_SESSION_ID_HEADER] == session_id
        body = response.json()
        assert body["id"] == 1
        assert body["result"]["content"] == [{"type": "text", "text": "hi"}]

        response = await client.post("/mcp", headers=headers, json=rpc("tools/call", {"name": "missing_tool"}, 2))
        assert response.status_code == 200
        assert response.json()["error"]["data"]["code"] == "UnknownTool"


@pytest.mark.anyio
async def test_unknown_session_is_404():
    async with serve(make_gateway()) as client:
        response = await client.post(
            "/mcp", headers={**JSON_HEADERS, MCP_SESSION_ID_HEADER: "nope"}, json=rpc("ping")
        )
        assert response.status_code == 404
        assert response.json()["error"]["data"]["code"] == "SessionNotFound"


@pytest.mark.anyio
async def test_body_must_be_json():
    async with serve(make_gateway()) as client:
        response = await client.post("/mcp", headers={"Content-Type": "text/plain"}, content=b"{}")
        assert response.status_code == 400
        assert response.json()["error"]["data"]["code"] == "ValidationFailed"

        response = await client.post("/mcp", headers=JSON_HEADERS, content=b"{not json")
        assert response.status_code == 400
        assert response.json()["error"]["data"]["code"] == "ValidationFailed"

        response = await client.post("/mcp", headers=JSON_HEADERS, json={"hello": "world"})
        assert response.status_code == 400


@pytest.mark.anyio
async def test_batches_are_rejected():
    async with serve(make_gateway()) as client:
        response = await client.post("/mcp", headers=JSON_HEADERS, json=[rpc("ping"), rpc("ping", request_id=2)])
        assert response.status_code == 400
        assert "Batch" in response.json()["error"]["data"]["message"]


@pytest.mark.anyio
async def test_oversized_body_is_413():
    async with serve(make_gateway(limits=LimitSettings(max_request_bytes=256))) as client:
        session_id = await initialize(client)
        response = await client.post(
            "/mcp",
            headers={**JSON_HEADERS, MCP_SESSION_ID_HEADER: session_id},
            json=rpc("tools/call", {"name": "echo", "arguments": {"text": "x" * 500}}),
        )
        assert response.status_code == 413
        assert response.json()["error"]["data"]["code"] == "LimitExceeded"


@pytest.mark.anyio
async def test_oversized_streamed_body_is_413():
    async def chunks():
        for _ in range(4):
            yield b"x" * 100

    async with serve(make_gateway(limits=LimitSettings(max_request_bytes=256))) as client:
        response = await client.post("/mcp", headers=JSON_HEADERS, content=chunks())
        assert response.status_code == 413
        assert response.json()["error"]["data"]["details"]["limit"] == "maxRequestBytes"


@pytest.mark.anyio
async def test_protocol_version_header():
    async with serve(make_gateway()) as client:
        # the handshake itself is not checked
        response = await client.post(
            "/mcp",
            headers={**JSON_HEADERS, MCP_PROTOCOL_VERSION_HEADER: "1999-01-01"},
            json=rpc("initialize", {"protocolVersion": LATEST_PROTOCOL_VERSION}, 0),
        )
        assert response.status_code == 200
        session_id = response.headers[MCP_SESSION_ID_HEADER]
        headers = {**JSON_HEADERS, MCP_SESSION_ID_HEADER: session_id}

        response = await client.post(
            "/mcp", headers={**headers, MCP_PROTOCOL_VERSION_HEADER: LATEST_PROTOCOL_VERSION}, json=rpc("ping")
        )
        assert response.status_code == 200

        response = await client.post(
            "/mcp", headers={**headers, MCP_PROTOCOL_VERSION_HEADER: "1999-01-01"}, json=rpc("ping")
        )
        assert response.status_code == 400
        assert response.json()["error"]["data"]["code"] == "ValidationFailed"
        assert "Unsupported protocol version" in response.json()["error"]["data"]["message"]

        response = await client.delete("/mcp", headers={**headers, MCP_PROTOCOL_VERSION_HEADER: "1999-01-01"})
        assert response.status_code == 400
        response = await client.post("/mcp", headers=headers, json=rpc("ping", request_id=2))
        assert response.status_code == 200


@pytest.mark.anyio
async def test_notifications_and_responses_are_accepted():
    async with serve(make_gateway()) as client:
        session_id = await initialize(client)
        headers = {**JSON_HEADERS, MCP_SESSION_ID_HEADER: session_id}

        response = await client.post(
            "/mcp", headers=headers, json={"jsonrpc": "2.0", "method": "notifications/initialized"}
        )
        assert response.status_code == 202

        response = await client.post("/mcp", headers=headers, json={"jsonrpc": "2.0", "id": 5, "result": {}})
        assert response.status_code == 202

        response = await client.post(
            "/mcp", headers=JSON_HEADERS, json={"jsonrpc": "2.0", "method": "notifications/initialized"}
        )
        assert response.status_code == 404


@pytest.mark.anyio
async def test_delete_is_idempotent():
    gateway = make_gateway()
    async with serve(gateway) as client:
        session_id = await initialize(client)
        headers = {MCP_SESSION_ID_HEADER: session_id}

        response = await client.delete("/mcp", headers=headers)
        assert response.status_code == 200
        response = await client.delete("/mcp", headers=headers)
        assert response.status_code == 200

        response = await client.post("/mcp", headers={**JSON_HEADERS, **headers}, json=rpc("ping"))
        assert response.status_code == 404

        response = await client.delete("/mcp")
        assert response.status_code == 400


@pytest.mark.anyio
async def test_get_requires_event_stream_accept():
    async with serve(make_gateway()) as client:
        session_id = await initialize(client)
        response = await client.get(
            "/mcp", headers={MCP_SESSION_ID_HEADER: session_id, "Accept": "application/json"}
        )
        assert response.status_code == 406


@pytest.mark.anyio
async def test_get_for_unknown_session():
    async with serve(make_gateway()) as client:
        response = await client.get("/mcp", headers={MCP_SESSION_ID_HEADER: "nope", "Accept": "text/event-stream"})
        assert response.status_code == 404


@pytest.mark.anyio
async def test_second_channel_is_a_conflict():
    gateway = make_gateway()
    async with serve(gateway) as client:
        session_id = await initialize(client)
        channel = await gateway.session_manager.open_channel(session_id)

        response = await client.get(
            "/mcp", headers={MCP_SESSION_ID_HEADER: session_id, "Accept": "text/event-stream"}
        )
        assert response.status_code == 409
        assert response.json()["error"]["data"]["code"] == "SessionConflict"
        assert not channel.closed


@pytest.mark.anyio
async def test_unsupported_method():
    async with serve(make_gateway()) as client:
        response = await client.put("/mcp", headers=JSON_HEADERS, json=rpc("ping"))
        assert response.status_code == 405
        assert response.headers["allow"] == "GET, POST, DELETE"


@pytest.mark.anyio
async def test_dns_rebinding_protection():
    security = TransportSecuritySettings(
        allowed_hosts=["127.0.0.1:*"],
        allowed_origins=["http://127.0.0.1:*"],
    )
    async with serve(make_gateway(transport_security=security)) as client:
        response = await client.post(
            "/mcp", headers={**JSON_HEADERS, "Host": "evil.example.com"}, json=rpc("initialize", {}, 0)
        )
        assert response.status_code == 400

        response = await client.post(
            "/mcp", headers={**JSON_HEADERS, "Origin": "http://evil.example.com"}, json=rpc("initialize", {}, 0)
        )
        assert response.status_code == 401
        assert response.json()["error"]["data"]["code"] == "Unauthorized"

        response = await client.post(
            "/mcp", headers={**JSON_HEADERS, "Origin": "http://127.0.0.1:3000"}, json=rpc("initialize", {}, 0)
        )
        assert response.status_code == 200
