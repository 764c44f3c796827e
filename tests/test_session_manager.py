"""Tests for SessionMultiplexer."""

import json
from collections.abc import AsyncIterator
from typing import Any
from unittest.mock import AsyncMock

import anyio
import httpx
import pytest
from mcp import types
from mcp.server.streamable_http import MCP_SESSION_ID_HEADER, StreamableHTTPServerTransport
from starlette.types import Message

from axys_mcp.app import create_app
from axys_mcp.server import create_server
from axys_mcp.session_manager import (
    Session,
    SessionMultiplexer,
    SessionState,
    is_initialize_request,
)
from axys_mcp.tenancy import ClientRegistry, EnvironmentResolver, QueryParamsResolver

INIT_REQUEST: dict[str, Any] = {
    "jsonrpc": "2.0",
    "id": 1,
    "method": "initialize",
    "params": {
        "protocolVersion": types.LATEST_PROTOCOL_VERSION,
        "capabilities": {},
        "clientInfo": {"name": "test-client", "version": "1.0"},
    },
}
INITIALIZED_NOTIFICATION = {"jsonrpc": "2.0", "method": "notifications/initialized"}
BASE_HEADERS = {"Accept": "application/json, text/event-stream", "Content-Type": "application/json"}


def session_headers(session_id: str) -> dict[str, str]:
    return {
        **BASE_HEADERS,
        MCP_SESSION_ID_HEADER: session_id,
        "mcp-protocol-version": types.LATEST_PROTOCOL_VERSION,
    }


def make_multiplexer(upstream, **kwargs: Any) -> tuple[SessionMultiplexer, ClientRegistry]:
    registry = ClientRegistry(default_client=upstream.client(), client_factory=upstream.client)
    return SessionMultiplexer(QueryParamsResolver(registry), json_response=True, **kwargs), registry


def http_client(multiplexer: SessionMultiplexer) -> httpx.AsyncClient:
    app = create_app(multiplexer)
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://testserver")


async def initialize(client: httpx.AsyncClient, params: dict[str, str] | None = None) -> str:
    response = await client.post("/mcp", json=INIT_REQUEST, headers=BASE_HEADERS, params=params)
    assert response.status_code == 200
    session_id = response.headers[MCP_SESSION_ID_HEADER]

    response = await client.post("/mcp", json=INITIALIZED_NOTIFICATION, headers=session_headers(session_id))
    assert response.status_code == 202
    return session_id


def assert_bad_request(response: httpx.Response) -> None:
    assert response.status_code == 400
    assert response.json() == {
        "jsonrpc": "2.0",
        "error": {"code": -32000, "message": "Bad Request: No valid session ID provided"},
        "id": None,
    }


@pytest.fixture
async def running(upstream) -> AsyncIterator[tuple[SessionMultiplexer, httpx.AsyncClient]]:
    multiplexer, registry = make_multiplexer(upstream)
    async with multiplexer.run():
        async with http_client(multiplexer) as client:
            yield multiplexer, client
    await registry.aclose()


def test_is_initialize_request():
    assert is_initialize_request(json.dumps(INIT_REQUEST).encode())

    assert not is_initialize_request(b"")
    assert not is_initialize_request(b"{not json")
    assert not is_initialize_request(json.dumps([INIT_REQUEST]).encode())
    assert not is_initialize_request(json.dumps({**INIT_REQUEST, "method": "tools/list"}).encode())
    assert not is_initialize_request(json.dumps({"jsonrpc": "2.0", "method": "initialize"}).encode())
    assert not is_initialize_request(json.dumps({**INIT_REQUEST, "params": {"capabilities": {}}}).encode())


@pytest.mark.anyio
async def test_run_can_only_be_called_once(upstream):
    multiplexer, _ = make_multiplexer(upstream)

    async with multiplexer.run():
        pass

    with pytest.raises(RuntimeError) as excinfo:
        async with multiplexer.run():
            pass

    assert "SessionMultiplexer .run() can only be called once per instance" in str(excinfo.value)


@pytest.mark.anyio
async def test_handle_request_without_run_raises_error(upstream):
    multiplexer, _ = make_multiplexer(upstream)

    scope = {"type": "http", "method": "POST", "path": "/mcp", "headers": []}

    async def receive() -> Message:
        return {"type": "http.request", "body": b"", "more_body": False}

    async def send(message: Message) -> None:
        pass

    with pytest.raises(RuntimeError) as excinfo:
        await multiplexer.handle_request(scope, receive, send)

    assert "Task group is not initialized. Make sure to use run()." in str(excinfo.value)


@pytest.mark.anyio
async def test_initialize_creates_session(running):
    multiplexer, client = running

    response = await client.post("/mcp", json=INIT_REQUEST, headers=BASE_HEADERS)

    assert response.status_code == 200
    session_id = response.headers[MCP_SESSION_ID_HEADER]
    assert response.json()["result"]["serverInfo"]["name"] == "axys-mcp-lite"

    session = multiplexer.sessions[session_id]
    assert session.session_id == session_id
    assert session.state is SessionState.ACTIVE
    assert session.transport.mcp_session_id == session_id


@pytest.mark.anyio
async def test_each_initialize_gets_its_own_session(running):
    multiplexer, client = running

    first = await initialize(client)
    second = await initialize(client)

    assert first != second
    assert set(multiplexer.sessions) == {first, second}
    assert multiplexer.sessions[first].server is not multiplexer.sessions[second].server


@pytest.mark.anyio
async def test_requests_are_routed_to_their_session(running, upstream):
    multiplexer, client = running
    first = await initialize(client)
    second = await initialize(client, params={"AXYS_API_HOST": "https://acme.axys.ai", "MCP_KEY": "tenant-key"})

    for session_id, query in ((second, "tenant search"), (first, "default search")):
        response = await client.post(
            "/mcp",
            json={
                "jsonrpc": "2.0",
                "id": 2,
                "method": "tools/call",
                "params": {"name": "ai_search_structured", "arguments": {"query": query}},
            },
            headers=session_headers(session_id),
        )
        assert response.status_code == 200
        [content] = response.json()["result"]["content"]
        assert json.loads(content["text"]) == upstream.body

    tenant_request, default_request = upstream.requests
    assert tenant_request.url.host == "acme.axys.ai"
    assert tenant_request.headers["x-mcp-key"] == "tenant-key"
    assert json.loads(tenant_request.content)["query"] == "tenant search"
    assert default_request.url.host == "directory.axys.ai"
    assert default_request.headers["x-mcp-key"] == "test-key"


@pytest.mark.anyio
async def test_non_initialize_request_without_session_is_rejected(running):
    multiplexer, client = running

    response = await client.post(
        "/mcp", json={"jsonrpc": "2.0", "id": 1, "method": "tools/list"}, headers=BASE_HEADERS
    )

    assert_bad_request(response)
    assert len(multiplexer.sessions) == 0


@pytest.mark.anyio
async def test_malformed_body_without_session_is_rejected(running):
    multiplexer, client = running

    response = await client.post("/mcp", content=b"{not json", headers=BASE_HEADERS)

    assert_bad_request(response)
    assert len(multiplexer.sessions) == 0


@pytest.mark.anyio
async def test_unknown_session_id_is_rejected_even_for_initialize(running):
    multiplexer, client = running

    response = await client.post("/mcp", json=INIT_REQUEST, headers=session_headers("does-not-exist"))

    assert_bad_request(response)
    assert len(multiplexer.sessions) == 0


@pytest.mark.anyio
@pytest.mark.parametrize("method", ["GET", "DELETE"])
async def test_get_and_delete_need_a_known_session(running, method: str):
    _, client = running

    without_header = await client.request(method, "/mcp")
    unknown = await client.request(method, "/mcp", headers={MCP_SESSION_ID_HEADER: "does-not-exist"})

    for response in (without_header, unknown):
        assert response.status_code == 400
        assert response.text == "Invalid or missing session ID"


@pytest.mark.anyio
async def test_unsupported_method(running):
    _, client = running

    response = await client.put("/mcp", content=b"{}")

    assert response.status_code == 405
    assert response.headers["allow"] == "GET, POST, DELETE"


@pytest.mark.anyio
async def test_delete_terminates_session(running):
    multiplexer, client = running
    session_id = await initialize(client)
    session = multiplexer.sessions[session_id]

    response = await client.delete("/mcp", headers=session_headers(session_id))

    assert response.status_code == 200
    assert session.transport.is_terminated
    assert session.state is SessionState.CLOSED
    assert session_id not in multiplexer.sessions

    stale = await client.post(
        "/mcp", json={"jsonrpc": "2.0", "id": 3, "method": "tools/list"}, headers=session_headers(session_id)
    )
    assert_bad_request(stale)


@pytest.mark.anyio
async def test_oversized_initialize_body(upstream):
    multiplexer, registry = make_multiplexer(upstream, max_body_bytes=64)

    async with multiplexer.run():
        async with http_client(multiplexer) as client:
            response = await client.post("/mcp", json=INIT_REQUEST, headers=BASE_HEADERS)

    assert response.status_code == 413
    assert response.json()["error"] == {"code": -32000, "message": "Request body exceeds max_body_bytes=64"}
    assert len(multiplexer.sessions) == 0
    await registry.aclose()


@pytest.mark.anyio
async def test_server_factory_failure_is_internal_error(upstream):
    def broken_factory(client: Any) -> Any:
        raise RuntimeError("cannot build server")

    multiplexer, registry = make_multiplexer(upstream)
    multiplexer.server_factory = broken_factory

    async with multiplexer.run():
        async with http_client(multiplexer) as client:
            response = await client.post("/mcp", json=INIT_REQUEST, headers=BASE_HEADERS)

    assert response.status_code == 500
    assert response.json() == {
        "jsonrpc": "2.0",
        "error": {"code": types.INTERNAL_ERROR, "message": "Internal server error"},
        "id": None,
    }
    assert len(multiplexer.sessions) == 0
    await registry.aclose()


@pytest.mark.anyio
async def test_session_id_collision_is_rejected(upstream):
    multiplexer, registry = make_multiplexer(upstream, session_id_factory=lambda: "fixed-id")

    async with multiplexer.run():
        async with http_client(multiplexer) as client:
            await initialize(client)
            original = multiplexer.sessions["fixed-id"]

            response = await client.post("/mcp", json=INIT_REQUEST, headers=BASE_HEADERS)

            assert response.status_code == 500
            assert multiplexer.sessions["fixed-id"] is original
            assert original.state is SessionState.ACTIVE
    await registry.aclose()


@pytest.mark.anyio
async def test_shutdown_terminates_every_session(upstream):
    multiplexer, registry = make_multiplexer(upstream)

    async with multiplexer.run():
        async with http_client(multiplexer) as client:
            broken = multiplexer.sessions[await initialize(client)]
            healthy = multiplexer.sessions[await initialize(client)]
        broken.transport.terminate = AsyncMock(side_effect=RuntimeError("terminate failed"))

    broken.transport.terminate.assert_awaited_once()
    assert healthy.transport.is_terminated
    assert broken.state is SessionState.CLOSED
    assert healthy.state is SessionState.CLOSED
    assert len(multiplexer.sessions) == 0
    await registry.aclose()


@pytest.mark.anyio
async def test_session_closed_when_server_task_crashes():
    multiplexer = SessionMultiplexer(EnvironmentResolver(ClientRegistry()))
    crash = anyio.Event()

    async def crashing_run(*args: Any, **kwargs: Any) -> None:
        await crash.wait()
        raise RuntimeError("Simulated crash")

    server = create_server(None)
    server.run = AsyncMock(side_effect=crashing_run)
    session = Session(transport=StreamableHTTPServerTransport(mcp_session_id="crashy"), server=server)

    async with multiplexer.run():
        assert multiplexer._task_group is not None
        await multiplexer._task_group.start(multiplexer._run_session, session)
        multiplexer._activate(session, "crashy")
        assert multiplexer.sessions["crashy"] is session

        crash.set()
        with anyio.fail_after(5):
            while session.state is not SessionState.CLOSED:
                await anyio.sleep(0.01)

        assert "crashy" not in multiplexer.sessions
        server.run.assert_awaited_once()


@pytest.mark.anyio
async def test_closed_session_is_never_activated():
    multiplexer = SessionMultiplexer(EnvironmentResolver(ClientRegistry()))
    session = Session(transport=StreamableHTTPServerTransport(mcp_session_id="late"), server=create_server(None))

    multiplexer._close(session)
    multiplexer._activate(session, "late")

    assert session.state is SessionState.CLOSED
    assert "late" not in multiplexer.sessions


@pytest.mark.anyio
async def test_close_only_removes_its_own_entry():
    multiplexer = SessionMultiplexer(EnvironmentResolver(ClientRegistry()))
    current = Session(transport=StreamableHTTPServerTransport(mcp_session_id="id"), server=create_server(None))
    replaced = Session(transport=StreamableHTTPServerTransport(mcp_session_id="id"), server=create_server(None))
    replaced.session_id = "id"
    replaced.state = SessionState.ACTIVE
    multiplexer._activate(current, "id")

    multiplexer._close(replaced)
    multiplexer._close(replaced)

    assert multiplexer.sessions["id"] is current
    assert replaced.state is SessionState.CLOSED
