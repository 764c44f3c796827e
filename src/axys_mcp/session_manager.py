"""Session transport multiplexer for the Streamable HTTP binding.

Every MCP client talking to the gateway over HTTP gets its own session: a
:class:`~mcp.server.streamable_http.StreamableHTTPServerTransport` plus a fresh
protocol server bound to the upstream client resolved for that session. The
multiplexer owns the table mapping session IDs to those pairs and decides, for
every inbound request, whether it continues a session, starts one, or is
rejected:

- ``POST`` with a known ``mcp-session-id`` is routed to that session's transport.
- ``POST`` without a session ID whose body is an ``initialize`` request starts a
  new session.
- Any other ``POST`` is rejected with a JSON-RPC ``-32000`` error.
- ``GET`` (server-to-client stream) and ``DELETE`` (termination) need a known
  session ID and are rejected in plain text otherwise.

A session moves ``pending -> active -> closed``. It enters the table when the
transport is connected and its ID is known, and leaves it exactly once, when
the transport terminates, its server task ends, or the multiplexer shuts down.
"""

from __future__ import annotations

import contextlib
import logging
from collections.abc import AsyncIterator, Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from http import HTTPStatus
from types import MappingProxyType
from typing import Any
from uuid import uuid4

import anyio
from anyio.abc import TaskGroup, TaskStatus
from mcp import types
from mcp.server.lowlevel import Server as MCPServer
from mcp.server.streamable_http import MCP_SESSION_ID_HEADER, StreamableHTTPServerTransport
from pydantic import ValidationError
from starlette.requests import Request
from starlette.responses import JSONResponse, PlainTextResponse, Response
from starlette.types import Message, Receive, Scope, Send

from axys_mcp.client import GptSearchClient
from axys_mcp.http_body import DEFAULT_MAX_BODY_BYTES, BodyTooLargeError, read_request_body, replay_body
from axys_mcp.server import create_server
from axys_mcp.tenancy import ClientResolver

logger = logging.getLogger(__name__)

# JSON-RPC "server error" range, used for requests that cannot be routed
BAD_REQUEST = -32000

ServerFactory = Callable[[GptSearchClient | None], MCPServer[Any, Any]]


class SessionState(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    CLOSED = "closed"


@dataclass(eq=False)
class Session:
    """One client conversation: a transport and the protocol server bound to it."""

    transport: StreamableHTTPServerTransport
    server: MCPServer[Any, Any]
    session_id: str | None = None
    state: SessionState = SessionState.PENDING


def jsonrpc_error_response(status_code: int, code: int, message: str) -> Response:
    """Build a JSON-RPC error envelope for a request that never reached a session."""
    error = types.ErrorData(code=code, message=message)
    return JSONResponse(
        {"jsonrpc": "2.0", "error": error.model_dump(exclude_none=True), "id": None},
        status_code=status_code,
    )


def is_initialize_request(body: bytes) -> bool:
    """Whether ``body`` holds a single, well-formed MCP ``initialize`` request."""
    try:
        message = types.JSONRPCMessage.model_validate_json(body)
    except ValidationError:
        return False

    request = message.root
    if not isinstance(request, types.JSONRPCRequest) or request.method != "initialize":
        return False
    try:
        types.InitializeRequestParams.model_validate(request.params or {})
    except ValidationError:
        return False
    return True


def _new_session_id() -> str:
    return uuid4().hex


class _ResponseTracker:
    """ASGI ``send`` wrapper remembering whether the response has started."""

    def __init__(self, send: Send):
        self._send = send
        self.started = False

    async def __call__(self, message: Message) -> None:
        if message["type"] == "http.response.start":
            self.started = True
        await self._send(message)


class SessionMultiplexer:
    """
    Routes Streamable HTTP requests to per-client MCP sessions.

    Only one ``run()`` context may be entered per instance; it owns the task
    group in which every session's protocol server runs.

    Args:
        resolver: Chooses the upstream client for each new session.
        server_factory: Builds the protocol server for a session from its client.
        json_response: Answer POSTs with plain JSON instead of SSE streams.
        session_id_factory: Produces a fresh session ID; IDs are never reused.
        max_body_bytes: Largest initialization body the multiplexer will buffer.
    """

    def __init__(
        self,
        resolver: ClientResolver,
        server_factory: ServerFactory = create_server,
        *,
        json_response: bool = False,
        session_id_factory: Callable[[], str] = _new_session_id,
        max_body_bytes: int = DEFAULT_MAX_BODY_BYTES,
    ):
        self.resolver = resolver
        self.server_factory = server_factory
        self.json_response = json_response
        self.max_body_bytes = max_body_bytes
        self._session_id_factory = session_id_factory

        self._sessions: dict[str, Session] = {}
        self._session_creation_lock = anyio.Lock()

        # The task group will be set during run()
        self._task_group: TaskGroup | None = None
        self._run_lock = anyio.Lock()
        self._has_started = False

    @property
    def sessions(self) -> Mapping[str, Session]:
        """Read-only view of the live session table."""
        return MappingProxyType(self._sessions)

    @contextlib.asynccontextmanager
    async def run(self) -> AsyncIterator[None]:
        """
        Run the multiplexer for the lifetime of the HTTP application.

        On exit every live transport is terminated and the table is cleared
        before the task group is cancelled.
        """
        async with self._run_lock:
            if self._has_started:
                raise RuntimeError(
                    "SessionMultiplexer .run() can only be called "
                    "once per instance. Create a new instance if you need to run again."
                )
            self._has_started = True

        async with anyio.create_task_group() as tg:
            self._task_group = tg
            logger.info("Session multiplexer started")
            try:
                yield
            finally:
                logger.info("Session multiplexer shutting down")
                with anyio.CancelScope(shield=True):
                    await self.close_all()
                tg.cancel_scope.cancel()
                self._task_group = None

    async def close_all(self) -> None:
        """Terminate every live session, continuing past individual failures."""
        for session in list(self._sessions.values()):
            try:
                await session.transport.terminate()
            except Exception:
                logger.exception("Error closing transport for session %s", session.session_id)
            self._close(session)
        self._sessions.clear()

    async def handle_request(self, scope: Scope, receive: Receive, send: Send) -> None:
        """ASGI entry point for the MCP endpoint."""
        if self._task_group is None:
            raise RuntimeError("Task group is not initialized. Make sure to use run().")

        request = Request(scope, receive)
        match request.method:
            case "POST":
                await self._handle_post(request, scope, receive, send)
            case "GET" | "DELETE":
                await self._handle_session_request(request, scope, receive, send)
            case _:
                response = PlainTextResponse(
                    "Method Not Allowed",
                    status_code=HTTPStatus.METHOD_NOT_ALLOWED,
                    headers={"Allow": "GET, POST, DELETE"},
                )
                await response(scope, receive, send)

    async def _handle_post(self, request: Request, scope: Scope, receive: Receive, send: Send) -> None:
        tracker = _ResponseTracker(send)
        session_id = request.headers.get(MCP_SESSION_ID_HEADER)
        logger.debug("Received MCP POST request, session: %s", session_id or "new")

        try:
            session = self._lookup(session_id)
            if session is not None:
                # The transport keeps per-session message order; nothing is queued here
                await session.transport.handle_request(scope, receive, tracker)
                return

            if session_id is None:
                body = await read_request_body(request, max_body_bytes=self.max_body_bytes)
                if is_initialize_request(body):
                    session = await self._create_session(request)
                    await session.transport.handle_request(scope, replay_body(body, receive), tracker)
                    return

            logger.warning("Rejecting MCP POST request without a valid session, session: %s", session_id)
            response = jsonrpc_error_response(
                HTTPStatus.BAD_REQUEST, BAD_REQUEST, "Bad Request: No valid session ID provided"
            )
            await response(scope, receive, tracker)
        except BodyTooLargeError as exc:
            response = jsonrpc_error_response(HTTPStatus.REQUEST_ENTITY_TOO_LARGE, BAD_REQUEST, str(exc))
            await response(scope, receive, tracker)
        except Exception:
            logger.exception("Error handling MCP request")
            if not tracker.started:
                response = jsonrpc_error_response(
                    HTTPStatus.INTERNAL_SERVER_ERROR, types.INTERNAL_ERROR, "Internal server error"
                )
                await response(scope, receive, tracker)

    async def _handle_session_request(self, request: Request, scope: Scope, receive: Receive, send: Send) -> None:
        session_id = request.headers.get(MCP_SESSION_ID_HEADER)
        session = self._lookup(session_id)
        if session is None:
            response = PlainTextResponse("Invalid or missing session ID", status_code=HTTPStatus.BAD_REQUEST)
            await response(scope, receive, send)
            return

        if request.method == "DELETE":
            logger.info("Session termination request for: %s", session_id)
        else:
            logger.info("SSE stream request for session: %s", session_id)

        await session.transport.handle_request(scope, receive, send)
        if session.transport.is_terminated:
            self._close(session)

    def _lookup(self, session_id: str | None) -> Session | None:
        if session_id is None:
            return None
        return self._sessions.get(session_id)

    async def _create_session(self, request: Request) -> Session:
        assert self._task_group is not None

        client = self.resolver.resolve(request)
        server = self.server_factory(client)

        async with self._session_creation_lock:
            session_id = self._session_id_factory()
            if session_id in self._sessions:
                raise RuntimeError(f"Session ID {session_id} is already in use")

            transport = StreamableHTTPServerTransport(
                mcp_session_id=session_id,
                is_json_response_enabled=self.json_response,
            )
            session = Session(transport=transport, server=server)
            await self._task_group.start(self._run_session, session)
            self._activate(session, session_id)
        return session

    def _activate(self, session: Session, session_id: str) -> None:
        """Completion handler of a pending session; only the first call has an effect."""
        if session.state is not SessionState.PENDING:
            return
        session.session_id = session_id
        session.state = SessionState.ACTIVE
        self._sessions[session_id] = session
        logger.info("Session initialized: %s", session_id)

    def _close(self, session: Session) -> None:
        if session.state is SessionState.CLOSED:
            return
        session.state = SessionState.CLOSED
        if session.session_id is not None and self._sessions.get(session.session_id) is session:
            del self._sessions[session.session_id]
            logger.info("Transport closed for session %s", session.session_id)

    async def _run_session(
        self,
        session: Session,
        *,
        task_status: TaskStatus[None] = anyio.TASK_STATUS_IGNORED,
    ) -> None:
        """
        Background task running the protocol server of one session.

        The session is closed whenever this task ends: normally, on a crash, or
        because the transport was terminated.
        """
        transport = session.transport
        try:
            async with transport.connect() as (read_stream, write_stream):
                task_status.started()
                try:
                    await session.server.run(
                        read_stream,
                        write_stream,
                        session.server.create_initialization_options(),
                        stateless=False,
                    )
                except Exception:
                    logger.exception("Session %s crashed", transport.mcp_session_id)
        finally:
            self._close(session)
