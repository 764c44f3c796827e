"""Starlette application serving the Streamable HTTP binding."""

from __future__ import annotations

import contextlib
import logging
from collections.abc import AsyncIterator
from typing import Any

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route
from starlette.types import Receive, Scope, Send

from axys_mcp.session_manager import SessionMultiplexer
from axys_mcp.tenancy import ClientRegistry

logger = logging.getLogger(__name__)

MCP_PATH = "/mcp"

# Advertised to hosting platforms so they can prompt users for tenant settings
MCP_CONFIG_SCHEMA: dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "$id": "/.well-known/mcp-config",
    "title": "MCP Session Configuration",
    "description": "Configuration for AXYS MCP Server",
    "x-query-style": "dot+bracket",
    "x-user-input-required": True,
    "type": "object",
    "required": ["AXYS_API_HOST", "MCP_KEY"],
    "properties": {
        "AXYS_API_HOST": {
            "type": "string",
            "title": "AXYS API Host",
            "description": "AXYS API host URL (e.g., https://directory.axys.ai)",
            "x-user-input-required": True,
        },
        "MCP_KEY": {
            "type": "string",
            "title": "MCP Key",
            "description": "MCP API key for authentication (obtain from AXYS admin)",
            "x-user-input-required": True,
        },
    },
}


class StreamableHTTPASGIApp:
    """
    ASGI application for the MCP endpoint.
    """

    def __init__(self, multiplexer: SessionMultiplexer):
        self.multiplexer = multiplexer

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        await self.multiplexer.handle_request(scope, receive, send)


async def health(request: Request) -> JSONResponse:
    return JSONResponse({"status": "ok"})


async def mcp_config(request: Request) -> JSONResponse:
    return JSONResponse(MCP_CONFIG_SCHEMA)


def create_app(multiplexer: SessionMultiplexer, registry: ClientRegistry | None = None) -> Starlette:
    """Build the HTTP application around ``multiplexer``.

    The multiplexer runs for the lifetime of the app. On shutdown every session
    is closed first, then the upstream clients in ``registry``.
    """

    @contextlib.asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        try:
            async with multiplexer.run():
                yield
        finally:
            if registry is not None:
                await registry.aclose()
            logger.info("HTTP application stopped")

    return Starlette(
        routes=[
            Route("/health", endpoint=health, methods=["GET"]),
            Route("/.well-known/mcp-config", endpoint=mcp_config, methods=["GET"]),
            Route(MCP_PATH, endpoint=StreamableHTTPASGIApp(multiplexer)),
        ],
        lifespan=lifespan,
    )
