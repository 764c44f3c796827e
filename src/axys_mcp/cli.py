"""Command-line entry point of the AXYS MCP gateway."""

from __future__ import annotations

import contextlib
import logging
import signal
import sys
from collections.abc import Iterator
from typing import Literal

import anyio
import click
import uvicorn
from mcp.server.stdio import stdio_server
from starlette.applications import Starlette

from axys_mcp.app import MCP_PATH, create_app
from axys_mcp.client import GptSearchClient
from axys_mcp.server import create_server
from axys_mcp.session_manager import SessionMultiplexer
from axys_mcp.settings import Settings
from axys_mcp.tenancy import ClientRegistry, ClientResolver, EnvironmentResolver, QueryParamsResolver
from axys_mcp.utilities.logging import configure_logging, describe_secret

logger = logging.getLogger(__name__)

Transport = Literal["stdio", "http"]
ConfigSource = Literal["query", "env"]


def select_transport(transport: Transport | None, settings: Settings, *, stdin_is_tty: bool) -> Transport:
    """Pick the binding to serve.

    An explicit choice wins, then ``MCP_TRANSPORT=stdio``. A process started
    with a key, a piped stdin and no ``PORT`` is assumed to be launched by a
    local MCP client and also gets stdio. Everything else serves HTTP.
    """
    if transport is not None:
        return transport
    if settings.mcp_transport == "stdio":
        return "stdio"
    if settings.mcp_key and not stdin_is_tty and not settings.port_is_set:
        return "stdio"
    return "http"


async def run_stdio(api_host: str, mcp_key: str) -> None:
    """Serve a single protocol server over stdin/stdout."""
    async with GptSearchClient(api_host, mcp_key) as client:
        if not await client.validate_connection():
            logger.warning("Failed to validate connection to MCP API. Server will start but API calls may fail.")

        server = create_server(client)
        logger.info("AXYS MCP server running on stdio")
        async with stdio_server() as (read_stream, write_stream):
            await server.run(read_stream, write_stream, server.create_initialization_options())


@contextlib.contextmanager
def sigterm_as_interrupt() -> Iterator[None]:
    """Treat SIGTERM like Ctrl-C.

    uvicorn handles SIGTERM itself, runs the lifespan shutdown, then re-raises
    the signal into whatever handler was installed before it started.
    """
    previous = signal.signal(signal.SIGTERM, signal.default_int_handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGTERM, previous)


def build_http_app(settings: Settings, *, config_source: ConfigSource, json_response: bool) -> Starlette:
    """Wire the registry, resolver and multiplexer into the HTTP application."""
    default_client = GptSearchClient(settings.api_host, settings.mcp_key) if settings.mcp_key else None
    registry = ClientRegistry(default_client)

    resolver: ClientResolver
    if config_source == "query":
        resolver = QueryParamsResolver(registry)
    else:
        resolver = EnvironmentResolver(registry)

    multiplexer = SessionMultiplexer(resolver, json_response=json_response)
    return create_app(multiplexer, registry)


@click.command()
@click.option("--transport", type=click.Choice(["stdio", "http"]), default=None, help="Transport type")
@click.option("--host", default="0.0.0.0", show_default=True, help="Interface to listen on for HTTP")
@click.option("--port", type=int, default=None, help="Port to listen on for HTTP [default: $PORT or 8000]")
@click.option(
    "--config-source",
    type=click.Choice(["query", "env"]),
    default="query",
    show_default=True,
    help="Where HTTP sessions get their upstream configuration",
)
@click.option(
    "--json-response",
    is_flag=True,
    default=False,
    help="Enable JSON responses instead of SSE streams",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"], case_sensitive=False),
    default=None,
    help="Logging level [default: $LOG_LEVEL or INFO]",
)
def main(
    transport: Transport | None,
    host: str,
    port: int | None,
    config_source: ConfigSource,
    json_response: bool,
    log_level: str | None,
) -> None:
    """AXYS MCP search gateway."""
    try:
        settings = Settings()
        level = log_level.upper() if log_level else settings.log_level
        configure_logging(level)  # type: ignore[arg-type]

        logger.info("AXYS_API_HOST: %s", settings.api_host)
        logger.info("MCP_KEY: %s", describe_secret(settings.mcp_key))

        mode = select_transport(transport, settings, stdin_is_tty=sys.stdin.isatty())
        if mode == "stdio":
            if not settings.mcp_key:
                logger.error("MCP_KEY environment variable is required for stdio mode")
                sys.exit(1)
            anyio.run(run_stdio, settings.api_host, settings.mcp_key)
            return

        listen_port = port if port is not None else settings.listen_port
        app = build_http_app(settings, config_source=config_source, json_response=json_response)
        logger.info("AXYS MCP server listening on http://%s:%s%s", host, listen_port, MCP_PATH)
        with sigterm_as_interrupt():
            uvicorn.run(app, host=host, port=listen_port, log_level=level.lower())
    except KeyboardInterrupt:
        logger.info("Shutting down")
    except Exception:
        logger.exception("Fatal error in main")
        sys.exit(1)
