"""MCP protocol server exposing the AXYS search tools.

A fresh :class:`mcp.server.lowlevel.Server` is built for every session and bound
to exactly one upstream client (or to none, when no credentials are known).

Errors follow the MCP taxonomy: a missing argument is ``INVALID_PARAMS``, an
unknown tool is ``METHOD_NOT_FOUND`` and anything unexpected while talking to
the upstream API is ``INTERNAL_ERROR``. A failed connectivity check is not an
error: it is reported as tool output.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from mcp import types
from mcp.server.lowlevel import Server
from mcp.shared.exceptions import McpError
from pydantic import ValidationError
from typing_extensions import assert_never

from axys_mcp import __version__
from axys_mcp.client import GptSearchClient, SearchRequest, SearchType
from axys_mcp.tools import TOOLS, ToolName

logger = logging.getLogger(__name__)

SERVER_NAME = "axys-mcp-lite"

CLIENT_NOT_INITIALIZED = "Error: MCP client not initialized. Please check MCP_KEY configuration."
VALIDATE_NOT_INITIALIZED = "✗ MCP client not initialized. Please check MCP_KEY configuration."
VALIDATE_OK = "✓ Connection to MCP API is valid and working"
VALIDATE_FAILED = "✗ Failed to connect to MCP API. Please check your configuration."


def _text_result(text: str) -> types.ServerResult:
    return types.ServerResult(types.CallToolResult(content=[types.TextContent(type="text", text=text)]))


def _require_query(arguments: dict[str, Any]) -> str:
    query = arguments.get("query")
    if not query or not isinstance(query, str):
        raise McpError(types.ErrorData(code=types.INVALID_PARAMS, message="query is required"))
    return query


def build_search_request(tool: ToolName, arguments: dict[str, Any]) -> SearchRequest:
    """Translate tool arguments into the upstream request for a search tool.

    ``searchIndices`` is forwarded only when non-empty and ``fileOnly`` only when
    the caller supplied it, so omitted options never reach the API. Supplied
    options go through model validation, so ``"false"`` is read as ``False``
    and values that cannot be coerced are rejected as ``INVALID_PARAMS``.
    """
    query = _require_query(arguments)
    if tool is ToolName.AI_SEARCH_STRUCTURED:
        return SearchRequest(query=query, searchType=SearchType.STRUCTURED)

    fields: dict[str, Any] = {"query": query, "searchType": SearchType.UNSTRUCTURED}
    if arguments.get("searchIndices"):
        fields["searchIndices"] = arguments["searchIndices"]
    if arguments.get("fileOnly") is not None:
        fields["fileOnly"] = arguments["fileOnly"]
    try:
        return SearchRequest.model_validate(fields)
    except ValidationError as exc:
        details = "; ".join(f"{'.'.join(map(str, error['loc']))}: {error['msg']}" for error in exc.errors())
        raise McpError(types.ErrorData(code=types.INVALID_PARAMS, message=f"Invalid arguments: {details}")) from exc


async def _run_search(client: GptSearchClient | None, request: SearchRequest) -> types.ServerResult:
    if client is None:
        return _text_result(CLIENT_NOT_INITIALIZED)
    response = await client.ai_search(request)
    return _text_result(response.model_dump_json(indent=2, exclude_unset=True))


async def _validate_connection(client: GptSearchClient) -> types.ServerResult:
    is_valid = await client.validate_connection()
    return _text_result(VALIDATE_OK if is_valid else VALIDATE_FAILED)


def create_server(client: GptSearchClient | None) -> Server[Any, Any]:
    """Create a protocol server instance bound to ``client``."""
    server: Server[Any, Any] = Server(SERVER_NAME, version=__version__)

    @server.list_tools()
    async def list_tools() -> list[types.Tool]:
        logger.info("Client requested tool list")
        return list(TOOLS)

    async def call_tool(req: types.CallToolRequest) -> types.ServerResult:
        name = req.params.name
        arguments = req.params.arguments or {}
        logger.info("Tool called: %s", name)
        logger.info("Arguments: %s", json.dumps(arguments, indent=2, default=str))

        try:
            tool = ToolName.parse(name)
            match tool:
                case ToolName.AI_SEARCH_STRUCTURED | ToolName.AI_SEARCH_UNSTRUCTURED:
                    result = await _run_search(client, build_search_request(tool, arguments))
                case ToolName.VALIDATE_CONNECTION:
                    if client is None:
                        logger.warning("Tool %s failed: MCP client not initialized", name)
                        return _text_result(VALIDATE_NOT_INITIALIZED)
                    result = await _validate_connection(client)
                case _:
                    assert_never(tool)
        except McpError as err:
            logger.warning("Tool %s failed: %s", name, err.error.message)
            raise
        except Exception as err:
            logger.error("Tool %s failed: %s", name, err)
            raise McpError(
                types.ErrorData(code=types.INTERNAL_ERROR, message=f"Error executing {name}: {err}")
            ) from err

        logger.info("Tool %s completed successfully", name)
        return result

    # Registered directly rather than through @server.call_tool(): the decorator
    # turns every exception into an isError result, while protocol errors must
    # reach the caller as JSON-RPC errors.
    server.request_handlers[types.CallToolRequest] = call_tool
    return server
