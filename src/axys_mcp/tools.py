"""Static registry of the tools exposed by the gateway."""

from __future__ import annotations

from enum import Enum

from mcp import types
from mcp.shared.exceptions import McpError


class ToolName(str, Enum):
    """Every tool the gateway can dispatch. Adding a tool means adding a member here."""

    AI_SEARCH_STRUCTURED = "ai_search_structured"
    AI_SEARCH_UNSTRUCTURED = "ai_search_unstructured"
    VALIDATE_CONNECTION = "validate_connection"

    @classmethod
    def parse(cls, name: str) -> ToolName:
        try:
            return cls(name)
        except ValueError:
            raise McpError(types.ErrorData(code=types.METHOD_NOT_FOUND, message=f"Unknown tool: {name}")) from None


TOOLS: tuple[types.Tool, ...] = (
    types.Tool(
        name=ToolName.AI_SEARCH_STRUCTURED.value,
        description=(
            "Search using AI with structured search - returns structured data from configured data sources. "
            "This uses natural language understanding to query structured databases and returns organized, "
            "tabular results. Best for questions that require querying relational data, structured records, "
            "or when you need precise data extraction from databases."
        ),
        inputSchema={
            "type": "object",
            "properties": {
                "query": {
                    "type": "string",
                    "description": (
                        "Natural language query to search for (e.g., 'how to install AXYS', 'find all users in "
                        "engineering department'). This is mostly used for transaction, details, users, people, "
                        "sessions etc"
                    ),
                },
            },
            "required": ["query"],
        },
    ),
    types.Tool(
        name=ToolName.AI_SEARCH_UNSTRUCTURED.value,
        description=(
            "Search using AI with unstructured search - searches documents, videos, and files using natural "
            "language. This tool performs semantic search across unstructured content like PDFs, Word documents, "
            "videos, images, and other file types. It uses AI to understand context and meaning, making it ideal "
            "for finding information in documentation, presentations, or media files. Can optionally return just "
            "file references or full content extracts."
        ),
        inputSchema={
            "type": "object",
            "properties": {
                "query": {
                    "type": "string",
                    "description": (
                        "Natural language query describing what you're looking for in documents or media "
                        "(e.g., 'deployment instructions', 'architecture diagrams')"
                    ),
                },
                "searchIndices": {
                    "type": "string",
                    "description": (
                        "Optional: Specific index to search (e.g., 'video', 'document', 'pdf'). Leave empty to "
                        "search across all unstructured content types."
                    ),
                },
                "fileOnly": {
                    "type": "boolean",
                    "description": (
                        "Set to true to return only file metadata and references without extracting content. "
                        "Use this for faster searches when you only need to know which files match, not their "
                        "full content."
                    ),
                    "default": False,
                },
            },
            "required": ["query"],
        },
    ),
    types.Tool(
        name=ToolName.VALIDATE_CONNECTION.value,
        description=(
            "Validate the connection to MCP API and verify that the MCP_KEY is properly configured. Use this to "
            "troubleshoot connectivity issues or confirm the API credentials are working before attempting "
            "AI-powered searches."
        ),
        inputSchema={"type": "object", "properties": {}},
    ),
)
