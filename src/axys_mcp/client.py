"""Client for the AXYS "GPT MCP" search API.

The upstream contract is a single endpoint: a POST carrying the query and the
search mode, answered with an envelope of the form
``{"status": <int>, "message": <str>, "obj": <any>}``. Every failure, whatever
its origin, is normalized to :class:`~axys_mcp.exceptions.UpstreamError`.
"""

from __future__ import annotations

import logging
from enum import Enum
from types import TracebackType
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, ValidationError

from axys_mcp.exceptions import UpstreamError

logger = logging.getLogger(__name__)

API_NAME = "GPT MCP API"
SEARCH_PATH = "/axys-admin-app/gpt/ai-search/mcp"
MCP_KEY_HEADER = "x-mcp-key"

# AI-backed searches routinely take more than a minute
DEFAULT_TIMEOUT = httpx.Timeout(180.0)


class SearchType(str, Enum):
    STRUCTURED = "structured"
    UNSTRUCTURED = "unstructured"


class SearchRequest(BaseModel):
    """Body of a search call.

    Optional fields are only sent when they were set explicitly, so an explicit
    ``fileOnly=False`` reaches the API while an omitted one does not.
    """

    query: str
    searchType: SearchType
    searchIndices: str | None = None
    fileOnly: bool | None = None

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_unset=True)


class SearchResponse(BaseModel):
    """Envelope returned by the search API. Unknown fields are kept as-is."""

    model_config = ConfigDict(extra="allow")

    status: int | None = None
    message: str | None = None
    obj: Any = None


def _error_from_response(response: httpx.Response) -> UpstreamError:
    message: Any = None
    status: Any = None
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        message = body.get("message")
        status = body.get("status")
    return UpstreamError(f"{API_NAME} Error: {message or 'Unknown error'} (Status: {status or response.status_code})")


class GptSearchClient:
    """Async client bound to one AXYS host and MCP key.

    Args:
        host: Base URL of the AXYS deployment.
        mcp_key: Key sent in the ``x-mcp-key`` header on every call.
        timeout: Per-request timeout; defaults to three minutes.
        transport: Optional httpx transport, mainly for tests.
    """

    def __init__(
        self,
        host: str,
        mcp_key: str,
        *,
        timeout: httpx.Timeout | float = DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.host = host
        self._client = httpx.AsyncClient(
            base_url=host,
            headers={MCP_KEY_HEADER: mcp_key, "Content-Type": "application/json"},
            timeout=timeout,
            transport=transport,
            follow_redirects=True,
        )

    async def ai_search(self, request: SearchRequest) -> SearchResponse:
        """Run a structured or unstructured AI search."""
        try:
            response = await self._client.post(SEARCH_PATH, json=request.to_payload())
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise _error_from_response(exc.response) from exc
        except (httpx.InvalidURL, httpx.UnsupportedProtocol) as exc:
            raise UpstreamError(f"Request setup error: {exc}") from exc
        except httpx.RequestError as exc:
            raise UpstreamError(f"No response received from {API_NAME}") from exc

        try:
            return SearchResponse.model_validate_json(response.content)
        except ValidationError as exc:
            raise UpstreamError(
                f"{API_NAME} Error: Invalid response body (Status: {response.status_code})"
            ) from exc

    async def validate_connection(self) -> bool:
        """Probe the API with a trivial search. Never raises."""
        try:
            await self.ai_search(SearchRequest(query="test", searchType=SearchType.STRUCTURED))
        except Exception:
            logger.warning("%s connection validation failed", API_NAME, exc_info=True)
            return False
        return True

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> GptSearchClient:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.aclose()
