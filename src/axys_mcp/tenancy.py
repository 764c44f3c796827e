"""Resolution of the upstream client each session is bound to.

One process can serve many AXYS tenants. A hosted client passes its tenant
configuration as query parameters on the request that initializes the session,
either as direct fields::

    /mcp?AXYS_API_HOST=https://acme.axys.ai&MCP_KEY=...

or as a single JSON-encoded field::

    /mcp?config={"AXYS_API_HOST": "https://acme.axys.ai", "MCP_KEY": "..."}

Clients are cached per ``(host, key)`` so sessions of the same tenant share a
connection pool. Without a tenant configuration the process-wide default client,
built from the environment at startup, is used; it may be absent.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Mapping
from typing import Protocol
from urllib.parse import unquote

from pydantic import AnyHttpUrl, BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from starlette.requests import Request

from axys_mcp.client import GptSearchClient
from axys_mcp.utilities.logging import describe_secret

logger = logging.getLogger(__name__)

DEFAULT_API_HOST = "https://directory.axys.ai"

_http_url_adapter = TypeAdapter(AnyHttpUrl)


def is_valid_host(value: str | None) -> bool:
    """Whether ``value`` is an absolute http(s) URL usable as an API base."""
    if not value or not value.startswith(("http://", "https://")):
        return False
    try:
        _http_url_adapter.validate_python(value)
    except ValidationError:
        return False
    return True


def resolve_api_host(value: str | None) -> str:
    """Return ``value`` if it is a valid host, else :data:`DEFAULT_API_HOST`.

    Hosting platforms check servers with placeholder values such as ``"string"``,
    so an invalid host is replaced rather than rejected.
    """
    if value is not None and is_valid_host(value):
        return value
    if value:
        logger.warning("Invalid AXYS API host %r, falling back to %s", value, DEFAULT_API_HOST)
    return DEFAULT_API_HOST


class TenantConfig(BaseModel):
    """Upstream configuration supplied by a client for its session."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    api_host: str | None = Field(default=None, alias="AXYS_API_HOST")
    mcp_key: str | None = Field(default=None, alias="MCP_KEY")


def parse_config_from_query(query_params: Mapping[str, str]) -> TenantConfig | None:
    """Extract a tenant configuration from query parameters.

    Non-empty direct ``AXYS_API_HOST``/``MCP_KEY`` fields win over the JSON
    ``config`` field. A malformed ``config`` value is logged and treated as absent.
    """
    if query_params.get("MCP_KEY") or query_params.get("AXYS_API_HOST"):
        config = TenantConfig(
            api_host=query_params.get("AXYS_API_HOST"),
            mcp_key=query_params.get("MCP_KEY"),
        )
        logger.info(
            "Parsed config from direct query params: AXYS_API_HOST=%s, MCP_KEY=%s",
            config.api_host,
            describe_secret(config.mcp_key),
        )
        return config

    raw = query_params.get("config")
    if not raw:
        return None
    try:
        config = TenantConfig.model_validate(json.loads(unquote(raw)))
    except (ValueError, ValidationError) as exc:
        logger.warning("Failed to parse JSON config from query: %s", exc)
        return None
    logger.info(
        "Parsed config from JSON query param: AXYS_API_HOST=%s, MCP_KEY=%s",
        config.api_host,
        describe_secret(config.mcp_key),
    )
    return config


ClientFactory = Callable[[str, str], GptSearchClient]


class ClientRegistry:
    """Owns every upstream client of the process.

    Args:
        default_client: Client built from the environment, or ``None`` when no
            key was configured at startup.
        client_factory: Builds a client from ``(host, mcp_key)``.
    """

    def __init__(
        self,
        default_client: GptSearchClient | None = None,
        client_factory: ClientFactory = GptSearchClient,
    ):
        self.default_client = default_client
        self._client_factory = client_factory
        self._clients: dict[tuple[str, str], GptSearchClient] = {}

    def resolve(self, config: TenantConfig | None) -> GptSearchClient | None:
        if config is None or not config.mcp_key:
            return self.default_client

        host = resolve_api_host(config.api_host)
        cache_key = (host, config.mcp_key)
        client = self._clients.get(cache_key)
        if client is None:
            logger.info("Creating new MCP client for config (host: %s)", host)
            client = self._client_factory(host, config.mcp_key)
            self._clients[cache_key] = client
        return client

    async def aclose(self) -> None:
        clients = list(self._clients.values())
        if self.default_client is not None:
            clients.append(self.default_client)
        self._clients.clear()
        for client in clients:
            await client.aclose()


class ClientResolver(Protocol):
    """Strategy choosing the upstream client for a new session."""

    def resolve(self, request: Request) -> GptSearchClient | None: ...


class EnvironmentResolver:
    """Every session uses the client configured from the environment."""

    def __init__(self, registry: ClientRegistry):
        self.registry = registry

    def resolve(self, request: Request) -> GptSearchClient | None:
        return self.registry.default_client


class QueryParamsResolver:
    """Sessions may bring their own tenant configuration in the query string."""

    def __init__(self, registry: ClientRegistry):
        self.registry = registry

    def resolve(self, request: Request) -> GptSearchClient | None:
        config = parse_config_from_query(request.query_params)
        logger.debug("Resolving upstream client, config: %s", "provided" if config else "none")
        return self.registry.resolve(config)
