"""Process configuration read from the environment."""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from axys_mcp.tenancy import resolve_api_host
from axys_mcp.utilities.logging import LogLevel

DEFAULT_PORT = 8000


class Settings(BaseSettings):
    """AXYS MCP gateway settings.

    All settings can be configured via environment variables or a ``.env``
    file. For example, MCP_KEY=... enables the default upstream client.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )

    axys_api_host: str | None = Field(default=None, validation_alias="AXYS_API_HOST")
    mcp_key: str | None = Field(default=None, validation_alias="MCP_KEY")
    port: int | None = Field(default=None, validation_alias="PORT")
    mcp_transport: str | None = Field(default=None, validation_alias="MCP_TRANSPORT")
    log_level: LogLevel = Field(default="INFO", validation_alias="LOG_LEVEL")

    @property
    def api_host(self) -> str:
        return resolve_api_host(self.axys_api_host)

    @property
    def port_is_set(self) -> bool:
        return self.port is not None

    @property
    def listen_port(self) -> int:
        return self.port if self.port is not None else DEFAULT_PORT
