"""An MCP gateway for the [AXYS](https://axys.ai) AI search API.

The gateway exposes AXYS natural-language search as MCP tools and forwards each
tool call to the AXYS "GPT MCP" REST endpoint. Two bindings are available:

- stdio, for local desktop clients (one implicit session per process)
- Streamable HTTP, for remote hosting, where every client gets its own session
  and may bring its own AXYS credentials through query parameters

## Example - serve over Streamable HTTP

```python
from axys_mcp import ClientRegistry, QueryParamsResolver, SessionMultiplexer, create_app

registry = ClientRegistry()
multiplexer = SessionMultiplexer(QueryParamsResolver(registry))
app = create_app(multiplexer, registry)
```
"""

__version__ = "1.0.0"

from .app import create_app
from .client import GptSearchClient, SearchRequest, SearchResponse, SearchType
from .exceptions import UpstreamError
from .server import create_server
from .session_manager import Session, SessionMultiplexer, SessionState
from .tenancy import ClientRegistry, EnvironmentResolver, QueryParamsResolver, TenantConfig
from .tools import TOOLS, ToolName

__all__ = [
    "ClientRegistry",
    "EnvironmentResolver",
    "GptSearchClient",
    "QueryParamsResolver",
    "SearchRequest",
    "SearchResponse",
    "SearchType",
    "Session",
    "SessionMultiplexer",
    "SessionState",
    "TOOLS",
    "TenantConfig",
    "ToolName",
    "UpstreamError",
    "create_app",
    "create_server",
]
