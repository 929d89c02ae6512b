# server/main.py
from contextlib import asynccontextmanager

from fastmcp import FastMCP

from app.di import Container, build_container
from app.logging import configure_logging
from server.registry import register_proxy_tools
from server.tools.upstream import register_upstream_tools


def make_lifespan(container: Container):
    @asynccontextmanager
    async def lifespan(mcp: FastMCP):
        # Discover proxy tools once, before the first tools/list
        definitions = await container.proxy_registry.load()
        register_proxy_tools(mcp, definitions, container.upstream_bridge, container.validator_service)
        try:
            yield container
        finally:
            await container.aclose()

    return lifespan


def create_app(container: Container | None = None) -> FastMCP:
    """
    Build DI container, create FastMCP host, and register tools.
    Keep the server (protocol) separate from tool/service logic.
    """
    container = container or build_container()
    configure_logging(container.settings.LOG_LEVEL)

    mcp = FastMCP("hub-mcp-gateway", version="0.1.0", lifespan=make_lifespan(container))

    # Static tools (thin adapters); proxy tools are added by the lifespan
    if container.settings.UPSTREAM_TOOLS_ENABLED:
        register_upstream_tools(
            mcp, container.upstream_bridge, container.schema_service, container.metrics
        )

    return mcp


if __name__ == "__main__":
    app = create_app()
    # stdio transport: client (agent/IDE) launches this process and speaks JSON-RPC on stdin/stdout
    app.run(transport="stdio")
