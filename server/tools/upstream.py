from typing import Any, Dict

from fastmcp import Context, FastMCP
from fastmcp.exceptions import ToolError
from fastmcp.tools.tool import ToolResult
from pydantic import BaseModel, Field

from app.errors import GatewayError
from app.services.proxy_config import ResponseMode
from server.registry import progress_sink, to_tool_result


class UpstreamCallIn(BaseModel):
    url: str = Field(..., description="Application MCP endpoint, e.g. https://<app>.hf.space/gradio_api/mcp/")
    tool_name: str = Field(..., min_length=1)
    arguments: Dict[str, Any] = Field(default_factory=dict)
    response_mode: ResponseMode = Field(
        ResponseMode.JSON, description="JSON for streamable HTTP endpoints, SSE for event-stream endpoints"
    )


class UpstreamSchemaIn(BaseModel):
    hostname: str = Field(..., description="Application host, e.g. <app>.hf.space")
    private: bool = Field(False, description="Send the configured hub token with the request")


def register_upstream_tools(mcp: FastMCP, bridge, schema_service, metrics):
    @mcp.tool(name="upstream_call", description="Call a tool on an application MCP endpoint")
    async def upstream_call(input: UpstreamCallIn, ctx: Context) -> ToolResult:
        result = await bridge.invoke(
            input.url,
            input.tool_name,
            input.arguments,
            progress=progress_sink(ctx),
            response_mode=input.response_mode,
        )
        return to_tool_result(result)

    @mcp.tool(name="upstream_schema", description="List the tools an application endpoint publishes")
    async def upstream_schema(input: UpstreamSchemaIn) -> Dict[str, Any]:
        try:
            tools = await schema_service.fetch_tools(input.hostname, private=input.private)
        except GatewayError as e:
            raise ToolError(str(e)) from e
        return {"hostname": input.hostname, "count": len(tools), "tools": tools}

    @mcp.tool(name="upstream_metrics", description="Counters for forwarded upstream tool calls")
    def upstream_metrics() -> Dict[str, Any]:
        return {"summary": metrics.summary(), **metrics.snapshot()}
