# server/registry.py
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastmcp import Context, FastMCP
from fastmcp.exceptions import ToolError
from fastmcp.server.dependencies import get_context
from fastmcp.tools import Tool
from fastmcp.tools.tool import ToolResult
from mcp.types import CallToolResult, TextContent
from pydantic import PrivateAttr

from app.services.proxy_registry import ProxyToolDefinition
from app.services.upstream_bridge import ProgressSink, UpstreamCallBridge
from app.services.validator import JsonValidatorService

logger = logging.getLogger(__name__)


def progress_sink(ctx: Optional[Context]) -> Optional[ProgressSink]:
    """Relay target for upstream progress, only when the caller asked for progress."""
    if ctx is None:
        return None
    try:
        meta = ctx.request_context.meta
    except (AttributeError, ValueError):
        return None
    if meta is None or getattr(meta, "progressToken", None) is None:
        return None
    return ctx.report_progress


def _current_context() -> Optional[Context]:
    try:
        return get_context()
    except RuntimeError:
        return None


def _error_text(result: CallToolResult) -> str:
    texts = [c.text for c in result.content if isinstance(c, TextContent)]
    return "\n".join(texts) or "Upstream tool call failed"


def to_tool_result(result: CallToolResult) -> ToolResult:
    """Upstream error results become ToolError so FastMCP reports isError."""
    if result.isError:
        raise ToolError(_error_text(result))
    return ToolResult(content=list(result.content), structured_content=result.structuredContent)


class ProxyTool(Tool):
    """
    One discovered upstream tool, exposed under its outward name with the
    upstream input schema. Calls are validated locally, then forwarded
    through the bridge.
    """

    _definition: ProxyToolDefinition = PrivateAttr()
    _bridge: UpstreamCallBridge = PrivateAttr()
    _validator: JsonValidatorService = PrivateAttr()

    @classmethod
    def from_definition(
        cls,
        definition: ProxyToolDefinition,
        bridge: UpstreamCallBridge,
        validator: JsonValidatorService,
    ) -> "ProxyTool":
        tool = cls(
            name=definition.name,
            description=definition.description or f"{definition.upstream_name} ({definition.source_id})",
            parameters=definition.input_schema,
            tags={"proxy", definition.source_id},
        )
        tool._definition = definition
        tool._bridge = bridge
        tool._validator = validator
        return tool

    @property
    def definition(self) -> ProxyToolDefinition:
        return self._definition

    async def run(self, arguments: Dict[str, Any]) -> ToolResult:
        checked = self._validator.validate(arguments, self._definition.input_schema)
        if not checked["valid"]:
            problems = "; ".join(f"{e['path']}: {e['message']}" for e in checked["errors"])
            raise ToolError(f"Invalid arguments for {self.name}: {problems}")

        result = await self._bridge.invoke_proxy_tool(
            self._definition,
            arguments,
            progress=progress_sink(_current_context()),
        )
        return to_tool_result(result)


def register_proxy_tools(
    mcp: FastMCP,
    definitions: List[ProxyToolDefinition],
    bridge: UpstreamCallBridge,
    validator: JsonValidatorService,
) -> List[ProxyTool]:
    tools = [ProxyTool.from_definition(d, bridge, validator) for d in definitions]
    for tool in tools:
        mcp.add_tool(tool)
    logger.info("Registered %d proxy tools", len(tools))
    return tools
