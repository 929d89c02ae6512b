# app/services/proxy_registry.py
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from app.errors import DiscoverySourceFailure, UpstreamProtocolError
from app.services import fetch_profiles
from app.services.proxy_config import ProxySource, ResponseMode
from app.services.validator import JsonValidatorService

logger = logging.getLogger(__name__)

SourcesLoader = Callable[[], Awaitable[List[ProxySource]]]


@dataclass(frozen=True)
class ProxyToolDefinition:
    source_id: str
    name: str            # outward name, unique within the registry
    upstream_name: str
    url: str
    response_mode: ResponseMode
    description: Optional[str]
    input_schema: Dict[str, Any]


class ProxyToolRegistry:
    """
    Flat catalog of tools discovered from the configured proxy sources.

    Discovery runs at most once; concurrent first callers await the same
    in-flight task. A failing source contributes no tools and never aborts
    its siblings. With more than one source every outward name is prefixed
    with its source id.
    """

    def __init__(
        self,
        sources_loader: SourcesLoader,
        session_factory,
        validator: JsonValidatorService,
        *,
        discovery_timeout: float = 10.0,
        headers: Optional[Dict[str, str]] = None,
    ):
        self._sources_loader = sources_loader
        self._session_factory = session_factory
        self._validator = validator
        self.discovery_timeout = discovery_timeout
        self._headers = headers
        self._tools: Optional[List[ProxyToolDefinition]] = None
        self._by_name: Dict[str, ProxyToolDefinition] = {}
        self._inflight: Optional[asyncio.Future] = None
        self._generation = 0

    @property
    def tools(self) -> List[ProxyToolDefinition]:
        return list(self._tools or [])

    def get(self, name: str) -> Optional[ProxyToolDefinition]:
        return self._by_name.get(name)

    async def load(self) -> List[ProxyToolDefinition]:
        if self._tools is not None:
            return self.tools
        if self._inflight is None:
            self._inflight = asyncio.ensure_future(self._load_once(self._generation))
        # Shielded so one cancelled caller does not cancel discovery for the others
        await asyncio.shield(self._inflight)
        return self.tools

    def reset(self) -> None:
        # A load still in flight finishes against an older generation and is discarded
        self._generation += 1
        self._tools = None
        self._by_name = {}
        self._inflight = None

    async def _load_once(self, generation: int) -> None:
        try:
            sources = await self._sources_loader()
            tools = await self.discover(sources)
        except BaseException:
            if generation == self._generation:
                self._inflight = None
            raise
        if generation != self._generation:
            logger.debug("Discarding proxy tool discovery superseded by reset")
            return
        if sources and not tools:
            logger.error("Proxy tools configured but no tool schemas were loaded")
        # Swap both views at once
        self._tools, self._by_name = tools, {t.name: t for t in tools}
        logger.info("Loaded proxy tools configuration: %d tools from %d sources", len(tools), len(sources))

    async def discover(self, sources: List[ProxySource]) -> List[ProxyToolDefinition]:
        if not sources:
            return []
        prefix = len(sources) > 1
        per_source = await asyncio.gather(*(self._discover_source(s, prefix) for s in sources))

        tools: List[ProxyToolDefinition] = []
        names: set[str] = set()
        for batch in per_source:
            for tool in batch:
                if tool.name in names:
                    logger.warning(
                        "Duplicate proxy tool name %s from source %s, skipping", tool.name, tool.source_id
                    )
                    continue
                names.add(tool.name)
                tools.append(tool)
        return tools

    async def _discover_source(self, source: ProxySource, prefix: bool) -> List[ProxyToolDefinition]:
        try:
            return await asyncio.wait_for(self._list_source(source, prefix), self.discovery_timeout)
        except asyncio.TimeoutError:
            failure = DiscoverySourceFailure(
                source.source_id, source.url, f"timed out after {self.discovery_timeout:g}s"
            )
        except Exception as e:
            failure = DiscoverySourceFailure(source.source_id, source.url, f"{type(e).__name__}: {e}")
        logger.error("%s", failure)
        return []

    async def _list_source(self, source: ProxySource, prefix: bool) -> List[ProxyToolDefinition]:
        client = self._session_factory(
            source.url,
            fetch_profiles.streamable_proxy(),
            response_mode=source.response_mode,
            headers=self._headers,
            timeout=self.discovery_timeout,
        )
        async with client:
            tools = await client.list_tools()

        if not tools:
            raise UpstreamProtocolError("No tools returned from proxy server")

        definitions = []
        for tool in tools:
            definition = self._build_definition(source, tool, prefix)
            if definition is not None:
                definitions.append(definition)
        return definitions

    def _build_definition(self, source: ProxySource, tool, prefix: bool) -> Optional[ProxyToolDefinition]:
        problem = self._validator.schema_problem(tool.inputSchema)
        if problem:
            logger.error("Proxy tool %s from %s skipped: %s", tool.name, source.source_id, problem)
            return None
        return ProxyToolDefinition(
            source_id=source.source_id,
            name=f"{source.source_id}_{tool.name}" if prefix else tool.name,
            upstream_name=tool.name,
            url=source.url,
            response_mode=source.response_mode,
            description=tool.description,
            input_schema=dict(tool.inputSchema),
        )
