# tests/test_proxy_registry.py
import asyncio

import pytest
from mcp.types import Tool

from app.services.proxy_config import ProxySource, ResponseMode
from app.services.proxy_registry import ProxyToolRegistry
from app.services.validator import JsonValidatorService

OBJECT_SCHEMA = {"type": "object", "properties": {"q": {"type": "string"}}, "required": ["q"]}


class FakeClient:
    def __init__(self, behaviour):
        self.behaviour = behaviour
        self.closed = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        self.closed = True
        return False

    async def list_tools(self):
        return await self.behaviour()


class FakeSessionFactory:
    def __init__(self, behaviours):
        self.behaviours = behaviours
        self.clients = []
        self.calls = []

    def __call__(self, url, profile, **kwargs):
        self.calls.append((url, kwargs))
        client = FakeClient(self.behaviours[url])
        self.clients.append(client)
        return client


def tools(*names, schema=OBJECT_SCHEMA):
    async def behaviour():
        return [Tool(name=n, description=f"{n} tool", inputSchema=schema) for n in names]
    return behaviour


def hangs():
    async def behaviour():
        await asyncio.sleep(30)
    return behaviour


def fails(error):
    async def behaviour():
        raise error
    return behaviour


def source(source_id, mode=ResponseMode.JSON):
    return ProxySource(source_id, f"https://{source_id}.example/gradio_api/mcp/", mode)


def make_registry(sources, behaviours, **kwargs):
    async def loader():
        return sources

    factory = FakeSessionFactory({s.url: b for s, b in zip(sources, behaviours)})
    registry = ProxyToolRegistry(loader, factory, JsonValidatorService(), **kwargs)
    return registry, factory


@pytest.mark.asyncio
async def test_one_timed_out_source_does_not_block_the_others():
    sources = [source("alpha"), source("slow"), source("beta", ResponseMode.SSE)]
    registry, factory = make_registry(
        sources, [tools("search"), hangs(), tools("caption")], discovery_timeout=0.1
    )

    loaded = await registry.load()

    assert sorted(t.name for t in loaded) == ["alpha_search", "beta_caption"]
    assert {t.source_id for t in loaded} == {"alpha", "beta"}
    caption = registry.get("beta_caption")
    assert caption.upstream_name == "caption"
    assert caption.response_mode is ResponseMode.SSE
    assert caption.url == sources[2].url
    assert len(factory.clients) == 3
    assert all(c.closed for c in factory.clients)


@pytest.mark.asyncio
async def test_single_source_names_are_not_prefixed():
    registry, _ = make_registry([source("solo")], [tools("search", "describe")])
    loaded = await registry.load()
    assert [t.name for t in loaded] == ["search", "describe"]


@pytest.mark.asyncio
async def test_failing_and_empty_sources_contribute_nothing():
    sources = [source("good"), source("boom"), source("empty")]
    registry, _ = make_registry(sources, [tools("run"), fails(ConnectionError("refused")), tools()])
    loaded = await registry.load()
    assert [t.name for t in loaded] == ["good_run"]


@pytest.mark.asyncio
async def test_tools_with_bad_schemas_are_skipped():
    async def mixed():
        return [
            Tool(name="ok", inputSchema=OBJECT_SCHEMA),
            Tool(name="scalar", inputSchema={"type": "string"}),
        ]

    registry, _ = make_registry([source("solo")], [mixed])
    loaded = await registry.load()
    assert [t.name for t in loaded] == ["ok"]
    assert registry.get("scalar") is None


@pytest.mark.asyncio
async def test_concurrent_loads_share_one_discovery():
    registry, factory = make_registry([source("solo")], [tools("search")])
    results = await asyncio.gather(registry.load(), registry.load(), registry.load())
    assert all([t.name for t in r] == ["search"] for r in results)
    assert len(factory.calls) == 1

    await registry.load()
    assert len(factory.calls) == 1


@pytest.mark.asyncio
async def test_reset_triggers_rediscovery():
    registry, factory = make_registry([source("solo")], [tools("search")])
    await registry.load()
    registry.reset()
    assert registry.tools == []
    await registry.load()
    assert len(factory.calls) == 2


@pytest.mark.asyncio
async def test_reset_during_load_discards_the_older_discovery():
    release = asyncio.Event()
    loads = []

    async def loader():
        loads.append(1)
        if len(loads) == 1:
            await release.wait()
            return [source("old")]
        return [source("new")]

    factory = FakeSessionFactory({source("old").url: tools("stale"), source("new").url: tools("fresh")})
    registry = ProxyToolRegistry(loader, factory, JsonValidatorService())

    first = asyncio.ensure_future(registry.load())
    await asyncio.sleep(0)
    registry.reset()
    assert [t.name for t in await registry.load()] == ["fresh"]

    release.set()
    await first
    assert [t.name for t in registry.tools] == ["fresh"]
    assert registry.get("stale") is None


@pytest.mark.asyncio
async def test_no_sources_means_no_tools():
    registry, factory = make_registry([], [])
    assert await registry.load() == []
    assert factory.calls == []
