# tests/test_proxy_config.py
from pathlib import Path

import httpx
import pytest

from app.services.address_policy import AddressGuard
from app.services.httpclient import SafeHttpService
from app.services.proxy_config import (
    ResponseMode,
    load_proxy_source_text,
    load_proxy_sources,
    parse_proxy_sources,
)

CSV = """\
proxy_id,url,response_type
# comment line
search, https://search.example/gradio_api/mcp/, JSON

images,"https://images.example/gradio_api/mcp/sse",sse
search,https://dupe.example/mcp,JSON
broken,ftp://files.example/mcp,JSON
odd,https://odd.example/mcp,XML
short,https://short.example/mcp
empty,,JSON
"""


def test_parse_proxy_sources_keeps_valid_rows():
    sources = parse_proxy_sources(CSV)
    assert [s.source_id for s in sources] == ["search", "images"]
    assert sources[0].url == "https://search.example/gradio_api/mcp/"
    assert sources[0].response_mode is ResponseMode.JSON
    assert sources[1].response_mode is ResponseMode.SSE


def test_parse_proxy_sources_empty_input():
    assert parse_proxy_sources("") == []
    assert parse_proxy_sources("proxy_id,url,response_type\n") == []


async def public_resolver(hostname):
    return ["93.184.216.34"]


def service(handler):
    return SafeHttpService(AddressGuard(resolver=public_resolver), transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_load_from_file(tmp_path: Path):
    path = tmp_path / "proxies.csv"
    path.write_text(CSV, encoding="utf-8")
    sources = await load_proxy_sources(str(path), service(lambda r: httpx.Response(500)))
    assert len(sources) == 2


@pytest.mark.asyncio
async def test_load_from_https_url():
    http = service(lambda r: httpx.Response(200, text="a,https://a.example/mcp,JSON\n"))
    sources = await load_proxy_sources("https://config.example/proxies.csv", http)
    assert [s.source_id for s in sources] == ["a"]


@pytest.mark.asyncio
async def test_load_failures_yield_empty_configuration(tmp_path: Path):
    http = service(lambda r: httpx.Response(404))
    assert await load_proxy_source_text("https://config.example/missing.csv", http) == ""
    assert await load_proxy_source_text(str(tmp_path / "nope.csv"), http) == ""
    # internal destinations are refused by the external-only profile
    assert await load_proxy_source_text("https://127.0.0.1/proxies.csv", http) == ""
    assert await load_proxy_sources(None, http) == []


@pytest.mark.asyncio
async def test_plain_http_url_is_refused_not_read_as_a_path(caplog):
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(200, text="a,https://a.example/mcp,JSON\n")

    with caplog.at_level("ERROR", logger="app.services.proxy_config"):
        assert await load_proxy_sources("http://config.example/proxies.csv", service(handler)) == []
    assert requests == []
    assert "must use https" in caplog.text
