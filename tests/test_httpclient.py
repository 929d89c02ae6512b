# tests/test_httpclient.py
import asyncio

import httpx
import pytest

from app.errors import (
    AddressBlocked,
    PolicyViolation,
    RedirectLimitExceeded,
    RedirectLocationMissing,
    RequestAborted,
    RequestTimeout,
)
from app.services import fetch_profiles
from app.services.address_policy import AddressGuard
from app.services.fetch_profiles import SafeFetchProfile
from app.services.httpclient import SafeHttpService
from app.services.url_policy import UrlPolicy

ALLOWED = UrlPolicy(
    allowed_protocols=frozenset({"https"}),
    allowed_hosts=frozenset({"a.example", "b.example"}),
)


async def public_resolver(hostname):
    return ["93.184.216.34"]


def make_service(handler, **kwargs):
    seen = []

    async def recording(request):
        seen.append(request)
        result = handler(request)
        if asyncio.iscoroutine(result):
            result = await result
        return result

    service = SafeHttpService(
        AddressGuard(resolver=public_resolver),
        transport=httpx.MockTransport(recording),
        **kwargs,
    )
    return service, seen


def redirect(location, status=302):
    return httpx.Response(status, headers={"Location": location} if location else {})


@pytest.mark.asyncio
async def test_single_redirect_between_allowed_hosts():
    def handler(request):
        if request.url.host == "a.example":
            return redirect("https://b.example/final")
        return httpx.Response(200, text="done")

    http, seen = make_service(handler)
    result = await http.fetch("https://a.example/start", SafeFetchProfile(ALLOWED))

    assert len(seen) == 2
    assert result.redirects_followed == 1
    assert str(result.final_url) == "https://b.example/final"
    assert (await result.response.aread()) == b"done"


@pytest.mark.asyncio
async def test_redirect_to_disallowed_host_stops_before_second_exchange():
    http, seen = make_service(lambda request: redirect("https://evil.example/"))
    with pytest.raises(PolicyViolation) as exc:
        await http.fetch("https://a.example/", SafeFetchProfile(ALLOWED))
    assert exc.value.kind == "host"
    assert len(seen) == 1


@pytest.mark.asyncio
async def test_redirect_limit_fails_closed():
    def handler(request):
        if request.url.path == "/one":
            return redirect("/two")
        return redirect("/three")

    http, seen = make_service(handler)
    with pytest.raises(RedirectLimitExceeded):
        await http.fetch("https://a.example/one", SafeFetchProfile(ALLOWED, max_redirects=1))
    assert len(seen) == 2


@pytest.mark.asyncio
async def test_zero_redirect_budget_rejects_first_redirect():
    http, seen = make_service(lambda request: redirect("/elsewhere"))
    with pytest.raises(RedirectLimitExceeded):
        await http.fetch("https://a.example/", SafeFetchProfile(ALLOWED, max_redirects=0))
    assert len(seen) == 1


@pytest.mark.asyncio
async def test_post_303_becomes_bodyless_get():
    def handler(request):
        if request.method == "POST":
            return redirect("/result", status=303)
        return httpx.Response(200)

    http, seen = make_service(handler)
    await http.fetch(
        "https://a.example/submit",
        SafeFetchProfile(ALLOWED),
        method="POST",
        headers={"Content-Type": "application/json"},
        content=b'{"x": 1}',
    )

    follow_up = seen[1]
    assert follow_up.method == "GET"
    assert follow_up.content == b""
    assert "content-length" not in follow_up.headers
    assert "content-type" not in follow_up.headers


@pytest.mark.asyncio
async def test_307_preserves_method_and_body():
    def handler(request):
        if request.url.path == "/submit":
            return redirect("/again", status=307)
        return httpx.Response(200)

    http, seen = make_service(handler)
    await http.fetch("https://a.example/submit", SafeFetchProfile(ALLOWED), method="POST", content=b"payload")
    assert seen[1].method == "POST"
    assert seen[1].content == b"payload"


@pytest.mark.asyncio
async def test_cross_origin_redirect_strips_authorization():
    def handler(request):
        if request.url.host == "a.example":
            return redirect("https://b.example/")
        return httpx.Response(200)

    http, seen = make_service(handler, sensitive_headers=["X-Api-Key"])
    await http.fetch(
        "https://a.example/",
        SafeFetchProfile(ALLOWED),
        headers={"Authorization": "Bearer t", "X-HF-Authorization": "Bearer t", "X-Api-Key": "k", "Accept": "text/plain"},
    )
    assert seen[0].headers["authorization"] == "Bearer t"
    assert "authorization" not in seen[1].headers
    assert "x-hf-authorization" not in seen[1].headers
    assert "x-api-key" not in seen[1].headers
    assert seen[1].headers["accept"] == "text/plain"


@pytest.mark.asyncio
async def test_same_origin_redirect_keeps_authorization():
    def handler(request):
        if request.url.path == "/start":
            return redirect("/next")
        return httpx.Response(200)

    http, seen = make_service(handler)
    await http.fetch("https://a.example/start", SafeFetchProfile(ALLOWED), headers={"Authorization": "Bearer t"})
    assert seen[1].headers["authorization"] == "Bearer t"


@pytest.mark.asyncio
async def test_redirect_without_location():
    http, seen = make_service(lambda request: redirect(None))
    with pytest.raises(RedirectLocationMissing):
        await http.fetch("https://a.example/", SafeFetchProfile(ALLOWED))


@pytest.mark.asyncio
async def test_redirect_location_with_dot_segments_is_rejected():
    http, seen = make_service(lambda request: redirect("/docs/../admin"))
    with pytest.raises(PolicyViolation) as exc:
        await http.fetch("https://a.example/docs/x", SafeFetchProfile(ALLOWED))
    assert exc.value.kind == "path"
    assert len(seen) == 1


@pytest.mark.asyncio
async def test_invalid_initial_url_sends_nothing():
    http, seen = make_service(lambda request: httpx.Response(200))
    with pytest.raises(PolicyViolation):
        await http.fetch("http://a.example/", SafeFetchProfile(ALLOWED))
    assert seen == []


@pytest.mark.asyncio
async def test_external_only_profile_blocks_internal_literal():
    http, seen = make_service(lambda request: httpx.Response(200))
    with pytest.raises(AddressBlocked):
        await http.fetch("https://127.0.0.1/", fetch_profiles.external_https())
    assert seen == []


@pytest.mark.asyncio
async def test_external_only_redirect_to_internal_host_is_blocked():
    async def resolver(hostname):
        return ["10.0.0.5"] if hostname == "internal.example" else ["93.184.216.34"]

    seen = []

    def handler(request):
        seen.append(request)
        return redirect("https://internal.example/")

    http = SafeHttpService(AddressGuard(resolver=resolver), transport=httpx.MockTransport(handler))
    with pytest.raises(AddressBlocked):
        await http.fetch("https://public.example/", fetch_profiles.external_https())
    assert len(seen) == 1


@pytest.mark.asyncio
async def test_timeout_and_abort_are_distinct():
    async def slow(request):
        await asyncio.sleep(5)
        return httpx.Response(200)

    http, _ = make_service(slow)
    with pytest.raises(RequestTimeout):
        await http.fetch("https://a.example/", SafeFetchProfile(ALLOWED, timeout=0.05))

    abort = asyncio.Event()
    asyncio.get_running_loop().call_later(0.05, abort.set)
    with pytest.raises(RequestAborted):
        await http.fetch("https://a.example/", SafeFetchProfile(ALLOWED, timeout=0), abort_event=abort)


@pytest.mark.asyncio
async def test_pre_set_abort_sends_nothing():
    http, seen = make_service(lambda request: httpx.Response(200))
    abort = asyncio.Event()
    abort.set()
    with pytest.raises(RequestAborted):
        await http.fetch("https://a.example/", SafeFetchProfile(ALLOWED), abort_event=abort)
    assert seen == []


@pytest.mark.asyncio
async def test_policy_transport_routes_client_requests():
    def handler(request):
        if request.url.path == "/start":
            return redirect("https://b.example/done")
        return httpx.Response(200, json={"ok": True})

    http, seen = make_service(handler)
    async with httpx.AsyncClient(transport=http.transport_for(SafeFetchProfile(ALLOWED))) as client:
        response = await client.get("https://a.example/start")
        assert response.json() == {"ok": True}
        with pytest.raises(PolicyViolation):
            await client.get("https://evil.example/")
    assert len(seen) == 2
