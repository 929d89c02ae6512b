# app/services/httpclient.py
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Tuple, TypeVar, Union
from urllib.parse import urlsplit

import httpx

from app.errors import (
    AddressBlocked,
    GatewayError,
    PolicyViolation,
    RedirectLimitExceeded,
    RedirectLocationMissing,
    RequestAborted,
    RequestTimeout,
)
from app.logging import log_policy_rejection
from app.services.address_policy import AddressGuard
from app.services.fetch_profiles import SafeFetchProfile
from app.services.url_policy import check_path_safety, validate_url

logger = logging.getLogger(__name__)

T = TypeVar("T")

REDIRECT_STATUSES = frozenset({301, 302, 303, 307, 308})
BASE_SENSITIVE_HEADERS = frozenset({"authorization", "proxy-authorization", "cookie", "x-hf-authorization"})
_DEFAULT_PORTS = {"http": 80, "https": 443}


@dataclass
class SafeFetchResult:
    response: httpx.Response
    final_url: httpx.URL
    redirects_followed: int


def _host_of(url: Union[str, httpx.URL]) -> Optional[str]:
    try:
        return urlsplit(str(url)).hostname
    except ValueError:
        return None


def _origin(url: httpx.URL) -> Tuple[str, str, Optional[int]]:
    return url.scheme, url.host, url.port or _DEFAULT_PORTS.get(url.scheme)


class _Deadline:
    """
    Wall-clock budget and caller abort signal for one logical request.
    Covers every hop and the final response body.
    """

    def __init__(self, timeout: float, abort_event: Optional[asyncio.Event]):
        self.timeout = timeout
        self.abort_event = abort_event
        loop = asyncio.get_running_loop()
        self._loop = loop
        self._expires_at = loop.time() + timeout if timeout and timeout > 0 else None

    @property
    def active(self) -> bool:
        return self.abort_event is not None or self._expires_at is not None

    def remaining(self) -> Optional[float]:
        if self._expires_at is None:
            return None
        return self._expires_at - self._loop.time()

    def check(self) -> None:
        if self.abort_event is not None and self.abort_event.is_set():
            raise RequestAborted()
        remaining = self.remaining()
        if remaining is not None and remaining <= 0:
            raise RequestTimeout(self.timeout)

    async def run(self, awaitable: Awaitable[T]) -> T:
        if not self.active:
            return await awaitable

        task = asyncio.ensure_future(awaitable)
        waiters = {task}
        abort_waiter = None
        if self.abort_event is not None:
            abort_waiter = asyncio.ensure_future(self.abort_event.wait())
            waiters.add(abort_waiter)

        try:
            done, _ = await asyncio.wait(
                waiters, timeout=self.remaining(), return_when=asyncio.FIRST_COMPLETED
            )
        except BaseException:
            task.cancel()
            raise
        finally:
            if abort_waiter is not None:
                abort_waiter.cancel()

        if task in done:
            return task.result()

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        if abort_waiter is not None and abort_waiter in done:
            raise RequestAborted()
        raise RequestTimeout(self.timeout)


_EOF = object()


async def _next_chunk(iterator):
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return _EOF


class _GuardedStream(httpx.AsyncByteStream):
    """Response body stream that keeps honoring the request deadline and abort signal."""

    def __init__(self, stream: httpx.AsyncByteStream, deadline: _Deadline):
        self._stream = stream
        self._deadline = deadline

    async def __aiter__(self):
        iterator = self._stream.__aiter__()
        while True:
            self._deadline.check()
            chunk = await self._deadline.run(_next_chunk(iterator))
            if chunk is _EOF:
                return
            yield chunk

    async def aclose(self) -> None:
        await self._stream.aclose()


class SafeHttpService:
    """
    SSRF-safe HTTP client used for every outbound request:
    - URL policy validation of every hop before any byte is sent.
    - Address guard (double DNS lookup) for external-only profiles.
    - Manual redirects with a hard budget and header stripping across origins.
    - Wall-clock timeout and caller abort, reported as distinct errors.
    """

    def __init__(
        self,
        guard: AddressGuard,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sensitive_headers: Iterable[str] = (),
    ):
        self.guard = guard
        # Redirects are never followed by the transport itself
        self._transport = transport or httpx.AsyncHTTPTransport(retries=0)
        self.sensitive_headers = BASE_SENSITIVE_HEADERS | {h.strip().lower() for h in sensitive_headers if h.strip()}

    async def aclose(self) -> None:
        await self._transport.aclose()

    async def _validate_hop(self, url: Union[str, httpx.URL], profile: SafeFetchProfile) -> httpx.URL:
        try:
            validated = validate_url(url, profile.url_policy)
            if profile.external_only:
                await self.guard.assert_external(validated.host)
        except (PolicyViolation, AddressBlocked) as e:
            log_policy_rejection(logger, e, upstream_host=_host_of(url))
            raise
        return validated

    def _strip_sensitive(self, headers: httpx.Headers) -> None:
        for name in self.sensitive_headers:
            headers.pop(name, None)

    async def fetch(
        self,
        url: Union[str, httpx.URL],
        profile: SafeFetchProfile,
        *,
        method: str = "GET",
        headers: Optional[Union[Dict[str, str], httpx.Headers]] = None,
        content: Optional[bytes] = None,
        timeout: Optional[float] = None,
        abort_event: Optional[asyncio.Event] = None,
        extensions: Optional[Dict[str, Any]] = None,
    ) -> SafeFetchResult:
        if profile.max_redirects < 0:
            raise ValueError("max_redirects must be >= 0")

        deadline = _Deadline(profile.timeout if timeout is None else timeout, abort_event)

        current_url = await self._validate_hop(url, profile)

        hop_headers = httpx.Headers(headers)
        # Recomputed per hop from the URL and body
        hop_headers.pop("host", None)
        current_method = method.upper()
        current_body = content
        redirects_followed = 0

        while True:
            deadline.check()
            body = current_body if current_method not in ("GET", "HEAD") else None
            request = httpx.Request(
                current_method, current_url, headers=hop_headers, content=body, extensions=extensions
            )
            response = await deadline.run(self._transport.handle_async_request(request))
            response.request = request

            if response.status_code not in REDIRECT_STATUSES:
                if deadline.active:
                    response.stream = _GuardedStream(response.stream, deadline)
                return SafeFetchResult(response, current_url, redirects_followed)

            try:
                if redirects_followed >= profile.max_redirects:
                    raise RedirectLimitExceeded(profile.max_redirects)

                location = response.headers.get("location")
                if not location:
                    raise RedirectLocationMissing(str(current_url), response.status_code)

                # Location is joined (and dot-segments dropped) before validation
                check_path_safety(urlsplit(location.strip()).path)
                next_url = await self._validate_hop(current_url.join(location.strip()), profile)
            finally:
                await response.aclose()

            if _origin(current_url) != _origin(next_url):
                self._strip_sensitive(hop_headers)

            status = response.status_code
            if status == 303 or (status in (301, 302) and current_method == "POST"):
                current_method = "GET"
                current_body = None
                hop_headers.pop("content-length", None)
                hop_headers.pop("content-type", None)

            logger.debug("redirect %s %s -> %s", status, current_url, next_url)
            redirects_followed += 1
            current_url = next_url

    def transport_for(
        self,
        profile: SafeFetchProfile,
        abort_event: Optional[asyncio.Event] = None,
        on_error: Optional[Callable[[GatewayError], None]] = None,
    ) -> "PolicyTransport":
        return PolicyTransport(self, profile, abort_event, on_error)


class PolicyTransport(httpx.AsyncBaseTransport):
    """
    httpx transport that sends every request of a client through
    SafeHttpService.fetch with a fixed profile.

    Requests issued by background tasks (event streams, session POSTs) can
    fail where no caller awaits them, so every GatewayError is also handed
    to `on_error` before it is raised.
    """

    def __init__(
        self,
        http: SafeHttpService,
        profile: SafeFetchProfile,
        abort_event: Optional[asyncio.Event] = None,
        on_error: Optional[Callable[[GatewayError], None]] = None,
    ):
        self._http = http
        self._profile = profile
        self._abort_event = abort_event
        self._on_error = on_error

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        body = await request.aread()
        try:
            result = await self._http.fetch(
                request.url,
                self._profile,
                method=request.method,
                headers=request.headers,
                content=body or None,
                abort_event=self._abort_event,
                extensions=request.extensions,
            )
        except GatewayError as e:
            if self._on_error is not None:
                self._on_error(e)
            raise
        return result.response

    async def aclose(self) -> None:
        # The underlying connection pool belongs to SafeHttpService
        return None
