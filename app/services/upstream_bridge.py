# app/services/upstream_bridge.py
from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

import httpx
from mcp.types import CallToolResult, TextContent

from app.errors import AddressBlocked, GatewayError, PolicyViolation, RequestAborted, RequestTimeout
from app.logging import log_policy_rejection, log_upstream_call
from app.services import fetch_profiles
from app.services.fetch_profiles import SafeFetchProfile
from app.services.metrics import UpstreamCallMetrics
from app.services.proxy_config import ResponseMode
from app.services.proxy_registry import ProxyToolDefinition
from app.services.url_policy import http_or_https_policy, upstream_endpoint_policy, validate_url

logger = logging.getLogger(__name__)

T = TypeVar("T")

REPLICA_HEADER = "x-proxied-replica"
UPSTREAM_API_SEGMENT = "/gradio_api"
DEFAULT_CALL_TIMEOUT_SEC = 60.0

ProgressSink = Callable[[float, Optional[float], Optional[str]], Awaitable[None]]


def extract_replica_id(header_value: Optional[str]) -> Optional[str]:
    """'oyerizs4-dspr4' -> 'dspr4'"""
    if not header_value:
        return None
    parts = header_value.split("-")
    if len(parts) < 2:
        return None
    replica_id = parts[-1].strip()
    return replica_id or None


def _origin_of(url: httpx.URL) -> str:
    host = f"[{url.host}]" if ":" in url.host else url.host
    return f"{url.scheme}://{host}" + (f":{url.port}" if url.port else "")


def rewrite_replica_urls(result: CallToolResult, upstream_url: httpx.URL, replica_id: Optional[str]) -> CallToolResult:
    """
    Point same-origin API URLs in text content at the serving replica:
    https://host/gradio_api/x -> https://host/--replicas/<id>/gradio_api/x
    """
    if not replica_id:
        return result

    pattern = re.compile(
        "(" + re.escape(_origin_of(upstream_url)) + ")(?=" + re.escape(UPSTREAM_API_SEGMENT) + ")",
        re.IGNORECASE,
    )

    def rewrite(text: str) -> str:
        return pattern.sub(lambda m: f"{m.group(1)}/--replicas/{replica_id}", text)

    changed = False
    content = []
    for item in result.content:
        if isinstance(item, TextContent):
            text = rewrite(item.text)
            if text != item.text:
                changed = True
                item = item.model_copy(update={"text": text})
        content.append(item)

    if not changed:
        return result
    return result.model_copy(update={"content": content})


def error_result(error: BaseException) -> CallToolResult:
    return CallToolResult(
        content=[TextContent(type="text", text=f"{type(error).__name__}: {error}")],
        isError=True,
    )


class ProgressRelay:
    """
    Forwards upstream progress events to the caller's notification channel.

    The first failed send disables the relay for the rest of the call; once
    the caller's abort event is set every attempt is a silent no-op.
    """

    def __init__(
        self,
        send: ProgressSink,
        abort_event: Optional[asyncio.Event] = None,
        on_failure: Optional[Callable[[], None]] = None,
    ):
        self._send = send
        self._abort_event = abort_event
        self._on_failure = on_failure
        self._disabled = False
        self.failed = False

    @property
    def disabled(self) -> bool:
        return self._disabled

    def disable(self) -> None:
        self._disabled = True

    async def attempt(self, progress: float, total: Optional[float] = None, message: Optional[str] = None) -> None:
        if self._disabled:
            return
        if self._abort_event is not None and self._abort_event.is_set():
            self.disable()
            return
        try:
            await self._send(progress, total, message)
        except Exception as e:
            self.disable()
            if not self.failed:
                self.failed = True
                logger.debug("Progress relay failed, disabling for this call: %s", e)
                if self._on_failure is not None:
                    self._on_failure()


class _CallGuard:
    """
    Stop conditions for one upstream call: the caller's abort event, the first
    GatewayError raised by the call's transport, and an idle timeout that
    every upstream progress event pushes back.
    """

    def __init__(self, timeout: float, abort_event: Optional[asyncio.Event] = None):
        self.timeout = timeout
        self.abort_event = abort_event
        self.failure: Optional[GatewayError] = None
        self._failed = asyncio.Event()
        self._loop = asyncio.get_running_loop()
        self._expires_at: Optional[float] = None
        self.touch()

    def touch(self) -> None:
        if self.timeout and self.timeout > 0:
            self._expires_at = self._loop.time() + self.timeout

    def fail(self, error: GatewayError) -> None:
        if self.failure is None:
            self.failure = error
            self._failed.set()

    def _remaining(self) -> Optional[float]:
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - self._loop.time())

    def _stop_reason(self) -> Optional[GatewayError]:
        if self.failure is not None:
            return self.failure
        if self.abort_event is not None and self.abort_event.is_set():
            return RequestAborted()
        remaining = self._remaining()
        if remaining is not None and remaining <= 0:
            return RequestTimeout(self.timeout)
        return None

    async def run(self, awaitable: Awaitable[T]) -> T:
        if self.abort_event is not None and self.abort_event.is_set():
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise RequestAborted()

        task = asyncio.ensure_future(awaitable)
        waiters = {asyncio.ensure_future(self._failed.wait())}
        if self.abort_event is not None:
            waiters.add(asyncio.ensure_future(self.abort_event.wait()))

        try:
            while not task.done():
                await asyncio.wait({task, *waiters}, timeout=self._remaining(), return_when=asyncio.FIRST_COMPLETED)
                if not task.done() and self._stop_reason() is not None:
                    break
        except BaseException:
            task.cancel()
            # Let the session unwind before the cancellation propagates
            await asyncio.gather(task, return_exceptions=True)
            raise
        finally:
            for waiter in waiters:
                waiter.cancel()

        if not task.done():
            reason = self._stop_reason()
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            raise reason

        if self.failure is not None and (task.cancelled() or task.exception() is not None):
            raise self.failure
        return task.result()


class UpstreamCallBridge:
    """
    Forwards one tool call to an upstream MCP endpoint.

    Each call validates its endpoint, opens exactly one session pinned to the
    endpoint's host and scheme, relays progress, captures the serving replica
    and always closes the session. A call ends when it completes, when the
    caller aborts, when its transport rejects a request, or after
    `call_timeout` seconds without upstream progress. Failures come back as
    error results.
    """

    def __init__(
        self,
        session_factory,
        metrics: UpstreamCallMetrics,
        *,
        token: Optional[str] = None,
        enforce_local_http: bool = False,
        replica_rewrite: bool = True,
        call_timeout: float = DEFAULT_CALL_TIMEOUT_SEC,
    ):
        self._session_factory = session_factory
        self._metrics = metrics
        self._token = token
        self._endpoint_policy = upstream_endpoint_policy(enforce_local_http)
        self._proxy_policy = http_or_https_policy()
        self.replica_rewrite = replica_rewrite
        self.call_timeout = call_timeout

    async def invoke(
        self,
        url: str,
        tool_name: str,
        arguments: Dict[str, Any],
        *,
        abort_event: Optional[asyncio.Event] = None,
        progress: Optional[ProgressSink] = None,
        token: Optional[str] = None,
        response_mode: ResponseMode = ResponseMode.JSON,
    ) -> CallToolResult:
        """Call `tool_name` on a caller-chosen application MCP endpoint."""
        token = token or self._token
        headers = {"X-HF-Authorization": f"Bearer {token}"} if token else None
        try:
            endpoint = validate_url(url, self._endpoint_policy)
        except PolicyViolation as e:
            return self._rejected(e, tool_name, None, None)
        profile = fetch_profiles.upstream_call_host(endpoint.host, endpoint.scheme)
        return await self._forward(
            endpoint, profile, tool_name, tool_name, arguments,
            response_mode=response_mode, headers=headers,
            abort_event=abort_event, progress=progress, source_id=None,
        )

    async def invoke_proxy_tool(
        self,
        definition: ProxyToolDefinition,
        arguments: Dict[str, Any],
        *,
        abort_event: Optional[asyncio.Event] = None,
        progress: Optional[ProgressSink] = None,
    ) -> CallToolResult:
        """Call a discovered proxy tool on its operator-configured source."""
        headers = (
            {"Authorization": f"Bearer {self._token}", "X-HF-Authorization": f"Bearer {self._token}"}
            if self._token else None
        )
        try:
            endpoint = validate_url(definition.url, self._proxy_policy)
        except PolicyViolation as e:
            return self._rejected(e, definition.name, None, definition.source_id)
        profile = fetch_profiles.proxy_call_host(endpoint.host, endpoint.scheme)
        return await self._forward(
            endpoint, profile, definition.upstream_name, definition.name, arguments,
            response_mode=definition.response_mode, headers=headers,
            abort_event=abort_event, progress=progress, source_id=definition.source_id,
        )

    def _rejected(self, error: Exception, tool: str, host: Optional[str], source_id: Optional[str]) -> CallToolResult:
        log_policy_rejection(logger, error, upstream_host=host, tool=tool, source_id=source_id)
        self._metrics.record_failure(tool)
        return error_result(error)

    async def _forward(
        self,
        endpoint: httpx.URL,
        profile: SafeFetchProfile,
        upstream_name: str,
        outward_name: str,
        arguments: Dict[str, Any],
        *,
        response_mode: ResponseMode,
        headers: Optional[Dict[str, str]],
        abort_event: Optional[asyncio.Event],
        progress: Optional[ProgressSink],
        source_id: Optional[str],
    ) -> CallToolResult:
        log_upstream_call(logger, outward_name, endpoint.host, arguments, source_id=source_id)

        captured: Dict[str, str] = {}

        async def on_response(response: httpx.Response) -> None:
            replica = response.headers.get(REPLICA_HEADER)
            if replica:
                captured[REPLICA_HEADER] = replica

        relay = None
        if progress is not None:
            relay = ProgressRelay(
                progress,
                abort_event,
                on_failure=lambda: self._metrics.record_progress_relay_failure(outward_name),
            )

        guard = _CallGuard(self.call_timeout, abort_event)

        async def on_progress(progress: float, total: Optional[float] = None, message: Optional[str] = None) -> None:
            guard.touch()
            if relay is not None:
                await relay.attempt(progress, total, message)

        client = self._session_factory(
            str(endpoint),
            profile,
            response_mode=response_mode,
            headers=headers,
            on_response=on_response,
            abort_event=abort_event,
            on_error=guard.fail,
        )

        async def call() -> CallToolResult:
            async with client:
                return await client.call_tool_mcp(upstream_name, arguments, progress_handler=on_progress)

        try:
            result = await guard.run(call())
        except (PolicyViolation, AddressBlocked) as e:
            return self._rejected(e, outward_name, endpoint.host, source_id)
        except Exception as e:
            logger.error(
                "Upstream call failed source=%s host=%s tool=%s: %s: %s",
                source_id or "-", endpoint.host, outward_name, type(e).__name__, e,
            )
            self._metrics.record_failure(outward_name)
            return error_result(e)
        finally:
            if relay is not None:
                relay.disable()

        replica_id = extract_replica_id(captured.get(REPLICA_HEADER))
        if replica_id:
            logger.debug("Upstream %s served by replica %s", endpoint.host, replica_id)
            if self.replica_rewrite:
                result = rewrite_replica_urls(result, endpoint, replica_id)

        if result.isError:
            self._metrics.record_failure(outward_name)
        else:
            self._metrics.record_success(outward_name)
        return result
