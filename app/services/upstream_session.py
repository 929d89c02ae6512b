# app/services/upstream_session.py
from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
from fastmcp import Client
from fastmcp.client.transports import SSETransport, StreamableHttpTransport

from app.errors import GatewayError
from app.services.fetch_profiles import SafeFetchProfile
from app.services.httpclient import SafeHttpService
from app.services.proxy_config import ResponseMode

ResponseHook = Callable[[httpx.Response], Awaitable[None]]


class UpstreamSessionFactory:
    """
    Builds one fastmcp Client per upstream call or discovery.

    The client's httpx traffic goes through PolicyTransport, so the MCP
    handshake, every JSON-RPC POST and every event stream is validated
    with `profile` and re-validated on each redirect hop.
    """

    def __init__(self, http: SafeHttpService):
        self._http = http

    def __call__(
        self,
        url: str,
        profile: SafeFetchProfile,
        *,
        response_mode: ResponseMode = ResponseMode.JSON,
        headers: Optional[Dict[str, str]] = None,
        on_response: Optional[ResponseHook] = None,
        abort_event: Optional[asyncio.Event] = None,
        timeout: Optional[float] = None,
        on_error: Optional[Callable[[GatewayError], None]] = None,
    ) -> Client:
        def httpx_client_factory(
            headers: Optional[Dict[str, str]] = None,
            timeout: Any = None,
            auth: Optional[httpx.Auth] = None,
        ) -> httpx.AsyncClient:
            return httpx.AsyncClient(
                transport=self._http.transport_for(profile, abort_event, on_error),
                headers=headers,
                timeout=timeout,
                auth=auth,
                follow_redirects=False,
                event_hooks={"response": [on_response]} if on_response else None,
            )

        transport_cls = SSETransport if response_mode is ResponseMode.SSE else StreamableHttpTransport
        transport = transport_cls(url, headers=headers, httpx_client_factory=httpx_client_factory)
        return Client(transport, timeout=timeout)
