# app/services/fetch_profiles.py
"""
Named SafeFetchProfile table.

Call sites pick one of these instead of assembling a policy by hand, so every
outbound request carries a URL policy plus its timeout and redirect budget.
"""
from __future__ import annotations

from dataclasses import dataclass

from app.services.url_policy import (
    UrlPolicy,
    docs_policy,
    external_https_policy,
    http_or_https_policy,
    hub_policy,
    is_localhost_hostname,
    localhost_http_policy,
    upstream_call_host_policy,
    upstream_schema_host_policy,
)

DEFAULT_TIMEOUT_SEC = 12.5
DEFAULT_MAX_REDIRECTS = 3
SCHEMA_TIMEOUT_SEC = 10.0


@dataclass(frozen=True)
class SafeFetchProfile:
    url_policy: UrlPolicy
    timeout: float = DEFAULT_TIMEOUT_SEC  # seconds; 0 disables the deadline
    max_redirects: int = DEFAULT_MAX_REDIRECTS
    external_only: bool = False


def external_https() -> SafeFetchProfile:
    return SafeFetchProfile(external_https_policy(), external_only=True)


def http_or_https_permissive() -> SafeFetchProfile:
    return SafeFetchProfile(http_or_https_policy())


def streamable_proxy() -> SafeFetchProfile:
    # Long-lived event streams: no wall-clock deadline
    return SafeFetchProfile(http_or_https_policy(), timeout=0)


def hub() -> SafeFetchProfile:
    return SafeFetchProfile(hub_policy(), external_only=True)


def hub_docs() -> SafeFetchProfile:
    return SafeFetchProfile(docs_policy(), max_redirects=5, external_only=True)


def localhost_http() -> SafeFetchProfile:
    return SafeFetchProfile(localhost_http_policy(), max_redirects=2)


def upstream_schema_host(hostname: str, scheme: str = "https") -> SafeFetchProfile:
    return SafeFetchProfile(
        upstream_schema_host_policy(hostname, scheme),
        timeout=SCHEMA_TIMEOUT_SEC,
        max_redirects=2,
        external_only=not is_localhost_hostname(hostname),
    )


def upstream_call_host(hostname: str, scheme: str) -> SafeFetchProfile:
    """Pinned to one host and the scheme negotiated for it; no redirects on MCP calls."""
    return SafeFetchProfile(
        upstream_call_host_policy(hostname, scheme),
        timeout=0,
        max_redirects=0,
        external_only=not is_localhost_hostname(hostname),
    )


def proxy_call_host(hostname: str, scheme: str) -> SafeFetchProfile:
    """Operator-configured proxy sources: any path on the pinned host, internal hosts allowed."""
    return SafeFetchProfile(
        UrlPolicy(allowed_protocols=frozenset({scheme}), allowed_hosts=frozenset({hostname.lower()})),
        timeout=0,
    )
