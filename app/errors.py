# app/errors.py
from __future__ import annotations

from typing import Optional


class GatewayError(Exception):
    """Base class for every outbound-safety failure raised by the gateway."""


class PolicyViolation(GatewayError, ValueError):
    """
    A URL failed validation against a UrlPolicy.
    `kind` is one of: protocol, credentials, host, port, path, query, custom.
    """

    def __init__(self, kind: str, message: str):
        self.kind = kind
        super().__init__(message)


class AddressBlocked(GatewayError, PermissionError):
    """Destination resolves to (or is) an internal or reserved address."""

    def __init__(self, message: str, hostname: Optional[str] = None, address: Optional[str] = None):
        self.hostname = hostname
        self.address = address
        super().__init__(message)


class RedirectLimitExceeded(GatewayError):
    def __init__(self, max_redirects: int):
        self.max_redirects = max_redirects
        super().__init__(f"Redirect limit exceeded ({max_redirects})")


class RedirectLocationMissing(GatewayError):
    def __init__(self, url: str, status: int):
        self.url = url
        self.status = status
        super().__init__(f"Redirect response missing Location header (status {status})")


class RequestTimeout(GatewayError, TimeoutError):
    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(f"Request timed out after {timeout:g}s")


class RequestAborted(GatewayError):
    def __init__(self, message: str = "Request was aborted"):
        super().__init__(message)


class UpstreamProtocolError(GatewayError):
    """Upstream answered, but with an empty or malformed tool catalog/schema."""


class DiscoverySourceFailure(GatewayError):
    """One proxy source could not be discovered; siblings are unaffected."""

    def __init__(self, source_id: str, url: str, reason: str):
        self.source_id = source_id
        self.url = url
        self.reason = reason
        super().__init__(f"Discovery failed for proxy source {source_id} ({url}): {reason}")
