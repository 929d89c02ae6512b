# app/services/url_policy.py
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Callable, FrozenSet, List, Optional, Tuple, Union
from urllib.parse import unquote, urlsplit

import httpx

from app.errors import PolicyViolation

HUB_HOSTS = frozenset({"huggingface.co", "www.huggingface.co", "hf.co"})
DOCS_HUB_HOSTS = frozenset({"huggingface.co", "www.huggingface.co"})
DOCS_VENDOR_HOSTS = frozenset({"gradio.app", "www.gradio.app"})
LOCALHOST_HOSTS = frozenset({"localhost", "127.0.0.1", "::1"})

DOCS_PATH_PREFIX = "/docs/"
UPSTREAM_MCP_PATH_PREFIX = "/gradio_api/mcp"
UPSTREAM_SCHEMA_PATH = "/gradio_api/mcp/schema"

_DEFAULT_PORTS = {"http": 80, "https": 443}

ENCODED_SEPARATOR_RE = re.compile(r"%(?:2f|5c)", re.IGNORECASE)
ENCODED_BYTE_RE = re.compile(r"%[0-9a-f]{2}", re.IGNORECASE)
INVALID_PERCENT_ENCODING_RE = re.compile(r"%(?![0-9a-f]{2})", re.IGNORECASE)

UrlInput = Union[str, httpx.URL]


@dataclass(frozen=True)
class PathRules:
    required_prefix: Optional[str] = None


@dataclass(frozen=True)
class QueryRules:
    """allow_any wins; otherwise only allow_keys are accepted (None means no query at all)."""

    allow_any: bool = True
    allow_keys: Optional[FrozenSet[str]] = None


ALLOW_ANY_QUERY = QueryRules()
ALLOW_NO_QUERY = QueryRules(allow_any=False)


@dataclass(frozen=True)
class UrlPolicy:
    allowed_protocols: FrozenSet[str]
    allowed_hosts: Optional[FrozenSet[str]] = None
    allow_subdomains_of: Tuple[str, ...] = ()
    require_default_port: bool = False
    path_rules: PathRules = field(default_factory=PathRules)
    query_rules: QueryRules = field(default_factory=QueryRules)
    allow_credentials: bool = False
    custom_validator: Optional[Callable[[httpx.URL], None]] = None


def normalize_host(hostname: str) -> str:
    host = hostname.strip().lower().rstrip(".")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    return host


def is_localhost_hostname(hostname: str) -> bool:
    return normalize_host(hostname) in LOCALHOST_HOSTS


# ---------- path checks ----------

def _decode_once(value: str) -> str:
    if INVALID_PERCENT_ENCODING_RE.search(value):
        raise PolicyViolation("path", "URL path contains invalid percent-encoding")
    try:
        return unquote(value, errors="strict")
    except UnicodeDecodeError:
        raise PolicyViolation("path", "URL path contains invalid percent-encoding") from None


def decoded_path_variants(path: str) -> List[str]:
    """The path itself plus up to two successive percent-decodings of it."""
    variants = [path]
    current = path
    for _ in range(2):
        if "%" not in current:
            break
        decoded = _decode_once(current)
        if decoded == current:
            break
        variants.append(decoded)
        current = decoded
    return variants


def has_dot_segments(path: str) -> bool:
    return any(segment in (".", "..") for segment in path.replace("\\", "/").split("/"))


def matches_required_prefix(path: str, prefix: str) -> bool:
    path = path.replace("\\", "/")
    prefix = prefix.replace("\\", "/")
    if path == prefix:
        return True
    if prefix.endswith("/") and path == prefix[:-1]:
        return True
    return path.startswith(prefix)


def check_path_safety(path: str) -> List[str]:
    """
    Reject encoded separators, dot-segments and double encoding in any decoded
    form of `path`. Returns the decoded variants for further prefix checks.
    """
    if "%" in path and INVALID_PERCENT_ENCODING_RE.search(path):
        raise PolicyViolation("path", "URL path contains invalid percent-encoding")

    variants = decoded_path_variants(path)

    if any(ENCODED_SEPARATOR_RE.search(v) for v in variants):
        raise PolicyViolation("path", "URL path contains encoded separators")

    if any(has_dot_segments(v) for v in variants):
        raise PolicyViolation("path", "URL path contains dot-segments")

    if len(variants) > 1 and ENCODED_BYTE_RE.search(variants[1]):
        raise PolicyViolation("path", "URL path appears to use double-encoding")

    return variants


def _assert_path_allowed(paths: List[str], rules: PathRules) -> None:
    variants: List[str] = []
    for path in paths:
        variants.extend(check_path_safety(path))

    prefix = rules.required_prefix
    if prefix and not any(matches_required_prefix(v, prefix) for v in variants):
        raise PolicyViolation("path", f"URL path must start with {prefix}")


# ---------- host / port / query ----------

def _assert_host_allowed(hostname: str, policy: UrlPolicy) -> None:
    if not policy.allowed_hosts and not policy.allow_subdomains_of:
        return

    host = normalize_host(hostname)
    if policy.allowed_hosts and any(normalize_host(h) == host for h in policy.allowed_hosts):
        return

    for domain in policy.allow_subdomains_of:
        base = normalize_host(domain)
        if host == base or host.endswith("." + base):
            return

    raise PolicyViolation("host", f"URL hostname is not allowed: {hostname}")


def _assert_port_allowed(url: httpx.URL, policy: UrlPolicy) -> None:
    # httpx reports default ports as None
    if not policy.require_default_port or url.port is None:
        return
    if url.port != _DEFAULT_PORTS.get(url.scheme):
        raise PolicyViolation("port", f"URL port is not allowed for protocol {url.scheme}")


def _assert_query_allowed(url: httpx.URL, rules: QueryRules) -> None:
    if rules.allow_any:
        return
    if rules.allow_keys is None:
        if url.query:
            raise PolicyViolation("query", "URL query string is not allowed")
        return
    for key in url.params.keys():
        if key not in rules.allow_keys:
            raise PolicyViolation("query", f"URL query parameter is not allowed: {key}")


# ---------- entry points ----------

def _parse(value: UrlInput) -> Tuple[httpx.URL, str]:
    raw = str(value).strip()
    try:
        url = httpx.URL(raw)
        literal_path = urlsplit(raw).path
    except (httpx.InvalidURL, ValueError) as e:
        raise PolicyViolation("url", f"Invalid URL: {e}") from e
    return url, literal_path


def validate_url(value: UrlInput, policy: UrlPolicy) -> httpx.URL:
    """
    Validate `value` against `policy` and return the parsed URL.
    Pure: performs no DNS or network I/O. Raises PolicyViolation.
    """
    url, literal_path = _parse(value)

    if url.scheme not in policy.allowed_protocols:
        raise PolicyViolation("protocol", f"URL protocol is not allowed: {url.scheme or '(none)'}:")

    if not policy.allow_credentials and url.userinfo:
        raise PolicyViolation("credentials", "URL credentials are not allowed")

    if not url.host:
        raise PolicyViolation("host", "URL missing host")

    _assert_host_allowed(url.host, policy)
    _assert_port_allowed(url, policy)

    # The literal path is checked as well: httpx drops dot-segments while parsing
    encoded_path = url.raw_path.decode("ascii").split("?", 1)[0]
    paths = [literal_path] if literal_path == encoded_path else [literal_path, encoded_path]
    _assert_path_allowed(paths, policy.path_rules)

    _assert_query_allowed(url, policy.query_rules)

    if policy.custom_validator is not None:
        try:
            policy.custom_validator(url)
        except PolicyViolation:
            raise
        except ValueError as e:
            raise PolicyViolation("custom", str(e)) from e

    return url


# ---------- named policies ----------

def external_https_policy() -> UrlPolicy:
    return UrlPolicy(allowed_protocols=frozenset({"https"}))


def http_or_https_policy() -> UrlPolicy:
    return UrlPolicy(allowed_protocols=frozenset({"https", "http"}))


def localhost_http_policy() -> UrlPolicy:
    return UrlPolicy(allowed_protocols=frozenset({"https", "http"}), allowed_hosts=LOCALHOST_HOSTS)


def hub_policy() -> UrlPolicy:
    return UrlPolicy(allowed_protocols=frozenset({"https"}), allowed_hosts=HUB_HOSTS)


def _docs_prefix_on_hub_hosts(url: httpx.URL) -> None:
    if normalize_host(url.host) in DOCS_HUB_HOSTS and not matches_required_prefix(url.path, DOCS_PATH_PREFIX):
        raise PolicyViolation("custom", f"Hub docs URLs must remain under {DOCS_PATH_PREFIX}")


def docs_policy() -> UrlPolicy:
    return UrlPolicy(
        allowed_protocols=frozenset({"https"}),
        allowed_hosts=DOCS_HUB_HOSTS | DOCS_VENDOR_HOSTS,
        custom_validator=_docs_prefix_on_hub_hosts,
    )


def upstream_endpoint_policy(enforce_local_http: bool = False) -> UrlPolicy:
    """Any host, but only the MCP endpoint path; plain http is localhost-only when enforced."""

    def _local_http_only(url: httpx.URL) -> None:
        if enforce_local_http and url.scheme == "http" and not is_localhost_hostname(url.host):
            raise PolicyViolation("custom", "HTTP is only allowed for localhost MCP endpoints")

    return UrlPolicy(
        allowed_protocols=frozenset({"https", "http"}),
        path_rules=PathRules(required_prefix=UPSTREAM_MCP_PATH_PREFIX),
        custom_validator=_local_http_only,
    )


def exact_host_policy(hostname: str, scheme: str) -> UrlPolicy:
    return UrlPolicy(allowed_protocols=frozenset({scheme}), allowed_hosts=frozenset({hostname.lower()}))


def host_prefix_policy(hostname: str, required_prefix: Optional[str], scheme: str = "https") -> UrlPolicy:
    return UrlPolicy(
        allowed_protocols=frozenset({scheme}),
        allowed_hosts=frozenset({hostname.lower()}),
        path_rules=PathRules(required_prefix=required_prefix),
    )


def upstream_schema_host_policy(hostname: str, scheme: str = "https") -> UrlPolicy:
    return host_prefix_policy(hostname, UPSTREAM_SCHEMA_PATH, scheme)


def upstream_call_host_policy(hostname: str, scheme: str) -> UrlPolicy:
    return host_prefix_policy(hostname, UPSTREAM_MCP_PATH_PREFIX, scheme)
