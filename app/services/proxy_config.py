# app/services/proxy_config.py
from __future__ import annotations

import csv
import enum
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

import httpx

from app.errors import GatewayError, PolicyViolation
from app.services import fetch_profiles
from app.services.httpclient import SafeHttpService
from app.services.url_policy import http_or_https_policy, validate_url

logger = logging.getLogger(__name__)

HEADER_ID = "proxy_id"


class ResponseMode(str, enum.Enum):
    JSON = "JSON"  # single buffered response per request (streamable HTTP)
    SSE = "SSE"    # event-stream endpoint


@dataclass(frozen=True)
class ProxySource:
    source_id: str
    url: str
    response_mode: ResponseMode


def _split_row(line: str) -> Optional[List[str]]:
    try:
        row = next(csv.reader([line], skipinitialspace=True))
    except csv.Error as e:
        logger.warning("Skipping malformed proxy tools CSV row %r: %s", line, e)
        return None
    return [field.strip() for field in row]


def parse_proxy_sources(content: str) -> List[ProxySource]:
    """
    Parse `proxy_id,url,response_type` rows. Header row, blank lines and
    '#' comments are ignored; bad rows are skipped with a warning.
    """
    policy = http_or_https_policy()
    sources: List[ProxySource] = []
    seen: set[str] = set()

    for raw_line in content.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue

        fields = _split_row(line)
        if fields is None:
            continue
        if len(fields) < 3:
            logger.warning("Skipping proxy tools CSV row with insufficient fields: %r", line)
            continue

        source_id, url, response_type = fields[:3]
        if not source_id or not url or not response_type:
            logger.warning("Skipping proxy tools CSV row with missing values: %r", line)
            continue

        if source_id.lower() == HEADER_ID:
            continue

        if source_id in seen:
            logger.warning("Duplicate proxy id %s encountered, skipping", source_id)
            continue

        try:
            parsed = validate_url(url, policy)
        except PolicyViolation as e:
            logger.warning("Skipping proxy %s with invalid URL %s: %s", source_id, url, e)
            continue

        try:
            mode = ResponseMode(response_type.upper())
        except ValueError:
            logger.warning("Skipping proxy %s with invalid response_type %r", source_id, response_type)
            continue

        sources.append(ProxySource(source_id=source_id, url=str(parsed), response_mode=mode))
        seen.add(source_id)

    return sources


async def load_proxy_source_text(location: str, http: SafeHttpService, timeout: float = 10.0) -> str:
    """
    Read the proxy CSV from a local path or fetch it once from an https:// URL.
    Any failure yields an empty configuration (logged), never an exception.
    """
    location = location.strip()
    if "://" in location and not location.lower().startswith("https://"):
        logger.error("Proxy tools CSV URL must use https, refusing %s", location)
        return ""
    if location.lower().startswith("https://"):
        try:
            result = await http.fetch(location, fetch_profiles.external_https(), timeout=timeout)
            try:
                body = await result.response.aread()
            finally:
                await result.response.aclose()
        except (GatewayError, httpx.HTTPError, OSError) as e:
            logger.error("Error fetching proxy tools CSV from %s: %s", location, e)
            return ""
        if not result.response.is_success:
            logger.error("Failed to fetch proxy tools CSV from %s: HTTP %s", location, result.response.status_code)
            return ""
        return body.decode(result.response.encoding or "utf-8", errors="replace")

    try:
        return Path(location).read_text(encoding="utf-8")
    except OSError as e:
        logger.error("Proxy tools CSV file %s could not be read: %s", location, e)
        return ""


async def load_proxy_sources(location: Optional[str], http: SafeHttpService, timeout: float = 10.0) -> List[ProxySource]:
    if not location or not location.strip():
        logger.debug("Proxy tools CSV not configured")
        return []
    return parse_proxy_sources(await load_proxy_source_text(location, http, timeout))
