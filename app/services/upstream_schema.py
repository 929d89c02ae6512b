# app/services/upstream_schema.py
from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

from app.errors import UpstreamProtocolError
from app.services import fetch_profiles
from app.services.httpclient import SafeHttpService
from app.services.metrics import UpstreamCallMetrics
from app.services.url_policy import UPSTREAM_SCHEMA_PATH, is_localhost_hostname

logger = logging.getLogger(__name__)


def normalize_schema_tools(payload: Any) -> tuple[str, List[Dict[str, Any]]]:
    """
    Accept either schema format an application endpoint may publish:
      array:  [{"name": ..., "description": ..., "inputSchema": {...}}, ...]
      object: {"tool_name": {<input schema>, "description": ...}, ...}
    Returns (format, tools).
    """
    if isinstance(payload, list):
        tools = []
        for entry in payload:
            if not isinstance(entry, dict) or not isinstance(entry.get("name"), str):
                raise UpstreamProtocolError("Schema entry without a tool name")
            tools.append({
                "name": entry["name"],
                "description": entry.get("description"),
                "inputSchema": entry.get("inputSchema") or {"type": "object", "properties": {}},
            })
        return "array", tools

    if isinstance(payload, dict):
        tools = []
        for name, schema in payload.items():
            if not isinstance(schema, dict):
                raise UpstreamProtocolError(f"Schema for tool {name} is not an object")
            schema = dict(schema)
            description = schema.pop("description", None)
            schema.setdefault("type", "object")
            tools.append({"name": name, "description": description, "inputSchema": schema})
        return "object", tools

    raise UpstreamProtocolError("Schema response is neither an array nor an object")


class UpstreamSchemaService:
    """Fetch the published tool schema of an application endpoint."""

    def __init__(self, http: SafeHttpService, metrics: UpstreamCallMetrics, token: Optional[str] = None):
        self._http = http
        self._metrics = metrics
        self._token = token

    async def fetch_tools(self, hostname: str, *, private: bool = False, token: Optional[str] = None) -> List[Dict[str, Any]]:
        scheme = "http" if is_localhost_hostname(hostname) else "https"
        url = f"{scheme}://{hostname}{UPSTREAM_SCHEMA_PATH}"
        profile = fetch_profiles.upstream_schema_host(hostname, scheme)

        headers = {"Content-Type": "application/json"}
        token = token or self._token
        if private and token:
            headers["X-HF-Authorization"] = f"Bearer {token}"

        result = await self._http.fetch(url, profile, headers=headers)
        response = result.response
        try:
            body = await response.aread()
        finally:
            await response.aclose()

        if not response.is_success:
            raise UpstreamProtocolError(f"HTTP {response.status_code} fetching schema from {hostname}")

        try:
            payload = json.loads(body)
        except ValueError as e:
            raise UpstreamProtocolError(f"Schema from {hostname} is not valid JSON: {e}") from e

        fmt, tools = normalize_schema_tools(payload)
        self._metrics.record_schema_format(fmt)
        logger.debug("Fetched %d tool schemas (%s format) from %s", len(tools), fmt, hostname)
        return tools
