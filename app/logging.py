# app/logging.py
import json
import logging
import os
import re
from typing import Any, Dict, Optional

PII_RE = re.compile(r"([\w\.-]+)@([\w\.-]+)")  # naive email redaction


def configure_logging(level: Optional[str] = None):
    logging.basicConfig(
        level=level or os.getenv("LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def redact_str(s: str) -> str:
    return PII_RE.sub("[redacted-email]", s)


def redact_args(args: Dict[str, Any]) -> Dict[str, Any]:
    safe = json.loads(json.dumps(args, default=str))  # shallow copy via JSON
    for k, v in list(safe.items()):
        if isinstance(v, str):
            safe[k] = redact_str(v)
    return safe


def log_upstream_call(
    logger: logging.Logger,
    tool: str,
    upstream_host: str,
    args: Dict[str, Any],
    source_id: Optional[str] = None,
):
    logger.info(
        "upstream_call source=%s host=%s tool=%s args=%s",
        source_id or "-", upstream_host, tool, redact_args(args),
    )


def log_policy_rejection(
    logger: logging.Logger,
    reason: Exception,
    upstream_host: Optional[str] = None,
    tool: Optional[str] = None,
    source_id: Optional[str] = None,
):
    logger.warning(
        "policy_rejection source=%s host=%s tool=%s error=%s: %s",
        source_id or "-", upstream_host or "-", tool or "-", type(reason).__name__, reason,
    )
