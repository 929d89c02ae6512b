# app/services/metrics.py
from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict


@dataclass
class UpstreamCallMetrics:
    """
    In-memory counters for forwarded tool calls.
    Owned by the container; updated from the event loop only.
    """

    success: int = 0
    failure: int = 0
    progress_relay_failures: int = 0
    success_by_tool: Counter = field(default_factory=Counter)
    failure_by_tool: Counter = field(default_factory=Counter)
    relay_failures_by_tool: Counter = field(default_factory=Counter)
    schema_formats: Counter = field(default_factory=Counter)

    def record_success(self, tool: str) -> None:
        self.success += 1
        self.success_by_tool[tool] += 1

    def record_failure(self, tool: str) -> None:
        self.failure += 1
        self.failure_by_tool[tool] += 1

    def record_progress_relay_failure(self, tool: str) -> None:
        self.progress_relay_failures += 1
        self.relay_failures_by_tool[tool] += 1

    def record_schema_format(self, fmt: str) -> None:
        self.schema_formats[fmt] += 1

    def snapshot(self) -> Dict[str, Any]:
        tools = set(self.success_by_tool) | set(self.failure_by_tool)
        return {
            "success": self.success,
            "failure": self.failure,
            "progress_relay_failures": self.progress_relay_failures,
            "by_tool": {
                t: {"success": self.success_by_tool[t], "failure": self.failure_by_tool[t]}
                for t in sorted(tools)
            },
            "relay_failures_by_tool": dict(self.relay_failures_by_tool),
            "schema_formats": dict(self.schema_formats),
        }

    def summary(self) -> str:
        total = self.success + self.failure
        rate = (self.success / total * 100) if total else 0.0
        return (
            f"Upstream tool calls - Total: {total}, Success: {self.success}, "
            f"Failure: {self.failure}, Success Rate: {rate:.1f}%"
        )

    def reset(self) -> None:
        self.success = self.failure = self.progress_relay_failures = 0
        self.success_by_tool.clear()
        self.failure_by_tool.clear()
        self.relay_failures_by_tool.clear()
        self.schema_formats.clear()
