from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from threading import RLock
from time import monotonic
from typing import Mapping

from .catalog import TOOL_CATALOG

_DEFAULT_TOOLS = tuple(tool.name for tool in TOOL_CATALOG)
_DEFAULT_DISCONNECT_REASONS = ("closed", "disconnected", "send_failed", "evicted")

_registry_lock = RLock()
_registry: "MetricsRegistry | None" = None


@dataclass(frozen=True)
class MetricsSnapshot:
    """Immutable snapshot of the current metrics state."""

    tool_calls: Mapping[str, int]
    errors: Mapping[str, int]
    sse_connects: int
    sse_disconnects: Mapping[str, int]
    uptime_seconds: float


class MetricsRegistry:
    """Thread-safe registry storing counters for Prometheus export."""

    __slots__ = ("_tool_calls", "_errors", "_sse_connects", "_sse_disconnects", "_lock", "_started_at")

    def __init__(self) -> None:
        self._tool_calls: Counter[str] = Counter()
        self._errors: Counter[str] = Counter()
        self._sse_connects = 0
        self._sse_disconnects: Counter[str] = Counter()
        self._lock = RLock()
        self._started_at = monotonic()

    def record_tool_call(self, name: str, *, count: int = 1) -> None:
        if count <= 0:
            return
        key = name.strip().lower()
        if not key:
            return
        with self._lock:
            self._tool_calls[key] += count

    def record_error(self, code: str, *, count: int = 1) -> None:
        if count <= 0:
            return
        key = code.strip().upper()
        if not key:
            return
        with self._lock:
            self._errors[key] += count

    def record_sse_connect(self) -> None:
        with self._lock:
            self._sse_connects += 1

    def record_sse_disconnect(self, reason: str) -> None:
        key = reason.strip().lower() or "unknown"
        with self._lock:
            self._sse_disconnects[key] += 1

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            tool_calls = {name: int(self._tool_calls.get(name, 0)) for name in _DEFAULT_TOOLS}
            for name, value in self._tool_calls.items():
                if name not in tool_calls:
                    tool_calls[name] = int(value)
            errors = {code: int(value) for code, value in self._errors.items()}
            disconnects = {reason: int(self._sse_disconnects.get(reason, 0)) for reason in _DEFAULT_DISCONNECT_REASONS}
            for reason, value in self._sse_disconnects.items():
                if reason not in disconnects:
                    disconnects[reason] = int(value)
            uptime = max(monotonic() - self._started_at, 0.0)
            connects = self._sse_connects
        return MetricsSnapshot(
            tool_calls=tool_calls,
            errors=errors,
            sse_connects=connects,
            sse_disconnects=disconnects,
            uptime_seconds=uptime,
        )

    def reset(self) -> None:
        with self._lock:
            self._tool_calls.clear()
            self._errors.clear()
            self._sse_connects = 0
            self._sse_disconnects.clear()
            self._started_at = monotonic()


def install_registry(registry: MetricsRegistry | None) -> None:
    """Install the active metrics registry (or disable metrics when None)."""

    with _registry_lock:
        global _registry
        _registry = registry


def get_registry_optional() -> MetricsRegistry | None:
    with _registry_lock:
        return _registry


def record_tool_call(name: str, *, count: int = 1) -> None:
    registry = get_registry_optional()
    if registry is not None:
        registry.record_tool_call(name, count=count)


def record_error(code: str, *, count: int = 1) -> None:
    registry = get_registry_optional()
    if registry is not None:
        registry.record_error(code, count=count)


def record_sse_connect() -> None:
    registry = get_registry_optional()
    if registry is not None:
        registry.record_sse_connect()


def record_sse_disconnect(reason: str) -> None:
    registry = get_registry_optional()
    if registry is not None:
        registry.record_sse_disconnect(reason)


def format_prometheus(snapshot: MetricsSnapshot, *, sse_clients_current: int) -> str:
    """Render metrics using Prometheus exposition format (text, version 0.0.4)."""

    lines: list[str] = []

    lines.append("# HELP fodi_mcp_tool_calls_total Total tool calls by tool name.")
    lines.append("# TYPE fodi_mcp_tool_calls_total counter")
    for name in sorted(snapshot.tool_calls):
        value = snapshot.tool_calls[name]
        lines.append(f'fodi_mcp_tool_calls_total{{tool="{name}"}} {value}')

    lines.append("# HELP fodi_mcp_errors_total Total tool errors, grouped by error code.")
    lines.append("# TYPE fodi_mcp_errors_total counter")
    if snapshot.errors:
        for code in sorted(snapshot.errors):
            value = snapshot.errors[code]
            lines.append(f'fodi_mcp_errors_total{{code="{code}"}} {value}')
    else:
        lines.append('fodi_mcp_errors_total{code="none"} 0')

    lines.append("# HELP fodi_mcp_sse_connections_total SSE subscriptions opened.")
    lines.append("# TYPE fodi_mcp_sse_connections_total counter")
    lines.append(f"fodi_mcp_sse_connections_total {snapshot.sse_connects}")

    lines.append("# HELP fodi_mcp_sse_disconnects_total SSE subscriptions removed, by reason.")
    lines.append("# TYPE fodi_mcp_sse_disconnects_total counter")
    for reason in sorted(snapshot.sse_disconnects):
        value = snapshot.sse_disconnects[reason]
        lines.append(f'fodi_mcp_sse_disconnects_total{{reason="{reason}"}} {value}')

    lines.append("# HELP fodi_mcp_sse_clients_current Currently connected SSE clients.")
    lines.append("# TYPE fodi_mcp_sse_clients_current gauge")
    lines.append(f"fodi_mcp_sse_clients_current {sse_clients_current}")

    lines.append("# HELP fodi_mcp_uptime_seconds Server uptime in seconds.")
    lines.append("# TYPE fodi_mcp_uptime_seconds gauge")
    lines.append(f"fodi_mcp_uptime_seconds {snapshot.uptime_seconds:.6f}")

    return "\n".join(lines) + "\n"
