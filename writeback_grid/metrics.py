from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from threading import RLock
from time import monotonic
from typing import Mapping

_DEFAULT_OPERATIONS = ("page_fetch", "annotation_fetch", "merge", "save", "append")
_DEFAULT_DISCARD_KINDS = ("page", "merge")

_registry_lock = RLock()
_registry: "MetricsRegistry | None" = None


@dataclass(frozen=True)
class MetricsSnapshot:
    """Immutable snapshot of the current metrics state."""

    operations: Mapping[str, int]
    errors: Mapping[str, int]
    discards: Mapping[str, int]
    uptime_seconds: float


class MetricsRegistry:
    """Thread-safe registry storing counters for Prometheus export."""

    __slots__ = ("_operations", "_errors", "_discards", "_lock", "_started_at")

    def __init__(self) -> None:
        self._operations: Counter[str] = Counter()
        self._errors: Counter[str] = Counter()
        self._discards: Counter[str] = Counter()
        self._lock = RLock()
        self._started_at = monotonic()

    def record_operation(self, name: str, *, count: int = 1) -> None:
        if count <= 0:
            return
        key = name.strip().lower()
        if not key:
            return
        with self._lock:
            self._operations[key] += count

    def record_error(self, code: str, *, count: int = 1) -> None:
        if count <= 0:
            return
        key = code.strip().upper()
        if not key:
            return
        with self._lock:
            self._errors[key] += count

    def record_discard(self, kind: str, *, count: int = 1) -> None:
        if count <= 0:
            return
        key = kind.strip().lower() or "unknown"
        with self._lock:
            self._discards[key] += count

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            operations: dict[str, int] = {name: int(self._operations.get(name, 0)) for name in _DEFAULT_OPERATIONS}
            for name, value in self._operations.items():
                if name not in operations:
                    operations[name] = int(value)
            errors = {code: int(value) for code, value in self._errors.items()}
            discards: dict[str, int] = {kind: int(self._discards.get(kind, 0)) for kind in _DEFAULT_DISCARD_KINDS}
            for kind, value in self._discards.items():
                if kind not in discards:
                    discards[kind] = int(value)
            uptime = max(monotonic() - self._started_at, 0.0)
        return MetricsSnapshot(operations=operations, errors=errors, discards=discards, uptime_seconds=uptime)

    def reset(self) -> None:
        with self._lock:
            self._operations.clear()
            self._errors.clear()
            self._discards.clear()
            self._started_at = monotonic()


def install_registry(registry: MetricsRegistry | None) -> None:
    """Install the active metrics registry (or disable metrics when None)."""

    with _registry_lock:
        global _registry
        _registry = registry


def get_registry_optional() -> MetricsRegistry | None:
    with _registry_lock:
        return _registry


def record_operation(name: str, *, count: int = 1) -> None:
    registry = get_registry_optional()
    if registry is not None:
        registry.record_operation(name, count=count)


def record_error(code: str, *, count: int = 1) -> None:
    registry = get_registry_optional()
    if registry is not None:
        registry.record_error(code, count=count)


def record_discard(kind: str, *, count: int = 1) -> None:
    registry = get_registry_optional()
    if registry is not None:
        registry.record_discard(kind, count=count)


def format_prometheus(snapshot: MetricsSnapshot, *, rows_current: int, pending_edits: int) -> str:
    """Render metrics using Prometheus exposition format (text, version 0.0.4)."""

    lines: list[str] = []

    lines.append("# HELP writeback_grid_ops_total Total operations executed by type.")
    lines.append("# TYPE writeback_grid_ops_total counter")
    for name in sorted(snapshot.operations):
        value = snapshot.operations[name]
        lines.append(f'writeback_grid_ops_total{{op="{name}"}} {value}')

    lines.append("# HELP writeback_grid_errors_total Errors reported, grouped by error code.")
    lines.append("# TYPE writeback_grid_errors_total counter")
    if snapshot.errors:
        for code in sorted(snapshot.errors):
            value = snapshot.errors[code]
            lines.append(f'writeback_grid_errors_total{{code="{code}"}} {value}')
    else:
        lines.append('writeback_grid_errors_total{code="none"} 0')

    lines.append("# HELP writeback_grid_discards_total Stale responses discarded by fencing.")
    lines.append("# TYPE writeback_grid_discards_total counter")
    for kind in sorted(snapshot.discards):
        value = snapshot.discards[kind]
        lines.append(f'writeback_grid_discards_total{{kind="{kind}"}} {value}')

    lines.append("# HELP writeback_grid_rows_current Rows currently displayed.")
    lines.append("# TYPE writeback_grid_rows_current gauge")
    lines.append(f"writeback_grid_rows_current {rows_current}")

    lines.append("# HELP writeback_grid_pending_edits Buffered edits not yet saved.")
    lines.append("# TYPE writeback_grid_pending_edits gauge")
    lines.append(f"writeback_grid_pending_edits {pending_edits}")

    lines.append("# HELP writeback_grid_uptime_seconds Registry uptime in seconds.")
    lines.append("# TYPE writeback_grid_uptime_seconds gauge")
    lines.append(f"writeback_grid_uptime_seconds {snapshot.uptime_seconds:.6f}")

    return "\n".join(lines) + "\n"
