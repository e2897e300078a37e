"""
keycloak-migrator — run metrics.

File: src/keycloak_migrator/observability/metrics.py

Purpose
- Thread-safe metrics registry with deterministic Prometheus text and JSON export.
- ``MigrationMetrics``: the gauges and counters a migration run updates, written to a file in
  the run workspace after every change so a textfile collector (or an operator) can read it.

What should be included in this file
- Counters, gauges and summaries keyed by name plus sorted labels.
- Prometheus exposition with HELP/TYPE headers and escaped label values.
- Atomic export; a failed write is logged and never fails the run.

Functional requirements
- Checkpoint status uses 0=pending, 1=in_progress, 2=completed, 3=failed.
- Circuit state uses 0=closed, 1=half_open, 2=open.
"""

from __future__ import annotations

import json
import math
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import IntEnum, StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final

import structlog

from keycloak_migrator.domain.models import Phase
from keycloak_migrator.utils.fs import atomic_write

if TYPE_CHECKING:
    from keycloak_migrator.config.settings import ObservabilitySettings
    from keycloak_migrator.domain.profile import ConfigProfile
    from keycloak_migrator.resilience.circuit_breaker import CircuitState

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

_MetricLabels = tuple[tuple[str, str], ...]

_METRIC_NAME_MAX_LEN: Final[int] = 128
_LABEL_KEY_MAX_LEN: Final[int] = 128
_LABEL_VALUE_MAX_LEN: Final[int] = 256

PROGRESS: Final[str] = "keycloak_migration_progress"
CHECKPOINT_STATUS: Final[str] = "keycloak_migration_checkpoint_status"
STEP_DURATION: Final[str] = "keycloak_migration_step_duration_seconds"
RUN_DURATION: Final[str] = "keycloak_migration_duration_seconds"
ERRORS: Final[str] = "keycloak_migration_errors_total"
CIRCUIT_STATE: Final[str] = "keycloak_migration_circuit_state"
LAST_SUCCESS: Final[str] = "keycloak_migration_last_success_timestamp"


class MetricKind(StrEnum):
    COUNTER = "counter"
    GAUGE = "gauge"
    SUMMARY = "summary"


class MetricsFormat(StrEnum):
    PROMETHEUS = "prometheus"
    JSON = "json"
    OFF = "off"


class StepStatus(IntEnum):
    PENDING = 0
    IN_PROGRESS = 1
    COMPLETED = 2
    FAILED = 3


_CIRCUIT_VALUES: Final[dict[str, int]] = {"closed": 0, "half_open": 1, "open": 2}

_HELP: Final[dict[str, tuple[MetricKind, str]]] = {
    PROGRESS: (
        MetricKind.GAUGE,
        "Migration progress as a fraction of planned phases (0.0 to 1.0)",
    ),
    CHECKPOINT_STATUS: (
        MetricKind.GAUGE,
        "Checkpoint status (0=pending, 1=in_progress, 2=completed, 3=failed)",
    ),
    STEP_DURATION: (MetricKind.SUMMARY, "Duration of executed migration phases in seconds"),
    RUN_DURATION: (MetricKind.GAUGE, "Duration of the last migration run in seconds"),
    ERRORS: (MetricKind.COUNTER, "Failed migration phases by error type"),
    CIRCUIT_STATE: (MetricKind.GAUGE, "Circuit breaker state (0=closed, 1=half_open, 2=open)"),
    LAST_SUCCESS: (MetricKind.GAUGE, "Unix timestamp of the last successful migration"),
}


@dataclass(frozen=True, order=True, slots=True)
class _MetricKey:
    name: str
    labels: _MetricLabels


@dataclass(slots=True)
class _DistributionState:
    count: int = 0
    total: float = 0.0
    minimum: float | None = None
    maximum: float | None = None
    last: float | None = None

    def observe(self, value: float) -> None:
        self.count += 1
        self.total += value
        self.last = value
        if self.minimum is None or value < self.minimum:
            self.minimum = value
        if self.maximum is None or value > self.maximum:
            self.maximum = value

    def as_dict(self) -> dict[str, JSONValue]:
        avg = self.total / self.count if self.count else 0.0
        return {
            "count": self.count,
            "sum": self.total,
            "min": self.minimum,
            "max": self.maximum,
            "avg": avg,
            "last": self.last,
        }


class MetricsRegistry:
    """In-memory metrics store; every read and write holds one lock."""

    def __init__(self, help_texts: Mapping[str, tuple[MetricKind, str]] | None = None) -> None:
        self._lock = threading.RLock()
        self._created_at = datetime.now(tz=UTC)
        self._help = dict(help_texts or {})
        self._counters: dict[_MetricKey, float] = {}
        self._gauges: dict[_MetricKey, float] = {}
        self._distributions: dict[_MetricKey, _DistributionState] = {}

    def inc(
        self,
        name: str,
        amount: float = 1.0,
        *,
        labels: Mapping[str, str] | None = None,
    ) -> None:
        """Increment a counter by ``amount`` (>= 0)."""

        delta = _as_finite_float(amount, path="amount")
        if delta < 0:
            raise ValueError("counter increment amount must be >= 0")

        key = _metric_key(name, labels)
        with self._lock:
            self._counters[key] = self._counters.get(key, 0.0) + delta

    def set_gauge(
        self,
        name: str,
        value: float,
        *,
        labels: Mapping[str, str] | None = None,
    ) -> None:
        key = _metric_key(name, labels)
        gauge_value = _as_finite_float(value, path="value")
        with self._lock:
            self._gauges[key] = gauge_value

    def observe(
        self,
        name: str,
        value: float,
        *,
        labels: Mapping[str, str] | None = None,
    ) -> None:
        """Record a sample for summary statistics."""

        key = _metric_key(name, labels)
        sample = _as_finite_float(value, path="value")
        with self._lock:
            state = self._distributions.get(key)
            if state is None:
                state = _DistributionState()
                self._distributions[key] = state
            state.observe(sample)

    def get_counter(self, name: str, *, labels: Mapping[str, str] | None = None) -> float:
        key = _metric_key(name, labels)
        with self._lock:
            return self._counters.get(key, 0.0)

    def get_gauge(self, name: str, *, labels: Mapping[str, str] | None = None) -> float | None:
        key = _metric_key(name, labels)
        with self._lock:
            return self._gauges.get(key)

    def get_distribution(
        self,
        name: str,
        *,
        labels: Mapping[str, str] | None = None,
    ) -> dict[str, JSONValue] | None:
        key = _metric_key(name, labels)
        with self._lock:
            state = self._distributions.get(key)
            if state is None:
                return None
            return dict(state.as_dict())

    def snapshot(self) -> dict[str, JSONValue]:
        """Return deterministic snapshot with stable key ordering."""

        with self._lock:
            created_at = self._created_at
            counters = tuple(sorted(self._counters.items()))
            gauges = tuple(sorted(self._gauges.items()))
            distributions = tuple(
                (key, state.as_dict()) for key, state in sorted(self._distributions.items())
            )

        return {
            "metadata": {
                "created_at": created_at.isoformat(timespec="seconds").replace("+00:00", "Z"),
            },
            "counters": {_metric_identifier(key): value for key, value in counters},
            "gauges": {_metric_identifier(key): value for key, value in gauges},
            "distributions": {_metric_identifier(key): stats for key, stats in distributions},
        }

    def to_json(self, *, indent: int | None = None) -> str:
        payload = self.snapshot()
        if indent is None:
            return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
        return json.dumps(payload, sort_keys=True, indent=indent, ensure_ascii=False)

    def to_prometheus(self) -> str:
        """Render the text exposition format, one HELP/TYPE block per metric name."""

        with self._lock:
            series: dict[str, list[str]] = {}
            kinds: dict[str, MetricKind] = {}
            for key, value in sorted(self._counters.items()):
                kinds.setdefault(key.name, MetricKind.COUNTER)
                series.setdefault(key.name, []).append(_sample(key.name, key.labels, value))
            for key, value in sorted(self._gauges.items()):
                kinds.setdefault(key.name, MetricKind.GAUGE)
                series.setdefault(key.name, []).append(_sample(key.name, key.labels, value))
            for key, state in sorted(self._distributions.items()):
                kinds.setdefault(key.name, MetricKind.SUMMARY)
                lines = series.setdefault(key.name, [])
                lines.append(_sample(f"{key.name}_count", key.labels, float(state.count)))
                lines.append(_sample(f"{key.name}_sum", key.labels, state.total))
            help_texts = dict(self._help)

        out: list[str] = []
        for name in sorted(series):
            kind, text = help_texts.get(name, (kinds[name], name))
            out.append(f"# HELP {name} {text}")
            out.append(f"# TYPE {name} {kind.value}")
            out.extend(series[name])
        return "\n".join(out) + "\n" if out else ""

    def export(self, path: str | Path, fmt: MetricsFormat = MetricsFormat.PROMETHEUS) -> Path:
        """Atomically write the registry to ``path`` and return it."""

        output_path = Path(path)
        if fmt is MetricsFormat.JSON:
            atomic_write(output_path, self.to_json(indent=2) + "\n")
        else:
            atomic_write(output_path, self.to_prometheus())
        return output_path


class MigrationMetrics:
    """Run-level gauges for one profile (and tenant), flushed to ``path`` on every update."""

    def __init__(
        self,
        profile: ConfigProfile,
        *,
        path: Path | None = None,
        fmt: MetricsFormat = MetricsFormat.PROMETHEUS,
        registry: MetricsRegistry | None = None,
        wall_clock: Callable[[], float] = time.time,
        logger: Any | None = None,
    ) -> None:
        self.registry = registry if registry is not None else MetricsRegistry(_HELP)
        self.path = path if fmt is not MetricsFormat.OFF else None
        self._fmt = fmt
        self._wall_clock = wall_clock
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._labels = {"profile": profile.name}
        if profile.tenant is not None:
            self._labels["tenant"] = profile.tenant
        self._progress_labels = {
            **self._labels,
            "from_version": profile.current_version,
            "to_version": profile.target_version,
        }
        self._planned = 0
        self._completed: set[tuple[str, Phase]] = set()

    @classmethod
    def from_settings(
        cls,
        profile: ConfigProfile,
        settings: ObservabilitySettings,
        *,
        path: Path | None = None,
        **kwargs: Any,
    ) -> MigrationMetrics:
        return cls(
            profile,
            path=path if path is not None else settings.metrics_file,
            fmt=MetricsFormat(settings.metrics_format),
            **kwargs,
        )

    def plan(self, versions: tuple[str, ...]) -> None:
        """Reset phase gauges for ``versions`` to pending and progress to zero."""

        self._planned = len(versions) * len(Phase)
        self._completed.clear()
        for version in versions:
            for phase in Phase:
                self._set_phase(version, phase, StepStatus.PENDING)
        self.registry.set_gauge(PROGRESS, 0.0, labels=self._progress_labels)
        self.flush()

    def phase_started(self, version: str, phase: Phase) -> None:
        self._set_phase(version, phase, StepStatus.IN_PROGRESS)
        self.flush()

    def phase_completed(self, version: str, phase: Phase, duration: float | None = None) -> None:
        """Mark ``phase`` done; ``duration`` is omitted for phases resumed from a checkpoint."""

        self._set_phase(version, phase, StepStatus.COMPLETED)
        self._completed.add((version, phase))
        if duration is not None:
            self.registry.observe(STEP_DURATION, max(duration, 0.0), labels={"checkpoint": phase})
        self._update_progress()
        self.flush()

    def version_completed(self, version: str) -> None:
        for phase in Phase:
            self._set_phase(version, phase, StepStatus.COMPLETED)
            self._completed.add((version, phase))
        self._update_progress()
        self.flush()

    def phase_failed(self, version: str, phase: Phase, error_type: str) -> None:
        self._set_phase(version, phase, StepStatus.FAILED)
        self.registry.inc(ERRORS, labels={**self._labels, "error_type": error_type})
        self.flush()

    def circuit_state(self, breaker: str, state: CircuitState) -> None:
        self.registry.set_gauge(
            CIRCUIT_STATE, _CIRCUIT_VALUES[state.value], labels={"breaker": breaker}
        )
        self.flush()

    def run_finished(self, status: str, duration: float) -> None:
        self.registry.set_gauge(RUN_DURATION, max(duration, 0.0), labels=self._labels)
        if status == "success":
            self.registry.set_gauge(PROGRESS, 1.0, labels=self._progress_labels)
            self.registry.set_gauge(LAST_SUCCESS, self._wall_clock(), labels=self._labels)
        self.flush()

    def flush(self) -> None:
        if self.path is None:
            return
        try:
            self.registry.export(self.path, self._fmt)
        except OSError as exc:
            self._logger.warning("metrics_export_failed", path=str(self.path), error=str(exc))

    def _set_phase(self, version: str, phase: Phase, status: StepStatus) -> None:
        self.registry.set_gauge(
            CHECKPOINT_STATUS,
            int(status),
            labels={**self._labels, "version": version, "checkpoint": phase},
        )

    def _update_progress(self) -> None:
        if self._planned:
            progress = min(len(self._completed) / self._planned, 1.0)
            self.registry.set_gauge(PROGRESS, progress, labels=self._progress_labels)


def _metric_key(name: str, labels: Mapping[str, str] | None) -> _MetricKey:
    return _MetricKey(name=_validate_metric_name(name), labels=_normalize_labels(labels))


def _metric_identifier(key: _MetricKey) -> str:
    if not key.labels:
        return key.name
    labels = ",".join(f"{k}={v}" for k, v in key.labels)
    return f"{key.name}{{{labels}}}"


def _sample(name: str, labels: _MetricLabels, value: float) -> str:
    if not labels:
        return f"{name} {_format_value(value)}"
    rendered = ",".join(f'{key}="{_escape(val)}"' for key, val in labels)
    return f"{name}{{{rendered}}} {_format_value(value)}"


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


def _format_value(value: float) -> str:
    if value.is_integer() and abs(value) < 1e15:
        return str(int(value))
    return repr(value)


def _validate_metric_name(name: str) -> str:
    if not isinstance(name, str):
        raise ValueError(f"metric name must be a string, got {type(name).__name__}")
    normalized = name.strip()
    if not normalized:
        raise ValueError("metric name must not be empty")
    if len(normalized) > _METRIC_NAME_MAX_LEN:
        raise ValueError(f"metric name must be <= {_METRIC_NAME_MAX_LEN} characters")
    return normalized


def _normalize_labels(labels: Mapping[str, str] | None) -> _MetricLabels:
    if labels is None:
        return ()

    out: list[tuple[str, str]] = []
    for key, value in labels.items():
        if not isinstance(key, str):
            raise ValueError(f"label key must be a string, got {type(key).__name__}")
        if not isinstance(value, str):
            raise ValueError(f"label value for {key!r} must be a string")

        key_name = key.strip()
        val_name = value.strip()

        if not key_name:
            raise ValueError("label key must not be empty")
        if not val_name:
            raise ValueError(f"label value for {key!r} must not be empty")
        if len(key_name) > _LABEL_KEY_MAX_LEN:
            raise ValueError(f"label key {key!r} exceeds {_LABEL_KEY_MAX_LEN} characters")
        if len(val_name) > _LABEL_VALUE_MAX_LEN:
            raise ValueError(f"label value for {key!r} exceeds {_LABEL_VALUE_MAX_LEN} characters")

        out.append((key_name, val_name))

    out.sort(key=lambda item: item[0])
    return tuple(out)


def _as_finite_float(value: float, *, path: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{path} must be numeric, got {type(value).__name__}")
    parsed = float(value)
    if not math.isfinite(parsed):
        raise ValueError(f"{path} must be finite")
    return parsed


__all__ = [
    "JSONScalar",
    "JSONValue",
    "MetricKind",
    "MetricsFormat",
    "MetricsRegistry",
    "MigrationMetrics",
    "StepStatus",
]
