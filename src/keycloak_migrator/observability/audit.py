"""
Append-only audit trail for migration runs.

Audit events are operator-facing facts ("backup created", "phase failed", "blue retained")
written as JSON lines. Emission is fire-and-forget: a failing sink is recorded as a
``DispatchError`` and logged, and never interrupts the migration that produced the event.
"""

from __future__ import annotations

import getpass
import json
import socket
import threading
from collections import deque
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any, Final, Protocol, runtime_checkable

import structlog

from keycloak_migrator.observability.logging import (
    default_log_redactor,
    get_correlation_context,
)

_DEFAULT_REPLAY_BUFFER: Final[int] = 512
_ERROR_STATUSES: Final[frozenset[str]] = frozenset({"failed", "irrecoverable", "error"})
_WARNING_STATUSES: Final[frozenset[str]] = frozenset({"rolled_back", "skipped", "declined"})


class AuditEvent(StrEnum):
    MIGRATION_START = "migration_start"
    MIGRATION_STEP = "migration_step"
    MIGRATION_END = "migration_end"
    BACKUP_CREATED = "backup_created"
    STRATEGY_FALLBACK = "strategy_fallback"
    HEALTH_CHECK = "health_check"
    ROLLBACK = "rollback"
    PREFLIGHT = "preflight"
    TENANT_END = "tenant_end"
    BLUE_RETAINED = "blue_retained"


@runtime_checkable
class AuditSink(Protocol):
    def emit(self, event: str, **fields: Any) -> None: ...


@dataclass(frozen=True, slots=True)
class AuditRecord:
    """One emitted event as stored in the replay buffer."""

    ts: str
    level: str
    event: str
    fields: Mapping[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {"ts": self.ts, "level": self.level, "event": self.event, **self.fields}


@dataclass(frozen=True, slots=True)
class DispatchError:
    """Sink failure captured without interrupting the emitter."""

    event: str
    target: str
    error_type: str
    message: str


class JsonlAuditSink:
    """Thread-safe JSON-lines file sink; write failures are logged and swallowed."""

    def __init__(
        self,
        path: Path | str,
        *,
        redact: bool = True,
        logger: Any | None = None,
    ) -> None:
        self.path = Path(path)
        self._redact = redact
        self._lock = threading.Lock()
        self._host = socket.gethostname()
        self._user = _current_user()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def emit(self, event: str, **fields: Any) -> None:
        record = build_record(event, fields)
        payload: dict[str, Any] = {
            "ts": record.ts,
            "level": record.level,
            "event": record.event,
            "msg": _summary(record.event, record.fields),
            "host": self._host,
            "user": self._user,
            **record.fields,
        }
        if self._redact:
            redacted = default_log_redactor(json.loads(json.dumps(payload, default=str)))
            if isinstance(redacted, dict):
                payload = redacted
        line = json.dumps(payload, sort_keys=True, ensure_ascii=False, default=str)
        try:
            with self._lock:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with self.path.open("a", encoding="utf-8") as handle:
                    handle.write(line + "\n")
        except OSError as exc:
            self._logger.warning(
                "audit_write_failed", audit_path=str(self.path), audit_event=event, error=str(exc)
            )


class AuditTrail:
    """Fans events out to sinks and keeps a bounded replay buffer for inspection."""

    def __init__(
        self,
        sinks: Sequence[AuditSink] = (),
        *,
        buffer_size: int = _DEFAULT_REPLAY_BUFFER,
        logger: Any | None = None,
    ) -> None:
        if buffer_size <= 0:
            raise ValueError("buffer_size must be > 0")
        self._sinks = tuple(sinks)
        self._buffer: deque[AuditRecord] = deque(maxlen=buffer_size)
        self._errors: deque[DispatchError] = deque(maxlen=buffer_size)
        self._lock = threading.RLock()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def emit(self, event: str, **fields: Any) -> None:
        record = build_record(event, fields)
        with self._lock:
            self._buffer.append(record)
            sinks = self._sinks
        for sink in sinks:
            try:
                sink.emit(event, **fields)
            except Exception as exc:
                error = DispatchError(
                    event=str(event),
                    target=type(sink).__name__,
                    error_type=type(exc).__name__,
                    message=str(exc),
                )
                with self._lock:
                    self._errors.append(error)
                self._logger.warning(
                    "audit_sink_failed",
                    audit_event=str(event),
                    target=error.target,
                    error=error.message,
                )

    def history(self, event: str | None = None) -> tuple[AuditRecord, ...]:
        with self._lock:
            records = tuple(self._buffer)
        if event is None:
            return records
        return tuple(record for record in records if record.event == event)

    def dispatch_errors(self) -> tuple[DispatchError, ...]:
        with self._lock:
            return tuple(self._errors)


def build_record(event: str, fields: Mapping[str, Any]) -> AuditRecord:
    merged: dict[str, Any] = dict(get_correlation_context())
    merged.update(fields)
    return AuditRecord(
        ts=datetime.now(tz=UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z"),
        level=_level_for(merged),
        event=str(event),
        fields=merged,
    )


def _level_for(fields: Mapping[str, Any]) -> str:
    status = str(fields.get("status", "")).lower()
    if status in _ERROR_STATUSES or fields.get("healthy") is False:
        return "ERROR"
    if status in _WARNING_STATUSES:
        return "WARNING"
    return "INFO"


def _summary(event: str, fields: Mapping[str, Any]) -> str:
    parts = [f"{key}={fields[key]}" for key in sorted(fields) if key not in {"run_id"}]
    return f"{event} {' '.join(parts)}".strip()


def _current_user() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "unknown"


__all__ = [
    "AuditEvent",
    "AuditRecord",
    "AuditSink",
    "AuditTrail",
    "DispatchError",
    "JsonlAuditSink",
    "build_record",
]
