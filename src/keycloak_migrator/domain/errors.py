"""
Typed error taxonomy for migration runs.

Only the orchestrator decides between abort, resume and rollback. Everything below it raises
one of these types so the decision can be made on the error *kind*:

- ``ConfigError`` / ``UnknownVersionError``: bad input, nothing was mutated.
- ``NoPathNeededError``: current and target version are equal.
- ``PreconditionError``: environment checks failed before any mutation.
- ``TransientOperationError``: one attempt failed; retried and breaker-counted.
- ``OperationTimeoutError``: a bounded wait was exceeded; retried and breaker-counted like a
  transient failure, but reported as its own kind.
- ``PermanentOperationError``: a hard failure; never retried.
- ``CircuitOpenError``: fail-fast rejection while the breaker is open; never retried.
- ``PhaseFailedError``: a phase of a version transition failed (wraps the cause).
- ``IrrecoverableError``: rollback itself failed; automation halts.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from keycloak_migrator.domain.models import Phase


class MigrationError(Exception):
    """Base class for every error raised by the migration engine."""


class ConfigError(MigrationError):
    """Invalid or unsupported configuration; raised before any mutation."""


class UnknownVersionError(ConfigError):
    def __init__(self, version: str, known: tuple[str, ...] = ()) -> None:
        self.version = version
        self.known = known
        detail = f"; supported versions: {', '.join(known)}" if known else ""
        super().__init__(f"unknown version {version!r}{detail}")


class NoPathNeededError(MigrationError):
    def __init__(self, version: str) -> None:
        self.version = version
        super().__init__(f"already at target version {version}; nothing to migrate")


class PreconditionError(MigrationError):
    """Environment or state checks failed before any mutation was attempted."""


class CheckpointMismatchError(PreconditionError):
    def __init__(self, path: str, expected_key: str, found_key: str) -> None:
        self.path = path
        self.expected_key = expected_key
        self.found_key = found_key
        super().__init__(
            f"checkpoint {path} belongs to a different migration "
            f"(run key {found_key[:12]}, expected {expected_key[:12]}); "
            "re-run with --discard-checkpoint to start over"
        )


class LockAcquisitionError(MigrationError):
    def __init__(self, key: str, reason: str, timeout: float | None = None) -> None:
        self.key = key
        self.reason = reason
        self.timeout = timeout
        suffix = f" after {timeout:g}s" if timeout else ""
        super().__init__(f"could not lock run {key!r}{suffix}: {reason}")


class OperationError(MigrationError):
    """Failure of a single collaborator operation."""

    def __init__(self, message: str, *, operation: str | None = None) -> None:
        self.operation = operation
        super().__init__(message if operation is None else f"{operation}: {message}")


class TransientOperationError(OperationError):
    """One attempt failed in a way that may succeed when retried."""


class OperationTimeoutError(OperationError, TimeoutError):
    """A bounded wait or call exceeded its timeout."""

    def __init__(
        self,
        message: str,
        *,
        operation: str | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__(message, operation=operation)


class PermanentOperationError(OperationError):
    """A hard failure that retrying cannot fix."""


class CircuitOpenError(MigrationError):
    def __init__(self, name: str, retry_after_seconds: float) -> None:
        self.name = name
        self.retry_after_seconds = retry_after_seconds
        super().__init__(
            f"circuit {name!r} is open; call rejected (retry in {retry_after_seconds:.1f}s)"
        )


class PhaseFailedError(MigrationError):
    def __init__(self, version: str, phase: Phase | str, cause: BaseException) -> None:
        self.version = version
        self.phase = phase
        self.cause = cause
        super().__init__(f"{version} failed during {phase}: {cause}")

    @property
    def is_timeout(self) -> bool:
        return isinstance(self.cause, TimeoutError)


class IrrecoverableError(MigrationError):
    """Rollback failed. Manual intervention is required."""


__all__ = [
    "CheckpointMismatchError",
    "CircuitOpenError",
    "ConfigError",
    "IrrecoverableError",
    "LockAcquisitionError",
    "MigrationError",
    "NoPathNeededError",
    "OperationError",
    "OperationTimeoutError",
    "PermanentOperationError",
    "PhaseFailedError",
    "PreconditionError",
    "TransientOperationError",
    "UnknownVersionError",
]
