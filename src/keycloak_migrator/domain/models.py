"""
Domain records for migration runs: phases, checkpoints, backups, results.

Every persisted record round-trips through ``to_dict``/``from_dict`` with plain JSON types so
the checkpoint document stays human-readable and diff-friendly.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Final

from keycloak_migrator.constants import CHECKPOINT_SCHEMA_VERSION
from keycloak_migrator.domain.errors import ConfigError

if TYPE_CHECKING:
    from collections.abc import Mapping

    from keycloak_migrator.domain.versions import VersionSpec


class Phase(StrEnum):
    """Checkpointed phases of one version transition, in canonical order."""

    BACKUP_DONE = "backup_done"
    STOPPED = "stopped"
    DOWNLOADED = "downloaded"
    BUILT = "built"
    STARTED = "started"
    MIGRATED = "migrated"
    HEALTH_OK = "health_ok"
    TESTS_OK = "tests_ok"

    @property
    def ordinal(self) -> int:
        return PHASE_ORDER.index(self)

    @classmethod
    def parse(cls, value: str) -> Phase:
        try:
            return cls(value)
        except ValueError as exc:
            raise ConfigError(f"unknown phase {value!r}") from exc


PHASE_ORDER: Final[tuple[Phase, ...]] = tuple(Phase)


class StrategyName(StrEnum):
    INPLACE = "inplace"
    ROLLING_UPDATE = "rolling_update"
    BLUE_GREEN = "blue_green"


class DeploymentMode(StrEnum):
    STANDALONE = "standalone"
    DOCKER = "docker"
    DOCKER_COMPOSE = "docker-compose"
    KUBERNETES = "kubernetes"
    DECKHOUSE = "deckhouse"


REPLICA_CAPABLE_MODES: Final[frozenset[DeploymentMode]] = frozenset(
    {DeploymentMode.KUBERNETES, DeploymentMode.DECKHOUSE}
)


class DistributionMode(StrEnum):
    DOWNLOAD = "download"
    PREDOWNLOADED = "predownloaded"
    CONTAINER = "container"


class DatabaseKind(StrEnum):
    POSTGRESQL = "postgresql"
    MYSQL = "mysql"
    MARIADB = "mariadb"


class RunStatus(StrEnum):
    SUCCESS = "success"
    DRY_RUN = "dry_run"
    NO_OP = "no_op"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"
    IRRECOVERABLE = "irrecoverable"


@dataclass(frozen=True, slots=True)
class Checkpoint:
    """Last completed phase for one version."""

    version: str
    phase: Phase

    def to_dict(self) -> dict[str, str]:
        return {"version": self.version, "phase": self.phase.value}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> Checkpoint:
        return cls(version=str(payload["version"]), phase=Phase.parse(str(payload["phase"])))


@dataclass(frozen=True, slots=True)
class BackupReference:
    """A database backup taken before the transition to ``version``."""

    path: str
    version: str
    created_at: datetime
    size_bytes: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "version": self.version,
            "created_at": _iso(self.created_at),
            "size_bytes": self.size_bytes,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> BackupReference:
        size = payload.get("size_bytes")
        return cls(
            path=str(payload["path"]),
            version=str(payload["version"]),
            created_at=_parse_iso(str(payload["created_at"])),
            size_bytes=int(size) if size is not None else None,
        )


@dataclass(frozen=True, slots=True)
class CheckpointRecord:
    """The single durable record of a run, overwritten in place after every phase."""

    run_key: str
    profile: str
    from_version: str
    to_version: str
    strategy: str
    checkpoint: Checkpoint | None = None
    last_backup: BackupReference | None = None
    last_successful_step: str | None = None
    artifact: str | None = None
    live_deployment: str | None = None
    resume_safe: bool = True
    updated_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))

    def with_phase(self, version: str, phase: Phase) -> CheckpointRecord:
        current = self.checkpoint
        moves_back = (
            current is not None
            and current.version == version
            and phase.ordinal < current.phase.ordinal
        )
        if current is not None and moves_back:
            raise ValueError(
                f"checkpoint for {version} cannot move backwards from {current.phase} to {phase}"
            )
        return replace(self, checkpoint=Checkpoint(version, phase), updated_at=_now())

    def to_dict(self) -> dict[str, Any]:
        return {
            "schema_version": CHECKPOINT_SCHEMA_VERSION,
            "run_key": self.run_key,
            "profile": self.profile,
            "from_version": self.from_version,
            "to_version": self.to_version,
            "strategy": self.strategy,
            "checkpoint": self.checkpoint.to_dict() if self.checkpoint else None,
            "last_backup": self.last_backup.to_dict() if self.last_backup else None,
            "last_successful_step": self.last_successful_step,
            "artifact": self.artifact,
            "live_deployment": self.live_deployment,
            "resume_safe": self.resume_safe,
            "updated_at": _iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> CheckpointRecord:
        schema_version = payload.get("schema_version")
        if schema_version != CHECKPOINT_SCHEMA_VERSION:
            raise ValueError(
                f"unsupported checkpoint schema_version {schema_version!r}; "
                f"expected {CHECKPOINT_SCHEMA_VERSION}"
            )
        checkpoint = payload.get("checkpoint")
        last_backup = payload.get("last_backup")
        last_step = payload.get("last_successful_step")
        artifact = payload.get("artifact")
        live = payload.get("live_deployment")
        return cls(
            run_key=str(payload["run_key"]),
            profile=str(payload["profile"]),
            from_version=str(payload["from_version"]),
            to_version=str(payload["to_version"]),
            strategy=str(payload["strategy"]),
            checkpoint=Checkpoint.from_dict(checkpoint) if checkpoint else None,
            last_backup=BackupReference.from_dict(last_backup) if last_backup else None,
            last_successful_step=str(last_step) if last_step is not None else None,
            artifact=str(artifact) if artifact is not None else None,
            live_deployment=str(live) if live is not None else None,
            resume_safe=bool(payload.get("resume_safe", True)),
            updated_at=_parse_iso(str(payload["updated_at"])),
        )


@dataclass(frozen=True, slots=True)
class ReplicaHandle:
    """One running instance managed by a replica-capable platform."""

    name: str
    address: str | None = None


@dataclass(slots=True)
class MigrationRun:
    """Execution context for one invocation; may continue a checkpointed run."""

    run_id: str
    run_key: str
    path: tuple[VersionSpec, ...]
    strategy: StrategyName
    started_at: float
    resumed: bool = False
    current_index: int = 0

    @property
    def target(self) -> VersionSpec:
        return self.path[-1]

    @property
    def current(self) -> VersionSpec:
        return self.path[self.current_index]


@dataclass(frozen=True, slots=True)
class MigrationResult:
    """Outcome of ``migrate`` or ``rollback``; rendered by the CLI."""

    status: RunStatus
    path: tuple[str, ...] = ()
    completed: tuple[str, ...] = ()
    strategy: str | None = None
    failed_version: str | None = None
    phase_reached: str | None = None
    error: str | None = None
    duration_seconds: float = 0.0
    resume_command: str | None = None
    rollback_command: str | None = None
    notes: tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        return self.status in {RunStatus.SUCCESS, RunStatus.DRY_RUN, RunStatus.NO_OP}

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "path": list(self.path),
            "completed": list(self.completed),
            "strategy": self.strategy,
            "failed_version": self.failed_version,
            "phase_reached": self.phase_reached,
            "error": self.error,
            "duration_seconds": round(self.duration_seconds, 3),
            "resume_command": self.resume_command,
            "rollback_command": self.rollback_command,
            "notes": list(self.notes),
        }


def _now() -> datetime:
    return datetime.now(tz=UTC)


def _iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


def _parse_iso(text: str) -> datetime:
    return datetime.fromisoformat(text.replace("Z", "+00:00"))


__all__ = [
    "CHECKPOINT_SCHEMA_VERSION",
    "PHASE_ORDER",
    "REPLICA_CAPABLE_MODES",
    "BackupReference",
    "Checkpoint",
    "CheckpointRecord",
    "DatabaseKind",
    "DeploymentMode",
    "DistributionMode",
    "MigrationResult",
    "MigrationRun",
    "Phase",
    "ReplicaHandle",
    "RunStatus",
    "StrategyName",
]
