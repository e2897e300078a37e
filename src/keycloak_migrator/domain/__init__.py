"""Domain types: versions, phases, checkpoint records, profiles and the error taxonomy."""

from keycloak_migrator.domain.errors import (
    CheckpointMismatchError,
    CircuitOpenError,
    ConfigError,
    IrrecoverableError,
    LockAcquisitionError,
    MigrationError,
    NoPathNeededError,
    OperationError,
    OperationTimeoutError,
    PermanentOperationError,
    PhaseFailedError,
    PreconditionError,
    TransientOperationError,
    UnknownVersionError,
)
from keycloak_migrator.domain.ids import generate_run_id
from keycloak_migrator.domain.models import (
    PHASE_ORDER,
    REPLICA_CAPABLE_MODES,
    BackupReference,
    Checkpoint,
    CheckpointRecord,
    DatabaseKind,
    DeploymentMode,
    DistributionMode,
    MigrationResult,
    MigrationRun,
    Phase,
    ReplicaHandle,
    RunStatus,
    StrategyName,
)
from keycloak_migrator.domain.profile import (
    ConfigProfile,
    DatabaseTarget,
    DeploymentTarget,
    TenantProfile,
)
from keycloak_migrator.domain.versions import KEYCLOAK_VERSIONS, Version, VersionSpec, VersionTable

__all__ = [
    "KEYCLOAK_VERSIONS",
    "PHASE_ORDER",
    "REPLICA_CAPABLE_MODES",
    "BackupReference",
    "Checkpoint",
    "CheckpointMismatchError",
    "CheckpointRecord",
    "CircuitOpenError",
    "ConfigError",
    "ConfigProfile",
    "DatabaseKind",
    "DatabaseTarget",
    "DeploymentMode",
    "DeploymentTarget",
    "DistributionMode",
    "IrrecoverableError",
    "LockAcquisitionError",
    "MigrationError",
    "MigrationResult",
    "MigrationRun",
    "NoPathNeededError",
    "OperationError",
    "OperationTimeoutError",
    "PermanentOperationError",
    "Phase",
    "PhaseFailedError",
    "PreconditionError",
    "ReplicaHandle",
    "RunStatus",
    "StrategyName",
    "TenantProfile",
    "TransientOperationError",
    "UnknownVersionError",
    "Version",
    "VersionSpec",
    "VersionTable",
    "generate_run_id",
]
