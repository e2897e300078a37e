"""Durable run state: checkpoint records, run locks and database backup files."""

from keycloak_migrator.persistence.backups import (
    BackupCatalog,
    BackupFile,
    RotationKind,
    RotationPolicy,
)
from keycloak_migrator.persistence.checkpoint_store import CheckpointStore
from keycloak_migrator.persistence.lock import RunLock

__all__ = [
    "BackupCatalog",
    "BackupFile",
    "CheckpointStore",
    "RotationKind",
    "RotationPolicy",
    "RunLock",
]
