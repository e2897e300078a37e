"""Stable constants shared across the migrator layers."""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Final

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1
CHECKPOINT_SCHEMA_VERSION: Final[int] = 1

# File and directory names inside a run workspace.
CHECKPOINT_FILE: Final[str] = "checkpoint.json"
PREFLIGHT_MARKER: Final[str] = ".preflight_passed"
TENANTS_SUMMARY_FILE: Final[str] = "tenants_summary.json"
LOCKS_DIR: Final[PurePosixPath] = PurePosixPath("locks")
TENANTS_DIR: Final[PurePosixPath] = PurePosixPath("tenants")

# Backup file naming.
BACKUP_PREFIX: Final[str] = "backup_before_"
SAFETY_BACKUP_PREFIX: Final[str] = "safety_before_rollback_"
BACKUP_SUFFIX: Final[str] = ".dump"
BACKUP_TIMESTAMP_FORMAT: Final[str] = "%Y%m%d_%H%M%S"

# Deployment labels for blue-green roles.
BLUE_LABEL_KEY: Final[str] = "keycloak-migrator/role"
BLUE_LABEL_VALUE: Final[str] = "blue"
GREEN_LABEL_VALUE: Final[str] = "green"

CLI_NAME: Final[str] = "kcmigrate"

__all__ = [
    "BACKUP_PREFIX",
    "BACKUP_SUFFIX",
    "BACKUP_TIMESTAMP_FORMAT",
    "BLUE_LABEL_KEY",
    "BLUE_LABEL_VALUE",
    "CHECKPOINT_FILE",
    "CHECKPOINT_SCHEMA_VERSION",
    "CLI_NAME",
    "CONFIG_SCHEMA_VERSION",
    "GREEN_LABEL_VALUE",
    "LOCKS_DIR",
    "PREFLIGHT_MARKER",
    "SAFETY_BACKUP_PREFIX",
    "TENANTS_DIR",
    "TENANTS_SUMMARY_FILE",
]
