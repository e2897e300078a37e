"""
keycloak-migrator config package public API.

File: src/keycloak_migrator/config/__init__.py

Purpose
- Export config loading/validation entrypoints, typed settings and the profile loader.

Functional requirements
- Support loading from ``kcmigrate.toml`` + ``KCMIGRATE_`` env overrides.
- Fail fast with clear structured validation/load errors.
"""

from keycloak_migrator.config.loader import (
    DEFAULT_CONFIG_FILE,
    ENV_PREFIX,
    ConfigLoadError,
    dump_effective_config,
    load_config,
    normalize_paths,
)
from keycloak_migrator.config.profiles import load_profile, parse_profile, resolve_profile_path
from keycloak_migrator.config.schema import (
    DEFAULT_CONFIG,
    PATH_FIELDS,
    ConfigSchemaVersion,
    ConfigValidationError,
    ConfigValidationIssue,
    ConfigValidationResult,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    merge_config,
    migration_guidance,
    redact_config,
    validate_config,
)
from keycloak_migrator.config.settings import (
    BackupSettings,
    HealthSettings,
    MigrationSettings,
    ObservabilitySettings,
    PathSettings,
    PreflightSettings,
    ResilienceSettings,
    StrategySettings,
    TimeoutSettings,
)

__all__ = [
    "BackupSettings",
    "ConfigLoadError",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "HealthSettings",
    "MigrationSettings",
    "ObservabilitySettings",
    "PATH_FIELDS",
    "PathSettings",
    "PreflightSettings",
    "ResilienceSettings",
    "StrategySettings",
    "TimeoutSettings",
    "apply_profile_overlay",
    "assert_valid_config",
    "default_config",
    "dump_effective_config",
    "load_config",
    "load_profile",
    "merge_config",
    "migration_guidance",
    "normalize_paths",
    "parse_profile",
    "redact_config",
    "resolve_profile_path",
    "validate_config",
]
