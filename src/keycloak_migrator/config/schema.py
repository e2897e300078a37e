"""
keycloak-migrator — configuration schema and validation.

File: src/keycloak_migrator/config/schema.py

Purpose
- Define authoritative runtime configuration defaults and strict validation rules.

What should be included in this file
- Schema versioning and migration guidance.
- Validation rules for required fields, types, enums, and numeric constraints.
- Profile overlay validation and deterministic deep-merge helpers.
- Redaction rules for sensitive fields.

Functional requirements
- Validate config payloads and return structured errors (field path + message).
- Reject embedded secret values; secrets are only referenced through ``*_env`` names.

Non-functional requirements
- Keep rules deterministic and easy to audit.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, Literal

from keycloak_migrator.constants import CONFIG_SCHEMA_VERSION

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION

RATE_POLICIES: Final[tuple[str, ...]] = ("fixed", "token_bucket", "adaptive")
ROTATION_POLICIES: Final[tuple[str, ...]] = ("none", "keep_last", "max_age", "combined")
LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR")
METRICS_FORMATS: Final[tuple[str, ...]] = ("prometheus", "json", "off")

_PROFILE_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9_-]*$")
_FACTORY_PATTERN = re.compile(r"^[A-Za-z_][\w.]*:[A-Za-z_]\w*$")
_CAMEL_CASE_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")

_SENSITIVE_KEY_TOKENS: Final[frozenset[str]] = frozenset(
    {"secret", "token", "password", "passwd", "apikey", "private", "credential", "credentials"}
)
_SENSITIVE_KEY_PHRASES: Final[tuple[str, ...]] = (
    "api_key",
    "access_token",
    "client_secret",
    "private_key",
    "password",
    "secret",
)

# Config paths that should be normalized relative to config file location.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("paths", "workspace_root"),
    ("paths", "backup_dir"),
    ("paths", "profiles_dir"),
    ("paths", "install_root"),
    ("paths", "archive_dir"),
    ("observability", "log_dir"),
    ("observability", "audit_log"),
    ("observability", "metrics_file"),
)

_Kind = Literal["int", "float", "bool", "str", "path", "enum", "str_list", "factory"]


@dataclass(frozen=True, slots=True)
class _Rule:
    kind: _Kind
    minimum: float | None = None
    choices: tuple[str, ...] = ()


DEFAULT_CONFIG: Final[dict[str, Any]] = {
    "meta": {"schema_version": ConfigSchemaVersion},
    "paths": {
        "workspace_root": "workspace",
        "backup_dir": "workspace/backups",
        "profiles_dir": "profiles",
        "install_root": "workspace/installs",
        "archive_dir": "workspace/archives",
    },
    "resilience": {
        "rate_policy": "token_bucket",
        "ops_per_second": 10.0,
        "burst": 20,
        "max_attempts": 3,
        "backoff_base_seconds": 1.0,
        "backoff_max_seconds": 60.0,
        "failure_threshold": 5,
        "open_seconds": 30.0,
        "load_sample_seconds": 5.0,
        "operation_timeout_seconds": 300.0,
    },
    "health": {
        "base_url": "http://localhost:8080",
        "liveness_path": "/health/live",
        "readiness_path": "/health/ready",
        "retries": 5,
        "interval_seconds": 10.0,
        "request_timeout_seconds": 5.0,
        "smoke_test_command": [],
        "smoke_test_timeout_seconds": 300.0,
    },
    "timeouts": {
        "build_seconds": 600.0,
        "migrate_seconds": 900.0,
        "migrate_poll_seconds": 5.0,
        "rollout_seconds": 600.0,
        "command_seconds": 120.0,
        "lock_seconds": 0.0,
    },
    "strategy": {
        "allow_fallback": True,
        "drain_seconds": 30.0,
        "replica_parallelism": 4,
        "green_suffix": "-green",
        "direct_port": 18080,
    },
    "backups": {
        "rotation": "keep_last",
        "keep_last": 5,
        "max_age_days": 30,
    },
    "preflight": {
        "min_free_disk_gb": 15,
        "require_java": True,
    },
    "tenants": {"max_concurrency": 2},
    "adapters": {"factory": ""},
    "observability": {
        "log_level": "INFO",
        "log_dir": "workspace/logs",
        "log_to_stdout": False,
        "redact_secrets": True,
        "audit_log": "workspace/audit.jsonl",
        "metrics_format": "prometheus",
        "metrics_file": "workspace/metrics.prom",
    },
    "profiles": {},
}

_RULES: Final[dict[str, dict[str, _Rule]]] = {
    "meta": {"schema_version": _Rule("int", minimum=1)},
    "paths": {
        "workspace_root": _Rule("path"),
        "backup_dir": _Rule("path"),
        "profiles_dir": _Rule("path"),
        "install_root": _Rule("path"),
        "archive_dir": _Rule("path"),
    },
    "resilience": {
        "rate_policy": _Rule("enum", choices=RATE_POLICIES),
        "ops_per_second": _Rule("float", minimum=0.001),
        "burst": _Rule("int", minimum=1),
        "max_attempts": _Rule("int", minimum=1),
        "backoff_base_seconds": _Rule("float", minimum=0.0),
        "backoff_max_seconds": _Rule("float", minimum=0.0),
        "failure_threshold": _Rule("int", minimum=1),
        "open_seconds": _Rule("float", minimum=0.0),
        "load_sample_seconds": _Rule("float", minimum=0.1),
        "operation_timeout_seconds": _Rule("float", minimum=0.1),
    },
    "health": {
        "base_url": _Rule("str"),
        "liveness_path": _Rule("str"),
        "readiness_path": _Rule("str"),
        "retries": _Rule("int", minimum=1),
        "interval_seconds": _Rule("float", minimum=0.0),
        "request_timeout_seconds": _Rule("float", minimum=0.1),
        "smoke_test_command": _Rule("str_list"),
        "smoke_test_timeout_seconds": _Rule("float", minimum=0.1),
    },
    "timeouts": {
        "build_seconds": _Rule("float", minimum=0.1),
        "migrate_seconds": _Rule("float", minimum=0.1),
        "migrate_poll_seconds": _Rule("float", minimum=0.0),
        "rollout_seconds": _Rule("float", minimum=0.1),
        "command_seconds": _Rule("float", minimum=0.1),
        "lock_seconds": _Rule("float", minimum=0.0),
    },
    "strategy": {
        "allow_fallback": _Rule("bool"),
        "drain_seconds": _Rule("float", minimum=0.0),
        "replica_parallelism": _Rule("int", minimum=1),
        "green_suffix": _Rule("str"),
        "direct_port": _Rule("int", minimum=1),
    },
    "backups": {
        "rotation": _Rule("enum", choices=ROTATION_POLICIES),
        "keep_last": _Rule("int", minimum=1),
        "max_age_days": _Rule("int", minimum=1),
    },
    "preflight": {
        "min_free_disk_gb": _Rule("int", minimum=0),
        "require_java": _Rule("bool"),
    },
    "tenants": {"max_concurrency": _Rule("int", minimum=1)},
    "adapters": {"factory": _Rule("factory")},
    "observability": {
        "log_level": _Rule("enum", choices=LOG_LEVELS),
        "log_dir": _Rule("path"),
        "log_to_stdout": _Rule("bool"),
        "redact_secrets": _Rule("bool"),
        "audit_log": _Rule("path"),
        "metrics_format": _Rule("enum", choices=METRICS_FORMATS),
        "metrics_file": _Rule("path"),
    },
}

# Sections a named profile overlay may touch; meta is pinned by the file.
_OVERLAY_SECTIONS: Final[frozenset[str]] = frozenset(_RULES) - {"meta"}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """Single structured validation failure."""

    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    """Validation result with normalized config when no issues were found."""

    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Raised when strict config validation fails."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        if not self.issues:
            rendered = "unknown validation failure"
        else:
            rendered = "\n".join(f"- {item.path}: {item.message}" for item in self.issues)
        super().__init__(f"invalid config:\n{rendered}")


class _IssueCollector:
    __slots__ = ("_items",)

    def __init__(self) -> None:
        self._items: list[ConfigValidationIssue] = []

    def add(self, path: str, message: str) -> None:
        self._items.append(ConfigValidationIssue(path=path, message=message))

    def items(self) -> tuple[ConfigValidationIssue, ...]:
        return tuple(self._items)

    @property
    def has_issues(self) -> bool:
        return bool(self._items)


def default_config() -> dict[str, Any]:
    """Return a deep copy of deterministic built-in defaults."""

    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    """Return deterministic migration guidance for schema version mismatch."""

    if found_version < ConfigSchemaVersion:
        return (
            f"schema version {found_version} is older than supported {ConfigSchemaVersion}; "
            "upgrade kcmigrate.toml to the current schema"
        )
    if found_version > ConfigSchemaVersion:
        return (
            f"schema version {found_version} is newer than supported {ConfigSchemaVersion}; "
            "upgrade the keycloak-migrator runtime"
        )
    return "schema version is current"


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deterministically deep-merge ``overlay`` onto ``base``."""

    merged = _deep_copy_mapping(base)
    _merge_into(merged, overlay)
    return merged


def apply_profile_overlay(config: Mapping[str, object], profile: str | None) -> dict[str, Any]:
    """Apply a named profile overlay and re-validate the resulting config."""

    materialized = _deep_copy_mapping(config)
    selected = (profile or "").strip()
    if not selected:
        return materialized

    profiles_raw = materialized.get("profiles")
    overlay_raw = profiles_raw.get(selected) if isinstance(profiles_raw, Mapping) else None
    if overlay_raw is None:
        raise ConfigValidationError(
            (ConfigValidationIssue("profiles", f"profile {selected!r} is not defined"),)
        )
    if not isinstance(overlay_raw, Mapping):
        raise ConfigValidationError(
            (ConfigValidationIssue(f"profiles.{selected}", "profile overlay must be an object"),)
        )
    return assert_valid_config(merge_config(materialized, overlay_raw))


def validate_config(config: Mapping[str, object] | object) -> ConfigValidationResult:
    """Validate config and return structured issues with deterministic paths."""

    issues = _IssueCollector()
    root = _as_object(config, "<root>", issues)
    if root is None:
        return ConfigValidationResult(config=None, issues=issues.items())

    allowed = set(_RULES) | {"profiles"}
    _reject_unknown_keys(root, allowed, "", issues)
    _require_keys(root, set(_RULES), "", issues)

    out: dict[str, Any] = {}
    for section in sorted(_RULES):
        raw = root.get(section)
        if raw is None:
            continue
        section_obj = _as_object(raw, section, issues)
        if section_obj is None:
            continue
        out[section] = _validate_section(
            section_obj, section, _RULES[section], issues, partial=False
        )

    meta = out.get("meta", {})
    found = meta.get("schema_version")
    if isinstance(found, int) and found != ConfigSchemaVersion:
        issues.add("meta.schema_version", migration_guidance(found))

    profiles_raw = root.get("profiles")
    if profiles_raw is not None:
        profiles_obj = _as_object(profiles_raw, "profiles", issues)
        if profiles_obj is not None:
            out["profiles"] = _validate_profiles(profiles_obj, "profiles", issues)

    _validate_cross_fields(out, issues)

    if issues.has_issues:
        return ConfigValidationResult(config=None, issues=issues.items())
    return ConfigValidationResult(config=out, issues=())


def assert_valid_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Validate config and raise ``ConfigValidationError`` on failure."""

    result = validate_config(config)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def redact_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Return deterministic redacted representation for logs."""

    if not isinstance(config, Mapping):
        return {}
    redacted = _redact_value(config, parent_key=None)
    if isinstance(redacted, dict):
        return redacted
    return {}


def _validate_section(
    payload: Mapping[str, object],
    path: str,
    rules: Mapping[str, _Rule],
    issues: _IssueCollector,
    *,
    partial: bool,
) -> dict[str, Any]:
    _reject_unknown_keys(payload, set(rules), path, issues)
    if not partial:
        _require_keys(payload, set(rules), path, issues)

    out: dict[str, Any] = {}
    for key in sorted(rules):
        if key not in payload:
            continue
        parsed = _coerce(payload[key], _join(path, key), rules[key], issues)
        if parsed is not None:
            out[key] = parsed
    return out


def _coerce(value: object, path: str, rule: _Rule, issues: _IssueCollector) -> Any:
    if rule.kind == "int":
        minimum = int(rule.minimum) if rule.minimum is not None else None
        return _as_int(value, path, issues, minimum=minimum)
    if rule.kind == "float":
        return _as_float(value, path, issues, minimum=rule.minimum)
    if rule.kind == "bool":
        return _as_bool(value, path, issues)
    if rule.kind == "str":
        return _as_str(value, path, issues)
    if rule.kind == "path":
        return _as_path_text(value, path, issues)
    if rule.kind == "enum":
        return _as_enum(value, path, issues, allowed_values=rule.choices)
    if rule.kind == "str_list":
        return _as_str_list(value, path, issues)
    return _as_factory(value, path, issues)


def _validate_profiles(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for profile_name in sorted(payload):
        profile_path = _join(path, profile_name)
        if not _PROFILE_NAME_PATTERN.fullmatch(profile_name):
            issues.add(profile_path, "profile name must match ^[a-z][a-z0-9_-]*$")
            continue
        profile_obj = _as_object(payload[profile_name], profile_path, issues)
        if profile_obj is None:
            continue
        _reject_unknown_keys(profile_obj, set(_OVERLAY_SECTIONS), profile_path, issues)
        overlay: dict[str, Any] = {}
        for section in sorted(_OVERLAY_SECTIONS):
            raw = profile_obj.get(section)
            if raw is None:
                continue
            section_path = _join(profile_path, section)
            section_obj = _as_object(raw, section_path, issues)
            if section_obj is None:
                continue
            overlay[section] = _validate_section(
                section_obj, section_path, _RULES[section], issues, partial=True
            )
        out[profile_name] = overlay
    return out


def _validate_cross_fields(config: Mapping[str, Any], issues: _IssueCollector) -> None:
    resilience = config.get("resilience")
    if isinstance(resilience, Mapping):
        base = resilience.get("backoff_base_seconds")
        cap = resilience.get("backoff_max_seconds")
        if isinstance(base, float) and isinstance(cap, float) and cap < base:
            issues.add(
                "resilience.backoff_max_seconds", "must be >= resilience.backoff_base_seconds"
            )

    health = config.get("health")
    if isinstance(health, Mapping):
        for key in ("liveness_path", "readiness_path"):
            value = health.get(key)
            if isinstance(value, str) and not value.startswith("/"):
                issues.add(f"health.{key}", "must start with '/'")
        base_url = health.get("base_url")
        if isinstance(base_url, str) and not base_url.startswith(("http://", "https://")):
            issues.add("health.base_url", "must be an http:// or https:// URL")


def _as_object(value: object, path: str, issues: _IssueCollector) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        issues.add(path, f"expected object, got {type(value).__name__}")
        return None
    out: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            issues.add(path, f"object key must be string, got {type(key).__name__}")
            continue
        out[key] = item
    return out


def _as_str(value: object, path: str, issues: _IssueCollector) -> str | None:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    parsed = value.strip()
    if not parsed:
        issues.add(path, "must not be empty")
        return None
    return parsed


def _as_path_text(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if "\x00" in parsed:
        issues.add(path, "must not contain NUL bytes")
        return None
    return parsed


def _as_factory(value: object, path: str, issues: _IssueCollector) -> str | None:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    parsed = value.strip()
    if parsed and not _FACTORY_PATTERN.fullmatch(parsed):
        issues.add(path, "must be empty or a 'package.module:callable' reference")
        return None
    return parsed


def _as_str_list(value: object, path: str, issues: _IssueCollector) -> list[str] | None:
    if not isinstance(value, (list, tuple)):
        issues.add(path, f"expected array of strings, got {type(value).__name__}")
        return None
    out: list[str] = []
    for index, item in enumerate(value):
        if not isinstance(item, str) or not item:
            issues.add(f"{path}[{index}]", "expected non-empty string")
            return None
        out.append(item)
    return out


def _as_bool(value: object, path: str, issues: _IssueCollector) -> bool | None:
    if isinstance(value, bool):
        return value
    issues.add(path, f"expected boolean, got {type(value).__name__}")
    return None


def _as_int(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: int | None = None,
) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        issues.add(path, f"expected integer, got {type(value).__name__}")
        return None
    if minimum is not None and value < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return value


def _as_float(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: float | None = None,
) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        issues.add(path, f"expected number, got {type(value).__name__}")
        return None
    parsed = float(value)
    if not math.isfinite(parsed):
        issues.add(path, "must be finite")
        return None
    if minimum is not None and parsed < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return parsed


def _as_enum(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    allowed_values: tuple[str, ...],
) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if parsed not in allowed_values:
        expected = ", ".join(sorted(allowed_values))
        issues.add(path, f"invalid value {parsed!r}; expected one of: {expected}")
        return None
    return parsed


def _reject_unknown_keys(
    payload: Mapping[str, object],
    allowed: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(payload):
        if key in allowed:
            continue
        key_path = _join(path, key)
        if _looks_sensitive_key(key):
            issues.add(
                key_path,
                "embedded secret values are forbidden; use an *_env key with an env var name",
            )
        else:
            issues.add(key_path, "unknown field")


def _require_keys(
    payload: Mapping[str, object],
    required: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(required):
        if key not in payload:
            issues.add(_join(path, key), "missing required field")


def _looks_sensitive_key(key: str) -> bool:
    normalized = _normalize_key(key)
    if normalized.endswith("_env"):
        return False
    if any(phrase in normalized for phrase in _SENSITIVE_KEY_PHRASES):
        return True
    tokens = tuple(token for token in normalized.split("_") if token)
    return any(token in _SENSITIVE_KEY_TOKENS for token in tokens)


def _normalize_key(key: str) -> str:
    with_boundaries = _CAMEL_CASE_BOUNDARY.sub(r"\1_\2", key.strip())
    return _NON_ALNUM.sub("_", with_boundaries.lower()).strip("_")


def _join(path: str, key: str) -> str:
    if not path:
        return key
    return f"{path}.{key}"


def _merge_into(target: dict[str, Any], overlay: Mapping[str, object]) -> None:
    for key in sorted(overlay):
        value = overlay[key]
        if isinstance(value, Mapping):
            existing = target.get(key)
            if isinstance(existing, dict):
                _merge_into(existing, value)
            else:
                nested: dict[str, Any] = {}
                _merge_into(nested, value)
                target[key] = nested
        else:
            target[key] = _deep_copy_value(value)


def _deep_copy_mapping(value: Mapping[str, object]) -> dict[str, Any]:
    return {key: _deep_copy_value(value[key]) for key in sorted(value)}


def _deep_copy_value(value: object) -> Any:
    if isinstance(value, Mapping):
        return {key: _deep_copy_value(item) for key, item in value.items() if isinstance(key, str)}
    if isinstance(value, (list, tuple)):
        return [_deep_copy_value(item) for item in value]
    return copy.deepcopy(value)


def _redact_value(value: object, parent_key: str | None) -> object:
    if isinstance(value, Mapping):
        out: dict[str, object] = {}
        for key in sorted(value):
            if _looks_sensitive_key(key):
                out[key] = "<redacted>"
            else:
                out[key] = _redact_value(value[key], key)
        return out
    if isinstance(value, (list, tuple)):
        return [_redact_value(item, parent_key) for item in value]
    return value


__all__ = [
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "LOG_LEVELS",
    "METRICS_FORMATS",
    "PATH_FIELDS",
    "RATE_POLICIES",
    "ROTATION_POLICIES",
    "apply_profile_overlay",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "migration_guidance",
    "redact_config",
    "validate_config",
]
