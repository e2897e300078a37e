"""
keycloak-migrator — migration profile loader.

File: src/keycloak_migrator/config/profiles.py

Purpose
- Load ``profiles/<name>.yaml`` into a frozen, fully validated ``ConfigProfile``.

Functional requirements
- Unknown strategy, deployment mode, distribution mode or database type is a ``ConfigError``.
- Malformed or unknown versions are rejected before any engine work starts.
- Unknown keys are rejected with their dotted location; passwords are never read from YAML.
"""

from __future__ import annotations

from collections.abc import Mapping
from enum import StrEnum
from pathlib import Path
from typing import Any, Final, TypeVar, cast

import yaml

from keycloak_migrator.domain.errors import ConfigError
from keycloak_migrator.domain.models import (
    DatabaseKind,
    DeploymentMode,
    DistributionMode,
    StrategyName,
)
from keycloak_migrator.domain.profile import (
    ConfigProfile,
    DatabaseTarget,
    DeploymentTarget,
    TenantProfile,
)
from keycloak_migrator.domain.versions import KEYCLOAK_VERSIONS, Version, VersionTable

_E = TypeVar("_E", bound=StrEnum)

_TOP_LEVEL: Final[frozenset[str]] = frozenset(
    {"profile", "database", "keycloak", "migration", "tenants"}
)
_PROFILE_KEYS: Final[frozenset[str]] = frozenset({"name", "environment"})
_DATABASE_KEYS: Final[frozenset[str]] = frozenset(
    {"type", "host", "port", "name", "user", "password_env", "password_file"}
)
_KEYCLOAK_KEYS: Final[frozenset[str]] = frozenset(
    {
        "current_version",
        "target_version",
        "deployment_mode",
        "distribution_mode",
        "home_dir",
        "namespace",
        "deployment",
        "service",
        "container",
        "compose_file",
        "container_image",
        "container_registry",
        "replicas",
        "base_url",
    }
)
_MIGRATION_KEYS: Final[frozenset[str]] = frozenset(
    {"strategy", "run_tests", "auto_rollback", "airgap"}
)
_TENANT_KEYS: Final[frozenset[str]] = frozenset(
    {"name", "database", "deployment", "base_url", "current_version"}
)
_DEFAULT_DB_PORTS: Final[dict[DatabaseKind, int]] = {
    DatabaseKind.POSTGRESQL: 5432,
    DatabaseKind.MYSQL: 3306,
    DatabaseKind.MARIADB: 3306,
}


def resolve_profile_path(name_or_path: str | Path, profiles_dir: Path) -> Path:
    """A bare name maps to ``<profiles_dir>/<name>.yaml``; anything path-like is used as-is."""

    candidate = Path(name_or_path)
    if candidate.suffix in {".yaml", ".yml"} or len(candidate.parts) > 1:
        return candidate.expanduser()
    return profiles_dir / f"{candidate.name}.yaml"


def load_profile(
    name_or_path: str | Path,
    *,
    profiles_dir: Path,
    versions: VersionTable = KEYCLOAK_VERSIONS,
) -> ConfigProfile:
    path = resolve_profile_path(name_or_path, profiles_dir)
    try:
        with path.open("r", encoding="utf-8") as handle:
            loaded = cast("object", yaml.safe_load(handle))
    except FileNotFoundError as exc:
        raise ConfigError(f"profile not found: {path}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"{path}: invalid YAML ({exc})") from exc
    except OSError as exc:
        raise ConfigError(f"unable to read profile {path}: {exc}") from exc
    return parse_profile(loaded, source=path.name, versions=versions)


def parse_profile(
    payload: object,
    *,
    source: str = "<profile>",
    versions: VersionTable = KEYCLOAK_VERSIONS,
) -> ConfigProfile:
    root = _mapping(payload, source)
    _reject_unknown(root, _TOP_LEVEL, source)

    profile_section = _mapping(root.get("profile", {}), f"{source}.profile")
    _reject_unknown(profile_section, _PROFILE_KEYS, f"{source}.profile")
    name = _required_str(profile_section, "name", f"{source}.profile")

    database = _parse_database(_section(root, "database", source), f"{source}.database")
    keycloak_path = f"{source}.keycloak"
    keycloak = _section(root, "keycloak", source)
    _reject_unknown(keycloak, _KEYCLOAK_KEYS, keycloak_path)

    current = _version(keycloak, "current_version", keycloak_path, versions)
    target = _version(keycloak, "target_version", keycloak_path, versions)
    mode = _enum(
        DeploymentMode,
        keycloak.get("deployment_mode", "standalone"),
        f"{keycloak_path}.deployment_mode",
    )
    distribution = _enum(
        DistributionMode,
        keycloak.get("distribution_mode", _default_distribution(mode).value),
        f"{keycloak_path}.distribution_mode",
    )
    deployment = _parse_deployment(keycloak, mode, keycloak_path)

    migration_path = f"{source}.migration"
    migration = _mapping(root.get("migration", {}), migration_path)
    _reject_unknown(migration, _MIGRATION_KEYS, migration_path)
    strategy = _enum(
        StrategyName, migration.get("strategy", "inplace"), f"{migration_path}.strategy"
    )

    tenants_raw = root.get("tenants", [])
    if not isinstance(tenants_raw, list):
        raise ConfigError(f"{source}.tenants: expected a list")
    tenants = tuple(
        _parse_tenant(item, f"{source}.tenants[{index}]", versions)
        for index, item in enumerate(tenants_raw)
    )
    seen: set[str] = set()
    for tenant in tenants:
        if tenant.name in seen:
            raise ConfigError(f"{source}.tenants: duplicate tenant name {tenant.name!r}")
        seen.add(tenant.name)

    return ConfigProfile(
        name=name,
        current_version=current,
        target_version=target,
        strategy=strategy,
        database=database,
        deployment=deployment,
        distribution_mode=distribution,
        container_image=_optional_str(keycloak, "container_image", keycloak_path)
        or "keycloak/keycloak",
        container_registry=_optional_str(keycloak, "container_registry", keycloak_path)
        or "quay.io",
        run_smoke_tests=_bool(migration, "run_tests", migration_path, default=True),
        auto_rollback=_bool(migration, "auto_rollback", migration_path, default=False),
        airgap=_bool(migration, "airgap", migration_path, default=False),
        tenants=tenants,
    )


def _parse_database(section: Mapping[str, Any], path: str) -> DatabaseTarget:
    _reject_unknown(section, _DATABASE_KEYS, path)
    kind = _enum(DatabaseKind, section.get("type", "postgresql"), f"{path}.type")
    port = section.get("port", _DEFAULT_DB_PORTS[kind])
    if isinstance(port, bool) or not isinstance(port, int):
        raise ConfigError(f"{path}.port: expected integer, got {type(port).__name__}")
    try:
        return DatabaseTarget(
            kind=kind,
            host=_optional_str(section, "host", path) or "localhost",
            port=port,
            name=_required_str(section, "name", path),
            user=_required_str(section, "user", path),
            password_env=_optional_str(section, "password_env", path),
            password_file=_optional_str(section, "password_file", path),
        )
    except ValueError as exc:
        raise ConfigError(f"{path}: {exc}") from exc


def _parse_deployment(
    section: Mapping[str, Any], mode: DeploymentMode, path: str
) -> DeploymentTarget:
    replicas = section.get("replicas", 1)
    if isinstance(replicas, bool) or not isinstance(replicas, int):
        raise ConfigError(f"{path}.replicas: expected integer, got {type(replicas).__name__}")
    if mode in {DeploymentMode.KUBERNETES, DeploymentMode.DECKHOUSE}:
        name = _optional_str(section, "deployment", path) or "keycloak"
        namespace = _optional_str(section, "namespace", path) or "keycloak"
    elif mode in {DeploymentMode.DOCKER, DeploymentMode.DOCKER_COMPOSE}:
        name = _optional_str(section, "container", path) or "keycloak"
        namespace = None
    else:
        name = _optional_str(section, "service", path) or "keycloak"
        namespace = None
    try:
        return DeploymentTarget(
            mode=mode,
            name=name,
            namespace=namespace,
            service=_optional_str(section, "service", path),
            container=_optional_str(section, "container", path),
            compose_file=_optional_str(section, "compose_file", path),
            home_dir=_optional_str(section, "home_dir", path),
            replicas=replicas,
            base_url=_optional_str(section, "base_url", path),
        )
    except ValueError as exc:
        raise ConfigError(f"{path}: {exc}") from exc


def _parse_tenant(payload: object, path: str, versions: VersionTable) -> TenantProfile:
    section = _mapping(payload, path)
    _reject_unknown(section, _TENANT_KEYS, path)
    database = _mapping(section.get("database", {}), f"{path}.database")
    _reject_unknown(database, frozenset({"host", "name"}), f"{path}.database")
    deployment = _mapping(section.get("deployment", {}), f"{path}.deployment")
    _reject_unknown(deployment, frozenset({"namespace", "deployment"}), f"{path}.deployment")
    current = None
    if "current_version" in section:
        current = _version(section, "current_version", path, versions)
    return TenantProfile(
        name=_required_str(section, "name", path),
        database_host=_optional_str(database, "host", f"{path}.database"),
        database_name=_optional_str(database, "name", f"{path}.database"),
        namespace=_optional_str(deployment, "namespace", f"{path}.deployment"),
        deployment=_optional_str(deployment, "deployment", f"{path}.deployment"),
        base_url=_optional_str(section, "base_url", path),
        current_version=current,
    )


def _default_distribution(mode: DeploymentMode) -> DistributionMode:
    if mode is DeploymentMode.STANDALONE:
        return DistributionMode.DOWNLOAD
    return DistributionMode.CONTAINER


def _version(section: Mapping[str, Any], key: str, path: str, versions: VersionTable) -> str:
    raw = section.get(key)
    if raw is None:
        raise ConfigError(f"{path}.{key}: missing required field")
    parsed = Version.parse(str(raw))
    versions.index_of(parsed)
    return str(parsed)


def _enum(enum_type: type[_E], value: object, path: str) -> _E:
    try:
        return enum_type(str(value).strip().lower())
    except ValueError as exc:
        expected = ", ".join(member.value for member in enum_type)
        raise ConfigError(
            f"{path}: unsupported value {value!r}; expected one of: {expected}"
        ) from exc


def _section(root: Mapping[str, Any], key: str, source: str) -> Mapping[str, Any]:
    if key not in root:
        raise ConfigError(f"{source}.{key}: missing required section")
    return _mapping(root[key], f"{source}.{key}")


def _mapping(value: object, path: str) -> dict[str, Any]:
    if not isinstance(value, Mapping):
        raise ConfigError(f"{path}: expected mapping, got {type(value).__name__}")
    return {str(key): item for key, item in value.items()}


def _reject_unknown(section: Mapping[str, Any], allowed: frozenset[str], path: str) -> None:
    unknown = sorted(set(section) - allowed)
    if unknown:
        raise ConfigError(f"{path}: unexpected fields: {unknown}; allowed: {sorted(allowed)}")


def _required_str(section: Mapping[str, Any], key: str, path: str) -> str:
    value = _optional_str(section, key, path)
    if value is None:
        raise ConfigError(f"{path}.{key}: missing required field")
    return value


def _optional_str(section: Mapping[str, Any], key: str, path: str) -> str | None:
    value = section.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (str, int, float)):
        raise ConfigError(f"{path}.{key}: expected string, got {type(value).__name__}")
    text = str(value).strip()
    return text or None


def _bool(section: Mapping[str, Any], key: str, path: str, *, default: bool) -> bool:
    value = section.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"{path}.{key}: expected boolean, got {type(value).__name__}")
    return value


__all__ = ["load_profile", "parse_profile", "resolve_profile_path"]
