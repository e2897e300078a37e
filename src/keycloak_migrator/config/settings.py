"""Typed, frozen views over a validated runtime config mapping."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from keycloak_migrator.config.schema import assert_valid_config, default_config


@dataclass(frozen=True, slots=True)
class PathSettings:
    workspace_root: Path
    backup_dir: Path
    profiles_dir: Path
    install_root: Path
    archive_dir: Path

    def tenant_workspace(self, tenant: str) -> Path:
        return self.workspace_root / "tenants" / tenant


@dataclass(frozen=True, slots=True)
class ResilienceSettings:
    rate_policy: str = "token_bucket"
    ops_per_second: float = 10.0
    burst: int = 20
    max_attempts: int = 3
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 60.0
    failure_threshold: int = 5
    open_seconds: float = 30.0
    load_sample_seconds: float = 5.0
    operation_timeout_seconds: float = 300.0


@dataclass(frozen=True, slots=True)
class HealthSettings:
    base_url: str = "http://localhost:8080"
    liveness_path: str = "/health/live"
    readiness_path: str = "/health/ready"
    retries: int = 5
    interval_seconds: float = 10.0
    request_timeout_seconds: float = 5.0
    smoke_test_command: tuple[str, ...] = ()
    smoke_test_timeout_seconds: float = 300.0


@dataclass(frozen=True, slots=True)
class TimeoutSettings:
    build_seconds: float = 600.0
    migrate_seconds: float = 900.0
    migrate_poll_seconds: float = 5.0
    rollout_seconds: float = 600.0
    command_seconds: float = 120.0
    lock_seconds: float = 0.0


@dataclass(frozen=True, slots=True)
class StrategySettings:
    allow_fallback: bool = True
    drain_seconds: float = 30.0
    replica_parallelism: int = 4
    green_suffix: str = "-green"
    direct_port: int = 18080


@dataclass(frozen=True, slots=True)
class BackupSettings:
    rotation: str = "keep_last"
    keep_last: int = 5
    max_age_days: int = 30


@dataclass(frozen=True, slots=True)
class PreflightSettings:
    min_free_disk_gb: int = 15
    require_java: bool = True


@dataclass(frozen=True, slots=True)
class ObservabilitySettings:
    log_level: str = "INFO"
    log_dir: Path = Path("workspace/logs")
    log_to_stdout: bool = False
    redact_secrets: bool = True
    audit_log: Path = Path("workspace/audit.jsonl")
    metrics_format: str = "prometheus"
    metrics_file: Path = Path("workspace/metrics.prom")


@dataclass(frozen=True, slots=True)
class MigrationSettings:
    """Everything the engine needs from runtime config, passed explicitly down the call chain."""

    paths: PathSettings
    resilience: ResilienceSettings
    health: HealthSettings
    timeouts: TimeoutSettings
    strategy: StrategySettings
    backups: BackupSettings
    preflight: PreflightSettings
    observability: ObservabilitySettings
    tenant_concurrency: int = 2
    adapter_factory: str | None = None

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> MigrationSettings:
        paths = config["paths"]
        health = dict(config["health"])
        health["smoke_test_command"] = tuple(health.get("smoke_test_command", ()))
        observability = dict(config["observability"])
        factory = str(config["adapters"]["factory"]).strip()
        return cls(
            paths=PathSettings(**{key: Path(value) for key, value in paths.items()}),
            resilience=ResilienceSettings(**config["resilience"]),
            health=HealthSettings(**health),
            timeouts=TimeoutSettings(**config["timeouts"]),
            strategy=StrategySettings(**config["strategy"]),
            backups=BackupSettings(**config["backups"]),
            preflight=PreflightSettings(**config["preflight"]),
            observability=ObservabilitySettings(
                log_level=observability["log_level"],
                log_dir=Path(observability["log_dir"]),
                log_to_stdout=observability["log_to_stdout"],
                redact_secrets=observability["redact_secrets"],
                audit_log=Path(observability["audit_log"]),
                metrics_format=observability["metrics_format"],
                metrics_file=Path(observability["metrics_file"]),
            ),
            tenant_concurrency=int(config["tenants"]["max_concurrency"]),
            adapter_factory=factory or None,
        )

    @classmethod
    def defaults(cls, workspace_root: Path | None = None) -> MigrationSettings:
        """Built-in defaults, optionally rooted at ``workspace_root`` (used by tests)."""

        config = assert_valid_config(default_config())
        if workspace_root is not None:
            root = Path(workspace_root)
            config["paths"] = {
                "workspace_root": str(root),
                "backup_dir": str(root / "backups"),
                "profiles_dir": str(root / "profiles"),
                "install_root": str(root / "installs"),
                "archive_dir": str(root / "archives"),
            }
            config["observability"]["log_dir"] = str(root / "logs")
            config["observability"]["audit_log"] = str(root / "audit.jsonl")
            config["observability"]["metrics_file"] = str(root / "metrics.prom")
        return cls.from_config(config)


__all__ = [
    "BackupSettings",
    "HealthSettings",
    "MigrationSettings",
    "ObservabilitySettings",
    "PathSettings",
    "PreflightSettings",
    "ResilienceSettings",
    "StrategySettings",
    "TimeoutSettings",
]
