"""
keycloak-migrator — deterministic test doubles

File: tests/fakes.py

Purpose
- In-memory collaborators and virtual time shared by the engine, CLI and integration tests.

What should be included in this file
- ``FakeClock`` whose ``sleep`` advances virtual time instead of waiting.
- Recording database, deployment (single-instance, replica and blue-green), distribution,
  probe, smoke-test runner, decision and command executor.
- Builders for profiles, settings and collaborator bundles rooted in a temp directory.

Functional requirements
- Every call is recorded with the name of the deployment it touched so tests can assert
  which targets were mutated.
- Failures are scripted per method and consumed in order.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable, Iterable, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Final

from keycloak_migrator.adapters.process import CommandResult, CommandSpec
from keycloak_migrator.config.settings import MigrationSettings
from keycloak_migrator.domain.models import (
    DatabaseKind,
    DeploymentMode,
    DistributionMode,
    ReplicaHandle,
    StrategyName,
)
from keycloak_migrator.domain.profile import (
    ConfigProfile,
    DatabaseTarget,
    DeploymentTarget,
    TenantProfile,
)
from keycloak_migrator.engine.decisions import DecisionKind, DecisionPrompt
from keycloak_migrator.engine.protocols import Collaborators

MIGRATED_LOG: Final[str] = (
    "INFO [org.keycloak.quarkus.runtime.storage.database.liquibase] "
    "Liquibase command 'update' was executed successfully\n"
    "INFO [io.quarkus] Keycloak 26.0.7 on JVM started in 12.3s\n"
)
FAILED_MIGRATION_LOG: Final[str] = (
    "ERROR [org.keycloak.connections.jpa.updater.liquibase] Migration failed: "
    "liquibase.exception.LiquibaseException: changeSet checksum mismatch\n"
)
BLUE_MUTATIONS: Final[frozenset[str]] = frozenset(
    {
        "start",
        "stop",
        "update_replica_image",
        "undo_rollout",
        "label_deployment",
        "create_parallel",
        "route_traffic",
        "delete_deployment",
        "promote",
    }
)


class FakeClock:
    """Monotonic virtual clock; ``sleep`` records the delay and advances time."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.value = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.value += max(0.0, seconds)
        await asyncio.sleep(0)


class _Scripted:
    """Per-method call log with queued failures."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, ...]] = []
        self._failures: dict[str, list[BaseException | None]] = {}

    def fail(
        self, method: str, error: BaseException, *, times: int = 1, after: int = 0
    ) -> None:
        """Raise ``error`` on the next ``times`` calls once ``after`` calls have passed."""

        self._failures.setdefault(method, []).extend([None] * after + [error] * times)

    def methods(self) -> list[str]:
        return [call[0] for call in self.calls]

    def calls_to(self, method: str) -> list[tuple[str, ...]]:
        return [call for call in self.calls if call[0] == method]

    def _record(self, method: str, *args: str) -> None:
        self.calls.append((method, *args))
        pending = self._failures.get(method)
        if pending:
            error = pending.pop(0)
            if error is not None:
                raise error


class RecordingDatabase(_Scripted):
    def __init__(self, *, load: float = 10.0, reachable: bool = True) -> None:
        super().__init__()
        self.load = load
        self.reachable = reachable

    @property
    def backups(self) -> list[str]:
        return [call[1] for call in self.calls_to("backup")]

    async def backup(self, dest: Path) -> Path:
        self._record("backup", dest.name)
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_bytes(b"PGDMP fake dump")
        return dest

    async def restore(self, backup: Path) -> None:
        self._record("restore", backup.name)

    async def test_connection(self) -> bool:
        self._record("test_connection")
        return self.reachable

    async def sample_load(self) -> float:
        self._record("sample_load")
        return self.load


class RecordingDeployment(_Scripted):
    """Replica-capable platform without a traffic router.

    ``running`` tracks the artifact last started or rolled out so probes can answer per
    version.
    """

    supports_replicas = True
    supports_traffic_routing = False

    def __init__(
        self,
        *,
        replicas: int = 2,
        unhealthy: Iterable[str] = (),
        log_text: str = MIGRATED_LOG,
    ) -> None:
        super().__init__()
        self.replica_count = replicas
        self.unhealthy = set(unhealthy)
        self.log_text = log_text
        self.running: str | None = None

    def mutations_of(self, name: str) -> list[tuple[str, ...]]:
        return [call for call in self.calls if call[0] in BLUE_MUTATIONS and call[1] == name]

    async def start(self, target: DeploymentTarget, *, artifact: str | None = None) -> None:
        self._record("start", target.name, artifact or "")
        if artifact is not None:
            self.running = artifact

    async def stop(self, target: DeploymentTarget) -> None:
        self._record("stop", target.name)

    async def status(self, target: DeploymentTarget) -> bool:
        self._record("status", target.name)
        return True

    async def logs(self, target: DeploymentTarget) -> str:
        self._record("logs", target.name)
        return self.log_text

    async def update_replica_image(self, target: DeploymentTarget, artifact: str) -> None:
        self._record("update_replica_image", target.name, artifact)
        self.running = artifact

    async def rollout_status(self, target: DeploymentTarget, timeout: float) -> None:
        self._record("rollout_status", target.name)

    async def undo_rollout(self, target: DeploymentTarget) -> None:
        self._record("undo_rollout", target.name)

    async def list_replicas(self, target: DeploymentTarget) -> list[ReplicaHandle]:
        self._record("list_replicas", target.name)
        return [
            ReplicaHandle(name=f"{target.name}-{index}", address=f"10.0.0.{index + 10}")
            for index in range(self.replica_count)
        ]

    async def health_check(self, replica: ReplicaHandle) -> bool:
        self._record("health_check", replica.name)
        return replica.name not in self.unhealthy


class SingleInstanceRecordingDeployment(RecordingDeployment):
    supports_replicas = False


class BlueGreenDeployment(RecordingDeployment):
    supports_traffic_routing = True

    async def label_deployment(self, target: DeploymentTarget, key: str, value: str) -> None:
        self._record("label_deployment", target.name, value)

    async def create_parallel(
        self, source: DeploymentTarget, green: DeploymentTarget, artifact: str
    ) -> None:
        self._record("create_parallel", green.name, source.name, artifact)
        self.running = artifact

    async def wait_ready(self, target: DeploymentTarget, timeout: float) -> None:
        self._record("wait_ready", target.name)

    @asynccontextmanager
    async def open_direct_channel(self, target: DeploymentTarget, port: int) -> AsyncIterator[str]:
        self._record("open_direct_channel", target.name, str(port))
        yield f"http://127.0.0.1:{port}"

    async def route_traffic(self, router: DeploymentTarget, to: DeploymentTarget) -> None:
        self._record("route_traffic", router.name, to.name)

    async def delete_deployment(self, target: DeploymentTarget) -> None:
        self._record("delete_deployment", target.name)

    async def promote(self, green: DeploymentTarget, canonical: DeploymentTarget) -> None:
        self._record("promote", green.name, canonical.name)


class RecordingDistribution(_Scripted):
    def __init__(self, image: str = "quay.io/keycloak/keycloak") -> None:
        super().__init__()
        self.image = image

    async def install(self, version: str, dest: Path) -> str:
        self._record("install", version)
        return f"{self.image}:{version}"

    async def build(self, version: str, artifact: str) -> None:
        self._record("build", version)


class ScriptedProbe:
    """Answers queued results first, then ``healthy(url)`` or the default."""

    def __init__(
        self, *, default: bool = True, healthy: Callable[[str], bool] | None = None
    ) -> None:
        self.default = default
        self.healthy = healthy
        self.urls: list[str] = []
        self._queued: list[bool] = []

    def queue(self, *results: bool) -> None:
        self._queued.extend(results)

    async def check(self, url: str) -> bool:
        self.urls.append(url)
        if self._queued:
            return self._queued.pop(0)
        if self.healthy is not None:
            return self.healthy(url)
        return self.default


class StaticSmokeTests:
    def __init__(self, *, passed: bool = True) -> None:
        self.passed = passed
        self.base_urls: list[str] = []

    async def run(self, base_url: str) -> bool:
        self.base_urls.append(base_url)
        return self.passed


class StaticDecision:
    """Fixed answers per decision kind; everything unlisted is declined."""

    interactive = False

    def __init__(self, answers: Mapping[DecisionKind, bool] | None = None) -> None:
        self.answers = dict(answers or {})
        self.prompts: list[DecisionPrompt] = []

    def kinds(self) -> list[DecisionKind]:
        return [prompt.kind for prompt in self.prompts]

    async def confirm(self, prompt: DecisionPrompt) -> bool:
        self.prompts.append(prompt)
        return self.answers.get(prompt.kind, False)


@dataclass(slots=True)
class _Rule:
    needle: tuple[str, ...]
    exit_code: int | None
    stdout: str
    stderr: str
    timed_out: bool
    remaining: int | None


@dataclass(slots=True)
class RecordingExecutor:
    """``CommandExecutor`` answering from rules matched on a contiguous run of argv tokens.

    Rules are tried in registration order; unmatched commands succeed with empty output.
    ``hooks`` run before the answer is produced (e.g. to create a dump file).
    """

    specs: list[CommandSpec] = field(default_factory=list)
    hooks: list[Callable[[CommandSpec], None]] = field(default_factory=list)
    _rules: list[_Rule] = field(default_factory=list)

    def respond(
        self,
        *needle: str,
        stdout: str = "",
        stderr: str = "",
        exit_code: int | None = 0,
        timed_out: bool = False,
        times: int | None = None,
    ) -> None:
        self._rules.append(_Rule(tuple(needle), exit_code, stdout, stderr, timed_out, times))

    @property
    def argvs(self) -> list[tuple[str, ...]]:
        return [spec.argv for spec in self.specs]

    async def run(self, spec: CommandSpec) -> CommandResult:
        self.specs.append(spec)
        for hook in self.hooks:
            hook(spec)
        rule = self._match(spec.argv)
        if rule is None:
            return CommandResult(argv=spec.argv, exit_code=0, stdout="", stderr="", duration_ms=1)
        if rule.remaining is not None:
            rule.remaining -= 1
        return CommandResult(
            argv=spec.argv,
            exit_code=None if rule.timed_out else rule.exit_code,
            stdout=rule.stdout,
            stderr=rule.stderr,
            duration_ms=1,
            timed_out=rule.timed_out,
            error="command timed out after 1s" if rule.timed_out else None,
        )

    def _match(self, argv: tuple[str, ...]) -> _Rule | None:
        for rule in self._rules:
            if rule.remaining == 0:
                continue
            if _contains(argv, rule.needle):
                return rule
        return None


def _contains(argv: tuple[str, ...], needle: tuple[str, ...]) -> bool:
    size = len(needle)
    return any(argv[index : index + size] == needle for index in range(len(argv) - size + 1))


def make_profile(
    *,
    name: str = "test",
    mode: DeploymentMode = DeploymentMode.STANDALONE,
    strategy: StrategyName = StrategyName.INPLACE,
    current: str = "16.1.1",
    target: str = "26.0.7",
    service: str | None = None,
    auto_rollback: bool = False,
    run_smoke_tests: bool = True,
    distribution: DistributionMode = DistributionMode.CONTAINER,
    tenants: tuple[TenantProfile, ...] = (),
) -> ConfigProfile:
    kubernetes = mode in {DeploymentMode.KUBERNETES, DeploymentMode.DECKHOUSE}
    return ConfigProfile(
        name=name,
        current_version=current,
        target_version=target,
        strategy=strategy,
        database=DatabaseTarget(
            kind=DatabaseKind.POSTGRESQL,
            host="db.test",
            port=5432,
            name="keycloak",
            user="keycloak",
        ),
        deployment=DeploymentTarget(
            mode=mode,
            name="keycloak",
            namespace="keycloak" if kubernetes else None,
            service=service,
            replicas=2 if kubernetes else 1,
            base_url="http://keycloak.test:8080",
        ),
        distribution_mode=distribution,
        run_smoke_tests=run_smoke_tests,
        auto_rollback=auto_rollback,
        tenants=tenants,
    )


def make_settings(root: Path, *, health_retries: int = 2) -> MigrationSettings:
    """Defaults rooted at ``root`` with short health and migration polling."""

    settings = MigrationSettings.defaults(root)
    return replace(
        settings,
        health=replace(settings.health, retries=health_retries, interval_seconds=1.0),
        timeouts=replace(settings.timeouts, migrate_seconds=30.0, migrate_poll_seconds=1.0),
        strategy=replace(settings.strategy, drain_seconds=5.0),
    )


def make_collaborators(
    deployment: RecordingDeployment | None = None,
    *,
    database: RecordingDatabase | None = None,
    probe: ScriptedProbe | None = None,
    smoke_tests: StaticSmokeTests | None = None,
    executor: RecordingExecutor | None = None,
) -> Collaborators:
    return Collaborators(
        database=database or RecordingDatabase(),
        deployment=deployment or RecordingDeployment(),
        distribution=RecordingDistribution(),
        probe=probe or ScriptedProbe(),
        smoke_tests=smoke_tests or StaticSmokeTests(),
        executor=executor or RecordingExecutor(),
    )


__all__ = [
    "BLUE_MUTATIONS",
    "FAILED_MIGRATION_LOG",
    "MIGRATED_LOG",
    "BlueGreenDeployment",
    "FakeClock",
    "RecordingDatabase",
    "RecordingDeployment",
    "RecordingDistribution",
    "RecordingExecutor",
    "ScriptedProbe",
    "SingleInstanceRecordingDeployment",
    "StaticDecision",
    "StaticSmokeTests",
    "make_collaborators",
    "make_profile",
    "make_settings",
]
