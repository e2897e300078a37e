"""Rolling-update and blue-green runs against recording platforms."""

from __future__ import annotations

from pathlib import Path

from keycloak_migrator.domain.errors import OperationTimeoutError, PermanentOperationError
from keycloak_migrator.domain.models import DeploymentMode, RunStatus, StrategyName
from keycloak_migrator.engine.decisions import Decision, DecisionKind
from keycloak_migrator.engine.orchestrator import MigrationOrchestrator
from keycloak_migrator.engine.protocols import Collaborators
from keycloak_migrator.observability.audit import AuditEvent, AuditTrail
from tests.fakes import (
    BlueGreenDeployment,
    FakeClock,
    RecordingDeployment,
    StaticDecision,
    StaticSmokeTests,
    make_collaborators,
    make_profile,
    make_settings,
)

GREEN = "keycloak-green-25-0-6"


def _orchestrator(
    tmp_path: Path,
    collaborators: Collaborators,
    strategy: StrategyName,
    *,
    clock: FakeClock,
    audit: AuditTrail | None = None,
    decision: Decision | None = None,
    current: str = "22.0.5",
    auto_rollback: bool = False,
) -> MigrationOrchestrator:
    profile = make_profile(
        mode=DeploymentMode.KUBERNETES,
        strategy=strategy,
        service="keycloak",
        current=current,
        target="25.0.6",
        auto_rollback=auto_rollback,
    )
    return MigrationOrchestrator(
        profile,
        make_settings(tmp_path),
        collaborators,
        audit=audit or AuditTrail(),
        decision=decision,
        clock=clock,
        sleep=clock.sleep,
    )


async def test_rolling_update_success(tmp_path: Path) -> None:
    deployment = RecordingDeployment()
    collaborators = make_collaborators(deployment)

    result = await _orchestrator(
        tmp_path, collaborators, StrategyName.ROLLING_UPDATE, clock=FakeClock()
    ).migrate(skip_preflight=True)

    assert result.status is RunStatus.SUCCESS
    assert result.strategy == "rolling_update"
    assert deployment.methods() == [
        "update_replica_image",
        "rollout_status",
        "logs",
        "list_replicas",
        "health_check",
        "health_check",
    ]
    assert collaborators.distribution.calls == [("install", "25.0.6")]  # type: ignore[attr-defined]


async def test_unhealthy_replica_fails_the_version(tmp_path: Path) -> None:
    deployment = RecordingDeployment(unhealthy={"keycloak-1"})
    clock = FakeClock()

    result = await _orchestrator(
        tmp_path, make_collaborators(deployment), StrategyName.ROLLING_UPDATE, clock=clock
    ).migrate(skip_preflight=True)

    assert result.status is RunStatus.FAILED
    assert result.phase_reached == "25.0.6:migrated"
    assert result.error is not None
    assert "replica keycloak-1 failed its health check" in result.error
    assert deployment.calls_to("health_check").count(("health_check", "keycloak-1")) == 2
    assert deployment.calls_to("undo_rollout") == []
    assert clock.sleeps == [1.0]


async def test_rollout_timeout_reverts_the_template(tmp_path: Path) -> None:
    deployment = RecordingDeployment()
    deployment.fail(
        "rollout_status",
        OperationTimeoutError(
            "deadline exceeded", operation="rollout_status", timeout_seconds=600.0
        ),
    )

    result = await _orchestrator(
        tmp_path, make_collaborators(deployment), StrategyName.ROLLING_UPDATE, clock=FakeClock()
    ).migrate(skip_preflight=True)

    assert result.status is RunStatus.FAILED
    assert result.phase_reached == "25.0.6:built"
    assert deployment.methods() == ["update_replica_image", "rollout_status", "undo_rollout"]


async def test_blue_green_switches_traffic_after_validation(tmp_path: Path) -> None:
    deployment = BlueGreenDeployment()
    smoke = StaticSmokeTests()
    clock = FakeClock()
    decision = StaticDecision({DecisionKind.DELETE_BLUE: True})

    result = await _orchestrator(
        tmp_path,
        make_collaborators(deployment, smoke_tests=smoke),
        StrategyName.BLUE_GREEN,
        clock=clock,
        decision=decision,
    ).migrate(skip_preflight=True)

    assert result.status is RunStatus.SUCCESS
    assert deployment.methods() == [
        "create_parallel",
        "wait_ready",
        "logs",
        "list_replicas",
        "health_check",
        "health_check",
        "open_direct_channel",
        "label_deployment",
        "label_deployment",
        "route_traffic",
        "delete_deployment",
        "promote",
    ]
    assert deployment.calls_to("logs") == [("logs", GREEN)]
    assert deployment.calls_to("route_traffic") == [("route_traffic", "keycloak", GREEN)]
    assert deployment.calls_to("promote") == [("promote", GREEN, "keycloak")]
    assert smoke.base_urls == ["http://127.0.0.1:18080"]
    assert clock.sleeps == [5.0]
    assert decision.kinds() == [DecisionKind.DELETE_BLUE]
    assert result.notes == (
        f"traffic is served by {GREEN}; set keycloak.deployment to {GREEN} in the profile",
    )


async def test_declined_delete_retains_blue(tmp_path: Path) -> None:
    deployment = BlueGreenDeployment()
    audit = AuditTrail()

    result = await _orchestrator(
        tmp_path,
        make_collaborators(deployment),
        StrategyName.BLUE_GREEN,
        clock=FakeClock(),
        audit=audit,
        decision=StaticDecision(),
    ).migrate(skip_preflight=True)

    assert result.status is RunStatus.SUCCESS
    assert deployment.calls_to("delete_deployment") == []
    assert deployment.calls_to("promote") == [("promote", GREEN, "keycloak")]
    (retained,) = audit.history(AuditEvent.BLUE_RETAINED)
    assert retained.level == "WARNING"
    assert retained.fields["blue"] == "keycloak"


async def test_green_provision_failure_leaves_blue_untouched(tmp_path: Path) -> None:
    deployment = BlueGreenDeployment()
    deployment.fail("create_parallel", PermanentOperationError("exceeded quota"))
    decision = StaticDecision()

    result = await _orchestrator(
        tmp_path,
        make_collaborators(deployment),
        StrategyName.BLUE_GREEN,
        clock=FakeClock(),
        decision=decision,
    ).migrate(skip_preflight=True)

    assert result.status is RunStatus.FAILED
    assert result.phase_reached == "25.0.6:built"
    assert deployment.mutations_of("keycloak") == []
    assert deployment.calls_to("delete_deployment") == [("delete_deployment", GREEN)]
    assert deployment.calls_to("route_traffic") == []
    assert decision.kinds() == [DecisionKind.ROLLBACK_AFTER_FAILURE]


async def test_unhealthy_green_is_discarded(tmp_path: Path) -> None:
    deployment = BlueGreenDeployment(unhealthy={f"{GREEN}-0"})

    result = await _orchestrator(
        tmp_path, make_collaborators(deployment), StrategyName.BLUE_GREEN, clock=FakeClock()
    ).migrate(skip_preflight=True)

    assert result.status is RunStatus.FAILED
    assert result.phase_reached == "25.0.6:built"
    assert deployment.mutations_of("keycloak") == []
    assert deployment.calls_to("delete_deployment") == [("delete_deployment", GREEN)]


async def test_each_version_clones_the_deployment_serving_traffic(tmp_path: Path) -> None:
    deployment = BlueGreenDeployment()
    decision = StaticDecision({DecisionKind.DELETE_BLUE: True})

    result = await _orchestrator(
        tmp_path,
        make_collaborators(deployment),
        StrategyName.BLUE_GREEN,
        clock=FakeClock(),
        decision=decision,
        current="17.0.1",
    ).migrate(skip_preflight=True)

    assert result.status is RunStatus.SUCCESS
    assert result.completed == ("22.0.5", "25.0.6")
    assert [call[1:3] for call in deployment.calls_to("create_parallel")] == [
        ("keycloak-green-22-0-5", "keycloak"),
        (GREEN, "keycloak-green-22-0-5"),
    ]
    assert deployment.calls_to("route_traffic") == [
        ("route_traffic", "keycloak", "keycloak-green-22-0-5"),
        ("route_traffic", "keycloak-green-22-0-5", GREEN),
    ]
    assert deployment.calls_to("delete_deployment") == [
        ("delete_deployment", "keycloak"),
        ("delete_deployment", "keycloak-green-22-0-5"),
    ]
    assert deployment.calls_to("promote") == [
        ("promote", "keycloak-green-22-0-5", "keycloak"),
        ("promote", GREEN, "keycloak"),
    ]


async def test_later_version_failure_keeps_the_promoted_green_serving(tmp_path: Path) -> None:
    deployment = BlueGreenDeployment()
    deployment.fail("create_parallel", PermanentOperationError("exceeded quota"), after=1)
    decision = StaticDecision({DecisionKind.DELETE_BLUE: True})
    orchestrator = _orchestrator(
        tmp_path,
        make_collaborators(deployment),
        StrategyName.BLUE_GREEN,
        clock=FakeClock(),
        decision=decision,
        current="17.0.1",
    )

    result = await orchestrator.migrate(skip_preflight=True)

    assert result.status is RunStatus.FAILED
    assert result.completed == ("22.0.5",)
    assert result.phase_reached == "25.0.6:built"
    assert deployment.calls_to("create_parallel")[1][1:3] == (GREEN, "keycloak-green-22-0-5")
    assert deployment.calls_to("delete_deployment") == [
        ("delete_deployment", "keycloak"),
        ("delete_deployment", GREEN),
    ]
    serving = deployment.mutations_of("keycloak-green-22-0-5")
    assert [call[0] for call in serving] == ["label_deployment", "promote"]
    record = orchestrator.store.load()
    assert record is not None
    assert record.live_deployment == "keycloak-green-22-0-5"


async def test_auto_rollback_restores_into_the_live_deployment(tmp_path: Path) -> None:
    deployment = BlueGreenDeployment()
    deployment.fail("create_parallel", PermanentOperationError("exceeded quota"), after=1)

    result = await _orchestrator(
        tmp_path,
        make_collaborators(deployment),
        StrategyName.BLUE_GREEN,
        clock=FakeClock(),
        decision=StaticDecision({DecisionKind.DELETE_BLUE: True}),
        current="17.0.1",
        auto_rollback=True,
    ).migrate(skip_preflight=True)

    assert result.status is RunStatus.ROLLED_BACK
    assert deployment.calls_to("stop") == [("stop", "keycloak-green-22-0-5")]
    assert [call[1] for call in deployment.calls_to("start")] == ["keycloak-green-22-0-5"]
    assert deployment.mutations_of("keycloak") == [("delete_deployment", "keycloak")]
