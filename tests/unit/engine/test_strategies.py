"""Unit tests for strategy selection and fallback."""

from __future__ import annotations

import pytest

from keycloak_migrator.domain.errors import ConfigError
from keycloak_migrator.domain.models import DeploymentMode, StrategyName
from keycloak_migrator.engine.strategies import (
    STRATEGIES,
    BlueGreenStrategy,
    InPlaceStrategy,
    RollingUpdateStrategy,
    select_strategy,
)
from tests.fakes import (
    BlueGreenDeployment,
    RecordingDeployment,
    SingleInstanceRecordingDeployment,
    make_profile,
)


def test_inplace_is_always_available() -> None:
    target = make_profile().deployment

    selection = select_strategy(StrategyName.INPLACE, target, allow_fallback=False)

    assert selection.effective is StrategyName.INPLACE
    assert not selection.fell_back


def test_rolling_update_on_kubernetes() -> None:
    target = make_profile(mode=DeploymentMode.KUBERNETES).deployment

    selection = select_strategy(
        StrategyName.ROLLING_UPDATE, target, adapter=RecordingDeployment()
    )

    assert selection.effective is StrategyName.ROLLING_UPDATE
    assert selection.reason is None


def test_blue_green_needs_a_router_and_a_capable_adapter() -> None:
    target = make_profile(mode=DeploymentMode.KUBERNETES, service="keycloak").deployment

    assert (
        select_strategy(StrategyName.BLUE_GREEN, target, adapter=BlueGreenDeployment()).effective
        is StrategyName.BLUE_GREEN
    )
    no_routing = select_strategy(StrategyName.BLUE_GREEN, target, adapter=RecordingDeployment())
    assert no_routing.effective is StrategyName.INPLACE
    assert no_routing.reason == "RecordingDeployment cannot route traffic between deployments"


@pytest.mark.parametrize(
    ("mode", "service", "adapter", "reason"),
    [
        (
            DeploymentMode.DOCKER,
            None,
            None,
            "deployment mode docker cannot enumerate replicas",
        ),
        (
            DeploymentMode.STANDALONE,
            None,
            None,
            "deployment mode standalone cannot enumerate replicas",
        ),
        (
            DeploymentMode.DECKHOUSE,
            None,
            SingleInstanceRecordingDeployment(),
            "SingleInstanceRecordingDeployment does not manage replicas",
        ),
        (
            DeploymentMode.KUBERNETES,
            None,
            BlueGreenDeployment(),
            "no traffic router (service) configured for the deployment",
        ),
    ],
)
def test_blue_green_falls_back_with_a_reason(
    mode: DeploymentMode,
    service: str | None,
    adapter: RecordingDeployment | None,
    reason: str,
) -> None:
    target = make_profile(mode=mode, service=service).deployment

    selection = select_strategy(StrategyName.BLUE_GREEN, target, adapter=adapter)

    assert selection.fell_back
    assert selection.requested is StrategyName.BLUE_GREEN
    assert selection.effective is StrategyName.INPLACE
    assert selection.reason == reason


def test_disabled_fallback_is_a_config_error() -> None:
    target = make_profile(mode=DeploymentMode.DOCKER).deployment

    with pytest.raises(ConfigError, match="strategy rolling_update is not available"):
        select_strategy(StrategyName.ROLLING_UPDATE, target, allow_fallback=False)


def test_every_strategy_name_has_an_executor() -> None:
    assert STRATEGIES == {
        StrategyName.INPLACE: InPlaceStrategy,
        StrategyName.ROLLING_UPDATE: RollingUpdateStrategy,
        StrategyName.BLUE_GREEN: BlueGreenStrategy,
    }
