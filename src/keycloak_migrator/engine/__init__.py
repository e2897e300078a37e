"""Migration engine: strategies, checkpointed phases, rollback and orchestration."""

from keycloak_migrator.engine.decisions import (
    Decision,
    DecisionKind,
    DecisionPrompt,
    NonInteractiveDecision,
)
from keycloak_migrator.engine.orchestrator import MigrationOrchestrator, MigrationPlan, StatusReport
from keycloak_migrator.engine.preflight import PreflightCheck, PreflightRunner
from keycloak_migrator.engine.protocols import (
    BlueGreenPlatform,
    Collaborators,
    DatabaseAdapter,
    DeploymentAdapter,
    DistributionHandler,
)
from keycloak_migrator.engine.rollback import RollbackExecutor
from keycloak_migrator.engine.steps import StepExecutor
from keycloak_migrator.engine.strategies import (
    BlueGreenStrategy,
    InPlaceStrategy,
    RollingUpdateStrategy,
    StrategySelection,
    select_strategy,
)
from keycloak_migrator.engine.tenants import TenantOutcome, TenantRunner
from keycloak_migrator.engine.tracker import CheckpointTracker

__all__ = [
    "BlueGreenPlatform",
    "BlueGreenStrategy",
    "CheckpointTracker",
    "Collaborators",
    "DatabaseAdapter",
    "Decision",
    "DecisionKind",
    "DecisionPrompt",
    "DeploymentAdapter",
    "DistributionHandler",
    "InPlaceStrategy",
    "MigrationOrchestrator",
    "MigrationPlan",
    "NonInteractiveDecision",
    "PreflightCheck",
    "PreflightRunner",
    "RollbackExecutor",
    "RollingUpdateStrategy",
    "StatusReport",
    "StepExecutor",
    "StrategySelection",
    "TenantOutcome",
    "TenantRunner",
    "select_strategy",
]
