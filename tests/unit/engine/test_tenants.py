"""Unit tests for per-tenant fan-out."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

import pytest

from keycloak_migrator.domain.errors import MigrationError, NoPathNeededError
from keycloak_migrator.domain.models import MigrationResult, RunStatus
from keycloak_migrator.domain.profile import ConfigProfile, TenantProfile
from keycloak_migrator.engine.tenants import TenantRunner
from keycloak_migrator.observability.audit import AuditEvent, AuditTrail
from tests.fakes import make_profile

TENANTS = (
    TenantProfile(name="acme", database_name="kc_acme"),
    TenantProfile(name="globex", current_version="22.0.5"),
    TenantProfile(name="initech"),
)


def _runner(
    tmp_path: Path, audit: AuditTrail, *, max_concurrency: int = 2, tenants: Any = TENANTS
) -> TenantRunner:
    # The factory hands the tenant-scoped profile straight to ``migrate``.
    return TenantRunner(
        make_profile(tenants=tenants),
        lambda profile: profile,  # type: ignore[arg-type,return-value]
        audit,
        max_concurrency=max_concurrency,
        summary_dir=tmp_path,
    )


async def test_outcomes_are_isolated_and_ordered(tmp_path: Path) -> None:
    audit = AuditTrail()
    seen: list[ConfigProfile] = []

    async def migrate(profile: ConfigProfile) -> MigrationResult:
        seen.append(profile)
        await asyncio.sleep(0)
        if profile.tenant == "globex":
            raise RuntimeError("database unreachable")
        if profile.tenant == "initech":
            raise NoPathNeededError("26.0.7")
        return MigrationResult(status=RunStatus.SUCCESS, completed=("17.0.1",))

    outcomes = await _runner(tmp_path, audit).run(migrate)  # type: ignore[arg-type]

    assert [outcome.tenant for outcome in outcomes] == ["acme", "globex", "initech"]
    assert [outcome.status for outcome in outcomes] == [
        RunStatus.SUCCESS,
        RunStatus.FAILED,
        RunStatus.NO_OP,
    ]
    assert outcomes[1].error == "database unreachable"
    assert outcomes[1].error_kind == "RuntimeError"
    assert isinstance(outcomes[1].exception, RuntimeError)
    assert [outcome.ok for outcome in outcomes] == [True, False, True]

    by_tenant = {profile.tenant: profile for profile in seen}
    assert by_tenant["acme"].database.name == "kc_acme"
    assert by_tenant["globex"].current_version == "22.0.5"
    assert all(profile.tenants == () for profile in seen)

    statuses = {
        record.fields["tenant"]: record.fields["status"]
        for record in audit.history(AuditEvent.TENANT_END)
    }
    assert statuses == {"acme": "success", "globex": "failed", "initech": "no_op"}


async def test_summary_is_written(tmp_path: Path) -> None:
    async def migrate(profile: ConfigProfile) -> MigrationResult:
        return MigrationResult(status=RunStatus.SUCCESS)

    runner = _runner(tmp_path, AuditTrail())
    await runner.run(migrate)  # type: ignore[arg-type]

    summary = json.loads(runner.summary_path.read_text(encoding="utf-8"))
    assert summary["profile"] == "test"
    assert [entry["tenant"] for entry in summary["tenants"]] == ["acme", "globex", "initech"]
    assert summary["tenants"][0]["result"]["status"] == "success"


async def test_concurrency_is_bounded(tmp_path: Path) -> None:
    active = 0
    peak = 0

    async def migrate(profile: ConfigProfile) -> MigrationResult:
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.01)
        active -= 1
        return MigrationResult(status=RunStatus.SUCCESS)

    await _runner(tmp_path, AuditTrail(), max_concurrency=1).run(migrate)  # type: ignore[arg-type]

    assert peak == 1


async def test_profile_without_tenants_is_rejected(tmp_path: Path) -> None:
    async def migrate(profile: ConfigProfile) -> MigrationResult:
        raise AssertionError("not reached")

    with pytest.raises(MigrationError, match="defines no tenants"):
        await _runner(tmp_path, AuditTrail(), tenants=()).run(migrate)  # type: ignore[arg-type]


def test_rejects_zero_concurrency(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="max_concurrency"):
        _runner(tmp_path, AuditTrail(), max_concurrency=0)
