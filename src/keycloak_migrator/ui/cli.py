"""Command-line interface router for kcmigrate."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING

from keycloak_migrator.adapters.factory import build_collaborators
from keycloak_migrator.config import (
    MigrationSettings,
    dump_effective_config,
    load_config,
    load_profile,
)
from keycloak_migrator.constants import CLI_NAME
from keycloak_migrator.domain.errors import NoPathNeededError
from keycloak_migrator.domain.ids import generate_run_id
from keycloak_migrator.domain.models import RunStatus
from keycloak_migrator.engine.decisions import NonInteractiveDecision
from keycloak_migrator.engine.orchestrator import MigrationOrchestrator
from keycloak_migrator.engine.tenants import TenantRunner
from keycloak_migrator.main import ExitCode, exit_code_for_exception, exit_code_for_status
from keycloak_migrator.observability.audit import AuditTrail, JsonlAuditSink
from keycloak_migrator.observability.logging import configure_structlog, setup_logging
from keycloak_migrator.ui.prompts import TerminalDecision
from keycloak_migrator.ui.render import CLIRenderer, create_renderer

if TYPE_CHECKING:
    from keycloak_migrator.domain.models import MigrationResult
    from keycloak_migrator.domain.profile import ConfigProfile
    from keycloak_migrator.engine.decisions import Decision
    from keycloak_migrator.engine.orchestrator import MigrationPlan, StatusReport
    from keycloak_migrator.engine.tenants import TenantOutcome
    from keycloak_migrator.observability.logging import StructuredLoggingHandle


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    message: str
    exit_code: int = int(ExitCode.CONFIG_ERROR)

    def __str__(self) -> str:
        return self.message


@dataclass(frozen=True, slots=True)
class CommandContext:
    settings: MigrationSettings
    profile: ConfigProfile
    profile_ref: str
    run_id: str
    config: Mapping[str, object]


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router for all supported CLI workflows."""

    parser = argparse.ArgumentParser(
        prog=CLI_NAME,
        description=(
            "keycloak-migrator — checkpointed, resumable Keycloak upgrades.\n\n"
            "Common workflows:\n"
            f"  {CLI_NAME} plan --profile prod          Show the version path and strategy\n"
            f"  {CLI_NAME} migrate --profile prod       Run (or resume) the migration\n"
            f"  {CLI_NAME} status --profile prod        Show the stored checkpoint\n"
            f"  {CLI_NAME} rollback --profile prod      Restore the last backup\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--profile",
        required=True,
        help="Migration profile name (profiles/<name>.yaml) or path to a profile YAML file.",
    )
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to the runtime settings TOML (default: ./kcmigrate.toml if present).",
    )
    common.add_argument(
        "--settings-profile",
        default=None,
        help="Optional [profiles.<name>] overlay of the runtime settings.",
    )
    common.add_argument(
        "--tenant",
        default=None,
        help="Operate on one tenant of a multi-tenant profile.",
    )
    common.add_argument(
        "--json",
        action="store_true",
        default=False,
        help="Emit machine-readable JSON.",
    )
    common.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        default=False,
        help="Show detailed output and log at DEBUG level.",
    )
    common.add_argument(
        "--no-color",
        action="store_true",
        default=False,
        help="Disable colored output (also respects NO_COLOR env var).",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # plan ----------------------------------------------------------------
    plan_parser = subparsers.add_parser(
        "plan",
        parents=[common],
        help="Show the version path and effective strategy (no side effects)",
    )
    plan_parser.set_defaults(handler=_cmd_plan)

    # migrate -------------------------------------------------------------
    migrate_parser = subparsers.add_parser(
        "migrate",
        parents=[common],
        help="Run the migration, resuming from a matching checkpoint",
        description=(
            "Walk every intermediate version up to the target. A failed step leaves a\n"
            "resumable checkpoint; re-running the same command continues from it.\n\n"
            "Examples:\n"
            f"  {CLI_NAME} migrate --profile prod --dry-run\n"
            f"  {CLI_NAME} migrate --profile prod --auto-rollback --non-interactive\n"
            f"  {CLI_NAME} migrate --profile saas --all-tenants\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    migrate_parser.add_argument(
        "--dry-run",
        action="store_true",
        default=False,
        help="Print what would run without touching anything.",
    )
    migrate_parser.add_argument(
        "--skip-tests",
        action="store_true",
        default=False,
        help="Skip the smoke-test gate after each version.",
    )
    migrate_parser.add_argument(
        "--auto-rollback",
        action="store_true",
        default=False,
        help="Restore the last backup automatically when a step fails.",
    )
    migrate_parser.add_argument(
        "--skip-preflight",
        action="store_true",
        default=False,
        help="Skip environment checks (only for a run whose preflight already passed).",
    )
    migrate_parser.add_argument(
        "--all-tenants",
        action="store_true",
        default=False,
        help="Migrate every tenant of the profile, each in an isolated workspace.",
    )
    migrate_parser.add_argument(
        "--delete-blue",
        action="store_true",
        default=False,
        help="Blue-green: delete the old deployment after a successful cutover.",
    )
    migrate_parser.add_argument(
        "--non-interactive",
        action="store_true",
        default=False,
        help="Never prompt; every mandatory gate is strict.",
    )
    migrate_parser.set_defaults(handler=_cmd_migrate)

    # rollback ------------------------------------------------------------
    rollback_parser = subparsers.add_parser(
        "rollback",
        parents=[common],
        help="Restore the database from a backup and reinstall the previous version",
    )
    rollback_parser.add_argument(
        "--force",
        action="store_true",
        default=False,
        help="Do not ask for confirmation.",
    )
    rollback_parser.add_argument(
        "--backup",
        default=None,
        help="Backup file to restore (default: the checkpoint's last backup, else the latest).",
    )
    rollback_parser.add_argument(
        "--non-interactive",
        action="store_true",
        default=False,
        help="Never prompt; requires --force.",
    )
    rollback_parser.set_defaults(handler=_cmd_rollback)

    # status --------------------------------------------------------------
    status_parser = subparsers.add_parser(
        "status",
        parents=[common],
        help="Show the stored checkpoint plus resume and rollback commands",
    )
    status_parser.add_argument(
        "--show-config",
        action="store_true",
        default=False,
        help="Also print the effective runtime settings (secrets redacted).",
    )
    status_parser.set_defaults(handler=_cmd_status)

    return parser


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return int(ExitCode.CONFIG_ERROR)

    try:
        result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    return int(result)


def main(argv: Sequence[str] | None = None) -> int:
    """Compatibility wrapper for main-module wiring."""

    return run_cli(argv)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_plan(args: argparse.Namespace) -> int:
    context = _context(args)
    configure_structlog()
    orchestrator = _orchestrator(context, context.profile, audit=AuditTrail())
    try:
        plan = orchestrator.plan()
    except NoPathNeededError as exc:
        return _no_op(args, "plan", context.profile, str(exc))

    if _flag(args, "json"):
        _emit_json({"command": "plan", **plan.to_dict()})
        return int(ExitCode.SUCCESS)

    renderer = _get_renderer(args)
    _render_plan(renderer, plan)
    renderer.next_steps([f"{CLI_NAME} migrate --profile {context.profile_ref} --dry-run"])
    return int(ExitCode.SUCCESS)


def _cmd_migrate(args: argparse.Namespace) -> int:
    context = _context(args)
    auto_rollback = True if _flag(args, "auto_rollback") else None
    profile = context.profile.with_flags(auto_rollback=auto_rollback)
    if _flag(args, "all_tenants"):
        if context.profile.tenant is not None:
            raise CLIError("--all-tenants cannot be combined with --tenant")
        return _migrate_tenants(args, context, profile)

    dry_run = _flag(args, "dry_run")
    handle = None if dry_run else _start_logging(args, context)
    try:
        orchestrator = _orchestrator(
            context, profile, audit=_audit(context.settings), decision=_decision(args)
        )
        try:
            result = asyncio.run(
                orchestrator.migrate(
                    dry_run=dry_run,
                    skip_tests=_flag(args, "skip_tests"),
                    skip_preflight=_flag(args, "skip_preflight"),
                )
            )
        except NoPathNeededError as exc:
            return _no_op(args, "migrate", profile, str(exc))
    finally:
        if handle is not None:
            handle.shutdown()

    exit_code = exit_code_for_status(result.status)
    if _flag(args, "json"):
        _emit_json(
            {
                "command": "migrate",
                "profile": profile.label,
                "run_id": orchestrator.run_id,
                **result.to_dict(),
            }
        )
        return int(exit_code)

    renderer = _get_renderer(args)
    renderer.kv("Run ID", orchestrator.run_id)
    _render_result(renderer, profile.label, result)
    return int(exit_code)


def _cmd_rollback(args: argparse.Namespace) -> int:
    context = _context(args)
    handle = _start_logging(args, context)
    try:
        orchestrator = _orchestrator(
            context, context.profile, audit=_audit(context.settings), decision=_decision(args)
        )
        result = asyncio.run(
            orchestrator.rollback(
                force=_flag(args, "force"), backup_path=_optional_str(args.backup)
            )
        )
    finally:
        handle.shutdown()

    if _flag(args, "json"):
        _emit_json(
            {
                "command": "rollback",
                "profile": context.profile.label,
                "run_id": orchestrator.run_id,
                **result.to_dict(),
            }
        )
        return int(ExitCode.SUCCESS)

    renderer = _get_renderer(args)
    _render_result(renderer, context.profile.label, result)
    renderer.next_steps([f"{CLI_NAME} status --profile {context.profile_ref}"])
    return int(ExitCode.SUCCESS)


def _cmd_status(args: argparse.Namespace) -> int:
    context = _context(args)
    configure_structlog()
    report = _orchestrator(context, context.profile, audit=AuditTrail()).status()

    show_config = _flag(args, "show_config")
    if _flag(args, "json"):
        payload: dict[str, object] = {"command": "status", **report.to_dict()}
        if show_config:
            payload["settings"] = json.loads(dump_effective_config(context.config))
        _emit_json(payload)
        return int(ExitCode.SUCCESS)

    renderer = _get_renderer(args)
    _render_status(renderer, report)
    if show_config:
        renderer.section("Effective settings")
        renderer.text(dump_effective_config(context.config))
    return int(ExitCode.SUCCESS)


def _migrate_tenants(
    args: argparse.Namespace, context: CommandContext, profile: ConfigProfile
) -> int:
    if not profile.tenants:
        raise CLIError(f"profile {profile.name} defines no tenants")

    dry_run = _flag(args, "dry_run")
    skip_tests = _flag(args, "skip_tests")
    skip_preflight = _flag(args, "skip_preflight")
    audit = _audit(context.settings)
    # Tenants run concurrently, so nobody is prompted.
    decision = NonInteractiveDecision(delete_blue=_flag(args, "delete_blue"))

    def factory(tenant_profile: ConfigProfile) -> MigrationOrchestrator:
        return _orchestrator(context, tenant_profile, audit=audit, decision=decision)

    runner = TenantRunner(
        profile,
        factory,
        audit,
        max_concurrency=context.settings.tenant_concurrency,
        summary_dir=context.settings.paths.workspace_root,
    )
    handle = None if dry_run else _start_logging(args, context)
    try:
        outcomes = asyncio.run(
            runner.run(
                lambda orchestrator: orchestrator.migrate(
                    dry_run=dry_run, skip_tests=skip_tests, skip_preflight=skip_preflight
                )
            )
        )
    finally:
        if handle is not None:
            handle.shutdown()

    exit_code = max((_tenant_exit_code(outcome) for outcome in outcomes), default=ExitCode.SUCCESS)
    if _flag(args, "json"):
        _emit_json(
            {
                "command": "migrate",
                "profile": profile.name,
                "summary_path": str(runner.summary_path),
                "exit_code": int(exit_code),
                "tenants": [outcome.to_dict() for outcome in outcomes],
            }
        )
        return int(exit_code)

    renderer = _get_renderer(args)
    renderer.table(
        ["Tenant", "Status", "Detail"],
        [
            [
                outcome.tenant,
                outcome.status.value,
                outcome.error or _tenant_detail(outcome),
            ]
            for outcome in outcomes
        ],
        title=f"Tenants of {profile.name}:",
    )
    renderer.blank()
    renderer.kv("Summary", runner.summary_path)
    return int(exit_code)


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


def _emit_json(payload: Mapping[str, object]) -> None:
    """Emit a JSON payload to stdout with deterministic formatting."""

    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


def _get_renderer(args: argparse.Namespace) -> CLIRenderer:
    return create_renderer(no_color=_flag(args, "no_color"), verbose=_flag(args, "verbose"))


def _render_plan(renderer: CLIRenderer, plan: MigrationPlan) -> None:
    renderer.kv("Profile", plan.profile)
    renderer.kv("Upgrade", f"{plan.from_version} -> {plan.to_version}")
    renderer.kv("Strategy", plan.selection.effective.value)
    if plan.selection.fell_back:
        renderer.warning(
            f"requested strategy {plan.selection.requested.value} is not available: "
            f"{plan.selection.reason}"
        )
    renderer.kv("Required Java", plan.required_java)
    renderer.table(
        ["Step", "Version", "Java", "Build"],
        [
            [str(index), str(spec), str(spec.java_major), "yes" if spec.requires_build else "no"]
            for index, spec in enumerate(plan.path, start=1)
        ],
        title="Version path:",
    )


def _render_result(renderer: CLIRenderer, label: str, result: MigrationResult) -> None:
    renderer.kv("Profile", label)
    renderer.kv("Status", result.status.value)
    if result.strategy:
        renderer.kv("Strategy", result.strategy)
    if result.path:
        renderer.kv("Path", " -> ".join(result.path))
    if result.completed:
        renderer.kv("Completed", ", ".join(result.completed))
    renderer.kv("Duration", f"{result.duration_seconds:.1f}s")
    if result.failed_version:
        renderer.fail(f"{result.failed_version} failed at phase {result.phase_reached}")
    if result.error:
        renderer.kv("Error", result.error)
    if result.notes:
        renderer.section("Notes:")
        renderer.items(list(result.notes))

    steps: list[str] = []
    if result.resume_command and result.status is RunStatus.FAILED:
        steps.append(result.resume_command)
    if result.rollback_command:
        steps.append(result.rollback_command)
    renderer.next_steps(steps)


def _render_status(renderer: CLIRenderer, report: StatusReport) -> None:
    renderer.kv("Profile", report.profile)
    record = report.record
    if record is None:
        renderer.text(f"No checkpoint at {report.checkpoint_path}")
        if report.rollback_command:
            renderer.next_steps([report.rollback_command])
        return

    renderer.kv("Checkpoint", report.checkpoint_path)
    renderer.kv("Upgrade", f"{record.from_version} -> {record.to_version}")
    renderer.kv("Strategy", record.strategy)
    if record.checkpoint is not None:
        renderer.kv("Last phase", f"{record.checkpoint.version} {record.checkpoint.phase.value}")
    renderer.kv("Last successful step", record.last_successful_step or "(none)")
    if record.last_backup is not None:
        renderer.kv("Last backup", record.last_backup.path)
    renderer.kv("Updated", record.updated_at.isoformat(timespec="seconds"))
    if not record.resume_safe:
        renderer.fail("resume is unsafe: a rollback failed; manual intervention is required")
    if report.matches_profile is False:
        renderer.warning("the checkpoint belongs to a different migration of this profile")

    steps = [report.resume_command] if record.resume_safe else []
    if report.rollback_command:
        steps.append(report.rollback_command)
    renderer.next_steps(steps)


def _no_op(args: argparse.Namespace, command: str, profile: ConfigProfile, reason: str) -> int:
    if _flag(args, "json"):
        _emit_json(
            {
                "command": command,
                "profile": profile.label,
                "status": RunStatus.NO_OP.value,
                "reason": reason,
            }
        )
    else:
        _get_renderer(args).text(reason)
    return int(ExitCode.SUCCESS)


def _tenant_detail(outcome: TenantOutcome) -> str:
    result = outcome.result
    if result is None:
        return ""
    if result.failed_version:
        return f"{result.failed_version} at {result.phase_reached}"
    return " -> ".join(result.path)


def _tenant_exit_code(outcome: TenantOutcome) -> ExitCode:
    if outcome.exception is not None:
        return exit_code_for_exception(outcome.exception)
    return exit_code_for_status(outcome.status)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _context(args: argparse.Namespace) -> CommandContext:
    overrides: dict[str, object] = {}
    if _flag(args, "verbose"):
        overrides["observability.log_level"] = "DEBUG"
    config = load_config(
        _optional_str(getattr(args, "config_path", None)),
        profile=_optional_str(getattr(args, "settings_profile", None)),
        cli_overrides=overrides,
    )
    settings = MigrationSettings.from_config(config)

    profile_ref = _require_str(getattr(args, "profile", None), "profile")
    profile = load_profile(profile_ref, profiles_dir=settings.paths.profiles_dir)
    tenant_name = _optional_str(getattr(args, "tenant", None))
    if tenant_name is not None:
        tenant = next((item for item in profile.tenants if item.name == tenant_name), None)
        if tenant is None:
            known = ", ".join(item.name for item in profile.tenants) or "(none)"
            raise CLIError(f"profile {profile.name} has no tenant {tenant_name!r}; known: {known}")
        profile = profile.for_tenant(tenant)
    return CommandContext(settings, profile, profile_ref, generate_run_id(), config)


def _orchestrator(
    context: CommandContext,
    profile: ConfigProfile,
    *,
    audit: AuditTrail,
    decision: Decision | None = None,
) -> MigrationOrchestrator:
    return MigrationOrchestrator(
        profile,
        context.settings,
        build_collaborators(profile, context.settings),
        audit=audit,
        decision=decision,
        profile_ref=context.profile_ref,
        run_id=context.run_id if profile.tenant is None else generate_run_id(),
    )


def _audit(settings: MigrationSettings) -> AuditTrail:
    observability = settings.observability
    return AuditTrail(
        [JsonlAuditSink(observability.audit_log, redact=observability.redact_secrets)]
    )


def _decision(args: argparse.Namespace) -> Decision:
    delete_blue = _flag(args, "delete_blue")
    if _flag(args, "non_interactive") or not sys.stdin.isatty():
        return NonInteractiveDecision(delete_blue=delete_blue)
    return TerminalDecision(delete_blue=True if delete_blue else None)


def _start_logging(args: argparse.Namespace, context: CommandContext) -> StructuredLoggingHandle:
    observability = context.settings.observability
    return setup_logging(
        run_id=context.run_id,
        log_dir=observability.log_dir,
        level=observability.log_level,
        log_to_stdout=observability.log_to_stdout and not _flag(args, "json"),
        redact_secrets=observability.redact_secrets,
    )


def _require_str(value: object, name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise CLIError(f"{name} is required")
    return value.strip()


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        return None
    stripped = value.strip()
    return stripped or None


def _flag(args: argparse.Namespace, name: str) -> bool:
    return bool(getattr(args, name, False))


__all__ = ["CLIError", "CommandContext", "build_parser", "main", "run_cli"]
