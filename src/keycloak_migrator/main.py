"""Executable CLI entrypoint for ``keycloak_migrator``."""

from __future__ import annotations

import sys
import traceback
from enum import IntEnum
from typing import TYPE_CHECKING, Final

from keycloak_migrator.domain.errors import (
    ConfigError,
    IrrecoverableError,
    LockAcquisitionError,
    NoPathNeededError,
    PhaseFailedError,
    PreconditionError,
)
from keycloak_migrator.domain.models import RunStatus

if TYPE_CHECKING:
    from collections.abc import Sequence


class ExitCode(IntEnum):
    """Deterministic process exit-code contract."""

    SUCCESS = 0
    STEP_FAILED = 1
    CONFIG_ERROR = 2
    PRECONDITION_FAILED = 3
    ROLLED_BACK = 4
    IRRECOVERABLE = 5
    INTERNAL_ERROR = 6


STATUS_EXIT_CODES: Final[dict[RunStatus, ExitCode]] = {
    RunStatus.SUCCESS: ExitCode.SUCCESS,
    RunStatus.DRY_RUN: ExitCode.SUCCESS,
    RunStatus.NO_OP: ExitCode.SUCCESS,
    RunStatus.FAILED: ExitCode.STEP_FAILED,
    RunStatus.ROLLED_BACK: ExitCode.ROLLED_BACK,
    RunStatus.IRRECOVERABLE: ExitCode.IRRECOVERABLE,
}


def cli_entrypoint(argv: Sequence[str] | None = None) -> int:
    """Entrypoint used by ``python -m keycloak_migrator`` and the ``kcmigrate`` script."""

    try:
        from keycloak_migrator.ui.cli import run_cli

        return _normalize_exit_code(run_cli(argv))
    except SystemExit as exc:
        return _normalize_exit_code(exc.code)
    except BaseException as exc:  # noqa: BLE001 - CLI boundary normalization.
        exit_code = exit_code_for_exception(exc)
        _emit_failure(exc, exit_code)
        return int(exit_code)


def exit_code_for_status(status: RunStatus) -> ExitCode:
    return STATUS_EXIT_CODES[status]


def exit_code_for_exception(exc: BaseException) -> ExitCode:
    """Pick the exit code for ``exc`` by walking its cause/context chain."""

    config_error_types = _load_config_error_types()

    for item in _iter_exception_chain(exc):
        if isinstance(item, NoPathNeededError):
            return ExitCode.SUCCESS
        if isinstance(item, IrrecoverableError):
            return ExitCode.IRRECOVERABLE
        if isinstance(item, config_error_types):
            return ExitCode.CONFIG_ERROR
        if isinstance(item, (PreconditionError, LockAcquisitionError)):
            return ExitCode.PRECONDITION_FAILED
        if isinstance(item, (PhaseFailedError, KeyboardInterrupt)):
            return ExitCode.STEP_FAILED
    return ExitCode.INTERNAL_ERROR


def _normalize_exit_code(raw_code: object) -> int:
    if isinstance(raw_code, int) and raw_code in {code.value for code in ExitCode}:
        return raw_code
    if raw_code is None:
        return int(ExitCode.SUCCESS)
    if isinstance(raw_code, str) and raw_code.strip():
        _write_stderr(raw_code.strip())
    return int(ExitCode.INTERNAL_ERROR)


def _load_config_error_types() -> tuple[type[BaseException], ...]:
    from keycloak_migrator.config.loader import ConfigLoadError
    from keycloak_migrator.config.schema import ConfigValidationError

    return (ConfigError, ConfigLoadError, ConfigValidationError)


def _iter_exception_chain(exc: BaseException) -> list[BaseException]:
    seen: set[int] = set()
    items: list[BaseException] = []
    current: BaseException | None = exc
    while current is not None:
        marker = id(current)
        if marker in seen:
            break
        seen.add(marker)
        items.append(current)
        if current.__cause__ is not None:
            current = current.__cause__
            continue
        if current.__context__ is not None and not current.__suppress_context__:
            current = current.__context__
            continue
        break
    return items


def _emit_failure(exc: BaseException, exit_code: ExitCode) -> None:
    if exit_code is ExitCode.INTERNAL_ERROR:
        traceback.print_exception(type(exc), exc, exc.__traceback__, file=sys.stderr)
        return
    if isinstance(exc, KeyboardInterrupt):
        _write_stderr("interrupted; the checkpoint is kept and the run can be resumed")
        return
    _write_stderr(str(exc).strip() or exc.__class__.__name__)


def _write_stderr(message: str) -> None:
    sys.stderr.write(message.rstrip("\n") + "\n")


__all__ = [
    "STATUS_EXIT_CODES",
    "ExitCode",
    "cli_entrypoint",
    "exit_code_for_exception",
    "exit_code_for_status",
]
