"""Database password lookup from an environment variable or a mounted secret file."""

from __future__ import annotations

import stat
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

from keycloak_migrator.domain.errors import PermanentOperationError

if TYPE_CHECKING:
    from collections.abc import Mapping

    from keycloak_migrator.domain.profile import DatabaseTarget

_OPERATION = "database.credentials"


def resolve_password(
    target: DatabaseTarget, environ: Mapping[str, str], *, logger: Any | None = None
) -> str | None:
    """Return the password ``target`` references, or ``None`` when it names no source.

    A file holds the bare password; one trailing newline is dropped, everything else is
    kept verbatim.
    """

    if target.password_env is not None:
        password = environ.get(target.password_env)
        if password is None:
            raise PermanentOperationError(
                f"environment variable {target.password_env} is not set", operation=_OPERATION
            )
        return password
    if target.password_file is not None:
        return _read_secret_file(Path(target.password_file).expanduser(), logger)
    return None


def _read_secret_file(path: Path, logger: Any | None) -> str:
    log = logger if logger is not None else structlog.get_logger(__name__)
    try:
        mode = path.stat().st_mode
        content = path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise PermanentOperationError(
            f"password file {path} does not exist", operation=_OPERATION
        ) from exc
    except OSError as exc:
        raise PermanentOperationError(
            f"password file {path} is not readable: {exc.strerror or exc}", operation=_OPERATION
        ) from exc

    if mode & (stat.S_IRWXG | stat.S_IRWXO):
        log.warning("password_file_permissions_too_open", path=str(path), mode=oct(mode & 0o777))
    password = content.removesuffix("\n").removesuffix("\r")
    if not password:
        raise PermanentOperationError(f"password file {path} is empty", operation=_OPERATION)
    return password


__all__ = ["resolve_password"]
