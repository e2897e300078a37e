"""
keycloak-migrator — filesystem utilities

File: src/keycloak_migrator/utils/fs.py

Purpose
- Durable writes for checkpoint records, preflight markers and run summaries.
- Guarded deletion for backup rotation.

Functional requirements
- A reader never observes a partially written document: data goes to a temp file in the
  destination directory, is fsynced, then replaces the target in one ``os.replace``.
- Deletion refuses any path that resolves outside the given root.
"""

from __future__ import annotations

import contextlib
import json
import os
import tempfile
from pathlib import Path
from typing import Any

PathLike = str | os.PathLike[str]

__all__ = [
    "atomic_write",
    "atomic_write_json",
    "delete_within",
    "is_within",
]


def atomic_write(path: PathLike, data: bytes | str, *, encoding: str = "utf-8") -> None:
    """
    Atomically replace ``path`` with ``data``.

    The parent directory is created when missing. On any failure the temp file is removed
    and the previous content of ``path`` (if any) is left untouched.
    """

    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target_parent = target.parent.resolve(strict=True)

    fd, temp_name = tempfile.mkstemp(
        prefix=f".{target.name}.",
        suffix=".tmp",
        dir=str(target_parent),
    )
    temp_path = Path(temp_name)

    try:
        payload = data if isinstance(data, bytes) else data.encode(encoding)
        with os.fdopen(fd, "wb") as file_handle:
            file_handle.write(payload)
            file_handle.flush()
            os.fsync(file_handle.fileno())

        os.replace(temp_path, target)
        _fsync_directory(target_parent)
    except BaseException:
        with contextlib.suppress(OSError):
            temp_path.unlink(missing_ok=True)
        raise


def atomic_write_json(path: PathLike, payload: Any) -> None:
    """Write ``payload`` as deterministic, human-readable JSON via :func:`atomic_write`."""

    text = json.dumps(payload, sort_keys=True, indent=2, ensure_ascii=False) + "\n"
    atomic_write(path, text)


def is_within(child: PathLike, parent: PathLike) -> bool:
    """Return ``True`` if resolved ``child`` is inside resolved ``parent``."""

    try:
        resolved_parent = Path(parent).resolve(strict=True)
        resolved_child = Path(child).resolve(strict=True)
    except FileNotFoundError:
        return False
    if not resolved_parent.is_dir():
        return False
    return _is_relative_to(resolved_child, resolved_parent)


def delete_within(path: PathLike, root: PathLike) -> None:
    """Delete the file ``path`` only if it lives under ``root``."""

    workspace = Path(root).resolve(strict=True)
    target = Path(path)
    if target.is_symlink():
        candidate = target.parent.resolve(strict=True) / target.name
        if not _is_relative_to(candidate, workspace):
            raise ValueError(f"refusing to delete path outside {workspace}: {target}")
        target.unlink()
        return

    resolved = target.resolve(strict=True)
    if not _is_relative_to(resolved, workspace):
        raise ValueError(f"refusing to delete path outside {workspace}: {target}")
    if resolved.is_dir():
        raise IsADirectoryError(f"refusing to delete directory: {target}")
    resolved.unlink()


def _is_relative_to(child: Path, parent: Path) -> bool:
    try:
        child.relative_to(parent)
    except ValueError:
        return False
    return True


def _fsync_directory(path: Path) -> None:
    # Not every filesystem supports fsync on directories.
    if os.name == "nt":
        return

    flags = os.O_RDONLY
    if hasattr(os, "O_DIRECTORY"):
        flags |= os.O_DIRECTORY

    try:
        dir_fd = os.open(path, flags)
    except OSError:
        return

    try:
        os.fsync(dir_fd)
    except OSError:
        return
    finally:
        os.close(dir_fd)
