"""
keycloak-migrator — checkpoint store

File: src/keycloak_migrator/persistence/checkpoint_store.py

Purpose
- Durable, single-document record of a run's progress inside its workspace.

What should be included in this file
- Load/save/clear of ``checkpoint.json``.
- Resume matching by run key; a foreign checkpoint is never silently reused.
- Phase advancement that refuses to move a version's checkpoint backwards.

Functional requirements
- Every write is atomic (temp file, fsync, ``os.replace``); an interrupt leaves either the
  previous or the new document, never a torn one.

Non-functional requirements
- One writer per run; callers hold a ``RunLock`` for the run key while saving.
"""

from __future__ import annotations

import json
from dataclasses import replace
from pathlib import Path
from typing import Any

import structlog

from keycloak_migrator.constants import CHECKPOINT_FILE
from keycloak_migrator.domain.errors import CheckpointMismatchError, PreconditionError
from keycloak_migrator.domain.models import BackupReference, CheckpointRecord, Phase
from keycloak_migrator.utils.fs import atomic_write_json


class CheckpointStore:
    """Reads and atomically rewrites ``<workspace>/checkpoint.json``."""

    def __init__(self, workspace: Path | str, *, logger: Any | None = None) -> None:
        self.workspace = Path(workspace)
        self.path = self.workspace / CHECKPOINT_FILE
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def exists(self) -> bool:
        return self.path.is_file()

    def load(self) -> CheckpointRecord | None:
        if not self.path.is_file():
            return None
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise PreconditionError(f"checkpoint {self.path} is unreadable: {exc}") from exc
        if not isinstance(payload, dict):
            raise PreconditionError(f"checkpoint {self.path} must contain a JSON object")
        try:
            return CheckpointRecord.from_dict(payload)
        except (KeyError, ValueError) as exc:
            raise PreconditionError(f"checkpoint {self.path} is invalid: {exc}") from exc

    def load_for(self, run_key: str) -> CheckpointRecord | None:
        """Return the stored record when it belongs to ``run_key``; raise when it does not."""

        record = self.load()
        if record is None:
            return None
        if record.run_key != run_key:
            raise CheckpointMismatchError(str(self.path), run_key, record.run_key)
        return record

    def save(self, record: CheckpointRecord) -> None:
        atomic_write_json(self.path, record.to_dict())

    def advance(self, record: CheckpointRecord, version: str, phase: Phase) -> CheckpointRecord:
        """Persist ``(version, phase)`` as completed and return the updated record."""

        updated = replace(
            record.with_phase(version, phase),
            last_successful_step=f"{version}:{phase.value}",
        )
        self.save(updated)
        self._logger.debug("checkpoint_saved", version=version, phase=phase.value)
        return updated

    def record_backup(
        self, record: CheckpointRecord, backup: BackupReference
    ) -> CheckpointRecord:
        updated = replace(record, last_backup=backup)
        self.save(updated)
        return updated

    def record_artifact(self, record: CheckpointRecord, artifact: str | None) -> CheckpointRecord:
        updated = replace(record, artifact=artifact)
        self.save(updated)
        return updated

    def record_live_deployment(
        self, record: CheckpointRecord, deployment: str | None
    ) -> CheckpointRecord:
        updated = replace(record, live_deployment=deployment)
        self.save(updated)
        return updated

    def mark_unsafe(self, record: CheckpointRecord) -> CheckpointRecord:
        updated = replace(record, resume_safe=False)
        self.save(updated)
        return updated

    def clear(self) -> bool:
        if not self.path.exists():
            return False
        self.path.unlink()
        self._logger.info("checkpoint_cleared", checkpoint_path=str(self.path))
        return True


__all__ = ["CheckpointStore"]
