"""In-memory view of a run's checkpoint, kept in step with the durable store."""

from __future__ import annotations

from dataclasses import replace
from typing import TYPE_CHECKING

from keycloak_migrator.domain.models import Checkpoint, CheckpointRecord, Phase

if TYPE_CHECKING:
    from collections.abc import Sequence

    from keycloak_migrator.domain.models import BackupReference
    from keycloak_migrator.persistence.checkpoint_store import CheckpointStore


class CheckpointTracker:
    """Answers "is this phase already done?" for a fixed version path.

    A checkpoint on a later version of the path implies every phase of the earlier
    versions completed; on the same version it implies every phase up to and including the
    recorded one.
    """

    def __init__(
        self,
        store: CheckpointStore,
        record: CheckpointRecord,
        path: Sequence[str],
    ) -> None:
        self._store = store
        self._record = record
        self._order = {version: index for index, version in enumerate(path)}

    @property
    def record(self) -> CheckpointRecord:
        return self._record

    @property
    def checkpoint(self) -> Checkpoint | None:
        return self._record.checkpoint

    @property
    def artifact(self) -> str | None:
        return self._record.artifact

    @property
    def live_deployment(self) -> str | None:
        return self._record.live_deployment

    @property
    def last_backup(self) -> BackupReference | None:
        return self._record.last_backup

    def is_done(self, version: str, phase: Phase) -> bool:
        current = self._record.checkpoint
        if current is None or current.version not in self._order:
            return False
        done_index = self._order[current.version]
        index = self._order[version]
        if done_index != index:
            return done_index > index
        return phase.ordinal <= current.phase.ordinal

    def version_complete(self, version: str) -> bool:
        return self.is_done(version, Phase.TESTS_OK)

    def advance(self, version: str, phase: Phase) -> None:
        self._record = self._store.advance(self._record, version, phase)

    def record_backup(self, backup: BackupReference) -> None:
        self._record = self._store.record_backup(self._record, backup)

    def record_artifact(self, artifact: str | None) -> None:
        self._record = self._store.record_artifact(self._record, artifact)

    def record_live_deployment(self, deployment: str) -> None:
        self._record = self._store.record_live_deployment(self._record, deployment)

    def rewind(self, version: str, phase: Phase) -> None:
        """Move ``version`` back to ``phase`` after work past it was torn down."""

        current = self._record.checkpoint
        if current is None or current.version != version or current.phase.ordinal <= phase.ordinal:
            return
        self._record = replace(
            self._record,
            checkpoint=Checkpoint(version, phase),
            last_successful_step=f"{version}:{phase.value}",
        )
        self._store.save(self._record)

    def mark_unsafe(self) -> None:
        self._record = self._store.mark_unsafe(self._record)


__all__ = ["CheckpointTracker"]
