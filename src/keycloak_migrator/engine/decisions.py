"""Operator decisions, injected so orchestration never talks to a terminal directly."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Protocol, runtime_checkable

import structlog


class DecisionKind(StrEnum):
    ACCEPT_FAILED_SMOKE_TESTS = "accept_failed_smoke_tests"
    ROLLBACK_AFTER_FAILURE = "rollback_after_failure"
    DELETE_BLUE = "delete_blue"
    CONFIRM_ROLLBACK = "confirm_rollback"


@dataclass(frozen=True, slots=True)
class DecisionPrompt:
    kind: DecisionKind
    message: str
    details: Mapping[str, Any] = field(default_factory=dict)


@runtime_checkable
class Decision(Protocol):
    interactive: bool

    async def confirm(self, prompt: DecisionPrompt) -> bool: ...


class NonInteractiveDecision:
    """Flag-driven answers for unattended runs.

    Every gate is strict: a failed mandatory check is never waved through. The only
    question answered from configuration is whether the old blue deployment is deleted.
    """

    interactive = False

    def __init__(self, *, delete_blue: bool = False, logger: Any | None = None) -> None:
        self._delete_blue = delete_blue
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    async def confirm(self, prompt: DecisionPrompt) -> bool:
        answer = self._delete_blue if prompt.kind is DecisionKind.DELETE_BLUE else False
        self._logger.info("decision_non_interactive", kind=prompt.kind.value, answer=answer)
        return answer


__all__ = ["Decision", "DecisionKind", "DecisionPrompt", "NonInteractiveDecision"]
