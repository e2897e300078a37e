"""Interactive yes/no decisions on the controlling terminal."""

from __future__ import annotations

import asyncio
import sys
from collections.abc import Callable
from typing import Any, TextIO

import structlog

from keycloak_migrator.engine.decisions import DecisionKind, DecisionPrompt

_YES = frozenset({"y", "yes"})
_NO = frozenset({"", "n", "no"})


class TerminalDecision:
    """Asks the operator; an empty answer means no.

    ``delete_blue`` pre-answers the blue retirement question (``--delete-blue``) so an
    otherwise interactive run does not stop at the very end of a cutover.
    """

    interactive = True

    def __init__(
        self,
        *,
        delete_blue: bool | None = None,
        read_line: Callable[[str], str] = input,
        stream: TextIO | None = None,
        logger: Any | None = None,
    ) -> None:
        self._delete_blue = delete_blue
        self._read_line = read_line
        self._stream = stream if stream is not None else sys.stderr
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    async def confirm(self, prompt: DecisionPrompt) -> bool:
        if prompt.kind is DecisionKind.DELETE_BLUE and self._delete_blue is not None:
            return self._delete_blue

        print(f"\n{prompt.message}", file=self._stream)
        for key, value in prompt.details.items():
            print(f"  {key}: {value}", file=self._stream)
        while True:
            try:
                raw = await asyncio.to_thread(self._read_line, "Proceed? [y/N] ")
            except EOFError:
                answer = False
                break
            choice = raw.strip().lower()
            if choice in _YES:
                answer = True
                break
            if choice in _NO:
                answer = False
                break
            print("Please answer 'y' or 'n'.", file=self._stream)

        self._logger.info("decision_answered", kind=prompt.kind.value, answer=answer)
        return answer


__all__ = ["TerminalDecision"]
