"""Subprocess execution shared by the built-in adapters.

Concrete adapters and ``build_collaborators`` live in their own modules
(``keycloak_migrator.adapters.factory`` and friends) and are imported from there.
"""

from keycloak_migrator.adapters.process import (
    CommandExecutor,
    CommandResult,
    CommandSpec,
    LocalSubprocessExecutor,
    raise_for_result,
)

__all__ = [
    "CommandExecutor",
    "CommandResult",
    "CommandSpec",
    "LocalSubprocessExecutor",
    "raise_for_result",
]
