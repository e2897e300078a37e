"""UI package exports for the CLI, rendering and terminal prompts."""

from keycloak_migrator.ui.cli import build_parser, main, run_cli
from keycloak_migrator.ui.prompts import TerminalDecision
from keycloak_migrator.ui.render import CLIRenderer, create_renderer

__all__ = [
    "CLIRenderer",
    "TerminalDecision",
    "build_parser",
    "create_renderer",
    "main",
    "run_cli",
]
