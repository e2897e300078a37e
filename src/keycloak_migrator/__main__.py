"""Module entrypoint for ``python -m keycloak_migrator``."""

from __future__ import annotations

from keycloak_migrator.main import cli_entrypoint

if __name__ == "__main__":
    raise SystemExit(cli_entrypoint())
