"""Standalone installs run as a systemd unit whose ``home_dir`` is a symlink to the release."""

from __future__ import annotations

import os
from pathlib import Path
from typing import TYPE_CHECKING

from keycloak_migrator.adapters.base import SingleInstanceDeployment
from keycloak_migrator.adapters.process import CommandSpec
from keycloak_migrator.domain.errors import PermanentOperationError

if TYPE_CHECKING:
    from keycloak_migrator.domain.profile import DeploymentTarget


class SystemdDeploymentAdapter(SingleInstanceDeployment):
    async def start(self, target: DeploymentTarget, *, artifact: str | None = None) -> None:
        if artifact is not None:
            self._activate(target, Path(artifact))
        await self._run("systemctl_start", "systemctl", "start", target.name)

    async def stop(self, target: DeploymentTarget) -> None:
        await self._run("systemctl_stop", "systemctl", "stop", target.name)

    async def status(self, target: DeploymentTarget) -> bool:
        result = await self._executor.run(
            CommandSpec(
                ("systemctl", "is-active", "--quiet", target.name),
                timeout_seconds=self._timeout,
            )
        )
        return result.ok

    async def logs(self, target: DeploymentTarget) -> str:
        result = await self._run(
            "journalctl",
            "journalctl",
            "--unit",
            target.name,
            "--lines",
            "2000",
            "--no-pager",
            "--output",
            "cat",
        )
        return result.stdout

    def _activate(self, target: DeploymentTarget, release: Path) -> None:
        if target.home_dir is None:
            raise PermanentOperationError(
                "standalone deployments need keycloak.home_dir to switch releases",
                operation="activate_release",
            )
        home = Path(target.home_dir)
        if home.exists() and not home.is_symlink():
            raise PermanentOperationError(
                f"{home} is a directory; it must be a symlink to the active release",
                operation="activate_release",
            )
        if not release.is_dir():
            raise PermanentOperationError(
                f"release {release} is not installed", operation="activate_release"
            )
        staged = home.with_name(home.name + ".next")
        if staged.is_symlink():
            staged.unlink()
        staged.symlink_to(release.resolve(), target_is_directory=True)
        os.replace(staged, home)
        self._logger.info("release_activated", home=str(home), release=str(release))


__all__ = ["SystemdDeploymentAdapter"]
