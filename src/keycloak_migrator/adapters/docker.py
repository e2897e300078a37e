"""
keycloak-migrator — Docker deployment adapters

File: src/keycloak_migrator/adapters/docker.py

Purpose
- Single-container and Compose-managed Keycloak instances for in-place migrations.

What should be included in this file
- ``DockerDeploymentAdapter``: start/stop/inspect/logs on one named container. Starting
  with a new image recreates the container from the old one's configuration.
- ``ComposeDeploymentAdapter``: the same surface on one Compose service; the image is
  handed to Compose through ``KEYCLOAK_IMAGE``.

Functional requirements
- Recreation keeps the replaced container as ``<name>-previous`` so a rollback or a resumed
  start can rebuild from it.
- Environment values never appear in argv; ``docker run --env KEY`` reads them from the
  client's environment.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any, Final

from keycloak_migrator.adapters.base import SingleInstanceDeployment
from keycloak_migrator.adapters.process import CommandSpec, raise_for_result
from keycloak_migrator.domain.errors import PermanentOperationError

if TYPE_CHECKING:
    from keycloak_migrator.domain.profile import DeploymentTarget

PREVIOUS_SUFFIX: Final[str] = "-previous"
COMPOSE_IMAGE_VARIABLE: Final[str] = "KEYCLOAK_IMAGE"
_LOG_TAIL: Final[str] = "2000"


class DockerDeploymentAdapter(SingleInstanceDeployment):
    async def start(self, target: DeploymentTarget, *, artifact: str | None = None) -> None:
        name = _container(target)
        if artifact is None:
            await self._run("docker_start", "docker", "start", name)
            return

        current = await self._inspect(name)
        if current is not None and (current.get("Config") or {}).get("Image") == artifact:
            await self._run("docker_start", "docker", "start", name)
            return

        previous = f"{name}{PREVIOUS_SUFFIX}"
        if current is not None:
            if await self._inspect(previous) is not None:
                await self._run("docker_rm", "docker", "rm", "--force", previous)
            await self._run("docker_stop", "docker", "stop", name)
            await self._run("docker_rename", "docker", "rename", name, previous)
            template = current
        else:
            template = await self._inspect(previous)
            if template is None:
                raise PermanentOperationError(
                    f"container {name} not found", operation="docker_start"
                )

        image_env = await self._image_env((template.get("Config") or {}).get("Image"))
        argv, env = run_arguments(name, template, artifact, image_env=image_env)
        await self._run("docker_run", *argv, env=env)
        self._logger.info(
            "docker_container_recreated", container=name, image=artifact, previous=previous
        )

    async def stop(self, target: DeploymentTarget) -> None:
        name = _container(target)
        if await self._inspect(name) is None:
            self._logger.info("docker_stop_missing_container", container=name)
            return
        await self._run("docker_stop", "docker", "stop", name)

    async def status(self, target: DeploymentTarget) -> bool:
        info = await self._inspect(_container(target))
        return bool(info and (info.get("State") or {}).get("Running"))

    async def logs(self, target: DeploymentTarget) -> str:
        result = await self._run(
            "docker_logs", "docker", "logs", "--tail", _LOG_TAIL, _container(target)
        )
        return result.stdout + result.stderr

    async def _inspect(self, name: str) -> dict[str, Any] | None:
        result = await self._executor.run(
            CommandSpec(
                ("docker", "inspect", "--type", "container", name),
                timeout_seconds=self._timeout,
            )
        )
        if not result.ok and result.exit_code is not None and "no such" in result.stderr.lower():
            return None
        raise_for_result(result, operation="docker_inspect")
        payload = json.loads(result.stdout or "[]")
        return payload[0] if payload else None

    async def _image_env(self, image: str | None) -> frozenset[str]:
        if not image:
            return frozenset()
        result = await self._executor.run(
            CommandSpec(
                ("docker", "image", "inspect", image),
                timeout_seconds=self._timeout,
            )
        )
        if not result.ok:
            return frozenset()
        payload = json.loads(result.stdout or "[]")
        if not payload:
            return frozenset()
        return frozenset((payload[0].get("Config") or {}).get("Env") or ())


class ComposeDeploymentAdapter(SingleInstanceDeployment):
    async def start(self, target: DeploymentTarget, *, artifact: str | None = None) -> None:
        env = {COMPOSE_IMAGE_VARIABLE: artifact} if artifact is not None else {}
        await self._run(
            "compose_up",
            *self._compose(target),
            "up",
            "--detach",
            "--no-deps",
            _service(target),
            env=env,
        )

    async def stop(self, target: DeploymentTarget) -> None:
        await self._run("compose_stop", *self._compose(target), "stop", _service(target))

    async def status(self, target: DeploymentTarget) -> bool:
        result = await self._run(
            "compose_ps",
            *self._compose(target),
            "ps",
            "--status",
            "running",
            "--quiet",
            _service(target),
        )
        return bool(result.stdout.strip())

    async def logs(self, target: DeploymentTarget) -> str:
        result = await self._run(
            "compose_logs",
            *self._compose(target),
            "logs",
            "--no-color",
            "--tail",
            _LOG_TAIL,
            _service(target),
        )
        return result.stdout

    @staticmethod
    def _compose(target: DeploymentTarget) -> tuple[str, ...]:
        if target.compose_file is None:
            return ("docker", "compose")
        return ("docker", "compose", "--file", target.compose_file)


def run_arguments(
    name: str,
    inspected: dict[str, Any],
    image: str,
    *,
    image_env: frozenset[str] = frozenset(),
) -> tuple[tuple[str, ...], dict[str, str]]:
    """``docker run`` argv recreating ``inspected`` on ``image``, plus the env to pass."""

    config = inspected.get("Config") or {}
    host = inspected.get("HostConfig") or {}
    argv: list[str] = ["docker", "run", "--detach", "--name", name]
    env: dict[str, str] = {}

    for entry in config.get("Env") or ():
        if entry in image_env or "=" not in entry:
            continue
        key, value = entry.split("=", 1)
        env[key] = value
        argv.extend(("--env", key))
    for container_port, bindings in sorted((host.get("PortBindings") or {}).items()):
        for binding in bindings or ():
            host_ip = binding.get("HostIp") or ""
            prefix = f"{host_ip}:" if host_ip else ""
            argv.extend(("--publish", f"{prefix}{binding.get('HostPort', '')}:{container_port}"))
    for bind in host.get("Binds") or ():
        argv.extend(("--volume", bind))
    network = host.get("NetworkMode")
    if network and network != "default":
        argv.extend(("--network", network))
    restart = (host.get("RestartPolicy") or {}).get("Name")
    if restart and restart != "no":
        argv.extend(("--restart", restart))

    argv.append(image)
    argv.extend(config.get("Cmd") or ())
    return tuple(argv), env


def _container(target: DeploymentTarget) -> str:
    return target.container or target.name


def _service(target: DeploymentTarget) -> str:
    return target.container or target.name


__all__ = [
    "COMPOSE_IMAGE_VARIABLE",
    "PREVIOUS_SUFFIX",
    "ComposeDeploymentAdapter",
    "DockerDeploymentAdapter",
    "run_arguments",
]
