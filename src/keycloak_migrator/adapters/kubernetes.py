"""
keycloak-migrator — Kubernetes deployment adapter

File: src/keycloak_migrator/adapters/kubernetes.py

Purpose
- Drive Keycloak on Kubernetes (and Deckhouse) through ``kubectl``.

What should be included in this file
- In-place surface: scale-based start/stop, readiness status, logs.
- Rolling surface: ``set image``, ``rollout status --timeout``, ``rollout undo``, pod listing
  and per-pod readiness.
- Blue-green surface: labels, a parallel deployment cloned from the blue spec, service
  selector patching, delete, promote, and a ``port-forward`` direct channel.

Functional requirements
- Green pods carry selector labels disjoint from blue's, so pointing the service at either
  deployment selects only that deployment's pods.
- ``rollout status`` missing its deadline is reported as ``OperationTimeoutError`` so the
  rolling strategy can revert.
"""

from __future__ import annotations

import asyncio
import copy
import json
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from contextlib import asynccontextmanager, suppress
from typing import TYPE_CHECKING, Any, Final

import structlog

from keycloak_migrator.adapters.process import CommandSpec, raise_for_result
from keycloak_migrator.constants import BLUE_LABEL_KEY
from keycloak_migrator.domain.errors import OperationTimeoutError, PermanentOperationError
from keycloak_migrator.domain.models import ReplicaHandle

if TYPE_CHECKING:
    from keycloak_migrator.adapters.process import CommandExecutor, CommandResult
    from keycloak_migrator.domain.profile import DeploymentTarget

CANONICAL_ANNOTATION: Final[str] = "keycloak-migrator/canonical"
ACTIVE_LABEL_VALUE: Final[str] = "active"
LABEL_VALUE_LIMIT: Final[int] = 63
_LOG_TAIL: Final[str] = "2000"
_ROLLOUT_TIMEOUT_MARKERS: Final[tuple[str, ...]] = (
    "timed out waiting",
    "exceeded its progress deadline",
)
_PORT_FORWARD_READY: Final[str] = "Forwarding from"

Spawn = Callable[..., Awaitable[asyncio.subprocess.Process]]


class KubectlDeploymentAdapter:
    supports_replicas = True
    supports_traffic_routing = True

    def __init__(
        self,
        executor: CommandExecutor,
        *,
        namespace: str | None = None,
        container_port: int = 8080,
        timeout_seconds: float | None = None,
        port_forward_timeout_seconds: float = 30.0,
        spawn: Spawn = asyncio.create_subprocess_exec,
        logger: Any | None = None,
    ) -> None:
        self._executor = executor
        self._namespace = namespace
        self._container_port = container_port
        self._timeout = timeout_seconds
        self._port_forward_timeout = port_forward_timeout_seconds
        self._spawn = spawn
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._pod_namespaces: dict[str, str | None] = {}

    async def start(self, target: DeploymentTarget, *, artifact: str | None = None) -> None:
        if artifact is not None:
            await self.update_replica_image(target, artifact)
        await self._kubectl(
            "kubectl_scale",
            target,
            "scale",
            _deployment(target),
            f"--replicas={max(1, target.replicas)}",
        )

    async def stop(self, target: DeploymentTarget) -> None:
        await self._kubectl("kubectl_scale", target, "scale", _deployment(target), "--replicas=0")

    async def status(self, target: DeploymentTarget) -> bool:
        payload = await self._get_json(target, _deployment(target))
        return int((payload.get("status") or {}).get("readyReplicas") or 0) > 0

    async def logs(self, target: DeploymentTarget) -> str:
        result = await self._kubectl(
            "kubectl_logs",
            target,
            "logs",
            _deployment(target),
            "--all-containers=true",
            "--tail",
            _LOG_TAIL,
        )
        return result.stdout

    async def update_replica_image(self, target: DeploymentTarget, artifact: str) -> None:
        container = target.container or "*"
        await self._kubectl(
            "kubectl_set_image",
            target,
            "set",
            "image",
            _deployment(target),
            f"{container}={artifact}",
        )

    async def rollout_status(self, target: DeploymentTarget, timeout: float) -> None:
        result = await self._executor.run(
            self._spec(
                target,
                "rollout",
                "status",
                _deployment(target),
                f"--timeout={max(1, int(timeout))}s",
                timeout=timeout + 30.0,
            )
        )
        if not result.ok and any(
            marker in result.stderr for marker in _ROLLOUT_TIMEOUT_MARKERS
        ):
            raise OperationTimeoutError(
                f"{target.name} did not reach steady state within {timeout:g}s",
                operation="rollout_status",
                timeout_seconds=timeout,
            )
        raise_for_result(result, operation="rollout_status")

    async def undo_rollout(self, target: DeploymentTarget) -> None:
        await self._kubectl("kubectl_rollout_undo", target, "rollout", "undo", _deployment(target))
        self._logger.warning("rollout_reverted", deployment=target.name)

    async def list_replicas(self, target: DeploymentTarget) -> list[ReplicaHandle]:
        deployment = await self._get_json(target, _deployment(target))
        selector = _match_labels(deployment)
        pods = await self._get_json(target, "pods", "--selector", _selector_arg(selector))
        namespace = self._namespace_of(target)
        replicas = []
        for item in pods.get("items") or ():
            name = (item.get("metadata") or {}).get("name")
            if not name:
                continue
            self._pod_namespaces[name] = namespace
            address = (item.get("status") or {}).get("podIP")
            replicas.append(ReplicaHandle(name=name, address=address))
        return replicas

    async def health_check(self, replica: ReplicaHandle) -> bool:
        namespace = self._pod_namespaces.get(replica.name, self._namespace)
        result = await self._executor.run(
            CommandSpec(
                (*_base(namespace), "get", "pod", replica.name, "--output", "json"),
                timeout_seconds=self._timeout,
            )
        )
        raise_for_result(result, operation="pod_health")
        return pod_ready(json.loads(result.stdout))

    async def label_deployment(self, target: DeploymentTarget, key: str, value: str) -> None:
        await self._kubectl(
            "kubectl_label", target, "label", _deployment(target), f"{key}={value}", "--overwrite"
        )

    async def create_parallel(
        self, source: DeploymentTarget, green: DeploymentTarget, artifact: str
    ) -> None:
        blue = await self._get_json(source, _deployment(source))
        manifest = green_manifest(blue, green.name, artifact)
        await self._kubectl(
            "kubectl_apply", green, "apply", "--filename", "-", stdin_text=json.dumps(manifest)
        )
        self._logger.info("green_created", blue=source.name, green=green.name, image=artifact)

    async def wait_ready(self, target: DeploymentTarget, timeout: float) -> None:
        await self.rollout_status(target, timeout)

    @asynccontextmanager
    async def open_direct_channel(self, target: DeploymentTarget, port: int) -> AsyncIterator[str]:
        argv = (
            *_base(self._namespace_of(target)),
            "port-forward",
            _deployment(target),
            f"{port}:{self._container_port}",
        )
        process = await self._spawn(
            *argv, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE
        )
        try:
            await self._await_forwarding(process, target)
            self._logger.info("direct_channel_open", deployment=target.name, port=port)
            yield f"http://127.0.0.1:{port}"
        finally:
            with suppress(ProcessLookupError):
                process.terminate()
            with suppress(ProcessLookupError, TimeoutError):
                await asyncio.wait_for(process.wait(), timeout=5.0)
            self._logger.debug("direct_channel_closed", deployment=target.name)

    async def route_traffic(self, router: DeploymentTarget, to: DeploymentTarget) -> None:
        if router.service is None:
            raise PermanentOperationError(
                "blue-green needs keycloak.service as the traffic router", operation="route"
            )
        deployment = await self._get_json(to, _deployment(to))
        patch = [{"op": "replace", "path": "/spec/selector", "value": _match_labels(deployment)}]
        await self._kubectl(
            "kubectl_patch_service",
            router,
            "patch",
            f"service/{router.service}",
            "--type=json",
            "--patch",
            json.dumps(patch),
        )
        self._logger.info("traffic_routed", service=router.service, deployment=to.name)

    async def delete_deployment(self, target: DeploymentTarget) -> None:
        await self._kubectl(
            "kubectl_delete", target, "delete", _deployment(target), "--ignore-not-found=true"
        )

    async def promote(self, green: DeploymentTarget, canonical: DeploymentTarget) -> None:
        await self.label_deployment(green, BLUE_LABEL_KEY, ACTIVE_LABEL_VALUE)
        await self._kubectl(
            "kubectl_annotate",
            green,
            "annotate",
            _deployment(green),
            f"{CANONICAL_ANNOTATION}={canonical.name}",
            "--overwrite",
        )

    async def _await_forwarding(
        self, process: asyncio.subprocess.Process, target: DeploymentTarget
    ) -> None:
        assert process.stdout is not None
        try:
            async with asyncio.timeout(self._port_forward_timeout):
                while True:
                    line = await process.stdout.readline()
                    if not line:
                        stderr = b""
                        if process.stderr is not None:
                            stderr = await process.stderr.read()
                        raise PermanentOperationError(
                            f"port-forward to {target.name} exited: "
                            f"{stderr.decode('utf-8', errors='replace').strip()}",
                            operation="port_forward",
                        )
                    if _PORT_FORWARD_READY in line.decode("utf-8", errors="replace"):
                        return
        except TimeoutError as exc:
            raise OperationTimeoutError(
                f"port-forward to {target.name} not ready",
                operation="port_forward",
                timeout_seconds=self._port_forward_timeout,
            ) from exc

    async def _get_json(self, target: DeploymentTarget, *args: str) -> dict[str, Any]:
        result = await self._kubectl("kubectl_get", target, "get", *args, "--output", "json")
        try:
            payload = json.loads(result.stdout)
        except json.JSONDecodeError as exc:
            raise PermanentOperationError(
                f"kubectl returned invalid JSON: {exc}", operation="kubectl_get"
            ) from exc
        if not isinstance(payload, dict):
            raise PermanentOperationError(
                "kubectl returned non-object JSON", operation="kubectl_get"
            )
        return payload

    async def _kubectl(
        self,
        operation: str,
        target: DeploymentTarget,
        *args: str,
        stdin_text: str | None = None,
    ) -> CommandResult:
        result = await self._executor.run(self._spec(target, *args, stdin_text=stdin_text))
        return raise_for_result(result, operation=operation)

    def _spec(
        self,
        target: DeploymentTarget,
        *args: str,
        stdin_text: str | None = None,
        timeout: float | None = None,
    ) -> CommandSpec:
        return CommandSpec(
            (*_base(self._namespace_of(target)), *args),
            stdin_text=stdin_text,
            timeout_seconds=timeout if timeout is not None else self._timeout,
        )

    def _namespace_of(self, target: DeploymentTarget) -> str | None:
        return target.namespace or self._namespace


def green_manifest(blue: Mapping[str, Any], name: str, image: str) -> dict[str, Any]:
    """Clone the blue deployment under ``name`` on ``image`` with disjoint selector labels."""

    manifest = copy.deepcopy(dict(blue))
    manifest.pop("status", None)
    metadata = manifest.get("metadata") or {}
    manifest["metadata"] = {
        key: value
        for key, value in {
            "name": name,
            "namespace": metadata.get("namespace"),
            "labels": dict(metadata.get("labels") or {}),
        }.items()
        if value is not None
    }

    spec = manifest.setdefault("spec", {})
    selector = dict((spec.get("selector") or {}).get("matchLabels") or {})
    # Keyed on the green name so cloning a promoted green never stacks suffixes.
    green_labels = dict.fromkeys(selector, _label_value(name))
    spec["selector"] = {"matchLabels": green_labels}

    template = spec.setdefault("template", {})
    template_meta = template.setdefault("metadata", {})
    template_meta.pop("creationTimestamp", None)
    template_meta["labels"] = {**(template_meta.get("labels") or {}), **green_labels}
    for container in (template.get("spec") or {}).get("containers") or ():
        container["image"] = image
    return manifest


def pod_ready(pod: Mapping[str, Any]) -> bool:
    status = pod.get("status") or {}
    if status.get("phase") != "Running":
        return False
    return any(
        condition.get("type") == "Ready" and condition.get("status") == "True"
        for condition in status.get("conditions") or ()
    )


def _label_value(value: str) -> str:
    return value[:LABEL_VALUE_LIMIT].rstrip("-._")


def _match_labels(deployment: Mapping[str, Any]) -> dict[str, str]:
    labels = ((deployment.get("spec") or {}).get("selector") or {}).get("matchLabels") or {}
    if not labels:
        name = (deployment.get("metadata") or {}).get("name", "?")
        raise PermanentOperationError(
            f"deployment {name} has no matchLabels selector", operation="selector"
        )
    return dict(labels)


def _selector_arg(labels: Mapping[str, str]) -> str:
    return ",".join(f"{key}={value}" for key, value in sorted(labels.items()))


def _deployment(target: DeploymentTarget) -> str:
    return f"deployment/{target.name}"


def _base(namespace: str | None) -> tuple[str, ...]:
    if namespace is None:
        return ("kubectl",)
    return ("kubectl", "--namespace", namespace)


__all__ = [
    "ACTIVE_LABEL_VALUE",
    "CANONICAL_ANNOTATION",
    "KubectlDeploymentAdapter",
    "LABEL_VALUE_LIMIT",
    "green_manifest",
    "pod_ready",
]
