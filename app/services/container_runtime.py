"""Thin asyncio wrapper around the Docker Engine API.

The ``docker`` SDK is blocking, so every call is pushed onto a worker thread
with :func:`asyncio.to_thread`; only the awaiting coroutine is suspended.
"""
from __future__ import annotations

import asyncio
import math
from contextlib import closing
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, TypeVar

import docker
import structlog
from docker.errors import APIError, DockerException, NotFound

from app.config import ContainerConfig
from app.core.errors import ContainerRuntimeUnavailable, SandboxError
from app.core.models import SandboxStatus

logger = structlog.get_logger(__name__)

T = TypeVar("T")

MANAGED_LABEL = "openclaw.managed"
AGENT_ID_LABEL = "openclaw.agent.id"
AGENT_NAME_LABEL = "openclaw.agent.name"
AGENT_ROLE_LABEL = "openclaw.agent.role"

# Seconds the in-sandbox ``timeout`` wrapper waits past the caller's deadline before SIGKILL.
KILL_GRACE_SECONDS = 1


@dataclass(slots=True)
class ExecOutput:
    """Collected output of one ``docker exec``."""

    output: str
    exit_code: Optional[int] = None
    truncated: bool = False


def parse_docker_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse Docker's nanosecond RFC 3339 timestamps; the zero time maps to ``None``."""
    if not value or value.startswith("0001-01-01"):
        return None
    stamp = value.rstrip("Z")
    if "." in stamp:
        whole, fraction = stamp.split(".", 1)
        stamp = f"{whole}.{fraction[:6]}"
    try:
        parsed = datetime.fromisoformat(stamp)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


class ContainerRuntimeClient:
    """Inspect, create, start, stop, remove, exec and list agent sandboxes."""

    def __init__(self, client: Any) -> None:
        self._client = client

    @classmethod
    def from_config(cls, settings: ContainerConfig) -> ContainerRuntimeClient:
        """Connect to the daemon described by ``settings``.

        Raises :class:`ContainerRuntimeUnavailable` when the socket cannot be
        opened; no request is issued until the first call.
        """
        try:
            client = docker.DockerClient(
                base_url=settings.socket_url,
                timeout=int(settings.client_timeout),
            )
        except DockerException as exc:
            raise ContainerRuntimeUnavailable(str(exc)) from exc
        return cls(client)

    async def ping(self) -> bool:
        try:
            return bool(await asyncio.to_thread(self._client.ping))
        except (DockerException, OSError) as exc:
            logger.warning("docker_ping_failed", error=str(exc))
            return False

    async def inspect(self, name: str) -> SandboxStatus:
        """Return the sandbox state for ``name``; ``exists`` is false when absent."""
        container = await self._get(name)
        if container is None:
            return SandboxStatus(name=name)
        state = container.attrs.get("State", {})
        return SandboxStatus(
            name=name,
            exists=True,
            running=bool(state.get("Running")),
            container_id=container.id,
            started_at=parse_docker_timestamp(state.get("StartedAt")),
            labels=dict(container.labels or {}),
        )

    async def create(
        self,
        name: str,
        *,
        image: str,
        environment: Dict[str, str],
        binds: Sequence[str],
        network: str,
        labels: Dict[str, str],
        entrypoint: Optional[List[str]] = None,
        command: Optional[List[str]] = None,
    ) -> str:
        """Create (but do not start) a sandbox and return its id."""

        def _create() -> str:
            container = self._client.containers.create(
                image,
                command=command,
                name=name,
                entrypoint=entrypoint,
                environment=[f"{key}={value}" for key, value in environment.items()],
                volumes=list(binds),
                network=network,
                labels=labels,
                restart_policy={"Name": "unless-stopped", "MaximumRetryCount": 0},
                detach=True,
            )
            return container.id

        try:
            return await asyncio.to_thread(_create)
        except DockerException as exc:
            raise SandboxError(f"Failed to create container {name}: {exc}") from exc

    async def start(self, name: str) -> None:
        container = await self._require(name)
        await self._call(name, "start", container.start)

    async def stop(self, name: str, grace_period: int) -> None:
        container = await self._require(name)
        await self._call(name, "stop", container.stop, timeout=grace_period)

    async def remove(self, name: str, *, force: bool = True) -> None:
        container = await self._require(name)
        await self._call(name, "remove", container.remove, force=force)

    async def exec(
        self,
        name: str,
        command: Sequence[str],
        *,
        environment: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        max_output_bytes: int = 10 * 1024 * 1024,
    ) -> ExecOutput:
        """Run ``command`` inside the sandbox and collect combined output.

        With ``timeout`` the command is wrapped in coreutils ``timeout`` so the
        process inside the sandbox is killed once the deadline has passed,
        even if the caller stopped waiting.
        """
        container = await self._require(name)
        argv = list(command)
        if timeout:
            kill_after = int(math.ceil(timeout)) + KILL_GRACE_SECONDS
            argv = ["timeout", "-s", "KILL", str(kill_after), *argv]
        api = self._client.api

        def _run() -> ExecOutput:
            exec_id = api.exec_create(
                container.id,
                argv,
                stdout=True,
                stderr=True,
                environment=environment or None,
            )["Id"]
            chunks: List[bytes] = []
            size = 0
            truncated = False
            with closing(api.exec_start(exec_id, stream=True, demux=False)) as stream:
                for chunk in stream:
                    if not chunk:
                        continue
                    if size + len(chunk) > max_output_bytes:
                        chunks.append(chunk[: max_output_bytes - size])
                        truncated = True
                        break
                    chunks.append(chunk)
                    size += len(chunk)
            exit_code = None if truncated else api.exec_inspect(exec_id).get("ExitCode")
            return ExecOutput(
                output=b"".join(chunks).decode("utf-8", errors="replace"),
                exit_code=exit_code,
                truncated=truncated,
            )

        try:
            return await asyncio.to_thread(_run)
        except DockerException as exc:
            raise SandboxError(f"Exec in {name} failed: {exc}") from exc

    async def stats(self, name: str) -> Dict[str, Any]:
        container = await self._require(name)
        return await self._call(name, "stats", container.stats, stream=False)

    async def list_managed(self) -> List[SandboxStatus]:
        """Every sandbox carrying the managed label, running or not."""

        def _list() -> List[SandboxStatus]:
            containers = self._client.containers.list(
                all=True, filters={"label": f"{MANAGED_LABEL}=true"}
            )
            return [
                SandboxStatus(
                    name=container.name,
                    exists=True,
                    running=container.status == "running",
                    container_id=container.id,
                    labels=dict(container.labels or {}),
                )
                for container in containers
            ]

        return await self._call("*", "list", _list)

    def close(self) -> None:
        try:
            self._client.close()
        except DockerException:
            logger.debug("docker_close_failed", exc_info=True)

    async def _call(self, name: str, operation: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except DockerException as exc:
            raise SandboxError(f"Container {operation} failed for {name}: {exc}") from exc

    async def _get(self, name: str) -> Optional[Any]:
        try:
            return await asyncio.to_thread(self._client.containers.get, name)
        except NotFound:
            return None
        except APIError as exc:
            raise SandboxError(f"Failed to inspect container {name}: {exc}") from exc

    async def _require(self, name: str) -> Any:
        container = await self._get(name)
        if container is None:
            raise SandboxError(f"Container {name} not found")
        return container
