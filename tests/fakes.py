"""In-memory doubles for the container runtime."""
from __future__ import annotations

import asyncio
import dataclasses
from typing import Any, Dict, List, Optional, Sequence, Tuple

from app.core.errors import SandboxError
from app.core.models import AgentConfig, AgentStatus, SandboxStatus, utcnow
from app.services.container_runtime import MANAGED_LABEL, ExecOutput

REPLY_JSON = '{"payloads": [{"text": "done"}], "meta": {"agentMeta": {"provider": "anthropic", "model": "claude-sonnet-4-6", "usage": {"total": 120}}}}'


class FakeContainerRuntime:
    """Stand-in for ``ContainerRuntimeClient`` keeping containers in a dict.

    Every call yields to the event loop first so interleavings between
    concurrent lifecycle operations show up in tests.
    """

    def __init__(self, delay: float = 0.0) -> None:
        self.delay = delay
        self.containers: Dict[str, SandboxStatus] = {}
        self.environments: Dict[str, Dict[str, str]] = {}
        self.calls: List[Tuple[str, str]] = []
        self.exec_calls: List[Tuple[str, List[str], Optional[float]]] = []
        self.exec_environments: List[Dict[str, str]] = []
        self.list_error: Optional[Exception] = None
        self.create_count = 0
        self.ping_ok = True
        self.exec_output = REPLY_JSON
        self.exec_delay = 0.0
        self.exec_truncated = False
        self.closed = False

    def add(self, name: str, *, running: bool, managed: bool = True) -> None:
        labels = {MANAGED_LABEL: "true"} if managed else {}
        self.containers[name] = SandboxStatus(
            name=name,
            exists=True,
            running=running,
            container_id=f"existing-{name}",
            started_at=utcnow() if running else None,
            labels=labels,
        )

    async def _tick(self, operation: str, name: str) -> None:
        self.calls.append((operation, name))
        await asyncio.sleep(self.delay)

    def _require(self, name: str) -> SandboxStatus:
        if name not in self.containers:
            raise SandboxError(f"Container {name} not found")
        return self.containers[name]

    async def ping(self) -> bool:
        return self.ping_ok

    async def inspect(self, name: str) -> SandboxStatus:
        await self._tick("inspect", name)
        status = self.containers.get(name)
        return dataclasses.replace(status) if status else SandboxStatus(name=name)

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
        await self._tick("create", name)
        if name in self.containers:
            raise SandboxError(f"Conflict: container name {name} already in use")
        self.create_count += 1
        container_id = f"cid-{self.create_count}"
        self.containers[name] = SandboxStatus(
            name=name, exists=True, container_id=container_id, labels=dict(labels)
        )
        self.environments[name] = dict(environment)
        return container_id

    async def start(self, name: str) -> None:
        await self._tick("start", name)
        container = self._require(name)
        container.running = True
        container.started_at = utcnow()

    async def stop(self, name: str, grace_period: int) -> None:
        await self._tick("stop", name)
        self._require(name).running = False

    async def remove(self, name: str, *, force: bool = True) -> None:
        await self._tick("remove", name)
        self._require(name)
        del self.containers[name]

    async def exec(
        self,
        name: str,
        command: Sequence[str],
        *,
        environment: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        max_output_bytes: int = 10 * 1024 * 1024,
    ) -> ExecOutput:
        self._require(name)
        self.exec_calls.append((name, list(command), timeout))
        self.exec_environments.append(dict(environment or {}))
        if self.exec_delay:
            await asyncio.sleep(self.exec_delay)
        return ExecOutput(output=self.exec_output, exit_code=0, truncated=self.exec_truncated)

    async def stats(self, name: str) -> Dict[str, Any]:
        self._require(name)
        return {
            "cpu_stats": {
                "cpu_usage": {"total_usage": 400},
                "system_cpu_usage": 2000,
                "online_cpus": 2,
            },
            "precpu_stats": {"cpu_usage": {"total_usage": 200}, "system_cpu_usage": 1000},
            "memory_stats": {"usage": 256, "limit": 1024},
        }

    async def list_managed(self) -> List[SandboxStatus]:
        if self.list_error is not None:
            raise self.list_error
        return [
            dataclasses.replace(status)
            for status in self.containers.values()
            if status.labels.get(MANAGED_LABEL) == "true"
        ]

    def close(self) -> None:
        self.closed = True


def make_agent(name: str, status: AgentStatus = AgentStatus.RUNNING, **fields: Any) -> AgentConfig:
    slug = name.lower().replace(" ", "-")
    return AgentConfig(id=f"agent-{slug}", name=name, status=status, **fields)
