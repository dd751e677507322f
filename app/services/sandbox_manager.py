"""Lifecycle management for the per-agent sandbox containers.

Each agent owns at most one container, named ``<prefix><slug>`` after the
agent. Containers idle on ``tail -f /dev/null`` and work is delivered with
``docker exec``. All operations touching one container name are serialized
through the :class:`~app.core.locks.LockRegistry`.
"""
from __future__ import annotations

import asyncio
import os
import re
from typing import Dict, List, Optional

import structlog

from app.config import ContainerConfig
from app.core.errors import ContainerRuntimeUnavailable, SandboxError
from app.core.locks import LockRegistry
from app.core.models import AgentConfig, SandboxStatus, SandboxUsage
from app.services.container_runtime import (
    AGENT_ID_LABEL,
    AGENT_NAME_LABEL,
    AGENT_ROLE_LABEL,
    MANAGED_LABEL,
    ContainerRuntimeClient,
)

logger = structlog.get_logger(__name__)

SYSTEM_PROMPT_ENV_LIMIT = 4000
PASSTHROUGH_API_KEYS = (
    "ANTHROPIC_API_KEY",
    "OPENAI_API_KEY",
    "GOOGLE_API_KEY",
    "DEEPSEEK_API_KEY",
)


def agent_slug(name: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")
    return slug[:50]


def container_name(agent_name: str, prefix: str = "openclaw-agent-") -> str:
    return f"{prefix}{agent_slug(agent_name)}"


def compute_usage(stats: Dict) -> SandboxUsage:
    """CPU and memory percentages from a one-shot ``docker stats`` document."""
    cpu_stats = stats.get("cpu_stats", {})
    precpu_stats = stats.get("precpu_stats", {})
    cpu_delta = cpu_stats.get("cpu_usage", {}).get("total_usage", 0) - precpu_stats.get(
        "cpu_usage", {}
    ).get("total_usage", 0)
    system_delta = cpu_stats.get("system_cpu_usage", 0) - precpu_stats.get("system_cpu_usage", 0)
    num_cpus = (
        cpu_stats.get("online_cpus")
        or len(cpu_stats.get("cpu_usage", {}).get("percpu_usage") or [])
        or 1
    )
    cpu_percent = round(cpu_delta / system_delta * num_cpus * 100, 1) if system_delta > 0 else 0.0

    memory = stats.get("memory_stats", {})
    mem_limit = memory.get("limit") or 1
    memory_percent = round((memory.get("usage") or 0) / mem_limit * 100, 1)
    return SandboxUsage(cpu_percent=cpu_percent, memory_percent=memory_percent)


class SandboxManager:
    """Create, start, stop and remove agent sandboxes idempotently."""

    def __init__(
        self,
        runtime: Optional[ContainerRuntimeClient],
        settings: ContainerConfig,
        locks: Optional[LockRegistry] = None,
    ) -> None:
        self._runtime = runtime
        self._settings = settings
        self._locks = locks or LockRegistry()
        self._disabled_reason: Optional[str] = None if runtime is not None else "no runtime client"

    @property
    def available(self) -> bool:
        """Whether dispatch should go through sandboxes."""
        return self._runtime is not None and self._disabled_reason is None

    @property
    def disabled_reason(self) -> Optional[str]:
        return self._disabled_reason

    @property
    def runtime(self) -> Optional[ContainerRuntimeClient]:
        return self._runtime

    def disable(self, reason: str) -> None:
        """Switch to direct execution for the rest of the process lifetime."""
        if self._disabled_reason is not None:
            return
        self._disabled_reason = reason
        logger.warning("container_mode_disabled", reason=reason)

    def name_for(self, agent_name: str) -> str:
        return container_name(agent_name, self._settings.name_prefix)

    async def ensure_created(self, agent: AgentConfig) -> str:
        """Make sure the agent's sandbox exists and is running; return its id."""
        runtime = self._require_runtime()
        name = self.name_for(agent.name)

        async with self._locks.hold(name):
            existing = await runtime.inspect(name)
            if existing.exists:
                if not existing.running:
                    await runtime.start(name)
                    logger.info("sandbox_started", container=name, agent=agent.name)
                    await asyncio.sleep(self._settings.settle_seconds)
                return existing.container_id or ""

            container_id = await runtime.create(
                name,
                image=self._settings.image,
                environment=self._environment_for(agent),
                binds=[
                    f"{self._settings.config_volume}:/app/openclaw-config:ro",
                    f"{self._settings.sessions_volume}:/sessions",
                ],
                network=self._settings.network,
                labels={
                    AGENT_ID_LABEL: agent.id,
                    AGENT_NAME_LABEL: agent.name,
                    AGENT_ROLE_LABEL: agent.role.value,
                    MANAGED_LABEL: "true",
                },
                entrypoint=["agent-entrypoint.sh"],
                command=["tail", "-f", "/dev/null"],
            )
            await runtime.start(name)
            logger.info(
                "sandbox_created",
                container=name,
                agent=agent.name,
                container_id=container_id[:12],
            )
            # Give the entrypoint time to initialize before the first exec.
            await asyncio.sleep(self._settings.settle_seconds)
            return container_id

    async def start(self, agent_name: str) -> None:
        if not self.available:
            return
        name = self.name_for(agent_name)
        async with self._locks.hold(name):
            status = await self._runtime.inspect(name)
            if not status.exists:
                logger.warning("sandbox_missing_for_start", container=name)
                return
            if not status.running:
                await self._runtime.start(name)
                logger.info("sandbox_started", container=name)

    async def stop(self, agent_name: str, grace_period: Optional[int] = None) -> None:
        if not self.available:
            return
        await self.stop_container(self.name_for(agent_name), grace_period)

    async def remove(self, agent_name: str) -> None:
        if not self.available:
            return
        await self.remove_container(self.name_for(agent_name))

    async def stop_container(self, name: str, grace_period: Optional[int] = None) -> bool:
        """Stop ``name`` if it is running; return whether a stop was issued."""
        runtime = self._require_runtime()
        grace = self._settings.stop_grace_seconds if grace_period is None else grace_period
        async with self._locks.hold(name):
            status = await runtime.inspect(name)
            if not status.running:
                return False
            await runtime.stop(name, grace)
            logger.info("sandbox_stopped", container=name)
            return True

    async def remove_container(self, name: str, grace_period: Optional[int] = None) -> bool:
        """Stop (ignoring failures) and force-remove ``name``; false if it was absent."""
        runtime = self._require_runtime()
        grace = self._settings.stop_grace_seconds if grace_period is None else grace_period
        async with self._locks.hold(name):
            status = await runtime.inspect(name)
            if not status.exists:
                return False
            if status.running:
                try:
                    await runtime.stop(name, grace)
                except SandboxError as exc:
                    logger.debug("sandbox_stop_before_remove_failed", container=name, error=str(exc))
            await runtime.remove(name, force=True)
            logger.info("sandbox_removed", container=name)
            return True

    async def start_container(self, name: str) -> bool:
        runtime = self._require_runtime()
        async with self._locks.hold(name):
            status = await runtime.inspect(name)
            if not status.exists or status.running:
                return False
            await runtime.start(name)
            logger.info("sandbox_started", container=name)
            return True

    async def status(self, agent_name: str) -> SandboxStatus:
        name = self.name_for(agent_name)
        if not self.available:
            return SandboxStatus(name=name)
        return await self._runtime.inspect(name)

    async def stats(self, agent_name: str) -> Optional[SandboxUsage]:
        if not self.available:
            return None
        name = self.name_for(agent_name)
        try:
            raw = await self._runtime.stats(name)
        except SandboxError:
            return None
        return compute_usage(raw)

    async def list_managed(self) -> List[SandboxStatus]:
        if not self.available:
            return []
        return await self._runtime.list_managed()

    def _require_runtime(self) -> ContainerRuntimeClient:
        if not self.available:
            raise ContainerRuntimeUnavailable(self._disabled_reason or "Docker not available")
        return self._runtime

    def _environment_for(self, agent: AgentConfig) -> Dict[str, str]:
        env = {
            "AGENT_NAME": agent.name,
            "AGENT_ID": agent.id,
            "AGENT_MODEL": agent.model,
            "AGENT_SLUG": agent_slug(agent.name),
            "AGENT_THINKING": agent.thinking.value,
            "AGENT_TEMPERATURE": str(agent.temperature),
            "AGENT_MAX_TOKENS": str(agent.max_tokens),
            "AGENT_SYSTEM_PROMPT": (agent.system_prompt or "You are a helpful AI assistant.")[
                :SYSTEM_PROMPT_ENV_LIMIT
            ],
            "HOME": "/root",
        }
        for key in PASSTHROUGH_API_KEYS:
            env[key] = os.environ.get(key, "")
        return env
