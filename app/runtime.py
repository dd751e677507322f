"""Application runtime composition helpers."""
from __future__ import annotations

from functools import lru_cache
from typing import Optional

import structlog

from app.config import Config, config
from app.core.errors import ContainerRuntimeUnavailable
from app.core.locks import LockRegistry
from app.orchestration.dispatcher import TaskDispatcher
from app.orchestration.metrics import MetricsAggregator
from app.orchestration.orchestrator import Orchestrator
from app.orchestration.task_store import TaskStore
from app.services.agent_registry import AgentRegistry
from app.services.broadcaster import LiveUpdateBroadcaster
from app.services.container_runtime import ContainerRuntimeClient
from app.services.sandbox_manager import SandboxManager

logger = structlog.get_logger(__name__)


@lru_cache
def get_config() -> Config:
    return config


@lru_cache
def get_container_runtime() -> Optional[ContainerRuntimeClient]:
    settings = get_config().container
    if not settings.enabled:
        logger.info("container_mode_off")
        return None
    try:
        return ContainerRuntimeClient.from_config(settings)
    except ContainerRuntimeUnavailable as exc:
        logger.warning("container_runtime_unavailable", error=str(exc))
        return None


@lru_cache
def get_locks() -> LockRegistry:
    return LockRegistry()


@lru_cache
def get_sandbox_manager() -> SandboxManager:
    return SandboxManager(get_container_runtime(), get_config().container, get_locks())


@lru_cache
def get_agent_registry() -> AgentRegistry:
    return AgentRegistry(get_config().storage.agents_path)


@lru_cache
def get_task_store() -> TaskStore:
    storage = get_config().storage
    return TaskStore(storage.tasks_path, history_limit=storage.task_history_limit)


@lru_cache
def get_metrics() -> MetricsAggregator:
    return MetricsAggregator(window_days=get_config().storage.analytics_window_days)


@lru_cache
def get_dispatcher() -> TaskDispatcher:
    return TaskDispatcher(get_sandbox_manager(), get_config().dispatch)


@lru_cache
def get_orchestrator() -> Orchestrator:
    return Orchestrator(
        registry=get_agent_registry(),
        tasks=get_task_store(),
        dispatcher=get_dispatcher(),
        sandboxes=get_sandbox_manager(),
        metrics=get_metrics(),
    )


@lru_cache
def get_broadcaster() -> LiveUpdateBroadcaster:
    orchestrator = get_orchestrator()
    settings = get_config().stream
    return LiveUpdateBroadcaster(lambda: orchestrator.snapshot(settings.task_limit), settings)
