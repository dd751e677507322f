"""Shared fixtures: an in-memory container runtime and a wired orchestrator."""
from __future__ import annotations

import pytest

from app.config import ContainerConfig, DispatchConfig
from app.orchestration.dispatcher import TaskDispatcher
from app.orchestration.metrics import MetricsAggregator
from app.orchestration.orchestrator import Orchestrator
from app.orchestration.task_store import TaskStore
from app.services.agent_registry import AgentRegistry
from app.services.sandbox_manager import SandboxManager

from tests.fakes import FakeContainerRuntime


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def runtime() -> FakeContainerRuntime:
    return FakeContainerRuntime()


@pytest.fixture
def container_settings() -> ContainerConfig:
    return ContainerConfig(settle_seconds=0)


@pytest.fixture
def dispatch_settings() -> DispatchConfig:
    return DispatchConfig(exec_timeout=5.0)


@pytest.fixture
def sandboxes(runtime: FakeContainerRuntime, container_settings: ContainerConfig) -> SandboxManager:
    return SandboxManager(runtime, container_settings)


@pytest.fixture
def orchestrator(sandboxes: SandboxManager, dispatch_settings: DispatchConfig) -> Orchestrator:
    return Orchestrator(
        registry=AgentRegistry(),
        tasks=TaskStore(),
        dispatcher=TaskDispatcher(sandboxes, dispatch_settings),
        sandboxes=sandboxes,
        metrics=MetricsAggregator(),
    )
