from __future__ import annotations

import pytest

from app.config import ContainerConfig
from app.core.errors import SandboxError
from app.core.models import AgentStatus
from app.orchestration.reconciler import Reconciler
from app.services.sandbox_manager import SandboxManager

from tests.fakes import FakeContainerRuntime, make_agent


@pytest.mark.anyio
async def test_reconcile_converges_running_stopped_and_orphaned(
    sandboxes: SandboxManager, runtime: FakeContainerRuntime
) -> None:
    alpha = make_agent("Alpha", AgentStatus.RUNNING)
    beta = make_agent("Beta", AgentStatus.STOPPED)
    runtime.add("openclaw-agent-beta", running=True)
    runtime.add("openclaw-agent-gamma", running=True)
    runtime.add("unrelated", running=True, managed=False)

    report = await Reconciler(sandboxes).reconcile([alpha, beta])

    assert report.container_mode
    assert report.created == ["openclaw-agent-alpha"]
    assert report.stopped == ["openclaw-agent-beta"]
    assert report.removed == ["openclaw-agent-gamma"]
    assert report.errors == {}
    assert runtime.containers["openclaw-agent-alpha"].running
    assert not runtime.containers["openclaw-agent-beta"].running
    assert "openclaw-agent-gamma" not in runtime.containers
    assert "unrelated" in runtime.containers


@pytest.mark.anyio
async def test_reconcile_starts_stopped_sandbox_and_is_idempotent(
    sandboxes: SandboxManager, runtime: FakeContainerRuntime
) -> None:
    alpha = make_agent("Alpha", AgentStatus.RUNNING)
    paused = make_agent("Quiet", AgentStatus.PAUSED)
    runtime.add("openclaw-agent-alpha", running=False)
    reconciler = Reconciler(sandboxes)

    first = await reconciler.reconcile([alpha, paused])
    second = await reconciler.reconcile([alpha, paused])

    assert first.started == ["openclaw-agent-alpha"]
    assert sorted(second.unchanged) == ["openclaw-agent-alpha", "openclaw-agent-quiet"]
    assert second.created == second.started == second.stopped == second.removed == []
    assert runtime.create_count == 0


@pytest.mark.anyio
async def test_failed_ping_switches_to_direct_mode(
    sandboxes: SandboxManager, runtime: FakeContainerRuntime
) -> None:
    runtime.ping_ok = False

    report = await Reconciler(sandboxes).reconcile([make_agent("Alpha")])

    assert not report.container_mode
    assert not sandboxes.available
    assert runtime.containers == {}


@pytest.mark.anyio
async def test_reconcile_without_runtime_is_a_noop(container_settings: ContainerConfig) -> None:
    report = await Reconciler(SandboxManager(None, container_settings)).reconcile([make_agent("Alpha")])

    assert not report.container_mode
    assert report.created == []


@pytest.mark.anyio
async def test_listing_failure_is_reported_not_raised(
    sandboxes: SandboxManager, runtime: FakeContainerRuntime
) -> None:
    runtime.list_error = SandboxError("Container list failed for *: permission denied")

    report = await Reconciler(sandboxes).reconcile([make_agent("Alpha", AgentStatus.RUNNING)])

    assert report.container_mode
    assert "permission denied" in report.errors["*"]
    assert report.created == []
    assert runtime.create_count == 0
