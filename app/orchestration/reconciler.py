"""Converge sandbox state with the agents' desired status."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

import structlog

from app.core.errors import OrchestratorError
from app.core.models import AgentConfig, AgentStatus, SandboxStatus
from app.services.sandbox_manager import SandboxManager

logger = structlog.get_logger(__name__)

ORPHAN_STOP_GRACE_SECONDS = 2


@dataclass(slots=True)
class ReconcileReport:
    """What one reconciliation pass changed."""

    container_mode: bool = True
    created: List[str] = field(default_factory=list)
    started: List[str] = field(default_factory=list)
    stopped: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)


class Reconciler:
    """Drive the sandbox manager until observed sandboxes match the registry.

    Running agents get a running sandbox, stopped and paused agents keep
    their sandbox allocated but stopped, and managed sandboxes no known
    agent claims are swept as orphans.
    """

    def __init__(self, sandboxes: SandboxManager) -> None:
        self._sandboxes = sandboxes

    async def reconcile(self, agents: Iterable[AgentConfig]) -> ReconcileReport:
        if not self._sandboxes.available:
            return ReconcileReport(container_mode=False)

        runtime = self._sandboxes.runtime
        if not await runtime.ping():
            self._sandboxes.disable("Docker ping failed")
            return ReconcileReport(container_mode=False)

        logger.info("reconcile_started")
        report = ReconcileReport()
        try:
            managed = await self._sandboxes.list_managed()
        except OrchestratorError as exc:
            report.errors["*"] = str(exc)
            logger.error("reconcile_list_failed", error=str(exc))
            return report
        existing: Dict[str, SandboxStatus] = {sandbox.name: sandbox for sandbox in managed}

        for agent in agents:
            name = self._sandboxes.name_for(agent.name)
            sandbox = existing.pop(name, None)
            try:
                await self._converge(agent, name, sandbox, report)
            except OrchestratorError as exc:
                report.errors[name] = str(exc)
                logger.error("reconcile_agent_failed", container=name, agent=agent.name, error=str(exc))

        for orphan in existing.values():
            try:
                await self._sandboxes.remove_container(
                    orphan.name, grace_period=ORPHAN_STOP_GRACE_SECONDS
                )
                report.removed.append(orphan.name)
                logger.info("orphan_sandbox_removed", container=orphan.name)
            except OrchestratorError as exc:
                report.errors[orphan.name] = str(exc)
                logger.error("orphan_sandbox_remove_failed", container=orphan.name, error=str(exc))

        logger.info(
            "reconcile_complete",
            created=len(report.created),
            started=len(report.started),
            stopped=len(report.stopped),
            removed=len(report.removed),
            errors=len(report.errors),
        )
        return report

    async def _converge(
        self,
        agent: AgentConfig,
        name: str,
        sandbox: Optional[SandboxStatus],
        report: ReconcileReport,
    ) -> None:
        if agent.status == AgentStatus.RUNNING:
            if sandbox is None:
                logger.info("sandbox_recreating", container=name, agent=agent.name)
                await self._sandboxes.ensure_created(agent)
                report.created.append(name)
            elif not sandbox.running:
                await self._sandboxes.start_container(name)
                report.started.append(name)
            else:
                report.unchanged.append(name)
        elif agent.status in (AgentStatus.STOPPED, AgentStatus.PAUSED):
            if sandbox is not None and sandbox.running:
                await self._sandboxes.stop_container(name)
                report.stopped.append(name)
            else:
                report.unchanged.append(name)
        else:
            report.unchanged.append(name)
