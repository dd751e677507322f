"""Orchestrator responsible for agent lifecycle and task routing."""
from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional, Set, Tuple

import structlog

from app.core.errors import AgentHaltedError, OrchestratorError
from app.core.models import (
    AgentConfig,
    AgentStatus,
    AnalyticsDataPoint,
    DispatchResult,
    SandboxStatus,
    Task,
    TaskPriority,
    TaskStatus,
    utcnow,
)
from app.orchestration.actions import process_agent_response
from app.orchestration.dispatcher import TaskDispatcher, resolve_platform_env
from app.orchestration.metrics import MetricsAggregator
from app.orchestration.reconciler import Reconciler, ReconcileReport
from app.orchestration.task_store import TaskStore
from app.services.agent_registry import AgentRegistry
from app.services.sandbox_manager import SandboxManager

logger = structlog.get_logger(__name__)

INBOUND_REPLY_LIMIT = 3000
INBOUND_TRUNCATION_MARKER = "\n\n_...response truncated_"
PARKABLE_STATUSES = frozenset({AgentStatus.PAUSED, AgentStatus.STOPPED})


class Orchestrator:
    """Coordinate agents, their sandboxes and the tasks routed to them.

    Agent status in the registry is the desired state; the sandbox manager
    is driven towards it on every lifecycle call and by :meth:`reconcile`.
    Tasks for agents that are paused or stopped are parked instead of being
    dispatched.
    """

    def __init__(
        self,
        *,
        registry: AgentRegistry,
        tasks: TaskStore,
        dispatcher: TaskDispatcher,
        sandboxes: SandboxManager,
        metrics: MetricsAggregator,
    ) -> None:
        self._registry = registry
        self._tasks = tasks
        self._dispatcher = dispatcher
        self._sandboxes = sandboxes
        self._metrics = metrics
        self._reconciler = Reconciler(sandboxes)
        self._inflight: Set[asyncio.Task] = set()
        tasks.add_terminal_hook(self._on_task_settled)
        metrics.rebuild_analytics(tasks.all())

    @property
    def registry(self) -> AgentRegistry:
        return self._registry

    @property
    def tasks(self) -> TaskStore:
        return self._tasks

    @property
    def container_mode(self) -> bool:
        return self._sandboxes.available

    # Agents

    def list_agents(self) -> List[AgentConfig]:
        return self._registry.list()

    def get_agent(self, agent_id: str) -> AgentConfig:
        return self._registry.get(agent_id)

    async def create_agent(self, name: str, *, auto_start: bool = False, **fields: Any) -> AgentConfig:
        agent = self._registry.create(name, **fields)
        if auto_start:
            agent = await self.start_agent(agent.id)
        return agent

    async def update_agent(self, agent_id: str, **changes: Any) -> AgentConfig:
        return self._registry.update(agent_id, **changes)

    async def delete_agent(self, agent_id: str) -> AgentConfig:
        agent = self._registry.delete(agent_id)
        try:
            await self._sandboxes.remove(agent.name)
        except OrchestratorError as exc:
            logger.warning("sandbox_remove_failed", agent=agent.name, error=str(exc))
        return agent

    async def start_agent(self, agent_id: str) -> AgentConfig:
        agent = self._registry.set_status(agent_id, AgentStatus.RUNNING)
        if self._sandboxes.available:
            try:
                await self._sandboxes.ensure_created(agent)
            except OrchestratorError as exc:
                # Dispatch recreates the sandbox lazily; the agent stays running.
                logger.warning("sandbox_start_failed", agent=agent.name, error=str(exc))
        return agent

    async def pause_agent(self, agent_id: str) -> AgentConfig:
        return await self._halt(agent_id, AgentStatus.PAUSED)

    async def stop_agent(self, agent_id: str) -> AgentConfig:
        return await self._halt(agent_id, AgentStatus.STOPPED)

    async def sandbox_status(self, agent_id: str) -> SandboxStatus:
        """Inspect the agent's sandbox and refresh its resource metrics."""
        agent = self._registry.get(agent_id)
        sandbox = await self._sandboxes.status(agent.name)
        usage = await self._sandboxes.stats(agent.name) if sandbox.running else None
        self._metrics.apply_usage(agent, sandbox, usage)
        return sandbox

    async def refresh_agent_usage(self) -> None:
        for agent in self._registry.list():
            try:
                await self.sandbox_status(agent.id)
            except OrchestratorError as exc:
                logger.debug("usage_refresh_failed", agent=agent.name, error=str(exc))

    async def _halt(self, agent_id: str, status: AgentStatus) -> AgentConfig:
        agent = self._registry.set_status(agent_id, status)
        try:
            await self._sandboxes.stop(agent.name)
        except OrchestratorError as exc:
            logger.warning("sandbox_stop_failed", agent=agent.name, error=str(exc))
        return agent

    # Tasks

    async def assign_task(
        self,
        agent_id: str,
        input_text: str,
        *,
        type: str = "general",
        priority: TaskPriority = TaskPriority.MEDIUM,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Task:
        """Create a task and dispatch it in the background, or park it."""
        agent = self._registry.get(agent_id)
        if agent.status in PARKABLE_STATUSES:
            task = self._tasks.create(
                agent_id=agent.id,
                agent_name=agent.name,
                input=input_text,
                type=type,
                priority=priority,
                metadata=metadata,
                status=TaskStatus.PARKED,
            )
            logger.info("task_parked", task_id=task.id, agent=agent.name, agent_status=agent.status.value)
            return task

        task = self._tasks.create(
            agent_id=agent.id,
            agent_name=agent.name,
            input=input_text,
            type=type,
            priority=priority,
            metadata=metadata,
        )
        self._spawn(task, agent)
        return task

    async def run_task(
        self,
        agent_id: str,
        input_text: str,
        *,
        type: str = "general",
        priority: TaskPriority = TaskPriority.MEDIUM,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Tuple[Task, DispatchResult]:
        """Create a task, dispatch it and wait for the result."""
        agent = self._registry.get(agent_id)
        task = self._tasks.create(
            agent_id=agent.id,
            agent_name=agent.name,
            input=input_text,
            type=type,
            priority=priority,
            metadata=metadata,
        )
        result = await self._execute(task, agent)
        return task, result

    def cancel_task(self, task_id: str) -> Task:
        """Cancel a task; an execution already in flight runs on but its result is dropped."""
        task = self._tasks.cancel(task_id)
        logger.info("task_cancelled", task_id=task.id, agent=task.agent_name)
        return task

    async def resume_task(self, task_id: str) -> Task:
        """Move a parked task back to the queue and dispatch it.

        The task stays parked while its agent is paused or stopped.
        """
        task = self._tasks.get(task_id)
        agent = self._registry.get(task.agent_id)
        if task.status == TaskStatus.PARKED and agent.status in PARKABLE_STATUSES:
            raise AgentHaltedError(agent.name, agent.status.value)
        task = self._tasks.resume(task_id)
        logger.info("task_resumed", task_id=task.id, agent=agent.name)
        self._spawn(task, agent)
        return task

    def _spawn(self, task: Task, agent: AgentConfig) -> None:
        background = asyncio.create_task(self._execute(task, agent), name=f"dispatch-{task.id}")
        self._inflight.add(background)
        background.add_done_callback(self._inflight.discard)

    async def _execute(self, task: Task, agent: AgentConfig) -> DispatchResult:
        if task.status != TaskStatus.QUEUED:
            # Cancelled before the dispatch got scheduled.
            logger.info("task_dispatch_skipped", task_id=task.id, status=task.status.value)
            return DispatchResult(
                success=False,
                agent_id=agent.id,
                agent_name=agent.name,
                error=f"Task is {task.status.value}",
            )
        if agent.status in PARKABLE_STATUSES:
            # Paused or stopped agents take no work; park it again.
            self._tasks.transition(task.id, TaskStatus.PARKED)
            logger.info("task_parked", task_id=task.id, agent=agent.name, agent_status=agent.status.value)
            return DispatchResult(
                success=False,
                agent_id=agent.id,
                agent_name=agent.name,
                error=f"Agent is {agent.status.value}",
            )
        self._tasks.transition(task.id, TaskStatus.RUNNING)
        logger.info("task_dispatched", task_id=task.id, agent=agent.name, mode=self._dispatcher.mode)
        result = await self._dispatcher.dispatch(
            agent,
            task,
            task.input,
            session_id=f"worker-{agent.id}",
            extra_env=resolve_platform_env(agent.platform_access),
        )
        self._apply_result(task, agent, result)
        return result

    def _apply_result(self, task: Task, agent: AgentConfig, result: DispatchResult) -> None:
        if task.status != TaskStatus.RUNNING:
            # Cancelled while in flight.
            logger.info("task_result_discarded", task_id=task.id, status=task.status.value)
            return
        task_cost = self._metrics.record(agent, result, self._tasks.count_active(agent.id))
        self._tasks.transition(
            task.id,
            TaskStatus.COMPLETED if result.success else TaskStatus.FAILED,
            output=result.text,
            error=result.error,
            duration=result.duration_seconds,
            tokens_used=result.tokens_used,
            cost=task_cost,
        )
        self._registry.save()
        logger.info(
            "task_finished",
            task_id=task.id,
            agent=agent.name,
            success=result.success,
            duration_ms=result.duration_ms,
            tokens=result.tokens_used,
        )

    def _on_task_settled(self, task: Task) -> None:
        agent = self._registry.find(task.agent_id)
        if agent is not None:
            agent.metrics.tasks_queued = self._tasks.count_active(agent.id)
        self._metrics.rebuild_analytics(self._tasks.all())

    # Reconciliation and reporting

    async def reconcile(self) -> ReconcileReport:
        return await self._reconciler.reconcile(self._registry.list())

    def summary(self) -> Dict[str, Any]:
        return self._metrics.summary(self._registry.list(), self._tasks.all())

    def analytics(self) -> List[AnalyticsDataPoint]:
        return self._metrics.analytics

    def snapshot(self, limit: int = 50) -> Dict[str, Any]:
        """Point-in-time view pushed to live-update observers."""
        return {
            "tasks": self._tasks.list(limit=limit),
            "summary": self.summary(),
            "agents": self._registry.list(),
            "timestamp": utcnow(),
        }

    # Messaging

    async def handle_inbound(
        self,
        target: str,
        text: str,
        *,
        command: Optional[str] = None,
        reply_token: Optional[str] = None,
    ) -> str:
        """Run an inbound message against the named agent and return the reply text."""
        agent = self._registry.find(target) or self._registry.find_by_name(target)
        if agent is None:
            return f"Agent *{target}* is not configured yet. Create the agent first."
        if agent.status != AgentStatus.RUNNING:
            return f"Agent *{agent.name}* is currently *{agent.status.value}*. Start it to process messages."

        if command:
            input_text = f"Command: {command} {text}".rstrip()
            task_type = "inbound-command"
        else:
            input_text = text
            task_type = "inbound-message"
        metadata: Dict[str, Any] = {"source": "messaging"}
        if command:
            metadata["command"] = command
        if reply_token:
            metadata["reply_token"] = reply_token

        _, result = await self.run_task(agent.id, input_text, type=task_type, metadata=metadata)
        reply = result.text
        if agent.is_director and result.success:
            reply = (await process_agent_response(self, reply)).display_text
        if len(reply) > INBOUND_REPLY_LIMIT:
            reply = reply[:INBOUND_REPLY_LIMIT] + INBOUND_TRUNCATION_MARKER
        return reply

    async def drain(self) -> None:
        """Wait until every background dispatch has settled."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    async def shutdown(self) -> None:
        """Wait for in-flight dispatches, then persist agent metrics."""
        await self.drain()
        self._registry.save()
        runtime = self._sandboxes.runtime
        if runtime is not None:
            runtime.close()
