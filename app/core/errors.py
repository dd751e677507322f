"""Exceptions raised inside the orchestrator core."""
from __future__ import annotations


class OrchestratorError(Exception):
    """Base class for orchestrator failures."""


class ContainerRuntimeUnavailable(OrchestratorError):
    """The container runtime cannot be reached or container mode is disabled."""


class SandboxError(OrchestratorError):
    """A sandbox could not be created, started or inspected."""


class InvalidTransitionError(OrchestratorError):
    """A task status change is not permitted by the state machine."""

    def __init__(self, task_id: str, current: str, target: str) -> None:
        super().__init__(f"Task '{task_id}' cannot move from {current} to {target}")
        self.task_id = task_id
        self.current = current
        self.target = target


class AgentNotFoundError(KeyError):
    """Lookup of an unknown agent id or name."""


class TaskNotFoundError(KeyError):
    """Lookup of an unknown task id."""


class DirectorProtectedError(OrchestratorError):
    """The director agent cannot be deleted or demoted."""


class DuplicateAgentError(OrchestratorError):
    """An agent with the same name already exists."""


class AgentHaltedError(OrchestratorError):
    """Work was routed to an agent that is paused or stopped."""

    def __init__(self, agent_name: str, status: str) -> None:
        super().__init__(f"Agent '{agent_name}' is {status}; start it before resuming its tasks")
        self.agent_name = agent_name
        self.status = status
