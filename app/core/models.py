"""Core data models shared across orchestrator components."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

DIRECTOR_AGENT_ID = "director"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AgentStatus(str, Enum):
    """Desired lifecycle status of an agent, set by operators."""

    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"
    ERROR = "error"
    DEPLOYING = "deploying"


class AgentRole(str, Enum):
    DIRECTOR = "director"
    WORKER = "worker"
    SPECIALIST = "specialist"


class ThinkingLevel(str, Enum):
    OFF = "off"
    MINIMAL = "minimal"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    XHIGH = "xhigh"


class TaskStatus(str, Enum):
    """Task states; see ``app.orchestration.task_store`` for the transitions."""

    QUEUED = "queued"
    PARKED = "parked"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_final(self) -> bool:
        return self in FINAL_TASK_STATUSES

    @property
    def is_persisted(self) -> bool:
        return self in PERSISTED_TASK_STATUSES


FINAL_TASK_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED})
PERSISTED_TASK_STATUSES = FINAL_TASK_STATUSES | {TaskStatus.PARKED}
ACTIVE_TASK_STATUSES = frozenset({TaskStatus.QUEUED, TaskStatus.RUNNING})


class TaskPriority(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


@dataclass(slots=True)
class AgentMetrics:
    """Rolling runtime metrics for one agent, updated per task completion."""

    uptime: str = "0d 0h"
    cpu: float = 0.0
    memory: float = 0.0
    tasks_completed: int = 0
    tasks_queued: int = 0
    avg_response_time: float = 0.0
    error_rate: float = 0.0
    tokens_used: int = 0
    total_cost: float = 0.0
    last_active: Optional[datetime] = None


@dataclass(slots=True)
class AgentConfig:
    """Configuration and desired state for one agent."""

    id: str
    name: str
    description: str = ""
    role: AgentRole = AgentRole.SPECIALIST
    model: str = "anthropic/claude-sonnet-4-6"
    status: AgentStatus = AgentStatus.STOPPED
    thinking: ThinkingLevel = ThinkingLevel.MEDIUM
    temperature: float = 0.3
    max_tokens: int = 4096
    system_prompt: str = "You are a helpful AI assistant."
    max_concurrency: int = 10
    timeout: int = 60
    retry_policy: str = "exponential"
    max_retries: int = 3
    platform_access: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    metrics: AgentMetrics = field(default_factory=AgentMetrics)

    @property
    def is_director(self) -> bool:
        return self.id == DIRECTOR_AGENT_ID


@dataclass(slots=True)
class SandboxStatus:
    """Observed state of an agent sandbox, derived from the container runtime."""

    name: str
    exists: bool = False
    running: bool = False
    container_id: Optional[str] = None
    started_at: Optional[datetime] = None
    labels: Dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class SandboxUsage:
    cpu_percent: float
    memory_percent: float


@dataclass(slots=True)
class Task:
    """A unit of work routed to one agent."""

    id: str
    agent_id: str
    agent_name: str
    input: str
    type: str = "general"
    status: TaskStatus = TaskStatus.QUEUED
    priority: TaskPriority = TaskPriority.MEDIUM
    output: str = ""
    error: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration: Optional[float] = None
    tokens_used: int = 0
    cost: float = 0.0
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class DispatchResult:
    """Normalized outcome of one execution attempt."""

    success: bool
    agent_id: str
    agent_name: str
    duration_ms: int = 0
    reply: Optional[str] = None
    error: Optional[str] = None
    model: Optional[str] = None
    tokens_used: int = 0

    @property
    def duration_seconds(self) -> float:
        return self.duration_ms / 1000

    @property
    def text(self) -> str:
        return self.reply or self.error or "No output"


@dataclass(slots=True)
class AnalyticsDataPoint:
    date: str
    requests: int = 0
    tokens: int = 0
    cost: float = 0.0
    errors: int = 0
    avg_latency: float = 0.0
    synthetic: bool = False
