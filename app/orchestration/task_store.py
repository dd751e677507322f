"""In-memory task registry with a bounded, persisted tail of settled tasks.

Allowed transitions::

    queued  -> running | parked | cancelled
    parked  -> queued | cancelled
    running -> completed | failed | cancelled

Completed, failed and cancelled are final: nothing overwrites them. Those
three plus parked are written to the persisted tail; queued and running
tasks live only in memory and are gone after a restart.

All mutations happen on the event loop thread, so single-field updates need
no further locking.
"""
from __future__ import annotations

import json
import uuid
from pathlib import Path
from typing import Any, Callable, Dict, FrozenSet, List, Optional

import structlog
from pydantic import TypeAdapter

from app.core.errors import InvalidTransitionError, TaskNotFoundError
from app.core.models import (
    ACTIVE_TASK_STATUSES,
    Task,
    TaskPriority,
    TaskStatus,
    utcnow,
)

logger = structlog.get_logger(__name__)

STORE_VERSION = 1

TRANSITIONS: Dict[TaskStatus, FrozenSet[TaskStatus]] = {
    TaskStatus.QUEUED: frozenset({TaskStatus.RUNNING, TaskStatus.PARKED, TaskStatus.CANCELLED}),
    TaskStatus.PARKED: frozenset({TaskStatus.QUEUED, TaskStatus.CANCELLED}),
    TaskStatus.RUNNING: frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED}),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
}

TaskHook = Callable[[Task], None]

_tasks_adapter = TypeAdapter(List[Task])


class TaskStore:
    def __init__(self, path: Optional[Path] = None, history_limit: int = 500) -> None:
        self._path = path
        self._history_limit = history_limit
        self._tasks: List[Task] = []
        self._index: Dict[str, Task] = {}
        self._hooks: List[TaskHook] = []
        self._load()

    def add_terminal_hook(self, hook: TaskHook) -> None:
        """Call ``hook`` whenever a task enters a persisted state."""
        self._hooks.append(hook)

    def create(
        self,
        *,
        agent_id: str,
        agent_name: str,
        input: str,
        type: str = "general",
        priority: TaskPriority = TaskPriority.MEDIUM,
        metadata: Optional[Dict[str, Any]] = None,
        status: TaskStatus = TaskStatus.QUEUED,
    ) -> Task:
        if status not in (TaskStatus.QUEUED, TaskStatus.PARKED):
            raise ValueError(f"Tasks start queued or parked, not {status.value}")
        task = Task(
            id=f"task-{uuid.uuid4().hex[:8]}",
            agent_id=agent_id,
            agent_name=agent_name,
            input=input,
            type=type,
            priority=priority,
            status=status,
            metadata=dict(metadata or {}),
        )
        self._tasks.insert(0, task)
        self._index[task.id] = task
        if status == TaskStatus.PARKED:
            self._settled(task)
        return task

    def get(self, task_id: str) -> Task:
        task = self._index.get(task_id)
        if task is None:
            raise TaskNotFoundError(f"Task '{task_id}' not found")
        return task

    def find(self, task_id: str) -> Optional[Task]:
        return self._index.get(task_id)

    def list(
        self,
        *,
        status: Optional[TaskStatus] = None,
        agent_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Task]:
        """Tasks newest first, optionally filtered."""
        result = [
            task
            for task in self._tasks
            if (status is None or task.status == status)
            and (agent_id is None or task.agent_id == agent_id)
        ]
        result.sort(key=lambda task: task.created_at, reverse=True)
        return result[:limit] if limit else result

    def count_active(self, agent_id: str) -> int:
        return sum(
            1
            for task in self._tasks
            if task.agent_id == agent_id and task.status in ACTIVE_TASK_STATUSES
        )

    def transition(
        self,
        task_id: str,
        status: TaskStatus,
        *,
        output: Optional[str] = None,
        error: Optional[str] = None,
        duration: Optional[float] = None,
        tokens_used: Optional[int] = None,
        cost: Optional[float] = None,
    ) -> Task:
        """Move a task to ``status`` and stamp the matching timestamps.

        Raises :class:`InvalidTransitionError` for moves the state machine
        forbids, including any attempt to leave a final state.
        """
        task = self.get(task_id)
        if status not in TRANSITIONS[task.status]:
            raise InvalidTransitionError(task.id, task.status.value, status.value)

        was_persisted = task.status.is_persisted
        now = utcnow()
        task.status = status
        if status == TaskStatus.RUNNING:
            task.started_at = now
        elif status == TaskStatus.QUEUED:
            task.started_at = None
            task.completed_at = None
        if output is not None:
            task.output = output
        if error is not None:
            task.error = error
        if tokens_used is not None:
            task.tokens_used = tokens_used
        if cost is not None:
            task.cost = cost
        if status.is_final:
            task.completed_at = now
            if duration is not None:
                task.duration = round(duration, 1)
            elif task.started_at is not None:
                task.duration = round((now - task.started_at).total_seconds(), 1)

        if status.is_persisted:
            self._settled(task)
        elif was_persisted:
            self._persist()
        return task

    def cancel(self, task_id: str) -> Task:
        return self.transition(task_id, TaskStatus.CANCELLED)

    def resume(self, task_id: str) -> Task:
        """Operator resume: a parked task goes back to the queue."""
        task = self.get(task_id)
        if task.status != TaskStatus.PARKED:
            raise InvalidTransitionError(task.id, task.status.value, TaskStatus.QUEUED.value)
        return self.transition(task_id, TaskStatus.QUEUED)

    def all(self) -> List[Task]:
        return list(self._tasks)

    def __len__(self) -> int:
        return len(self._tasks)

    def _settled(self, task: Task) -> None:
        self._persist()
        for hook in self._hooks:
            try:
                hook(task)
            except Exception:  # noqa: BLE001
                logger.exception("task_hook_failed", task_id=task.id)

    def _persisted_tail(self) -> List[Task]:
        settled = [task for task in self._tasks if task.status.is_persisted]
        return settled[: self._history_limit]

    def _persist(self) -> None:
        if self._path is None:
            return
        payload = {
            "version": STORE_VERSION,
            "tasks": _tasks_adapter.dump_python(self._persisted_tail(), mode="json"),
        }
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self._path.with_suffix(".tmp")
            tmp_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
            tmp_path.replace(self._path)
        except OSError as exc:
            logger.error("task_store_save_failed", path=str(self._path), error=str(exc))

    def _load(self) -> None:
        if self._path is None or not self._path.exists():
            return
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
            if raw.get("version") != STORE_VERSION:
                logger.warning("task_store_version_mismatch", version=raw.get("version"))
                return
            tasks = _tasks_adapter.validate_python(raw.get("tasks", []))
        except (OSError, ValueError) as exc:
            logger.error("task_store_load_failed", path=str(self._path), error=str(exc))
            return
        for task in tasks:
            if task.status.is_persisted:
                self._tasks.append(task)
                self._index[task.id] = task
        self._tasks.sort(key=lambda task: task.created_at, reverse=True)
        logger.info("task_store_loaded", count=len(self._tasks), path=str(self._path))
