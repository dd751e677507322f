from __future__ import annotations

import json
from pathlib import Path
from typing import List

import pytest

from app.core.errors import InvalidTransitionError, TaskNotFoundError
from app.core.models import Task, TaskPriority, TaskStatus
from app.orchestration.task_store import TaskStore


def new_task(store: TaskStore, **overrides) -> Task:
    fields = {"agent_id": "agent-writer", "agent_name": "Writer", "input": "do it"}
    fields.update(overrides)
    return store.create(**fields)


def test_lifecycle_stamps_timestamps_and_duration() -> None:
    store = TaskStore()
    task = new_task(store, priority=TaskPriority.HIGH)

    assert task.id.startswith("task-")
    assert task.status == TaskStatus.QUEUED
    store.transition(task.id, TaskStatus.RUNNING)
    assert task.started_at is not None

    store.transition(task.id, TaskStatus.COMPLETED, output="ok", duration=2.34, tokens_used=10, cost=0.5)

    assert task.status == TaskStatus.COMPLETED
    assert task.completed_at is not None
    assert task.duration == 2.3
    assert (task.output, task.tokens_used, task.cost) == ("ok", 10, 0.5)


@pytest.mark.parametrize(
    "path, target",
    [
        ([], TaskStatus.COMPLETED),
        ([TaskStatus.PARKED], TaskStatus.RUNNING),
        ([TaskStatus.RUNNING, TaskStatus.FAILED], TaskStatus.COMPLETED),
        ([TaskStatus.CANCELLED], TaskStatus.QUEUED),
    ],
)
def test_forbidden_transitions_raise(path: List[TaskStatus], target: TaskStatus) -> None:
    store = TaskStore()
    task = new_task(store)
    for status in path:
        store.transition(task.id, status)

    with pytest.raises(InvalidTransitionError):
        store.transition(task.id, target)


def test_final_state_is_never_overwritten() -> None:
    store = TaskStore()
    task = new_task(store)
    store.transition(task.id, TaskStatus.RUNNING)
    store.cancel(task.id)

    with pytest.raises(InvalidTransitionError):
        store.transition(task.id, TaskStatus.COMPLETED, output="late")
    assert task.status == TaskStatus.CANCELLED
    assert task.output == ""


def test_resume_only_applies_to_parked_tasks() -> None:
    store = TaskStore()
    parked = new_task(store, status=TaskStatus.PARKED)
    queued = new_task(store)

    assert store.resume(parked.id).status == TaskStatus.QUEUED
    with pytest.raises(InvalidTransitionError):
        store.resume(queued.id)


def test_list_filters_newest_first() -> None:
    store = TaskStore()
    first = new_task(store)
    second = new_task(store, agent_id="agent-other", agent_name="Other")
    third = new_task(store)
    store.transition(third.id, TaskStatus.RUNNING)

    assert [task.id for task in store.list()] == [third.id, second.id, first.id]
    assert [task.id for task in store.list(agent_id="agent-writer")] == [third.id, first.id]
    assert [task.id for task in store.list(status=TaskStatus.QUEUED)] == [second.id, first.id]
    assert len(store.list(limit=1)) == 1
    assert store.count_active("agent-writer") == 2


def test_unknown_task_raises_key_error() -> None:
    with pytest.raises(TaskNotFoundError):
        TaskStore().get("task-missing")


def test_hooks_fire_for_persisted_states_only() -> None:
    store = TaskStore()
    seen: List[TaskStatus] = []
    store.add_terminal_hook(lambda task: seen.append(task.status))

    task = new_task(store)
    store.transition(task.id, TaskStatus.RUNNING)
    store.transition(task.id, TaskStatus.FAILED, error="boom")
    new_task(store, status=TaskStatus.PARKED)

    assert seen == [TaskStatus.FAILED, TaskStatus.PARKED]


def test_failing_hook_does_not_break_transition() -> None:
    store = TaskStore()

    def broken(task: Task) -> None:
        raise RuntimeError("hook failure")

    store.add_terminal_hook(broken)
    task = new_task(store)
    store.cancel(task.id)

    assert task.status == TaskStatus.CANCELLED


def test_persisted_tail_survives_restart(tmp_path: Path) -> None:
    path = tmp_path / "tasks.json"
    store = TaskStore(path, history_limit=2)
    done = [new_task(store, input=f"job {index}") for index in range(3)]
    for task in done:
        store.transition(task.id, TaskStatus.RUNNING)
        store.transition(task.id, TaskStatus.COMPLETED, output=task.input)
    parked = new_task(store, status=TaskStatus.PARKED)
    in_flight = new_task(store)

    payload = json.loads(path.read_text())
    assert payload["version"] == 1
    assert len(payload["tasks"]) == 2

    reloaded = TaskStore(path, history_limit=2)
    ids = {task.id for task in reloaded.all()}
    assert parked.id in ids
    assert in_flight.id not in ids
    restored = reloaded.get(parked.id)
    assert restored.status == TaskStatus.PARKED
    assert reloaded.resume(parked.id).status == TaskStatus.QUEUED


def test_unreadable_store_starts_empty(tmp_path: Path) -> None:
    path = tmp_path / "tasks.json"
    path.write_text("{not json")

    assert len(TaskStore(path)) == 0
