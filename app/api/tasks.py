"""Task routing endpoints and the live update stream."""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from app.api.routes import to_http_error
from app.core.errors import OrchestratorError
from app.core.models import Task, TaskPriority, TaskStatus
from app.orchestration.orchestrator import Orchestrator
from app.runtime import get_broadcaster, get_orchestrator
from app.services.broadcaster import SSE_HEADERS, LiveUpdateBroadcaster

router = APIRouter(prefix="/tasks", tags=["tasks"])


class TaskCreateRequest(BaseModel):
    agent_id: str = Field(..., description="Agent that should run the task")
    input: str = Field(..., min_length=1)
    type: str = "general"
    priority: TaskPriority = TaskPriority.MEDIUM
    metadata: Dict[str, Any] = Field(default_factory=dict)


@router.get("", response_model=List[Task])
async def list_tasks(
    status_filter: Optional[TaskStatus] = Query(None, alias="status"),
    agent_id: Optional[str] = None,
    limit: Optional[int] = Query(None, gt=0),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> List[Task]:
    return orchestrator.tasks.list(status=status_filter, agent_id=agent_id, limit=limit)


@router.post("", response_model=Task, status_code=status.HTTP_202_ACCEPTED)
async def create_task(
    request: TaskCreateRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> Task:
    """Queue a task; it is parked when the agent is paused or stopped."""
    try:
        return await orchestrator.assign_task(
            request.agent_id,
            request.input,
            type=request.type,
            priority=request.priority,
            metadata=request.metadata,
        )
    except KeyError as exc:
        raise to_http_error(exc) from exc


@router.get("/stream")
async def stream_tasks(broadcaster: LiveUpdateBroadcaster = Depends(get_broadcaster)) -> StreamingResponse:
    return StreamingResponse(
        broadcaster.subscribe(),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@router.get("/{task_id}", response_model=Task)
async def get_task(task_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)) -> Task:
    try:
        return orchestrator.tasks.get(task_id)
    except KeyError as exc:
        raise to_http_error(exc) from exc


@router.post("/{task_id}/cancel", response_model=Task)
async def cancel_task(task_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)) -> Task:
    try:
        return orchestrator.cancel_task(task_id)
    except (KeyError, OrchestratorError) as exc:
        raise to_http_error(exc) from exc


@router.post("/{task_id}/resume", response_model=Task)
async def resume_task(task_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)) -> Task:
    try:
        return await orchestrator.resume_task(task_id)
    except (KeyError, OrchestratorError) as exc:
        raise to_http_error(exc) from exc
