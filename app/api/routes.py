"""HTTP API exposing agent lifecycle controls."""
from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from app.core.errors import (
    AgentHaltedError,
    DirectorProtectedError,
    DuplicateAgentError,
    InvalidTransitionError,
    OrchestratorError,
)
from app.core.models import AgentConfig, AgentRole, SandboxStatus, ThinkingLevel
from app.orchestration.orchestrator import Orchestrator
from app.runtime import get_orchestrator

router = APIRouter(prefix="/agents", tags=["agents"])


def to_http_error(exc: Exception) -> HTTPException:
    """Map orchestrator failures onto HTTP status codes."""
    if isinstance(exc, KeyError):
        detail = exc.args[0] if exc.args else str(exc)
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=detail)
    if isinstance(exc, DirectorProtectedError):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))
    if isinstance(exc, (AgentHaltedError, DuplicateAgentError, InvalidTransitionError)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, OrchestratorError):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


class AgentCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, description="Unique agent name")
    description: str = ""
    role: AgentRole = AgentRole.SPECIALIST
    model: str = "anthropic/claude-sonnet-4-6"
    thinking: ThinkingLevel = ThinkingLevel.MEDIUM
    temperature: float = Field(0.3, ge=0.0, le=2.0)
    max_tokens: int = Field(4096, gt=0)
    system_prompt: Optional[str] = None
    max_concurrency: int = Field(10, gt=0)
    timeout: int = Field(60, gt=0)
    platform_access: List[str] = Field(default_factory=list)
    auto_start: bool = Field(False, description="Start the agent and its sandbox right away")


class AgentUpdateRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    role: Optional[AgentRole] = None
    model: Optional[str] = None
    thinking: Optional[ThinkingLevel] = None
    temperature: Optional[float] = Field(None, ge=0.0, le=2.0)
    max_tokens: Optional[int] = Field(None, gt=0)
    system_prompt: Optional[str] = None
    max_concurrency: Optional[int] = Field(None, gt=0)
    timeout: Optional[int] = Field(None, gt=0)
    platform_access: Optional[List[str]] = None


@router.post("", response_model=AgentConfig, status_code=status.HTTP_201_CREATED)
async def create_agent(
    request: AgentCreateRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> AgentConfig:
    fields = request.model_dump(exclude={"name", "auto_start"}, exclude_none=True)
    try:
        return await orchestrator.create_agent(request.name, auto_start=request.auto_start, **fields)
    except (KeyError, ValueError, OrchestratorError) as exc:
        raise to_http_error(exc) from exc


@router.get("", response_model=List[AgentConfig])
async def list_agents(orchestrator: Orchestrator = Depends(get_orchestrator)) -> List[AgentConfig]:
    return orchestrator.list_agents()


@router.get("/{agent_id}", response_model=AgentConfig)
async def get_agent(agent_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)) -> AgentConfig:
    try:
        return orchestrator.get_agent(agent_id)
    except KeyError as exc:
        raise to_http_error(exc) from exc


@router.patch("/{agent_id}", response_model=AgentConfig)
async def update_agent(
    agent_id: str,
    request: AgentUpdateRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> AgentConfig:
    try:
        return await orchestrator.update_agent(agent_id, **request.model_dump(exclude_unset=True))
    except (KeyError, ValueError, OrchestratorError) as exc:
        raise to_http_error(exc) from exc


@router.delete("/{agent_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_agent(agent_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)) -> None:
    try:
        await orchestrator.delete_agent(agent_id)
    except (KeyError, OrchestratorError) as exc:
        raise to_http_error(exc) from exc


@router.post("/{agent_id}/start", response_model=AgentConfig)
async def start_agent(agent_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)) -> AgentConfig:
    try:
        return await orchestrator.start_agent(agent_id)
    except KeyError as exc:
        raise to_http_error(exc) from exc


@router.post("/{agent_id}/pause", response_model=AgentConfig)
async def pause_agent(agent_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)) -> AgentConfig:
    try:
        return await orchestrator.pause_agent(agent_id)
    except KeyError as exc:
        raise to_http_error(exc) from exc


@router.post("/{agent_id}/stop", response_model=AgentConfig)
async def stop_agent(agent_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)) -> AgentConfig:
    try:
        return await orchestrator.stop_agent(agent_id)
    except KeyError as exc:
        raise to_http_error(exc) from exc


@router.get("/{agent_id}/sandbox", response_model=SandboxStatus)
async def agent_sandbox(agent_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)) -> SandboxStatus:
    try:
        return await orchestrator.sandbox_status(agent_id)
    except (KeyError, OrchestratorError) as exc:
        raise to_http_error(exc) from exc
