"""Observed sandbox state and on-demand reconciliation."""
from __future__ import annotations

from typing import Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from app.core.models import SandboxStatus
from app.orchestration.orchestrator import Orchestrator
from app.runtime import get_orchestrator, get_sandbox_manager
from app.services.sandbox_manager import SandboxManager

router = APIRouter(prefix="/sandboxes", tags=["sandboxes"])


class SandboxListResponse(BaseModel):
    container_mode: bool
    disabled_reason: Optional[str] = None
    sandboxes: List[SandboxStatus]


class ReconcileResponse(BaseModel):
    container_mode: bool
    created: List[str]
    started: List[str]
    stopped: List[str]
    removed: List[str]
    unchanged: List[str]
    errors: Dict[str, str]


@router.get("", response_model=SandboxListResponse)
async def list_sandboxes(sandboxes: SandboxManager = Depends(get_sandbox_manager)) -> SandboxListResponse:
    return SandboxListResponse(
        container_mode=sandboxes.available,
        disabled_reason=sandboxes.disabled_reason,
        sandboxes=await sandboxes.list_managed(),
    )


@router.post("/reconcile", response_model=ReconcileResponse)
async def reconcile(orchestrator: Orchestrator = Depends(get_orchestrator)) -> ReconcileResponse:
    report = await orchestrator.reconcile()
    return ReconcileResponse(
        container_mode=report.container_mode,
        created=report.created,
        started=report.started,
        stopped=report.stopped,
        removed=report.removed,
        unchanged=report.unchanged,
        errors=report.errors,
    )
