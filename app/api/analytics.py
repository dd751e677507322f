"""Summary counts and the daily analytics series."""
from __future__ import annotations

from typing import Any, Dict, List

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from app.core.models import AnalyticsDataPoint
from app.orchestration.orchestrator import Orchestrator
from app.runtime import get_orchestrator

router = APIRouter(prefix="/analytics", tags=["analytics"])


class AnalyticsResponse(BaseModel):
    summary: Dict[str, Any]
    timeseries: List[AnalyticsDataPoint]
    container_mode: bool


@router.get("", response_model=AnalyticsResponse)
async def analytics(orchestrator: Orchestrator = Depends(get_orchestrator)) -> AnalyticsResponse:
    await orchestrator.refresh_agent_usage()
    return AnalyticsResponse(
        summary=orchestrator.summary(),
        timeseries=orchestrator.analytics(),
        container_mode=orchestrator.container_mode,
    )
