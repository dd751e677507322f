"""Inbound messaging endpoint: route a chat message or command to an agent."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field

from app.orchestration.orchestrator import Orchestrator
from app.runtime import get_orchestrator

router = APIRouter(prefix="/messages", tags=["messages"])


class InboundMessage(BaseModel):
    target: str = Field(..., description="Agent id or name")
    text: str = ""
    command: Optional[str] = Field(None, description="Slash command, e.g. /summarize")
    reply_token: Optional[str] = Field(None, description="Opaque token echoed into task metadata")


@router.post("", response_class=PlainTextResponse)
async def inbound_message(
    message: InboundMessage,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> str:
    """Run the message to completion and return the agent's reply as text."""
    return await orchestrator.handle_inbound(
        message.target,
        message.text,
        command=message.command,
        reply_token=message.reply_token,
    )
