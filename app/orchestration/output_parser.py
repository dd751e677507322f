"""Normalize the agent command's output into a :class:`DispatchResult`.

The command does not emit one stable schema across versions, so parsing is
an ordered chain of fallible parsers: the first one that recognizes the
document wins, and the last one accepts anything as a plain-text reply.
"""
from __future__ import annotations

import json
import re
from typing import Any, Callable, Dict, List, Optional

from app.core.models import AgentConfig, DispatchResult

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0e-\x1f]")

NO_TEXT_REPLY = "Task completed (no text output)"

DocumentParser = Callable[[Dict[str, Any], str, AgentConfig, int], Optional[DispatchResult]]


def clean_output(raw: str) -> str:
    """Isolate the outermost ``{...}`` span, or strip stream-framing bytes."""
    start = raw.find("{")
    end = raw.rfind("}")
    if start >= 0 and end > start:
        return raw[start : end + 1]
    return _CONTROL_CHARS.sub("", raw).strip()


def _dig(document: Any, *path: str) -> Any:
    for key in path:
        if not isinstance(document, dict):
            return None
        document = document.get(key)
    return document


def _as_int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def _from_payloads(
    document: Dict[str, Any], raw: str, agent: AgentConfig, duration_ms: int
) -> Optional[DispatchResult]:
    payloads = document.get("payloads")
    if not isinstance(payloads, list):
        return None
    texts = [
        str(payload["text"])
        for payload in payloads
        if isinstance(payload, dict) and payload.get("text")
    ]
    meta = _dig(document, "meta", "agentMeta")
    model = agent.model
    tokens = 0
    if isinstance(meta, dict):
        model = f"{meta.get('provider')}/{meta.get('model')}"
        tokens = _as_int(_dig(meta, "usage", "total") or _dig(meta, "lastCallUsage", "total"))
    return DispatchResult(
        success=True,
        agent_id=agent.id,
        agent_name=agent.name,
        duration_ms=duration_ms,
        reply="\n\n".join(texts) or NO_TEXT_REPLY,
        model=model,
        tokens_used=tokens,
    )


def _from_alternate_fields(
    document: Dict[str, Any], raw: str, agent: AgentConfig, duration_ms: int
) -> Optional[DispatchResult]:
    text = (
        document.get("text")
        or document.get("content")
        or document.get("reply")
        or _dig(document, "result", "text")
        or document.get("message")
    )
    if not text:
        return None
    return DispatchResult(
        success=True,
        agent_id=agent.id,
        agent_name=agent.name,
        duration_ms=duration_ms,
        reply=text if isinstance(text, str) else json.dumps(text),
        model=document.get("model") or agent.model,
        tokens_used=_as_int(document.get("tokensUsed") or _dig(document, "usage", "total_tokens")),
    )


def _from_error(
    document: Dict[str, Any], raw: str, agent: AgentConfig, duration_ms: int
) -> Optional[DispatchResult]:
    error = document.get("error")
    if not error:
        return None
    if isinstance(error, str):
        message = error
    elif isinstance(error, dict) and error.get("message"):
        message = str(error["message"])
    else:
        message = json.dumps(error)
    return DispatchResult(
        success=False,
        agent_id=agent.id,
        agent_name=agent.name,
        duration_ms=duration_ms,
        error=message,
    )


def _as_raw_text(
    document: Any, raw: str, agent: AgentConfig, duration_ms: int
) -> Optional[DispatchResult]:
    return DispatchResult(
        success=True,
        agent_id=agent.id,
        agent_name=agent.name,
        duration_ms=duration_ms,
        reply=raw,
    )


PARSERS: List[DocumentParser] = [
    _from_payloads,
    _from_alternate_fields,
    _from_error,
    _as_raw_text,
]


def parse_agent_output(output: str, duration_ms: int, agent: AgentConfig) -> DispatchResult:
    """Turn already-cleaned command output into a result; never raises."""
    if not output:
        return DispatchResult(
            success=False,
            agent_id=agent.id,
            agent_name=agent.name,
            duration_ms=duration_ms,
            error="Empty response from agent",
        )

    try:
        document = json.loads(output)
    except ValueError:
        return _as_raw_text(None, output, agent, duration_ms)
    if not isinstance(document, dict):
        return _as_raw_text(document, output, agent, duration_ms)

    for parser in PARSERS:
        result = parser(document, output, agent, duration_ms)
        if result is not None:
            return result
    return _as_raw_text(document, output, agent, duration_ms)
