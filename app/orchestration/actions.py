"""Execute ``[AGENT_ACTION]`` blocks embedded in director replies.

The director manages the team by writing JSON action blocks into its reply::

    [AGENT_ACTION]{"action": "start_agent", "params": {"id": "oc-agent-1a2b3c4d"}}[/AGENT_ACTION]

Blocks are stripped from the text shown to the user and executed against
the orchestrator in order. A failing action never stops the ones after it.
"""
from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional, Tuple

import structlog

from app.core.errors import OrchestratorError
from app.core.models import AgentRole, TaskPriority, TaskStatus, ThinkingLevel
from app.orchestration.metrics import MODEL_TOKEN_RATES

if TYPE_CHECKING:
    from app.orchestration.orchestrator import Orchestrator

logger = structlog.get_logger(__name__)

ACTION_BLOCK_RE = re.compile(r"\[AGENT_ACTION\]\s*(.*?)\s*\[/AGENT_ACTION\]", re.DOTALL)
EXCESS_NEWLINES_RE = re.compile(r"\n{3,}")

AVAILABLE_MODELS = tuple(MODEL_TOKEN_RATES)
ASSIGNABLE_ROLES = (AgentRole.WORKER.value, AgentRole.SPECIALIST.value)

# Director output uses the dashboard's camelCase field names.
FIELD_ALIASES = {
    "systemPrompt": "system_prompt",
    "maxTokens": "max_tokens",
    "maxConcurrency": "max_concurrency",
    "retryPolicy": "retry_policy",
    "maxRetries": "max_retries",
    "platformAccess": "platform_access",
}
UPDATABLE_FIELDS = frozenset(
    {
        "name",
        "description",
        "role",
        "model",
        "thinking",
        "temperature",
        "max_tokens",
        "system_prompt",
        "max_concurrency",
        "timeout",
        "retry_policy",
        "max_retries",
        "platform_access",
    }
)


@dataclass(slots=True)
class AgentAction:
    action: str
    params: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ActionResult:
    action: str
    success: bool
    message: str
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ProcessedResponse:
    display_text: str
    action_results: List[ActionResult] = field(default_factory=list)


def extract_actions(raw_text: str) -> Tuple[str, List[AgentAction]]:
    """Return the text with action blocks removed, and the parsed actions."""
    actions: List[AgentAction] = []

    def _collect(match: re.Match) -> str:
        body = match.group(1).strip()
        try:
            parsed = json.loads(body)
        except ValueError:
            logger.warning("malformed_action_block", block=body[:100])
            return ""
        if isinstance(parsed, dict) and isinstance(parsed.get("action"), str):
            params = parsed.get("params")
            actions.append(AgentAction(parsed["action"], params if isinstance(params, dict) else {}))
        return ""

    clean_text = ACTION_BLOCK_RE.sub(_collect, raw_text)
    clean_text = EXCESS_NEWLINES_RE.sub("\n\n", clean_text).strip()
    return clean_text, actions


def _normalize_fields(params: Dict[str, Any]) -> Dict[str, Any]:
    fields = {FIELD_ALIASES.get(key, key): value for key, value in params.items()}
    fields = {key: value for key, value in fields.items() if key in UPDATABLE_FIELDS}
    if "role" in fields:
        fields["role"] = AgentRole(fields["role"])
    if "thinking" in fields:
        fields["thinking"] = ThinkingLevel(fields["thinking"])
    return fields


def _check_model(action: str, params: Dict[str, Any]) -> Optional[ActionResult]:
    model = params.get("model")
    if isinstance(model, str) and model not in AVAILABLE_MODELS:
        return ActionResult(
            action,
            False,
            f'Invalid model "{model}". Available: {", ".join(AVAILABLE_MODELS)}',
        )
    return None


async def _create_agent(orchestrator: Orchestrator, params: Dict[str, Any]) -> ActionResult:
    name = params.get("name")
    if not isinstance(name, str) or not name.strip():
        return ActionResult("create_agent", False, "Agent name is required")
    invalid = _check_model("create_agent", params)
    if invalid is not None:
        return invalid
    role = params.get("role")
    if role and role not in ASSIGNABLE_ROLES:
        return ActionResult("create_agent", False, f'Invalid role "{role}". Use "worker" or "specialist".')

    fields = _normalize_fields({key: value for key, value in params.items() if key != "name"})
    agent = await orchestrator.create_agent(name, auto_start=True, **fields)
    return ActionResult(
        "create_agent",
        True,
        f'Agent "{agent.name}" created and started (id: {agent.id})',
        {
            "id": agent.id,
            "name": agent.name,
            "role": agent.role.value,
            "model": agent.model,
            "status": agent.status.value,
        },
    )


async def _update_agent(orchestrator: Orchestrator, params: Dict[str, Any]) -> ActionResult:
    agent_id = params.get("id")
    if not agent_id:
        return ActionResult("update_agent", False, "Agent ID is required")
    invalid = _check_model("update_agent", params)
    if invalid is not None:
        return invalid
    agent = await orchestrator.update_agent(agent_id, **_normalize_fields(params))
    return ActionResult(
        "update_agent",
        True,
        f'Agent "{agent.name}" updated',
        {"id": agent.id, "name": agent.name},
    )


async def _delete_agent(orchestrator: Orchestrator, params: Dict[str, Any]) -> ActionResult:
    agent_id = params.get("id")
    if not agent_id:
        return ActionResult("delete_agent", False, "Agent ID is required")
    agent = await orchestrator.delete_agent(agent_id)
    return ActionResult("delete_agent", True, f'Agent "{agent.name}" ({agent.id}) removed from the platform')


def _status_change(verb: str) -> Callable[[Orchestrator, Dict[str, Any]], Awaitable[ActionResult]]:
    action = f"{verb}_agent"

    async def _change(orchestrator: Orchestrator, params: Dict[str, Any]) -> ActionResult:
        agent_id = params.get("id")
        if not agent_id:
            return ActionResult(action, False, "Agent ID is required")
        agent = await getattr(orchestrator, action)(agent_id)
        return ActionResult(
            action,
            True,
            f'Agent "{agent.name}" is now {agent.status.value}',
            {"id": agent.id, "name": agent.name, "status": agent.status.value},
        )

    return _change


async def _list_agents(orchestrator: Orchestrator, params: Dict[str, Any]) -> ActionResult:
    agents = orchestrator.list_agents()
    return ActionResult(
        "list_agents",
        True,
        f"{len(agents)} agent(s) on the platform",
        {
            "agents": [
                {
                    "id": agent.id,
                    "name": agent.name,
                    "role": agent.role.value,
                    "status": agent.status.value,
                    "model": agent.model,
                }
                for agent in agents
            ]
        },
    )


async def _assign_task(orchestrator: Orchestrator, params: Dict[str, Any]) -> ActionResult:
    agent_id = params.get("agentId") or params.get("agent_id")
    input_text = params.get("input")
    if not agent_id or not input_text:
        return ActionResult("assign_task", False, "Both agentId and input are required")
    task = await orchestrator.assign_task(
        agent_id,
        input_text,
        type=params.get("type") or "general",
        priority=TaskPriority(params.get("priority") or TaskPriority.MEDIUM.value),
        metadata={"source": "director"},
    )
    data = {"taskId": task.id, "agentId": task.agent_id, "agentName": task.agent_name}
    if task.status == TaskStatus.PARKED:
        return ActionResult(
            "assign_task",
            True,
            f'Task "{task.id}" parked for {task.agent_name} (agent is not running). Resume it to dispatch.',
            {**data, "status": TaskStatus.PARKED.value},
        )
    mode = "container" if orchestrator.container_mode else "direct"
    return ActionResult(
        "assign_task",
        True,
        f'Task "{task.id}" dispatched to {task.agent_name} via {mode} execution',
        {**data, "mode": mode},
    )


ActionHandler = Callable[["Orchestrator", Dict[str, Any]], Awaitable[ActionResult]]

HANDLERS: Dict[str, ActionHandler] = {
    "create_agent": _create_agent,
    "update_agent": _update_agent,
    "delete_agent": _delete_agent,
    "start_agent": _status_change("start"),
    "pause_agent": _status_change("pause"),
    "stop_agent": _status_change("stop"),
    "list_agents": _list_agents,
    "assign_task": _assign_task,
}


async def execute_action(orchestrator: Orchestrator, action: AgentAction) -> ActionResult:
    handler = HANDLERS.get(action.action)
    if handler is None:
        return ActionResult(action.action, False, f"Unknown action: {action.action}")
    try:
        return await handler(orchestrator, action.params)
    except KeyError as exc:
        detail = exc.args[0] if exc.args else str(exc)
        return ActionResult(action.action, False, str(detail))
    except (OrchestratorError, ValueError) as exc:
        return ActionResult(action.action, False, f"Error: {exc}")


async def process_agent_response(orchestrator: Orchestrator, raw_reply: str) -> ProcessedResponse:
    """Strip and run every action block in ``raw_reply``."""
    clean_text, actions = extract_actions(raw_reply)
    if not actions:
        return ProcessedResponse(display_text=raw_reply)

    logger.info("agent_actions_found", actions=[action.action for action in actions])
    results: List[ActionResult] = []
    for action in actions:
        result = await execute_action(orchestrator, action)
        logger.info(
            "agent_action_executed",
            action=result.action,
            success=result.success,
            message=result.message,
        )
        results.append(result)
    return ProcessedResponse(display_text=clean_text, action_results=results)
