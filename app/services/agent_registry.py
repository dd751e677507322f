"""File-backed registry of agent configurations and desired status."""
from __future__ import annotations

import json
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog
from pydantic import TypeAdapter

from app.core.errors import AgentNotFoundError, DirectorProtectedError, DuplicateAgentError
from app.core.models import (
    DIRECTOR_AGENT_ID,
    AgentConfig,
    AgentRole,
    AgentStatus,
    ThinkingLevel,
    utcnow,
)

logger = structlog.get_logger(__name__)

STORE_VERSION = 1
IMMUTABLE_FIELDS = frozenset({"id", "created_at", "metrics"})

DIRECTOR_DESCRIPTION = "Director agent, orchestrates all other agents"
DIRECTOR_PROMPT = (
    "You are the Director agent of the agent hub. You manage a team of sub-agents "
    "and coordinate tasks across them.\n\n"
    "To delegate work, emit an action block:\n"
    '[AGENT_ACTION]{"action":"assign_task","params":{"agentId":"<id>","input":"<task>",'
    '"priority":"high"}}[/AGENT_ACTION]\n\n'
    "Use create_agent, update_agent, delete_agent, start_agent, pause_agent, stop_agent "
    "and list_agents blocks the same way to manage the team."
)

_agents_adapter = TypeAdapter(List[AgentConfig])


def director_config() -> AgentConfig:
    return AgentConfig(
        id=DIRECTOR_AGENT_ID,
        name="Director",
        description=DIRECTOR_DESCRIPTION,
        role=AgentRole.DIRECTOR,
        model="anthropic/claude-opus-4-6",
        status=AgentStatus.RUNNING,
        thinking=ThinkingLevel.HIGH,
        temperature=0.3,
        max_tokens=8192,
        system_prompt=DIRECTOR_PROMPT,
        max_concurrency=10,
        timeout=120,
        platform_access=["*"],
    )


class AgentRegistry:
    """Agents keyed by id, persisted as ``{"version": 1, "agents": [...]}``.

    The director is seeded when absent and can be neither deleted nor
    assigned another role.
    """

    def __init__(self, path: Optional[Path] = None) -> None:
        self._path = path
        self._agents: Dict[str, AgentConfig] = {}
        self._load()
        director = self._agents.get(DIRECTOR_AGENT_ID)
        if director is None:
            self._agents[DIRECTOR_AGENT_ID] = director_config()
            self.save()
            logger.info("director_seeded")
        else:
            # Canonical director text wins; operator-tuned fields are kept.
            director.description = DIRECTOR_DESCRIPTION
            director.system_prompt = DIRECTOR_PROMPT
            director.role = AgentRole.DIRECTOR

    def list(self) -> List[AgentConfig]:
        """All agents, director first."""
        return sorted(self._agents.values(), key=lambda agent: not agent.is_director)

    def get(self, agent_id: str) -> AgentConfig:
        agent = self._agents.get(agent_id)
        if agent is None:
            raise AgentNotFoundError(f"Agent '{agent_id}' not found")
        return agent

    def find(self, agent_id: str) -> Optional[AgentConfig]:
        return self._agents.get(agent_id)

    def find_by_name(self, name: str) -> Optional[AgentConfig]:
        wanted = name.strip().lower()
        return next(
            (agent for agent in self._agents.values() if agent.name.lower() == wanted),
            None,
        )

    def resolve(self, id_or_name: str) -> AgentConfig:
        agent = self.find(id_or_name) or self.find_by_name(id_or_name)
        if agent is None:
            raise AgentNotFoundError(f"Agent '{id_or_name}' not found")
        return agent

    def create(self, name: str, **fields: Any) -> AgentConfig:
        name = name.strip()
        existing = self.find_by_name(name)
        if existing is not None:
            raise DuplicateAgentError(f"Agent '{name}' already exists (id: {existing.id})")
        if fields.get("role") == AgentRole.DIRECTOR:
            raise DirectorProtectedError("The director role is reserved")
        unknown = set(fields) - set(AgentConfig.__dataclass_fields__) | (set(fields) & IMMUTABLE_FIELDS)
        if unknown:
            raise ValueError(f"Unknown or read-only agent fields: {', '.join(sorted(unknown))}")
        agent = AgentConfig(id=f"oc-agent-{uuid.uuid4().hex[:8]}", name=name, **fields)
        self._agents[agent.id] = agent
        self.save()
        logger.info("agent_created", agent_id=agent.id, agent=agent.name)
        return agent

    def update(self, agent_id: str, **changes: Any) -> AgentConfig:
        agent = self.get(agent_id)
        for key in changes:
            if key in IMMUTABLE_FIELDS or key not in AgentConfig.__dataclass_fields__:
                raise ValueError(f"Field '{key}' cannot be updated")
        if agent.is_director and changes.get("role", AgentRole.DIRECTOR) != AgentRole.DIRECTOR:
            raise DirectorProtectedError("The director keeps its role")
        if not agent.is_director and changes.get("role") == AgentRole.DIRECTOR:
            raise DirectorProtectedError("The director role is reserved")
        if "name" in changes:
            clash = self.find_by_name(changes["name"])
            if clash is not None and clash.id != agent.id:
                raise DuplicateAgentError(f"Agent '{changes['name']}' already exists (id: {clash.id})")
        for key, value in changes.items():
            setattr(agent, key, value)
        agent.updated_at = utcnow()
        self.save()
        return agent

    def set_status(self, agent_id: str, status: AgentStatus) -> AgentConfig:
        return self.update(agent_id, status=status)

    def delete(self, agent_id: str) -> AgentConfig:
        if agent_id == DIRECTOR_AGENT_ID:
            raise DirectorProtectedError("Cannot delete the director agent")
        agent = self._agents.pop(agent_id, None)
        if agent is None:
            raise AgentNotFoundError(f"Agent '{agent_id}' not found")
        self.save()
        logger.info("agent_deleted", agent_id=agent_id, agent=agent.name)
        return agent

    def save(self) -> None:
        """Write every agent to disk; a no-op for in-memory registries."""
        if self._path is None:
            return
        payload = {
            "version": STORE_VERSION,
            "agents": _agents_adapter.dump_python(self.list(), mode="json"),
        }
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self._path.with_suffix(".tmp")
            tmp_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
            tmp_path.replace(self._path)
        except OSError as exc:
            logger.error("agent_registry_save_failed", path=str(self._path), error=str(exc))

    def _load(self) -> None:
        if self._path is None or not self._path.exists():
            return
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
            agents = _agents_adapter.validate_python(raw.get("agents", []))
        except (OSError, ValueError) as exc:
            logger.error("agent_registry_load_failed", path=str(self._path), error=str(exc))
            return
        for agent in agents:
            self._agents[agent.id] = agent
        logger.info("agent_registry_loaded", count=len(agents), path=str(self._path))
