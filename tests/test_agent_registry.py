from __future__ import annotations

import json
from pathlib import Path

import pytest

from app.core.errors import DirectorProtectedError, DuplicateAgentError
from app.core.models import AgentRole, AgentStatus
from app.services.agent_registry import DIRECTOR_PROMPT, AgentRegistry


def test_director_is_seeded_first() -> None:
    registry = AgentRegistry()
    registry.create("Writer")

    agents = registry.list()

    assert agents[0].id == "director"
    assert agents[0].role == AgentRole.DIRECTOR
    assert agents[0].status == AgentStatus.RUNNING
    assert agents[1].name == "Writer"


def test_lookup_by_name_is_case_insensitive() -> None:
    registry = AgentRegistry()
    writer = registry.create("Research Writer")

    assert registry.find_by_name("research writer") is writer
    assert registry.resolve("RESEARCH WRITER") is writer
    assert registry.resolve(writer.id) is writer
    with pytest.raises(KeyError):
        registry.resolve("nobody")


def test_guards() -> None:
    registry = AgentRegistry()
    writer = registry.create("Writer")

    with pytest.raises(DuplicateAgentError):
        registry.create(" writer ")
    with pytest.raises(DuplicateAgentError):
        registry.update(registry.create("Editor").id, name="Writer")
    with pytest.raises(DirectorProtectedError):
        registry.update(writer.id, role=AgentRole.DIRECTOR)
    with pytest.raises(DirectorProtectedError):
        registry.update("director", role=AgentRole.WORKER)
    with pytest.raises(ValueError):
        registry.update(writer.id, metrics=None)
    with pytest.raises(ValueError):
        registry.create("Other", colour="blue")


def test_round_trip_through_file(tmp_path: Path) -> None:
    path = tmp_path / "agents.json"
    registry = AgentRegistry(path)
    writer = registry.create("Writer", temperature=0.7)
    registry.set_status(writer.id, AgentStatus.PAUSED)
    writer.metrics.tokens_used = 321
    registry.save()

    reloaded = AgentRegistry(path)

    restored = reloaded.get(writer.id)
    assert restored.status == AgentStatus.PAUSED
    assert restored.temperature == 0.7
    assert restored.metrics.tokens_used == 321
    assert json.loads(path.read_text())["version"] == 1


def test_director_prompt_is_refreshed_on_load(tmp_path: Path) -> None:
    path = tmp_path / "agents.json"
    registry = AgentRegistry(path)
    registry.update("director", system_prompt="stale", temperature=0.5)

    reloaded = AgentRegistry(path)

    director = reloaded.get("director")
    assert director.system_prompt == DIRECTOR_PROMPT
    assert director.temperature == 0.5


def test_delete() -> None:
    registry = AgentRegistry()
    writer = registry.create("Writer")

    assert registry.delete(writer.id) is writer
    assert registry.find(writer.id) is None
    with pytest.raises(DirectorProtectedError):
        registry.delete("director")
    with pytest.raises(KeyError):
        registry.delete(writer.id)
