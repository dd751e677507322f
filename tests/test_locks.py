from __future__ import annotations

import asyncio
from typing import List

import pytest

from app.core.locks import LockRegistry


@pytest.mark.anyio
async def test_same_key_runs_in_arrival_order() -> None:
    locks = LockRegistry()
    events: List[str] = []

    async def operation(label: str, delay: float) -> str:
        events.append(f"{label}:start")
        await asyncio.sleep(delay)
        events.append(f"{label}:end")
        return label

    results = await asyncio.gather(
        locks.run("agent-a", lambda: operation("first", 0.02)),
        locks.run("agent-a", lambda: operation("second", 0.0)),
    )

    assert results == ["first", "second"]
    assert events == ["first:start", "first:end", "second:start", "second:end"]
    assert len(locks) == 0


@pytest.mark.anyio
async def test_different_keys_do_not_wait() -> None:
    locks = LockRegistry()
    events: List[str] = []

    async def operation(label: str, delay: float) -> None:
        events.append(f"{label}:start")
        await asyncio.sleep(delay)
        events.append(f"{label}:end")

    await asyncio.gather(
        locks.run("agent-a", lambda: operation("a", 0.02)),
        locks.run("agent-b", lambda: operation("b", 0.0)),
    )

    assert events.index("b:end") < events.index("a:end")


@pytest.mark.anyio
async def test_failure_releases_the_key() -> None:
    locks = LockRegistry()

    async def boom() -> None:
        raise RuntimeError("boom")

    async def fine() -> str:
        return "ok"

    outcomes = await asyncio.gather(
        locks.run("agent-a", boom),
        locks.run("agent-a", fine),
        return_exceptions=True,
    )

    assert isinstance(outcomes[0], RuntimeError)
    assert outcomes[1] == "ok"
    assert not locks.is_locked("agent-a")
