"""Command-line access to reconciliation and one-off dispatch."""
from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import List, Optional

from app.core.logging import configure_structlog
from app.runtime import get_config, get_orchestrator


async def _reconcile() -> int:
    orchestrator = get_orchestrator()
    report = await orchestrator.reconcile()
    print(
        json.dumps(
            {
                "container_mode": report.container_mode,
                "created": report.created,
                "started": report.started,
                "stopped": report.stopped,
                "removed": report.removed,
                "unchanged": report.unchanged,
                "errors": report.errors,
            },
            indent=2,
        )
    )
    await orchestrator.shutdown()
    return 1 if report.errors else 0


async def _dispatch(agent: str, text: str) -> int:
    orchestrator = get_orchestrator()
    try:
        target = orchestrator.registry.resolve(agent)
    except KeyError as exc:
        print(exc.args[0], file=sys.stderr)
        return 2
    task, result = await orchestrator.run_task(target.id, text, type="cli")
    print(result.text)
    print(f"[{task.id}] {task.status.value} in {result.duration_seconds:.1f}s", file=sys.stderr)
    await orchestrator.shutdown()
    return 0 if result.success else 1


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="agent-hub", description=__doc__)
    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("reconcile", help="Converge sandboxes with the agent registry once")
    dispatch = subparsers.add_parser("dispatch", help="Run one task to completion and print the reply")
    dispatch.add_argument("agent", help="Agent id or name")
    dispatch.add_argument("text", help="Task input")
    args = parser.parse_args(argv)

    settings = get_config()
    configure_structlog(settings.log_level, settings.log_format)
    if args.command == "reconcile":
        return asyncio.run(_reconcile())
    return asyncio.run(_dispatch(args.agent, args.text))


if __name__ == "__main__":
    sys.exit(main())
