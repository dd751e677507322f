from __future__ import annotations

from datetime import datetime, timedelta, timezone

from app.core.models import (
    AgentStatus,
    DispatchResult,
    SandboxStatus,
    SandboxUsage,
    Task,
    TaskStatus,
)
from app.orchestration.metrics import (
    DEFAULT_TOKEN_RATE,
    MetricsAggregator,
    cost_per_token,
    format_uptime,
    weighted_average,
)

from tests.fakes import make_agent

NOW = datetime(2026, 3, 14, 12, 0, tzinfo=timezone.utc)


def result(success: bool = True, seconds: float = 6.0, tokens: int = 1000) -> DispatchResult:
    return DispatchResult(
        success=success,
        agent_id="agent-writer",
        agent_name="Writer",
        duration_ms=int(seconds * 1000),
        reply="ok" if success else None,
        error=None if success else "boom",
        tokens_used=tokens,
    )


def test_weighted_average() -> None:
    assert weighted_average(2.0, 3, 6.0) == 3.0
    assert weighted_average(9.9, 0, 4.0) == 4.0


def test_record_success_folds_into_metrics() -> None:
    aggregator = MetricsAggregator(clock=lambda: NOW)
    agent = make_agent("Writer", model="anthropic/claude-sonnet-4-6")
    agent.metrics.avg_response_time = 2.0
    agent.metrics.tasks_completed = 3

    cost = aggregator.record(agent, result(seconds=6.0, tokens=1000), tasks_queued=2)

    assert agent.metrics.avg_response_time == 3.0
    assert agent.metrics.tasks_completed == 4
    assert agent.metrics.tokens_used == 1000
    assert cost == 1000 * cost_per_token("anthropic/claude-sonnet-4-6")
    assert agent.metrics.total_cost == round(cost, 4)
    assert agent.metrics.tasks_queued == 2
    assert agent.metrics.last_active == NOW
    assert agent.metrics.error_rate == 0.0


def test_record_failure_raises_error_rate_without_counting_completion() -> None:
    aggregator = MetricsAggregator(clock=lambda: NOW)
    agent = make_agent("Writer")
    agent.metrics.tasks_completed = 1

    aggregator.record(agent, result(success=False, seconds=1.0, tokens=0), tasks_queued=0)

    assert agent.metrics.tasks_completed == 1
    assert agent.metrics.error_rate == 50.0


def test_unknown_model_uses_default_rate() -> None:
    assert cost_per_token("acme/unknown") == DEFAULT_TOKEN_RATE


def test_apply_usage_and_uptime() -> None:
    aggregator = MetricsAggregator(clock=lambda: NOW)
    agent = make_agent("Writer")
    sandbox = SandboxStatus(name="s", exists=True, running=True, started_at=NOW - timedelta(days=1, hours=5))

    aggregator.apply_usage(agent, sandbox, SandboxUsage(cpu_percent=12.5, memory_percent=40.0))

    assert (agent.metrics.cpu, agent.metrics.memory) == (12.5, 40.0)
    assert agent.metrics.uptime == "1d 5h"
    assert format_uptime(None) == "0d 0h"


def test_rebuild_analytics_buckets_by_day_with_stable_placeholders() -> None:
    aggregator = MetricsAggregator(window_days=3, clock=lambda: NOW)
    tasks = [
        Task(id="t1", agent_id="a", agent_name="A", input="x", status=TaskStatus.COMPLETED,
             created_at=NOW, duration=2.0, tokens_used=100, cost=0.01),
        Task(id="t2", agent_id="a", agent_name="A", input="x", status=TaskStatus.FAILED,
             created_at=NOW - timedelta(hours=1), duration=4.0, tokens_used=50, cost=0.02),
        Task(id="old", agent_id="a", agent_name="A", input="x", status=TaskStatus.COMPLETED,
             created_at=NOW - timedelta(days=30)),
    ]

    points = aggregator.rebuild_analytics(tasks)
    again = aggregator.rebuild_analytics(tasks)

    assert [point.date for point in points] == ["2026-03-12", "2026-03-13", "2026-03-14"]
    today = points[-1]
    assert (today.requests, today.tokens, today.errors) == (2, 150, 1)
    assert today.cost == 0.03
    assert today.avg_latency == 3.0
    assert not today.synthetic
    assert all(point.synthetic for point in points[:2])
    assert points == again


def test_summary_counts() -> None:
    aggregator = MetricsAggregator(clock=lambda: NOW)
    running = make_agent("Writer")
    running.metrics.avg_response_time = 4.0
    stopped = make_agent("Idle", AgentStatus.STOPPED)
    tasks = [
        Task(id="t1", agent_id="a", agent_name="A", input="x", status=TaskStatus.PARKED),
        Task(id="t2", agent_id="a", agent_name="A", input="x", status=TaskStatus.COMPLETED),
    ]

    summary = aggregator.summary([running, stopped], tasks)

    assert summary["total_agents"] == 2
    assert summary["running_agents"] == 1
    assert summary["parked_tasks"] == 1
    assert summary["completed_tasks"] == 1
    assert summary["avg_response_time"] == 4.0
