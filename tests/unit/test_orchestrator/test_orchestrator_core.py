"""
Tests for the Orchestrator run lifecycle.

This test suite covers:
- Run creation and config validation
- Depth loop termination (convergence and depth budget)
- Failure, cancellation, timeout and shutdown
- Status, health and queue statistics
"""

import asyncio

import pytest
import pytest_asyncio

from rmri.agents.executor import AgentExecutor
from rmri.config import RunConfig
from rmri.errors import ConflictError, NotFoundError, ValidationError
from rmri.orchestrator import Orchestrator
from rmri.store.database import Database
from rmri.store.models import AgentKind, AgentStatus, LogLevel, ResultType, RunStatus

PAPERS = [
    {"id": "p1", "title": "Graph neural networks for molecules", "abstract": "We propose a graph model."},
    {"id": "p2", "title": "Message passing for molecular graphs", "abstract": "We introduce message passing."},
    {"id": "p3", "title": "Reinforcement learning for robots", "abstract": "Results show robust grasping."},
]


class GatedExecutor(AgentExecutor):
    """Micro agents wait for a gate; selected papers fail."""

    def __init__(self, gate: asyncio.Event | None = None, fail_papers=()):
        super().__init__()
        self.gate = gate
        self.fail_papers = set(fail_papers)

    async def execute(self, agent_input, context):
        if agent_input.kind == AgentKind.MICRO:
            if self.gate is not None:
                await self.gate.wait()
            if agent_input.paper.paper_id in self.fail_papers:
                raise RuntimeError("analysis failed")
        return await super().execute(agent_input, context)


@pytest_asyncio.fixture
async def database():
    db = Database(":memory:")
    await db.initialize()
    yield db
    await db.close()


@pytest_asyncio.fixture
async def orchestrator(database):
    events = []

    async def collect(event):
        events.append(event)

    orchestrator = Orchestrator(database, event_callback=collect)
    orchestrator.events = events
    yield orchestrator
    await orchestrator.close()


def _orchestrator_with(database, executor) -> Orchestrator:
    return Orchestrator(database, executor_factory=lambda backend: executor)


async def _run_to_end(orchestrator, config, papers=PAPERS):
    run = await orchestrator.start("molecular machine learning", config)
    handle = await orchestrator.execute(run.id, papers)
    await handle.wait()
    return await orchestrator.get_run(run.id)


async def _wait_for_agents(orchestrator, run_id, count):
    for _ in range(200):
        if len(await orchestrator.list_agents(run_id)) >= count:
            return
        await asyncio.sleep(0.01)
    raise AssertionError(f"{count} agents were never created")


@pytest.mark.asyncio
async def test_start_rejects_empty_query(orchestrator):
    with pytest.raises(ValidationError):
        await orchestrator.start("   ")


@pytest.mark.asyncio
async def test_start_rejects_invalid_config(orchestrator):
    with pytest.raises(ValidationError):
        await orchestrator.start("q", {"maxDepth": 0})


@pytest.mark.asyncio
async def test_start_merges_overrides_onto_defaults(database):
    orchestrator = Orchestrator(database, default_config=RunConfig(convergenceThreshold=0.5))

    run = await orchestrator.start("q", {"maxDepth": 2}, owner_id="alice")

    assert run.status == RunStatus.INITIALIZING
    assert run.config.max_depth == 2
    assert run.config.convergence_threshold == 0.5
    assert run.owner_id == "alice"


@pytest.mark.asyncio
async def test_execute_validation(orchestrator):
    run = await orchestrator.start("q")

    with pytest.raises(NotFoundError):
        await orchestrator.execute("missing", PAPERS)
    with pytest.raises(ValidationError):
        await orchestrator.execute(run.id, [])
    with pytest.raises(ValidationError):
        await orchestrator.execute(run.id, PAPERS, agent_backend="mystery")

    assert (await orchestrator.get_run(run.id)).status == RunStatus.INITIALIZING


@pytest.mark.asyncio
async def test_zero_threshold_stops_after_first_round(orchestrator):
    run = await _run_to_end(orchestrator, {"maxDepth": 3, "convergenceThreshold": 0.0})

    assert run.status == RunStatus.COMPLETED
    assert run.converged is True
    assert run.final_depth == 0
    assert run.metadata["rounds"] == 1

    agents = await orchestrator.list_agents(run.id)
    assert {a.depth for a in agents} == {0}

    final = await orchestrator.get_results(run.id, final_only=True)
    assert final
    assert {r.agent_id for r in final} == {"meta-0"}


@pytest.mark.asyncio
async def test_unreachable_threshold_runs_every_round(orchestrator):
    run = await _run_to_end(orchestrator, {"maxDepth": 3, "convergenceThreshold": 1.01})

    assert run.status == RunStatus.COMPLETED
    assert run.converged is False
    assert run.final_depth == 2

    agents = await orchestrator.list_agents(run.id)
    assert {a.id for a in agents} >= {"micro-2-0", "meso-2", "meta-2"}

    rankings = await orchestrator.get_results(run.id, result_type=ResultType.GAP_RANKING)
    assert len(rankings) == 3
    assert [r.agent_id for r in rankings if r.is_final] == ["meta-2"]


@pytest.mark.asyncio
async def test_run_emits_lifecycle_events(orchestrator):
    run = await _run_to_end(orchestrator, {"maxDepth": 1})

    types = [e["type"] for e in orchestrator.events if e["run_id"] == run.id]
    assert types[0] == "run.started"
    assert types[-1] == "run.completed"
    assert "round.started" in types
    assert "round.completed" in types


@pytest.mark.asyncio
async def test_execute_twice_conflicts(orchestrator):
    run = await _run_to_end(orchestrator, {"maxDepth": 1})

    with pytest.raises(ConflictError):
        await orchestrator.execute(run.id, PAPERS)


@pytest.mark.asyncio
async def test_majority_failure_fails_run(database):
    orchestrator = _orchestrator_with(database, GatedExecutor(fail_papers={"p1", "p2"}))

    run = await _run_to_end(orchestrator, {"maxDepth": 2, "retryBackoffSeconds": 0})

    assert run.status == RunStatus.FAILED
    assert "majority" in run.error_message
    errors = await orchestrator.list_logs(run.id, level=LogLevel.ERROR)
    assert any(e.message.startswith("Run failed") for e in errors)


@pytest.mark.asyncio
async def test_cancel_initializing_run(orchestrator):
    run = await orchestrator.start("q")

    cancelled = await orchestrator.cancel(run.id)

    assert cancelled.status == RunStatus.CANCELLED
    with pytest.raises(ConflictError):
        await orchestrator.execute(run.id, PAPERS)


@pytest.mark.asyncio
async def test_cancel_terminal_run_is_noop(orchestrator):
    run = await _run_to_end(orchestrator, {"maxDepth": 1})

    assert (await orchestrator.cancel(run.id)).status == RunStatus.COMPLETED


@pytest.mark.asyncio
async def test_cancel_executing_run_stops_at_boundary(database):
    gate = asyncio.Event()
    orchestrator = _orchestrator_with(database, GatedExecutor(gate=gate))
    run = await orchestrator.start("q", {"maxDepth": 3})
    handle = await orchestrator.execute(run.id, PAPERS)

    still_running = await orchestrator.cancel(run.id)
    gate.set()
    await handle.wait()

    assert still_running.status == RunStatus.EXECUTING
    final = await orchestrator.get_run(run.id)
    assert final.status == RunStatus.CANCELLED
    assert await orchestrator.get_results(run.id, result_type=ResultType.GAP_RANKING) == []


@pytest.mark.asyncio
async def test_stalled_run_times_out(database):
    orchestrator = _orchestrator_with(database, GatedExecutor(gate=asyncio.Event()))
    run = await orchestrator.start("q", {"timeout": 50, "maxAgents": 1})

    handle = await orchestrator.execute(run.id, PAPERS)
    await handle.wait()

    final = await orchestrator.get_run(run.id)
    assert final.status == RunStatus.FAILED
    assert "timed out" in final.error_message

    report = await orchestrator.status(run.id)
    assert report.agents_by_status["pending"] == 0
    assert report.agents_by_status["active"] == 0
    assert report.agents_by_status["failed"] == 3
    agents = await orchestrator.list_agents(run.id)
    assert all("timed out" in a.error_message for a in agents)


@pytest.mark.asyncio
async def test_close_fails_unfinished_runs(database):
    orchestrator = _orchestrator_with(database, GatedExecutor(gate=asyncio.Event()))
    run = await orchestrator.start("q", {"maxAgents": 1})
    await orchestrator.execute(run.id, PAPERS)
    await _wait_for_agents(orchestrator, run.id, 3)

    await orchestrator.close()

    final = await orchestrator.get_run(run.id)
    assert final.status == RunStatus.FAILED
    assert final.error_message == "Engine shut down before the run finished"

    agents = await orchestrator.list_agents(run.id)
    assert [a.status for a in agents] == [AgentStatus.FAILED] * 3


@pytest.mark.asyncio
async def test_status_report_after_completion(orchestrator):
    run = await _run_to_end(orchestrator, {"maxDepth": 1})

    report = await orchestrator.status(run.id)

    assert report.status == RunStatus.COMPLETED
    assert report.progress == 100
    assert report.agents_by_status[AgentStatus.COMPLETED.value] == 5
    assert report.agents_by_type == {"micro": 3, "meso": 1, "meta": 1}
    assert report.final_depth == 0
    assert report.elapsed_ms >= 0
    assert report.recent_logs
    assert len(report.recent_logs) <= orchestrator.engine_config.recent_log_count


@pytest.mark.asyncio
async def test_status_progress_counts_skipped_agents(orchestrator):
    run = await _run_to_end(orchestrator, {"maxDepth": 1}, papers=[*PAPERS, {"id": "empty"}])

    report = await orchestrator.status(run.id)

    assert report.agents_by_status["skipped"] == 1
    assert report.progress == round(100 * 5 / 6)


@pytest.mark.asyncio
async def test_papers_with_null_fields_do_not_reject_the_run(orchestrator):
    papers = [
        *PAPERS,
        {"id": "p4", "title": "Message passing", "abstract": None, "fullText": None},
        {"id": "p5", "title": None, "abstract": None, "citationCount": None},
    ]

    run = await _run_to_end(orchestrator, {"maxDepth": 1}, papers=papers)

    assert run.status == RunStatus.COMPLETED
    agents = {a.paper_id: a for a in await orchestrator.list_agents(run.id) if a.paper_id}
    assert agents["p4"].status == AgentStatus.COMPLETED
    assert agents["p5"].status == AgentStatus.SKIPPED


@pytest.mark.asyncio
async def test_health_check(orchestrator):
    healthy = await orchestrator.health_check()
    assert healthy.status == "healthy"
    assert healthy.database is True

    orphan = await orchestrator.start("q")
    await orchestrator.registry.update_run_status(orphan.id, RunStatus.EXECUTING)

    degraded = await orchestrator.health_check()
    assert degraded.status == "degraded"
    assert degraded.stalled_runs == [orphan.id]


@pytest.mark.asyncio
async def test_queue_stats(database):
    gate = asyncio.Event()
    orchestrator = _orchestrator_with(database, GatedExecutor(gate=gate))
    run = await orchestrator.start("q", {"maxDepth": 1})
    handle = await orchestrator.execute(run.id, PAPERS)

    stats = await orchestrator.queue_stats()
    assert stats["active_runs"] == 1
    assert stats["active_tasks"] == 1

    gate.set()
    await handle.wait()

    stats = await orchestrator.queue_stats()
    assert stats["active_runs"] == 0
    assert stats["active_tasks"] == 0
    assert stats["pending"] == {"micro": 0, "meso": 0, "meta": 0}
