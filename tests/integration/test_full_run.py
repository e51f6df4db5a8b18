"""
Integration tests for complete runs against a file-backed database.

These tests verify end-to-end execution:
- Rounds repeat until the gap ranking converges
- Final results come from the terminating meta agent only
- Backend replies flow into micro analyses
- Gap-linked paper selection narrows later rounds
"""

import json

import pytest
import pytest_asyncio

from rmri.agents.protocol import BackendResponse
from rmri.orchestrator import Orchestrator
from rmri.store.database import Database
from rmri.store.models import AgentKind, ResultType, RunStatus

PAPERS = [
    {
        "doi": "10.1000/gnn",
        "title": "Graph neural networks for molecular property prediction",
        "abstract": "This paper addresses the challenge of predicting molecular properties. "
        "We propose a novel graph attention framework. "
        "Results show improved accuracy on the QM9 dataset.",
        "fullText": "A limitation is the reliance on small molecules. Future work will scale up.",
        "year": 2021,
        "citationCount": 40,
    },
    {
        "id": "mpnn",
        "title": "Message passing networks for molecular graphs",
        "abstract": "We introduce message passing for molecular graphs. "
        "Experiments demonstrate strong performance against a baseline.",
        "year": 2017,
        "citationCount": 300,
    },
    {
        "title": "Reinforcement learning for robotic manipulation",
        "abstract": "This work tackles robotic grasping with reinforcement learning. "
        "Evaluation shows robust manipulation in simulation.",
        "year": 2023,
    },
]


class MockBackend:
    """Backend returning a fixed JSON analysis."""

    def __init__(self):
        self.calls = 0

    @property
    def name(self) -> str:
        return "mock:model"

    async def verify(self) -> None:
        return None

    async def complete(self, system_prompt: str, user_prompt: str) -> BackendResponse:
        self.calls += 1
        return BackendResponse(
            text=json.dumps(
                {
                    "gaps": [
                        {
                            "description": "Benchmarks for out-of-distribution molecules",
                            "priority": "high",
                        }
                    ]
                }
            ),
            model="mock",
            cost_usd=0.002,
        )


@pytest_asyncio.fixture
async def database(tmp_path):
    db = Database(tmp_path / "rmri.db")
    await db.initialize()
    yield db
    await db.close()


@pytest.mark.asyncio
async def test_run_converges_on_second_round(database):
    orchestrator = Orchestrator(database)

    run = await orchestrator.start(
        "molecular machine learning", {"maxDepth": 2, "convergenceThreshold": 0.9}
    )
    handle = await orchestrator.execute(run.id, PAPERS)
    await handle.wait()

    finished = await orchestrator.get_run(run.id)
    assert finished.status == RunStatus.COMPLETED
    assert finished.converged is True
    assert finished.final_depth == 1
    assert finished.metadata["rounds"] == 2
    assert finished.metadata["similarity"] == pytest.approx(1.0)

    agents = await orchestrator.list_agents(run.id)
    assert len(agents) == 10
    assert [a.id for a in agents if a.kind == AgentKind.META] == ["meta-0", "meta-1"]
    assert {a.paper_id for a in agents if a.kind == AgentKind.MICRO} == {
        "10.1000/gnn",
        "mpnn",
        "reinforcementlearnin_2023",
    }

    final = await orchestrator.get_results(run.id, final_only=True)
    assert {r.agent_id for r in final} == {"meta-1"}
    ranking = next(r for r in final if r.result_type == ResultType.GAP_RANKING)
    assert ranking.content["convergence"]["converged"] is True
    assert all(gap["rounds_seen"] == 2 for gap in ranking.content["gaps"])

    report = await orchestrator.status(run.id)
    assert report.progress == 100
    assert report.final_depth == 1


@pytest.mark.asyncio
async def test_run_persists_across_handles(database, tmp_path):
    orchestrator = Orchestrator(database)
    run = await orchestrator.start("molecular machine learning", {"maxDepth": 1})
    handle = await orchestrator.execute(run.id, PAPERS)
    await handle.wait()

    reopened = Database(tmp_path / "rmri.db")
    await reopened.initialize()
    try:
        second = Orchestrator(reopened)
        loaded = await second.get_run(run.id)
        results = await second.get_results(run.id, result_type=ResultType.GAP_RANKING)
    finally:
        await reopened.close()

    assert loaded.status == RunStatus.COMPLETED
    assert loaded.config.max_depth == 1
    assert len(results) == 1


@pytest.mark.asyncio
async def test_backend_reply_reaches_gap_ranking(database):
    backend = MockBackend()
    orchestrator = Orchestrator(database, backend=backend)

    run = await orchestrator.start("molecular machine learning", {"maxDepth": 1})
    handle = await orchestrator.execute(run.id, PAPERS)
    await handle.wait()

    assert backend.calls == 3
    analysis = await orchestrator.context.read(run.id, "micro-0-0", "micro/0/10.1000/gnn")
    descriptions = [g["description"] for g in analysis.data["gaps"]]
    assert "Benchmarks for out-of-distribution molecules" in descriptions

    ranking = await orchestrator.get_results(
        run.id, result_type=ResultType.GAP_RANKING, final_only=True
    )
    ranked = [g["description"] for g in ranking[0].content["gaps"]]
    assert "Benchmarks for out-of-distribution molecules" in ranked


@pytest.mark.asyncio
async def test_gap_linked_selection_narrows_later_rounds(database):
    orchestrator = Orchestrator(database)

    run = await orchestrator.start(
        "molecular machine learning",
        {
            "maxDepth": 2,
            "convergenceThreshold": 1.01,
            "paperSelection": "gap_linked",
            "focusTopK": 1,
        },
    )
    handle = await orchestrator.execute(run.id, PAPERS)
    await handle.wait()

    finished = await orchestrator.get_run(run.id)
    assert finished.status == RunStatus.COMPLETED
    assert finished.final_depth == 1

    agents = await orchestrator.list_agents(run.id)
    round_zero = [a for a in agents if a.kind == AgentKind.MICRO and a.depth == 0]
    round_one = [a for a in agents if a.kind == AgentKind.MICRO and a.depth == 1]
    assert len(round_zero) == 3
    assert 1 <= len(round_one) <= 3
