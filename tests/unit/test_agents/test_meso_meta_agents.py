"""
Tests for the meso (clustering) and meta (gap ranking) agents.
"""

import json
from types import SimpleNamespace

import pytest

from rmri.agents.meso import (
    MesoAgent,
    cluster_keyword_sets,
    cluster_outputs,
    cohesion,
    collect_gaps,
    optimal_cluster_count,
    restore_lists,
    thematic_gaps,
)
from rmri.agents.meta import (
    MetaAgent,
    critique,
    cross_domain_patterns,
    synthesize,
    synthesize_candidate_gaps,
)
from rmri.agents.micro import analyze_paper
from rmri.agents.protocol import AgentInput, ContextRef, Paper
from rmri.config import RunConfig
from rmri.errors import ValidationError
from rmri.scoring.confidence import ConfidenceCalculator
from rmri.scoring.ranking import CandidateGap
from rmri.store.context import summarize
from rmri.store.models import AgentKind, ResultType

PAPERS = [
    Paper(
        id="p1",
        title="Graph neural networks for molecular property prediction",
        abstract="We propose a novel graph network for molecular property prediction. "
        "Results show higher accuracy than previous models.",
        fullText="Future work includes larger molecules.",
        year=2019,
        citations=30,
    ),
    Paper(
        id="p2",
        title="Message passing networks for molecular graphs",
        abstract="We introduce message passing for molecular graphs. "
        "Experiments demonstrate strong performance.",
        year=2021,
        citations=12,
    ),
    Paper(
        id="p3",
        title="Reinforcement learning for robotic manipulation",
        abstract="This work tackles the problem of robotic grasping with reinforcement learning. "
        "Evaluation shows robust manipulation. A key limitation is simulation transfer.",
        fullText="Our main limitation is the simulation gap.",
        year=2023,
        citations=5,
    ),
]


class FakeContext:
    """In-memory stand-in for the context store read path."""

    def __init__(self, entries: dict[tuple[str, str], dict]):
        self.entries = entries
        self.full_reads = 0

    async def read(self, run_id, agent_id=None, key=None, summary_only=False, version=None):
        entry = self.entries[(agent_id, key)]
        size = len(json.dumps(entry))
        if summary_only:
            return SimpleNamespace(data=None, summary=summarize(entry), size_bytes=size)
        self.full_reads += 1
        return SimpleNamespace(data=entry, summary=None, size_bytes=size)


def _micro_outputs() -> list[dict]:
    return [analyze_paper(p) for p in PAPERS]


def _input(kind: AgentKind, inputs, previous_meta=None, config=None) -> AgentInput:
    return AgentInput(
        run_id="run-1",
        agent_id=f"{kind.value}-0",
        kind=kind,
        depth=0,
        query="q",
        config=config or RunConfig(),
        inputs=inputs,
        previous_meta=previous_meta,
    )


# Meso


@pytest.mark.parametrize(
    "papers,expected",
    [(0, 0), (1, 1), (3, 2), (8, 3), (15, 4), (30, 6), (60, 8), (500, 10)],
)
def test_optimal_cluster_count(papers, expected):
    assert optimal_cluster_count(papers) == expected


def test_cluster_keyword_sets_separates_topics():
    sets = [{"a", "b"}, {"a", "b", "c"}, {"x", "y"}, {"x", "y", "z"}]

    assert cluster_keyword_sets(sets, 2) == [[0, 1], [2, 3]]
    assert cluster_keyword_sets([], 2) == []
    assert cluster_keyword_sets([{"a"}], 3) == [[0]]


def test_cohesion_of_single_paper_is_one():
    assert cohesion([{"title": "anything"}]) == 1.0


def test_collect_gaps_merges_by_description():
    outputs = [
        {"paper_id": "p1", "gaps": [{"description": "Need data", "priority": "medium", "confidence": 0.6}]},
        {"paper_id": "p2", "gaps": [{"description": "need data ", "priority": "high", "confidence": 0.8}]},
        {"paper_id": "p3", "gaps": [{"description": "Other", "priority": "low", "confidence": 0.5}]},
    ]

    gaps = collect_gaps(outputs)

    assert [g["description"] for g in gaps] == ["Need data", "Other"]
    assert gaps[0]["priority"] == "high"
    assert gaps[0]["paper_ids"] == ["p1", "p2"]
    assert gaps[0]["confidence"] == pytest.approx(0.7)


def test_cluster_outputs_requires_input():
    with pytest.raises(ValidationError):
        cluster_outputs([])


def test_cluster_outputs_groups_papers():
    meso = cluster_outputs(_micro_outputs())

    assert meso["total_papers"] == 3
    assert meso["total_clusters"] == 2
    assert sorted(p for c in meso["clusters"] for p in c["paper_ids"]) == ["p1", "p2", "p3"]
    assert meso["statistics"]["min_cluster_size"] >= 1
    assert 0.0 <= meso["confidence"] <= 0.95


def test_thematic_gaps_pair_every_cluster():
    meso = cluster_outputs(_micro_outputs())
    intersections = [g for g in thematic_gaps(meso["clusters"]) if "∩" in g["theme"]]

    assert len(intersections) == 1
    assert intersections[0]["cluster_ids"] == [0, 1]
    assert intersections[0]["description"].startswith("Potential for cross-domain research between")


def test_cluster_outputs_is_deterministic():
    assert cluster_outputs(_micro_outputs()) == cluster_outputs(_micro_outputs())


@pytest.mark.asyncio
async def test_meso_agent_reads_micro_contexts():
    outputs = _micro_outputs()
    entries = {(f"micro-0-{i}", f"micro/0/{o['paper_id']}"): o for i, o in enumerate(outputs)}
    refs = [ContextRef(agent_id=a, key=k) for a, k in entries]

    result = await MesoAgent().execute(_input(AgentKind.MESO, refs), FakeContext(entries))

    assert result.output["total_papers"] == 3
    assert result.sources == ["p1", "p2", "p3"]
    assert [r.result_type for r in result.results] == [ResultType.CLUSTER_SUMMARY]


@pytest.mark.asyncio
async def test_meso_agent_clusters_large_outputs_from_summaries(monkeypatch):
    monkeypatch.setattr("rmri.agents.meso.FULL_READ_LIMIT_BYTES", 0)
    outputs = _micro_outputs()
    outputs[0]["keywords"] = [f"term{i}" for i in range(25)] + outputs[0]["keywords"]
    entries = {(f"micro-0-{i}", f"micro/0/{o['paper_id']}"): o for i, o in enumerate(outputs)}
    refs = [ContextRef(agent_id=a, key=k) for a, k in entries]
    context = FakeContext(entries)

    result = await MesoAgent().execute(_input(AgentKind.MESO, refs), context)

    assert context.full_reads == 0
    assert result.output["total_papers"] == 3
    assert result.sources == ["p1", "p2", "p3"]


def test_restore_lists_undoes_collapsed_lists():
    payload = {"keywords": [f"k{i}" for i in range(15)], "gaps": [{"description": "x"}]}

    restored = restore_lists(summarize(payload))

    assert restored["keywords"] == [f"k{i}" for i in range(10)]
    assert restored["gaps"] == [{"description": "x"}]


# Meta


def test_cross_domain_patterns_from_shared_keywords():
    meso = {
        "clusters": [
            {"keywords": ["graph", "learning"], "methodologies": [{"method": "cnn", "frequency": 2}],
             "year_range": {"min": 2015, "max": 2018}},
            {"keywords": ["graph", "robots"], "methodologies": [{"method": "cnn", "frequency": 1}],
             "year_range": {"min": 2019, "max": 2023}},
        ]
    }

    patterns = cross_domain_patterns(meso)
    types = [p["type"] for p in patterns]

    assert types == ["recurring_theme", "cross_domain_methodology", "temporal_evolution"]
    assert patterns[0]["theme"] == "graph"
    assert patterns[0]["confidence"] == pytest.approx(0.7)
    assert patterns[2]["year_range"] == {"min": 2015, "max": 2023}


def test_candidate_gaps_merge_duplicate_descriptions():
    meso = {
        "clusters": [
            {"cluster_id": 0, "label": "a", "size": 2, "cohesion": 0.4,
             "gaps": [{"description": "Shared gap", "priority": "medium", "paper_ids": ["p1"]}]},
            {"cluster_id": 1, "label": "b", "size": 1, "cohesion": 0.9,
             "gaps": [{"description": "shared  gap", "priority": "high", "paper_ids": ["p2"]}]},
        ],
        "thematic_gaps": [],
    }

    candidates = synthesize_candidate_gaps(meso)

    assert len(candidates) == 1
    gap, _ = candidates[0]
    assert gap.cluster_ids == [0, 1]
    assert gap.paper_ids == ["p1", "p2"]
    assert gap.priority == "high"
    assert gap.cluster_size == 3
    assert gap.cluster_cohesion == 0.9


def test_synthesize_first_round():
    meso = cluster_outputs(_micro_outputs())
    output = synthesize(meso, None, RunConfig())

    ranks = [g["rank"] for g in output["gaps"]]
    assert ranks == list(range(1, len(ranks) + 1))
    assert output["convergence"]["similarity"] == 0.0
    assert output["convergence"]["converged"] is False
    assert output["convergence"]["reason"] == "First round"
    assert all(g["rounds_seen"] == 1 for g in output["gaps"])
    assert "critique" in output


def test_synthesize_identical_round_converges():
    meso = cluster_outputs(_micro_outputs())
    config = RunConfig(convergenceThreshold=0.9)
    first = synthesize(meso, None, config)

    second = synthesize(meso, first, config)

    assert second["convergence"]["similarity"] == pytest.approx(1.0)
    assert second["convergence"]["converged"] is True
    assert all(g["rounds_seen"] == 2 for g in second["gaps"])
    assert second["confidence"] > first["confidence"]


def test_synthesize_flags_low_confidence_gaps():
    meso = cluster_outputs(_micro_outputs())
    output = synthesize(meso, None, RunConfig(confidenceThreshold=1.0, enableCritic=False))

    assert all(g["needs_verification"] for g in output["gaps"])
    assert output["statistics"]["needs_verification"] == len(output["gaps"])
    assert "critique" not in output


def test_ranking_confidence_aggregates_top_gaps():
    meso = cluster_outputs(_micro_outputs())
    config = RunConfig()

    output = synthesize(meso, None, config)

    expected = ConfidenceCalculator().aggregate([g["confidence"] for g in output["gaps"][: config.top_n]])
    assert output["ranking_confidence"]["value"] == pytest.approx(expected.value)
    assert output["ranking_confidence"]["level"] == expected.level


def test_critique_reasons():
    gap = CandidateGap(theme="t", description="d", paper_ids=["p1"], confidence=0.4, rank=1)

    review = critique([gap], threshold=0.7)

    assert review["flagged"] == 1
    assert review["issues"][0]["reasons"] == [
        "confidence 0.40 below 0.70",
        "supported by at most one paper",
        "source cluster has low cohesion",
    ]


@pytest.mark.asyncio
async def test_meta_agent_publishes_ranked_results():
    meso = cluster_outputs(_micro_outputs())
    context = FakeContext({("meso-0", "meso/0"): meso})
    agent_input = _input(AgentKind.META, [ContextRef(agent_id="meso-0", key="meso/0")])

    output = await MetaAgent().execute(agent_input, context)

    assert [r.result_type for r in output.results] == [
        ResultType.GAP_RANKING,
        ResultType.CROSS_DOMAIN_PATTERNS,
        ResultType.RESEARCH_FRONTIERS,
        ResultType.CRITIQUE,
    ]
    assert output.results[0].content["gaps"] == output.output["gaps"]
    assert output.results[0].confidence == output.output["ranking_confidence"]["value"]
    assert sorted(output.sources) == ["p1", "p2", "p3"]


@pytest.mark.asyncio
async def test_meta_agent_reads_previous_round():
    meso = cluster_outputs(_micro_outputs())
    previous = synthesize(meso, None, RunConfig())
    context = FakeContext({("meso-1", "meso/1"): meso, ("meta-0", "meta/0"): previous})
    agent_input = _input(
        AgentKind.META,
        [ContextRef(agent_id="meso-1", key="meso/1")],
        previous_meta=ContextRef(agent_id="meta-0", key="meta/0"),
    )

    output = await MetaAgent().execute(agent_input, context)

    assert output.output["convergence"]["similarity"] == pytest.approx(1.0)
