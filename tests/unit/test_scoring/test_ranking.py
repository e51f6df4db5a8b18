"""
Tests for gap scoring and ranking.
"""

import pytest

from rmri.config import RankingWeights
from rmri.scoring.ranking import (
    CandidateGap,
    feasibility_score,
    importance_score,
    impact_score,
    novelty_score,
    rank_gaps,
    score_gap,
    total_score,
)


def _gap(theme: str, description: str = "", **kwargs) -> CandidateGap:
    return CandidateGap(theme=theme, description=description or f"Gap about {theme}", **kwargs)


def test_importance_from_priority_size_and_cohesion():
    low = _gap("a", priority="low")
    high = _gap("b", priority="high", cluster_size=5, cluster_cohesion=0.5)

    assert importance_score(low) == pytest.approx(0.5)
    assert importance_score(high) == pytest.approx(1.0)


def test_novelty_rewards_intersections_and_vocabulary():
    plain = _gap("sensors", "Calibration of sensors")
    intersection = _gap("graphs ∩ chemistry", "Potential for cross-domain research between graphs and chemistry")
    novel = _gap("x", "An unexplored and emerging direction")

    assert novelty_score(plain) == pytest.approx(0.5)
    assert novelty_score(intersection) == pytest.approx(0.7)
    assert novelty_score(novel) == pytest.approx(0.7)


def test_feasibility_bounds():
    assert feasibility_score(_gap("a", "Extend existing benchmarks")) == pytest.approx(0.8)
    assert feasibility_score(_gap("a", "Fundamental theoretical question")) == pytest.approx(0.4)
    hard = _gap(
        "a",
        "Fundamental theoretical long-term work that would require significant major breakthrough",
    )
    assert feasibility_score(hard) == pytest.approx(0.2)


def test_impact_prefers_thematic_gaps():
    cluster = _gap("a", "Calibration drift", source="meso_cluster")
    thematic = _gap("a", "Calibration drift", source="thematic_analysis")

    assert impact_score(cluster) == pytest.approx(0.5)
    assert impact_score(thematic) == pytest.approx(0.65)


def test_score_gap_sets_all_criteria():
    gap = _gap("a")
    scores = score_gap(gap)

    assert set(scores) == {"importance", "novelty", "feasibility", "impact"}
    assert gap.scores is scores
    assert all(0.0 <= value <= 1.0 for value in scores.values())


def test_total_score_normalizes_weights():
    scores = {"importance": 1.0, "novelty": 0.0, "feasibility": 0.0, "impact": 0.0}

    assert total_score(scores) == pytest.approx(0.25)
    assert total_score(scores, RankingWeights(importance=2, novelty=0, feasibility=0, impact=0)) == pytest.approx(1.0)


def test_rank_gaps_orders_by_score_then_confidence_then_input():
    gaps = []
    for theme, importance, confidence in [
        ("first", 0.5, 0.5),
        ("second", 0.9, 0.1),
        ("third", 0.5, 0.9),
        ("fourth", 0.5, 0.5),
    ]:
        gap = _gap(theme, confidence=confidence)
        gap.scores = {"importance": importance, "novelty": 0.5, "feasibility": 0.5, "impact": 0.5}
        gaps.append(gap)

    ranked = rank_gaps(gaps)

    assert [g.theme for g in ranked] == ["second", "third", "first", "fourth"]
    assert [g.rank for g in ranked] == [1, 2, 3, 4]
    assert [g.theme for g in gaps] == ["first", "second", "third", "fourth"]


def test_rank_gaps_is_deterministic():
    def build():
        gaps = [_gap(f"theme {i}", priority="high" if i % 2 else "low") for i in range(6)]
        for gap in gaps:
            score_gap(gap)
        return gaps

    assert [g.theme for g in rank_gaps(build())] == [g.theme for g in rank_gaps(build())]


def test_signature_and_dict_roundtrip():
    gap = _gap("  Graph   Learning ", "Sparse  labels", paper_ids=["p1"], cluster_ids=[0])

    assert gap.signature == "graph learning|sparse labels"
    restored = CandidateGap.from_dict(gap.to_dict())
    assert restored.signature == gap.signature
    assert restored.paper_ids == ["p1"]
    assert restored.cluster_ids == [0]
