"""
Tests for the confidence calculator.
"""

import pytest

from rmri.scoring.confidence import ConfidenceCalculator


@pytest.fixture
def calculator():
    return ConfidenceCalculator()


def test_levels(calculator):
    assert calculator.level(0.8) == "high"
    assert calculator.level(0.75) == "high"
    assert calculator.level(0.5) == "medium"
    assert calculator.level(0.3) == "low"
    assert calculator.level(0.29) == "very_low"


def test_agreement_bonus_and_penalty():
    assert ConfidenceCalculator.agreement_score(0.9) == pytest.approx(1.0)
    assert ConfidenceCalculator.agreement_score(0.5) == pytest.approx(0.5)
    assert ConfidenceCalculator.agreement_score(0.2) == pytest.approx(0.1)


def test_evidence_is_logarithmic():
    assert ConfidenceCalculator.evidence_score(0, 10) == 0.0
    assert ConfidenceCalculator.evidence_score(10, 10) == pytest.approx(1.0)
    assert ConfidenceCalculator.evidence_score(5, 10) == pytest.approx(0.5849625)
    assert ConfidenceCalculator.evidence_score(3, 0) == 0.5


def test_calculate_weighted_sum(calculator):
    score = calculator.calculate(
        provider_confidence=1.0, agreement=1.0, evidence_count=10, max_evidence=10
    )

    assert score.value == pytest.approx(0.925)
    assert score.level == "high"
    assert score.breakdown["quality"] == 0.5
    assert not score.needs_verification


def test_low_support_needs_verification(calculator):
    score = calculator.gap_confidence(paper_count=0, cluster_count=0, cohesion=0.0, base=0.3)

    assert score.value < 0.5
    assert score.needs_verification


def test_output_quality_prefers_structured_outputs():
    structured = {"gaps": ["a"], "contributions": ["b"]}

    assert ConfidenceCalculator.output_quality(None) == 0.0
    assert ConfidenceCalculator.output_quality(structured) > ConfidenceCalculator.output_quality("ok")


def test_aggregate_methods(calculator):
    values = [0.2, 0.4, 0.9]

    assert calculator.aggregate(values, "min").value == pytest.approx(0.2)
    assert calculator.aggregate(values, "max").value == pytest.approx(0.9)
    assert calculator.aggregate(values, "median").value == pytest.approx(0.4)
    assert calculator.aggregate([0.2, 0.4], "median").value == pytest.approx(0.3)
    assert calculator.aggregate([1.0, 0.0]).value == pytest.approx(2 / 3)
    assert calculator.aggregate([]).level == "very_low"


def test_gap_confidence_scores_description_quality(calculator):
    bare = calculator.gap_confidence(paper_count=2, cluster_count=1, cohesion=0.6, base=0.7)
    terse = calculator.gap_confidence(
        paper_count=2, cluster_count=1, cohesion=0.6, base=0.7, description="More data"
    )

    assert bare.breakdown["quality"] == 0.5
    assert terse.breakdown["quality"] == pytest.approx(0.3)
    assert terse.value < bare.value
