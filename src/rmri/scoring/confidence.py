"""
Confidence scoring for agent outputs and candidate gaps.

Combines four factors into a normalized score:
- provider confidence (what the agent itself reports)
- agreement (cluster cohesion, round-to-round similarity)
- evidence count (supporting papers/clusters, logarithmic)
- output quality (structure and size of the output)
"""

import json
import math
from dataclasses import dataclass, field
from typing import Any, Literal

ConfidenceLevel = Literal["high", "medium", "low", "very_low"]
AggregationMethod = Literal["min", "max", "median", "weighted_average"]

DEFAULT_WEIGHTS = {
    "provider": 0.35,
    "agreement": 0.30,
    "evidence": 0.20,
    "quality": 0.15,
}


def _clamp(value: float) -> float:
    return min(max(value, 0.0), 1.0)


@dataclass
class ConfidenceScore:
    """Normalized confidence with its per-factor breakdown."""

    value: float
    level: ConfidenceLevel
    breakdown: dict[str, float] = field(default_factory=dict)

    @property
    def needs_verification(self) -> bool:
        return self.level in ("low", "very_low")


class ConfidenceCalculator:
    """Weighted confidence model shared by all agent kinds."""

    HIGH = 0.75
    MEDIUM = 0.50
    LOW = 0.30

    def __init__(self):
        self.weights = dict(DEFAULT_WEIGHTS)

    def level(self, score: float) -> ConfidenceLevel:
        if score >= self.HIGH:
            return "high"
        if score >= self.MEDIUM:
            return "medium"
        if score >= self.LOW:
            return "low"
        return "very_low"

    def calculate(
        self,
        provider_confidence: float = 0.5,
        agreement: float = 0.5,
        evidence_count: int = 0,
        max_evidence: int = 10,
        output: Any = None,
    ) -> ConfidenceScore:
        """Combine the four factors into a ConfidenceScore."""
        breakdown = {
            "provider": _clamp(provider_confidence),
            "agreement": self.agreement_score(agreement),
            "evidence": self.evidence_score(evidence_count, max_evidence),
            "quality": self.output_quality(output) if output is not None else 0.5,
        }
        value = _clamp(sum(breakdown[name] * self.weights[name] for name in breakdown))
        return ConfidenceScore(value=value, level=self.level(value), breakdown=breakdown)

    @staticmethod
    def agreement_score(similarity: float) -> float:
        """Boost agreement above 0.7, halve it below 0.3."""
        normalized = _clamp(similarity)
        if normalized > 0.7:
            return _clamp(normalized + (normalized - 0.7) * 0.5)
        if normalized < 0.3:
            return normalized * 0.5
        return normalized

    @staticmethod
    def evidence_score(count: int, max_expected: int) -> float:
        """Diminishing returns: log2(1 + count / max_expected)."""
        if count <= 0:
            return 0.0
        if max_expected <= 0:
            return 0.5
        return _clamp(math.log2(1 + count / max_expected))

    @staticmethod
    def output_quality(output: Any) -> float:
        if not output:
            return 0.0

        text = output if isinstance(output, str) else json.dumps(output, default=str)
        score = 0.5

        word_count = len(text.split())
        if 100 < word_count < 5000:
            score += 0.15
        elif word_count < 20:
            score -= 0.2

        if isinstance(output, dict):
            score += 0.1
            if any(output.get(k) for k in ("contributions", "gaps", "patterns", "clusters")):
                score += 0.1
        elif isinstance(output, str):
            if any(marker in text for marker in ("- ", "* ", "• ")):
                score += 0.1
            lowered = text.lower()
            academic = ["research", "study", "findings", "methodology", "analysis", "evidence"]
            score += sum(1 for kw in academic if kw in lowered) / len(academic) * 0.1

        return _clamp(score)

    def gap_confidence(
        self,
        paper_count: int,
        cluster_count: int,
        cohesion: float,
        base: float = 0.7,
        description: str | None = None,
    ) -> ConfidenceScore:
        """
        Evidential support for one candidate gap.

        Args:
            paper_count: Papers whose analyses contributed to the gap
            cluster_count: Clusters the gap draws on
            cohesion: Cohesion of the contributing cluster(s)
            base: Confidence reported by the gap's source
            description: Gap description, scored for output quality
        """
        return self.calculate(
            provider_confidence=base,
            agreement=cohesion,
            evidence_count=paper_count + cluster_count,
            max_evidence=10,
            output=description,
        )

    def aggregate(
        self, confidences: list[float], method: AggregationMethod = "weighted_average"
    ) -> ConfidenceScore:
        """Aggregate several confidences into one."""
        if not confidences:
            return ConfidenceScore(value=0.0, level="very_low")

        if method == "min":
            value = min(confidences)
        elif method == "max":
            value = max(confidences)
        elif method == "median":
            ordered = sorted(confidences)
            mid = len(ordered) // 2
            if len(ordered) % 2 == 0:
                value = (ordered[mid - 1] + ordered[mid]) / 2
            else:
                value = ordered[mid]
        else:
            ordered = sorted(confidences, reverse=True)
            weights = [1 / (i + 1) for i in range(len(ordered))]
            value = sum(c * w for c, w in zip(ordered, weights)) / sum(weights)

        value = _clamp(value)
        return ConfidenceScore(
            value=value,
            level=self.level(value),
            breakdown={"min": min(confidences), "max": max(confidences)},
        )
