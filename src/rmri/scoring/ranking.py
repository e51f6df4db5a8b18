"""
Multi-criteria scoring and ranking of candidate research gaps.

Each gap gets four criterion scores in [0, 1]:
- importance: priority, size and cohesion of the source cluster
- novelty: unexplored-area vocabulary and cross-theme intersections
- feasibility: availability of data/prior work versus complexity markers
- impact: impact vocabulary and cross-theme origin

total_score is a weighted sum; ranking is deterministic for equal inputs.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Literal

from ..config import RankingWeights

GapPriority = Literal["high", "medium", "low"]
GapSource = Literal["meso_cluster", "thematic_analysis"]

NOVELTY_KEYWORDS = ["unexplored", "novel", "new", "emerging", "frontier", "innovative", "untapped"]
COMPLEXITY_KEYWORDS = [
    "fundamental",
    "theoretical",
    "long-term",
    "require significant",
    "major breakthrough",
]
IMPACT_KEYWORDS = [
    "significant",
    "important",
    "critical",
    "essential",
    "breakthrough",
    "transformative",
    "game-changing",
]
INTERSECTION_MARKER = " ∩ "

_WHITESPACE = re.compile(r"\s+")


def normalize_text(text: str) -> str:
    return _WHITESPACE.sub(" ", text.strip().lower())


@dataclass
class CandidateGap:
    """A research gap proposed by the meta agent."""

    theme: str
    description: str
    priority: GapPriority = "medium"
    source: GapSource = "meso_cluster"
    cluster_ids: list[int] = field(default_factory=list)
    paper_ids: list[str] = field(default_factory=list)
    cluster_size: int = 0
    cluster_cohesion: float = 0.0
    scores: dict[str, float] = field(default_factory=dict)
    total_score: float = 0.0
    confidence: float = 0.0
    rank: int = 0
    needs_verification: bool = False
    rounds_seen: int = 1

    @property
    def signature(self) -> str:
        """Identity used for deduplication and convergence."""
        return f"{normalize_text(self.theme)}|{normalize_text(self.description)}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "rank": self.rank,
            "theme": self.theme,
            "description": self.description,
            "priority": self.priority,
            "source": self.source,
            "cluster_ids": list(self.cluster_ids),
            "paper_ids": list(self.paper_ids),
            "cluster_size": self.cluster_size,
            "cluster_cohesion": round(self.cluster_cohesion, 6),
            "scores": dict(self.scores),
            "total_score": round(self.total_score, 6),
            "confidence": round(self.confidence, 6),
            "needs_verification": self.needs_verification,
            "rounds_seen": self.rounds_seen,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CandidateGap":
        return cls(
            theme=data.get("theme", ""),
            description=data.get("description", ""),
            priority=data.get("priority", "medium"),
            source=data.get("source", "meso_cluster"),
            cluster_ids=list(data.get("cluster_ids", [])),
            paper_ids=list(data.get("paper_ids", [])),
            cluster_size=int(data.get("cluster_size", 0)),
            cluster_cohesion=float(data.get("cluster_cohesion", 0.0)),
            scores=dict(data.get("scores", {})),
            total_score=float(data.get("total_score", 0.0)),
            confidence=float(data.get("confidence", 0.0)),
            rank=int(data.get("rank", 0)),
            needs_verification=bool(data.get("needs_verification", False)),
            rounds_seen=int(data.get("rounds_seen", 1)),
        )


def importance_score(gap: CandidateGap) -> float:
    score = 0.5
    if gap.priority == "high":
        score += 0.3
    elif gap.priority == "medium":
        score += 0.15
    if gap.cluster_size:
        score += min(0.2, gap.cluster_size * 0.02)
    if gap.cluster_cohesion:
        score += gap.cluster_cohesion * 0.2
    return min(score, 1.0)


def novelty_score(gap: CandidateGap) -> float:
    text = f"{gap.theme} {gap.description}".lower()
    score = 0.5 + 0.1 * sum(1 for kw in NOVELTY_KEYWORDS if re.search(rf"\b{re.escape(kw)}\b", text))
    if INTERSECTION_MARKER.strip() in text or "intersection" in text:
        score += 0.2
    return min(score, 1.0)


def feasibility_score(gap: CandidateGap) -> float:
    text = gap.description.lower()
    score = 0.6
    if "data available" in text or "existing" in text:
        score += 0.2
    score -= 0.1 * sum(1 for kw in COMPLEXITY_KEYWORDS if kw in text)
    return max(0.2, min(score, 1.0))


def impact_score(gap: CandidateGap) -> float:
    text = gap.description.lower()
    score = 0.5 + 0.1 * sum(1 for kw in IMPACT_KEYWORDS if kw in text)
    if gap.source == "thematic_analysis":
        score += 0.15
    return min(score, 1.0)


def score_gap(gap: CandidateGap) -> dict[str, float]:
    """Compute the four criterion scores for a gap."""
    gap.scores = {
        "importance": round(importance_score(gap), 6),
        "novelty": round(novelty_score(gap), 6),
        "feasibility": round(feasibility_score(gap), 6),
        "impact": round(impact_score(gap), 6),
    }
    return gap.scores


def total_score(scores: dict[str, float], weights: RankingWeights | None = None) -> float:
    normalized = (weights or RankingWeights()).normalized()
    return sum(scores.get(name, 0.0) * weight for name, weight in normalized.items())


def rank_gaps(
    gaps: list[CandidateGap],
    weights: RankingWeights | None = None,
) -> list[CandidateGap]:
    """
    Order gaps by total score, then confidence, then insertion order.

    Criterion scores must already be set. Assigns 1-based ranks and returns a
    new list; the input list is not reordered.
    """
    for gap in gaps:
        gap.total_score = round(total_score(gap.scores, weights), 6)

    indexed = list(enumerate(gaps))
    indexed.sort(key=lambda item: (-item[1].total_score, -item[1].confidence, item[0]))

    ranked = [gap for _, gap in indexed]
    for position, gap in enumerate(ranked, start=1):
        gap.rank = position
    return ranked
