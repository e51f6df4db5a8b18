"""
Meta agent: cross-domain synthesis and gap ranking.

Provides:
- Cross-domain patterns (recurring themes, shared methodologies, temporal span)
- Candidate gap synthesis from cluster gaps and thematic gaps
- Multi-criteria scoring, evidence-based confidence and ranking
- Research frontiers and recommended directions
- Convergence against the previous round and an optional critique
"""

import logging
from collections import Counter
from typing import Any

from ..config import RunConfig
from ..scoring.confidence import ConfidenceCalculator
from ..scoring.convergence import evaluate_convergence
from ..scoring.ranking import CandidateGap, normalize_text, rank_gaps, score_gap
from ..store.models import AgentKind, ResultType
from .protocol import AgentInput, AgentOutput, ContextReader, ResultItem

logger = logging.getLogger(__name__)

MAX_RANKED_GAPS = 20
MAX_DIRECTIONS = 10


def cross_domain_patterns(meso: dict[str, Any]) -> list[dict[str, Any]]:
    clusters = meso.get("clusters", [])
    patterns = []

    keyword_frequency: Counter[str] = Counter()
    for cluster in clusters:
        keyword_frequency.update(set(cluster.get("keywords", [])))
    for keyword, frequency in keyword_frequency.most_common():
        if frequency >= 2:
            patterns.append(
                {
                    "type": "recurring_theme",
                    "theme": keyword,
                    "frequency": frequency,
                    "description": f"Theme appears across {frequency} clusters",
                    "confidence": round(min(0.9, 0.5 + frequency * 0.1), 6),
                }
            )

    method_frequency: Counter[str] = Counter()
    for cluster in clusters:
        for methodology in cluster.get("methodologies", []):
            method_frequency[methodology["method"]] += methodology.get("frequency", 1)
    for method, frequency in [m for m in method_frequency.most_common() if m[1] >= 3][:5]:
        patterns.append(
            {
                "type": "cross_domain_methodology",
                "methodology": method,
                "frequency": frequency,
                "description": "Methodology used across multiple themes",
                "confidence": 0.8,
            }
        )

    ranges = [c["year_range"] for c in clusters if c.get("year_range")]
    if ranges:
        low = min(r["min"] for r in ranges)
        high = max(r["max"] for r in ranges)
        if high - low > 3:
            patterns.append(
                {
                    "type": "temporal_evolution",
                    "year_range": {"min": low, "max": high},
                    "description": f"Research evolution spanning {high - low} years",
                    "confidence": 0.85,
                }
            )
    return patterns


def synthesize_candidate_gaps(meso: dict[str, Any]) -> list[tuple[CandidateGap, float]]:
    """
    Collect cluster gaps and thematic gaps, merged by normalized description.

    Returns (gap, source confidence) pairs in first-seen order.
    """
    clusters = {c["cluster_id"]: c for c in meso.get("clusters", [])}
    merged: dict[str, tuple[CandidateGap, float]] = {}

    def add(gap: CandidateGap, confidence: float) -> None:
        key = normalize_text(gap.description)
        if key not in merged:
            merged[key] = (gap, confidence)
            return
        existing, existing_confidence = merged[key]
        for cluster_id in gap.cluster_ids:
            if cluster_id not in existing.cluster_ids:
                existing.cluster_ids.append(cluster_id)
        for paper_id in gap.paper_ids:
            if paper_id not in existing.paper_ids:
                existing.paper_ids.append(paper_id)
        if gap.priority == "high":
            existing.priority = "high"
        existing.cluster_size += gap.cluster_size
        existing.cluster_cohesion = max(existing.cluster_cohesion, gap.cluster_cohesion)
        merged[key] = (existing, max(existing_confidence, confidence))

    for cluster in meso.get("clusters", []):
        for gap in cluster.get("gaps", []):
            add(
                CandidateGap(
                    theme=cluster["label"],
                    description=gap["description"],
                    priority=gap.get("priority", "medium"),
                    source="meso_cluster",
                    cluster_ids=[cluster["cluster_id"]],
                    paper_ids=list(gap.get("paper_ids", [])),
                    cluster_size=cluster["size"],
                    cluster_cohesion=cluster["cohesion"],
                ),
                gap.get("confidence", 0.7),
            )

    for gap in meso.get("thematic_gaps", []):
        members = [clusters[c] for c in gap.get("cluster_ids", []) if c in clusters]
        add(
            CandidateGap(
                theme=gap["theme"],
                description=gap["description"],
                priority=gap.get("priority", "medium"),
                source="thematic_analysis",
                cluster_ids=list(gap.get("cluster_ids", [])),
                paper_ids=list(gap.get("paper_ids", [])),
                cluster_size=sum(c["size"] for c in members),
                cluster_cohesion=(
                    sum(c["cohesion"] for c in members) / len(members) if members else 0.0
                ),
            ),
            gap.get("confidence", 0.6),
        )

    return list(merged.values())


def research_frontiers(
    meso: dict[str, Any], patterns: list[dict[str, Any]]
) -> list[dict[str, Any]]:
    frontiers = []

    trending = [
        {"theme": c["label"], "trends": c["trends"], "papers": c["size"]}
        for c in meso.get("clusters", [])
        if c.get("trends")
    ]
    if trending:
        frontiers.append(
            {
                "type": "trending_research",
                "themes": trending[:5],
                "description": "Rapidly evolving research areas with increasing activity",
                "confidence": 0.8,
            }
        )

    recurring = [p for p in patterns if p["type"] == "recurring_theme"][:3]
    if recurring:
        frontiers.append(
            {
                "type": "cross_domain_synthesis",
                "patterns": recurring,
                "description": "Opportunities for interdisciplinary research",
                "confidence": 0.75,
            }
        )

    methods = [p for p in patterns if p["type"] == "cross_domain_methodology"][:3]
    if methods:
        frontiers.append(
            {
                "type": "methodological_innovation",
                "methodologies": methods,
                "description": "New methodological approaches gaining traction",
                "confidence": 0.7,
            }
        )
    return frontiers


def research_directions(
    ranked: list[CandidateGap], frontiers: list[dict[str, Any]]
) -> list[dict[str, Any]]:
    directions = []
    for gap in ranked[:5]:
        directions.append(
            {
                "priority": len(directions) + 1,
                "direction": gap.description,
                "theme": gap.theme,
                "rationale": f"High-impact gap with score {gap.total_score:.2f}",
                "expected_impact": gap.scores.get("impact", 0.5),
                "feasibility": gap.scores.get("feasibility", 0.5),
                "novelty": gap.scores.get("novelty", 0.5),
                "confidence": gap.confidence,
            }
        )

    for frontier in frontiers:
        if frontier["type"] == "cross_domain_synthesis":
            themes = " and ".join(p["theme"] for p in frontier["patterns"])
            directions.append(
                {
                    "priority": len(directions) + 1,
                    "direction": f"Explore intersections between {themes}",
                    "theme": "cross-domain",
                    "rationale": "Cross-domain synthesis opportunity",
                    "expected_impact": 0.8,
                    "feasibility": 0.6,
                    "novelty": 0.85,
                    "confidence": frontier["confidence"],
                }
            )
    return directions[:MAX_DIRECTIONS]


def critique(ranked: list[CandidateGap], threshold: float) -> dict[str, Any]:
    """Flag gaps whose support is too thin to act on without verification."""
    issues = []
    for gap in ranked:
        reasons = []
        if gap.confidence < threshold:
            reasons.append(f"confidence {gap.confidence:.2f} below {threshold:.2f}")
        if len(gap.paper_ids) <= 1:
            reasons.append("supported by at most one paper")
        if gap.cluster_cohesion < 0.2 and gap.source == "meso_cluster":
            reasons.append("source cluster has low cohesion")
        if reasons:
            issues.append(
                {"rank": gap.rank, "theme": gap.theme, "description": gap.description, "reasons": reasons}
            )
    return {
        "reviewed": len(ranked),
        "flagged": len(issues),
        "issues": issues,
        "summary": (
            f"{len(issues)} of {len(ranked)} gaps need verification"
            if issues
            else "All ranked gaps are adequately supported"
        ),
    }


def meta_confidence(
    cluster_count: int, ranked: list[CandidateGap], converged: bool
) -> float:
    confidence = 0.6
    if cluster_count >= 2:
        confidence += 0.1
    if cluster_count >= 4:
        confidence += 0.1
    top = ranked[:10]
    if top:
        confidence += sum(g.total_score for g in top) / len(top) * 0.15
    if converged:
        confidence += 0.15
    return round(min(confidence, 0.95), 6)


def synthesize(
    meso: dict[str, Any],
    previous: dict[str, Any] | None,
    config: RunConfig,
    calculator: ConfidenceCalculator | None = None,
) -> dict[str, Any]:
    """Rank gaps across clusters and compare with the previous round."""
    calculator = calculator or ConfidenceCalculator()
    patterns = cross_domain_patterns(meso)
    candidates = synthesize_candidate_gaps(meso)

    previous_gaps = (
        [CandidateGap.from_dict(g) for g in previous.get("gaps", [])] if previous else None
    )
    seen_before = {g.signature: g.rounds_seen for g in previous_gaps or []}

    gaps = []
    for gap, source_confidence in candidates:
        score_gap(gap)
        gap.confidence = round(
            calculator.gap_confidence(
                paper_count=len(gap.paper_ids),
                cluster_count=len(gap.cluster_ids),
                cohesion=gap.cluster_cohesion,
                base=source_confidence,
                description=gap.description,
            ).value,
            6,
        )
        gap.rounds_seen = seen_before.get(gap.signature, 0) + 1
        gaps.append(gap)

    ranked = rank_gaps(gaps, config.ranking_weights)[:MAX_RANKED_GAPS]
    for gap in ranked:
        gap.needs_verification = gap.confidence < config.confidence_threshold

    convergence = evaluate_convergence(
        ranked, previous_gaps, config.convergence_threshold, config.top_n
    )
    frontiers = research_frontiers(meso, patterns)
    cluster_count = len(meso.get("clusters", []))
    ranking_confidence = calculator.aggregate([g.confidence for g in ranked[: config.top_n]])

    output: dict[str, Any] = {
        "gaps": [g.to_dict() for g in ranked],
        "cross_domain_patterns": patterns,
        "research_frontiers": frontiers,
        "recommended_directions": research_directions(ranked, frontiers),
        "convergence": {
            "similarity": convergence.similarity,
            "converged": convergence.converged,
            "threshold": config.convergence_threshold,
            "shared": convergence.shared,
            "compared": convergence.compared,
            "reason": (
                "First round"
                if previous is None
                else f"{convergence.shared} of top {convergence.compared} gaps carried over"
            ),
        },
        "confidence": meta_confidence(cluster_count, ranked, convergence.converged),
        "ranking_confidence": {
            "value": round(ranking_confidence.value, 6),
            "level": ranking_confidence.level,
        },
        "statistics": {
            "total_clusters": cluster_count,
            "total_papers": meso.get("total_papers", 0),
            "total_gaps_identified": len(candidates),
            "unique_themes": len({c["label"] for c in meso.get("clusters", [])}),
            "needs_verification": sum(1 for g in ranked if g.needs_verification),
        },
    }
    if config.enable_critic:
        output["critique"] = critique(ranked, config.confidence_threshold)
    return output


class MetaAgent:
    """Ranks research gaps across the round's clusters."""

    kind = AgentKind.META

    def __init__(self, calculator: ConfidenceCalculator | None = None):
        self.calculator = calculator or ConfidenceCalculator()

    async def execute(self, agent_input: AgentInput, context: ContextReader) -> AgentOutput:
        meso_ref = agent_input.inputs[0]
        meso = (await context.read(agent_input.run_id, meso_ref.agent_id, meso_ref.key)).data

        previous = None
        if agent_input.previous_meta is not None:
            ref = agent_input.previous_meta
            previous = (await context.read(agent_input.run_id, ref.agent_id, ref.key)).data

        output = synthesize(meso, previous, agent_input.config, self.calculator)
        output["depth"] = agent_input.depth
        output["agent_id"] = agent_input.agent_id

        logger.info(
            f"[{agent_input.agent_id}] ranked {len(output['gaps'])} gaps, "
            f"similarity {output['convergence']['similarity']:.3f}"
        )

        confidence = output["confidence"]
        sources = list(
            dict.fromkeys(p for c in meso.get("clusters", []) for p in c.get("paper_ids", []))
        )
        results = [
            ResultItem(
                ResultType.GAP_RANKING,
                {
                    "gaps": output["gaps"],
                    "recommended_directions": output["recommended_directions"],
                    "convergence": output["convergence"],
                    "statistics": output["statistics"],
                },
                output["ranking_confidence"]["value"],
                sources,
            ),
            ResultItem(
                ResultType.CROSS_DOMAIN_PATTERNS,
                {"patterns": output["cross_domain_patterns"]},
                confidence,
                sources,
            ),
            ResultItem(
                ResultType.RESEARCH_FRONTIERS,
                {"frontiers": output["research_frontiers"]},
                confidence,
                sources,
            ),
        ]
        if "critique" in output:
            results.append(ResultItem(ResultType.CRITIQUE, output["critique"], confidence, sources))

        return AgentOutput(output=output, confidence=confidence, sources=sources, results=results)
