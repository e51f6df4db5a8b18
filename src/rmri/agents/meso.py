"""
Meso agent: thematic clustering of one round's paper analyses.

Provides:
- Deterministic keyword clustering (Jaccard, farthest-first seeding)
- Per-cluster theme, cohesion, methodologies, trends, contributions and gaps
- Cross-cluster patterns and thematic gaps between clusters
"""

import logging
import math
from collections import Counter
from typing import Any

from ..errors import ValidationError
from ..store.models import AgentKind, ResultType
from .protocol import AgentInput, AgentOutput, ContextReader, ContextRef, ResultItem
from .text import jaccard, keyword_set, top_words

logger = logging.getLogger(__name__)

MAX_REASSIGNMENT_PASSES = 5
CENTROID_SIZE = 20
RECENT_YEAR = 2020
# Micro outputs above this size are clustered from their summary projection
FULL_READ_LIMIT_BYTES = 64 * 1024

METHODOLOGIES = [
    "neural network",
    "deep learning",
    "machine learning",
    "transformer",
    "lstm",
    "cnn",
    "rnn",
    "reinforcement learning",
    "supervised",
    "unsupervised",
    "clustering",
    "classification",
    "regression",
]
PRIORITY_ORDER = {"high": 0, "medium": 1, "low": 2}


def optimal_cluster_count(paper_count: int) -> int:
    if paper_count <= 0:
        return 0
    if paper_count <= 5:
        target = 2
    elif paper_count <= 10:
        target = 3
    elif paper_count <= 20:
        target = 4
    elif paper_count <= 50:
        target = 6
    else:
        target = min(10, math.ceil(math.sqrt(paper_count)))
    return min(target, paper_count)


def cluster_keyword_sets(keyword_sets: list[set[str]], k: int) -> list[list[int]]:
    """
    Group item indices into at most k clusters.

    Seeds are chosen farthest-first starting from item 0, then items are
    reassigned to the most similar centroid until assignments are stable or
    the pass limit is reached. Ties go to the lowest cluster index. Empty
    clusters are dropped.
    """
    n = len(keyword_sets)
    if n == 0 or k <= 0:
        return []
    k = min(k, n)

    seeds = [0]
    while len(seeds) < k:
        best_index, best_distance = None, -1.0
        for i in range(n):
            if i in seeds:
                continue
            distance = min(1.0 - jaccard(keyword_sets[i], keyword_sets[s]) for s in seeds)
            if distance > best_distance:
                best_index, best_distance = i, distance
        seeds.append(best_index)

    centroids = [set(keyword_sets[s]) for s in seeds]
    assignment: list[int] | None = None

    for _ in range(MAX_REASSIGNMENT_PASSES):
        new_assignment = []
        for i, keywords in enumerate(keyword_sets):
            if i in seeds and assignment is None:
                new_assignment.append(seeds.index(i))
                continue
            similarities = [jaccard(keywords, centroid) for centroid in centroids]
            new_assignment.append(similarities.index(max(similarities)))

        if new_assignment == assignment:
            break
        assignment = new_assignment

        for c in range(len(centroids)):
            counts: Counter[str] = Counter()
            for i, cluster in enumerate(assignment):
                if cluster == c:
                    counts.update(sorted(keyword_sets[i]))
            centroids[c] = {word for word, _ in counts.most_common(CENTROID_SIZE)}

    groups = [[i for i, cluster in enumerate(assignment) if cluster == c] for c in range(k)]
    return [group for group in groups if group]


def _cohesion_keywords(output: dict[str, Any]) -> set[str]:
    text = " ".join(
        [output.get("title", "")]
        + [c.get("description", "") for c in output.get("contributions", [])]
    )
    return set(keyword_set(text))


def cohesion(outputs: list[dict[str, Any]]) -> float:
    """Mean pairwise Jaccard similarity of member keywords; 1.0 for a single paper."""
    if len(outputs) <= 1:
        return 1.0
    sets = [_cohesion_keywords(o) for o in outputs]
    total, comparisons = 0.0, 0
    for i in range(len(sets)):
        for j in range(i + 1, len(sets)):
            total += jaccard(sets[i], sets[j])
            comparisons += 1
    return total / comparisons


def common_methodologies(outputs: list[dict[str, Any]]) -> list[dict[str, Any]]:
    counts: Counter[str] = Counter()
    for output in outputs:
        text = " ".join(
            c.get("description", "") for c in output.get("contributions", [])
        ).lower()
        text += " " + " ".join(output.get("methodology", {}).get("techniques", []))
        for method in METHODOLOGIES:
            if method in text:
                counts[method] += 1
    return [
        {
            "method": method,
            "frequency": count,
            "percentage": round(count / len(outputs) * 100, 2),
        }
        for method, count in counts.most_common(5)
    ]


def identify_trends(outputs: list[dict[str, Any]]) -> list[dict[str, Any]]:
    trends = []
    years = sorted(o["year"] for o in outputs if o.get("year") is not None)
    if len(years) >= 3:
        older, recent = years[:3], years[-3:]
        if any(y > max(older) for y in recent):
            trends.append(
                {
                    "type": "increasing_activity",
                    "description": "Growing research interest in recent years",
                    "confidence": 0.7,
                }
            )

    recent_citations = [
        o.get("citations") or 0 for o in outputs if (o.get("year") or 0) >= RECENT_YEAR
    ]
    if recent_citations and sum(recent_citations) / len(recent_citations) > 10:
        trends.append(
            {
                "type": "high_impact",
                "description": "Recent papers showing high citation impact",
                "confidence": 0.8,
            }
        )
    return trends


def synthesize_contributions(outputs: list[dict[str, Any]]) -> list[dict[str, Any]]:
    grouped: dict[str, list[dict[str, Any]]] = {}
    for output in outputs:
        for contribution in output.get("contributions", []):
            grouped.setdefault(contribution.get("type") or "general", []).append(contribution)
    return [
        {
            "type": kind,
            "count": len(items),
            "summary": f"{len(items)} contributions in {kind}",
            "examples": [c.get("description", "") for c in items[:3]],
            "avg_confidence": round(
                sum(c.get("confidence", 0.5) for c in items) / len(items), 6
            ),
        }
        for kind, items in grouped.items()
    ]


def collect_gaps(outputs: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Unique gaps of the cluster with their supporting papers, high priority first."""
    merged: dict[str, dict[str, Any]] = {}
    for output in outputs:
        for gap in output.get("gaps", []):
            description = gap.get("description", "").strip()
            if not description:
                continue
            entry = merged.setdefault(
                description.lower(),
                {
                    "description": description,
                    "type": gap.get("type", "inferred"),
                    "priority": gap.get("priority", "medium"),
                    "paper_ids": [],
                    "confidences": [],
                },
            )
            if PRIORITY_ORDER.get(gap.get("priority"), 1) < PRIORITY_ORDER.get(entry["priority"], 1):
                entry["priority"] = gap["priority"]
            if output.get("paper_id") not in entry["paper_ids"]:
                entry["paper_ids"].append(output.get("paper_id"))
            entry["confidences"].append(gap.get("confidence", 0.5))

    gaps = []
    for entry in merged.values():
        confidences = entry.pop("confidences")
        entry["confidence"] = round(sum(confidences) / len(confidences), 6)
        gaps.append(entry)
    gaps.sort(key=lambda g: PRIORITY_ORDER.get(g["priority"], 1))
    return gaps


def synthesize_gaps(gaps: list[dict[str, Any]]) -> list[dict[str, Any]]:
    groups = []
    for priority in ("high", "medium"):
        matching = [g for g in gaps if g["priority"] == priority]
        if matching:
            groups.append(
                {
                    "priority": priority,
                    "count": sum(len(g["paper_ids"]) for g in matching),
                    "gaps": [g["description"] for g in matching[:5]],
                }
            )
    return groups


def summarize_cluster(cluster_id: int, outputs: list[dict[str, Any]]) -> dict[str, Any]:
    centroid_text = " ".join(
        f"{o.get('title', '')} "
        + " ".join(c.get("description", "") for c in o.get("contributions", []))
        for o in outputs
    )
    centroid = top_words(centroid_text, 10)
    keywords = centroid[:5]
    label = ", ".join(keywords) if keywords else f"cluster {cluster_id}"
    gaps = collect_gaps(outputs)
    years = [o["year"] for o in outputs if o.get("year") is not None]
    cluster_cohesion = round(cohesion(outputs), 6)

    return {
        "cluster_id": cluster_id,
        "label": label,
        "keywords": keywords,
        "description": f"Cluster focused on {label}",
        "centroid": centroid,
        "size": len(outputs),
        "cohesion": cluster_cohesion,
        "paper_ids": [o.get("paper_id") for o in outputs],
        "papers": [
            {
                "paper_id": o.get("paper_id"),
                "title": o.get("title"),
                "year": o.get("year"),
                "citations": o.get("citations") or 0,
            }
            for o in outputs
        ],
        "contributions": synthesize_contributions(outputs),
        "gaps": gaps,
        "gap_groups": synthesize_gaps(gaps),
        "methodologies": common_methodologies(outputs),
        "trends": identify_trends(outputs),
        "year_range": {"min": min(years), "max": max(years)} if years else None,
        "avg_citations": round(sum(o.get("citations") or 0 for o in outputs) / len(outputs), 2),
        "confidence": cluster_cohesion,
    }


def cross_cluster_patterns(clusters: list[dict[str, Any]]) -> list[dict[str, Any]]:
    patterns = []

    methods = list(
        dict.fromkeys(m["method"] for c in clusters for m in c["methodologies"])
    )
    if methods:
        patterns.append(
            {
                "type": "methodology_overlap",
                "description": f"Common methodologies across clusters: {', '.join(methods[:5])}",
                "confidence": 0.75,
            }
        )

    for i in range(len(clusters)):
        for j in range(i + 1, len(clusters)):
            shared = [w for w in clusters[i]["centroid"] if w in set(clusters[j]["centroid"])]
            if shared:
                patterns.append(
                    {
                        "type": "shared_keywords",
                        "description": (
                            f"Clusters {clusters[i]['cluster_id']} and "
                            f"{clusters[j]['cluster_id']} share: {', '.join(shared[:5])}"
                        ),
                        "cluster_ids": [clusters[i]["cluster_id"], clusters[j]["cluster_id"]],
                        "confidence": 0.7,
                    }
                )

    ranges = [c["year_range"] for c in clusters if c["year_range"]]
    if ranges:
        low = min(r["min"] for r in ranges)
        high = max(r["max"] for r in ranges)
        if high - low > 5:
            patterns.append(
                {
                    "type": "temporal_evolution",
                    "description": f"Research spanning {high - low} years ({low}-{high})",
                    "confidence": 0.8,
                }
            )
    return patterns


def thematic_gaps(clusters: list[dict[str, Any]]) -> list[dict[str, Any]]:
    gaps = []
    for cluster in clusters:
        total = sum(group["count"] for group in cluster["gap_groups"])
        if total > cluster["size"]:
            gaps.append(
                {
                    "theme": cluster["label"],
                    "description": f"High concentration of research gaps in {cluster['label']}",
                    "cluster_ids": [cluster["cluster_id"]],
                    "paper_ids": list(cluster["paper_ids"]),
                    "gap_count": total,
                    "priority": "high",
                    "confidence": 0.8,
                }
            )

    for i in range(len(clusters)):
        for j in range(i + 1, len(clusters)):
            left, right = clusters[i], clusters[j]
            gaps.append(
                {
                    "theme": f"{left['label']} ∩ {right['label']}",
                    "description": (
                        f"Potential for cross-domain research between "
                        f"{left['label']} and {right['label']}"
                    ),
                    "cluster_ids": [left["cluster_id"], right["cluster_id"]],
                    "paper_ids": [*left["paper_ids"], *right["paper_ids"]],
                    "priority": "medium",
                    "confidence": 0.6,
                }
            )
    return gaps


def meso_confidence(clusters: list[dict[str, Any]]) -> float:
    if not clusters:
        return 0.5
    avg_cohesion = sum(c["cohesion"] for c in clusters) / len(clusters)
    avg_size = sum(c["size"] for c in clusters) / len(clusters)
    confidence = avg_cohesion * 0.6
    if avg_size >= 3:
        confidence += 0.2
    if len(clusters) >= 3:
        confidence += 0.1
    return round(min(confidence, 0.95), 6)


def cluster_outputs(micro_outputs: list[dict[str, Any]]) -> dict[str, Any]:
    """Cluster paper analyses and synthesize themes, patterns and gaps."""
    if not micro_outputs:
        raise ValidationError("No paper analyses to cluster")

    keyword_sets = [set(o.get("keywords") or keyword_set(o.get("title", ""))) for o in micro_outputs]
    groups = cluster_keyword_sets(keyword_sets, optimal_cluster_count(len(micro_outputs)))
    clusters = [
        summarize_cluster(cluster_id, [micro_outputs[i] for i in members])
        for cluster_id, members in enumerate(groups)
    ]
    sizes = [c["size"] for c in clusters]

    return {
        "total_papers": len(micro_outputs),
        "total_clusters": len(clusters),
        "clusters": clusters,
        "patterns": cross_cluster_patterns(clusters),
        "thematic_gaps": thematic_gaps(clusters),
        "confidence": meso_confidence(clusters),
        "statistics": {
            "avg_cluster_size": round(sum(sizes) / len(sizes), 2),
            "min_cluster_size": min(sizes),
            "max_cluster_size": max(sizes),
            "total_contributions": sum(len(o.get("contributions", [])) for o in micro_outputs),
            "total_gaps": sum(len(o.get("gaps", [])) for o in micro_outputs),
        },
    }


def restore_lists(value: Any) -> Any:
    """Turn collapsed `{count, items}` lists of a summary projection back into lists."""
    if isinstance(value, dict):
        if set(value) == {"count", "items"} and isinstance(value["items"], list):
            return [restore_lists(v) for v in value["items"]]
        return {k: restore_lists(v) for k, v in value.items()}
    if isinstance(value, list):
        return [restore_lists(v) for v in value]
    return value


async def read_micro_output(context: ContextReader, run_id: str, ref: ContextRef) -> dict[str, Any]:
    """Read a micro output, falling back to its summary when the payload is large."""
    snapshot = await context.read(run_id, ref.agent_id, ref.key, summary_only=True)
    if snapshot.size_bytes > FULL_READ_LIMIT_BYTES:
        logger.debug(f"Clustering {ref.key} from its summary ({snapshot.size_bytes} bytes)")
        return restore_lists(snapshot.summary)
    return (await context.read(run_id, ref.agent_id, ref.key)).data


class MesoAgent:
    """Clusters the round's micro outputs by theme."""

    kind = AgentKind.MESO

    async def execute(self, agent_input: AgentInput, context: ContextReader) -> AgentOutput:
        micro_outputs = [
            await read_micro_output(context, agent_input.run_id, ref) for ref in agent_input.inputs
        ]

        logger.debug(f"[{agent_input.agent_id}] clustering {len(micro_outputs)} paper analyses")

        output = cluster_outputs(micro_outputs)
        output["depth"] = agent_input.depth
        output["agent_id"] = agent_input.agent_id

        sources = [o.get("paper_id") for o in micro_outputs]
        return AgentOutput(
            output=output,
            confidence=output["confidence"],
            sources=sources,
            results=[
                ResultItem(
                    result_type=ResultType.CLUSTER_SUMMARY,
                    content=output,
                    confidence=output["confidence"],
                    sources=sources,
                )
            ],
        )
