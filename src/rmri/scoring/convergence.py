"""
Round-to-round convergence detection.

Two rounds are compared on their top-N ranked gaps. Each gap is identified by
its signature (normalized theme and description) and weighted by 1/(rank+1),
so agreement at the top of the ranking counts more than agreement at the tail.
Similarity is the weighted Jaccard of the two weightings.
"""

from dataclasses import dataclass

from .ranking import CandidateGap


@dataclass
class ConvergenceResult:
    similarity: float
    converged: bool
    shared: int = 0
    compared: int = 0


def _weights(signatures: list[str], top_n: int) -> dict[str, float]:
    weights: dict[str, float] = {}
    for rank, signature in enumerate(signatures[:top_n]):
        # Duplicates keep their best rank
        weights.setdefault(signature, 1.0 / (rank + 1))
    return weights


def gap_similarity(current: list[str], previous: list[str], top_n: int = 10) -> float:
    """
    Rank-weighted Jaccard similarity of two ranked signature lists.

    Returns 1.0 for two empty lists and 0.0 when exactly one is empty.
    """
    cur = _weights(current, top_n)
    prev = _weights(previous, top_n)
    if not cur and not prev:
        return 1.0
    if not cur or not prev:
        return 0.0

    union = set(cur) | set(prev)
    numerator = sum(min(cur.get(s, 0.0), prev.get(s, 0.0)) for s in union)
    denominator = sum(max(cur.get(s, 0.0), prev.get(s, 0.0)) for s in union)
    return numerator / denominator if denominator else 0.0


def evaluate_convergence(
    current: list[CandidateGap],
    previous: list[CandidateGap] | None,
    threshold: float,
    top_n: int = 10,
) -> ConvergenceResult:
    """
    Decide whether the current round agrees enough with the previous one.

    With no previous round the similarity is 0.0, so a threshold of 0.0 still
    converges on the first round and any threshold above 1.0 never converges.
    """
    if previous is None:
        similarity = 0.0
        shared = 0
    else:
        cur_sigs = [gap.signature for gap in current]
        prev_sigs = [gap.signature for gap in previous]
        similarity = gap_similarity(cur_sigs, prev_sigs, top_n)
        shared = len(set(cur_sigs[:top_n]) & set(prev_sigs[:top_n]))

    return ConvergenceResult(
        similarity=round(similarity, 6),
        converged=similarity >= threshold,
        shared=shared,
        compared=min(len(current), top_n),
    )
