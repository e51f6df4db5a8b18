"""Gap scoring, ranking, confidence and convergence."""

from .confidence import ConfidenceCalculator, ConfidenceScore
from .convergence import ConvergenceResult, evaluate_convergence, gap_similarity
from .ranking import CandidateGap, rank_gaps, score_gap

__all__ = [
    "CandidateGap",
    "ConfidenceCalculator",
    "ConfidenceScore",
    "ConvergenceResult",
    "evaluate_convergence",
    "gap_similarity",
    "rank_gaps",
    "score_gap",
]
