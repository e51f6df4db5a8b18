"""Run orchestration: depth loop, rounds and paper selection."""

from .core import HealthReport, Orchestrator, RunHandle, RunStatusReport
from .round import RoundOutcome, RoundScheduler
from .selection import AllPapers, GapLinkedPapers, create_strategy

__all__ = [
    "AllPapers",
    "GapLinkedPapers",
    "HealthReport",
    "Orchestrator",
    "RoundOutcome",
    "RoundScheduler",
    "RunHandle",
    "RunStatusReport",
    "create_strategy",
]
