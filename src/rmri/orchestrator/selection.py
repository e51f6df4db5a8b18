"""
Paper selection for rounds after the first.

Provides two strategies:
1. AllPapers: every paper is re-analyzed each round (default)
2. GapLinkedPapers: papers that support the previous round's top-K gaps
"""

import logging
from typing import Any, Protocol

from ..agents.protocol import Paper

logger = logging.getLogger(__name__)


class SelectionStrategy(Protocol):
    name: str

    def select(
        self, papers: list[Paper], depth: int, previous_meta: dict[str, Any] | None
    ) -> list[Paper]:
        ...


class AllPapers:
    """Analyze the whole corpus every round."""

    name = "all"

    def select(
        self, papers: list[Paper], depth: int, previous_meta: dict[str, Any] | None
    ) -> list[Paper]:
        return list(papers)


class GapLinkedPapers:
    """
    Focus later rounds on papers linked to the top-ranked gaps.

    Falls back to the whole corpus on round 0, when the previous round left
    no gaps, or when no paper matches.
    """

    name = "gap_linked"

    def __init__(self, top_k: int = 5):
        self.top_k = top_k

    def select(
        self, papers: list[Paper], depth: int, previous_meta: dict[str, Any] | None
    ) -> list[Paper]:
        if depth == 0 or not previous_meta:
            return list(papers)

        linked: set[str] = set()
        for gap in previous_meta.get("gaps", [])[: self.top_k]:
            linked.update(gap.get("paper_ids", []))

        selected = [p for p in papers if p.paper_id in linked]
        if not selected:
            logger.info(f"No papers linked to top {self.top_k} gaps at depth {depth}, using all")
            return list(papers)

        logger.info(f"Selected {len(selected)}/{len(papers)} gap-linked papers for depth {depth}")
        return selected


def create_strategy(name: str, top_k: int = 5) -> SelectionStrategy:
    """
    Build a selection strategy by name.

    Raises:
        ValueError: Unknown strategy name
    """
    if name == "all":
        return AllPapers()
    if name == "gap_linked":
        return GapLinkedPapers(top_k=top_k)
    raise ValueError(f"Unknown paper selection strategy: {name}")
