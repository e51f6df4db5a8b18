"""
Micro agent: analysis of a single paper.

Provides:
- Heuristic extraction of problem, novelty, approach and findings
- Contributions, limitations and research gaps with priorities
- Methodology profile (techniques, datasets, metrics, reproducibility)
- Optional LLM refinement merged into the heuristic output
"""

import logging
import re
from typing import Any

from ..errors import PaperUnavailableError, ValidationError
from ..store.models import AgentKind, ResultType
from .backends.base import extract_json_from_text
from .protocol import AgentBackend, AgentInput, AgentOutput, ContextReader, Paper, ResultItem
from .text import first_sentence_with, keyword_set, sentences, top_words

logger = logging.getLogger(__name__)

PROBLEM_KEYWORDS = ["problem", "challenge", "issue", "addresses", "tackles"]
NOVELTY_KEYWORDS = ["novel", "new", "first", "propose", "introduce", "original"]
APPROACH_KEYWORDS = ["method", "approach", "technique", "algorithm", "framework"]
FINDINGS_KEYWORDS = ["result", "finding", "show", "demonstrate", "achieve"]
LIMITATION_KEYWORDS = ["limitation", "constraint", "weakness", "drawback"]
FUTURE_WORK_KEYWORDS = ["future work", "future research", "future direction"]
CONTRIBUTION_KEYWORDS = ["contribute", "contribution", "propose", "introduce", "develop"]

TECHNIQUES = [
    "neural network",
    "deep learning",
    "machine learning",
    "regression",
    "classification",
    "clustering",
    "optimization",
    "algorithm",
    "model",
]
METRICS = [
    "accuracy",
    "precision",
    "recall",
    "f1",
    "f1-score",
    "auc",
    "roc",
    "rmse",
    "mae",
    "mse",
    "performance",
    "efficiency",
    "effectiveness",
]
DATASET_PATTERN = re.compile(r"\b([A-Z][A-Za-z0-9-]+)\s+dataset")

SYSTEM_PROMPT = """You are a research analyst reviewing one scientific paper.
Reply with a single JSON object and nothing else:
{"themes": [str], "claims": [str],
 "limitations": [{"description": str, "severity": "high|medium|low"}],
 "gaps": [{"description": str, "priority": "high|medium|low"}]}"""


def _paper_prompt(paper: Paper, query: str) -> str:
    return (
        f"Research question: {query}\n\n"
        f"Title: {paper.title}\n"
        f"Abstract: {paper.abstract or 'Not available'}\n\n"
        f"Excerpt: {paper.text[:4000] if paper.text else 'Not available'}"
    )


class MicroAgent:
    """Extracts contributions, limitations and gaps from one paper."""

    kind = AgentKind.MICRO

    def __init__(self, backend: AgentBackend | None = None):
        self.backend = backend

    async def execute(self, agent_input: AgentInput, context: ContextReader) -> AgentOutput:
        """
        Analyze agent_input.paper.

        Raises:
            ValidationError: No paper in the input
            PaperUnavailableError: Paper has no title, abstract or text
        """
        paper = agent_input.paper
        if paper is None:
            raise ValidationError(f"Micro agent {agent_input.agent_id} received no paper")
        if not paper.has_content:
            raise PaperUnavailableError(paper.paper_id)

        analysis = analyze_paper(paper)
        analysis["depth"] = agent_input.depth
        analysis["agent_id"] = agent_input.agent_id

        if agent_input.focus_gaps:
            analysis["related_gaps"] = related_gaps(analysis["keywords"], agent_input.focus_gaps)

        cost = 0.0
        if self.backend is not None:
            cost = await self._refine(paper, agent_input.query, analysis)

        confidence = micro_confidence(analysis)
        analysis["confidence"] = confidence

        return AgentOutput(
            output=analysis,
            confidence=confidence,
            sources=[analysis["paper_id"]],
            results=[
                ResultItem(
                    result_type=ResultType.PAPER_ANALYSIS,
                    content=analysis,
                    confidence=confidence,
                    sources=[analysis["paper_id"]],
                )
            ],
            cost_usd=cost,
        )

    async def _refine(self, paper: Paper, query: str, analysis: dict[str, Any]) -> float:
        """Merge the backend's JSON reply into analysis. Returns the call cost."""
        response = await self.backend.complete(SYSTEM_PROMPT, _paper_prompt(paper, query))
        parsed = extract_json_from_text(response.text)
        if parsed is None:
            logger.warning(
                f"Backend {self.backend.name} returned non-JSON analysis for "
                f"{analysis['paper_id']}; keeping heuristic output"
            )
            return response.cost_usd

        for theme in parsed.get("themes", []):
            if isinstance(theme, str) and theme not in analysis["themes"]:
                analysis["themes"].append(theme)
        for claim in parsed.get("claims", []):
            if isinstance(claim, str):
                analysis["claims"].append(claim)
        for item in parsed.get("limitations", []):
            if isinstance(item, dict) and item.get("description"):
                analysis["limitations"].append(
                    {
                        "type": "model",
                        "description": str(item["description"]),
                        "severity": _level(item.get("severity")),
                        "confidence": 0.75,
                    }
                )
        for item in parsed.get("gaps", []):
            if isinstance(item, dict) and item.get("description"):
                analysis["gaps"].append(
                    {
                        "type": "model",
                        "description": str(item["description"]),
                        "priority": _level(item.get("priority")),
                        "confidence": 0.75,
                        "source": "model",
                    }
                )
        analysis["backend"] = self.backend.name
        return response.cost_usd


def _level(value: Any) -> str:
    return value if value in ("high", "medium", "low") else "medium"


def analyze_paper(paper: Paper) -> dict[str, Any]:
    """Heuristic analysis of one paper."""
    abstract = paper.abstract or ""
    abstract_lower = abstract.lower()
    full_text_lower = (paper.text or "").lower()

    novelty = first_sentence_with(abstract, NOVELTY_KEYWORDS)
    summary = {
        "problem": first_sentence_with(abstract, PROBLEM_KEYWORDS)
        or "Problem statement not clearly identified",
        "novelty": novelty or "Novelty not explicitly stated",
        "approach": first_sentence_with(abstract, APPROACH_KEYWORDS)
        or "Methodology not specified in abstract",
        "findings": first_sentence_with(abstract, FINDINGS_KEYWORDS)
        or "Results not summarized in abstract",
    }

    contributions: list[dict[str, Any]] = []
    if novelty:
        contributions.append(
            {"type": "methodological", "description": novelty, "confidence": 0.8}
        )
    for sentence in sentences(abstract):
        lowered = sentence.lower()
        if sentence != novelty and any(kw in lowered for kw in CONTRIBUTION_KEYWORDS):
            contributions.append({"type": "extracted", "description": sentence, "confidence": 0.7})

    limitations: list[dict[str, Any]] = []
    stated_limitations = any(kw in full_text_lower for kw in LIMITATION_KEYWORDS)
    if stated_limitations:
        limitations.append(
            {
                "type": "stated",
                "description": "Paper discusses its own limitations",
                "severity": "medium",
                "confidence": 0.9,
            }
        )
    if "validation" not in abstract_lower and "evaluate" not in abstract_lower:
        limitations.append(
            {
                "type": "methodological",
                "description": "Limited validation or evaluation mentioned",
                "severity": "medium",
                "confidence": 0.6,
            }
        )
    if "small dataset" in abstract_lower or "limited data" in abstract_lower:
        limitations.append(
            {
                "type": "data",
                "description": "Dataset size limitations mentioned",
                "severity": "high",
                "confidence": 0.8,
            }
        )

    gaps: list[dict[str, Any]] = []
    if any(kw in full_text_lower for kw in FUTURE_WORK_KEYWORDS):
        gaps.append(
            {
                "type": "stated_future_work",
                "description": "Paper discusses future research directions",
                "priority": "high",
                "confidence": 0.85,
                "source": "paper_explicit",
            }
        )
    if stated_limitations:
        gaps.append(
            {
                "type": "limitation_derived",
                "description": "Addressing stated limitations represents research opportunity",
                "priority": "medium",
                "confidence": 0.7,
                "source": "inferred",
            }
        )
    if "comparison" not in abstract_lower and "baseline" not in abstract_lower:
        gaps.append(
            {
                "type": "methodological",
                "description": "Lack of comparative evaluation with baselines",
                "priority": "medium",
                "confidence": 0.6,
                "source": "inferred",
            }
        )

    combined = f"{paper.title} {abstract}"
    keywords = keyword_set(f"{combined} {paper.text[:2000]}")

    return {
        "paper_id": paper.paper_id,
        "title": paper.title,
        "authors": list(paper.authors),
        "year": paper.year,
        "citations": paper.citations,
        "venue": paper.venue,
        "summary": summary,
        "contributions": contributions,
        "limitations": limitations,
        "gaps": gaps,
        "methodology": {
            "approach": summary["approach"],
            "techniques": [t for t in TECHNIQUES if t in abstract_lower],
            "datasets": DATASET_PATTERN.findall(abstract),
            "metrics": [m for m in METRICS if m in abstract_lower],
            "reproducibility": assess_reproducibility(paper),
        },
        "keywords": list(dict.fromkeys([*(k.lower() for k in paper.keywords), *keywords])),
        "themes": top_words(combined, 5),
        "claims": [
            s for s in sentences(abstract) if any(kw in s.lower() for kw in FINDINGS_KEYWORDS)
        ],
    }


def assess_reproducibility(paper: Paper) -> dict[str, Any]:
    text = (paper.abstract or paper.text or "").lower()
    indicators = {
        "code_available": "code" in text and ("available" in text or "github" in text),
        "data_available": "dataset" in text and "available" in text,
        "detailed_method": "detail" in text or "implement" in text,
        "open_source": "open source" in text or "open-source" in text,
    }
    score = sum(indicators.values()) / len(indicators)
    level = "high" if score > 0.5 else "medium" if score > 0.25 else "low"
    return {"score": score, "indicators": indicators, "level": level}


def micro_confidence(analysis: dict[str, Any]) -> float:
    """0.5 plus 0.15 for each non-empty category, capped at 0.95."""
    confidence = 0.5
    for category in ("contributions", "limitations", "gaps"):
        if analysis.get(category):
            confidence += 0.15
    return round(min(confidence, 0.95), 6)


def related_gaps(keywords: list[str], focus_gaps: list[dict[str, Any]]) -> list[str]:
    """Themes of previously ranked gaps that share vocabulary with this paper."""
    paper_words = set(keywords)
    related = []
    for gap in focus_gaps:
        gap_words = set(keyword_set(f"{gap.get('theme', '')} {gap.get('description', '')}"))
        if paper_words & gap_words:
            related.append(gap.get("theme", ""))
    return related

