"""Text helpers shared by the heuristic agents."""

import re
from collections import Counter

STOPWORDS = frozenset(
    {
        "about", "above", "after", "again", "against", "among", "based", "being",
        "between", "could", "during", "further", "their", "there", "these", "those",
        "through", "under", "using", "which", "while", "within", "without", "would",
        "paper", "study", "results", "approach", "method", "methods", "propose",
        "proposed", "present", "different", "various", "where",
    }
)

_SENTENCE_SPLIT = re.compile(r"[.!?]+")
_NON_ALPHA = re.compile(r"[^a-z\s]")


def sentences(text: str) -> list[str]:
    return [s.strip() for s in _SENTENCE_SPLIT.split(text or "") if s.strip()]


def first_sentence_with(text: str, keywords: list[str]) -> str | None:
    for sentence in sentences(text):
        lowered = sentence.lower()
        if any(kw in lowered for kw in keywords):
            return sentence
    return None


def words(text: str, min_length: int = 5) -> list[str]:
    """Lowercase alphabetic words of at least min_length characters, stopwords removed."""
    cleaned = _NON_ALPHA.sub(" ", (text or "").lower())
    return [w for w in cleaned.split() if len(w) >= min_length and w not in STOPWORDS]


def keyword_set(text: str, limit: int = 20) -> list[str]:
    """Unique words in first-seen order."""
    seen: dict[str, None] = {}
    for word in words(text):
        seen.setdefault(word, None)
        if len(seen) >= limit:
            break
    return list(seen)


def top_words(text: str, count: int = 10) -> list[str]:
    """Most frequent words; ties keep first-seen order."""
    return [word for word, _ in Counter(words(text)).most_common(count)]


def jaccard(a: set[str] | list[str], b: set[str] | list[str]) -> float:
    left, right = set(a), set(b)
    if not left and not right:
        return 0.0
    return len(left & right) / len(left | right)
