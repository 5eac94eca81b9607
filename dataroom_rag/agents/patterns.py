# =============================================================================
# Query Patterns — keyword heuristics used when no LLM analysis is at hand
# =============================================================================
#
# Grading uses these to spot conversational queries and to estimate
# complexity when the analyzer's level is missing; the strategy selector
# uses the same estimate on its no-analysis path.
#
# Each matched complexity pattern adds 0.1; > 0.7 is high, > 0.3 medium.
# =============================================================================

from __future__ import annotations

import re

from dataroom_rag.models.llm_outputs import ComplexityLevel

CONVERSATIONAL_PATTERNS: tuple[str, ...] = (
    "hello",
    "hi",
    "hey",
    "thanks",
    "thank you",
    "good morning",
    "good afternoon",
    "good evening",
    "how are you",
    "what's up",
    "bye",
    "goodbye",
)

HIGH_COMPLEXITY_PATTERNS: tuple[str, ...] = (
    "compare",
    "comparison",
    "analyze",
    "analyse",
    "evaluate",
    "assess",
    "relationship between",
    "difference between",
    "implications",
    "impact of",
    "trade-off",
    "pros and cons",
    "correlation",
    "trend",
)

MEDIUM_COMPLEXITY_PATTERNS: tuple[str, ...] = (
    "explain",
    "describe",
    "summarize",
    "summarise",
    "overview",
    "why",
    "how does",
    "how do",
    "what are",
    "list",
    "details",
)


def _compile(patterns: tuple[str, ...]) -> list[re.Pattern[str]]:
    return [re.compile(rf"\b{re.escape(p)}\b", re.IGNORECASE) for p in patterns]


_CONVERSATIONAL_RES = _compile(CONVERSATIONAL_PATTERNS)
_COMPLEXITY_RES = _compile(HIGH_COMPLEXITY_PATTERNS + MEDIUM_COMPLEXITY_PATTERNS)
_LEADING_GREETING_RE = re.compile(
    r"^\W*(?:" + "|".join(re.escape(p) for p in CONVERSATIONAL_PATTERNS) + r")\b",
    re.IGNORECASE,
)
_QUESTION_RE = re.compile(
    r"\?|\b(?:what|which|who|whom|whose|when|where|why|how|does|do|is|are|can|could"
    r"|should|list|show|find|explain|summari[sz]e)\b",
    re.IGNORECASE,
)
_WORD_RE = re.compile(r"\w+")


def is_conversational(query: str) -> bool:
    """
    True for pure small talk ("Hello, how are you?", "thanks, that helps").

    A greeting in front of a real question ("Thanks, what is the fee?")
    does not count; neither does a greeting word inside a question.
    """
    remainder = query
    for pattern in _CONVERSATIONAL_RES:
        remainder = pattern.sub(" ", remainder)
    if not _WORD_RE.search(remainder):
        return remainder != query
    if not _LEADING_GREETING_RE.match(query):
        return False
    return not _QUESTION_RE.search(remainder)


def assess_complexity(query: str) -> tuple[float, ComplexityLevel]:
    """Keyword-count estimate of (score, level)."""
    score = min(1.0, round(sum(0.1 for pattern in _COMPLEXITY_RES if pattern.search(query)), 2))
    if score > 0.7:
        return score, "high"
    if score > 0.3:
        return score, "medium"
    return score, "low"
