# =============================================================================
# Strategy Selector — pure, deterministic search-tier choice
# =============================================================================
#
# DECISION ORDER:
#   1. Explicit pages                      → PageQueryStrategy (0.95)
#   2. No analysis: length/complexity      → Fast 0.8 / Standard 0.7 /
#                                            Expanded 0.6
#   3. Hard overrides
#        summarization or requires_hyde    → Expanded (1.0)
#        high complexity + analysis        → Expanded (0.95)
#        low complexity + extraction, ≥5 docs → Fast (0.9)
#   4. Weighted scoring over the analysis fields; each applies a
#      [fast, standard, expanded] weight triple:
#        confidence = winner / max(1, total), rounded to 2 dp
#        margin     = (winner - runner-up) / max(1, total)
#      If confidence or margin is below its threshold the winner degrades
#      one tier toward thoroughness (Fast → Standard → Expanded).
#   5. Any internal error                  → Standard (0.5)
#
# Same inputs, same output: no I/O, no randomness, no clock.
# =============================================================================

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field

from dataroom_rag.agents.query_analyzer import QueryAnalysisResult
from dataroom_rag.config import Settings, get_settings

logger = logging.getLogger(__name__)


class SearchStrategy(str, enum.Enum):
    FAST = "FastVectorSearch"
    STANDARD = "StandardVectorSearch"
    EXPANDED = "ExpandedSearch"
    PAGE_QUERY = "PageQueryStrategy"


# Scored tiers, in tie-break order
_TIERS = (SearchStrategy.FAST, SearchStrategy.STANDARD, SearchStrategy.EXPANDED)

_DEGRADE = {
    SearchStrategy.FAST: SearchStrategy.STANDARD,
    SearchStrategy.STANDARD: SearchStrategy.EXPANDED,
    SearchStrategy.EXPANDED: SearchStrategy.EXPANDED,
}

WEIGHTS: dict[str, dict[str, tuple[int, int, int]]] = {
    "intent": {
        "extraction": (6, 4, 0),
        "verification": (5, 5, 0),
        "comparison": (0, 8, 2),
        "concept_explanation": (0, 8, 2),
        "analysis": (0, 6, 4),
        "general_inquiry": (2, 8, 0),
    },
    "complexity_level": {
        "low": (5, 5, 0),
        "medium": (0, 8, 2),
        "high": (0, 6, 4),
    },
    "context_size": {
        "small": (4, 6, 0),
        "medium": (0, 8, 2),
        "large": (0, 6, 4),
    },
    "processing_strategy": {
        "precise": (3, 7, 0),
        "comprehensive": (0, 6, 4),
        "comparative": (0, 8, 2),
        "analytical": (0, 6, 4),
    },
    "expansion_strategy": {
        "minimal": (4, 6, 0),
        "moderate": (0, 8, 2),
        "comprehensive": (0, 6, 4),
    },
    "context_window": {
        "focused": (4, 6, 0),
        "balanced": (0, 8, 2),
        "broad": (0, 6, 4),
    },
}

BOOSTS: dict[str, tuple[int, int, int]] = {
    "mentioned_pages": (0, 6, 2),
    "many_keywords": (0, 6, 2),
    "few_documents": (-6, 6, 0),
    "many_documents": (2, 6, 0),
    "many_generated_queries": (0, 6, 2),
}

MANY_KEYWORDS = 6
FEW_DOCUMENTS = 5
MANY_DOCUMENTS = 50
MANY_GENERATED_QUERIES = 3


@dataclass(frozen=True)
class StrategySelection:
    strategy: SearchStrategy
    confidence: float
    reason: str = ""
    scores: tuple[int, int, int] | None = field(default=None, compare=False)


def select_strategy(
    analysis: QueryAnalysisResult | None,
    document_count: int,
    *,
    query_words: int = 0,
    complexity_score: float = 0.0,
    pages: list[int] | None = None,
    settings: Settings | None = None,
) -> StrategySelection:
    """
    Pick the search tier for a request.

    Args:
        analysis: The analyzer's result, or None when analysis failed.
        document_count: Indexed documents in scope.
        query_words / complexity_score / pages: Used only without analysis.
        settings: Confidence and margin thresholds.
    """
    try:
        return _select(
            analysis, document_count, query_words, complexity_score, pages or [],
            settings or get_settings(),
        )
    except (KeyError, TypeError, ValueError, AttributeError) as exc:
        logger.warning("Strategy selection failed, using standard search: %s", exc)
        return StrategySelection(SearchStrategy.STANDARD, 0.5, reason="selector error")


def _select(
    analysis: QueryAnalysisResult | None,
    document_count: int,
    query_words: int,
    complexity_score: float,
    pages: list[int],
    settings: Settings,
) -> StrategySelection:
    mentioned_pages = analysis.pages if analysis is not None else pages
    if mentioned_pages:
        return StrategySelection(SearchStrategy.PAGE_QUERY, 0.95, reason="explicit pages")

    if analysis is None:
        if query_words <= 15 and complexity_score <= 0.4 and document_count >= 5:
            return StrategySelection(SearchStrategy.FAST, 0.8, reason="short simple query")
        if query_words <= 30 and complexity_score <= 0.6:
            return StrategySelection(SearchStrategy.STANDARD, 0.7, reason="moderate query")
        return StrategySelection(SearchStrategy.EXPANDED, 0.6, reason="long or complex query")

    # Hard overrides
    if analysis.intent == "summarization":
        return StrategySelection(SearchStrategy.EXPANDED, 1.0, reason="summarization")
    if analysis.requires_hyde:
        return StrategySelection(SearchStrategy.EXPANDED, 1.0, reason="requires HyDE")
    if analysis.complexity_level == "high" and analysis.intent == "analysis":
        return StrategySelection(SearchStrategy.EXPANDED, 0.95, reason="high-complexity analysis")
    if (
        analysis.complexity_level == "low"
        and analysis.intent == "extraction"
        and document_count >= 5
    ):
        return StrategySelection(SearchStrategy.FAST, 0.9, reason="low-complexity extraction")

    scores = _score(analysis, document_count)
    total = max(1, sum(scores))
    ranked = sorted(range(3), key=lambda i: -scores[i])  # stable: fast, standard, expanded
    winner, runner_up = ranked[0], ranked[1]
    confidence = round(scores[winner] / total, 2)
    margin = round((scores[winner] - scores[runner_up]) / total, 2)

    strategy = _TIERS[winner]
    reason = "weighted score"
    if confidence < settings.strategy_min_confidence or margin < settings.strategy_min_margin:
        degraded = _DEGRADE[strategy]
        if degraded is not strategy:
            reason = f"weighted score, degraded from {strategy.value}"
        strategy = degraded

    logger.debug(
        "Strategy scores fast=%d standard=%d expanded=%d → %s (conf=%.2f margin=%.2f)",
        scores[0], scores[1], scores[2], strategy.value, confidence, margin,
    )
    return StrategySelection(strategy, confidence, reason=reason, scores=scores)


def _score(analysis: QueryAnalysisResult, document_count: int) -> tuple[int, int, int]:
    totals = [0, 0, 0]

    def apply(points: tuple[int, int, int]) -> None:
        for i in range(3):
            totals[i] += points[i]

    fields = {
        "intent": analysis.intent,
        "complexity_level": analysis.complexity_level,
        "context_size": analysis.optimal_context_size,
        "processing_strategy": analysis.processing_strategy,
        "expansion_strategy": analysis.expansion_strategy,
        "context_window": analysis.context_window,
    }
    for name, value in fields.items():
        if value is not None:
            apply(WEIGHTS[name][value])

    if analysis.pages:
        apply(BOOSTS["mentioned_pages"])
    if len(analysis.keywords) > MANY_KEYWORDS:
        apply(BOOSTS["many_keywords"])
    if document_count < FEW_DOCUMENTS:
        apply(BOOSTS["few_documents"])
    elif document_count > MANY_DOCUMENTS:
        apply(BOOSTS["many_documents"])
    if len(analysis.rewritten_queries) > MANY_GENERATED_QUERIES:
        apply(BOOSTS["many_generated_queries"])

    return totals[0], totals[1], totals[2]
