# =============================================================================
# Query Analyzer — one structured LLM round-trip per question
# =============================================================================
#
# Turns a raw question into everything the rest of the pipeline routes on:
# type (abusive / chitchat / document_question), intent, complexity, page
# references, keywords, rewritten variants, a HyDE answer, and processing
# hints.
#
# FLOW:
#   1. validate_query()  — empty / over-length → QueryValidationError
#   2. sanitize_query()  — strip script tags, on*= handlers, dangerous
#                          URL schemes
#   3. extract_pages()   — deterministic "page 5" / "pages 3-4" / "p. 7"
#   4. UNIFIED_QUERY_ANALYSIS prompt, validated by pydantic
#   5. Merge: re-sanitise the model's cleaned query and rewrites, union
#      the regex pages with the model's pages
#
# On LLM timeout or error nothing is synthesized: the error propagates and
# the orchestrator decides what the user sees.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field

from dataroom_rag.config import Settings, get_settings
from dataroom_rag.errors import ProviderTimeoutError, QueryValidationError
from dataroom_rag.models.llm_outputs import (
    ComplexityLevel,
    ContextSize,
    QueryIntent,
    QueryType,
    SearchStrategyHint,
    UnifiedQueryAnalysis,
)
from dataroom_rag.services.llm import LLMProvider
from dataroom_rag.services.prompts import UNIFIED_QUERY_ANALYSIS
from dataroom_rag.services.tokenizer import normalize_text, word_count

logger = logging.getLogger(__name__)

_SCRIPT_RE = re.compile(r"<script\b[^>]*>.*?(?:</script\s*>|$)", re.IGNORECASE | re.DOTALL)
_EVENT_HANDLER_RE = re.compile(
    r"\bon[a-z]+\s*=\s*(?:\"[^\"]*\"|'[^']*'|[^\s>]+)", re.IGNORECASE,
)
_DANGEROUS_SCHEME_RE = re.compile(
    r"\b(?:javascript|vbscript)\s*:|\bdata\s*:\s*text/html[^\s,]*,?", re.IGNORECASE,
)
_PAGE_REF_RE = re.compile(
    r"\b(?:pages?|pgs?\.?|pp?\.)\s*(\d{1,5})"
    r"(?:\s*(-|–|to|through|and|&|,)\s*(\d{1,5}))?",
    re.IGNORECASE,
)
_RANGE_SEPARATORS = {"-", "–", "to", "through"}
_MAX_PAGE_SPAN = 50


# ---------------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------------


@dataclass
class QueryAnalysisResult:
    original_query: str
    sanitized_query: str
    query_type: QueryType
    intent: QueryIntent
    complexity_score: float
    complexity_level: ComplexityLevel
    pages: list[int] = field(default_factory=list)
    keywords: list[str] = field(default_factory=list)
    rewritten_queries: list[str] = field(default_factory=list)
    hyde_answer: str = ""
    requires_hyde: bool = False
    requires_expansion: bool = False
    optimal_context_size: ContextSize = "medium"
    processing_strategy: str | None = None
    expansion_strategy: str | None = None
    context_window: str | None = None
    response: str = ""  # the model's redirect for abusive / chitchat
    word_count: int = 0
    strategy_hint: SearchStrategyHint | None = None

    @property
    def is_document_question(self) -> bool:
        return self.query_type == "document_question"

    @property
    def has_pages(self) -> bool:
        return bool(self.pages)


# ---------------------------------------------------------------------------
# Deterministic helpers
# ---------------------------------------------------------------------------


def validate_query(query: str | None, max_length: int) -> str:
    if query is None or not query.strip():
        raise QueryValidationError("Query cannot be empty", context={"field": "query"})
    if len(query) > max_length:
        raise QueryValidationError(
            f"Query too long (max {max_length} characters)",
            context={"field": "query", "length": len(query)},
        )
    return query.strip()


def sanitize_query(query: str) -> str:
    cleaned = _SCRIPT_RE.sub(" ", query)
    cleaned = _EVENT_HANDLER_RE.sub(" ", cleaned)
    cleaned = _DANGEROUS_SCHEME_RE.sub(" ", cleaned)
    return normalize_text(cleaned)


def extract_pages(query: str) -> list[int]:
    """
    Page numbers explicitly referenced in ``query``.

    >>> extract_pages("compare pages 3-4 with p. 7")
    [3, 4, 7]
    """
    pages: set[int] = set()
    for match in _PAGE_REF_RE.finditer(query):
        first = int(match.group(1))
        separator = (match.group(2) or "").lower()
        second = int(match.group(3)) if match.group(3) else None

        if second is not None and separator in _RANGE_SEPARATORS:
            lo, hi = sorted((first, second))
            if hi - lo <= _MAX_PAGE_SPAN:
                pages.update(range(lo, hi + 1))
            else:
                pages.update((lo, hi))
        else:
            pages.add(first)
            if second is not None:
                pages.add(second)
    return sorted(p for p in pages if p > 0)


# ---------------------------------------------------------------------------
# Analyzer
# ---------------------------------------------------------------------------


class QueryAnalyzer:
    def __init__(self, llm: LLMProvider, settings: Settings | None = None) -> None:
        self._llm = llm
        self._settings = settings or get_settings()

    async def analyze(self, query: str) -> QueryAnalysisResult:
        """
        Raises:
            QueryValidationError: Empty, over-length, or empty after sanitising.
            ProviderTimeoutError: The analysis deadline expired.
            ProviderError / StructuredOutputError: The model call failed.
        """
        s = self._settings
        raw = validate_query(query, s.query_max_length)
        sanitized = sanitize_query(raw)
        if not sanitized:
            raise QueryValidationError(
                "Query is empty after sanitization", context={"field": "query"},
            )
        regex_pages = extract_pages(sanitized)

        try:
            analysis: UnifiedQueryAnalysis = await asyncio.wait_for(
                UNIFIED_QUERY_ANALYSIS.generate(self._llm, query=sanitized),
                timeout=s.analysis_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise ProviderTimeoutError(
                f"Query analysis timed out after {s.analysis_timeout_seconds:.0f}s",
                context={"timeout": s.analysis_timeout_seconds},
            ) from exc

        result = self._merge(raw, sanitized, regex_pages, analysis)
        logger.info(
            "Query analyzed: type=%s intent=%s complexity=%.2f(%s) pages=%s variants=%d",
            result.query_type, result.intent, result.complexity_score,
            result.complexity_level, result.pages, len(result.rewritten_queries),
        )
        return result

    def _merge(
        self,
        raw: str,
        sanitized: str,
        regex_pages: list[int],
        analysis: UnifiedQueryAnalysis,
    ) -> QueryAnalysisResult:
        classification = analysis.query_classification
        complexity = analysis.complexity_analysis
        extraction = analysis.query_extraction
        rewriting = analysis.query_rewriting
        hints = analysis.processing_hints

        model_query = sanitize_query(analysis.sanitization.sanitized_query)
        final_query = model_query or sanitized

        pages = sorted({p for p in [*regex_pages, *extraction.page_numbers] if p > 0})
        rewrites = [q for q in (sanitize_query(r) for r in rewriting.rewritten_queries) if q]
        keywords = list(dict.fromkeys(k.strip() for k in extraction.keywords if k.strip()))

        return QueryAnalysisResult(
            original_query=raw,
            sanitized_query=final_query,
            query_type=classification.type,
            intent=classification.intent,
            complexity_score=complexity.complexity_score,
            complexity_level=complexity.complexity_level,
            pages=pages,
            keywords=keywords,
            rewritten_queries=rewrites,
            hyde_answer=rewriting.hyde_answer.strip(),
            requires_hyde=rewriting.requires_hyde,
            requires_expansion=classification.requires_expansion,
            optimal_context_size=classification.optimal_context_size,
            processing_strategy=hints.processing_strategy,
            expansion_strategy=hints.expansion_strategy,
            context_window=hints.context_window,
            response=classification.response.strip(),
            word_count=word_count(final_query),
            strategy_hint=analysis.search_strategy,
        )
