# =============================================================================
# Context Compression Engine — fit retrieved chunks into a token budget
# =============================================================================
#
# POLICY (first match wins; cutoffs come from Settings):
#   ┌──────────────────────────────────────────────────────────┬──────────┐
#   │ estimated tokens > 0.8 × budget                          │ RAPTOR   │
#   │ (multi-hop | research-style | > 30 words) and > 1 doc    │ RAPTOR   │
#   │ content > 50 000 chars and > 1 doc                       │ RAPTOR   │
#   │ multi-hop | research-style | > 30 words                  │ RAPTOR   │
#   │ ≥ 15 words or complexity > 0.6                           │ Hybrid   │
#   │ average similarity < 0.6                                 │ Hybrid   │
#   │ otherwise                                                │ Ranked   │
#   └──────────────────────────────────────────────────────────┴──────────┘
#
# RANKED   sentence extraction scored by query-term overlap, greedy packing.
#          No LLM. Never empty on non-empty input.
# RAPTOR   four LLM phases: per-document summaries → content tree →
#          multi-level compression → hierarchical summary, then assembly.
#          Every phase returns Ok | Err; the first Err falls back to Ranked
#          over the original results.
# HYBRID   Ranked (half the budget) and RAPTOR (the rest) concurrently,
#          joined; Ranked alone when RAPTOR fails.
#
# Every output is at most `token_budget` tokens.
# =============================================================================

from __future__ import annotations

import asyncio
import enum
import json
import logging
import re
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar, Union

from dataroom_rag.agents.query_analyzer import QueryAnalysisResult
from dataroom_rag.agents.search import SearchResult
from dataroom_rag.config import Settings, get_settings
from dataroom_rag.errors import RAGError
from dataroom_rag.models.llm_outputs import (
    RaptorDocumentSummary,
    RaptorHierarchicalSummary,
    RaptorMultiLevelCompression,
    RaptorTree,
)
from dataroom_rag.services.llm import LLMProvider
from dataroom_rag.services.prompts import (
    RAPTOR_DOCUMENT_SUMMARY,
    RAPTOR_HIERARCHICAL_SUMMARY,
    RAPTOR_MULTI_LEVEL_COMPRESSION,
    RAPTOR_TREE_STRUCTURE,
)
from dataroom_rag.services.tokenizer import count_tokens, truncate_to_tokens, word_count

logger = logging.getLogger(__name__)

T = TypeVar("T")

_SENTENCE_SPLIT_RE = re.compile(r"[.!?]+")
_TERM_RE = re.compile(r"\w+")
_MULTI_HOP_TERMS = ("compare", "analyze")
_RESEARCH_TERMS = ("research", "study")
_RESEARCH_WORDS_WITH_ANALYSIS = 20
_RANKED_CONFIDENCE = 0.8


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


class CompressionStrategy(str, enum.Enum):
    RANKED = "ranked"
    HYBRID = "hybrid"
    RAPTOR = "raptor"


@dataclass(frozen=True)
class Span:
    """A region of the compressed text traced back to its source chunk."""

    chunk_id: str
    document_id: str
    start: int
    end: int
    confidence: float


@dataclass
class CompressedContext:
    content: str
    spans: list[Span] = field(default_factory=list)
    token_count: int = 0
    compression_ratio: float = 0.0
    preserved_spans: int = 0
    strategy: CompressionStrategy = CompressionStrategy.RANKED


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True)
class Err:
    phase: str
    error: Exception


Result = Union[Ok[T], Err]


@dataclass(frozen=True)
class _Sentence:
    text: str
    result: SearchResult
    score: float = 0.0


@dataclass
class _DocumentGroup:
    document_id: str
    results: list[SearchResult]

    @property
    def content(self) -> str:
        return "\n\n".join(r.content for r in self.results)

    def metadata_json(self) -> str:
        first = self.results[0].metadata
        return json.dumps(
            {
                "document_id": self.document_id,
                "document_name": first.get("document_name", ""),
                "chunk_count": len(self.results),
                "page_ranges": [r.metadata.get("page_ranges", "") for r in self.results],
            },
            ensure_ascii=False,
        )


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------


def select_compression_strategy(
    results: Sequence[SearchResult],
    query: str,
    token_budget: int,
    complexity: QueryAnalysisResult | None = None,
    settings: Settings | None = None,
) -> CompressionStrategy:
    s = settings or get_settings()
    estimated_tokens = sum(count_tokens(r.content) for r in results)
    total_chars = sum(len(r.content) for r in results)
    document_count = len({r.document_id for r in results})
    words = word_count(query)
    lowered = query.lower()

    is_multi_hop = any(term in lowered for term in _MULTI_HOP_TERMS)
    if complexity is not None:
        score = complexity.complexity_score
        is_research = words > _RESEARCH_WORDS_WITH_ANALYSIS
    else:
        score = 0.0
        is_research = any(term in lowered for term in _RESEARCH_TERMS)
    needs_depth = is_multi_hop or is_research or words > s.raptor_query_words

    if estimated_tokens > s.raptor_budget_ratio * token_budget:
        return CompressionStrategy.RAPTOR
    if needs_depth and document_count > 1:
        return CompressionStrategy.RAPTOR
    if total_chars > s.raptor_large_content_chars and document_count > 1:
        return CompressionStrategy.RAPTOR
    if needs_depth:
        return CompressionStrategy.RAPTOR
    if words >= s.hybrid_query_words or score > s.hybrid_complexity_score:
        return CompressionStrategy.HYBRID
    if results and sum(r.similarity for r in results) / len(results) < s.hybrid_similarity_floor:
        return CompressionStrategy.HYBRID
    return CompressionStrategy.RANKED


def raptor_compression_level(tree: RaptorTree) -> int:
    nodes = [tree.root_node, *tree.branches]
    average = sum(n.relevance_score for n in nodes) / len(nodes)
    if len(nodes) > 10 or average < 0.5:
        return 3
    if len(nodes) > 5 or average < 0.7:
        return 2
    return 1


# ---------------------------------------------------------------------------
# Compressor
# ---------------------------------------------------------------------------


class ContextCompressor:
    def __init__(self, llm: LLMProvider, settings: Settings | None = None) -> None:
        self._llm = llm
        self._settings = settings or get_settings()

    async def compress(
        self,
        results: Sequence[SearchResult],
        query: str,
        token_budget: int | None = None,
        complexity: QueryAnalysisResult | None = None,
    ) -> CompressedContext:
        budget = token_budget or self._settings.compression_max_tokens
        if not results:
            return CompressedContext(content="")

        strategy = select_compression_strategy(
            results, query, budget, complexity, self._settings,
        )
        logger.info(
            "Compressing %d results with %s (budget=%d tokens)",
            len(results), strategy.value, budget,
        )

        if strategy == CompressionStrategy.RANKED:
            context = self.ranked(results, query, budget)
        elif strategy == CompressionStrategy.HYBRID:
            context = await self._hybrid(results, query, budget)
        else:
            outcome = await self._raptor(results, query, budget)
            if isinstance(outcome, Err):
                logger.warning(
                    "RAPTOR %s phase failed, falling back to ranked: %s",
                    outcome.phase, outcome.error,
                )
                context = self.ranked(results, query, budget)
            else:
                context = outcome.value

        if not self._settings.compression_preserve_spans:
            context.spans = []
            context.preserved_spans = 0
        return context

    # -------------------------------------------------------------------------
    # Ranked
    # -------------------------------------------------------------------------

    def ranked(
        self,
        results: Sequence[SearchResult],
        query: str,
        token_budget: int,
    ) -> CompressedContext:
        s = self._settings
        total_chars = sum(len(r.content) for r in results)

        sentences: list[_Sentence] = []
        for result in results:
            for piece in _SENTENCE_SPLIT_RE.split(result.content):
                text = " ".join(piece.split())
                if len(text) > s.compression_min_sentence_chars:
                    sentences.append(_Sentence(text, result))
        sentences = sentences[:s.compression_max_sentences]

        query_terms = [t.lower() for t in _TERM_RE.findall(query)]
        scored = sorted(
            (_Sentence(x.text, x.result, _term_overlap(query_terms, x.text)) for x in sentences),
            key=lambda x: x.score,
            reverse=True,
        )

        selected: list[_Sentence] = []
        used = 0
        for sentence in scored:
            tokens = count_tokens(sentence.text) + (1 if selected else 0)
            if used + tokens > token_budget:
                break
            selected.append(sentence)
            used += tokens

        if not selected:
            best = scored[0] if scored else None
            source = best.result if best else results[0]
            text = truncate_to_tokens(best.text if best else source.content, token_budget)
            selected = [_Sentence(text, source)] if text else []

        spans: list[Span] = []
        offset = 0
        for sentence in selected:
            spans.append(Span(
                chunk_id=sentence.result.chunk_id,
                document_id=sentence.result.document_id,
                start=offset,
                end=offset + len(sentence.text),
                confidence=_RANKED_CONFIDENCE,
            ))
            offset += len(sentence.text) + 1

        content = " ".join(x.text for x in selected)
        if count_tokens(content) > token_budget:
            content = truncate_to_tokens(content, token_budget)
            spans = _clip_spans(spans, len(content))
        return CompressedContext(
            content=content,
            spans=spans,
            token_count=count_tokens(content),
            compression_ratio=len(content) / total_chars if total_chars else 0.0,
            preserved_spans=len(spans),
            strategy=CompressionStrategy.RANKED,
        )

    # -------------------------------------------------------------------------
    # Hybrid
    # -------------------------------------------------------------------------

    async def _hybrid(
        self,
        results: Sequence[SearchResult],
        query: str,
        token_budget: int,
    ) -> CompressedContext:
        ranked_budget = max(1, token_budget // 2)
        raptor_budget = max(1, token_budget - ranked_budget)
        ranked, raptor = await asyncio.gather(
            asyncio.to_thread(self.ranked, results, query, ranked_budget),
            self._raptor(results, query, raptor_budget),
        )

        if isinstance(raptor, Err):
            logger.warning(
                "Hybrid: RAPTOR %s phase failed, using ranked only: %s",
                raptor.phase, raptor.error,
            )
            return self.ranked(results, query, token_budget)

        tree = raptor.value
        offset = len(ranked.content) + 2
        content = f"{ranked.content}\n\n{tree.content}"
        spans = ranked.spans + [
            Span(sp.chunk_id, sp.document_id, sp.start + offset, sp.end + offset, sp.confidence)
            for sp in tree.spans
        ]
        if count_tokens(content) > token_budget:
            content = truncate_to_tokens(content, token_budget)
            spans = _clip_spans(spans, len(content))
        return CompressedContext(
            content=content,
            spans=spans,
            token_count=count_tokens(content),
            compression_ratio=(ranked.compression_ratio + tree.compression_ratio) / 2,
            preserved_spans=len(spans),
            strategy=CompressionStrategy.HYBRID,
        )

    # -------------------------------------------------------------------------
    # RAPTOR
    # -------------------------------------------------------------------------

    async def _raptor(
        self,
        results: Sequence[SearchResult],
        query: str,
        token_budget: int,
    ) -> Result[CompressedContext]:
        """Run every RAPTOR phase; any failure comes back as ``Err``, never raised."""
        try:
            return await self._raptor_phases(results, query, token_budget)
        except Exception as exc:
            logger.exception("RAPTOR compression failed outside a model phase")
            return Err("raptor", exc)

    async def _raptor_phases(
        self,
        results: Sequence[SearchResult],
        query: str,
        token_budget: int,
    ) -> Result[CompressedContext]:
        groups = _group_by_document(results)[:self._settings.raptor_max_groups]

        summaries: list[RaptorDocumentSummary] = []
        outcomes = await asyncio.gather(*(
            _phase("document_summary", RAPTOR_DOCUMENT_SUMMARY.generate(
                self._llm,
                query=query,
                content=truncate_to_tokens(group.content, token_budget),
                metadata=group.metadata_json(),
            ))
            for group in groups
        ))
        for outcome in outcomes:
            if isinstance(outcome, Err):
                return outcome
            summaries.append(outcome.value)

        tree_outcome: Result[RaptorTree] = await _phase("tree_structure", RAPTOR_TREE_STRUCTURE.generate(
            self._llm,
            query=query,
            content="\n\n".join(
                f"[{group.document_id}] {summary.summary}"
                for group, summary in zip(groups, summaries)
            ),
        ))
        if isinstance(tree_outcome, Err):
            return tree_outcome
        tree = tree_outcome.value
        level = raptor_compression_level(tree)

        compressed_outcome: Result[RaptorMultiLevelCompression] = await _phase(
            "multi_level_compression",
            RAPTOR_MULTI_LEVEL_COMPRESSION.generate(
                self._llm,
                query=query,
                tree=tree.model_dump_json(),
                compression_level=level,
            ),
        )
        if isinstance(compressed_outcome, Err):
            return compressed_outcome

        hierarchy_outcome: Result[RaptorHierarchicalSummary] = await _phase(
            "hierarchical_summary",
            RAPTOR_HIERARCHICAL_SUMMARY.generate(
                self._llm,
                query=query,
                documents=json.dumps(
                    [
                        {"id": g.document_id, "summary": x.summary, "key_points": x.key_points}
                        for g, x in zip(groups, summaries)
                    ],
                    ensure_ascii=False,
                ),
            ),
        )
        if isinstance(hierarchy_outcome, Err):
            return hierarchy_outcome

        assembled = _step(
            "assembly", self._assemble, compressed_outcome.value, hierarchy_outcome.value,
        )
        if isinstance(assembled, Err):
            return assembled
        truncated = _step("truncation", _fit_to_budget, assembled.value, token_budget)
        if isinstance(truncated, Err):
            return truncated
        content = truncated.value
        if not content.strip():
            return Err("assembly", ValueError("RAPTOR assembly produced no content"))

        # One span per group, covering the whole assembled text.
        spans = [
            Span(
                chunk_id=group.results[0].chunk_id,
                document_id=group.document_id,
                start=0,
                end=len(content),
                confidence=summary.confidence,
            )
            for group, summary in zip(groups, summaries)
        ]

        total_chars = sum(len(r.content) for r in results)
        logger.info(
            "RAPTOR: %d groups, %d tree nodes, level %d",
            len(groups), 1 + len(tree.branches), level,
        )
        return Ok(CompressedContext(
            content=content,
            spans=spans,
            token_count=count_tokens(content),
            compression_ratio=len(content) / total_chars if total_chars else 0.0,
            preserved_spans=len(spans),
            strategy=CompressionStrategy.RAPTOR,
        ))

    def _assemble(
        self,
        compressed: RaptorMultiLevelCompression,
        hierarchy: RaptorHierarchicalSummary,
    ) -> str:
        parts: list[str] = []
        if hierarchy.main_topic.strip():
            parts.append(f"# {hierarchy.main_topic.strip()}")
        parts.append(compressed.compressed_content.strip())

        categories = [
            c for c in hierarchy.categories
            if c.relevance_score >= self._settings.raptor_category_min_relevance
        ]
        if categories:
            parts.append("\n## Key Categories:")
            parts.extend(f"### {c.title}\n{c.content}" for c in categories)

        insights = [i.strip() for i in hierarchy.key_insights if i.strip()]
        if insights:
            parts.append("\n## Key Insights:")
            parts.append("\n".join(f"• {i}" for i in insights))
        return "\n\n".join(parts)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _phase(name: str, call: Awaitable[T]) -> Result[T]:
    try:
        return Ok(await call)
    except (asyncio.TimeoutError, RAGError) as exc:
        return Err(name, exc)
    except Exception as exc:
        logger.exception("RAPTOR %s phase raised an unexpected error", name)
        return Err(name, exc)


def _step(name: str, fn: Callable[..., T], *args: Any) -> Result[T]:
    try:
        return Ok(fn(*args))
    except Exception as exc:
        logger.exception("RAPTOR %s step failed", name)
        return Err(name, exc)


def _fit_to_budget(content: str, token_budget: int) -> str:
    if count_tokens(content) > token_budget:
        return truncate_to_tokens(content, token_budget)
    return content


def _term_overlap(query_terms: list[str], sentence: str) -> float:
    if not query_terms:
        return 0.0
    sentence_terms = [t.lower() for t in _TERM_RE.findall(sentence)]
    hits = sum(1 for q in query_terms if any(q in t for t in sentence_terms))
    return hits / len(query_terms)


def _group_by_document(results: Sequence[SearchResult]) -> list[_DocumentGroup]:
    groups: dict[str, _DocumentGroup] = {}
    for result in results:
        group = groups.get(result.document_id)
        if group is None:
            groups[result.document_id] = _DocumentGroup(result.document_id, [result])
        else:
            group.results.append(result)
    return list(groups.values())


def _clip_spans(spans: list[Span], length: int) -> list[Span]:
    return [
        Span(sp.chunk_id, sp.document_id, sp.start, min(sp.end, length), sp.confidence)
        for sp in spans
        if sp.start < length
    ]
