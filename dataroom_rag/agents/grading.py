# =============================================================================
# Document Grader — LLM relevance grading of retrieved chunks
# =============================================================================
#
# FLOW:
#   1. Conversational query ("thanks", "hello") → top 3 results kept at
#      fixed high confidence (0.9), no LLM calls
#   2. Complexity level (from the analyzer, else the keyword heuristic)
#      decides how many results are graded: high 15 / medium 10 / low 8
#   3. Results are graded in batches of 5, at most 3 LLM calls in flight;
#      grades are cached per item (query + chunk id + first 100 chars) and
#      per batch
#   4. Keep is_relevant results scoring ≥ the relevance threshold
#
# A failed item is dropped. If every item fails the stage raises
# ProviderError and the orchestrator falls back to TF-IDF / similarity
# order.
# =============================================================================

from __future__ import annotations

import asyncio
import hashlib
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field

from dataroom_rag.agents.patterns import assess_complexity, is_conversational
from dataroom_rag.agents.search import SearchResult
from dataroom_rag.config import Settings, get_settings
from dataroom_rag.errors import ProviderError, RAGError
from dataroom_rag.models.llm_outputs import ComplexityLevel, DocumentGrade
from dataroom_rag.services.cache import TTLCache
from dataroom_rag.services.llm import LLMProvider
from dataroom_rag.services.prompts import DOCUMENT_GRADING_SINGLE

logger = logging.getLogger(__name__)


@dataclass
class GradedDocument(SearchResult):
    relevance_score: float = 0.0
    confidence: float = 0.0
    is_relevant: bool = False
    suggested_weight: float = 0.0

    @classmethod
    def from_result(
        cls,
        result: SearchResult,
        relevance_score: float,
        confidence: float,
        is_relevant: bool,
        suggested_weight: float,
    ) -> GradedDocument:
        return cls(
            chunk_id=result.chunk_id,
            document_id=result.document_id,
            content=result.content,
            similarity=result.similarity,
            metadata=dict(result.metadata),
            relevance_score=relevance_score,
            confidence=confidence,
            is_relevant=is_relevant,
            suggested_weight=suggested_weight,
        )


@dataclass
class GradingOutcome:
    documents: list[GradedDocument] = field(default_factory=list)
    graded_count: int = 0
    failed_count: int = 0
    conversational: bool = False

    @property
    def has_relevant_documents(self) -> bool:
        return bool(self.documents)


class DocumentGrader:
    def __init__(
        self,
        llm: LLMProvider,
        settings: Settings | None = None,
        cache: TTLCache[DocumentGrade] | None = None,
        batch_cache: TTLCache[list[DocumentGrade]] | None = None,
    ) -> None:
        self._llm = llm
        self._settings = settings or get_settings()
        s = self._settings
        self._cache = cache if cache is not None else TTLCache(
            s.grading_cache_ttl_seconds, s.grading_cache_max_entries, name="grades",
        )
        self._batch_cache = batch_cache if batch_cache is not None else TTLCache(
            s.grading_cache_ttl_seconds, s.grading_cache_max_entries, name="grade-batches",
        )

    def grading_limit(self, query: str, complexity_level: ComplexityLevel | None) -> int:
        s = self._settings
        level = complexity_level or assess_complexity(query)[1]
        return {
            "high": s.grading_limit_high,
            "medium": s.grading_limit_medium,
        }.get(level, s.grading_limit_low)

    async def grade(
        self,
        query: str,
        results: Sequence[SearchResult],
        complexity_level: ComplexityLevel | None = None,
    ) -> GradingOutcome:
        """
        Raises:
            ProviderError: Every graded item failed.
        """
        s = self._settings
        if is_conversational(query):
            top = results[:s.grading_conversational_top_n]
            high = s.grading_high_confidence
            logger.info("Conversational query: keeping top %d results", len(top))
            return GradingOutcome(
                documents=[GradedDocument.from_result(r, high, high, True, high) for r in top],
                graded_count=len(top),
                conversational=True,
            )

        to_grade = list(results[:self.grading_limit(query, complexity_level)])
        if not to_grade:
            return GradingOutcome()

        semaphore = asyncio.Semaphore(s.grading_concurrency)
        batches = [
            to_grade[i:i + s.grading_batch_size]
            for i in range(0, len(to_grade), s.grading_batch_size)
        ]
        graded_batches = await asyncio.gather(
            *(self._grade_batch(query, batch, semaphore) for batch in batches)
        )
        grades = [grade for batch in graded_batches for grade in batch]

        failed = sum(1 for g in grades if g is None)
        if failed == len(to_grade):
            raise ProviderError(
                f"Grading failed for all {failed} documents",
                context={"count": failed},
            )

        relevant = [
            GradedDocument.from_result(
                result, g.relevance_score, g.confidence, g.is_relevant, g.suggested_weight,
            )
            for result, g in zip(to_grade, grades)
            if g is not None and g.is_relevant and g.relevance_score >= s.grading_relevance_threshold
        ]
        logger.info(
            "Graded %d documents: %d relevant, %d failed", len(to_grade), len(relevant), failed,
        )
        return GradingOutcome(
            documents=relevant, graded_count=len(to_grade) - failed, failed_count=failed,
        )

    async def _grade_batch(
        self,
        query: str,
        batch: list[SearchResult],
        semaphore: asyncio.Semaphore,
    ) -> list[DocumentGrade | None]:
        item_keys = [_item_key(query, r) for r in batch]
        batch_key = hashlib.sha256("|".join(item_keys).encode("utf-8")).hexdigest()
        cached = self._batch_cache.get(batch_key)
        if cached is not None:
            logger.debug("Grading batch cache hit (%d items)", len(batch))
            return list(cached)

        grades = await asyncio.gather(
            *(self._grade_one(query, r, k, semaphore) for r, k in zip(batch, item_keys))
        )
        if all(g is not None for g in grades):
            self._batch_cache.set(batch_key, list(grades))
        return list(grades)

    async def _grade_one(
        self,
        query: str,
        result: SearchResult,
        key: str,
        semaphore: asyncio.Semaphore,
    ) -> DocumentGrade | None:
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        async with semaphore:
            try:
                grade = await asyncio.wait_for(
                    DOCUMENT_GRADING_SINGLE.generate(self._llm, query=query, content=result.content),
                    timeout=self._settings.grading_timeout_seconds,
                )
            except asyncio.TimeoutError:
                logger.warning("Grading timed out for chunk %s", result.chunk_id)
                return None
            except RAGError as exc:
                logger.warning("Grading failed for chunk %s: %s", result.chunk_id, exc.message)
                return None

        self._cache.set(key, grade)
        return grade


def _item_key(query: str, result: SearchResult) -> str:
    raw = f"{query}\x00{result.chunk_id}\x00{result.content[:100]}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()
