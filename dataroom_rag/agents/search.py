# =============================================================================
# Search Orchestrator — multi-query vector retrieval and exact page lookup
# =============================================================================
#
# VECTOR SEARCH (search):
#   1. build_queries() — original query, then the analyzer's rewrites,
#      stripped, de-duplicated, capped per tier (+ HyDE answer for
#      ExpandedSearch when the analyzer asked for it)
#   2. Each variant: embed → filtered cosine search, concurrently (bound 5),
#      each under its own deadline = min(tier timeout, 10s × top_k)
#   3. A failing or timing-out variant contributes [] and the batch goes on
#   4. Merge: de-duplicate by chunk id keeping the highest similarity,
#      sort by similarity descending
#
# Vector results are cached for 5 minutes per (dataroom, document scope,
# pages, tier, query).
#
# PAGE QUERY (page_query):
#   Exact chunk-store lookup by page-range matching. No embeddings; every
#   hit has similarity 1.0.
#
# TIERS:
#   ┌──────────────────────┬───────┬───────────┬─────────┬──────────┐
#   │ Strategy             │ top-K │ threshold │ timeout │ variants │
#   ├──────────────────────┼───────┼───────────┼─────────┼──────────┤
#   │ FastVectorSearch     │ 2     │ 0.5       │ 45s     │ 2        │
#   │ StandardVectorSearch │ 3     │ 0.4       │ 50s     │ 4        │
#   │ ExpandedSearch       │ 4     │ 0.3       │ 55s     │ 6 + HyDE │
#   └──────────────────────┴───────┴───────────┴─────────┴──────────┘
# =============================================================================

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from dataroom_rag.agents.query_analyzer import QueryAnalysisResult
from dataroom_rag.agents.strategy import SearchStrategy
from dataroom_rag.config import Settings, get_settings
from dataroom_rag.errors import RAGError
from dataroom_rag.services.cache import TTLCache
from dataroom_rag.services.chunk_store import ChunkStore
from dataroom_rag.services.chunker import Chunk
from dataroom_rag.services.embedder import EmbeddingGenerator
from dataroom_rag.services.vectorstore import VectorHit, VectorIndex

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class SearchResult:
    """One retrieved chunk. ``similarity`` is in [0, 1]."""

    chunk_id: str
    document_id: str
    content: str
    similarity: float
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_hit(cls, hit: VectorHit) -> SearchResult:
        return cls(
            chunk_id=hit.id,
            document_id=str(hit.metadata.get("document_id", "")),
            content=hit.content,
            similarity=hit.similarity,
            metadata=dict(hit.metadata),
        )

    @classmethod
    def from_chunk(cls, chunk: Chunk, similarity: float = 1.0) -> SearchResult:
        return cls(
            chunk_id=chunk.id,
            document_id=chunk.document_id,
            content=chunk.content,
            similarity=similarity,
            metadata=chunk.to_metadata(),
        )


@dataclass(frozen=True)
class SearchConfig:
    strategy: SearchStrategy
    top_k: int
    similarity_threshold: float
    timeout_seconds: float
    max_queries: int
    include_hyde: bool = False


def search_config_for(strategy: SearchStrategy, settings: Settings | None = None) -> SearchConfig:
    """Tier parameters for a strategy; PageQueryStrategy falls back to standard."""
    s = settings or get_settings()
    if strategy == SearchStrategy.FAST:
        return SearchConfig(
            strategy, s.fast_top_k, s.fast_similarity_threshold,
            s.fast_timeout_seconds, s.fast_query_variants,
        )
    if strategy == SearchStrategy.EXPANDED:
        return SearchConfig(
            strategy, s.expanded_top_k, s.expanded_similarity_threshold,
            s.expanded_timeout_seconds, s.expanded_query_variants, include_hyde=True,
        )
    return SearchConfig(
        SearchStrategy.STANDARD, s.standard_top_k, s.standard_similarity_threshold,
        s.standard_timeout_seconds, s.standard_query_variants,
    )


def build_queries(
    query: str,
    analysis: QueryAnalysisResult | None,
    config: SearchConfig,
) -> list[str]:
    """
    Original query first, then rewrites, capped at ``config.max_queries``.

    The HyDE answer is appended after the cap when the tier allows it and
    the analyzer flagged the query as needing it.
    """
    candidates = [query]
    if analysis is not None:
        candidates.extend(analysis.rewritten_queries)

    queries: list[str] = []
    seen: set[str] = set()
    for candidate in candidates:
        text = candidate.strip()
        key = text.lower()
        if not text or key in seen:
            continue
        seen.add(key)
        queries.append(text)
        if len(queries) >= config.max_queries:
            break

    if (
        config.include_hyde
        and analysis is not None
        and analysis.requires_hyde
        and analysis.hyde_answer.strip()
        and analysis.hyde_answer.strip().lower() not in seen
    ):
        queries.append(analysis.hyde_answer.strip())
    return queries


def merge_results(batches: Sequence[Sequence[SearchResult]]) -> list[SearchResult]:
    """De-duplicate by chunk id (highest similarity wins), sort descending."""
    best: dict[str, SearchResult] = {}
    for batch in batches:
        for result in batch:
            current = best.get(result.chunk_id)
            if current is None or result.similarity > current.similarity:
                best[result.chunk_id] = result
    return sorted(best.values(), key=lambda r: r.similarity, reverse=True)


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class SearchOrchestrator:
    def __init__(
        self,
        embedder: EmbeddingGenerator,
        vector_index: VectorIndex,
        chunk_store: ChunkStore,
        settings: Settings | None = None,
        cache: TTLCache[list[SearchResult]] | None = None,
    ) -> None:
        self._embedder = embedder
        self._vector_index = vector_index
        self._chunk_store = chunk_store
        self._settings = settings or get_settings()
        self._cache = cache if cache is not None else TTLCache(
            ttl_seconds=self._settings.search_cache_ttl_seconds,
            max_entries=self._settings.search_cache_max_entries,
            name="search",
        )

    async def search(
        self,
        queries: Sequence[str],
        dataroom_id: str,
        allowed_document_ids: Sequence[str],
        config: SearchConfig,
        pages: Sequence[int] | None = None,
    ) -> list[SearchResult]:
        """Run every query variant and merge. Never raises for a single variant."""
        if not queries or not allowed_document_ids:
            return []

        semaphore = asyncio.Semaphore(self._settings.search_concurrency)
        deadline = min(config.timeout_seconds, self._settings.search_seconds_per_result * config.top_k)

        async def _bounded(index: int, query: str) -> list[SearchResult]:
            async with semaphore:
                return await self._search_one(
                    index, query, dataroom_id, allowed_document_ids, config, pages, deadline,
                )

        batches = await asyncio.gather(*(_bounded(i, q) for i, q in enumerate(queries)))
        merged = merge_results(batches)
        logger.info(
            "%s: %d queries → %d results → %d unique",
            config.strategy.value, len(queries), sum(len(b) for b in batches), len(merged),
        )
        return merged

    async def page_query(
        self,
        dataroom_id: str,
        allowed_document_ids: Sequence[str],
        pages: Sequence[int],
    ) -> list[SearchResult]:
        """Chunks covering the requested pages, in document order."""
        chunks = await self._chunk_store.find_by_pages(
            dataroom_id,
            allowed_document_ids,
            pages,
            limit=self._settings.page_query_max_chunks,
        )
        logger.info("Page query pages=%s: %d chunks", list(pages), len(chunks))
        return [SearchResult.from_chunk(chunk, similarity=1.0) for chunk in chunks]

    async def _search_one(
        self,
        index: int,
        query: str,
        dataroom_id: str,
        allowed_document_ids: Sequence[str],
        config: SearchConfig,
        pages: Sequence[int] | None,
        deadline: float,
    ) -> list[SearchResult]:
        key = _cache_key(query, dataroom_id, allowed_document_ids, config, pages)
        cached = self._cache.get(key)
        if cached is not None:
            logger.debug("Search cache hit for query %d", index + 1)
            return cached

        async def _run() -> list[SearchResult]:
            vector = await self._embedder.embed_query(query)
            hits = await self._vector_index.search(
                dataroom_id,
                vector,
                top_k=config.top_k,
                document_ids=allowed_document_ids,
                pages=pages,
                score_threshold=config.similarity_threshold,
            )
            return [SearchResult.from_hit(hit) for hit in hits]

        try:
            results = await asyncio.wait_for(_run(), timeout=deadline)
        except asyncio.TimeoutError:
            logger.warning("Query %d timed out after %.0fs", index + 1, deadline)
            return []
        except RAGError as exc:
            logger.warning("Query %d failed: %s", index + 1, exc.message)
            return []

        self._cache.set(key, results)
        return results


def _cache_key(
    query: str,
    dataroom_id: str,
    document_ids: Sequence[str],
    config: SearchConfig,
    pages: Sequence[int] | None,
) -> str:
    payload = json.dumps(
        [
            dataroom_id,
            sorted(document_ids),
            sorted(pages or []),
            config.top_k,
            config.similarity_threshold,
            query,
        ],
        separators=(",", ":"),
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()
