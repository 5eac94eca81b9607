# =============================================================================
# Embedding Service — Content-Addressed Cache + Batched Generator
# =============================================================================
#
# Generates vector embeddings using any OpenAI-compatible embedding API
# (OpenAI, Alibaba Cloud DashScope, ...), behind a small provider protocol
# so tests and other backends can stand in.
#
# EmbeddingGenerator.embed_chunks() is the ingestion entry point:
#   1. Reject chunks too short to embed (< 10 chars or < 5 tokens)
#   2. Truncate chunks over the model input cap (8000 tokens)
#   3. Group by SHA-256 of the normalised text: identical content is sent
#      to the provider once and shares one vector
#   4. Serve groups from the TTL cache where possible
#   5. Send the misses in batches of 120, at most 5 batches in flight,
#      each batch under its own deadline with tenacity retries
#   6. A failed batch fails only its own groups (failed_count)
#
# Counting: every unique text sent to the provider adds 1 to new_count;
# every other embedded chunk (cache hit, or a duplicate of a text embedded
# in the same call) adds 1 to cached_count.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Protocol

from dataroom_rag.config import Settings, get_settings
from dataroom_rag.errors import ProviderError, RAGError
from dataroom_rag.services.cache import TTLCache
from dataroom_rag.services.chunker import Chunk
from dataroom_rag.services.llm import call_with_retry, map_sdk_error
from dataroom_rag.services.tokenizer import content_hash, count_tokens, truncate_to_tokens

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class EmbeddingBatch:
    """Vectors for one provider call, in input order, plus token usage."""

    vectors: list[list[float]]
    total_tokens: int = 0


@dataclass
class ChunkEmbedding:
    chunk_id: str
    vector: list[float]
    content_hash: str
    token_count: int  # provider tokens attributed to this chunk
    cached: bool


@dataclass
class EmbeddingResult:
    embeddings: list[ChunkEmbedding] = field(default_factory=list)
    cached_count: int = 0
    new_count: int = 0
    failed_count: int = 0
    skipped_ids: list[str] = field(default_factory=list)
    total_tokens: int = 0


@dataclass
class _Group:
    text: str
    chunks: list[Chunk]
    vector: list[float] | None = None
    tokens: int = 0
    from_cache: bool = False


# ---------------------------------------------------------------------------
# Provider Protocol + OpenAI-compatible implementation
# ---------------------------------------------------------------------------


class EmbeddingProvider(Protocol):
    async def embed(self, texts: Sequence[str]) -> EmbeddingBatch:
        """Embed ``texts``; vectors come back in input order."""
        ...


class OpenAIEmbeddingProvider:
    """
    Embeddings via the OpenAI SDK with a configurable base_url.

    API key resolution order:
      1. OPENAI_API_KEY (explicit embedding key)
      2. LLM_API_KEY (shared key, e.g. one DashScope key for LLM + embeddings)
    """

    def __init__(self, settings: Settings | None = None) -> None:
        from openai import AsyncOpenAI

        s = settings or get_settings()
        resolved_key = s.openai_api_key or s.llm_api_key
        if not resolved_key:
            raise ValueError(
                "No API key configured for embeddings. "
                "Set OPENAI_API_KEY or LLM_API_KEY in .env"
            )

        client_kwargs: dict = {"api_key": resolved_key, "max_retries": 0}
        if s.embedding_base_url:
            client_kwargs["base_url"] = s.embedding_base_url

        self._client = AsyncOpenAI(**client_kwargs)
        self._model = s.embedding_model
        self._dimensions = s.embedding_dimensions

        logger.info(
            "Initialized embedding client (model=%s, base_url=%s)",
            self._model,
            s.embedding_base_url or "https://api.openai.com/v1",
        )

    async def embed(self, texts: Sequence[str]) -> EmbeddingBatch:
        create_kwargs: dict = {"model": self._model, "input": list(texts)}
        if self._dimensions:
            create_kwargs["dimensions"] = self._dimensions

        try:
            response = await self._client.embeddings.create(**create_kwargs)
        except Exception as exc:
            raise map_sdk_error(exc, "embeddings") from exc

        vectors: list[list[float]] = [[] for _ in texts]
        # Order by response index; a mismatch would silently corrupt vectors
        for item in sorted(response.data, key=lambda x: x.index):
            vectors[item.index] = item.embedding
        if any(not v for v in vectors):
            raise ProviderError(
                "Embedding response is missing vectors",
                context={"requested": len(texts), "returned": len(response.data)},
                retryable=False,
            )

        return EmbeddingBatch(
            vectors=vectors,
            total_tokens=response.usage.total_tokens if response.usage else 0,
        )

    async def aclose(self) -> None:
        await self._client.close()


# ---------------------------------------------------------------------------
# Generator
# ---------------------------------------------------------------------------


class EmbeddingGenerator:
    """
    Batched, cached embedding of chunks and queries.

    Args:
        provider: Anything implementing EmbeddingProvider.
        settings: Batch size, concurrency, limits, cache lifetime.
        cache: Shared vector cache keyed by content hash; one is created
            from settings when omitted.
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        settings: Settings | None = None,
        cache: TTLCache[list[float]] | None = None,
    ) -> None:
        self._provider = provider
        self._settings = settings or get_settings()
        self._cache = cache if cache is not None else TTLCache(
            ttl_seconds=self._settings.embedding_cache_ttl_seconds,
            max_entries=self._settings.embedding_cache_max_entries,
            name="embeddings",
        )

    @property
    def cache(self) -> TTLCache[list[float]]:
        return self._cache

    async def embed_chunks(self, chunks: Sequence[Chunk]) -> EmbeddingResult:
        """
        Embed every embeddable chunk.

        Never raises for provider failures: a failed batch is reported
        through ``failed_count`` and the rest of the call proceeds.
        """
        s = self._settings
        result = EmbeddingResult()
        if not chunks:
            return result

        # Filter, truncate, and group by content hash
        groups: dict[str, _Group] = {}
        for chunk in chunks:
            text = chunk.content
            if len(text.strip()) < s.embedding_min_chars or count_tokens(text) < s.embedding_min_tokens:
                result.skipped_ids.append(chunk.id)
                continue
            if count_tokens(text) > s.embedding_max_input_tokens:
                logger.debug("Truncating chunk %s to %d tokens", chunk.id, s.embedding_max_input_tokens)
                text = truncate_to_tokens(text, s.embedding_max_input_tokens)
            key = content_hash(text)
            group = groups.get(key)
            if group is None:
                groups[key] = _Group(text=text, chunks=[chunk])
            else:
                group.chunks.append(chunk)

        # Cache lookup
        misses: list[tuple[str, _Group]] = []
        for key, group in groups.items():
            cached = self._cache.get(key)
            if cached is not None:
                group.vector = cached
                group.from_cache = True
            else:
                misses.append((key, group))

        logger.info(
            "Embedding %d chunks: %d unique texts, %d cache misses, %d skipped",
            len(chunks), len(groups), len(misses), len(result.skipped_ids),
        )

        # Provider calls, bounded concurrency
        semaphore = asyncio.Semaphore(s.embedding_concurrency)
        batches = [
            misses[i:i + s.embedding_batch_size]
            for i in range(0, len(misses), s.embedding_batch_size)
        ]
        await asyncio.gather(
            *(self._embed_batch(batch, index, semaphore) for index, batch in enumerate(batches))
        )

        # Assemble results in input order
        by_chunk: dict[str, ChunkEmbedding] = {}
        for key, group in groups.items():
            if group.vector is None:
                result.failed_count += len(group.chunks)
                continue
            for position, chunk in enumerate(group.chunks):
                first_new = position == 0 and not group.from_cache
                if first_new:
                    result.new_count += 1
                else:
                    result.cached_count += 1
                by_chunk[chunk.id] = ChunkEmbedding(
                    chunk_id=chunk.id,
                    vector=group.vector,
                    content_hash=key,
                    token_count=group.tokens if first_new else 0,
                    cached=not first_new,
                )
            if not group.from_cache:
                result.total_tokens += group.tokens

        result.embeddings = [by_chunk[c.id] for c in chunks if c.id in by_chunk]

        logger.info(
            "Embedding complete: new=%d cached=%d failed=%d tokens=%d",
            result.new_count, result.cached_count, result.failed_count, result.total_tokens,
        )
        return result

    async def embed_query(self, text: str) -> list[float]:
        """
        Embed a single query string (cached).

        Raises:
            ProviderTimeoutError / ProviderError: The provider failed.
        """
        key = content_hash(text)
        cached = self._cache.get(key)
        if cached is not None:
            logger.debug("Query embedding cache hit")
            return cached

        batch = await call_with_retry(
            lambda: self._provider.embed([text]),
            timeout=self._settings.embedding_timeout_seconds,
            attempts=self._settings.embedding_max_attempts,
            label="embeddings.query",
        )
        vector = batch.vectors[0]
        self._cache.set(key, vector)
        return vector

    async def _embed_batch(
        self,
        batch: list[tuple[str, _Group]],
        index: int,
        semaphore: asyncio.Semaphore,
    ) -> None:
        texts = [group.text for _, group in batch]
        async with semaphore:
            try:
                response = await call_with_retry(
                    lambda: self._provider.embed(texts),
                    timeout=self._settings.embedding_timeout_seconds,
                    attempts=self._settings.embedding_max_attempts,
                    label=f"embeddings.batch[{index}]",
                )
            except RAGError as exc:
                logger.warning(
                    "Embedding batch %d failed (%d texts): %s", index, len(texts), exc,
                )
                return

        if len(response.vectors) != len(texts):
            logger.warning(
                "Embedding batch %d returned %d vectors for %d texts",
                index, len(response.vectors), len(texts),
            )
            return

        # Apportion the batch's token usage by content length
        total_chars = sum(len(t) for t in texts) or 1
        for (key, group), vector in zip(batch, response.vectors):
            group.vector = vector
            group.tokens = round(response.total_tokens * len(group.text) / total_chars)
            self._cache.set(key, vector)
