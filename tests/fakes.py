# =============================================================================
# Test Doubles — in-memory stand-ins for the external services
# =============================================================================
#
# FakeLLM routes each structured prompt to a canned JSON reply by a marker
# phrase from the prompt text, and streams a fixed answer. The embedding
# provider hashes words into a small vector so similar texts land close
# together. Nothing here touches the network.
# =============================================================================

from __future__ import annotations

import asyncio
import json
import math
import re
import zlib
from collections.abc import Callable, Sequence
from typing import Any

from sqlalchemy.orm import sessionmaker

from dataroom_rag.agents.search import SearchResult
from dataroom_rag.config import Settings
from dataroom_rag.db.engine import create_sync_engine, init_db
from dataroom_rag.errors import ProviderError
from dataroom_rag.services.access import AccessibleDocument
from dataroom_rag.services.chat_store import ChatMessage
from dataroom_rag.services.chunker import Chunk
from dataroom_rag.services.embedder import EmbeddingBatch
from dataroom_rag.services.llm import LLMResponse
from dataroom_rag.services.page_ranges import expand_page_ranges, page_ranges_match
from dataroom_rag.services.tokenizer import content_hash, count_tokens

# Marker phrases taken from the prompt templates
ANALYSIS = "Analyze this query against"
GRADING = "Grade how relevant"
SUMMARY = "Summarize the excerpts below"
TREE = "Organize these document summaries into a tree"
COMPRESS = "Compress this content tree"
HIERARCHY = "Build a hierarchical overview"

EMBEDDING_DIMENSIONS = 32
_WORD_RE = re.compile(r"\w+")


def make_settings(**overrides: Any) -> Settings:
    """Settings isolated from any local .env file."""
    values: dict[str, Any] = {"llm_api_key": "test-key"}
    values.update(overrides)
    return Settings(_env_file=None, **values)


def sqlite_session_factory() -> sessionmaker:
    engine = create_sync_engine("sqlite://")
    init_db(engine)
    return sessionmaker(bind=engine, expire_on_commit=False)


# ---------------------------------------------------------------------------
# LLM
# ---------------------------------------------------------------------------


def analysis_payload(
    query: str = "What are the termination fees?",
    *,
    query_type: str = "document_question",
    intent: str = "comparison",
    complexity_score: float = 0.5,
    complexity_level: str = "medium",
    pages: Sequence[int] = (),
    keywords: Sequence[str] = ("termination", "fees"),
    rewrites: Sequence[str] = (),
    response: str = "",
    requires_hyde: bool = False,
    hyde_answer: str = "",
) -> dict[str, Any]:
    return {
        "sanitization": {"sanitized_query": query},
        "query_classification": {
            "type": query_type,
            "intent": intent,
            "response": response,
            "requires_expansion": False,
            "optimal_context_size": "medium",
        },
        "complexity_analysis": {
            "complexity_score": complexity_score,
            "complexity_level": complexity_level,
        },
        "query_extraction": {"page_numbers": list(pages), "keywords": list(keywords)},
        "query_rewriting": {
            "rewritten_queries": list(rewrites),
            "hyde_answer": hyde_answer,
            "requires_hyde": requires_hyde,
        },
        "search_strategy": {
            "strategy": "StandardVectorSearch",
            "confidence": 0.8,
            "reasoning": "typical question",
        },
        "processing_hints": {},
    }


def grade_payload(score: float = 0.9, relevant: bool = True) -> dict[str, Any]:
    return {
        "relevance_score": score,
        "confidence": 0.9,
        "is_relevant": relevant,
        "suggested_weight": score,
    }


Reply = Any  # dict | str | Exception | Callable[[str], dict | str]


class FakeLLM:
    """
    LLMProvider double.

    Args:
        routes: Marker phrase → reply. A dict is sent back as JSON, a string
            verbatim, an exception is raised, a callable gets the prompt.
        answer_parts: Deltas yielded by ``stream``; an exception in the
            list is raised at that point.
        delay: Seconds to sleep before every completion.
    """

    def __init__(
        self,
        routes: dict[str, Reply] | None = None,
        answer_parts: Sequence[Any] = ("The termination fee ", "is 2% [1]."),
        delay: float = 0.0,
    ) -> None:
        self.routes = dict(routes or {})
        self.answer_parts = list(answer_parts)
        self.delay = delay
        self.prompts: list[str] = []
        self.stream_calls: list[dict[str, Any]] = []

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        prompt = messages[-1]["content"]
        self.prompts.append(prompt)
        if self.delay:
            await asyncio.sleep(self.delay)

        for marker, reply in self.routes.items():
            if marker not in prompt:
                continue
            if isinstance(reply, Exception):
                raise reply
            if callable(reply):
                reply = reply(prompt)
            content = reply if isinstance(reply, str) else json.dumps(reply)
            return LLMResponse(
                content=content,
                model="fake-model",
                input_tokens=count_tokens(prompt),
                output_tokens=count_tokens(content),
            )
        raise ProviderError("No canned reply for prompt", retryable=False)

    async def stream(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ):
        self.stream_calls.append({"messages": messages, "system": system})
        for part in self.answer_parts:
            if isinstance(part, Exception):
                raise part
            yield part

    def prompts_with(self, marker: str) -> list[str]:
        return [p for p in self.prompts if marker in p]


# ---------------------------------------------------------------------------
# Embeddings
# ---------------------------------------------------------------------------


def embed_text(text: str, dimensions: int = EMBEDDING_DIMENSIONS) -> list[float]:
    """Bag-of-words hashed into ``dimensions`` buckets, L2-normalised."""
    vector = [0.0] * dimensions
    for word in _WORD_RE.findall(text.lower()):
        vector[zlib.crc32(word.encode("utf-8")) % dimensions] += 1.0
    norm = math.sqrt(sum(v * v for v in vector))
    if norm == 0:
        vector[0] = 1.0
        return vector
    return [v / norm for v in vector]


class FakeEmbeddingProvider:
    def __init__(self, fail_on: Sequence[str] = (), error: Exception | None = None) -> None:
        self.calls: list[list[str]] = []
        self.fail_on = set(fail_on)
        self.error = error

    async def embed(self, texts: Sequence[str]) -> EmbeddingBatch:
        self.calls.append(list(texts))
        if self.error is not None:
            raise self.error
        if any(t in self.fail_on for t in texts):
            raise ProviderError("Embedding rejected", retryable=False)
        return EmbeddingBatch(
            vectors=[embed_text(t) for t in texts],
            total_tokens=sum(count_tokens(t) for t in texts),
        )

    @property
    def embedded_texts(self) -> list[str]:
        return [t for call in self.calls for t in call]


# ---------------------------------------------------------------------------
# Stores and resolvers
# ---------------------------------------------------------------------------


class InMemoryChunkStore:
    def __init__(self, chunks: Sequence[Chunk] = ()) -> None:
        self.chunks: dict[str, Chunk] = {c.id: c for c in chunks}

    async def save_chunks(self, chunks: Sequence[Chunk]) -> int:
        for chunk in chunks:
            self.chunks[chunk.id] = chunk
        return len(chunks)

    async def find_by_pages(
        self,
        dataroom_id: str,
        document_ids: Sequence[str],
        pages: Sequence[int],
        limit: int = 50,
    ) -> list[Chunk]:
        matches = [
            c for c in sorted(self.chunks.values(), key=lambda c: (c.document_id, c.chunk_index))
            if c.dataroom_id == dataroom_id
            and c.document_id in document_ids
            and page_ranges_match(c.page_ranges, pages)
        ]
        return matches[:limit]

    async def get_by_document(self, document_id: str) -> list[Chunk]:
        return sorted(
            (c for c in self.chunks.values() if c.document_id == document_id),
            key=lambda c: c.chunk_index,
        )

    async def delete_by_documents(self, document_ids: Sequence[str]) -> int:
        doomed = [cid for cid, c in self.chunks.items() if c.document_id in document_ids]
        for cid in doomed:
            del self.chunks[cid]
        return len(doomed)

    async def max_page(self, dataroom_id: str, document_ids: Sequence[str]) -> int:
        pages = [
            p
            for c in self.chunks.values()
            if c.dataroom_id == dataroom_id and c.document_id in document_ids
            for p in expand_page_ranges(c.page_ranges)
        ]
        return max(pages, default=0)


class StaticAccessResolver:
    def __init__(self, documents: Sequence[AccessibleDocument]) -> None:
        self.documents = list(documents)
        self.calls = 0

    async def accessible_documents(
        self, dataroom_id: str, viewer_id: str,
    ) -> list[AccessibleDocument]:
        self.calls += 1
        return list(self.documents)


class RecordingSink:
    def __init__(self, error: Exception | None = None) -> None:
        self.messages: list[ChatMessage] = []
        self.error = error

    async def push(self, message: ChatMessage) -> None:
        if self.error is not None:
            raise self.error
        self.messages.append(message)


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def make_chunk(
    index: int = 0,
    content: str = "The termination fee is two percent of the outstanding balance.",
    *,
    document_id: str = "doc-1",
    dataroom_id: str = "room-1",
    document_name: str = "Lease Agreement",
    page_ranges: Sequence[str] = ("1",),
) -> Chunk:
    return Chunk(
        id=f"{document_id}_chunk_{index}",
        content=content,
        document_id=document_id,
        dataroom_id=dataroom_id,
        chunk_index=index,
        content_hash=content_hash(content),
        token_count=count_tokens(content),
        page_ranges=list(page_ranges),
        document_name=document_name,
        content_type="text/markdown",
    )


def make_result(
    chunk_id: str = "doc-1_chunk_0",
    content: str = "The termination fee is two percent of the outstanding balance.",
    *,
    document_id: str = "doc-1",
    similarity: float = 0.8,
    **metadata: Any,
) -> SearchResult:
    metadata.setdefault("document_name", "Lease Agreement")
    metadata.setdefault("document_id", document_id)
    return SearchResult(
        chunk_id=chunk_id,
        document_id=document_id,
        content=content,
        similarity=similarity,
        metadata=metadata,
    )


def routes_with(**replies: Callable[[str], Any] | Any) -> dict[str, Any]:
    """Shorthand: routes_with(analysis=..., grading=...) → marker routes."""
    markers = {
        "analysis": ANALYSIS,
        "grading": GRADING,
        "summary": SUMMARY,
        "tree": TREE,
        "compress": COMPRESS,
        "hierarchy": HIERARCHY,
    }
    return {markers[name]: reply for name, reply in replies.items()}
