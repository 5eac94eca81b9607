# =============================================================================
# Response Generator — grounded answer generation over compressed context
# =============================================================================
#
# The generator renders RAG_RESPONSE_SYSTEM with the final context and the
# question, then streams the model's answer. When retrieval produced nothing
# usable, RAG_FALLBACK_RESPONSE renders a fixed, model-free reply.
#
# Uncompressed context (fast path, failed compression) is formatted as
# numbered sources, [1], [2], ..., so the model can cite them; the same
# numbering is used for the source references returned with the answer.
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Sequence
from dataclasses import asdict, dataclass
from typing import Any, Protocol

from dataroom_rag.agents.search import SearchResult
from dataroom_rag.errors import ProviderError
from dataroom_rag.services.llm import LLMProvider
from dataroom_rag.services.prompts import RAG_FALLBACK_RESPONSE, RAG_RESPONSE_SYSTEM

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SourceReference:
    document_id: str
    document_name: str
    chunk_id: str
    page_ranges: str
    relevance: float

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class ResponseGenerator(Protocol):
    def stream(self, query: str, context: str) -> AsyncIterator[str]:
        """Yield answer text as it is generated."""
        ...

    async def generate(self, query: str, context: str) -> str:
        ...

    def fallback_response(self, query: str) -> str:
        ...


# ---------------------------------------------------------------------------
# Context and sources
# ---------------------------------------------------------------------------


def format_context(results: Sequence[SearchResult]) -> str:
    """
    Numbered context block for the answer prompt.

    Example output:
        [1] Lease Agreement (pages 4-5):
        The lessee shall pay...

        [2] Board Minutes (page 2):
        The board approved...
    """
    sections = []
    for i, result in enumerate(results, 1):
        name = result.metadata.get("document_name") or result.document_id
        pages = _page_label(result.metadata)
        label = ""
        if pages:
            label = f" (page {pages})" if pages.isdigit() else f" (pages {pages})"
        sections.append(f"[{i}] {name}{label}:\n{result.content}")
    return "\n\n".join(sections)


def _page_label(metadata: dict[str, Any]) -> str:
    ranges = metadata.get("page_ranges") or []
    if isinstance(ranges, str):
        return ranges
    return ",".join(str(r) for r in ranges)


def format_sources(results: Sequence[SearchResult]) -> list[SourceReference]:
    """One reference per distinct chunk, relevance from grading when present."""
    seen: set[str] = set()
    sources: list[SourceReference] = []
    for result in results:
        if result.chunk_id in seen:
            continue
        seen.add(result.chunk_id)
        relevance = getattr(result, "relevance_score", None)
        sources.append(SourceReference(
            document_id=result.document_id,
            document_name=str(result.metadata.get("document_name", "")),
            chunk_id=result.chunk_id,
            page_ranges=_page_label(result.metadata),
            relevance=round(float(relevance if relevance is not None else result.similarity), 4),
        ))
    return sources


# ---------------------------------------------------------------------------
# Generator
# ---------------------------------------------------------------------------


class LLMResponseGenerator:
    def __init__(self, llm: LLMProvider, temperature: float | None = None) -> None:
        self._llm = llm
        self._temperature = temperature

    async def stream(self, query: str, context: str) -> AsyncIterator[str]:
        system = RAG_RESPONSE_SYSTEM.render(context=context, query=query)
        logger.info("Generating answer (context=%d chars)", len(context))
        async for delta in self._llm.stream(
            messages=[{"role": "user", "content": query}],
            system=system,
            temperature=self._temperature,
        ):
            if delta:
                yield delta

    async def generate(self, query: str, context: str) -> str:
        """
        Raises:
            ProviderError: The model returned no text.
        """
        parts = [delta async for delta in self.stream(query, context)]
        answer = "".join(parts).strip()
        if not answer:
            raise ProviderError("Model returned an empty answer", retryable=False)
        return answer

    def fallback_response(self, query: str) -> str:
        return RAG_FALLBACK_RESPONSE.render(query=query)
