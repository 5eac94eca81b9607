# =============================================================================
# Unit Tests — Document Indexer
# =============================================================================
#
# Chunker + fake embeddings + in-process ChromaDB + in-memory chunk store:
# the whole ingestion path without network or database.
# =============================================================================

from __future__ import annotations

import asyncio
import uuid

import chromadb
import pytest
from fakes import FakeEmbeddingProvider, InMemoryChunkStore, make_settings

from dataroom_rag.errors import ProviderError
from dataroom_rag.services.chunker import PAGE_BREAK, DocumentChunker
from dataroom_rag.services.embedder import EmbeddingGenerator
from dataroom_rag.services.ingestion import DocumentIndexer
from dataroom_rag.services.vectorstore import ChromaVectorIndex


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


def _page(n: int) -> str:
    return f"# Page {n}\n\n" + " ".join(f"pg{n}term{i}" for i in range(40))


THREE_PAGES = f"\n{PAGE_BREAK}\n".join(_page(n) for n in (1, 2, 3))


class _Setup:
    def __init__(self, provider: FakeEmbeddingProvider | None = None) -> None:
        settings = make_settings(embedding_max_attempts=1)
        self.provider = provider or FakeEmbeddingProvider()
        self.vector_index = ChromaVectorIndex(settings, client=chromadb.Client())
        self.chunk_store = InMemoryChunkStore()
        self.indexer = DocumentIndexer(
            DocumentChunker(settings),
            EmbeddingGenerator(self.provider, settings),
            self.vector_index,
            self.chunk_store,
        )
        self.room = f"room-{uuid.uuid4().hex}"


class TestDocumentIndexer:
    def test_index_stores_vectors_and_chunks(self):
        setup = _Setup()
        result = _run(setup.indexer.index(THREE_PAGES, "doc-1", "Lease", setup.room))

        assert result.document_id == "doc-1"
        assert result.page_count == 3
        assert result.chunk_count == 3
        assert result.vector_count == 3
        assert result.embeddings.new_count == 3

        stored = _run(setup.chunk_store.get_by_document("doc-1"))
        assert [c.page_ranges for c in stored] == [["1"], ["2"], ["3"]]
        hits = _run(setup.vector_index.scroll(setup.room, document_ids=["doc-1"]))
        assert sorted(h.id for h in hits) == [c.id for c in stored]
        assert hits[0].metadata["document_name"] == "Lease"

    def test_reindex_replaces_previous_content(self):
        setup = _Setup()
        _run(setup.indexer.index(THREE_PAGES, "doc-1", "Lease", setup.room))
        result = _run(setup.indexer.index(_page(1), "doc-1", "Lease", setup.room))

        assert result.chunk_count == 1
        assert len(_run(setup.chunk_store.get_by_document("doc-1"))) == 1
        assert len(_run(setup.vector_index.scroll(setup.room))) == 1

    def test_indexed_pages_are_searchable(self):
        setup = _Setup()
        _run(setup.indexer.index(THREE_PAGES, "doc-1", "Lease", setup.room))
        found = _run(setup.chunk_store.find_by_pages(setup.room, ["doc-1"], [2]))
        assert [c.id for c in found] == ["doc-1_chunk_1"]
        hits = _run(setup.vector_index.scroll(setup.room, pages=[3]))
        assert [h.id for h in hits] == ["doc-1_chunk_2"]

    def test_empty_text_raises(self):
        setup = _Setup()
        with pytest.raises(ValueError, match="No chunks"):
            _run(setup.indexer.index("   ", "doc-1", "Lease", setup.room))

    def test_embedding_failure_stores_nothing(self):
        setup = _Setup(FakeEmbeddingProvider(error=ProviderError("quota exceeded", retryable=False)))
        with pytest.raises(ProviderError, match="Embedding failed for 3 chunks"):
            _run(setup.indexer.index(THREE_PAGES, "doc-1", "Lease", setup.room))
        assert setup.chunk_store.chunks == {}
        assert _run(setup.vector_index.scroll(setup.room)) == []

    def test_remove(self):
        setup = _Setup()
        _run(setup.indexer.index(THREE_PAGES, "doc-1", "Lease", setup.room))
        assert _run(setup.indexer.remove(setup.room, ["doc-1"])) == 3
        assert _run(setup.vector_index.scroll(setup.room)) == []
