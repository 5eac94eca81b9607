# =============================================================================
# Unit Tests — Celery Task Bodies
# =============================================================================
#
# The async task bodies run directly (no broker): a real indexer over fake
# embeddings, in-process ChromaDB and SQLite, with status rows in SQLite.
# =============================================================================

from __future__ import annotations

import asyncio
import uuid

import chromadb
import pytest
from fakes import FakeEmbeddingProvider, make_settings, sqlite_session_factory

from dataroom_rag.config import settings as app_settings
from dataroom_rag.db.engine import session_scope
from dataroom_rag.db.models import DocumentRecord, DocumentStatus
from dataroom_rag.services.chunk_store import SqlChunkStore
from dataroom_rag.services.chunker import PAGE_BREAK, DocumentChunker
from dataroom_rag.services.embedder import EmbeddingGenerator
from dataroom_rag.services.ingestion import DocumentIndexer
from dataroom_rag.services.vectorstore import ChromaVectorIndex
from dataroom_rag.workers.celery_app import build_conf, celery_app, indexing_time_limits
from dataroom_rag.workers.tasks import process_document, remove_documents


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


TEXT = f"\n{PAGE_BREAK}\n".join(
    f"# Page {n}\n\n" + " ".join(f"pg{n}term{i}" for i in range(40)) for n in (1, 2)
)


def _indexer(factory) -> DocumentIndexer:
    settings = make_settings()
    return DocumentIndexer(
        DocumentChunker(settings),
        EmbeddingGenerator(FakeEmbeddingProvider(), settings),
        ChromaVectorIndex(settings, client=chromadb.Client()),
        SqlChunkStore(factory),
    )


def _record(factory, document_id: str) -> DocumentRecord | None:
    with session_scope(factory) as session:
        return session.get(DocumentRecord, document_id)


class TestProcessDocument:
    def test_success_marks_completed(self):
        factory = sqlite_session_factory()
        room = f"room-{uuid.uuid4().hex}"
        summary = _run(process_document(
            _indexer(factory), "doc-1", room, "Lease", TEXT,
            task_id="task-1", session_factory=factory,
        ))

        assert summary["status"] == "completed"
        assert summary["chunk_count"] == 2
        assert summary["vector_count"] == 2
        assert summary["page_count"] == 2
        assert summary["new_embeddings"] == 2

        record = _record(factory, "doc-1")
        assert record.status == DocumentStatus.COMPLETED
        assert record.dataroom_id == room
        assert record.name == "Lease"
        assert record.page_count == 2
        assert record.chunk_count == 2
        assert record.celery_task_id == "task-1"
        assert record.error_message is None

    def test_empty_text_marks_failed(self):
        factory = sqlite_session_factory()
        with pytest.raises(ValueError):
            _run(process_document(
                _indexer(factory), "doc-2", "room-1", "Empty", "  ",
                session_factory=factory,
            ))

        record = _record(factory, "doc-2")
        assert record.status == DocumentStatus.FAILED
        assert "No chunks" in record.error_message


class TestRemoveDocuments:
    def test_removes_chunks_and_rows(self):
        factory = sqlite_session_factory()
        room = f"room-{uuid.uuid4().hex}"
        indexer = _indexer(factory)
        _run(process_document(indexer, "doc-1", room, "Lease", TEXT, session_factory=factory))

        summary = _run(remove_documents(indexer, room, ["doc-1"], session_factory=factory))

        assert summary == {"dataroom_id": room, "documents_deleted": 1, "chunks_deleted": 2}
        assert _record(factory, "doc-1") is None


class TestCeleryConfig:
    def test_tasks_routed_to_separate_queues(self):
        routes = build_conf(make_settings())["task_routes"]
        assert routes["index_document"] == {"queue": "indexing"}
        assert routes["delete_documents"] == {"queue": "maintenance"}

    def test_indexing_limit_covers_embedding_rounds(self):
        # 5000 chunks / (120 × 5) → 9 rounds × 20s × 3 attempts + 120s
        assert indexing_time_limits(make_settings()) == (660, 720)

    def test_indexing_limit_follows_embedding_settings(self):
        settings = make_settings(
            indexing_expected_max_chunks=600,
            embedding_timeout_seconds=10.0,
            embedding_max_attempts=1,
            indexing_overhead_seconds=30,
        )
        assert indexing_time_limits(settings) == (40, 100)

    def test_app_carries_the_limits(self):
        annotations = celery_app.conf.task_annotations
        soft, hard = indexing_time_limits(app_settings)
        assert annotations["index_document"] == {"soft_time_limit": soft, "time_limit": hard}
