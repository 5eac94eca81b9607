# =============================================================================
# Unit Tests — Chunk Store, Access Scoping, and Session Sink
# =============================================================================
#
# The SQLAlchemy implementations run against in-memory SQLite.
# =============================================================================

from __future__ import annotations

import asyncio

import pytest
from fakes import StaticAccessResolver, make_chunk, make_settings, sqlite_session_factory
from sqlalchemy import select

from dataroom_rag.db.engine import session_scope
from dataroom_rag.db.models import ChatMessageRecord, DocumentRecord, DocumentStatus
from dataroom_rag.errors import (
    NO_DOCUMENTS_MESSAGE,
    NO_INDEXED_DOCUMENTS_MESSAGE,
    DocumentAccessError,
)
from dataroom_rag.services.access import (
    AccessibleDocument,
    CachedAccessResolver,
    DataroomDocumentResolver,
    resolve_indexed_documents,
)
from dataroom_rag.services.chat_store import ChatMessage, SqlSessionSink
from dataroom_rag.services.chunk_store import SqlChunkStore


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


def _store_with_chunks() -> SqlChunkStore:
    store = SqlChunkStore(sqlite_session_factory())
    _run(store.save_chunks([
        make_chunk(0, "Cover page and parties.", page_ranges=["1"]),
        make_chunk(1, "Rent schedule.", page_ranges=["2-4"]),
        make_chunk(2, "Termination clause.", page_ranges=["7"]),
        make_chunk(0, "Appendix.", document_id="doc-2", page_ranges=["1", "12"]),
        make_chunk(0, "Other dataroom.", document_id="doc-3", dataroom_id="room-2", page_ranges=["40"]),
    ]))
    return store


# ---------------------------------------------------------------------------
# Test: SqlChunkStore
# ---------------------------------------------------------------------------


class TestSqlChunkStore:
    def test_find_by_pages_matches_ranges(self):
        store = _store_with_chunks()
        found = _run(store.find_by_pages("room-1", ["doc-1", "doc-2"], [3]))
        assert [c.id for c in found] == ["doc-1_chunk_1"]
        assert found[0].page_ranges == ["2-4"]

    def test_find_by_pages_in_document_order(self):
        store = _store_with_chunks()
        found = _run(store.find_by_pages("room-1", ["doc-2", "doc-1"], [1]))
        assert [c.id for c in found] == ["doc-1_chunk_0", "doc-2_chunk_0"]

    def test_find_by_pages_respects_scope_and_limit(self):
        store = _store_with_chunks()
        assert _run(store.find_by_pages("room-1", ["doc-1"], [12])) == []
        assert len(_run(store.find_by_pages("room-1", ["doc-1", "doc-2"], [1], limit=1))) == 1
        assert _run(store.find_by_pages("room-1", [], [1])) == []

    def test_get_by_document_is_ordered(self):
        store = _store_with_chunks()
        chunks = _run(store.get_by_document("doc-1"))
        assert [c.chunk_index for c in chunks] == [0, 1, 2]
        assert chunks[1].content == "Rent schedule."

    def test_save_is_idempotent(self):
        store = _store_with_chunks()
        _run(store.save_chunks([make_chunk(1, "Rent schedule, revised.", page_ranges=["2-4"])]))
        chunks = _run(store.get_by_document("doc-1"))
        assert len(chunks) == 3
        assert chunks[1].content == "Rent schedule, revised."

    def test_max_page(self):
        store = _store_with_chunks()
        assert _run(store.max_page("room-1", ["doc-1"])) == 7
        assert _run(store.max_page("room-1", ["doc-1", "doc-2"])) == 12
        assert _run(store.max_page("room-1", ["missing"])) == 0

    def test_delete_by_documents(self):
        store = _store_with_chunks()
        assert _run(store.delete_by_documents(["doc-1"])) == 3
        assert _run(store.get_by_document("doc-1")) == []
        assert len(_run(store.get_by_document("doc-2"))) == 1


# ---------------------------------------------------------------------------
# Test: Access scoping
# ---------------------------------------------------------------------------


DOCS = [
    AccessibleDocument("doc-1", "Lease", is_indexed=True, page_count=10),
    AccessibleDocument("doc-2", "Memo", is_indexed=True, page_count=3),
    AccessibleDocument("doc-3", "Draft", is_indexed=False),
]


class TestResolveIndexedDocuments:
    def test_no_documents(self):
        with pytest.raises(DocumentAccessError) as exc_info:
            resolve_indexed_documents([])
        assert exc_info.value.user_message == NO_DOCUMENTS_MESSAGE

    def test_nothing_indexed(self):
        with pytest.raises(DocumentAccessError) as exc_info:
            resolve_indexed_documents([DOCS[2]])
        assert exc_info.value.user_message == NO_INDEXED_DOCUMENTS_MESSAGE

    def test_no_request_means_every_indexed_document(self):
        assert [d.id for d in resolve_indexed_documents(DOCS)] == ["doc-1", "doc-2"]

    def test_requested_subset(self):
        assert [d.id for d in resolve_indexed_documents(DOCS, ["doc-2"])] == ["doc-2"]

    def test_unindexed_or_unknown_ids_are_denied(self):
        with pytest.raises(DocumentAccessError) as exc_info:
            resolve_indexed_documents(DOCS, ["doc-1", "doc-3", "doc-9", "doc-9"])
        assert exc_info.value.user_message == (
            "You don't have permission to access 2 requested document(s)."
        )
        assert exc_info.value.context["unauthorized"] == ["doc-3", "doc-9"]


class TestCachedAccessResolver:
    def test_second_lookup_is_cached(self):
        inner = StaticAccessResolver(DOCS)
        resolver = CachedAccessResolver(inner, make_settings())
        _run(resolver.accessible_documents("room-1", "viewer-1"))
        _run(resolver.accessible_documents("room-1", "viewer-1"))
        assert inner.calls == 1

    def test_viewers_cached_separately_and_invalidation(self):
        inner = StaticAccessResolver(DOCS)
        resolver = CachedAccessResolver(inner, make_settings())
        _run(resolver.accessible_documents("room-1", "viewer-1"))
        _run(resolver.accessible_documents("room-1", "viewer-2"))
        resolver.invalidate("room-1", "viewer-1")
        _run(resolver.accessible_documents("room-1", "viewer-1"))
        assert inner.calls == 3


class TestDataroomDocumentResolver:
    def test_completed_documents_are_indexed(self):
        factory = sqlite_session_factory()
        with session_scope(factory) as session:
            session.add_all([
                DocumentRecord(id="doc-1", dataroom_id="room-1", name="Lease",
                               status=DocumentStatus.COMPLETED, page_count=10),
                DocumentRecord(id="doc-2", dataroom_id="room-1", name="Board minutes",
                               status=DocumentStatus.PROCESSING),
                DocumentRecord(id="doc-3", dataroom_id="room-2", name="Elsewhere",
                               status=DocumentStatus.COMPLETED),
            ])

        documents = _run(DataroomDocumentResolver(factory).accessible_documents("room-1", "viewer-1"))
        assert [(d.id, d.is_indexed) for d in documents] == [("doc-2", False), ("doc-1", True)]
        assert documents[1].page_count == 10


# ---------------------------------------------------------------------------
# Test: Session sink
# ---------------------------------------------------------------------------


class TestSqlSessionSink:
    def test_push_stores_row(self):
        factory = sqlite_session_factory()
        sink = SqlSessionSink(factory)
        _run(sink.push(ChatMessage(
            session_id="s-1", dataroom_id="room-1", viewer_id="viewer-1",
            role="assistant", content="The fee is 2%.", metadata={"outcome": "answered"},
        )))

        with session_scope(factory) as session:
            rows = session.scalars(select(ChatMessageRecord)).all()
            assert len(rows) == 1
            assert rows[0].role == "assistant"
            assert rows[0].metadata_ == {"outcome": "answered"}
