# =============================================================================
# Unit Tests — Vector Index (ChromaDB backend)
# =============================================================================
#
# Uses ChromaDB's in-process mode (no external services needed). Each test
# gets its own dataroom id, so its own collection.
# =============================================================================

from __future__ import annotations

import asyncio
import uuid

import chromadb
from fakes import make_settings

from dataroom_rag.services.vectorstore import ChromaVectorIndex, VectorRecord, build_where


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


def _index() -> tuple[ChromaVectorIndex, str]:
    return ChromaVectorIndex(make_settings(), client=chromadb.Client()), f"room-{uuid.uuid4().hex}"


def _record(
    chunk_id: str,
    vector: list[float],
    document_id: str = "doc-1",
    page_ranges: list[str] | None = None,
) -> VectorRecord:
    return VectorRecord(
        id=chunk_id,
        vector=vector,
        content=f"content of {chunk_id}",
        metadata={
            "document_id": document_id,
            "document_name": "Lease",
            "page_ranges": page_ranges or ["1"],
            "header_hierarchy": ["Lease", "Fees"],
            "section_header": "Fees",
        },
    )


class TestBuildWhere:
    def test_nothing(self):
        assert build_where(None, None) is None
        assert build_where([], []) is None

    def test_single_document(self):
        assert build_where(["doc-1"], None) == {"document_id": "doc-1"}

    def test_many_documents_deduplicated(self):
        assert build_where(["a", "b", "a"], None) == {"document_id": {"$in": ["a", "b"]}}

    def test_single_page(self):
        assert build_where(None, [5]) == {"page_5": True}

    def test_documents_and_pages(self):
        assert build_where(["a", "b"], [6, 5]) == {"$and": [
            {"document_id": {"$in": ["a", "b"]}},
            {"$or": [{"page_5": True}, {"page_6": True}]},
        ]}


class TestChromaVectorIndex:
    def test_collection_name_is_sanitised_and_bounded(self):
        index = ChromaVectorIndex(make_settings(), client=chromadb.Client())
        assert index.collection_name("dr/123 x") == "dataroom_dr_123_x"
        long_name = index.collection_name("x" * 200)
        assert len(long_name) <= 63
        assert long_name != index.collection_name("x" * 199)

    def test_search_orders_by_similarity(self):
        index, room = _index()
        _run(index.upsert(room, [
            _record("c1", [1.0, 0.0, 0.0]),
            _record("c2", [0.0, 1.0, 0.0]),
            _record("c3", [0.7, 0.7, 0.0]),
        ]))
        hits = _run(index.search(room, [1.0, 0.0, 0.0], top_k=3))
        assert [h.id for h in hits] == ["c1", "c3", "c2"]
        assert hits[0].similarity > 0.99
        assert all(0.0 <= h.similarity <= 1.0 for h in hits)

    def test_threshold_drops_weak_hits(self):
        index, room = _index()
        _run(index.upsert(room, [
            _record("c1", [1.0, 0.0, 0.0]),
            _record("c2", [0.0, 1.0, 0.0]),
        ]))
        hits = _run(index.search(room, [1.0, 0.0, 0.0], top_k=2, score_threshold=0.5))
        assert [h.id for h in hits] == ["c1"]

    def test_document_filter(self):
        index, room = _index()
        _run(index.upsert(room, [
            _record("c1", [1.0, 0.0, 0.0], document_id="doc-1"),
            _record("c2", [0.9, 0.1, 0.0], document_id="doc-2"),
        ]))
        hits = _run(index.search(room, [1.0, 0.0, 0.0], top_k=5, document_ids=["doc-2"]))
        assert [h.id for h in hits] == ["c2"]

    def test_page_filter_and_metadata_round_trip(self):
        index, room = _index()
        _run(index.upsert(room, [
            _record("c1", [1.0, 0.0, 0.0], page_ranges=["1-2"]),
            _record("c2", [0.9, 0.1, 0.0], page_ranges=["3", "5"]),
        ]))
        hits = _run(index.search(room, [1.0, 0.0, 0.0], top_k=5, pages=[5]))
        assert [h.id for h in hits] == ["c2"]
        metadata = hits[0].metadata
        assert metadata["page_ranges"] == ["3", "5"]
        assert metadata["header_hierarchy"] == ["Lease", "Fees"]
        assert not any(key.startswith("page_") and key != "page_ranges" for key in metadata)

    def test_empty_collection_returns_nothing(self):
        index, room = _index()
        assert _run(index.search(room, [1.0, 0.0, 0.0], top_k=3)) == []

    def test_upsert_is_idempotent(self):
        index, room = _index()
        record = _record("c1", [1.0, 0.0, 0.0])
        _run(index.upsert(room, [record]))
        _run(index.upsert(room, [record]))
        assert len(_run(index.scroll(room))) == 1

    def test_scroll_filters_without_vector(self):
        index, room = _index()
        _run(index.upsert(room, [
            _record("c1", [1.0, 0.0, 0.0], document_id="doc-1"),
            _record("c2", [0.0, 1.0, 0.0], document_id="doc-2"),
        ]))
        hits = _run(index.scroll(room, document_ids=["doc-1"]))
        assert [h.id for h in hits] == ["c1"]
        assert hits[0].similarity == 1.0

    def test_delete_by_filter(self):
        index, room = _index()
        _run(index.upsert(room, [
            _record("c1", [1.0, 0.0, 0.0], document_id="doc-1"),
            _record("c2", [0.0, 1.0, 0.0], document_id="doc-1"),
            _record("c3", [0.0, 0.0, 1.0], document_id="doc-2"),
        ]))
        assert _run(index.delete_by_filter(room, ["doc-1"])) == 2
        assert [h.id for h in _run(index.scroll(room))] == ["c3"]
        assert _run(index.delete_by_filter(room, [])) == 0

    def test_datarooms_are_isolated(self):
        index, room_a = _index()
        room_b = f"room-{uuid.uuid4().hex}"
        _run(index.upsert(room_a, [_record("c1", [1.0, 0.0, 0.0])]))
        assert _run(index.search(room_b, [1.0, 0.0, 0.0], top_k=3)) == []

    def test_delete_collection(self):
        index, room = _index()
        _run(index.upsert(room, [_record("c1", [1.0, 0.0, 0.0])]))
        _run(index.delete_collection(room))
        assert _run(index.scroll(room)) == []
