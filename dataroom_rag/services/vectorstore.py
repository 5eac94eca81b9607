# =============================================================================
# Vector Index — Protocol + ChromaDB Implementation
# =============================================================================
#
# One collection per dataroom. Each record holds the chunk text, its
# embedding, and a flat metadata payload (document id, page ranges, section
# header, ...).
#
# ChromaDB metadata values must be scalars, so page membership is stored
# twice: ``page_ranges`` as the comma-joined range strings ("1-3,5") for
# round-tripping, and one boolean ``page_N`` key per covered page so page
# filters are plain equality clauses:
#
#   {"$and": [{"document_id": {"$in": [...]}},
#             {"$or": [{"page_5": True}, {"page_6": True}]}]}
#
# The ChromaDB client is synchronous; every call runs in asyncio.to_thread()
# so it never blocks the event loop.
#
# ARCHITECTURE:
#   VectorIndex (Protocol)
#   └── ChromaVectorIndex — in-process, persistent, or client/server
#       ├── upsert()            — idempotent on record id
#       ├── search()            — cosine similarity, filtered
#       ├── scroll()            — filtered listing, no vector
#       └── delete_by_filter()  — by document ids
# =============================================================================

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

import chromadb

from dataroom_rag.config import Settings, get_settings
from dataroom_rag.errors import ProviderError
from dataroom_rag.services.page_ranges import expand_page_ranges

logger = logging.getLogger(__name__)

_COLLECTION_NAME_RE = re.compile(r"[^a-zA-Z0-9_-]")
_PAGE_KEY_RE = re.compile(r"^page_\d+$")
_MAX_COLLECTION_NAME = 63


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class VectorRecord:
    id: str
    vector: list[float]
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class VectorHit:
    """
    A single record returned by search() or scroll().

    ``similarity`` is cosine similarity clamped to [0, 1]; scroll() hits
    carry 1.0.
    """

    id: str
    content: str
    similarity: float
    metadata: dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class VectorIndex(Protocol):
    async def upsert(self, dataroom_id: str, records: Sequence[VectorRecord]) -> None:
        ...

    async def search(
        self,
        dataroom_id: str,
        vector: list[float],
        top_k: int,
        document_ids: Sequence[str] | None = None,
        pages: Sequence[int] | None = None,
        score_threshold: float = 0.0,
    ) -> list[VectorHit]:
        """Most similar records first, at most ``top_k``, none below threshold."""
        ...

    async def scroll(
        self,
        dataroom_id: str,
        document_ids: Sequence[str] | None = None,
        pages: Sequence[int] | None = None,
        limit: int = 100,
    ) -> list[VectorHit]:
        ...

    async def delete_by_filter(self, dataroom_id: str, document_ids: Sequence[str]) -> int:
        """Delete every record of the given documents; returns how many."""
        ...


# ---------------------------------------------------------------------------
# ChromaDB
# ---------------------------------------------------------------------------


class ChromaVectorIndex:
    """
    ChromaDB-backed vector index.

    Client selection:
    - ``chroma_url`` set → HttpClient (Docker / server deployment)
    - ``chroma_persist_dir`` set → PersistentClient
    - neither → in-process client (local development, tests)

    Collections use cosine distance; similarity is ``1 - distance``.
    """

    def __init__(self, settings: Settings | None = None, client: Any | None = None) -> None:
        s = settings or get_settings()
        if client is not None:
            self._client = client
        elif s.chroma_url:
            self._client = chromadb.HttpClient(host=s.chroma_url)
        elif s.chroma_persist_dir:
            self._client = chromadb.PersistentClient(path=s.chroma_persist_dir)
        else:
            self._client = chromadb.Client()
        self._prefix = s.chroma_collection_prefix

    def collection_name(self, dataroom_id: str) -> str:
        name = self._prefix + _COLLECTION_NAME_RE.sub("_", dataroom_id)
        if len(name) > _MAX_COLLECTION_NAME:
            digest = hashlib.sha256(dataroom_id.encode("utf-8")).hexdigest()[:16]
            name = f"{name[:_MAX_COLLECTION_NAME - 17]}_{digest}"
        return name

    def _collection(self, dataroom_id: str):
        return self._client.get_or_create_collection(
            name=self.collection_name(dataroom_id),
            metadata={"hnsw:space": "cosine"},
        )

    async def upsert(self, dataroom_id: str, records: Sequence[VectorRecord]) -> None:
        if not records:
            return

        def _sync_upsert() -> None:
            self._collection(dataroom_id).upsert(
                ids=[r.id for r in records],
                embeddings=[r.vector for r in records],
                documents=[r.content for r in records],
                metadatas=[_to_chroma_metadata(r.metadata) for r in records],
            )

        await _run(_sync_upsert, "upsert")
        logger.info(
            "Upserted %d vectors into %s", len(records), self.collection_name(dataroom_id),
        )

    async def search(
        self,
        dataroom_id: str,
        vector: list[float],
        top_k: int,
        document_ids: Sequence[str] | None = None,
        pages: Sequence[int] | None = None,
        score_threshold: float = 0.0,
    ) -> list[VectorHit]:
        where = build_where(document_ids, pages)

        def _sync_search() -> list[VectorHit]:
            collection = self._collection(dataroom_id)
            if collection.count() == 0:
                return []
            results = collection.query(
                query_embeddings=[vector],
                n_results=top_k,
                where=where,
                include=["documents", "metadatas", "distances"],
            )

            hits: list[VectorHit] = []
            if results and results["ids"] and results["ids"][0]:
                for i, chroma_id in enumerate(results["ids"][0]):
                    distance = results["distances"][0][i] if results["distances"] else 1.0
                    # Cosine distance is in [0, 2]; clamp similarity into [0, 1]
                    similarity = round(min(1.0, max(0.0, 1.0 - distance)), 4)
                    if similarity < score_threshold:
                        continue
                    hits.append(VectorHit(
                        id=chroma_id,
                        content=results["documents"][0][i] if results["documents"] else "",
                        similarity=similarity,
                        metadata=_from_chroma_metadata(
                            results["metadatas"][0][i] if results["metadatas"] else {}
                        ),
                    ))
            hits.sort(key=lambda h: h.similarity, reverse=True)
            return hits

        hits = await _run(_sync_search, "search")
        logger.debug(
            "Vector search returned %d hits (top_k=%d, dataroom=%s)",
            len(hits), top_k, dataroom_id,
        )
        return hits

    async def scroll(
        self,
        dataroom_id: str,
        document_ids: Sequence[str] | None = None,
        pages: Sequence[int] | None = None,
        limit: int = 100,
    ) -> list[VectorHit]:
        where = build_where(document_ids, pages)

        def _sync_scroll() -> list[VectorHit]:
            results = self._collection(dataroom_id).get(
                where=where, limit=limit, include=["documents", "metadatas"],
            )
            return [
                VectorHit(
                    id=chroma_id,
                    content=results["documents"][i] if results["documents"] else "",
                    similarity=1.0,
                    metadata=_from_chroma_metadata(
                        results["metadatas"][i] if results["metadatas"] else {}
                    ),
                )
                for i, chroma_id in enumerate(results["ids"])
            ]

        return await _run(_sync_scroll, "scroll")

    async def delete_by_filter(self, dataroom_id: str, document_ids: Sequence[str]) -> int:
        if not document_ids:
            return 0
        where = build_where(document_ids, None)

        def _sync_delete() -> int:
            collection = self._collection(dataroom_id)
            ids = collection.get(where=where, include=[])["ids"]
            if ids:
                collection.delete(ids=ids)
            return len(ids)

        deleted = await _run(_sync_delete, "delete")
        logger.info(
            "Deleted %d vectors for %d documents from %s",
            deleted, len(document_ids), self.collection_name(dataroom_id),
        )
        return deleted

    async def delete_collection(self, dataroom_id: str) -> None:
        name = self.collection_name(dataroom_id)

        def _sync_drop() -> None:
            try:
                self._client.delete_collection(name=name)
            except (ValueError, chromadb.errors.NotFoundError):
                logger.debug("Collection %s does not exist", name)

        await _run(_sync_drop, "delete_collection")


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


async def _run(fn, operation: str):
    try:
        return await asyncio.to_thread(fn)
    except ProviderError:
        raise
    except Exception as exc:
        raise ProviderError(
            f"Vector index {operation} failed: {exc}",
            context={"operation": operation},
        ) from exc


def build_where(
    document_ids: Sequence[str] | None,
    pages: Sequence[int] | None,
) -> dict[str, Any] | None:
    """ChromaDB where clause restricting documents and/or covered pages."""
    clauses: list[dict[str, Any]] = []
    if document_ids:
        ids = list(dict.fromkeys(document_ids))
        clauses.append({"document_id": ids[0]} if len(ids) == 1 else {"document_id": {"$in": ids}})
    if pages:
        page_clauses = [{f"page_{p}": True} for p in sorted(set(pages))]
        clauses.append(page_clauses[0] if len(page_clauses) == 1 else {"$or": page_clauses})
    if not clauses:
        return None
    return clauses[0] if len(clauses) == 1 else {"$and": clauses}


def _to_chroma_metadata(metadata: dict[str, Any]) -> dict[str, Any]:
    flat = dict(metadata)
    page_ranges = flat.pop("page_ranges", None) or []
    flat["page_ranges"] = ",".join(str(r) for r in page_ranges)
    for page in expand_page_ranges(page_ranges):
        flat[f"page_{page}"] = True
    if "header_hierarchy" in flat:
        flat["header_hierarchy"] = json.dumps(flat["header_hierarchy"] or [])
    return _sanitise_chroma_metadata(flat)


def _from_chroma_metadata(metadata: dict[str, Any] | None) -> dict[str, Any]:
    restored = {k: v for k, v in (metadata or {}).items() if not _PAGE_KEY_RE.match(k)}
    ranges = restored.get("page_ranges")
    if isinstance(ranges, str):
        restored["page_ranges"] = [r for r in ranges.split(",") if r]
    hierarchy = restored.get("header_hierarchy")
    if isinstance(hierarchy, str):
        try:
            restored["header_hierarchy"] = json.loads(hierarchy) if hierarchy else []
        except json.JSONDecodeError:
            restored["header_hierarchy"] = [hierarchy]
    return restored


def _sanitise_chroma_metadata(metadata: dict) -> dict:
    """
    Sanitise metadata for ChromaDB compatibility.

    ChromaDB requires all metadata values to be str, int, float, or bool:
    - list → comma-separated string
    - None → empty string
    """
    sanitised = {}
    for key, value in metadata.items():
        if value is None:
            sanitised[key] = ""
        elif isinstance(value, list):
            sanitised[key] = ",".join(str(v) for v in value)
        elif isinstance(value, (str, int, float, bool)):
            sanitised[key] = value
        else:
            sanitised[key] = str(value)
    return sanitised
