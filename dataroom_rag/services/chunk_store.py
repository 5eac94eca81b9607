# =============================================================================
# Chunk Store — Protocol + SQLAlchemy Implementation
# =============================================================================
#
# Relational mirror of the finalized chunks. The vector index answers
# "what is similar"; the chunk store answers exact questions:
#   - which chunks cover page N of these documents (page queries)
#   - every chunk of a document, in order
#   - the highest page any chunk of these documents covers
#
# Page matching happens in Python on the stored range strings ("5", "3-7",
# "2,4"), so the same matching rules apply here and in the vector filter.
#
# Sessions are synchronous; async callers go through asyncio.to_thread().
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from contextlib import AbstractContextManager
from typing import Protocol

from sqlalchemy import delete, select
from sqlalchemy.orm import Session, sessionmaker

from dataroom_rag.db.engine import get_sync_session, session_scope
from dataroom_rag.db.models import ChunkRecord
from dataroom_rag.services.chunker import Chunk
from dataroom_rag.services.page_ranges import expand_page_ranges, page_ranges_match

logger = logging.getLogger(__name__)


class ChunkStore(Protocol):
    async def save_chunks(self, chunks: Sequence[Chunk]) -> int:
        ...

    async def find_by_pages(
        self,
        dataroom_id: str,
        document_ids: Sequence[str],
        pages: Sequence[int],
        limit: int = 50,
    ) -> list[Chunk]:
        """Chunks whose page ranges cover any requested page."""
        ...

    async def get_by_document(self, document_id: str) -> list[Chunk]:
        ...

    async def delete_by_documents(self, document_ids: Sequence[str]) -> int:
        ...

    async def max_page(self, dataroom_id: str, document_ids: Sequence[str]) -> int:
        ...


class SqlChunkStore:
    """
    ChunkStore on the ``chunks`` table.

    Args:
        session_factory: Optional sessionmaker (tests bind one to SQLite);
            defaults to the process-wide engine.
    """

    def __init__(self, session_factory: sessionmaker | None = None) -> None:
        self._factory = session_factory

    def _session(self) -> AbstractContextManager[Session]:
        if self._factory is not None:
            return session_scope(self._factory)
        return get_sync_session()

    async def _run(self, fn: Callable[[Session], object]):
        def _in_session():
            with self._session() as session:
                return fn(session)

        return await asyncio.to_thread(_in_session)

    async def save_chunks(self, chunks: Sequence[Chunk]) -> int:
        if not chunks:
            return 0

        def _save(session: Session) -> int:
            for chunk in chunks:
                session.merge(_to_record(chunk))
            return len(chunks)

        saved = await self._run(_save)
        logger.info("Stored %d chunks for document_id=%s", saved, chunks[0].document_id)
        return saved

    async def find_by_pages(
        self,
        dataroom_id: str,
        document_ids: Sequence[str],
        pages: Sequence[int],
        limit: int = 50,
    ) -> list[Chunk]:
        if not document_ids or not pages:
            return []

        def _find(session: Session) -> list[Chunk]:
            stmt = (
                select(ChunkRecord)
                .where(ChunkRecord.dataroom_id == dataroom_id)
                .where(ChunkRecord.document_id.in_(list(document_ids)))
                .order_by(ChunkRecord.document_id, ChunkRecord.chunk_index)
            )
            matches: list[Chunk] = []
            for record in session.scalars(stmt):
                if page_ranges_match(record.page_ranges or [], pages):
                    matches.append(_to_chunk(record))
                    if len(matches) >= limit:
                        break
            return matches

        found = await self._run(_find)
        logger.debug(
            "Page lookup pages=%s over %d documents: %d chunks",
            list(pages), len(document_ids), len(found),
        )
        return found

    async def get_by_document(self, document_id: str) -> list[Chunk]:
        def _get(session: Session) -> list[Chunk]:
            stmt = (
                select(ChunkRecord)
                .where(ChunkRecord.document_id == document_id)
                .order_by(ChunkRecord.chunk_index)
            )
            return [_to_chunk(r) for r in session.scalars(stmt)]

        return await self._run(_get)

    async def delete_by_documents(self, document_ids: Sequence[str]) -> int:
        if not document_ids:
            return 0

        def _delete(session: Session) -> int:
            result = session.execute(
                delete(ChunkRecord).where(ChunkRecord.document_id.in_(list(document_ids)))
            )
            return result.rowcount or 0

        deleted = await self._run(_delete)
        logger.info("Deleted %d chunks for %d documents", deleted, len(document_ids))
        return deleted

    async def max_page(self, dataroom_id: str, document_ids: Sequence[str]) -> int:
        if not document_ids:
            return 0

        def _max(session: Session) -> int:
            stmt = (
                select(ChunkRecord.page_ranges)
                .where(ChunkRecord.dataroom_id == dataroom_id)
                .where(ChunkRecord.document_id.in_(list(document_ids)))
            )
            highest = 0
            for ranges in session.scalars(stmt):
                pages = expand_page_ranges(ranges or [])
                if pages:
                    highest = max(highest, pages[-1])
            return highest

        return await self._run(_max)


# ---------------------------------------------------------------------------
# Mapping
# ---------------------------------------------------------------------------


def _to_record(chunk: Chunk) -> ChunkRecord:
    return ChunkRecord(
        id=chunk.id,
        document_id=chunk.document_id,
        dataroom_id=chunk.dataroom_id,
        chunk_index=chunk.chunk_index,
        content=chunk.content,
        content_hash=chunk.content_hash,
        token_count=chunk.token_count,
        page_ranges=list(chunk.page_ranges),
        section_header=chunk.section_header,
        header_hierarchy=list(chunk.header_hierarchy),
        is_small_chunk=chunk.is_small_chunk,
        document_name=chunk.document_name,
        content_type=chunk.content_type,
    )


def _to_chunk(record: ChunkRecord) -> Chunk:
    return Chunk(
        id=record.id,
        content=record.content,
        document_id=record.document_id,
        dataroom_id=record.dataroom_id,
        chunk_index=record.chunk_index,
        content_hash=record.content_hash,
        token_count=record.token_count,
        page_ranges=list(record.page_ranges or []),
        section_header=record.section_header,
        header_hierarchy=list(record.header_hierarchy or []),
        is_small_chunk=record.is_small_chunk,
        document_name=record.document_name,
        content_type=record.content_type,
    )
