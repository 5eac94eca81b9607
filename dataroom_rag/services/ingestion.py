# =============================================================================
# Document Indexer — chunk → embed → store for one document
# =============================================================================
#
# INDEXING PIPELINE:
#   1. Delete the document's previous vectors and chunks (re-indexing is
#      delete + recreate; chunk ids are deterministic)
#   2. Chunk the converted text
#   3. Embed the chunks (cached, batched)
#   4. Upsert vectors into the dataroom's collection
#   5. Persist the chunks for exact page lookups
#
# If any embedding batch failed, nothing is stored and ProviderError is
# raised so the caller (the Celery task) can retry; successful vectors are
# already cached, so the retry only pays for the failed batches.
# =============================================================================

from __future__ import annotations

import logging
import time
from dataclasses import dataclass

from dataroom_rag.errors import ProviderError
from dataroom_rag.services.chunk_store import ChunkStore
from dataroom_rag.services.chunker import PAGE_BREAK, DocumentChunker
from dataroom_rag.services.embedder import EmbeddingGenerator, EmbeddingResult
from dataroom_rag.services.vectorstore import VectorIndex, VectorRecord

logger = logging.getLogger(__name__)


@dataclass
class IndexingResult:
    document_id: str
    chunk_count: int
    vector_count: int
    page_count: int
    embeddings: EmbeddingResult
    elapsed_ms: int


class DocumentIndexer:
    def __init__(
        self,
        chunker: DocumentChunker,
        embedder: EmbeddingGenerator,
        vector_index: VectorIndex,
        chunk_store: ChunkStore,
    ) -> None:
        self._chunker = chunker
        self._embedder = embedder
        self._vector_index = vector_index
        self._chunk_store = chunk_store

    async def index(
        self,
        text: str,
        document_id: str,
        document_name: str,
        dataroom_id: str,
        content_type: str = "text/markdown",
    ) -> IndexingResult:
        """
        (Re-)index one document.

        Raises:
            ValueError: The text produced no chunks.
            ProviderError: Embedding failed for some chunks.
        """
        started = time.perf_counter()
        page_count = len(text.split(PAGE_BREAK))

        await self.remove(dataroom_id, [document_id])

        chunks = self._chunker.chunk(
            text,
            document_id=document_id,
            document_name=document_name,
            dataroom_id=dataroom_id,
            content_type=content_type,
        )
        if not chunks:
            raise ValueError(f"No chunks produced from document {document_id}: text is empty")
        logger.info("[%s] Created %d chunks over %d pages", document_id, len(chunks), page_count)

        embeddings = await self._embedder.embed_chunks(chunks)
        if embeddings.failed_count:
            raise ProviderError(
                f"Embedding failed for {embeddings.failed_count} chunks of {document_id}",
                context={"document_id": document_id, "failed": embeddings.failed_count},
            )

        by_id = {chunk.id: chunk for chunk in chunks}
        records = [
            VectorRecord(
                id=emb.chunk_id,
                vector=emb.vector,
                content=by_id[emb.chunk_id].content,
                metadata=by_id[emb.chunk_id].to_metadata(),
            )
            for emb in embeddings.embeddings
        ]
        await self._vector_index.upsert(dataroom_id, records)
        await self._chunk_store.save_chunks(chunks)

        elapsed_ms = int((time.perf_counter() - started) * 1000)
        logger.info(
            "[%s] Indexed: %d chunks, %d vectors (%d new, %d cached, %d skipped) in %dms",
            document_id, len(chunks), len(records), embeddings.new_count,
            embeddings.cached_count, len(embeddings.skipped_ids), elapsed_ms,
        )
        return IndexingResult(
            document_id=document_id,
            chunk_count=len(chunks),
            vector_count=len(records),
            page_count=page_count,
            embeddings=embeddings,
            elapsed_ms=elapsed_ms,
        )

    async def remove(self, dataroom_id: str, document_ids: list[str]) -> int:
        """Delete vectors and chunks of the given documents."""
        await self._vector_index.delete_by_filter(dataroom_id, document_ids)
        return await self._chunk_store.delete_by_documents(document_ids)
