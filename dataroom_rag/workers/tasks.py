# =============================================================================
# Celery Task Definitions — Document Indexing and Removal
# =============================================================================
#
# INDEXING (index_document):
#   1. Update document status → PROCESSING (row created if missing)
#   2. DocumentIndexer.index(): delete old chunks → chunk → embed →
#      upsert vectors → persist chunks
#   3. Update document status → COMPLETED with page and chunk counts
#      (or FAILED with the error message)
#
# REMOVAL (delete_documents):
#   Vectors, chunks and status rows of the given documents.
#
# Celery workers are synchronous: each task drives the async services with
# asyncio.run() and builds (then closes) its own services, since SDK
# clients must not outlive the event loop they were created on.
#
# RETRY STRATEGY:
# max_retries=3, 60s default delay. Only retryable errors (rate limits,
# timeouts, connection drops) are retried; an empty document or a
# non-retryable provider error stays FAILED.
# =============================================================================

from __future__ import annotations

import asyncio
import logging

from sqlalchemy import delete
from sqlalchemy.orm import sessionmaker

from dataroom_rag.container import build_services
from dataroom_rag.db.engine import get_sync_session, session_scope
from dataroom_rag.db.models import DocumentRecord, DocumentStatus
from dataroom_rag.errors import RAGError
from dataroom_rag.services.ingestion import DocumentIndexer
from dataroom_rag.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def _update_document_status(
    document_id: str,
    status: DocumentStatus,
    *,
    dataroom_id: str | None = None,
    name: str | None = None,
    error_message: str | None = None,
    page_count: int | None = None,
    chunk_count: int | None = None,
    celery_task_id: str | None = None,
    session_factory: sessionmaker | None = None,
) -> None:
    """
    Update (or create) the document's status row in its own transaction,
    so the status is committed even when the indexing itself fails.
    """
    scope = session_scope(session_factory) if session_factory else get_sync_session()
    with scope as session:
        record = session.get(DocumentRecord, document_id)
        if record is None:
            record = DocumentRecord(
                id=document_id,
                dataroom_id=dataroom_id or "",
                name=name or "",
            )
            session.add(record)

        record.status = status
        record.error_message = error_message
        if page_count is not None:
            record.page_count = page_count
        if chunk_count is not None:
            record.chunk_count = chunk_count
        if celery_task_id is not None:
            record.celery_task_id = celery_task_id


def _delete_document_rows(
    document_ids: list[str],
    session_factory: sessionmaker | None = None,
) -> int:
    scope = session_scope(session_factory) if session_factory else get_sync_session()
    with scope as session:
        result = session.execute(delete(DocumentRecord).where(DocumentRecord.id.in_(document_ids)))
        return result.rowcount or 0


async def process_document(
    indexer: DocumentIndexer,
    document_id: str,
    dataroom_id: str,
    document_name: str,
    text: str,
    content_type: str = "text/markdown",
    *,
    task_id: str | None = None,
    session_factory: sessionmaker | None = None,
) -> dict:
    """
    Index one document and track its status.

    Raises:
        ValueError: The text produced no chunks (status FAILED).
        RAGError: Embedding or storage failed (status FAILED).
    """
    _update_document_status(
        document_id,
        DocumentStatus.PROCESSING,
        dataroom_id=dataroom_id,
        name=document_name,
        celery_task_id=task_id,
        session_factory=session_factory,
    )

    try:
        result = await indexer.index(
            text,
            document_id=document_id,
            document_name=document_name,
            dataroom_id=dataroom_id,
            content_type=content_type,
        )
    except (RAGError, ValueError) as exc:
        logger.exception("[%s] Indexing failed for document %s", task_id, document_id)
        _update_document_status(
            document_id,
            DocumentStatus.FAILED,
            error_message=str(exc)[:1000],
            session_factory=session_factory,
        )
        raise

    _update_document_status(
        document_id,
        DocumentStatus.COMPLETED,
        page_count=result.page_count,
        chunk_count=result.chunk_count,
        session_factory=session_factory,
    )
    summary = {
        "document_id": document_id,
        "status": DocumentStatus.COMPLETED.value,
        "chunk_count": result.chunk_count,
        "vector_count": result.vector_count,
        "page_count": result.page_count,
        "cached_embeddings": result.embeddings.cached_count,
        "new_embeddings": result.embeddings.new_count,
        "elapsed_ms": result.elapsed_ms,
    }
    logger.info("[%s] Indexing complete: %s", task_id, summary)
    return summary


async def remove_documents(
    indexer: DocumentIndexer,
    dataroom_id: str,
    document_ids: list[str],
    *,
    session_factory: sessionmaker | None = None,
) -> dict:
    chunks_deleted = await indexer.remove(dataroom_id, document_ids)
    rows_deleted = _delete_document_rows(document_ids, session_factory)
    logger.info(
        "Removed %d documents from %s (%d chunks)", rows_deleted, dataroom_id, chunks_deleted,
    )
    return {
        "dataroom_id": dataroom_id,
        "documents_deleted": rows_deleted,
        "chunks_deleted": chunks_deleted,
    }


async def _index_with_services(**kwargs) -> dict:
    services = build_services()
    try:
        return await process_document(services.indexer, **kwargs)
    finally:
        await services.aclose()


async def _remove_with_services(dataroom_id: str, document_ids: list[str]) -> dict:
    services = build_services()
    try:
        return await remove_documents(services.indexer, dataroom_id, document_ids)
    finally:
        await services.aclose()


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------


@celery_app.task(
    bind=True,
    name="index_document",
    max_retries=3,
    default_retry_delay=60,
)
def index_document(
    self,
    document_id: str,
    dataroom_id: str,
    document_name: str,
    text: str,
    content_type: str = "text/markdown",
) -> dict:
    """
    Index converted document text (PAGE_BREAK-separated pages).

    Args:
        self: Celery task instance (bound task, provides self.request.id).
        document_id: Stable document id; chunk ids derive from it.
        dataroom_id: Selects the vector collection.
        document_name: Shown in source references.
        text: Markdown/plain text produced by the host's converter.
        content_type: MIME type of the original file.
    """
    task_id = self.request.id
    logger.info(
        "Starting indexing: document_id=%s, dataroom=%s, task_id=%s, chars=%d",
        document_id, dataroom_id, task_id, len(text),
    )
    try:
        return asyncio.run(_index_with_services(
            document_id=document_id,
            dataroom_id=dataroom_id,
            document_name=document_name,
            text=text,
            content_type=content_type,
            task_id=task_id,
        ))
    except RAGError as exc:
        if not exc.retryable:
            raise
        raise self.retry(exc=exc)


@celery_app.task(
    bind=True,
    name="delete_documents",
    max_retries=3,
    default_retry_delay=60,
)
def delete_documents(self, dataroom_id: str, document_ids: list[str]) -> dict:
    """Remove documents from the dataroom's index and chunk store."""
    logger.info(
        "Deleting %d documents from %s (task_id=%s)",
        len(document_ids), dataroom_id, self.request.id,
    )
    try:
        return asyncio.run(_remove_with_services(dataroom_id, document_ids))
    except RAGError as exc:
        if not exc.retryable:
            raise
        raise self.retry(exc=exc)
