# =============================================================================
# Document Access — resolver boundary and request scoping
# =============================================================================
#
# Who may read what is decided elsewhere. The pipeline only sees an opaque
# allow-list: the documents a viewer can access in a dataroom, each flagged
# with whether it has been indexed for search.
#
# resolve_indexed_documents() narrows that list to the request's scope and
# turns every empty outcome into a DocumentAccessError carrying the exact
# message shown to the viewer, checked in this order:
#   1. nothing accessible          → "No documents are available ..."
#   2. nothing indexed             → "No documents are indexed ..."
#   3. requested ids not indexed   → "You don't have permission ... N ..."
#   4. empty intersection          → "No documents match ..."
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from dataroom_rag.config import Settings, get_settings
from dataroom_rag.db.engine import get_sync_session, session_scope
from dataroom_rag.db.models import DocumentRecord, DocumentStatus
from dataroom_rag.errors import (
    NO_DOCUMENTS_MESSAGE,
    NO_INDEXED_DOCUMENTS_MESSAGE,
    NO_MATCHING_SCOPE_MESSAGE,
    DocumentAccessError,
    permission_denied_message,
)
from dataroom_rag.services.cache import TTLCache

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AccessibleDocument:
    id: str
    name: str
    is_indexed: bool
    page_count: int | None = None


class DocumentAccessResolver(Protocol):
    async def accessible_documents(
        self, dataroom_id: str, viewer_id: str,
    ) -> list[AccessibleDocument]:
        ...


# ---------------------------------------------------------------------------
# Implementations
# ---------------------------------------------------------------------------


class DataroomDocumentResolver:
    """
    Every document recorded for the dataroom, regardless of viewer.

    Suits deployments where permissions are enforced before the request
    reaches the pipeline. A document counts as indexed once its status is
    COMPLETED.
    """

    def __init__(self, session_factory: sessionmaker | None = None) -> None:
        self._factory = session_factory

    async def accessible_documents(
        self, dataroom_id: str, viewer_id: str,
    ) -> list[AccessibleDocument]:
        def _load() -> list[AccessibleDocument]:
            scope = session_scope(self._factory) if self._factory else get_sync_session()
            with scope as session:
                stmt = (
                    select(DocumentRecord)
                    .where(DocumentRecord.dataroom_id == dataroom_id)
                    .order_by(DocumentRecord.name)
                )
                return [
                    AccessibleDocument(
                        id=doc.id,
                        name=doc.name,
                        is_indexed=doc.status == DocumentStatus.COMPLETED,
                        page_count=doc.page_count,
                    )
                    for doc in session.scalars(stmt)
                ]

        return await asyncio.to_thread(_load)


class CachedAccessResolver:
    """Memoizes another resolver per (dataroom, viewer) for 15 minutes."""

    def __init__(
        self,
        inner: DocumentAccessResolver,
        settings: Settings | None = None,
        cache: TTLCache[list[AccessibleDocument]] | None = None,
    ) -> None:
        s = settings or get_settings()
        self._inner = inner
        self._cache = cache if cache is not None else TTLCache(
            ttl_seconds=s.access_cache_ttl_seconds,
            max_entries=s.access_cache_max_entries,
            name="access",
        )

    async def accessible_documents(
        self, dataroom_id: str, viewer_id: str,
    ) -> list[AccessibleDocument]:
        key = f"{dataroom_id}:{viewer_id}"
        cached = self._cache.get(key)
        if cached is not None:
            logger.debug("Access cache hit for %s", key)
            return cached
        documents = await self._inner.accessible_documents(dataroom_id, viewer_id)
        self._cache.set(key, documents)
        return documents

    def invalidate(self, dataroom_id: str, viewer_id: str) -> None:
        self._cache.delete(f"{dataroom_id}:{viewer_id}")


# ---------------------------------------------------------------------------
# Scoping
# ---------------------------------------------------------------------------


def resolve_indexed_documents(
    accessible: Sequence[AccessibleDocument],
    requested_ids: Sequence[str] | None = None,
) -> list[AccessibleDocument]:
    """
    The indexed documents this request may search.

    Raises:
        DocumentAccessError: The scope is empty; ``user_message`` says why.
    """
    if not accessible:
        raise DocumentAccessError(NO_DOCUMENTS_MESSAGE)

    indexed = [doc for doc in accessible if doc.is_indexed]
    if not indexed:
        raise DocumentAccessError(NO_INDEXED_DOCUMENTS_MESSAGE)

    if not requested_ids:
        return indexed

    requested = list(dict.fromkeys(requested_ids))
    indexed_ids = {doc.id for doc in indexed}
    unauthorized = [doc_id for doc_id in requested if doc_id not in indexed_ids]
    if unauthorized:
        logger.warning("Viewer requested %d inaccessible documents", len(unauthorized))
        raise DocumentAccessError(
            permission_denied_message(len(unauthorized)),
            context={"unauthorized": unauthorized},
        )

    wanted = set(requested)
    scoped = [doc for doc in indexed if doc.id in wanted]
    if not scoped:
        raise DocumentAccessError(NO_MATCHING_SCOPE_MESSAGE)
    return scoped
