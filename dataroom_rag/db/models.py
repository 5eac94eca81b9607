# =============================================================================
# Database Models — SQLAlchemy ORM
# =============================================================================
#
# SCHEMA OVERVIEW:
#
# ┌────────────────┐      ┌───────────────────────────┐
# │  documents     │      │  chunks                   │
# ├────────────────┤      ├───────────────────────────┤
# │ id (PK)        │─1:N─▶│ id (PK) "{doc}_chunk_{i}" │
# │ dataroom_id    │      │ document_id (indexed)     │
# │ name           │      │ dataroom_id (indexed)     │
# │ page_count     │      │ chunk_index               │
# │ status         │      │ content / content_hash    │
# │ chunk_count    │      │ page_ranges (json)        │
# │ error_message  │      │ section_header            │
# └────────────────┘      │ header_hierarchy (json)   │
#                         └───────────────────────────┘
#
# ┌──────────────────────────┐
# │  chat_messages           │  push-only log of queries and answers
# └──────────────────────────┘
#
# Vectors live in the vector index, not here. chunks.document_id is a plain
# indexed column (no foreign key) so chunks can be written for documents
# whose status row is owned by another service.
#
# JSON columns use JSONB on PostgreSQL and generic JSON elsewhere (SQLite
# in tests).
# =============================================================================

import enum
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


class DocumentStatus(str, enum.Enum):
    """
    Ingestion state of a document.

    State machine:
        PENDING → PROCESSING → COMPLETED
                             → FAILED
    """

    PENDING = "pending"          # Queued, waiting for a worker
    PROCESSING = "processing"    # Worker is chunking/embedding
    COMPLETED = "completed"      # Chunks and vectors stored
    FAILED = "failed"            # See error_message


class DocumentRecord(Base):
    """A document known to the pipeline and its indexing status."""

    __tablename__ = "documents"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    dataroom_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    content_type: Mapped[str] = mapped_column(String(100), nullable=False, default="text/markdown")

    # Pages in the source document (PAGE_BREAK-separated text)
    page_count: Mapped[int | None] = mapped_column(Integer, nullable=True)

    status: Mapped[DocumentStatus] = mapped_column(
        Enum(DocumentStatus),
        nullable=False,
        default=DocumentStatus.PENDING,
    )
    chunk_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    celery_task_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<DocumentRecord(id='{self.id}', status={self.status})>"


class ChunkRecord(Base):
    """One finalized chunk, mirrored from the vector index for exact lookups."""

    __tablename__ = "chunks"

    id: Mapped[str] = mapped_column(String(300), primary_key=True)
    document_id: Mapped[str] = mapped_column(String(255), nullable=False)
    dataroom_id: Mapped[str] = mapped_column(String(255), nullable=False)
    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    token_count: Mapped[int] = mapped_column(Integer, nullable=False)
    page_ranges: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    section_header: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    header_hierarchy: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    is_small_chunk: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    document_name: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    content_type: Mapped[str] = mapped_column(String(100), nullable=False, default="")

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return (
            f"<ChunkRecord(id='{self.id}', doc_id='{self.document_id}', "
            f"index={self.chunk_index}, tokens={self.token_count})>"
        )


class ChatMessageRecord(Base):
    """A user query or assistant answer, with run metadata on answers."""

    __tablename__ = "chat_messages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    dataroom_id: Mapped[str] = mapped_column(String(255), nullable=False)
    viewer_id: Mapped[str] = mapped_column(String(255), nullable=False)

    # "user" | "assistant"
    role: Mapped[str] = mapped_column(String(20), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)

    # Strategy, confidence, timings, outcome, sources. Named metadata_ to
    # avoid SQLAlchemy's declarative .metadata attribute.
    metadata_: Mapped[dict | None] = mapped_column(JSONType, nullable=True, default=dict)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )


# B-tree indexes for the chunk store's lookups
chunk_document_idx = Index("idx_chunk_document_id", ChunkRecord.document_id)
chunk_dataroom_idx = Index("idx_chunk_dataroom_id", ChunkRecord.dataroom_id)
