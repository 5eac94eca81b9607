# =============================================================================
# Service Container — explicit construction of process-wide services
# =============================================================================
#
# Everything long-lived (SDK clients, caches, the vector index client, the
# compiled pipeline graph) is built here once and handed to its users.
# Nothing reaches for a module-level singleton.
#
# USAGE:
#   services = build_services()
#   result = await services.pipeline.run(request)
#   ...
#   await services.aclose()
#
# Tests pass their own collaborators (fake LLM, fake embedding provider,
# in-process Chroma client, SQLite session factory) as keyword overrides.
# =============================================================================

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.orm import sessionmaker

from dataroom_rag.agents.compression import ContextCompressor
from dataroom_rag.agents.grading import DocumentGrader
from dataroom_rag.agents.orchestrator import RAGPipeline
from dataroom_rag.agents.query_analyzer import QueryAnalyzer
from dataroom_rag.agents.reranker import TfidfReranker
from dataroom_rag.agents.responder import LLMResponseGenerator
from dataroom_rag.agents.search import SearchOrchestrator
from dataroom_rag.config import Settings, get_settings
from dataroom_rag.services.access import (
    CachedAccessResolver,
    DataroomDocumentResolver,
    DocumentAccessResolver,
)
from dataroom_rag.services.chat_store import SessionSink, SqlSessionSink
from dataroom_rag.services.chunk_store import ChunkStore, SqlChunkStore
from dataroom_rag.services.chunker import DocumentChunker
from dataroom_rag.services.embedder import (
    EmbeddingGenerator,
    EmbeddingProvider,
    OpenAIEmbeddingProvider,
)
from dataroom_rag.services.ingestion import DocumentIndexer
from dataroom_rag.services.llm import LLMProvider, create_llm_provider
from dataroom_rag.services.vectorstore import ChromaVectorIndex, VectorIndex

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    llm: LLMProvider
    embedding_provider: EmbeddingProvider
    embedder: EmbeddingGenerator
    vector_index: VectorIndex
    chunk_store: ChunkStore
    access: DocumentAccessResolver
    sink: SessionSink | None
    indexer: DocumentIndexer
    pipeline: RAGPipeline

    async def aclose(self) -> None:
        """Close SDK clients."""
        for name, client in (("llm", self.llm), ("embedding", self.embedding_provider)):
            close = getattr(client, "aclose", None)
            if close is not None:
                await close()
                logger.debug("Closed %s client", name)


def build_services(
    settings: Settings | None = None,
    *,
    llm: LLMProvider | None = None,
    embedding_provider: EmbeddingProvider | None = None,
    vector_index: VectorIndex | None = None,
    session_factory: sessionmaker | None = None,
    access: DocumentAccessResolver | None = None,
    sink: SessionSink | None = None,
) -> Services:
    s = settings or get_settings()
    llm = llm or create_llm_provider(s)
    embedding_provider = embedding_provider or OpenAIEmbeddingProvider(s)
    vector_index = vector_index or ChromaVectorIndex(s)
    chunk_store = SqlChunkStore(session_factory)
    access = access or CachedAccessResolver(DataroomDocumentResolver(session_factory), s)
    sink = sink or SqlSessionSink(session_factory)

    embedder = EmbeddingGenerator(embedding_provider, s)
    indexer = DocumentIndexer(DocumentChunker(s), embedder, vector_index, chunk_store)
    pipeline = RAGPipeline(
        access=access,
        analyzer=QueryAnalyzer(llm, s),
        search=SearchOrchestrator(embedder, vector_index, chunk_store, s),
        chunk_store=chunk_store,
        reranker=TfidfReranker(s),
        compressor=ContextCompressor(llm, s),
        grader=DocumentGrader(llm, s),
        responder=LLMResponseGenerator(llm),
        sink=sink,
        settings=s,
    )

    logger.info("Services built (llm=%s, embeddings=%s)", s.llm_model, s.embedding_model)
    return Services(
        settings=s,
        llm=llm,
        embedding_provider=embedding_provider,
        embedder=embedder,
        vector_index=vector_index,
        chunk_store=chunk_store,
        access=access,
        sink=sink,
        indexer=indexer,
        pipeline=pipeline,
    )
