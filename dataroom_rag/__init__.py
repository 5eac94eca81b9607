# =============================================================================
# Dataroom RAG
# =============================================================================
# Retrieval-augmented question answering over permissioned document
# collections ("datarooms").
#
# Package structure:
#   dataroom_rag/
#   ├── agents/       → query pipeline: analysis, strategy selection, search,
#   │                    grading, reranking, compression, LangGraph graph
#   ├── db/           → SQLAlchemy engine, session, and ORM models
#   ├── models/       → Pydantic V2 request and LLM-output schemas
#   ├── services/     → chunking, embedding, vector index, chunk store,
#   │                    LLM providers, prompts, caches
#   └── workers/      → Celery ingestion tasks
# =============================================================================
