# =============================================================================
# Agents Package — Query-Time Pipeline
# =============================================================================
#   - query_analyzer.py: one structured LLM call → QueryAnalysisResult
#   - strategy.py: pure scoring function choosing one of four strategies
#   - search.py: concurrent multi-query vector search + page lookups
#   - grading.py / reranker.py: LLM relevance grading, TF-IDF reranking
#   - compression.py: Ranked / Hybrid / RAPTOR context compression
#   - responder.py: streamed answer generation
#   - orchestrator.py: LangGraph graph wiring the stages together
# =============================================================================
