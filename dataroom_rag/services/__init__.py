# =============================================================================
# Services Package — Building Blocks
# =============================================================================
#   - tokenizer.py: tiktoken counting, hashing, markdown cleanup
#   - chunker.py: markdown-aware document chunking with page attribution
#   - embedder.py: deduplicated, cached, batched embedding generation
#   - vectorstore.py: vector index protocol (ChromaDB implementation)
#   - chunk_store.py: durable chunk lookup by page range / document
#   - llm.py + prompts.py: provider abstraction and the prompt registry
#   - access.py, chat_store.py, ingestion.py: collaborator boundaries
# =============================================================================
