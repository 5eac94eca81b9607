# =============================================================================
# Models Package — Pydantic V2 Schemas
# =============================================================================
# Request validation (requests.py) and the typed results every structured
# LLM prompt must return (llm_outputs.py). Separate from the ORM models in
# dataroom_rag/db/models.py.
# =============================================================================
