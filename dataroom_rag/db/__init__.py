# =============================================================================
# Database Package
# =============================================================================
# Sync SQLAlchemy engine, session management, and ORM models for documents,
# chunks, and chat messages.
# =============================================================================
