# =============================================================================
# Chat Persistence — push-only session sink
# =============================================================================
#
# The orchestrator pushes the user's query when a request starts and the
# final answer (with strategy, confidence, timings, outcome, sources) when
# it ends. Nothing in the pipeline reads the history back.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from sqlalchemy.orm import sessionmaker

from dataroom_rag.db.engine import get_sync_session, session_scope
from dataroom_rag.db.models import ChatMessageRecord

logger = logging.getLogger(__name__)


@dataclass
class ChatMessage:
    session_id: str
    dataroom_id: str
    viewer_id: str
    role: str  # "user" | "assistant"
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)


class SessionSink(Protocol):
    async def push(self, message: ChatMessage) -> None:
        ...


class SqlSessionSink:
    """Writes each message as one ``chat_messages`` row."""

    def __init__(self, session_factory: sessionmaker | None = None) -> None:
        self._factory = session_factory

    async def push(self, message: ChatMessage) -> None:
        def _insert() -> None:
            scope = session_scope(self._factory) if self._factory else get_sync_session()
            with scope as session:
                session.add(ChatMessageRecord(
                    session_id=message.session_id,
                    dataroom_id=message.dataroom_id,
                    viewer_id=message.viewer_id,
                    role=message.role,
                    content=message.content,
                    metadata_=message.metadata,
                ))

        await asyncio.to_thread(_insert)
        logger.debug("Stored %s message for session %s", message.role, message.session_id)
