# =============================================================================
# Request Models — Pydantic V2 Schemas
# =============================================================================
#
# The shape of a query entering the pipeline. Transport layers build a
# QueryRequest; RAGPipeline.run() accepts nothing else.
#
# Validation here is structural (ids present, sizes bounded). Semantic
# query checks (sanitisation, page references) belong to the query
# analyzer.
# =============================================================================

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from dataroom_rag.config import get_settings
from dataroom_rag.errors import QueryValidationError


class QueryRequest(BaseModel):
    """
    One question against a dataroom.

    Example:
        {
            "dataroom_id": "dr_123",
            "viewer_id": "viewer_9",
            "query": "What does page 5 say about termination fees?",
            "document_ids": ["doc_1"]
        }
    """

    dataroom_id: str = Field(..., min_length=1, max_length=255)
    viewer_id: str = Field(..., min_length=1, max_length=255)
    query: str = Field(..., description="The natural-language question")

    # Explicitly selected documents, plus documents selected through folders.
    # Both empty = search every indexed document the viewer can access.
    document_ids: list[str] = Field(default_factory=list)
    folder_document_ids: list[str] = Field(default_factory=list)

    session_id: str | None = Field(default=None, max_length=255)

    model_config = ConfigDict(str_strip_whitespace=True)

    @field_validator("query")
    @classmethod
    def _check_query(cls, value: str) -> str:
        if not value:
            raise ValueError("Query cannot be empty")
        max_length = get_settings().query_max_length
        if len(value) > max_length:
            raise ValueError(f"Query too long (max {max_length} characters)")
        return value

    @field_validator("document_ids", "folder_document_ids")
    @classmethod
    def _check_ids(cls, value: list[str]) -> list[str]:
        cleaned = [doc_id.strip() for doc_id in value]
        if any(not doc_id for doc_id in cleaned):
            raise ValueError("Invalid document IDs provided")
        return cleaned

    @model_validator(mode="after")
    def _check_scope_size(self) -> QueryRequest:
        max_docs = get_settings().max_documents_per_request
        if len(self.document_ids) + len(self.folder_document_ids) > max_docs:
            raise ValueError(f"Requested document scope too large (max {max_docs} docs)")
        return self

    @property
    def requested_document_ids(self) -> list[str]:
        """Selected and folder documents, de-duplicated, in request order."""
        return list(dict.fromkeys([*self.document_ids, *self.folder_document_ids]))


def parse_query_request(payload: dict[str, Any]) -> QueryRequest:
    """
    Validate a raw payload.

    Raises:
        QueryValidationError: With the first validation message.
    """
    try:
        return QueryRequest.model_validate(payload)
    except ValidationError as exc:
        first = exc.errors()[0]
        field = ".".join(str(p) for p in first.get("loc", ())) or "request"
        message = str(first.get("msg", "Invalid request")).removeprefix("Value error, ")
        raise QueryValidationError(message, context={"field": field}) from exc
