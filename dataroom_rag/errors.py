# =============================================================================
# Error Taxonomy — RAGError and the bounded user-facing messages
# =============================================================================
#
# Internal failures carry a code, a context dict for logs, and whether a
# retry at the single-call granularity makes sense. Users never see these
# directly: the orchestrator maps every outcome onto one of the fixed
# messages at the bottom of this module.
#
#   RAGError
#   ├── QueryValidationError     — empty / over-length query, bad ids
#   ├── ProviderTimeoutError     — deadline expired on an external call
#   ├── ProviderError            — embedding / LLM / vector index failure
#   │   └── StructuredOutputError — LLM answered, output failed the schema
#   ├── PageOutOfRangeError      — requested page > known page count
#   ├── NoRelevantContentError   — nothing survived retrieval/grading
#   ├── DocumentAccessError      — empty / forbidden document scope
#   └── RequestCancelledError    — caller cancelled or request timed out
# =============================================================================

from __future__ import annotations

import enum
from typing import Any


class ErrorCode(str, enum.Enum):
    VALIDATION = "validation"
    PROVIDER_TIMEOUT = "provider_timeout"
    PROVIDER_ERROR = "provider_error"
    INVALID_OUTPUT = "invalid_output"
    PAGE_OUT_OF_RANGE = "page_out_of_range"
    NO_RELEVANT_CONTENT = "no_relevant_content"
    DOCUMENT_ACCESS = "document_access"
    CANCELLED = "cancelled"


class RAGError(Exception):
    """Base class for every pipeline error."""

    code: ErrorCode = ErrorCode.PROVIDER_ERROR
    retryable: bool = False

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        retryable: bool | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}
        if retryable is not None:
            self.retryable = retryable

    def __repr__(self) -> str:
        return f"<{type(self).__name__}(code={self.code.value}, message={self.message!r})>"


class QueryValidationError(RAGError):
    code = ErrorCode.VALIDATION


class ProviderTimeoutError(RAGError):
    code = ErrorCode.PROVIDER_TIMEOUT
    retryable = True


class ProviderError(RAGError):
    code = ErrorCode.PROVIDER_ERROR
    retryable = True


class StructuredOutputError(ProviderError):
    """The model responded, but not with something the schema accepts."""

    code = ErrorCode.INVALID_OUTPUT
    retryable = False


class PageOutOfRangeError(RAGError):
    code = ErrorCode.PAGE_OUT_OF_RANGE

    def __init__(self, requested_pages: list[int], page_count: int) -> None:
        self.requested_pages = requested_pages
        self.page_count = page_count
        super().__init__(
            page_out_of_range_message(requested_pages, page_count),
            context={"requested_pages": requested_pages, "page_count": page_count},
        )


class NoRelevantContentError(RAGError):
    code = ErrorCode.NO_RELEVANT_CONTENT


class DocumentAccessError(RAGError):
    """Carries the exact message shown to the viewer."""

    code = ErrorCode.DOCUMENT_ACCESS

    @property
    def user_message(self) -> str:
        return self.message


class RequestCancelledError(RAGError):
    code = ErrorCode.CANCELLED


# ---------------------------------------------------------------------------
# User-facing messages
# ---------------------------------------------------------------------------

FALLBACK_MESSAGE = (
    "I'm sorry, but I could not find the answer to your question "
    "in the provided documents."
)
TIMEOUT_MESSAGE = (
    "The request took too long to process. Please try a simpler query "
    "or try again later."
)
CHITCHAT_DEFAULT_MESSAGE = (
    "I'm here to help you with your documents! How can I assist you with "
    "questions about your uploaded files?"
)
NO_DOCUMENTS_MESSAGE = "No documents are available in this dataroom."
NO_INDEXED_DOCUMENTS_MESSAGE = (
    "No documents are indexed for AI search. Please contact the dataroom owner."
)
NO_MATCHING_SCOPE_MESSAGE = (
    "No documents match your requested scope. Please check your document selection."
)


def permission_denied_message(count: int) -> str:
    return f"You don't have permission to access {count} requested document(s)."


def page_out_of_range_message(requested_pages: list[int], page_count: int) -> str:
    pages = ", ".join(str(p) for p in sorted(requested_pages))
    label = "Page" if len(requested_pages) == 1 else "Pages"
    verb = "is" if len(requested_pages) == 1 else "are"
    return (
        f"{label} {pages} {verb} out of range. The selected documents have "
        f"only {page_count} page(s)."
    )
