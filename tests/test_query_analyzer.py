# =============================================================================
# Unit Tests — Query Analyzer, Patterns, and Request Models
# =============================================================================
#
# The analyzer's LLM call is served by FakeLLM with a canned analysis JSON.
# =============================================================================

from __future__ import annotations

import asyncio

import pytest
from fakes import ANALYSIS, FakeLLM, analysis_payload, make_settings

from dataroom_rag.agents.patterns import assess_complexity, is_conversational
from dataroom_rag.agents.query_analyzer import (
    QueryAnalyzer,
    extract_pages,
    sanitize_query,
    validate_query,
)
from dataroom_rag.errors import ProviderTimeoutError, QueryValidationError, StructuredOutputError
from dataroom_rag.models.requests import QueryRequest, parse_query_request


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


def _analyzer(reply, **overrides) -> tuple[QueryAnalyzer, FakeLLM]:
    llm = FakeLLM(routes={ANALYSIS: reply}, delay=overrides.pop("delay", 0.0))
    return QueryAnalyzer(llm, make_settings(**overrides)), llm


# ---------------------------------------------------------------------------
# Test: Deterministic helpers
# ---------------------------------------------------------------------------


class TestExtractPages:
    def test_single_page(self):
        assert extract_pages("What does page 5 say?") == [5]

    def test_range(self):
        assert extract_pages("Summarize pages 3-5") == [3, 4, 5]

    def test_range_with_words(self):
        assert extract_pages("pages 2 to 4 please") == [2, 3, 4]

    def test_abbreviations(self):
        assert extract_pages("compare p. 7 with pg 9") == [7, 9]

    def test_pair_with_and(self):
        assert extract_pages("pages 4 and 10") == [4, 10]

    def test_huge_span_keeps_endpoints_only(self):
        assert extract_pages("pages 1-500") == [1, 500]

    def test_no_pages(self):
        assert extract_pages("What are the termination fees?") == []

    def test_zero_ignored(self):
        assert extract_pages("page 0") == []


class TestSanitizeQuery:
    def test_script_removed(self):
        assert sanitize_query("fees <script>alert(1)</script> due") == "fees due"

    def test_event_handler_removed(self):
        cleaned = sanitize_query('<img onerror="steal()"> rent')
        assert "onerror" not in cleaned
        assert "rent" in cleaned

    def test_javascript_scheme_removed(self):
        assert "javascript" not in sanitize_query("javascript:alert(1) lease").lower()

    def test_whitespace_collapsed(self):
        assert sanitize_query("  what   is\nrent ") == "what is rent"


class TestValidateQuery:
    def test_empty_rejected(self):
        with pytest.raises(QueryValidationError):
            validate_query("   ", 2000)

    def test_none_rejected(self):
        with pytest.raises(QueryValidationError):
            validate_query(None, 2000)

    def test_too_long_rejected(self):
        with pytest.raises(QueryValidationError, match="too long"):
            validate_query("x" * 11, 10)

    def test_valid_query_is_stripped(self):
        assert validate_query("  rent?  ", 10) == "rent?"


# ---------------------------------------------------------------------------
# Test: Analyzer
# ---------------------------------------------------------------------------


class TestQueryAnalyzer:
    def test_document_question(self):
        analyzer, llm = _analyzer(analysis_payload(
            "What are the termination fees?",
            rewrites=["termination fee amount", "early exit penalty"],
        ))
        result = _run(analyzer.analyze("What are the termination fees?"))

        assert result.is_document_question
        assert result.intent == "comparison"
        assert result.complexity_level == "medium"
        assert result.rewritten_queries == ["termination fee amount", "early exit penalty"]
        assert result.keywords == ["termination", "fees"]
        assert result.word_count == 5
        assert len(llm.prompts) == 1
        assert 'QUERY: "What are the termination fees?"' in llm.prompts[0]

    def test_regex_and_model_pages_are_merged(self):
        analyzer, _ = _analyzer(analysis_payload("Summarize page 5", pages=[5, 7]))
        result = _run(analyzer.analyze("Summarize page 5 and page 2"))
        assert result.pages == [2, 5, 7]
        assert result.has_pages

    def test_chitchat_keeps_model_response(self):
        analyzer, _ = _analyzer(analysis_payload(
            "hello there", query_type="chitchat", intent="general_inquiry",
            response="Hi! Ask me anything about your documents.",
        ))
        result = _run(analyzer.analyze("hello there"))
        assert not result.is_document_question
        assert result.response == "Hi! Ask me anything about your documents."

    def test_model_rewrites_are_sanitized(self):
        analyzer, _ = _analyzer(analysis_payload(
            "rent", rewrites=["<script>x()</script>", "monthly rent"],
        ))
        result = _run(analyzer.analyze("rent"))
        assert result.rewritten_queries == ["monthly rent"]

    def test_query_empty_after_sanitizing(self):
        analyzer, llm = _analyzer(analysis_payload())
        with pytest.raises(QueryValidationError, match="empty after sanitization"):
            _run(analyzer.analyze("<script>alert(1)</script>"))
        assert llm.prompts == []

    def test_invalid_model_output_propagates(self):
        analyzer, _ = _analyzer("not json at all")
        with pytest.raises(StructuredOutputError):
            _run(analyzer.analyze("What are the termination fees?"))

    def test_timeout_raises_provider_timeout(self):
        analyzer, _ = _analyzer(analysis_payload(), delay=0.5, analysis_timeout_seconds=0.01)
        with pytest.raises(ProviderTimeoutError):
            _run(analyzer.analyze("What are the termination fees?"))


# ---------------------------------------------------------------------------
# Test: Keyword patterns
# ---------------------------------------------------------------------------


class TestPatterns:
    def test_greeting_is_conversational(self):
        assert is_conversational("Hello, how are you?")

    def test_word_boundaries_respected(self):
        assert not is_conversational("Which chapters cover shipping?")

    def test_thanks_without_question_is_conversational(self):
        assert is_conversational("thanks, that helps")

    def test_greeting_before_question_is_not_conversational(self):
        assert not is_conversational("Thanks, what is the termination fee?")
        assert not is_conversational("Hi, list the parties to the lease")

    def test_greeting_inside_question_is_not_conversational(self):
        assert not is_conversational("Does the lease say hello to the guarantor?")

    def test_plain_lookup_is_low(self):
        assert assess_complexity("What is the rent?") == (0.0, "low")

    def test_analysis_question_scores_higher(self):
        score, level = assess_complexity(
            "Compare and analyze the relationship between rent and the impact of inflation, "
            "evaluate the trade-off and explain why"
        )
        assert score > 0.3
        assert level in ("medium", "high")


# ---------------------------------------------------------------------------
# Test: Request model
# ---------------------------------------------------------------------------


class TestQueryRequest:
    def test_requested_ids_deduplicated_in_order(self):
        request = QueryRequest(
            dataroom_id="room-1", viewer_id="v-1", query="rent?",
            document_ids=["b", "a"], folder_document_ids=["a", "c"],
        )
        assert request.requested_document_ids == ["b", "a", "c"]

    def test_query_whitespace_stripped(self):
        request = QueryRequest(dataroom_id="room-1", viewer_id="v-1", query="  rent?  ")
        assert request.query == "rent?"

    def test_parse_rejects_empty_query(self):
        with pytest.raises(QueryValidationError) as exc_info:
            parse_query_request({"dataroom_id": "room-1", "viewer_id": "v-1", "query": "  "})
        assert exc_info.value.context["field"] == "query"
        assert exc_info.value.message == "Query cannot be empty"

    def test_parse_rejects_blank_document_id(self):
        with pytest.raises(QueryValidationError, match="Invalid document IDs"):
            parse_query_request({
                "dataroom_id": "room-1", "viewer_id": "v-1", "query": "rent?",
                "document_ids": ["doc-1", " "],
            })

    def test_parse_rejects_missing_dataroom(self):
        with pytest.raises(QueryValidationError) as exc_info:
            parse_query_request({"viewer_id": "v-1", "query": "rent?"})
        assert exc_info.value.context["field"] == "dataroom_id"
