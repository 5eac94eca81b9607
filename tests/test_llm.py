# =============================================================================
# Unit Tests — LLM Layer and Prompt Registry
# =============================================================================
#
# No API keys needed: providers are replaced with AsyncMock objects and the
# SDK exceptions with look-alike classes.
# =============================================================================

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock

import pytest
from fakes import make_settings

from dataroom_rag.errors import ProviderError, ProviderTimeoutError, StructuredOutputError
from dataroom_rag.models.llm_outputs import DocumentGrade
from dataroom_rag.services.llm import (
    AnthropicProvider,
    LLMResponse,
    OpenAICompatibleProvider,
    call_with_retry,
    create_llm_provider,
    extract_json,
    generate_structured,
    map_sdk_error,
)
from dataroom_rag.services.prompts import (
    DOCUMENT_GRADING_SINGLE,
    PROMPTS,
    RAG_FALLBACK_RESPONSE,
    RAG_RESPONSE_SYSTEM,
    PromptId,
    get_prompt,
)


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


def _response(content: str) -> LLMResponse:
    return LLMResponse(content=content, model="test-model", input_tokens=10, output_tokens=5)


# Stand-ins named like the SDK exceptions map_sdk_error inspects
class APITimeoutError(Exception):
    pass


class RateLimitError(Exception):
    pass


class APIConnectionError(Exception):
    pass


class APIStatusError(Exception):
    def __init__(self, message: str, status_code: int) -> None:
        super().__init__(message)
        self.status_code = status_code


# ---------------------------------------------------------------------------
# Test: JSON extraction
# ---------------------------------------------------------------------------


class TestExtractJson:
    def test_bare_json(self):
        assert extract_json('{"a": 1}') == {"a": 1}

    def test_fenced_json(self):
        text = 'Here you go:\n```json\n{"a": [1, 2]}\n```'
        assert extract_json(text) == {"a": [1, 2]}

    def test_json_surrounded_by_prose(self):
        assert extract_json('Sure! {"ok": true} Hope that helps.') == {"ok": True}

    def test_no_json_raises(self):
        with pytest.raises(json.JSONDecodeError):
            extract_json("no json here")


# ---------------------------------------------------------------------------
# Test: Structured generation
# ---------------------------------------------------------------------------


class TestGenerateStructured:
    def test_valid_output_is_parsed(self):
        llm = AsyncMock()
        llm.complete.return_value = _response(
            '{"relevance_score": 0.8, "confidence": 0.7, "is_relevant": true, "suggested_weight": 0.6}'
        )
        grade = _run(generate_structured(llm, DocumentGrade, "prompt"))
        assert grade.relevance_score == 0.8
        assert grade.is_relevant is True

    def test_prompt_sent_as_user_message(self):
        llm = AsyncMock()
        llm.complete.return_value = _response(
            '{"relevance_score": 0.1, "confidence": 0.1, "is_relevant": false}'
        )
        _run(generate_structured(llm, DocumentGrade, "the prompt", system="be precise"))
        kwargs = llm.complete.call_args.kwargs
        assert kwargs["messages"] == [{"role": "user", "content": "the prompt"}]
        assert kwargs["system"] == "be precise"
        assert kwargs["temperature"] == 0.0

    def test_invalid_json_raises(self):
        llm = AsyncMock()
        llm.complete.return_value = _response("I cannot grade this.")
        with pytest.raises(StructuredOutputError):
            _run(generate_structured(llm, DocumentGrade, "prompt"))

    def test_schema_violation_raises(self):
        llm = AsyncMock()
        llm.complete.return_value = _response(
            '{"relevance_score": 3.5, "confidence": 0.7, "is_relevant": true}'
        )
        with pytest.raises(StructuredOutputError) as exc_info:
            _run(generate_structured(llm, DocumentGrade, "prompt"))
        assert exc_info.value.retryable is False

    def test_provider_error_propagates(self):
        llm = AsyncMock()
        llm.complete.side_effect = ProviderError("rate limited")
        with pytest.raises(ProviderError, match="rate limited"):
            _run(generate_structured(llm, DocumentGrade, "prompt"))


# ---------------------------------------------------------------------------
# Test: SDK error mapping and retries
# ---------------------------------------------------------------------------


class TestMapSdkError:
    def test_timeout(self):
        error = map_sdk_error(APITimeoutError("slow"), "openai")
        assert isinstance(error, ProviderTimeoutError)
        assert error.retryable

    def test_rate_limit_is_retryable(self):
        error = map_sdk_error(RateLimitError("429"), "anthropic")
        assert isinstance(error, ProviderError)
        assert error.retryable
        assert error.context["provider"] == "anthropic"

    def test_connection_is_retryable(self):
        assert map_sdk_error(APIConnectionError("reset"), "openai").retryable

    def test_server_error_is_retryable(self):
        assert map_sdk_error(APIStatusError("boom", 503), "openai").retryable

    def test_client_error_is_not_retryable(self):
        error = map_sdk_error(APIStatusError("bad request", 400), "openai")
        assert not error.retryable
        assert error.context["status_code"] == 400


class TestCallWithRetry:
    def test_retryable_error_is_retried(self):
        operation = AsyncMock(side_effect=[ProviderError("flaky"), "ok"])
        result = _run(call_with_retry(operation, timeout=5, attempts=3, label="test"))
        assert result == "ok"
        assert operation.await_count == 2

    def test_non_retryable_error_is_not_retried(self):
        operation = AsyncMock(side_effect=ProviderError("bad", retryable=False))
        with pytest.raises(ProviderError):
            _run(call_with_retry(operation, timeout=5, attempts=3, label="test"))
        assert operation.await_count == 1

    def test_deadline_becomes_timeout_error(self):
        async def _slow():
            await asyncio.sleep(1)

        with pytest.raises(ProviderTimeoutError):
            _run(call_with_retry(_slow, timeout=0.01, attempts=1, label="test"))


class TestCreateProvider:
    def test_openai_compatible(self):
        provider = create_llm_provider(make_settings(llm_provider="openai_compatible"))
        assert isinstance(provider, OpenAICompatibleProvider)

    def test_anthropic(self):
        provider = create_llm_provider(make_settings(llm_provider="anthropic"))
        assert isinstance(provider, AnthropicProvider)

    def test_unknown_provider_rejected(self):
        with pytest.raises(ValueError, match="Unknown llm_provider"):
            create_llm_provider(make_settings(llm_provider="mystery"))

    def test_missing_key_rejected(self):
        with pytest.raises(ValueError, match="No API key"):
            OpenAICompatibleProvider(make_settings(llm_api_key=None, openai_api_key=""))


# ---------------------------------------------------------------------------
# Test: Prompt registry
# ---------------------------------------------------------------------------


class TestPrompts:
    def test_every_id_registered(self):
        assert set(PROMPTS) == set(PromptId)
        assert get_prompt(PromptId.RAG_RESPONSE_SYSTEM) is RAG_RESPONSE_SYSTEM

    def test_render_substitutes_variables(self):
        text = RAG_RESPONSE_SYSTEM.render(context="[1] Lease:\nRent is due.", query="When is rent due?")
        assert "[1] Lease:\nRent is due." in text
        assert "When is rent due?" in text
        assert "{{" not in text

    def test_fallback_quotes_query(self):
        assert RAG_FALLBACK_RESPONSE.render(query="Who signed?").startswith('You asked: "Who signed?"')

    def test_missing_variable_rejected(self):
        with pytest.raises(ValueError, match=r"missing=\['context'\]"):
            RAG_RESPONSE_SYSTEM.render(query="only the query")

    def test_unexpected_variable_rejected(self):
        with pytest.raises(ValueError, match=r"unexpected=\['extra'\]"):
            RAG_FALLBACK_RESPONSE.render(query="q", extra="x")

    def test_values_are_not_reinterpreted(self):
        text = DOCUMENT_GRADING_SINGLE.render(query="{{content}}", content="body")
        assert "{{content}}" in text

    def test_structured_prompt_validates(self):
        llm = AsyncMock()
        llm.complete.return_value = _response(
            '{"relevance_score": 0.5, "confidence": 0.5, "is_relevant": true}'
        )
        grade = _run(DOCUMENT_GRADING_SINGLE.generate(llm, query="q", content="c"))
        assert isinstance(grade, DocumentGrade)
