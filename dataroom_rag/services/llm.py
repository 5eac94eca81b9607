# =============================================================================
# Multi-Provider LLM Abstraction — Pluggable AI Backend
# =============================================================================
#
# Common interface for LLM completions and streaming, with implementations
# for Anthropic (Claude) and any OpenAI-compatible API (OpenAI, DeepSeek,
# Qwen, ...).
#
# Every provider call runs under asyncio.wait_for with the configured
# deadline and is retried by tenacity only when the failure is retryable
# (timeouts, rate limits, 5xx). SDK exceptions are mapped onto
# ProviderTimeoutError / ProviderError so callers never import SDK types.
#
# Structured output is built on complete(): generate_structured() asks for
# JSON, extracts it (tolerating markdown fences), and validates it against a
# pydantic model. Invalid output raises StructuredOutputError.
#
# ARCHITECTURE:
#   LLMProvider (Protocol)
#   ├── AnthropicProvider        — system prompt as top-level kwarg
#   ├── OpenAICompatibleProvider — system prompt as first message
#   ├── create_llm_provider()    — factory, reads provider from Settings
#   └── generate_structured()    — JSON → pydantic model
# =============================================================================

from __future__ import annotations

import asyncio
import json
import logging
import re
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from typing import Protocol, TypeVar

from pydantic import BaseModel, ValidationError
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from dataroom_rag.config import Settings, get_settings
from dataroom_rag.errors import (
    ProviderError,
    ProviderTimeoutError,
    RAGError,
    StructuredOutputError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")
M = TypeVar("M", bound=BaseModel)

_JSON_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class LLMResponse:
    """
    Standardised response from any LLM provider.
    """

    content: str           # The generated text
    model: str             # Model identifier (e.g., "gpt-4o-mini")
    input_tokens: int      # Tokens consumed by the prompt
    output_tokens: int     # Tokens generated in the response


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class LLMProvider(Protocol):
    """
    Protocol defining the LLM provider interface.

    Both implementations provide ``complete()`` and ``stream()``.
    """

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """
        Generate a completion from the LLM.

        Args:
            messages: Conversation messages as dicts with "role" and "content".
                Roles: "user", "assistant" (no "system" — use the system param).
            system: System prompt for the LLM.
            temperature: Override sampling temperature (default from config).
            max_tokens: Override max output tokens (default from config).

        Raises:
            ProviderTimeoutError: The deadline expired on every attempt.
            ProviderError: The provider failed.
        """
        ...

    def stream(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[str]:
        """Yield text deltas as the model produces them."""
        ...


# ---------------------------------------------------------------------------
# Retry / deadline helpers
# ---------------------------------------------------------------------------


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, RAGError) and exc.retryable


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    timeout: float,
    attempts: int,
    label: str,
) -> T:
    """
    Run ``operation`` under a deadline, retrying retryable failures.

    ``operation`` must already raise pipeline errors (see map_sdk_error);
    a deadline expiry becomes ProviderTimeoutError.
    """
    async for attempt in AsyncRetrying(
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=8),
        retry=retry_if_exception(_is_retryable),
        reraise=True,
    ):
        with attempt:
            number = attempt.retry_state.attempt_number
            if number > 1:
                logger.warning("%s: retry attempt %d/%d", label, number, attempts)
            try:
                return await asyncio.wait_for(operation(), timeout=timeout)
            except asyncio.TimeoutError as exc:
                raise ProviderTimeoutError(
                    f"{label} timed out after {timeout:.0f}s",
                    context={"timeout": timeout},
                ) from exc
    raise AssertionError("unreachable")  # pragma: no cover


def map_sdk_error(exc: Exception, provider: str) -> RAGError:
    """Translate Anthropic/OpenAI SDK exceptions into pipeline errors."""
    name = type(exc).__name__
    status = getattr(exc, "status_code", None)
    context = {"provider": provider, "error_type": name, "status_code": status}

    if "Timeout" in name:
        return ProviderTimeoutError(f"{provider} request timed out", context=context)
    if "RateLimit" in name or status == 429:
        return ProviderError(f"{provider} rate limit exceeded", context=context)
    if "Connection" in name or (isinstance(status, int) and status >= 500):
        return ProviderError(f"{provider} unavailable: {exc}", context=context)
    return ProviderError(f"{provider} request failed: {exc}", context=context, retryable=False)


# ---------------------------------------------------------------------------
# Implementation 1: Anthropic (Claude)
# ---------------------------------------------------------------------------


class AnthropicProvider:
    """
    Anthropic Claude provider using the native SDK.

    Anthropic takes the system prompt as a top-level ``system=`` kwarg,
    not as a message with role "system".
    """

    def __init__(
        self,
        settings: Settings | None = None,
        api_key: str | None = None,
        model: str | None = None,
    ) -> None:
        from anthropic import AsyncAnthropic

        s = settings or get_settings()
        resolved_key = api_key or s.llm_api_key or s.anthropic_api_key
        if not resolved_key:
            raise ValueError(
                "No Anthropic API key configured. Set LLM_API_KEY or "
                "ANTHROPIC_API_KEY in .env"
            )

        self._client = AsyncAnthropic(api_key=resolved_key, max_retries=0)
        self._model = model or s.llm_model
        self._temperature = s.llm_temperature
        self._max_tokens = s.llm_max_tokens
        self._timeout = s.llm_timeout_seconds
        self._attempts = s.llm_max_attempts

        logger.info("Initialized AnthropicProvider (model=%s)", self._model)

    def _kwargs(
        self,
        messages: list[dict[str, str]],
        system: str | None,
        temperature: float | None,
        max_tokens: int | None,
    ) -> dict:
        kwargs: dict = {
            "model": self._model,
            "messages": messages,
            "max_tokens": max_tokens or self._max_tokens,
            "temperature": self._temperature if temperature is None else temperature,
        }
        if system:
            kwargs["system"] = system
        return kwargs

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Generate a completion using Claude."""
        kwargs = self._kwargs(messages, system, temperature, max_tokens)

        async def _call() -> LLMResponse:
            try:
                response = await self._client.messages.create(**kwargs)
            except Exception as exc:
                raise map_sdk_error(exc, "anthropic") from exc

            content = ""
            for block in response.content:
                if block.type == "text":
                    content = block.text
                    break

            return LLMResponse(
                content=content,
                model=response.model,
                input_tokens=response.usage.input_tokens,
                output_tokens=response.usage.output_tokens,
            )

        return await call_with_retry(
            _call, timeout=self._timeout, attempts=self._attempts, label="anthropic.complete",
        )

    async def stream(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[str]:
        """Stream text deltas. Not retried once tokens have been yielded."""
        kwargs = self._kwargs(messages, system, temperature, max_tokens)
        try:
            async with self._client.messages.stream(**kwargs) as stream:
                async for text in stream.text_stream:
                    yield text
        except RAGError:
            raise
        except Exception as exc:
            raise map_sdk_error(exc, "anthropic") from exc

    async def aclose(self) -> None:
        await self._client.close()


# ---------------------------------------------------------------------------
# Implementation 2: OpenAI-Compatible (OpenAI, DeepSeek, Qwen, etc.)
# ---------------------------------------------------------------------------


class OpenAICompatibleProvider:
    """
    OpenAI-compatible provider for any API that follows the OpenAI spec.

    Switching providers is a config change:
        LLM_PROVIDER=openai_compatible
        LLM_BASE_URL=https://api.deepseek.com/v1
        LLM_API_KEY=your-key
        LLM_MODEL=deepseek-chat
    """

    def __init__(
        self,
        settings: Settings | None = None,
        api_key: str | None = None,
        model: str | None = None,
        base_url: str | None = None,
    ) -> None:
        from openai import AsyncOpenAI

        s = settings or get_settings()
        resolved_key = api_key or s.llm_api_key or s.openai_api_key
        if not resolved_key:
            raise ValueError(
                "No API key configured for OpenAI-compatible provider. "
                "Set LLM_API_KEY in .env"
            )

        client_kwargs: dict = {"api_key": resolved_key, "max_retries": 0}
        resolved_base_url = base_url or s.llm_base_url
        if resolved_base_url:
            client_kwargs["base_url"] = resolved_base_url

        self._client = AsyncOpenAI(**client_kwargs)
        self._model = model or s.llm_model
        self._temperature = s.llm_temperature
        self._max_tokens = s.llm_max_tokens
        self._timeout = s.llm_timeout_seconds
        self._attempts = s.llm_max_attempts

        logger.info(
            "Initialized OpenAICompatibleProvider (model=%s, base_url=%s)",
            self._model,
            resolved_base_url or "https://api.openai.com/v1",
        )

    def _kwargs(
        self,
        messages: list[dict[str, str]],
        system: str | None,
        temperature: float | None,
        max_tokens: int | None,
    ) -> dict:
        all_messages: list[dict[str, str]] = []
        if system:
            all_messages.append({"role": "system", "content": system})
        all_messages.extend(messages)
        return {
            "model": self._model,
            "messages": all_messages,
            "max_tokens": max_tokens or self._max_tokens,
            "temperature": self._temperature if temperature is None else temperature,
        }

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Generate a completion using an OpenAI-compatible API."""
        kwargs = self._kwargs(messages, system, temperature, max_tokens)

        async def _call() -> LLMResponse:
            try:
                response = await self._client.chat.completions.create(**kwargs)
            except Exception as exc:
                raise map_sdk_error(exc, "openai") from exc

            content = response.choices[0].message.content or ""
            usage = response.usage
            return LLMResponse(
                content=content,
                model=response.model or self._model,
                input_tokens=usage.prompt_tokens if usage else 0,
                output_tokens=usage.completion_tokens if usage else 0,
            )

        return await call_with_retry(
            _call, timeout=self._timeout, attempts=self._attempts, label="openai.complete",
        )

    async def stream(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[str]:
        """Stream text deltas. Not retried once tokens have been yielded."""
        kwargs = self._kwargs(messages, system, temperature, max_tokens)
        try:
            stream = await self._client.chat.completions.create(stream=True, **kwargs)
            async for event in stream:
                if event.choices and event.choices[0].delta.content:
                    yield event.choices[0].delta.content
        except RAGError:
            raise
        except Exception as exc:
            raise map_sdk_error(exc, "openai") from exc

    async def aclose(self) -> None:
        await self._client.close()


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------


def create_llm_provider(
    settings: Settings | None = None,
) -> AnthropicProvider | OpenAICompatibleProvider:
    """
    Build the configured LLM provider.

    Reads ``llm_provider``:
    - "anthropic" → AnthropicProvider (Claude)
    - "openai_compatible" → OpenAICompatibleProvider

    Called once by the service container; the SDK clients pool their own
    connections.
    """
    s = settings or get_settings()
    if s.llm_provider == "anthropic":
        return AnthropicProvider(s)
    if s.llm_provider == "openai_compatible":
        return OpenAICompatibleProvider(s)
    raise ValueError(
        f"Unknown llm_provider '{s.llm_provider}'. "
        "Supported: 'anthropic', 'openai_compatible'"
    )


# ---------------------------------------------------------------------------
# Structured Output
# ---------------------------------------------------------------------------


def extract_json(text: str) -> object:
    """
    Parse the JSON object in a model response.

    Accepts bare JSON, JSON inside a ```json fence, or JSON surrounded by
    prose (the outermost {...} span is tried last).
    """
    candidates = [text.strip()]
    fenced = _JSON_FENCE_RE.search(text)
    if fenced:
        candidates.append(fenced.group(1).strip())
    start, end = text.find("{"), text.rfind("}")
    if 0 <= start < end:
        candidates.append(text[start:end + 1])

    last_error: json.JSONDecodeError | None = None
    for candidate in candidates:
        try:
            return json.loads(candidate)
        except json.JSONDecodeError as exc:
            last_error = exc
    raise last_error or json.JSONDecodeError("No JSON found", text, 0)


async def generate_structured(
    llm: LLMProvider,
    schema: type[M],
    prompt: str,
    system: str | None = None,
    temperature: float = 0.0,
    max_tokens: int | None = None,
) -> M:
    """
    One completion, parsed and validated against ``schema``.

    Raises:
        StructuredOutputError: The response was not valid JSON for the schema.
        ProviderTimeoutError / ProviderError: From the provider call.
    """
    response = await llm.complete(
        messages=[{"role": "user", "content": prompt}],
        system=system,
        temperature=temperature,
        max_tokens=max_tokens,
    )

    try:
        payload = extract_json(response.content)
        return schema.model_validate(payload)
    except (json.JSONDecodeError, ValidationError) as exc:
        logger.warning(
            "Structured output for %s failed validation: %s",
            schema.__name__, str(exc)[:200],
        )
        raise StructuredOutputError(
            f"Invalid {schema.__name__} output",
            context={"schema": schema.__name__, "model": response.model},
        ) from exc
