"""Streaming LLM provider clients (OpenAI, Anthropic) over httpx."""

import json
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Optional, Protocol

import httpx

from studygen.config import Settings, get_settings
from studygen.errors import ContentFilterError, GenerationError

logger = logging.getLogger(__name__)

# Provider error codes for requests refused by a content filter
CONTENT_FILTER_CODES = ("content_filter", "content_policy_violation")

# USD per million tokens (input, output)
MODEL_PRICING: dict[str, tuple[float, float]] = {
    "gpt-4o-mini": (0.15, 0.60),
    "gpt-4o": (2.50, 10.00),
    "claude-3-5-haiku-latest": (0.80, 4.00),
    "claude-3-5-sonnet-latest": (3.00, 15.00),
}


@dataclass
class LLMUsage:
    provider: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0

    def price(self) -> None:
        input_rate, output_rate = MODEL_PRICING.get(self.model, (0.0, 0.0))
        self.cost_usd = (self.input_tokens * input_rate + self.output_tokens * output_rate) / 1_000_000


@dataclass
class LLMParams:
    system_prompt: str = ""
    temperature: float = 0.3
    max_tokens: int = 4000


class LLMStream(Protocol):
    """Async iterator of text chunks; ``usage`` is set once exhausted."""

    usage: Optional[LLMUsage]

    def __aiter__(self) -> AsyncIterator[str]: ...


class LLMClient(Protocol):
    provider: str

    def stream(self, prompt: str, params: LLMParams) -> LLMStream: ...


class _HttpStream:
    def __init__(self, generate: Callable[["_HttpStream"], AsyncIterator[str]]):
        self.usage: Optional[LLMUsage] = None
        self._chunks = generate(self)

    def __aiter__(self) -> AsyncIterator[str]:
        return self._chunks


async def _iter_sse_data(response: httpx.Response) -> AsyncIterator[str]:
    async for line in response.aiter_lines():
        if line.startswith("data:"):
            yield line[5:].strip()


async def _raise_for_status(response: httpx.Response, provider: str) -> None:
    if response.status_code < 400:
        return
    body = (await response.aread()).decode("utf-8", errors="replace")
    lowered = body.lower()
    logger.warning(f"{provider} returned HTTP {response.status_code}: {body[:200]}")
    if any(code in lowered for code in CONTENT_FILTER_CODES):
        raise ContentFilterError(f"{provider} rejected the request under its content filter")
    raise GenerationError(f"{provider} request failed with HTTP {response.status_code}")


class OpenAIClient:
    """Chat Completions streaming client."""

    provider = "openai"

    def __init__(self, settings: Settings):
        self.api_key = settings.openai_api_key
        self.base_url = settings.openai_base_url.rstrip("/")
        self.model = settings.openai_model
        self.timeout = settings.llm_timeout_seconds

    def stream(self, prompt: str, params: LLMParams) -> LLMStream:
        return _HttpStream(lambda stream: self._generate(prompt, params, stream))

    async def _generate(self, prompt: str, params: LLMParams, stream: _HttpStream) -> AsyncIterator[str]:
        messages = []
        if params.system_prompt:
            messages.append({"role": "system", "content": params.system_prompt})
        messages.append({"role": "user", "content": prompt})
        payload = {
            "model": self.model,
            "messages": messages,
            "temperature": params.temperature,
            "max_tokens": params.max_tokens,
            "stream": True,
            "stream_options": {"include_usage": True},
            "response_format": {"type": "json_object"},
        }
        usage = LLMUsage(provider=self.provider, model=self.model)
        headers = {"Authorization": f"Bearer {self.api_key}"}

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                async with client.stream(
                    "POST", f"{self.base_url}/chat/completions", json=payload, headers=headers
                ) as response:
                    await _raise_for_status(response, self.provider)
                    async for data in _iter_sse_data(response):
                        if data == "[DONE]":
                            break
                        event = json.loads(data)
                        if event.get("usage"):
                            usage.input_tokens = event["usage"].get("prompt_tokens", 0)
                            usage.output_tokens = event["usage"].get("completion_tokens", 0)
                        for choice in event.get("choices") or []:
                            if choice.get("finish_reason") == "content_filter":
                                raise ContentFilterError("openai stopped generation under its content filter")
                            text = (choice.get("delta") or {}).get("content")
                            if text:
                                yield text
        except httpx.HTTPError as e:
            raise GenerationError(f"openai request failed: {e}") from e

        usage.price()
        stream.usage = usage


class AnthropicClient:
    """Messages API streaming client."""

    provider = "anthropic"

    def __init__(self, settings: Settings):
        self.api_key = settings.anthropic_api_key
        self.base_url = settings.anthropic_base_url.rstrip("/")
        self.model = settings.anthropic_model
        self.version = settings.anthropic_version
        self.timeout = settings.llm_timeout_seconds

    def stream(self, prompt: str, params: LLMParams) -> LLMStream:
        return _HttpStream(lambda stream: self._generate(prompt, params, stream))

    async def _generate(self, prompt: str, params: LLMParams, stream: _HttpStream) -> AsyncIterator[str]:
        payload = {
            "model": self.model,
            "max_tokens": params.max_tokens,
            "temperature": params.temperature,
            "messages": [{"role": "user", "content": prompt}],
            "stream": True,
        }
        if params.system_prompt:
            payload["system"] = params.system_prompt
        headers = {
            "x-api-key": self.api_key,
            "anthropic-version": self.version,
        }
        usage = LLMUsage(provider=self.provider, model=self.model)

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                async with client.stream(
                    "POST", f"{self.base_url}/messages", json=payload, headers=headers
                ) as response:
                    await _raise_for_status(response, self.provider)
                    async for data in _iter_sse_data(response):
                        event = json.loads(data)
                        kind = event.get("type")
                        if kind == "message_start":
                            usage.input_tokens = event["message"]["usage"].get("input_tokens", 0)
                        elif kind == "content_block_delta":
                            text = event["delta"].get("text")
                            if text:
                                yield text
                        elif kind == "message_delta":
                            if event["delta"].get("stop_reason") == "refusal":
                                raise ContentFilterError("anthropic refused the request")
                            usage.output_tokens = event.get("usage", {}).get("output_tokens", 0)
                        elif kind == "error":
                            raise GenerationError(f"anthropic stream error: {event['error'].get('type')}")
        except httpx.HTTPError as e:
            raise GenerationError(f"anthropic request failed: {e}") from e

        usage.price()
        stream.usage = usage


def build_llm_client(provider: str, settings: Settings) -> LLMClient:
    if provider == "openai":
        return OpenAIClient(settings)
    if provider == "anthropic":
        return AnthropicClient(settings)
    raise ValueError(f"Unknown LLM provider: {provider}")


def build_llm_clients(settings: Optional[Settings] = None) -> list[LLMClient]:
    """Primary provider first, then the fallback used after a content-filter refusal."""
    settings = settings or get_settings()
    providers = [settings.llm_primary_provider]
    if settings.llm_fallback_provider and settings.llm_fallback_provider not in providers:
        providers.append(settings.llm_fallback_provider)
    return [build_llm_client(provider, settings) for provider in providers]
