"""
LLM Service - streaming chat completions over OpenAI and Anthropic

Provides:
- One provider class per vendor with the same stream/complete surface
- Typed failures (ProviderError with a FailureReason)
- ProviderChain: primary, then at most one fallback attempt on the secondary
- Token estimation when a provider does not report usage
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, List, Dict, Optional

import anthropic
import openai
import tiktoken
from anthropic import AsyncAnthropic
from openai import AsyncOpenAI

from app.config import settings

logger = logging.getLogger(__name__)


class FailureReason(str, Enum):
    MISSING_CREDENTIALS = "missing_credentials"
    TRANSPORT = "transport"      # connection errors, timeouts
    API = "api"                  # non-2xx responses, rate limits


class ProviderError(Exception):
    """A single provider attempt failed."""

    def __init__(self, provider: str, reason: FailureReason, message: str = ""):
        self.provider = provider
        self.reason = reason
        super().__init__(f"{provider} {reason.value}: {message}")


class ProviderUnavailableError(Exception):
    """No configured provider could serve the request."""


@dataclass
class StreamChunk:
    """Text delta or usage report from a streaming response"""
    content: str = ""
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None


@dataclass
class LLMResponse:
    """Response from a non-streaming completion"""
    content: str
    model: str
    tokens_input: int
    tokens_output: int


class LLMProvider:
    name = "base"

    def __init__(self, api_key: Optional[str], model: str):
        self.api_key = api_key
        self.model = model

    def is_configured(self) -> bool:
        return bool(self.api_key)

    def _require_key(self):
        if not self.api_key:
            raise ProviderError(self.name, FailureReason.MISSING_CREDENTIALS, "API key is missing")

    def stream(self, messages: List[Dict[str, str]], max_tokens: int) -> AsyncIterator[StreamChunk]:
        raise NotImplementedError

    async def complete(
        self,
        messages: List[Dict[str, str]],
        max_tokens: int,
        temperature: Optional[float] = None,
    ) -> LLMResponse:
        raise NotImplementedError


class OpenAIProvider(LLMProvider):
    name = "openai"

    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None):
        super().__init__(api_key, model or settings.openai_model)
        self._client: Optional[AsyncOpenAI] = None

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(api_key=self.api_key)
        return self._client

    @staticmethod
    def _reason(exc: openai.APIError) -> FailureReason:
        if isinstance(exc, openai.APIConnectionError):
            return FailureReason.TRANSPORT
        return FailureReason.API

    async def stream(self, messages: List[Dict[str, str]], max_tokens: int) -> AsyncIterator[StreamChunk]:
        self._require_key()
        try:
            stream = await self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                max_completion_tokens=max_tokens,
                stream=True,
                stream_options={"include_usage": True},
            )
            async for chunk in stream:
                if chunk.choices:
                    delta = chunk.choices[0].delta
                    if delta and delta.content:
                        yield StreamChunk(content=delta.content)
                if chunk.usage:
                    yield StreamChunk(
                        input_tokens=chunk.usage.prompt_tokens,
                        output_tokens=chunk.usage.completion_tokens,
                    )
        except openai.APIError as e:
            raise ProviderError(self.name, self._reason(e), str(e)) from e

    async def complete(
        self,
        messages: List[Dict[str, str]],
        max_tokens: int,
        temperature: Optional[float] = None,
    ) -> LLMResponse:
        self._require_key()
        kwargs = {}
        if temperature is not None:
            kwargs["temperature"] = temperature
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                max_completion_tokens=max_tokens,
                **kwargs,
            )
        except openai.APIError as e:
            raise ProviderError(self.name, self._reason(e), str(e)) from e

        usage = response.usage
        return LLMResponse(
            content=response.choices[0].message.content or "",
            model=response.model,
            tokens_input=usage.prompt_tokens if usage else 0,
            tokens_output=usage.completion_tokens if usage else 0,
        )


class AnthropicProvider(LLMProvider):
    name = "anthropic"

    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None):
        super().__init__(api_key, model or settings.anthropic_model)
        self._client: Optional[AsyncAnthropic] = None

    @property
    def client(self) -> AsyncAnthropic:
        if self._client is None:
            self._client = AsyncAnthropic(api_key=self.api_key)
        return self._client

    @staticmethod
    def _reason(exc: anthropic.APIError) -> FailureReason:
        if isinstance(exc, anthropic.APIConnectionError):
            return FailureReason.TRANSPORT
        return FailureReason.API

    @staticmethod
    def _split_system(messages: List[Dict[str, str]]):
        """Anthropic takes the system prompt as a separate parameter."""
        system_parts = [m["content"] for m in messages if m["role"] == "system"]
        chat = [
            {"role": "assistant" if m["role"] == "assistant" else "user", "content": m["content"]}
            for m in messages if m["role"] != "system"
        ]
        return "\n\n".join(system_parts), chat

    async def stream(self, messages: List[Dict[str, str]], max_tokens: int) -> AsyncIterator[StreamChunk]:
        self._require_key()
        system, chat = self._split_system(messages)
        kwargs = {"model": self.model, "max_tokens": max_tokens, "messages": chat}
        if system:
            kwargs["system"] = system
        try:
            async with self.client.messages.stream(**kwargs) as stream:
                async for text in stream.text_stream:
                    if text:
                        yield StreamChunk(content=text)
                final = await stream.get_final_message()
                yield StreamChunk(
                    input_tokens=final.usage.input_tokens,
                    output_tokens=final.usage.output_tokens,
                )
        except anthropic.APIError as e:
            raise ProviderError(self.name, self._reason(e), str(e)) from e

    async def complete(
        self,
        messages: List[Dict[str, str]],
        max_tokens: int,
        temperature: Optional[float] = None,
    ) -> LLMResponse:
        self._require_key()
        system, chat = self._split_system(messages)
        kwargs = {"model": self.model, "max_tokens": max_tokens, "messages": chat}
        if system:
            kwargs["system"] = system
        if temperature is not None:
            kwargs["temperature"] = temperature
        try:
            response = await self.client.messages.create(**kwargs)
        except anthropic.APIError as e:
            raise ProviderError(self.name, self._reason(e), str(e)) from e

        text = "".join(block.text for block in response.content if block.type == "text")
        return LLMResponse(
            content=text,
            model=response.model,
            tokens_input=response.usage.input_tokens,
            tokens_output=response.usage.output_tokens,
        )


class ProviderChain:
    """
    Two-attempt provider selection.

    The primary is tried first; a ProviderError from it moves the request
    to the secondary exactly once. A stream that already produced text is
    never replayed on another provider. Unconfigured providers are skipped
    without a network call, and with none configured the request fails
    with ProviderUnavailableError up front.
    """

    def __init__(self, primary: LLMProvider, secondary: Optional[LLMProvider] = None):
        self.primary = primary
        self.secondary = secondary

    def available(self) -> List[LLMProvider]:
        return [p for p in (self.primary, self.secondary) if p is not None and p.is_configured()]

    def _providers(self) -> List[LLMProvider]:
        providers = self.available()
        if not providers:
            raise ProviderUnavailableError("No LLM provider is configured")
        return providers

    async def stream(self, messages: List[Dict[str, str]], max_tokens: int) -> AsyncIterator[StreamChunk]:
        providers = self._providers()
        for attempt, provider in enumerate(providers, start=1):
            produced = False
            try:
                async for chunk in provider.stream(messages, max_tokens):
                    if chunk.content:
                        produced = True
                    yield chunk
                return
            except ProviderError as e:
                if produced or attempt == len(providers):
                    logger.error(f"Provider {provider.name} failed ({e.reason.value}), no fallback left")
                    raise
                logger.warning(
                    f"Provider {provider.name} failed ({e.reason.value}), "
                    f"falling back to {providers[attempt].name}"
                )

    async def complete(
        self,
        messages: List[Dict[str, str]],
        max_tokens: int,
        temperature: Optional[float] = None,
    ) -> LLMResponse:
        providers = self._providers()
        for attempt, provider in enumerate(providers, start=1):
            try:
                return await provider.complete(messages, max_tokens, temperature)
            except ProviderError as e:
                if attempt == len(providers):
                    raise
                logger.warning(f"Provider {provider.name} failed ({e.reason.value}), falling back")
        raise ProviderUnavailableError("No LLM provider is configured")


def build_provider_chain() -> ProviderChain:
    """Primary provider from settings.llm_provider, the other vendor as fallback."""
    openai_provider = OpenAIProvider(api_key=settings.openai_api_key)
    anthropic_provider = AnthropicProvider(api_key=settings.anthropic_api_key)
    if settings.llm_provider.lower() == "anthropic":
        return ProviderChain(anthropic_provider, openai_provider)
    return ProviderChain(openai_provider, anthropic_provider)


_encoding = None


def estimate_tokens(text: str) -> int:
    """Approximate token count for providers that omit usage."""
    global _encoding
    if not text:
        return 0
    if _encoding is None:
        _encoding = tiktoken.get_encoding("cl100k_base")
    return len(_encoding.encode(text))


def estimate_message_tokens(messages: List[Dict[str, str]]) -> int:
    total = 0
    for message in messages:
        total += 4  # Approximate overhead per message
        total += estimate_tokens(message.get("content", ""))
    return total + 2


# Singleton instance
_provider_chain: Optional[ProviderChain] = None


def get_provider_chain() -> ProviderChain:
    """Get the provider chain singleton."""
    global _provider_chain
    if _provider_chain is None:
        _provider_chain = build_provider_chain()
    return _provider_chain
