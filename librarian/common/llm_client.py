"""
Provider-agnostic streaming chat client for the bounded-excerpt path.

Supports OpenAI and Anthropic with a shared async text-streaming interface.
Streams yield plain text increments as they arrive.
"""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Optional, TypeVar

from .errors import GenerationError

logger = logging.getLogger("librarian.common.llm_client")

T = TypeVar("T")


async def iter_with_idle_timeout(stream: AsyncIterator[T], idle_timeout: float) -> AsyncIterator[T]:
    """Re-yield items from an async iterator, failing if the gap between two
    items exceeds idle_timeout seconds."""
    iterator = stream.__aiter__()
    while True:
        try:
            item = await asyncio.wait_for(iterator.__anext__(), timeout=idle_timeout)
        except StopAsyncIteration:
            return
        except asyncio.TimeoutError as e:
            raise GenerationError("Generation stream stalled") from e
        yield item


class LLMClient:
    """Unified streaming chat-completion client across providers."""

    def __init__(
        self,
        provider: str = "openai",
        openai_api_key: Optional[str] = None,
        anthropic_api_key: Optional[str] = None,
        anthropic_model: str = "claude-sonnet-4-20250514",
        timeout: float = 120.0,
        idle_timeout: float = 45.0,
    ) -> None:
        self.provider = (provider or "openai").lower()
        self.anthropic_model = anthropic_model
        self.timeout = timeout
        self.idle_timeout = idle_timeout
        self._client = None

        if self.provider == "openai":
            if not openai_api_key:
                logger.info("%s API key not provided, LLM client unavailable", self.provider)
                return
            try:
                from openai import AsyncOpenAI

                self._client = AsyncOpenAI(api_key=openai_api_key)
            except ImportError:
                logger.warning("openai package not installed")
            except Exception as e:
                logger.warning("Failed to initialize OpenAI client: %s", e)
            return

        if self.provider == "anthropic":
            if not anthropic_api_key:
                logger.info("%s API key not provided, LLM client unavailable", self.provider)
                return
            try:
                import anthropic

                self._client = anthropic.AsyncAnthropic(api_key=anthropic_api_key)
            except ImportError:
                logger.warning("anthropic package not installed")
            except Exception as e:
                logger.warning("Failed to initialize Anthropic client: %s", e)
            return

        logger.warning("Unsupported LLM provider: %s", self.provider)

    @property
    def is_available(self) -> bool:
        return self._client is not None

    def resolve_model(self, model: str) -> str:
        """Model actually used for a call requesting model"""
        if self.provider == "anthropic":
            return self.anthropic_model
        return model

    async def stream(
        self,
        prompt: str,
        *,
        system: Optional[str] = None,
        model: str = "",
        temperature: float = 0.3,
        max_tokens: int = 1024,
    ) -> AsyncIterator[str]:
        """
        Stream a completion as text increments.

        Args:
            prompt: User message
            system: System prompt (instructions plus retrieved context)
            model: Model name for the openai provider; the anthropic provider
                uses its configured model
            temperature: Sampling temperature
            max_tokens: Maximum output tokens

        Raises:
            GenerationError: On any provider failure or stalled stream
        """
        if not self.is_available:
            raise GenerationError("LLM client is not available")

        if self.provider == "openai":
            source = self._stream_openai(prompt, system, model, temperature, max_tokens)
        elif self.provider == "anthropic":
            source = self._stream_anthropic(prompt, system, temperature, max_tokens)
        else:
            raise GenerationError(f"Unsupported LLM provider: {self.provider}")

        try:
            async for text in iter_with_idle_timeout(source, self.idle_timeout):
                yield text
        except GenerationError:
            raise
        except Exception as e:
            raise GenerationError(f"{self.provider} generation failed: {e}") from e
        finally:
            await source.aclose()

    async def _stream_openai(
        self,
        prompt: str,
        system: Optional[str],
        model: str,
        temperature: float,
        max_tokens: int,
    ) -> AsyncIterator[str]:
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})

        stream = await self._client.chat.completions.create(
            model=model,
            messages=messages,
            temperature=temperature,
            max_tokens=max_tokens,
            stream=True,
            timeout=self.timeout,
        )
        async for chunk in stream:
            if not chunk.choices:
                continue
            delta = chunk.choices[0].delta
            if delta is not None and delta.content:
                yield delta.content

    async def _stream_anthropic(
        self,
        prompt: str,
        system: Optional[str],
        temperature: float,
        max_tokens: int,
    ) -> AsyncIterator[str]:
        kwargs = {
            "model": self.anthropic_model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": [{"role": "user", "content": prompt}],
            "timeout": self.timeout,
        }
        if system:
            kwargs["system"] = system

        async with self._client.messages.stream(**kwargs) as stream:
            async for text in stream.text_stream:
                if text:
                    yield text
