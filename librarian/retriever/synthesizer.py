"""
Synthesizer

Dual-path streaming answer generation.

- full-document: the large-context model answers against a cached context
  holding the complete retained files
- bounded excerpts: a chat model answers against a length-capped block of
  retrieved fragments

Both yield text increments as they arrive. Switching from one path to the
other after a failure is the pipeline's job; each path here just raises
GenerationError.
"""

import logging
from typing import AsyncIterator, List, Optional

from ..common.gemini_client import GeminiClient
from ..common.llm_client import LLMClient
from .strategy import GenerationParams

logger = logging.getLogger("librarian.retriever.synthesizer")


def split_words(text: str) -> List[str]:
    """Whitespace tokenization for replaying stored answers as a stream."""
    return [f"{word} " for word in text.split(" ") if word]


class Synthesizer:
    """
    Streams answers from either generation path.

    Usage:
        synth = Synthesizer(chat_client=LLMClient(...), large_context=GeminiClient(...))
        async for text in synth.stream_excerpts(query, context, system_prompt, params):
            ...
    """

    def __init__(self, chat_client: LLMClient, large_context: Optional[GeminiClient] = None):
        """
        Initialize synthesizer.

        Args:
            chat_client: Streaming chat client for the bounded-excerpt path
            large_context: Large-context client for the full-document path
        """
        self._chat = chat_client
        self._large_context = large_context

    @property
    def has_full_document(self) -> bool:
        """Check if the full-document path can be used"""
        return self._large_context is not None and self._large_context.is_available

    def excerpt_model(self, params: GenerationParams) -> str:
        return self._chat.resolve_model(params.llm_model)

    async def stream_full_document(
        self,
        query: str,
        cache_name: str,
        params: GenerationParams,
        transcript_context: str = "",
    ) -> AsyncIterator[str]:
        """Stream an answer against a cached full-document context."""
        prompt = f"{query}\n\n{transcript_context}" if transcript_context else query
        logger.debug("Full-document generation (model=%s, cache=%s)", params.gemini_model, cache_name)
        async for text in self._large_context.stream(
            cache_name,
            prompt,
            temperature=params.temperature,
            max_tokens=params.max_tokens,
        ):
            yield text

    async def stream_excerpts(
        self,
        query: str,
        context: str,
        system_prompt: str,
        params: GenerationParams,
    ) -> AsyncIterator[str]:
        """Stream an answer against the excerpt block."""
        logger.debug("Excerpt generation (model=%s, context=%d chars)", params.llm_model, len(context))
        async for text in self._chat.stream(
            query,
            system=f"{system_prompt}\n\n{context}",
            model=params.llm_model,
            temperature=params.temperature,
            max_tokens=params.max_tokens,
        ):
            yield text
