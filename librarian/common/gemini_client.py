"""
Large-context client (Gemini).

Three operations back the full-document generation path:
- upload a raw file and get a reusable remote handle (file URI)
- create a server-side cached context (system prompt + file references)
- stream a generation against a cached context

google-generativeai is synchronous for uploads and cache creation; those
calls run in a worker thread so the event loop keeps serving other requests.
"""

from __future__ import annotations

import asyncio
import io
import logging
from datetime import timedelta
from typing import AsyncIterator, List, Optional, Tuple

from .errors import ContextCacheError, GenerationError
from .llm_client import iter_with_idle_timeout

logger = logging.getLogger("librarian.common.gemini_client")


class GeminiClient:
    """Upload, cache and stream against the Gemini large-context service."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        upload_timeout: float = 120.0,
        generation_timeout: float = 120.0,
        idle_timeout: float = 45.0,
    ) -> None:
        self.upload_timeout = upload_timeout
        self.generation_timeout = generation_timeout
        self.idle_timeout = idle_timeout
        self._genai = None

        if not api_key:
            logger.info("Google API key not provided, full-document mode unavailable")
            return
        try:
            import google.generativeai as genai

            genai.configure(api_key=api_key)
            self._genai = genai  # Store the module, models are built per cache
        except ImportError:
            logger.warning("google-generativeai package not installed")
        except Exception as e:
            logger.warning("Failed to initialize Gemini client: %s", e)

    @property
    def is_available(self) -> bool:
        return self._genai is not None

    async def upload_file(self, data: bytes, mime_type: str, display_name: str) -> str:
        """
        Upload raw bytes and return the remote file URI.

        Raises:
            ContextCacheError: On upload failure or timeout
        """
        if not self.is_available:
            raise ContextCacheError("Large-context service is not available")

        def _upload():
            return self._genai.upload_file(
                io.BytesIO(data),
                mime_type=mime_type,
                display_name=display_name,
            )

        try:
            uploaded = await asyncio.wait_for(asyncio.to_thread(_upload), timeout=self.upload_timeout)
        except asyncio.TimeoutError as e:
            raise ContextCacheError(f"Upload of {display_name} timed out") from e
        except Exception as e:
            raise ContextCacheError(f"Upload of {display_name} failed: {e}") from e

        uri = getattr(uploaded, "uri", None)
        if not uri:
            raise ContextCacheError(f"No URI returned for {display_name}")
        return uri

    async def create_cached_context(
        self,
        model: str,
        system_prompt: str,
        files: List[Tuple[str, str]],
        ttl_seconds: int,
    ) -> Tuple[str, Optional[int]]:
        """
        Create a cached context holding the system prompt followed by one
        reference per file.

        Args:
            model: Generation model the cache is bound to
            system_prompt: Exact system prompt text
            files: (file_uri, mime_type) pairs, in catalog order
            ttl_seconds: Cache lifetime

        Returns:
            (cache_name, total_token_count or None)
        """
        if not self.is_available:
            raise ContextCacheError("Large-context service is not available")

        parts = [{"text": system_prompt}]
        for uri, mime_type in files:
            parts.append({"file_data": {"file_uri": uri, "mime_type": mime_type or "application/pdf"}})

        def _create():
            from google.generativeai import caching

            return caching.CachedContent.create(
                model=f"models/{model}",
                contents=[{"role": "user", "parts": parts}],
                ttl=timedelta(seconds=ttl_seconds),
            )

        try:
            cached = await asyncio.wait_for(asyncio.to_thread(_create), timeout=self.upload_timeout)
        except asyncio.TimeoutError as e:
            raise ContextCacheError("Context cache creation timed out") from e
        except Exception as e:
            raise ContextCacheError(f"Context cache creation failed: {e}") from e

        usage = getattr(cached, "usage_metadata", None)
        total_tokens = getattr(usage, "total_token_count", None) if usage is not None else None
        return cached.name, total_tokens

    async def stream(
        self,
        cache_name: str,
        prompt: str,
        *,
        temperature: float,
        max_tokens: int,
    ) -> AsyncIterator[str]:
        """
        Stream text increments for prompt against a cached context.

        Raises:
            GenerationError: On any failure or stalled stream
        """
        if not self.is_available:
            raise GenerationError("Large-context service is not available")

        try:
            model = await asyncio.wait_for(
                asyncio.to_thread(self._genai.GenerativeModel.from_cached_content, cache_name),
                timeout=self.generation_timeout,
            )
            response = await model.generate_content_async(
                prompt,
                generation_config={
                    "temperature": temperature,
                    "max_output_tokens": max_tokens,
                },
                stream=True,
                request_options={"timeout": self.generation_timeout},
            )
            async for chunk in iter_with_idle_timeout(response, self.idle_timeout):
                text = _chunk_text(chunk)
                if text:
                    yield text
        except GenerationError:
            raise
        except asyncio.TimeoutError as e:
            raise GenerationError("Full-document generation timed out") from e
        except Exception as e:
            raise GenerationError(f"Full-document generation failed: {e}") from e


def _chunk_text(chunk) -> str:
    """Extract text from a streamed chunk; chunks without text parts yield ''."""
    candidates = getattr(chunk, "candidates", None) or []
    if not candidates:
        return ""
    content = getattr(candidates[0], "content", None)
    parts = getattr(content, "parts", None) or []
    return "".join(getattr(part, "text", "") or "" for part in parts)
