"""
Embedding Service

Turns query text into a fixed-dimension vector using the OpenAI embeddings
API. Must use the same model the corpus was indexed with.
"""

import logging
from typing import List, Optional

from .errors import EmbeddingError

logger = logging.getLogger("librarian.common.embedding_service")


class EmbeddingService:
    """
    Query embedder for the Librarian pipeline.

    One embedding call per request; any failure (transport, quota, timeout,
    empty response) is fatal for that request.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = "text-embedding-3-small",
        timeout: float = 20.0,
    ):
        """
        Initialize embedding service.

        Args:
            api_key: OpenAI API key
            model: Embedding model name
            timeout: Per-call timeout in seconds
        """
        self._model = model
        self._timeout = timeout
        self._client = None

        if not api_key:
            logger.info("OpenAI API key not provided, embedding service unavailable")
            return
        try:
            from openai import AsyncOpenAI

            self._client = AsyncOpenAI(api_key=api_key)
            logger.info("Embedding service initialized (model=%s)", model)
        except ImportError:
            logger.warning("openai package not installed")

    @property
    def is_available(self) -> bool:
        """Check if embedding service is available"""
        return self._client is not None

    @property
    def model(self) -> str:
        return self._model

    async def embed_single(self, text: str) -> List[float]:
        """
        Generate embedding for a single text.

        Args:
            text: String to embed

        Returns:
            Embedding vector
        """
        if not text or not text.strip():
            raise ValueError("Cannot embed empty text")
        if not self.is_available:
            raise EmbeddingError("Embedding service is not available")

        try:
            response = await self._client.embeddings.create(
                model=self._model,
                input=text.strip(),
                timeout=self._timeout,
            )
        except Exception as e:
            logger.error("Embedding call failed: %s", e)
            raise EmbeddingError("Could not vectorize the question") from e

        if not response.data:
            raise EmbeddingError("Embedding service returned no vector")
        return list(response.data[0].embedding)


# Module-level singleton getter
_service_instance: Optional[EmbeddingService] = None


def get_embedding_service(
    api_key: Optional[str] = None,
    model: str = "text-embedding-3-small",
    timeout: float = 20.0,
) -> EmbeddingService:
    """
    Get the shared EmbeddingService instance.

    Args:
        api_key: OpenAI API key
        model: Model name
        timeout: Per-call timeout in seconds

    Returns:
        EmbeddingService instance
    """
    global _service_instance

    if _service_instance is None:
        _service_instance = EmbeddingService(api_key=api_key, model=model, timeout=timeout)

    return _service_instance
