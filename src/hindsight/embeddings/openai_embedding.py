"""OpenAI embedding provider for hindsight."""

import logging
import os
from typing import Any, Dict, List, Optional

from hindsight.errors import EmbeddingError

logger = logging.getLogger(__name__)

DEFAULT_DIMENSIONS = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
}


class OpenAIEmbedding:
    """
    Embedding provider using OpenAI's embedding API (or a compatible endpoint).

    The 3-series models accept a ``dimensions`` argument, which lets the
    output match a store created for a smaller model:

    Example:
        >>> embedder = OpenAIEmbedding(model="text-embedding-3-small", dimensions=384)
        >>> vector = await embedder.embed_document("Use exponential backoff for webhook retries")
        >>> len(vector)
        384
    """

    def __init__(
        self,
        model: str = "text-embedding-3-small",
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        dimensions: Optional[int] = None,
        timeout: float = 30.0,
        max_retries: int = 3,
    ):
        """
        Initialize OpenAI embedder.

        Args:
            model: OpenAI model name (default: text-embedding-3-small)
            api_key: OpenAI API key (None = use OPENAI_API_KEY env var)
            base_url: Custom endpoint (Azure, OpenRouter, local gateways)
            dimensions: Requested output dimension (3-series models only)
            timeout: Request timeout in seconds
            max_retries: Client-side retry attempts for failed requests
        """
        try:
            from openai import AsyncOpenAI
        except ImportError as e:
            raise ImportError(
                "openai is required for OpenAIEmbedding. "
                "Install with: pip install hindsight-memory[embeddings-openai]"
            ) from e

        if dimensions is None and model not in DEFAULT_DIMENSIONS:
            raise ValueError(
                f"Unknown OpenAI model '{model}'; pass dimensions explicitly"
            )

        self._model = model
        self._dimensions = dimensions
        self._dimension = dimensions or DEFAULT_DIMENSIONS[model]
        self._client = AsyncOpenAI(
            api_key=api_key or os.getenv("OPENAI_API_KEY"),
            base_url=base_url,
            timeout=timeout,
            max_retries=max_retries,
        )

        logger.info(f"OpenAI embedder initialized: {model} ({self._dimension} dimensions)")

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def model_name(self) -> str:
        return self._model

    async def _create(self, texts: List[str]) -> List[List[float]]:
        kwargs: Dict[str, Any] = {"model": self._model, "input": texts}
        if self._dimensions is not None:
            kwargs["dimensions"] = self._dimensions

        try:
            response = await self._client.embeddings.create(**kwargs)
        except Exception as e:
            raise EmbeddingError(f"OpenAI embedding request failed: {e}") from e

        # The API returns items with an index; keep input order regardless
        items = sorted(response.data, key=lambda item: item.index)
        return [list(item.embedding) for item in items]

    async def embed_document(self, text: str) -> List[float]:
        """
        Embed fragment content.

        OpenAI models make no document/query distinction.

        Raises:
            ValueError: If text is empty
            EmbeddingError: If the API request fails
        """
        if not text or not text.strip():
            raise ValueError("Cannot embed empty text")
        return (await self._create([text]))[0]

    async def embed_query(self, text: str) -> List[float]:
        return await self.embed_document(text)

    async def embed_documents(self, texts: List[str], batch_size: int = 32) -> List[List[float]]:
        """
        Embed several texts, ``batch_size`` per request.

        Raises:
            ValueError: If any text is empty
            EmbeddingError: If any request fails
        """
        if not texts:
            return []
        if any(not text or not text.strip() for text in texts):
            raise ValueError("Cannot embed empty texts in batch")

        vectors: List[List[float]] = []
        for start in range(0, len(texts), batch_size):
            vectors.extend(await self._create(texts[start:start + batch_size]))
        return vectors
