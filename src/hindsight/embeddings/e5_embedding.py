"""E5 (sentence-transformers) embedding provider for hindsight."""

import asyncio
import logging
from typing import List, Optional

logger = logging.getLogger(__name__)

PASSAGE_PREFIX = "passage: "
QUERY_PREFIX = "query: "


class E5Embedding:
    """
    Local embeddings from the E5 model family.

    E5 models expect "passage: " on stored text and "query: " on search
    text; both prefixes are added here. Encoding runs in a worker thread so
    the engine's embedding timeout can interrupt the wait.

    The default ``intfloat/e5-small-v2`` produces 384-dimensional vectors,
    matching ``HindsightConfig.embedding_dimension``'s default.
    """

    def __init__(
        self,
        model_name: str = "intfloat/e5-small-v2",
        device: Optional[str] = None,
        normalize_embeddings: bool = True,
        cache_folder: Optional[str] = None,
    ):
        """
        Initialize E5 embedder.

        Args:
            model_name: HuggingFace model identifier
            device: "cuda", "cpu", or None for auto
            normalize_embeddings: L2 normalize vectors
            cache_folder: Model cache directory (None = default ~/.cache)
        """
        try:
            from sentence_transformers import SentenceTransformer
        except ImportError as e:
            raise ImportError(
                "sentence-transformers is required for E5Embedding. "
                "Install with: pip install hindsight-memory[embeddings-transformers]"
            ) from e

        self._model_name = model_name
        self._normalize = normalize_embeddings

        logger.info(f"Loading E5 model: {model_name}")
        self._model = SentenceTransformer(model_name, device=device, cache_folder=cache_folder)
        self._dimension = self._model.get_sentence_embedding_dimension()
        logger.info(f"Model loaded: {model_name} ({self._dimension} dimensions)")

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def model_name(self) -> str:
        return self._model_name

    async def _encode(self, texts: List[str], batch_size: int = 32) -> List[List[float]]:
        embeddings = await asyncio.to_thread(
            self._model.encode,
            texts,
            normalize_embeddings=self._normalize,
            show_progress_bar=False,
            batch_size=batch_size,
        )
        return embeddings.tolist()

    async def embed_document(self, text: str) -> List[float]:
        if not text or not text.strip():
            raise ValueError("Cannot embed empty text")
        return (await self._encode([PASSAGE_PREFIX + text]))[0]

    async def embed_query(self, text: str) -> List[float]:
        if not text or not text.strip():
            raise ValueError("Cannot embed empty text")
        return (await self._encode([QUERY_PREFIX + text]))[0]

    async def embed_documents(self, texts: List[str], batch_size: int = 32) -> List[List[float]]:
        """
        Embed several fragments with the passage prefix, same order as input.

        Raises:
            ValueError: If any text is empty
        """
        if not texts:
            return []
        if any(not text or not text.strip() for text in texts):
            raise ValueError("Cannot embed empty texts in batch")
        return await self._encode([PASSAGE_PREFIX + text for text in texts], batch_size=batch_size)
