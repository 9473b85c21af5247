"""
Embedding provider protocol for hindsight.

The engine treats the provider as a black box: text in, fixed-length
vector out, or a failure. Failures and timeouts never block a write; the
fragment is stored unembedded and picked up by the next consolidation.
"""

import asyncio
import logging
from typing import List, Optional, Protocol

from typing_extensions import runtime_checkable

from hindsight.errors import EmbeddingError

logger = logging.getLogger(__name__)


@runtime_checkable
class TextEmbedding(Protocol):
    """
    Protocol for text embedding providers.

    Implementations must:

    1. Return vectors of exactly ``dimension`` values
    2. Return the same vector for the same input
    3. Expose async methods (blocking work belongs in a worker thread)

    Example:
        >>> embedder = E5Embedding(model_name="intfloat/e5-small-v2")
        >>> vector = await embedder.embed_document("Token refresh race in auth/session.ts")
        >>> len(vector) == embedder.dimension
        True
    """

    @property
    def dimension(self) -> int:
        """
        Vector dimension produced by this embedder.

        Must match ``HindsightConfig.embedding_dimension``; the engine
        refuses to start otherwise.
        """
        ...

    @property
    def model_name(self) -> str:
        """Identifier of the embedding model (e.g. "intfloat/e5-small-v2")."""
        ...

    async def embed_document(self, text: str) -> List[float]:
        """
        Embed a fragment's content for storage.

        Raises:
            ValueError: If text is empty
        """
        ...

    async def embed_query(self, text: str) -> List[float]:
        """
        Embed retrieval query text.

        Raises:
            ValueError: If text is empty
        """
        ...

    async def embed_documents(self, texts: List[str], batch_size: int = 32) -> List[List[float]]:
        """Embed several fragments at once, same order as input."""
        ...


async def embed_with_timeout(
    embedder: Optional[TextEmbedding],
    text: str,
    timeout: float,
    query: bool = False,
) -> Optional[List[float]]:
    """
    Embed text, giving up after ``timeout`` seconds.

    Args:
        embedder: Provider, or None when the engine runs without one
        text: Text to embed
        timeout: Seconds to wait for the provider
        query: Use the query-side embedding instead of the document side

    Returns:
        The vector, or None if there is no provider, it failed, or it timed out
    """
    if embedder is None:
        return None

    call = embedder.embed_query(text) if query else embedder.embed_document(text)
    try:
        return await asyncio.wait_for(call, timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning(f"Embedding timed out after {timeout}s ({embedder.model_name})")
    except (EmbeddingError, ValueError) as e:
        logger.warning(f"Embedding failed ({embedder.model_name}): {e}")
    except Exception as e:
        logger.warning(f"Embedding provider error ({embedder.model_name}): {e}")
    return None
