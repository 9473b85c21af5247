"""
Embedding providers for hindsight.

- TextEmbedding: provider protocol
- E5Embedding: local E5 models via sentence-transformers
- OpenAIEmbedding: OpenAI (or compatible) embedding API
"""

from hindsight.embeddings.protocol import TextEmbedding, embed_with_timeout

__all__ = [
    "TextEmbedding",
    "embed_with_timeout",
]

# Optional providers (import only if dependencies available)
try:
    from hindsight.embeddings.e5_embedding import E5Embedding

    __all__.append("E5Embedding")
except ImportError:
    pass

try:
    from hindsight.embeddings.openai_embedding import OpenAIEmbedding

    __all__.append("OpenAIEmbedding")
except ImportError:
    pass
