"""
Storage adapters for memory fragments.

Provides the StorageAdapter protocol and its backends. Every backend
implements the same contract; callers should depend on the protocol only.
"""

from hindsight.storage.factory import create_storage_adapter
from hindsight.storage.memory import InMemoryStorageAdapter
from hindsight.storage.protocols import StorageAdapter

__all__ = [
    "StorageAdapter",
    "InMemoryStorageAdapter",
    "create_storage_adapter",
]

# Optional backends
try:
    from hindsight.storage.sqlite import SQLiteStorageAdapter  # noqa: F401

    __all__.append("SQLiteStorageAdapter")
except ImportError:
    pass

try:
    from hindsight.storage.qdrant import QdrantStorageAdapter  # noqa: F401

    __all__.append("QdrantStorageAdapter")
except ImportError:
    pass
