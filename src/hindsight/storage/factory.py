"""Backend selection from configuration."""

import logging

from hindsight.config import HindsightConfig
from hindsight.storage.protocols import StorageAdapter

logger = logging.getLogger(__name__)


def create_storage_adapter(config: HindsightConfig) -> StorageAdapter:
    """
    Build the storage adapter named by ``config.storage_type``.

    Backends are imported lazily so a deployment only needs the client
    libraries of the backend it actually uses.
    """
    if config.storage_type == "memory":
        from hindsight.storage.memory import InMemoryStorageAdapter

        adapter = InMemoryStorageAdapter(dimension=config.embedding_dimension)
    elif config.storage_type == "sqlite":
        from hindsight.storage.sqlite import SQLiteStorageAdapter

        adapter = SQLiteStorageAdapter(
            path=config.storage_path, dimension=config.embedding_dimension
        )
    elif config.storage_type == "qdrant":
        from hindsight.storage.qdrant import QdrantStorageAdapter

        adapter = QdrantStorageAdapter(
            url=config.qdrant_url,
            host=config.qdrant_host,
            port=config.qdrant_port,
            api_key=config.qdrant_api_key,
            collection_name=config.qdrant_collection,
            dimension=config.embedding_dimension,
        )
    else:
        raise ValueError(f"Unknown storage type: {config.storage_type}")

    logger.info(f"Storage adapter created: {type(adapter).__name__}")
    return adapter
