"""
Storage adapter protocol.

Defines the single interface every fragment backend implements. Callers
depend on this protocol only; which backend is active is visible through
latency and ``get_stats()`` alone.

Bulk semantics: ``bulk_write`` is all-or-nothing from the caller's point of
view. It either applies every fragment or raises, and a raise means the
caller must assume nothing in the batch was applied (the consolidation
pipeline restores its pre-run snapshot in that case).
"""

from typing import Dict, Iterable, List, Optional, Protocol, Tuple

from typing_extensions import runtime_checkable

from hindsight.models import Fragment, FragmentFilter, StorageStats


@runtime_checkable
class StorageAdapter(Protocol):
    """
    Protocol for durable fragment storage with vector search.

    Filter semantics: a ``None`` filter matches every fragment, archived
    included. A FragmentFilter excludes archived fragments unless
    ``include_archived`` is set.
    """

    @property
    def supports_native_ann(self) -> bool:
        """Whether ``search_by_vector`` is served by an approximate-nearest-neighbor index."""
        ...

    def initialize(self) -> None:
        """Create tables, collections and indexes if they do not exist."""
        ...

    def close(self) -> None:
        """Release connections."""
        ...

    def write(self, fragment: Fragment) -> None:
        """
        Upsert a fragment by id. Writing the same id twice overwrites.

        Args:
            fragment: The fragment to persist
        """
        ...

    def read(self, fragment_id: str) -> Optional[Fragment]:
        """
        Fetch a fragment by id.

        Returns:
            The fragment, or None if it does not exist
        """
        ...

    def bulk_write(self, fragments: Iterable[Fragment]) -> int:
        """
        Upsert many fragments atomically.

        Returns:
            Number of fragments written
        """
        ...

    def bulk_read(self, fragment_ids: Iterable[str]) -> Dict[str, Fragment]:
        """
        Fetch many fragments by id.

        Returns:
            Mapping of id to fragment for the ids that exist
        """
        ...

    def delete(self, fragment_id: str) -> bool:
        """
        Physically remove a fragment.

        Returns:
            True if something was deleted, False if the id did not exist
        """
        ...

    def query(self, filters: Optional[FragmentFilter] = None) -> List[Fragment]:
        """Return all fragments matching the filter."""
        ...

    def count(self, filters: Optional[FragmentFilter] = None) -> int:
        """Number of fragments matching the filter; always equals ``len(query(filters))``."""
        ...

    def search_by_vector(
        self,
        embedding: List[float],
        top_k: int,
        filters: Optional[FragmentFilter] = None,
    ) -> List[Tuple[Fragment, float]]:
        """
        Find the fragments most similar to an embedding.

        Args:
            embedding: Query vector
            top_k: Maximum number of results
            filters: Optional predicates every result must satisfy

        Returns:
            (fragment, raw cosine similarity) pairs, highest first, ties by id
        """
        ...

    def export_all(self) -> List[Fragment]:
        """Lossless dump of every fragment, including embeddings and scoring state."""
        ...

    def import_all(self, fragments: Iterable[Fragment]) -> int:
        """
        Restore a dump produced by ``export_all`` on any backend.

        Returns:
            Number of fragments imported
        """
        ...

    def is_available(self) -> bool:
        """Liveness check."""
        ...

    def get_stats(self) -> StorageStats:
        """Fragment counts, storage size and backend-specific health numbers."""
        ...
