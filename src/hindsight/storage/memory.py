"""
In-memory storage adapter.

Keeps fragments in a dictionary and answers vector searches with a linear
cosine scan. Suitable for tests, development, and as the engine's
degraded-mode cache. Data is lost on restart.
"""

import logging
import sys
from typing import Dict, Iterable, List, Optional, Tuple

import numpy as np

from hindsight.models import FRAGMENT_KINDS, Fragment, FragmentFilter, StorageStats
from hindsight.similarity import as_vector, cosine_similarities, normalize
from hindsight.storage.filters import matches_filter

logger = logging.getLogger(__name__)


class InMemoryStorageAdapter:
    """
    In-memory implementation of the StorageAdapter protocol.

    Fragments are copied on the way in and out so callers never share
    mutable state with the store.
    """

    def __init__(self, dimension: Optional[int] = None):
        self.dimension = dimension
        self._fragments: Dict[str, Fragment] = {}
        logger.info("InMemoryStorageAdapter initialized")

    @property
    def supports_native_ann(self) -> bool:
        return False

    def initialize(self) -> None:
        pass

    def close(self) -> None:
        logger.debug(f"InMemoryStorageAdapter closed ({len(self._fragments)} fragments)")

    def write(self, fragment: Fragment) -> None:
        self._fragments[fragment.id] = fragment.model_copy(deep=True)
        logger.debug(f"Stored fragment {fragment.id}: '{fragment.content[:50]}...'")

    def read(self, fragment_id: str) -> Optional[Fragment]:
        fragment = self._fragments.get(fragment_id)
        return fragment.model_copy(deep=True) if fragment else None

    def bulk_write(self, fragments: Iterable[Fragment]) -> int:
        # Copy everything first so a failure leaves the store untouched
        staged = {fragment.id: fragment.model_copy(deep=True) for fragment in fragments}
        self._fragments.update(staged)
        logger.debug(f"Bulk wrote {len(staged)} fragments")
        return len(staged)

    def bulk_read(self, fragment_ids: Iterable[str]) -> Dict[str, Fragment]:
        return {
            fragment_id: self._fragments[fragment_id].model_copy(deep=True)
            for fragment_id in fragment_ids
            if fragment_id in self._fragments
        }

    def delete(self, fragment_id: str) -> bool:
        if fragment_id not in self._fragments:
            return False
        del self._fragments[fragment_id]
        logger.debug(f"Deleted fragment {fragment_id}")
        return True

    def query(self, filters: Optional[FragmentFilter] = None) -> List[Fragment]:
        return [
            fragment.model_copy(deep=True)
            for fragment in sorted(self._fragments.values(), key=lambda f: f.id)
            if matches_filter(fragment, filters)
        ]

    def count(self, filters: Optional[FragmentFilter] = None) -> int:
        return sum(1 for fragment in self._fragments.values() if matches_filter(fragment, filters))

    def search_by_vector(
        self,
        embedding: List[float],
        top_k: int,
        filters: Optional[FragmentFilter] = None,
    ) -> List[Tuple[Fragment, float]]:
        query_vector = as_vector(embedding)
        if query_vector is None or top_k <= 0:
            return []

        candidates = []
        vectors = []
        for fragment in self._fragments.values():
            if not matches_filter(fragment, filters):
                continue
            vector = as_vector(fragment.embedding, self.dimension or query_vector.shape[0])
            if vector is None:
                continue
            candidates.append(fragment)
            vectors.append(normalize(vector))

        if not candidates:
            return []

        scores = cosine_similarities(query_vector, np.vstack(vectors))
        ranked = sorted(
            zip(candidates, scores.tolist()), key=lambda pair: (-pair[1], pair[0].id)
        )[:top_k]

        logger.debug(f"{len(ranked)} results found (top_k={top_k})")
        return [(fragment.model_copy(deep=True), score) for fragment, score in ranked]

    def export_all(self) -> List[Fragment]:
        return self.query(None)

    def import_all(self, fragments: Iterable[Fragment]) -> int:
        count = self.bulk_write(fragments)
        logger.info(f"Imported {count} fragments")
        return count

    def is_available(self) -> bool:
        return True

    def get_stats(self) -> StorageStats:
        fragments = list(self._fragments.values())
        total = len(fragments)
        by_kind = {kind: 0 for kind in FRAGMENT_KINDS}
        for fragment in fragments:
            by_kind[fragment.kind] += 1

        return StorageStats(
            backend="memory",
            total_fragments=total,
            archived_fragments=sum(1 for f in fragments if f.is_archived),
            pinned_fragments=sum(1 for f in fragments if f.is_pinned),
            unembedded_fragments=sum(1 for f in fragments if f.embedding is None),
            by_kind=by_kind,
            average_relevance=(sum(f.relevance_score for f in fragments) / total) if total else 0.0,
            storage_bytes=sum(sys.getsizeof(f.content) for f in fragments),
            indexed_vectors=sum(1 for f in fragments if f.embedding is not None),
        )

    def clear(self) -> None:
        """Remove ALL fragments from the store."""
        count = len(self._fragments)
        self._fragments.clear()
        logger.info(f"Cleared all fragments ({count} total)")
