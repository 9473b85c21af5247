"""
Vector index over fragment embeddings.

Answers "top-K most similar fragments to V" with the fastest available
method: the backend's native ANN index for large corpora, or an exact
float64 cosine scan over the in-process snapshot otherwise.

Archived fragments stay indexed; search filters decide whether they are
visible, exactly as they do for storage queries.

Rebuilds construct a fresh snapshot while searches keep reading the old
one; the new snapshot replaces the old one in a single assignment.
"""

import asyncio
import logging
from typing import Dict, List, Optional, Set, Tuple

import numpy as np

from hindsight.models import Fragment, FragmentFilter
from hindsight.similarity import as_vector, cosine_similarities, normalize
from hindsight.storage.protocols import StorageAdapter

logger = logging.getLogger(__name__)


class VectorIndex:
    """
    Searchable embedding space for one storage adapter.

    Args:
        adapter: Storage adapter holding the fragments
        dimension: Embedding dimension; vectors of any other length are rejected
        brute_force_threshold: Corpus size at or above which native ANN is used
            (when the adapter supports it)
    """

    def __init__(self, adapter: StorageAdapter, dimension: int, brute_force_threshold: int = 100_000):
        self.adapter = adapter
        self.dimension = dimension
        self.brute_force_threshold = brute_force_threshold

        self._vectors: Dict[str, np.ndarray] = {}
        self._invalid: Set[str] = set()
        self._rebuilding = False
        self._pending: List[Tuple[str, str, Optional[List[float]]]] = []

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    def index(self, fragment_id: str, embedding: Optional[List[float]]) -> bool:
        """
        Add or replace the vector for a fragment.

        Returns:
            False when the embedding is missing or malformed; the fragment is
            then excluded from search and reported by ``invalid_ids``
        """
        if self._rebuilding:
            self._pending.append(("index", fragment_id, embedding))
        return self._apply_index(self._vectors, self._invalid, fragment_id, embedding)

    def remove(self, fragment_id: str) -> bool:
        """Drop a fragment from the index. Returns True if it was indexed."""
        if self._rebuilding:
            self._pending.append(("remove", fragment_id, None))
        self._invalid.discard(fragment_id)
        return self._vectors.pop(fragment_id, None) is not None

    def _apply_index(
        self,
        vectors: Dict[str, np.ndarray],
        invalid: Set[str],
        fragment_id: str,
        embedding: Optional[List[float]],
    ) -> bool:
        vector = as_vector(embedding, self.dimension)
        if vector is None:
            vectors.pop(fragment_id, None)
            if embedding is not None:
                invalid.add(fragment_id)
                logger.warning(
                    f"Fragment {fragment_id} has a malformed embedding "
                    f"(expected {self.dimension} finite values); flagged for re-embedding"
                )
            return False
        invalid.discard(fragment_id)
        vectors[fragment_id] = normalize(vector)
        return True

    def get_size(self) -> int:
        """Number of indexed vectors."""
        return len(self._vectors)

    def contains(self, fragment_id: str) -> bool:
        return fragment_id in self._vectors

    @property
    def invalid_ids(self) -> Set[str]:
        """Fragments whose stored embedding could not be indexed."""
        return set(self._invalid)

    @property
    def is_rebuilding(self) -> bool:
        return self._rebuilding

    async def rebuild(self, chunk_size: int = 1000) -> int:
        """
        Reconstruct the index from storage.

        Searches continue against the previous snapshot until the rebuild
        completes. Index/remove calls made meanwhile are replayed onto the
        new snapshot before it is swapped in.

        Returns:
            Number of vectors in the rebuilt index
        """
        if self._rebuilding:
            raise RuntimeError("Vector index rebuild already in progress")

        self._rebuilding = True
        self._pending = []
        try:
            fragments = self.adapter.export_all()
            vectors: Dict[str, np.ndarray] = {}
            invalid: Set[str] = set()
            for start in range(0, len(fragments), chunk_size):
                for fragment in fragments[start:start + chunk_size]:
                    self._apply_index(vectors, invalid, fragment.id, fragment.embedding)
                await asyncio.sleep(0)

            for operation, fragment_id, embedding in self._pending:
                if operation == "index":
                    self._apply_index(vectors, invalid, fragment_id, embedding)
                else:
                    vectors.pop(fragment_id, None)
                    invalid.discard(fragment_id)

            self._vectors, self._invalid = vectors, invalid
        finally:
            self._rebuilding = False
            self._pending = []

        logger.info(
            f"Vector index rebuilt: {len(self._vectors)} vectors, {len(self._invalid)} malformed"
        )
        return len(self._vectors)

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def uses_native_ann(self) -> bool:
        return self.adapter.supports_native_ann and self.get_size() >= self.brute_force_threshold

    def search(
        self,
        embedding: List[float],
        top_k: int,
        filters: Optional[FragmentFilter] = None,
        min_similarity: Optional[float] = None,
    ) -> List[Tuple[Fragment, float]]:
        """
        Top-K fragments by cosine similarity, highest first, ties broken by id.

        Args:
            embedding: Query vector
            top_k: Maximum number of results
            filters: Predicates every result must satisfy
            min_similarity: Drop results below this similarity

        Returns:
            (fragment, similarity) pairs
        """
        query_vector = as_vector(embedding, self.dimension)
        if query_vector is None:
            logger.warning(f"Query embedding rejected (expected {self.dimension} finite values)")
            return []
        if top_k <= 0:
            return []

        if self.uses_native_ann():
            results = [
                (fragment, similarity)
                for fragment, similarity in self.adapter.search_by_vector(
                    query_vector.tolist(), top_k, filters
                )
                if fragment.id not in self._invalid
            ]
        else:
            results = self._brute_force(query_vector, top_k, filters)

        if min_similarity is not None:
            results = [(fragment, score) for fragment, score in results if score >= min_similarity]
        return results

    def _brute_force(
        self, query_vector: np.ndarray, top_k: int, filters: Optional[FragmentFilter]
    ) -> List[Tuple[Fragment, float]]:
        vectors = self._vectors
        candidates = [f for f in self.adapter.query(filters) if f.id in vectors]
        if not candidates:
            return []

        matrix = np.vstack([vectors[fragment.id] for fragment in candidates])
        scores = cosine_similarities(query_vector, matrix)
        ranked = sorted(zip(candidates, scores.tolist()), key=lambda pair: (-pair[1], pair[0].id))
        return ranked[:top_k]
