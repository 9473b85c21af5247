import logging
import uuid
from typing import Any, Dict, Iterable, List, Optional, Tuple

import numpy as np
from qdrant_client import QdrantClient
from qdrant_client.models import (
    Distance,
    FieldCondition,
    Filter,
    MatchAny,
    MatchValue,
    PayloadSchemaType,
    PointIdsList,
    PointStruct,
    Range,
    VectorParams,
)

from hindsight.models import FRAGMENT_KINDS, Fragment, FragmentFilter, StorageStats
from hindsight.similarity import as_vector, cosine_similarities, normalize
from hindsight.storage.filters import resolve_filter

logger = logging.getLogger(__name__)

VECTOR_NAME = "embedding"
SCROLL_PAGE_SIZE = 256
# Fragment ids are arbitrary strings; Qdrant point ids must be UUIDs
POINT_ID_NAMESPACE = uuid.UUID("6f1d3c2e-8a9b-4c7d-9e0f-1a2b3c4d5e6f")

KEYWORD_INDEXES = ("id", "namespace", "project_id", "agent_id", "kind", "tags")


def point_id(fragment_id: str) -> str:
    return str(uuid.uuid5(POINT_ID_NAMESPACE, fragment_id))


class QdrantStorageAdapter:
    """
    Networked storage adapter backed by a Qdrant collection.

    Each fragment is one point. The payload holds every fragment field, and
    the embedding is additionally indexed as the named vector ``embedding``
    (omitted for unembedded fragments). Payload indexes mirror the local
    backend's secondary indexes.
    """

    def __init__(
        self,
        client: Optional[QdrantClient] = None,
        url: Optional[str] = None,
        host: str = "localhost",
        port: int = 6333,
        api_key: Optional[str] = None,
        collection_name: str = "hindsight_fragments",
        dimension: int = 384,
    ):
        """
        Initialize Qdrant storage adapter.

        Args:
            client: Pre-built client (e.g. ``QdrantClient(location=":memory:")``)
            url: Full Qdrant URL; wins over host/port
            host: Qdrant host (default: localhost)
            port: Qdrant port (default: 6333)
            api_key: API key for Qdrant Cloud
            collection_name: Collection name (default: hindsight_fragments)
            dimension: Embedding dimension of the collection
        """
        if client is None:
            if url:
                client = QdrantClient(url=url, api_key=api_key)
            else:
                client = QdrantClient(host=host, port=port, api_key=api_key)
        self.client = client
        self.collection_name = collection_name
        self.dimension = dimension

    @property
    def supports_native_ann(self) -> bool:
        return True

    def initialize(self) -> None:
        if not self.client.collection_exists(self.collection_name):
            self.client.create_collection(
                collection_name=self.collection_name,
                vectors_config={
                    VECTOR_NAME: VectorParams(size=self.dimension, distance=Distance.COSINE)
                },
            )
            for field_name in KEYWORD_INDEXES:
                self.client.create_payload_index(
                    self.collection_name, field_name=field_name, field_schema=PayloadSchemaType.KEYWORD
                )
            self.client.create_payload_index(
                self.collection_name, field_name="relevance_score", field_schema=PayloadSchemaType.FLOAT
            )
            self.client.create_payload_index(
                self.collection_name, field_name="created_at_ts", field_schema=PayloadSchemaType.FLOAT
            )
            self.client.create_payload_index(
                self.collection_name, field_name="is_archived", field_schema=PayloadSchemaType.BOOL
            )
            logger.info(f"Created Qdrant collection '{self.collection_name}' ({self.dimension} dims)")

    def close(self) -> None:
        self.client.close()

    # ------------------------------------------------------------------
    # Conversion
    # ------------------------------------------------------------------

    def _to_point(self, fragment: Fragment) -> PointStruct:
        payload = fragment.model_dump(mode="json")
        payload["created_at_ts"] = fragment.created_at.timestamp()
        # The payload copy is authoritative: Qdrant stores the indexed vector
        # normalized and in float32, and malformed vectors are not indexed at all
        vector = as_vector(fragment.embedding, self.dimension)
        if vector is None and fragment.embedding is not None:
            logger.warning(
                f"Fragment {fragment.id} has a malformed embedding; excluded from the vector index"
            )
        return PointStruct(
            id=point_id(fragment.id),
            vector={VECTOR_NAME: fragment.embedding} if vector is not None else {},
            payload=payload,
        )

    @staticmethod
    def _to_fragment(point: Any) -> Fragment:
        payload = dict(point.payload)
        payload.pop("created_at_ts", None)
        return Fragment(**payload)

    def _build_filter(self, filters: Optional[FragmentFilter]) -> Optional[Filter]:
        filters = resolve_filter(filters)
        conditions = []

        if not filters.include_archived:
            conditions.append(FieldCondition(key="is_archived", match=MatchValue(value=False)))
        for key in ("namespace", "agent_id", "project_id", "kind"):
            value = getattr(filters, key)
            if value is not None:
                conditions.append(FieldCondition(key=key, match=MatchValue(value=value)))
        if filters.min_relevance is not None:
            conditions.append(
                FieldCondition(key="relevance_score", range=Range(gte=filters.min_relevance))
            )
        if filters.created_after is not None or filters.created_before is not None:
            conditions.append(
                FieldCondition(
                    key="created_at_ts",
                    range=Range(
                        gte=filters.created_after.timestamp() if filters.created_after else None,
                        lte=filters.created_before.timestamp() if filters.created_before else None,
                    ),
                )
            )
        if filters.tags:
            conditions.append(FieldCondition(key="tags", match=MatchAny(any=list(filters.tags))))

        return Filter(must=conditions) if conditions else None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def write(self, fragment: Fragment) -> None:
        self.client.upsert(collection_name=self.collection_name, points=[self._to_point(fragment)])
        logger.debug(f"Stored fragment {fragment.id}: '{fragment.content[:50]}...'")

    def bulk_write(self, fragments: Iterable[Fragment]) -> int:
        """Upsert all fragments in a single request."""
        points = [self._to_point(fragment) for fragment in fragments]
        if points:
            self.client.upsert(collection_name=self.collection_name, points=points, wait=True)
        logger.debug(f"Bulk wrote {len(points)} fragments")
        return len(points)

    def delete(self, fragment_id: str) -> bool:
        if self.read(fragment_id) is None:
            return False
        self.client.delete(
            collection_name=self.collection_name,
            points_selector=PointIdsList(points=[point_id(fragment_id)]),
        )
        logger.debug(f"Deleted fragment {fragment_id}")
        return True

    def import_all(self, fragments: Iterable[Fragment]) -> int:
        count = self.bulk_write(fragments)
        logger.info(f"Imported {count} fragments into '{self.collection_name}'")
        return count

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def read(self, fragment_id: str) -> Optional[Fragment]:
        result = self.client.retrieve(
            collection_name=self.collection_name,
            ids=[point_id(fragment_id)],
            with_vectors=False,
            with_payload=True,
        )
        return self._to_fragment(result[0]) if result else None

    def bulk_read(self, fragment_ids: Iterable[str]) -> Dict[str, Fragment]:
        ids = [point_id(fragment_id) for fragment_id in fragment_ids]
        if not ids:
            return {}
        result = self.client.retrieve(
            collection_name=self.collection_name, ids=ids, with_vectors=False, with_payload=True
        )
        fragments = [self._to_fragment(point) for point in result]
        return {fragment.id: fragment for fragment in fragments}

    def query(self, filters: Optional[FragmentFilter] = None) -> List[Fragment]:
        qdrant_filter = self._build_filter(filters)
        fragments: List[Fragment] = []
        offset = None
        while True:
            points, offset = self.client.scroll(
                collection_name=self.collection_name,
                scroll_filter=qdrant_filter,
                limit=SCROLL_PAGE_SIZE,
                offset=offset,
                with_payload=True,
                with_vectors=False,
            )
            fragments.extend(self._to_fragment(point) for point in points)
            if offset is None:
                break
        fragments.sort(key=lambda fragment: fragment.id)
        return fragments

    def count(self, filters: Optional[FragmentFilter] = None) -> int:
        result = self.client.count(
            collection_name=self.collection_name,
            count_filter=self._build_filter(filters),
            exact=True,
        )
        return result.count

    def search_by_vector(
        self,
        embedding: List[float],
        top_k: int,
        filters: Optional[FragmentFilter] = None,
    ) -> List[Tuple[Fragment, float]]:
        query_vector = as_vector(embedding, self.dimension)
        if query_vector is None or top_k <= 0:
            return []

        response = self.client.query_points(
            collection_name=self.collection_name,
            query=query_vector.tolist(),
            using=VECTOR_NAME,
            query_filter=self._build_filter(filters),
            limit=top_k,
            with_payload=True,
            with_vectors=False,
        )

        fragments = [self._to_fragment(point) for point in response.points]
        fragments = [f for f in fragments if as_vector(f.embedding, self.dimension) is not None]
        logger.debug(f"{len(fragments)} hits found")
        if not fragments:
            return []

        # Recompute in float64 so scores match the other backends exactly
        matrix = np.vstack([normalize(as_vector(f.embedding)) for f in fragments])
        scores = cosine_similarities(query_vector, matrix)
        return sorted(zip(fragments, scores.tolist()), key=lambda pair: (-pair[1], pair[0].id))

    def export_all(self) -> List[Fragment]:
        return self.query(None)

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def is_available(self) -> bool:
        try:
            self.client.get_collections()
            return True
        except Exception as e:
            logger.warning(f"Qdrant backend unavailable: {e}")
            return False

    def get_stats(self) -> StorageStats:
        fragments = self.export_all()
        total = len(fragments)
        by_kind = {kind: 0 for kind in FRAGMENT_KINDS}
        for fragment in fragments:
            by_kind[fragment.kind] += 1

        info = self.client.get_collection(self.collection_name)
        return StorageStats(
            backend="qdrant",
            total_fragments=total,
            archived_fragments=sum(1 for f in fragments if f.is_archived),
            pinned_fragments=sum(1 for f in fragments if f.is_pinned),
            unembedded_fragments=sum(1 for f in fragments if f.embedding is None),
            by_kind=by_kind,
            average_relevance=(sum(f.relevance_score for f in fragments) / total) if total else 0.0,
            storage_bytes=sum(len(f.content.encode("utf-8")) for f in fragments),
            indexed_vectors=info.indexed_vectors_count or 0,
            extra={
                "collection": self.collection_name,
                "status": str(info.status),
                "points_count": info.points_count,
            },
        )
