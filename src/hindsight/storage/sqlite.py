"""
Local embedded storage adapter: SQLite through SQLAlchemy, with the
sqlite-vec extension providing a native approximate-nearest-neighbor index.

Layout:
- ``fragments`` table keyed by id with secondary indexes on namespace,
  project, agent, (namespace, relevance_score), (namespace, kind) and
  is_archived.
- ``fragment_vectors`` vec0 virtual table holding the fixed-width float32
  embedding, keyed by the fragment row's ``seq``.

Embeddings are also kept as JSON in the fragments table so export/import is
lossless and similarities are recomputed in float64.
"""

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Tuple

import numpy as np
import sqlite_vec
from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Engine,
    Float,
    Index,
    Integer,
    String,
    Text,
    create_engine,
    event,
    func,
    select,
    text,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base
from sqlalchemy.pool import StaticPool

from hindsight.models import FRAGMENT_KINDS, Fragment, FragmentFilter, StorageStats
from hindsight.similarity import as_vector, cosine_similarities, normalize
from hindsight.storage.filters import matches_tags, resolve_filter

logger = logging.getLogger(__name__)

Base = declarative_base()

VECTOR_TABLE = "fragment_vectors"
# sqlite-vec refuses KNN queries with k above this value
MAX_KNN_K = 4096
OVERFETCH_FACTOR = 4


def _to_db_time(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _from_db_time(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc)


class FragmentRow(Base):
    """SQLAlchemy model for fragment storage."""

    __tablename__ = "fragments"

    seq = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String, nullable=False, unique=True)

    namespace = Column(String, nullable=False, index=True)
    project_id = Column(String, nullable=False, index=True)
    agent_id = Column(String, nullable=False, index=True)
    workflow_id = Column(String, nullable=True)
    kind = Column(String, nullable=False)
    content = Column(Text, nullable=False)
    embedding_json = Column(Text, nullable=True)

    source_type = Column(String, nullable=False, default="manual")
    source_ids_json = Column(Text, nullable=False, default="[]")
    origin_id = Column(String, nullable=True)

    relevance_score = Column(Float, nullable=False, default=1.0)
    access_count = Column(Integer, nullable=False, default=0)
    is_pinned = Column(Boolean, nullable=False, default=False)
    is_archived = Column(Boolean, nullable=False, default=False, index=True)
    needs_reembedding = Column(Boolean, nullable=False, default=False)

    tags_json = Column(Text, nullable=False, default="[]")
    outcome = Column(String, nullable=True)

    # Naive UTC
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)
    last_accessed_at = Column(DateTime, nullable=True)
    last_decayed_at = Column(DateTime, nullable=True)

    details_json = Column(Text, nullable=True)
    extra_json = Column(Text, nullable=False, default="{}")

    __table_args__ = (
        Index("idx_fragments_namespace_relevance", "namespace", "relevance_score"),
        Index("idx_fragments_namespace_kind", "namespace", "kind"),
    )

    def to_fragment(self) -> Fragment:
        """Convert database row to Fragment."""
        return Fragment(
            id=self.id,
            namespace=self.namespace,
            kind=self.kind,
            content=self.content,
            embedding=json.loads(self.embedding_json) if self.embedding_json else None,
            agent_id=self.agent_id,
            project_id=self.project_id,
            workflow_id=self.workflow_id,
            source_type=self.source_type,
            source_ids=json.loads(self.source_ids_json or "[]"),
            origin_id=self.origin_id,
            relevance_score=self.relevance_score,
            access_count=self.access_count,
            is_pinned=self.is_pinned,
            is_archived=self.is_archived,
            needs_reembedding=self.needs_reembedding,
            tags=json.loads(self.tags_json or "[]"),
            outcome=self.outcome,
            created_at=_from_db_time(self.created_at),
            updated_at=_from_db_time(self.updated_at),
            last_accessed_at=_from_db_time(self.last_accessed_at),
            last_decayed_at=_from_db_time(self.last_decayed_at),
            details=json.loads(self.details_json) if self.details_json else None,
            extra=json.loads(self.extra_json or "{}"),
        )

    def update_from(self, fragment: Fragment) -> None:
        """Copy every field of a Fragment onto this row (``seq`` is kept)."""
        self.id = fragment.id
        self.namespace = fragment.namespace
        self.project_id = fragment.project_id
        self.agent_id = fragment.agent_id
        self.workflow_id = fragment.workflow_id
        self.kind = fragment.kind
        self.content = fragment.content
        self.embedding_json = (
            json.dumps(fragment.embedding) if fragment.embedding is not None else None
        )
        self.source_type = fragment.source_type
        self.source_ids_json = json.dumps(fragment.source_ids)
        self.origin_id = fragment.origin_id
        self.relevance_score = fragment.relevance_score
        self.access_count = fragment.access_count
        self.is_pinned = fragment.is_pinned
        self.is_archived = fragment.is_archived
        self.needs_reembedding = fragment.needs_reembedding
        self.tags_json = json.dumps(fragment.tags)
        self.outcome = fragment.outcome
        self.created_at = _to_db_time(fragment.created_at)
        self.updated_at = _to_db_time(fragment.updated_at)
        self.last_accessed_at = _to_db_time(fragment.last_accessed_at)
        self.last_decayed_at = _to_db_time(fragment.last_decayed_at)
        self.details_json = (
            fragment.details.model_dump_json() if fragment.details is not None else None
        )
        self.extra_json = json.dumps(fragment.extra)


class SQLiteStorageAdapter:
    """
    SQLite-backed fragment storage with native ANN search via sqlite-vec.

    When the interpreter's sqlite3 module cannot load extensions the adapter
    still works, answering vector searches with a linear scan and reporting
    ``supports_native_ann = False``.

    Example:
        adapter = SQLiteStorageAdapter(path="hindsight.db", dimension=384)
        adapter.initialize()

        # Shared in-memory database (tests)
        adapter = SQLiteStorageAdapter(path=":memory:", dimension=3)
    """

    def __init__(
        self,
        path: str = "hindsight.db",
        dimension: int = 384,
        engine: Optional[Engine] = None,
        enable_native_ann: bool = True,
    ):
        """
        Initialize the SQLite storage adapter.

        Args:
            path: Database file, or ":memory:" for a private in-memory database
            dimension: Embedding dimension of the vector table
            engine: Pre-built SQLAlchemy engine (overrides path)
            enable_native_ann: Try to load sqlite-vec for ANN search
        """
        self.dimension = dimension
        self._enable_native_ann = enable_native_ann
        self._vec_available = False

        if engine is None:
            if path == ":memory:":
                engine = create_engine(
                    "sqlite://",
                    connect_args={"check_same_thread": False},
                    poolclass=StaticPool,
                )
            else:
                engine = create_engine(
                    f"sqlite:///{path}", connect_args={"check_same_thread": False}
                )
        self.engine = engine
        event.listen(self.engine, "connect", self._on_connect)

        logger.info(f"SQLiteStorageAdapter created (engine={engine.url}, dimension={dimension})")

    def _on_connect(self, dbapi_connection, connection_record) -> None:
        if not self._enable_native_ann:
            return
        try:
            dbapi_connection.enable_load_extension(True)
            sqlite_vec.load(dbapi_connection)
            dbapi_connection.enable_load_extension(False)
            self._vec_available = True
        except (AttributeError, sqlite3.OperationalError) as e:
            logger.warning(f"sqlite-vec could not be loaded, falling back to linear scan: {e}")
            self._vec_available = False

    @property
    def supports_native_ann(self) -> bool:
        return self._vec_available

    @contextmanager
    def _session(self):
        """Context manager for database sessions with automatic commit/rollback."""
        session = Session(self.engine)
        try:
            yield session
            session.commit()
        except Exception as e:
            session.rollback()
            logger.error(f"Database error: {e}")
            raise
        finally:
            session.close()

    def initialize(self) -> None:
        """Create tables and the vector index if they don't exist."""
        Base.metadata.create_all(self.engine)
        if self._vec_available:
            with self.engine.begin() as conn:
                conn.exec_driver_sql(
                    f"CREATE VIRTUAL TABLE IF NOT EXISTS {VECTOR_TABLE} "
                    f"USING vec0(embedding float[{self.dimension}] distance_metric=cosine)"
                )
        logger.info(f"Fragment tables created/verified (native_ann={self._vec_available})")

    def close(self) -> None:
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _upsert(self, session: Session, fragment: Fragment) -> None:
        row = session.scalars(select(FragmentRow).where(FragmentRow.id == fragment.id)).first()
        if row is None:
            row = FragmentRow()
            session.add(row)
        row.update_from(fragment)
        session.flush()

        if not self._vec_available:
            return
        session.execute(text(f"DELETE FROM {VECTOR_TABLE} WHERE rowid = :seq"), {"seq": row.seq})
        vector = as_vector(fragment.embedding, self.dimension)
        if vector is not None:
            session.execute(
                text(f"INSERT INTO {VECTOR_TABLE}(rowid, embedding) VALUES (:seq, :embedding)"),
                {"seq": row.seq, "embedding": sqlite_vec.serialize_float32(vector.tolist())},
            )
        elif fragment.embedding is not None:
            logger.warning(
                f"Fragment {fragment.id} has a malformed embedding; excluded from the vector index"
            )

    def write(self, fragment: Fragment) -> None:
        with self._session() as session:
            self._upsert(session, fragment)
        logger.debug(f"Stored fragment {fragment.id}: '{fragment.content[:50]}...'")

    def bulk_write(self, fragments: Iterable[Fragment]) -> int:
        """Upsert all fragments in one transaction; any failure rolls back the batch."""
        count = 0
        with self._session() as session:
            for fragment in fragments:
                self._upsert(session, fragment)
                count += 1
        logger.debug(f"Bulk wrote {count} fragments")
        return count

    def delete(self, fragment_id: str) -> bool:
        with self._session() as session:
            row = session.scalars(select(FragmentRow).where(FragmentRow.id == fragment_id)).first()
            if row is None:
                return False
            if self._vec_available:
                session.execute(
                    text(f"DELETE FROM {VECTOR_TABLE} WHERE rowid = :seq"), {"seq": row.seq}
                )
            session.delete(row)
        logger.debug(f"Deleted fragment {fragment_id}")
        return True

    def import_all(self, fragments: Iterable[Fragment]) -> int:
        count = self.bulk_write(fragments)
        logger.info(f"Imported {count} fragments")
        return count

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def read(self, fragment_id: str) -> Optional[Fragment]:
        with self._session() as session:
            row = session.scalars(select(FragmentRow).where(FragmentRow.id == fragment_id)).first()
            return row.to_fragment() if row else None

    def bulk_read(self, fragment_ids: Iterable[str]) -> Dict[str, Fragment]:
        ids = list(fragment_ids)
        if not ids:
            return {}
        with self._session() as session:
            rows = session.scalars(select(FragmentRow).where(FragmentRow.id.in_(ids))).all()
            return {row.id: row.to_fragment() for row in rows}

    def _conditions(self, filters: Optional[FragmentFilter]) -> list:
        filters = resolve_filter(filters)
        conditions = []
        if not filters.include_archived:
            conditions.append(FragmentRow.is_archived.is_(False))
        if filters.namespace is not None:
            conditions.append(FragmentRow.namespace == filters.namespace)
        if filters.agent_id is not None:
            conditions.append(FragmentRow.agent_id == filters.agent_id)
        if filters.project_id is not None:
            conditions.append(FragmentRow.project_id == filters.project_id)
        if filters.kind is not None:
            conditions.append(FragmentRow.kind == filters.kind)
        if filters.min_relevance is not None:
            conditions.append(FragmentRow.relevance_score >= filters.min_relevance)
        if filters.created_after is not None:
            conditions.append(FragmentRow.created_at >= _to_db_time(filters.created_after))
        if filters.created_before is not None:
            conditions.append(FragmentRow.created_at <= _to_db_time(filters.created_before))
        return conditions

    def query(self, filters: Optional[FragmentFilter] = None) -> List[Fragment]:
        tags = resolve_filter(filters).tags
        with self._session() as session:
            rows = session.scalars(
                select(FragmentRow).where(*self._conditions(filters)).order_by(FragmentRow.id)
            ).all()
            fragments = [row.to_fragment() for row in rows]
        return [fragment for fragment in fragments if matches_tags(fragment, tags)]

    def count(self, filters: Optional[FragmentFilter] = None) -> int:
        if resolve_filter(filters).tags:
            # Tag intersection is evaluated in Python, so count the query itself
            return len(self.query(filters))
        with self._session() as session:
            return session.scalar(
                select(func.count()).select_from(FragmentRow).where(*self._conditions(filters))
            )

    def search_by_vector(
        self,
        embedding: List[float],
        top_k: int,
        filters: Optional[FragmentFilter] = None,
    ) -> List[Tuple[Fragment, float]]:
        query_vector = as_vector(embedding, self.dimension)
        if query_vector is None or top_k <= 0:
            return []

        if self._vec_available:
            candidates = self._ann_candidates(query_vector, top_k, filters)
        else:
            candidates = None
        if candidates is None:
            candidates = self.query(filters)

        return self._rank(query_vector, candidates, top_k)

    def _ann_candidates(
        self, query_vector: np.ndarray, top_k: int, filters: Optional[FragmentFilter]
    ) -> Optional[List[Fragment]]:
        """
        Over-fetch nearest neighbors from the vec0 index and post-filter.

        Widens k until enough filtered matches are found or the whole index
        has been covered. Returns None when k would exceed the sqlite-vec
        limit, in which case the caller scans instead.
        """
        tags = resolve_filter(filters).tags
        conditions = self._conditions(filters)
        blob = sqlite_vec.serialize_float32(query_vector.tolist())

        with self._session() as session:
            total = session.scalar(text(f"SELECT count(*) FROM {VECTOR_TABLE}")) or 0
            if total == 0:
                return []
            k = min(total, top_k * OVERFETCH_FACTOR)
            while True:
                if k > MAX_KNN_K:
                    logger.debug(f"KNN k={k} exceeds sqlite-vec limit, scanning instead")
                    return None
                seqs = [
                    row[0]
                    for row in session.execute(
                        text(
                            f"SELECT rowid, distance FROM {VECTOR_TABLE} "
                            "WHERE embedding MATCH :embedding AND k = :k ORDER BY distance"
                        ),
                        {"embedding": blob, "k": k},
                    ).all()
                ]
                rows = session.scalars(
                    select(FragmentRow).where(FragmentRow.seq.in_(seqs), *conditions)
                ).all()
                matched = [
                    fragment
                    for fragment in (row.to_fragment() for row in rows)
                    if matches_tags(fragment, tags)
                ]
                if len(matched) >= top_k or k >= total:
                    return matched
                k = min(total, k * 2)

    def _rank(
        self, query_vector: np.ndarray, candidates: List[Fragment], top_k: int
    ) -> List[Tuple[Fragment, float]]:
        usable = []
        vectors = []
        for fragment in candidates:
            vector = as_vector(fragment.embedding, self.dimension)
            if vector is None:
                continue
            usable.append(fragment)
            vectors.append(normalize(vector))
        if not usable:
            return []

        scores = cosine_similarities(query_vector, np.vstack(vectors))
        ranked = sorted(zip(usable, scores.tolist()), key=lambda pair: (-pair[1], pair[0].id))
        return ranked[:top_k]

    def export_all(self) -> List[Fragment]:
        return self.query(None)

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def is_available(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            logger.warning(f"SQLite backend unavailable: {e}")
            return False

    def get_stats(self) -> StorageStats:
        with self._session() as session:
            total = session.scalar(select(func.count()).select_from(FragmentRow)) or 0
            archived = session.scalar(
                select(func.count()).select_from(FragmentRow).where(FragmentRow.is_archived.is_(True))
            ) or 0
            pinned = session.scalar(
                select(func.count()).select_from(FragmentRow).where(FragmentRow.is_pinned.is_(True))
            ) or 0
            unembedded = session.scalar(
                select(func.count())
                .select_from(FragmentRow)
                .where(FragmentRow.embedding_json.is_(None))
            ) or 0
            average = session.scalar(select(func.avg(FragmentRow.relevance_score))) or 0.0
            by_kind = {kind: 0 for kind in FRAGMENT_KINDS}
            for kind, count in session.execute(
                select(FragmentRow.kind, func.count()).group_by(FragmentRow.kind)
            ).all():
                by_kind[kind] = count
            page_count = session.scalar(text("PRAGMA page_count")) or 0
            page_size = session.scalar(text("PRAGMA page_size")) or 0
            indexed = (
                session.scalar(text(f"SELECT count(*) FROM {VECTOR_TABLE}")) or 0
                if self._vec_available
                else total - unembedded
            )

        return StorageStats(
            backend="sqlite",
            total_fragments=total,
            archived_fragments=archived,
            pinned_fragments=pinned,
            unembedded_fragments=unembedded,
            by_kind=by_kind,
            average_relevance=float(average),
            storage_bytes=page_count * page_size,
            indexed_vectors=indexed,
            extra={"native_ann": self._vec_available, "url": str(self.engine.url)},
        )
