"""
Memory engine façade.

Single entry point coordinating store, retrieve, search, consolidation,
snapshot export/import, namespace fork/merge, and lifecycle. All public
operations are async; storage adapters underneath are synchronous.

When the storage backend stops answering, the engine keeps working from
an in-memory cache and queues writes for replay (see ``WriteRetryQueue``).
"""

import asyncio
import logging
import math
from collections import OrderedDict
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from pydantic import ValidationError

from hindsight.config import HindsightConfig
from hindsight.consolidation import ConsolidationPipeline
from hindsight.embeddings.protocol import TextEmbedding, embed_with_timeout
from hindsight.errors import (
    ConfigurationError,
    FragmentValidationError,
    NamespaceError,
    StorageUnavailableError,
)
from hindsight.models import (
    ConsolidationReport,
    ForkReport,
    Fragment,
    FragmentFilter,
    FragmentInput,
    HealthStatus,
    ImportReport,
    NamespaceMergeReport,
    RetrievalQuery,
    RetrievalResult,
    ScoredFragment,
    StorageStats,
    utc_now,
)
from hindsight.namespaces import NamespaceLocks, NamespaceManager, make_namespace, parse_namespace
from hindsight.resilience import WriteRetryQueue
from hindsight.retrieval import Retriever, format_fragments, select_within_budget
from hindsight.scoring import RecordAccess, Reinforce, ScoringCommand, SetPinned, apply_command
from hindsight.similarity import as_vector
from hindsight.snapshot import dump_snapshot, dumps_snapshot, load_snapshot, parse_snapshot
from hindsight.storage.factory import create_storage_adapter
from hindsight.storage.memory import InMemoryStorageAdapter
from hindsight.storage.protocols import StorageAdapter
from hindsight.vector_index import VectorIndex

logger = logging.getLogger(__name__)


class MemoryEngine:
    """
    Persistent, vector-indexed long-term memory for agents.

    Args:
        config: Engine configuration (defaults to ``HindsightConfig()``)
        embedding: Embedding provider; without one, fragments must arrive
            with pre-computed embeddings and queries must carry a vector
        adapter: Storage adapter; built from ``config`` when omitted
        clock: Source of "now"; injectable for tests

    Raises:
        ConfigurationError: If the config is invalid or the provider's
            dimension does not match ``config.embedding_dimension``

    Example:
        >>> async with MemoryEngine(config, embedding=E5Embedding()) as engine:
        ...     await engine.store(FragmentInput(
        ...         content="Token refresh raced with logout in auth/session.ts",
        ...         agent_id="builder", project_id="nova"))
        ...     result = await engine.retrieve(RetrievalQuery(
        ...         namespace="nova:builder", text="session token bugs"))
    """

    def __init__(
        self,
        config: Optional[HindsightConfig] = None,
        embedding: Optional[TextEmbedding] = None,
        adapter: Optional[StorageAdapter] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        if config is None:
            config = HindsightConfig()
        elif not isinstance(config, HindsightConfig):
            raise ConfigurationError(f"Expected HindsightConfig, got {type(config).__name__}")
        if embedding is not None and embedding.dimension != config.embedding_dimension:
            raise ConfigurationError(
                f"Embedding provider {embedding.model_name} produces {embedding.dimension} dimensions, "
                f"config expects {config.embedding_dimension}"
            )

        self.config = config
        self.embedding = embedding
        self.clock = clock
        self.adapter = adapter if adapter is not None else create_storage_adapter(config)
        self.locks = NamespaceLocks()

        dimension = config.embedding_dimension
        self.index = VectorIndex(self.adapter, dimension, config.brute_force_threshold)
        self.retriever = Retriever(self.index, config, clock)
        self.namespaces = NamespaceManager(self.adapter, self.index, self.locks, on_commit=self._sync_cache)
        self.pipeline = ConsolidationPipeline(
            self.adapter,
            self.index,
            config,
            embedding=embedding,
            locks=self.locks,
            clock=clock,
            on_commit=self._sync_cache,
        )

        # Degraded mode
        self.cache = InMemoryStorageAdapter(dimension=dimension)
        self.cache_index = VectorIndex(self.cache, dimension, config.brute_force_threshold)
        self.cache_retriever = Retriever(self.cache_index, config, clock)
        self._cache_order: "OrderedDict[str, None]" = OrderedDict()
        self.retry_queue = WriteRetryQueue(
            self.adapter,
            max_attempts=config.retry_max_attempts,
            base_delay=config.retry_base_delay_seconds,
            max_delay=config.retry_max_delay_seconds,
        )
        self._drain_task: Optional[asyncio.Task] = None
        self._reads_degraded = False
        self._consolidation_task: Optional[asyncio.Task] = None

        self._initialized = False
        self._last_consolidation_at: Optional[datetime] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Prepare the backend and build the vector index from stored fragments."""
        if self._initialized:
            return
        self.adapter.initialize()
        size = await self.index.rebuild()
        self._initialized = True
        logger.info(
            f"MemoryEngine initialized: backend={type(self.adapter).__name__}, "
            f"indexed={size}, native_ann={self.adapter.supports_native_ann}"
        )

    async def shutdown(self) -> None:
        """Stop background tasks, make a last attempt to flush queued writes, and close the backend."""
        for task in (self._consolidation_task, self._drain_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._consolidation_task = None
        if len(self.retry_queue):
            self.retry_queue.flush_once()
            if len(self.retry_queue):
                logger.warning(f"Shutting down with {len(self.retry_queue)} unflushed writes")

        self.adapter.close()
        self._initialized = False
        logger.info("MemoryEngine shut down")

    async def __aenter__(self) -> "MemoryEngine":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()

    async def _ensure_initialized(self) -> None:
        if not self._initialized:
            await self.initialize()

    @property
    def degraded(self) -> bool:
        """True while writes are queued or reads are served from the cache."""
        return bool(len(self.retry_queue)) or self._reads_degraded

    # ------------------------------------------------------------------
    # Store
    # ------------------------------------------------------------------

    def _validate(self, data: Union[FragmentInput, Dict[str, Any]]) -> Tuple[FragmentInput, str]:
        if not isinstance(data, FragmentInput):
            try:
                data = FragmentInput.model_validate(data)
            except ValidationError as e:
                messages = [f"{'.'.join(map(str, err['loc']))}: {err['msg']}" for err in e.errors()]
                raise FragmentValidationError(f"Invalid fragment input: {e}", errors=messages) from e

        errors = []
        if not data.content or not data.content.strip():
            errors.append("content must not be empty")
        elif len(data.content) > self.config.max_content_length:
            errors.append(
                f"content is {len(data.content)} characters, limit is {self.config.max_content_length}"
            )
        if not data.agent_id.strip():
            errors.append("agent_id is required")
        if not data.project_id.strip():
            errors.append("project_id is required")

        namespace = None
        if not errors:
            try:
                namespace = data.namespace or make_namespace(data.project_id, data.agent_id)
                project_id, _ = parse_namespace(namespace)
                if project_id != data.project_id:
                    errors.append(
                        f"namespace '{namespace}' belongs to project '{project_id}', not '{data.project_id}'"
                    )
            except NamespaceError as e:
                errors.append(str(e))

        if data.embedding is not None and as_vector(data.embedding, self.config.embedding_dimension) is None:
            errors.append(
                f"embedding must have {self.config.embedding_dimension} finite values and a non-zero norm"
            )

        if errors:
            raise FragmentValidationError(f"Invalid fragment input: {'; '.join(errors)}", errors=errors)
        return data, namespace

    async def store(self, data: Union[FragmentInput, Dict[str, Any]]) -> Fragment:
        """
        Validate, embed and persist a new fragment.

        If the embedding provider fails or times out the fragment is still
        stored, without an embedding and flagged for re-embedding by the
        next consolidation.

        Args:
            data: Producer input (a FragmentInput or an equivalent dict)

        Returns:
            The created fragment

        Raises:
            FragmentValidationError: If the input is malformed; nothing is stored
            StorageUnavailableError: If the backend is down and retries are exhausted
        """
        await self._ensure_initialized()
        data, namespace = self._validate(data)

        embedding = data.embedding
        if embedding is None:
            embedding = await embed_with_timeout(
                self.embedding, data.content, self.config.embedding_timeout_seconds
            )
            if embedding is not None and as_vector(embedding, self.config.embedding_dimension) is None:
                logger.warning(f"Provider returned a malformed embedding for '{data.content[:50]}...'")
                embedding = None

        fragment = Fragment.create(data, namespace=namespace, embedding=embedding, now=self.clock())
        async with self.locks(namespace):
            self._persist([fragment])

        if fragment.needs_reembedding:
            logger.info(f"Stored fragment {fragment.id} in {namespace} without embedding (queued for re-embedding)")
        else:
            logger.info(f"Stored fragment {fragment.id} in {namespace}")
        return fragment

    def _persist(self, fragments: List[Fragment]) -> None:
        """
        Write fragments to the backend, falling back to cache + retry queue.

        Raises:
            StorageUnavailableError: If earlier retries are exhausted and the
                backend is still down; nothing is written
        """
        if len(self.retry_queue) and not self._recover():
            if self.retry_queue.exhausted:
                raise StorageUnavailableError(
                    f"Storage backend unavailable and write retries exhausted "
                    f"({len(self.retry_queue)} writes pending): {self.retry_queue.last_error}"
                )
            self._queue(fragments)
        else:
            try:
                if len(fragments) == 1:
                    self.adapter.write(fragments[0])
                else:
                    self.adapter.bulk_write(fragments)
            except Exception as e:
                if self.adapter.is_available():
                    raise
                logger.warning(f"Storage backend unavailable, entering degraded mode: {e}")
                self._queue(fragments)
            else:
                self._cache_put(fragments)

        for fragment in fragments:
            self.index.index(fragment.id, fragment.embedding)

    def _queue(self, fragments: List[Fragment]) -> None:
        for fragment in fragments:
            self.retry_queue.enqueue_write(fragment)
        self._cache_put(fragments)
        if self._drain_task is None or self._drain_task.done():
            self._drain_task = asyncio.create_task(self._drain())

    async def _drain(self) -> None:
        try:
            await self.retry_queue.drain()
        except StorageUnavailableError as e:
            logger.error(f"Giving up on queued writes for now: {e}")

    def _recover(self) -> bool:
        """Try to flush queued writes. True when the queue is empty afterwards."""
        self.retry_queue.flush_once()
        return not len(self.retry_queue)

    # ------------------------------------------------------------------
    # Degraded-mode cache
    # ------------------------------------------------------------------

    def _cache_put(self, fragments: List[Fragment]) -> None:
        for fragment in fragments:
            self.cache.write(fragment)
            self.cache_index.index(fragment.id, fragment.embedding)
            self._cache_order[fragment.id] = None
            self._cache_order.move_to_end(fragment.id)
        self._evict()

    def _cache_drop(self, fragment_ids: List[str]) -> None:
        for fragment_id in fragment_ids:
            self.cache.delete(fragment_id)
            self.cache_index.remove(fragment_id)
            self._cache_order.pop(fragment_id, None)

    def _evict(self) -> None:
        """Drop least recently touched entries beyond the cap; queued writes stay cached."""
        excess = len(self._cache_order) - self.config.cache_max_fragments
        if excess <= 0:
            return
        queued = {item.fragment_id for item in self.retry_queue.pending}
        victims = []
        for fragment_id in self._cache_order:
            if len(victims) == excess:
                break
            if fragment_id not in queued:
                victims.append(fragment_id)
        self._cache_drop(victims)
        logger.debug(f"Evicted {len(victims)} fragments from the read cache")

    def _sync_cache(self, written: List[Fragment], deleted: List[str]) -> None:
        """Mirror a committed backend mutation into the cache."""
        self._cache_drop(deleted)
        self._cache_put(written)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _read_primary(self, operation: Callable[[], Any], fallback: Callable[[], Any]) -> Tuple[Any, bool]:
        if len(self.retry_queue) and not self._recover():
            return fallback(), True
        try:
            result = operation()
        except Exception as e:
            if self.adapter.is_available():
                raise
            if not self._reads_degraded:
                logger.warning(f"Storage backend unavailable, serving reads from cache: {e}")
            self._reads_degraded = True
            return fallback(), True
        self._reads_degraded = False
        return result, False

    async def get(self, fragment_id: str) -> Optional[Fragment]:
        """Fetch a fragment by id, archived or not. Returns None if it does not exist."""
        await self._ensure_initialized()
        fragment, _ = self._read_primary(
            lambda: self.adapter.read(fragment_id), lambda: self.cache.read(fragment_id)
        )
        return fragment

    async def _query_embedding(self, query: RetrievalQuery) -> Optional[List[float]]:
        if query.embedding is not None:
            return query.embedding
        return await embed_with_timeout(
            self.embedding, query.text, self.config.embedding_timeout_seconds, query=True
        )

    async def _rank(self, query: RetrievalQuery) -> Tuple[List[ScoredFragment], bool]:
        parse_namespace(query.namespace)
        embedding = await self._query_embedding(query)
        if embedding is None:
            logger.warning(f"No query embedding available for {query.namespace}; returning no memories")
            return [], True

        ranked, degraded = self._read_primary(
            lambda: self.retriever.rank(query, embedding),
            lambda: self.cache_retriever.rank(query, embedding),
        )
        if not degraded:
            self._cache_put([scored.fragment for scored in ranked])
        return ranked, degraded

    async def retrieve(self, query: RetrievalQuery) -> RetrievalResult:
        """
        Best memories for a query, formatted for prompt injection within a token budget.

        Every selected fragment has its access count and last-access time
        updated; fragments that were ranked but not selected are left alone.
        """
        await self._ensure_initialized()
        ranked, degraded = await self._rank(query)
        budget = query.token_budget or self.config.token_budget
        selected, tokens_used, truncated = select_within_budget(ranked, budget)
        selected = await self._record_access(selected)

        logger.info(
            f"Retrieved {len(selected)}/{len(ranked)} fragments for {query.namespace} "
            f"({tokens_used}/{budget} tokens{', truncated' if truncated else ''}"
            f"{', degraded' if degraded else ''})"
        )
        return RetrievalResult(
            formatted_text=format_fragments([scored.fragment for scored in selected]),
            fragments_used=selected,
            tokens_used=tokens_used,
            truncated=truncated,
            degraded=degraded,
        )

    async def search(self, query: RetrievalQuery) -> List[ScoredFragment]:
        """Ranked fragments for a query, without budget selection or formatting."""
        await self._ensure_initialized()
        ranked, _ = await self._rank(query)
        return await self._record_access(ranked)

    async def _record_access(self, selected: List[ScoredFragment]) -> List[ScoredFragment]:
        if not selected:
            return selected

        now = self.clock()
        updated: Dict[str, Fragment] = {}
        by_namespace: Dict[str, List[str]] = {}
        for scored in selected:
            by_namespace.setdefault(scored.fragment.namespace, []).append(scored.fragment.id)

        for namespace in sorted(by_namespace):
            async with self.locks(namespace):
                ids = by_namespace[namespace]
                current, _ = self._read_primary(
                    lambda: self.adapter.bulk_read(ids), lambda: self.cache.bulk_read(ids)
                )
                accessed = [
                    apply_command(current[fragment_id], RecordAccess(at=now))
                    for fragment_id in ids
                    if fragment_id in current
                ]
                if accessed:
                    self._persist(accessed)
                updated.update((fragment.id, fragment) for fragment in accessed)

        return [
            scored.model_copy(update={"fragment": updated.get(scored.fragment.id, scored.fragment)})
            for scored in selected
        ]

    # ------------------------------------------------------------------
    # Scoring-state commands
    # ------------------------------------------------------------------

    async def _apply(self, fragment_id: str, command: ScoringCommand) -> Optional[Fragment]:
        await self._ensure_initialized()
        fragment = await self.get(fragment_id)
        if fragment is None:
            return None
        async with self.locks(fragment.namespace):
            current = await self.get(fragment_id)
            if current is None:
                return None
            updated = apply_command(current, command)
            self._persist([updated])
        return updated

    async def reinforce(self, fragment_id: str, boost: Optional[float] = None) -> Optional[Fragment]:
        """
        Positive feedback on a fragment: relevance rises by the reinforcement boost, capped at 1.0.

        Returns:
            The updated fragment, or None if it does not exist

        Raises:
            ValueError: If boost is negative or not finite
        """
        boost = self.config.reinforcement_boost if boost is None else boost
        if not math.isfinite(boost) or boost < 0:
            raise ValueError(f"Reinforcement boost must be a non-negative number, got {boost}")
        return await self._apply(fragment_id, Reinforce(boost=boost, at=self.clock()))

    async def set_pinned(self, fragment_id: str, pinned: bool = True) -> Optional[Fragment]:
        """Pin (exempt from decay) or unpin a fragment. Returns None if it does not exist."""
        return await self._apply(fragment_id, SetPinned(pinned=pinned, at=self.clock()))

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def consolidate(self, namespace: Optional[str] = None) -> ConsolidationReport:
        """Run the consolidation pipeline over one namespace, or all of them."""
        await self._ensure_initialized()
        if namespace is not None:
            parse_namespace(namespace)
        report = await self.pipeline.run(namespace)
        self._last_consolidation_at = self.clock()
        return report

    def start_scheduled_consolidation(self) -> asyncio.Task:
        """
        Run ``consolidate()`` over every namespace every
        ``config.consolidation_interval_seconds`` until ``shutdown()``.

        Calling it again while the schedule is running returns the same task.
        """
        if self._consolidation_task is None or self._consolidation_task.done():
            self._consolidation_task = asyncio.create_task(self._consolidation_loop())
            logger.info(
                f"Scheduled consolidation every {self.config.consolidation_interval_seconds}s"
            )
        return self._consolidation_task

    async def _consolidation_loop(self) -> None:
        interval = self.config.consolidation_interval_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                report = await self.consolidate()
                if report.failed_namespaces:
                    logger.warning(
                        f"Scheduled consolidation failed for {report.failed_namespaces}"
                    )
            except Exception as e:
                logger.error(f"Scheduled consolidation failed: {e}", exc_info=True)

    async def rebuild_index(self) -> int:
        """Rebuild the vector index from storage. Reads continue against the old index meanwhile."""
        await self._ensure_initialized()
        return await self.index.rebuild()

    async def fork_namespace(self, source: str, target: str) -> ForkReport:
        await self._ensure_initialized()
        return await self.namespaces.fork(source, target)

    async def merge_namespaces(self, source: str, target: str) -> NamespaceMergeReport:
        await self._ensure_initialized()
        return await self.namespaces.merge(source, target)

    # ------------------------------------------------------------------
    # Export / import
    # ------------------------------------------------------------------

    async def export_all(self) -> List[Fragment]:
        """Every fragment, archived included, with embeddings and scoring state."""
        await self._ensure_initialized()
        return self.adapter.export_all()

    async def import_all(self, fragments: List[Fragment]) -> int:
        """Restore fragments (upsert by id) and rebuild the vector index."""
        await self._ensure_initialized()
        fragments = list(fragments)
        count = self.adapter.import_all(fragments)
        self._sync_cache(fragments, [])
        await self.index.rebuild()
        return count

    async def export_snapshot(
        self, namespace: Optional[str] = None, path: Optional[Union[str, Path]] = None
    ) -> str:
        """
        Serialize the store (or one namespace) as a snapshot.

        Args:
            namespace: Limit the snapshot to one namespace
            path: Also write the snapshot to this file

        Returns:
            Snapshot text
        """
        await self._ensure_initialized()
        if namespace is None:
            fragments = self.adapter.export_all()
        else:
            parse_namespace(namespace)
            fragments = self.adapter.query(FragmentFilter(namespace=namespace, include_archived=True))

        text = dumps_snapshot(fragments, self.config.embedding_dimension, namespace)
        if path is not None:
            dump_snapshot(fragments, path, self.config.embedding_dimension, namespace)
        logger.info(f"Exported snapshot of {len(fragments)} fragments{f' from {namespace}' if namespace else ''}")
        return text

    async def import_snapshot(
        self, text: Optional[str] = None, path: Optional[Union[str, Path]] = None
    ) -> ImportReport:
        """
        Load a snapshot produced by ``export_snapshot`` (from any backend).

        Records that fail validation are skipped and listed in the report.
        """
        await self._ensure_initialized()
        if (text is None) == (path is None):
            raise ValueError("Pass exactly one of text or path")
        snapshot = load_snapshot(path) if path is not None else parse_snapshot(text)

        dimension = snapshot.header.embedding_dimension
        if dimension is not None and dimension != self.config.embedding_dimension:
            logger.warning(
                f"Snapshot embeddings have {dimension} dimensions, engine expects "
                f"{self.config.embedding_dimension}; they will be flagged for re-embedding"
            )

        imported = self.adapter.import_all(snapshot.fragments) if snapshot.fragments else 0
        self._sync_cache(snapshot.fragments, [])
        await self.index.rebuild()
        report = ImportReport(imported=imported, skipped=len(snapshot.errors), errors=snapshot.errors)
        logger.info(f"Imported snapshot: {report.imported} fragments, {report.skipped} skipped")
        return report

    # ------------------------------------------------------------------
    # Health / stats
    # ------------------------------------------------------------------

    async def health_check(self) -> HealthStatus:
        errors = []
        available = self.adapter.is_available()
        if available and len(self.retry_queue):
            self._recover()

        fragment_count = 0
        try:
            fragment_count = self.adapter.count(None) if available else self.cache.count(None)
        except Exception as e:
            errors.append(f"count failed: {e}")
        if not available:
            errors.append("storage backend unavailable")
        if self.retry_queue.exhausted:
            errors.append(f"write retries exhausted: {self.retry_queue.last_error}")

        return HealthStatus(
            healthy=available and self._initialized and not errors,
            adapter_available=available,
            index_size=self.index.get_size(),
            fragment_count=fragment_count,
            last_consolidation_at=self._last_consolidation_at,
            degraded=self.degraded or not available,
            pending_writes=len(self.retry_queue),
            errors=errors,
        )

    async def get_stats(self) -> StorageStats:
        await self._ensure_initialized()
        stats = self.adapter.get_stats()
        extra = dict(stats.extra)
        extra.update(
            index_size=self.index.get_size(),
            malformed_embeddings=len(self.index.invalid_ids),
            pending_writes=len(self.retry_queue),
        )
        return stats.model_copy(update={"extra": extra})
