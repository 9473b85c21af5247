"""
Consolidation pipeline.

Batch maintenance over one namespace (or all of them):

    re-embed -> deduplicate -> merge -> decay -> archive -> report

Each namespace is one batch. The batch is planned from a snapshot of the
namespace, then committed in a single synchronous step under the
namespace lock, so readers see either the whole batch or none of it. A
failed commit is rolled back to the snapshot and the batch contributes
nothing to the report except its error.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence, Set

import numpy as np

from hindsight.config import HindsightConfig
from hindsight.embeddings.protocol import TextEmbedding, embed_with_timeout
from hindsight.errors import ConsolidationError
from hindsight.models import ConsolidationReport, Fragment, FragmentFilter, utc_now
from hindsight.namespaces import CommitHook, NamespaceLocks
from hindsight.scoring import ApplyDecay, Archive, apply_command
from hindsight.similarity import as_vector, normalize, similar_pairs
from hindsight.storage.protocols import StorageAdapter
from hindsight.vector_index import VectorIndex

logger = logging.getLogger(__name__)

# Relevance changes smaller than this are not worth a write
DECAY_EPSILON = 1e-9


class UnionFind:
    """Disjoint sets over 0..n-1 with path halving."""

    def __init__(self, size: int):
        self.parent = list(range(size))

    def find(self, item: int) -> int:
        while self.parent[item] != item:
            self.parent[item] = self.parent[self.parent[item]]
            item = self.parent[item]
        return item

    def union(self, a: int, b: int) -> None:
        root_a, root_b = self.find(a), self.find(b)
        if root_a != root_b:
            # Smaller index wins so cluster roots do not depend on pair order
            if root_b < root_a:
                root_a, root_b = root_b, root_a
            self.parent[root_b] = root_a

    def groups(self) -> List[List[int]]:
        clusters: Dict[int, List[int]] = {}
        for item in range(len(self.parent)):
            clusters.setdefault(self.find(item), []).append(item)
        return list(clusters.values())


def find_duplicate_clusters(fragments: Sequence[Fragment], threshold: float) -> List[List[Fragment]]:
    """
    Group fragments whose embeddings are at least ``threshold`` similar.

    Clusters are transitive: A~B and B~C puts A, B and C together even when
    A and C alone fall below the threshold. Only clusters with two or more
    members are returned. Fragments without a usable embedding are ignored.
    """
    usable = []
    vectors = []
    for fragment in sorted(fragments, key=lambda f: f.id):
        vector = as_vector(fragment.embedding)
        if vector is None:
            continue
        usable.append(fragment)
        vectors.append(normalize(vector))

    if len(usable) < 2 or len({v.shape[0] for v in vectors}) != 1:
        return []

    sets = UnionFind(len(usable))
    for i, j in similar_pairs(np.vstack(vectors), threshold):
        sets.union(i, j)

    return [[usable[i] for i in group] for group in sets.groups() if len(group) > 1]


def merge_cluster(members: Sequence[Fragment], now: datetime) -> Fragment:
    """
    Collapse a duplicate cluster into its surviving fragment.

    The survivor is the most recently updated member (ties go to the lowest
    id) and keeps its own content and embedding. It takes the highest
    relevance in the cluster, the union of source ids ordered by member
    recency (merged-away ids included), the union of tags, and the summed
    access history.
    """
    ordered = sorted(members, key=lambda f: (-f.updated_at.timestamp(), f.id))
    survivor = ordered[0]

    source_ids: List[str] = []
    tags: List[str] = []
    for member in ordered:
        source_ids.extend(member.source_ids)
        if member is not survivor:
            source_ids.append(member.id)
        tags.extend(member.tags)

    accessed = [m.last_accessed_at for m in ordered if m.last_accessed_at is not None]

    return survivor.model_copy(
        update={
            "relevance_score": max(m.relevance_score for m in ordered),
            "source_ids": list(dict.fromkeys(source_ids)),
            "tags": list(dict.fromkeys(tags)),
            "is_pinned": any(m.is_pinned for m in ordered),
            "access_count": sum(m.access_count for m in ordered),
            "last_accessed_at": max(accessed) if accessed else None,
            "updated_at": now,
        }
    )


@dataclass
class BatchPlan:
    """Planned effect of consolidating one namespace."""

    namespace: str
    before: Dict[str, Fragment]
    after: Dict[str, Fragment] = field(default_factory=dict)
    deleted: Set[str] = field(default_factory=set)
    merged: int = 0
    compressed: int = 0
    decayed: int = 0
    archived: int = 0
    reembedded: int = 0

    @property
    def changed(self) -> List[Fragment]:
        return [
            fragment
            for fragment_id, fragment in sorted(self.after.items())
            if fragment != self.before.get(fragment_id)
        ]


class ConsolidationPipeline:
    """
    Deduplicate, merge, decay and archive fragments.

    Args:
        adapter: Storage adapter
        index: Vector index kept in step with storage
        config: Engine configuration (thresholds, decay rate, timeout)
        embedding: Provider used to re-embed fragments stored without a vector
        locks: Shared per-namespace locks
        clock: Source of "now"; injectable for tests
        on_commit: Called with (written fragments, deleted ids) after each
            committed batch
    """

    def __init__(
        self,
        adapter: StorageAdapter,
        index: VectorIndex,
        config: HindsightConfig,
        embedding: Optional[TextEmbedding] = None,
        locks: Optional[NamespaceLocks] = None,
        clock: Callable[[], datetime] = utc_now,
        on_commit: Optional[CommitHook] = None,
    ):
        self.adapter = adapter
        self.index = index
        self.config = config
        self.embedding = embedding
        self.locks = locks or NamespaceLocks()
        self.clock = clock
        self.on_commit = on_commit

    async def run(self, namespace: Optional[str] = None) -> ConsolidationReport:
        """
        Consolidate one namespace, or every namespace in storage.

        Safe to call repeatedly: a run with no pending work reports zeros
        and writes nothing.

        Returns:
            Report with counts summed over the batches that committed
        """
        report = ConsolidationReport(started_at=self.clock())
        started = time.perf_counter()

        if namespace is not None:
            namespaces = [namespace]
        else:
            namespaces = sorted({f.namespace for f in self.adapter.query(FragmentFilter.everything())})

        for name in namespaces:
            async with self.locks(name):
                try:
                    plan = await self._consolidate_namespace(name)
                except Exception as e:
                    logger.error(f"Consolidation of namespace {name} failed: {e}")
                    report.failed_namespaces.append(name)
                    report.errors.append(f"{name}: {e}")
                    continue

            report.namespaces_processed.append(name)
            report.merged += plan.merged
            report.compressed += plan.compressed
            report.decayed += plan.decayed
            report.archived += plan.archived
            report.reembedded += plan.reembedded

        report.duration_ms = (time.perf_counter() - started) * 1000
        logger.info(
            f"Consolidation finished in {report.duration_ms:.1f}ms: merged={report.merged}, "
            f"compressed={report.compressed}, decayed={report.decayed}, archived={report.archived}, "
            f"reembedded={report.reembedded}, failed={len(report.failed_namespaces)}"
        )
        return report

    async def _consolidate_namespace(self, namespace: str) -> BatchPlan:
        snapshot = self.adapter.query(FragmentFilter(namespace=namespace, include_archived=True))
        plan = BatchPlan(namespace=namespace, before={f.id: f for f in snapshot})
        plan.after = dict(plan.before)

        # The only await in the batch; nothing is written until commit
        await self._reembed(plan)

        now = self.clock()
        self._deduplicate_and_merge(plan, now)
        self._decay(plan, now)
        self._archive(plan, now)
        self._commit(plan)
        return plan

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    async def _reembed(self, plan: BatchPlan) -> None:
        dimension = self.config.embedding_dimension
        pending = [
            fragment
            for fragment in plan.after.values()
            if not fragment.is_archived
            and (fragment.needs_reembedding or as_vector(fragment.embedding, dimension) is None)
        ]
        if not pending:
            return

        for fragment in sorted(pending, key=lambda f: f.id):
            vector = await embed_with_timeout(
                self.embedding, fragment.content, self.config.embedding_timeout_seconds
            )
            if as_vector(vector, dimension) is not None:
                plan.after[fragment.id] = fragment.model_copy(
                    update={"embedding": vector, "needs_reembedding": False}
                )
                plan.reembedded += 1
            elif not fragment.needs_reembedding:
                # Malformed vector and no replacement yet: flag it for the next pass
                plan.after[fragment.id] = fragment.model_copy(update={"needs_reembedding": True})
                logger.warning(f"Fragment {fragment.id} has a malformed embedding; flagged for re-embedding")
            else:
                logger.debug(f"Fragment {fragment.id} still unembedded; retrying next consolidation")

    def _deduplicate_and_merge(self, plan: BatchPlan, now: datetime) -> None:
        dimension = self.config.embedding_dimension
        candidates = [
            fragment
            for fragment in plan.after.values()
            if not fragment.is_archived and as_vector(fragment.embedding, dimension) is not None
        ]
        for cluster in find_duplicate_clusters(candidates, self.config.deduplication_threshold):
            survivor = merge_cluster(cluster, now)
            plan.after[survivor.id] = survivor
            for member in cluster:
                if member.id != survivor.id:
                    del plan.after[member.id]
                    plan.deleted.add(member.id)
            plan.merged += 1
            plan.compressed += len(cluster) - 1
            logger.debug(f"Merged {len(cluster)} duplicates into {survivor.id}")

    def _decay(self, plan: BatchPlan, now: datetime) -> None:
        if self.config.decay_rate == 0:
            return
        for fragment_id, fragment in list(plan.after.items()):
            if fragment.is_archived or fragment.is_pinned:
                continue
            decayed = apply_command(fragment, ApplyDecay(decay_rate=self.config.decay_rate, at=now))
            if fragment.relevance_score - decayed.relevance_score > DECAY_EPSILON:
                plan.after[fragment_id] = decayed
                plan.decayed += 1

    def _archive(self, plan: BatchPlan, now: datetime) -> None:
        for fragment_id, fragment in list(plan.after.items()):
            if not fragment.is_archived and fragment.relevance_score < self.config.deletion_threshold:
                plan.after[fragment_id] = apply_command(fragment, Archive(at=now))
                plan.archived += 1

    # ------------------------------------------------------------------
    # Commit / rollback
    # ------------------------------------------------------------------

    def _commit(self, plan: BatchPlan) -> None:
        changed = plan.changed
        if not changed and not plan.deleted:
            return

        try:
            if changed:
                self.adapter.bulk_write(changed)
            for fragment_id in sorted(plan.deleted):
                self.adapter.delete(fragment_id)
        except Exception as e:
            self._rollback(plan, changed)
            raise ConsolidationError(
                f"commit failed, namespace restored to its pre-run state: {e}",
                namespace=plan.namespace,
            ) from e

        for fragment in changed:
            self.index.index(fragment.id, fragment.embedding)
        for fragment_id in plan.deleted:
            self.index.remove(fragment_id)
        if self.on_commit is not None:
            self.on_commit(changed, sorted(plan.deleted))

        logger.debug(
            f"Committed consolidation of {plan.namespace}: "
            f"{len(changed)} written, {len(plan.deleted)} removed"
        )

    def _rollback(self, plan: BatchPlan, changed: List[Fragment]) -> None:
        touched = {fragment.id for fragment in changed} | plan.deleted
        originals = [plan.before[fragment_id] for fragment_id in sorted(touched)]
        try:
            self.adapter.bulk_write(originals)
            logger.warning(f"Rolled back consolidation of {plan.namespace} ({len(originals)} fragments)")
        except Exception as e:
            logger.error(f"Rollback of namespace {plan.namespace} failed: {e}")
            raise
