"""
Namespace keys, per-namespace locking, and fork/merge.

A namespace is ``{project_id}:{agent_id}`` or ``{project_id}:shared``.
Fork makes an isolated point-in-time copy for a parallel execution branch;
merge reconciles a branch back, keeping one copy per lineage.
"""

import asyncio
import logging
import uuid
from collections import defaultdict
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from hindsight.errors import NamespaceError
from hindsight.models import (
    ForkReport,
    Fragment,
    FragmentFilter,
    NamespaceMergeReport,
    utc_now,
)
from hindsight.scoring import Archive, apply_command
from hindsight.storage.protocols import StorageAdapter
from hindsight.vector_index import VectorIndex

logger = logging.getLogger(__name__)

SHARED_AGENT = "shared"

# Receives (written fragments, deleted ids) after a storage commit
CommitHook = Callable[[List[Fragment], List[str]], None]


def make_namespace(project_id: str, agent_id: Optional[str] = None) -> str:
    """Build a namespace key; a missing agent means the project's shared namespace."""
    if not project_id or ":" in project_id:
        raise NamespaceError(f"Invalid project id for namespace: '{project_id}'")
    return f"{project_id}:{agent_id or SHARED_AGENT}"


def parse_namespace(namespace: str) -> Tuple[str, str]:
    """
    Split a namespace key into (project_id, agent_id).

    Raises:
        NamespaceError: If the key is not of the form 'project:agent'
    """
    project_id, sep, agent_id = namespace.partition(":")
    if not sep or not project_id or not agent_id:
        raise NamespaceError(f"Namespace must look like 'project:agent', got '{namespace}'")
    return project_id, agent_id


def is_shared(namespace: str) -> bool:
    return parse_namespace(namespace)[1] == SHARED_AGENT


def are_siblings(namespace_a: str, namespace_b: str) -> bool:
    """Distinct namespaces under the same project."""
    return (
        namespace_a != namespace_b
        and parse_namespace(namespace_a)[0] == parse_namespace(namespace_b)[0]
    )


class NamespaceLocks:
    """
    One asyncio lock per namespace.

    Writers of the same namespace serialize; different namespaces never
    share a lock.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def __call__(self, namespace: str) -> asyncio.Lock:
        return self._locks[namespace]

    def locked(self, namespace: str) -> bool:
        return namespace in self._locks and self._locks[namespace].locked()


class NamespaceManager:
    """
    Fork and merge of memory namespaces.

    Fragments are never moved between namespaces in place: fork and merge
    write copies with fresh ids that keep their lineage in ``origin_id``.
    """

    def __init__(
        self,
        adapter: StorageAdapter,
        index: VectorIndex,
        locks: Optional[NamespaceLocks] = None,
        on_commit: Optional[CommitHook] = None,
    ):
        self.adapter = adapter
        self.index = index
        self.locks = locks or NamespaceLocks()
        self.on_commit = on_commit

    @staticmethod
    def _copy_into(fragment: Fragment, namespace: str) -> Fragment:
        data = fragment.model_dump()
        data.update(
            id=str(uuid.uuid4()),
            namespace=namespace,
            origin_id=fragment.lineage_id,
        )
        return Fragment(**data)

    def _commit(self, writes: List[Fragment]) -> None:
        if writes:
            self.adapter.bulk_write(writes)
        for fragment in writes:
            self.index.index(fragment.id, fragment.embedding)
        if writes and self.on_commit is not None:
            self.on_commit(writes, [])

    async def fork(self, source: str, target: str) -> ForkReport:
        """
        Create ``target`` as a point-in-time copy of every non-archived fragment in ``source``.

        Raises:
            NamespaceError: If source == target, either key is malformed, or
                the target already holds fragments
        """
        parse_namespace(source)
        parse_namespace(target)
        if source == target:
            raise NamespaceError("Cannot fork a namespace into itself")

        async with self.locks(target):
            if self.adapter.count(FragmentFilter(namespace=target, include_archived=True)):
                raise NamespaceError(f"Fork target '{target}' already contains fragments")

            originals = self.adapter.query(FragmentFilter(namespace=source))
            copies = [self._copy_into(fragment, target) for fragment in originals]
            self._commit(copies)

        report = ForkReport(
            source_namespace=source,
            target_namespace=target,
            copied=len(copies),
            id_map={original.id: copy.id for original, copy in zip(originals, copies)},
        )
        logger.info(f"Forked namespace {source} -> {target} ({report.copied} fragments)")
        return report

    async def merge(self, source: str, target: str) -> NamespaceMergeReport:
        """
        Reconcile ``source`` into ``target``.

        Fragments sharing a lineage keep only the copy with the higher
        relevance (ties keep the target's). The displaced target copy is
        archived; a displaced source copy is simply not brought over. The
        source namespace itself is left unchanged.
        """
        parse_namespace(source)
        parse_namespace(target)
        if source == target:
            raise NamespaceError("Cannot merge a namespace into itself")

        report = NamespaceMergeReport(source_namespace=source, target_namespace=target)
        now = utc_now()

        async with self.locks(target):
            by_lineage = self._best_by_lineage(self.adapter.query(FragmentFilter(namespace=target)))
            writes: List[Fragment] = []
            displaced: List[Fragment] = []

            for fragment in self.adapter.query(FragmentFilter(namespace=source)):
                existing = by_lineage.get(fragment.lineage_id)
                if existing is None:
                    copy = self._copy_into(fragment, target)
                    by_lineage[copy.lineage_id] = copy
                    writes.append(copy)
                    report.kept += 1
                elif fragment.relevance_score > existing.relevance_score:
                    copy = self._copy_into(fragment, target)
                    by_lineage[copy.lineage_id] = copy
                    writes.append(copy)
                    report.kept += 1
                    if existing in writes:
                        # An earlier source copy of the same lineage loses
                        writes.remove(existing)
                        report.kept -= 1
                    else:
                        displaced.append(apply_command(existing, Archive(at=now)))
                        report.replaced_ids.append(existing.id)
                    report.discarded += 1
                else:
                    report.discarded += 1

            self._commit(writes + displaced)

        logger.info(
            f"Merged namespace {source} -> {target}: kept={report.kept}, "
            f"discarded={report.discarded}, replaced={len(report.replaced_ids)}"
        )
        return report

    def _best_by_lineage(self, fragments: Iterable[Fragment]) -> Dict[str, Fragment]:
        best: Dict[str, Fragment] = {}
        for fragment in fragments:
            current = best.get(fragment.lineage_id)
            if current is None or fragment.relevance_score > current.relevance_score:
                best[fragment.lineage_id] = fragment
        return best
