"""
Tests for the MemoryEngine façade.

Runs the engine against the in-memory adapter and a deterministic
embedder; degraded-mode tests use an adapter that can be switched off.
"""

import asyncio
from unittest.mock import AsyncMock, Mock

import pytest

from hindsight import MemoryEngine
from hindsight.config import HindsightConfig
from hindsight.errors import (
    ConfigurationError,
    EmbeddingError,
    FragmentValidationError,
    NamespaceError,
    StorageUnavailableError,
)
from hindsight.models import FragmentFilter, FragmentInput, RetrievalQuery
from hindsight.retrieval import FRAME_TOKENS, MEMORY_HEADER
from hindsight.scoring import estimate_tokens

DIMENSION = 8


@pytest.fixture
def engine(config, fake_embedding, memory_adapter, clock):
    return MemoryEngine(config, embedding=fake_embedding, adapter=memory_adapter, clock=clock)


def fragment_input(content="Token refresh raced with logout", embedding=None, **overrides):
    values = dict(content=content, agent_id="a1", project_id="p1", embedding=embedding)
    values.update(overrides)
    return FragmentInput(**values)


def mock_embedding(**methods):
    embedding = Mock()
    embedding.dimension = DIMENSION
    embedding.model_name = "mock-embedder"
    for name, method in methods.items():
        setattr(embedding, name, method)
    return embedding


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


def test_embedding_dimension_mismatch_refused(fake_embedding):
    with pytest.raises(ConfigurationError):
        MemoryEngine(HindsightConfig(embedding_dimension=384), embedding=fake_embedding)


def test_non_config_refused():
    with pytest.raises(ConfigurationError):
        MemoryEngine({"embedding_dimension": 8})


def test_adapter_built_from_config():
    engine = MemoryEngine(HindsightConfig(storage_type="memory", embedding_dimension=DIMENSION))
    assert engine.adapter.dimension == DIMENSION


@pytest.mark.asyncio
async def test_context_manager_initializes_and_shuts_down(config, memory_adapter, make_fragment, vec):
    memory_adapter.write(make_fragment(embedding=vec(1.0)))

    async with MemoryEngine(config, adapter=memory_adapter) as engine:
        assert engine.index.get_size() == 1
        assert (await engine.health_check()).healthy

    assert (await engine.health_check()).healthy is False


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_store_assigns_generated_fields(engine, fake_embedding, now):
    fragment = await engine.store(fragment_input(tags=["auth"], source_type="task", source_ids=["task-9"]))

    assert fragment.id
    assert fragment.namespace == "p1:a1"
    assert fragment.created_at == now
    assert fragment.updated_at == now
    assert fragment.tags == ["auth", "a1"]
    assert fragment.relevance_score == 1.0
    assert fragment.access_count == 0
    assert fragment.embedding == await fake_embedding.embed_document(fragment.content)
    assert fragment.needs_reembedding is False
    assert await engine.get(fragment.id) == fragment
    assert engine.index.contains(fragment.id)


@pytest.mark.asyncio
async def test_store_accepts_dict_and_explicit_namespace(engine):
    fragment = await engine.store(
        {"content": "Shared convention", "agent_id": "a1", "project_id": "p1", "namespace": "p1:shared"}
    )

    assert fragment.namespace == "p1:shared"


@pytest.mark.asyncio
async def test_precomputed_embedding_skips_provider(engine, fake_embedding, vec):
    fragment = await engine.store(fragment_input(embedding=vec(0.0, 1.0)))

    assert fragment.embedding == vec(0.0, 1.0)
    assert fake_embedding.calls == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides",
    [
        {"content": ""},
        {"content": "   "},
        {"content": "x" * 2001},
        {"agent_id": " "},
        {"project_id": ""},
        {"namespace": "p2:a1"},
        {"namespace": "no-separator"},
        {"embedding": [1.0, 0.0]},
        {"embedding": [0.0] * DIMENSION},
    ],
)
async def test_invalid_input_rejected_and_nothing_stored(engine, memory_adapter, overrides):
    with pytest.raises(FragmentValidationError) as exc_info:
        await engine.store(fragment_input(**overrides))

    assert exc_info.value.errors
    assert memory_adapter.count(FragmentFilter.everything()) == 0


@pytest.mark.asyncio
async def test_missing_required_field_rejected(engine):
    with pytest.raises(FragmentValidationError) as exc_info:
        await engine.store({"content": "no provenance"})

    assert any("agent_id" in message for message in exc_info.value.errors)
    assert any("project_id" in message for message in exc_info.value.errors)


@pytest.mark.asyncio
async def test_provider_failure_stores_unembedded(config, memory_adapter, clock):
    embedding = mock_embedding(embed_document=AsyncMock(side_effect=EmbeddingError("quota exceeded")))
    engine = MemoryEngine(config, embedding=embedding, adapter=memory_adapter, clock=clock)

    fragment = await engine.store(fragment_input())

    assert fragment.embedding is None
    assert fragment.needs_reembedding is True
    assert memory_adapter.read(fragment.id) == fragment
    assert not engine.index.contains(fragment.id)


@pytest.mark.asyncio
async def test_provider_timeout_stores_unembedded(config, memory_adapter, clock):
    async def slow(text):
        await asyncio.sleep(5)
        return [1.0] * DIMENSION

    embedding = mock_embedding(embed_document=AsyncMock(side_effect=slow))
    config = config.model_copy(update={"embedding_timeout_seconds": 0.01})
    engine = MemoryEngine(config, embedding=embedding, adapter=memory_adapter, clock=clock)

    fragment = await engine.store(fragment_input())

    assert fragment.needs_reembedding is True


@pytest.mark.asyncio
async def test_malformed_provider_output_stores_unembedded(config, memory_adapter, clock):
    embedding = mock_embedding(embed_document=AsyncMock(return_value=[0.1, 0.2]))
    engine = MemoryEngine(config, embedding=embedding, adapter=memory_adapter, clock=clock)

    fragment = await engine.store(fragment_input())

    assert fragment.embedding is None
    assert fragment.needs_reembedding is True


@pytest.mark.asyncio
async def test_unembedded_fragment_picked_up_by_consolidation(config, memory_adapter, clock, fake_embedding):
    failing = mock_embedding(embed_document=AsyncMock(side_effect=EmbeddingError("offline")))
    engine = MemoryEngine(config, embedding=failing, adapter=memory_adapter, clock=clock)
    fragment = await engine.store(fragment_input())

    engine.pipeline.embedding = fake_embedding
    report = await engine.consolidate("p1:a1")

    stored = await engine.get(fragment.id)
    assert report.reembedded == 1
    assert stored.needs_reembedding is False
    assert engine.index.contains(fragment.id)


@pytest.mark.asyncio
async def test_concurrent_stores_all_land(engine, memory_adapter):
    await asyncio.gather(*(engine.store(fragment_input(content=f"lesson {i}")) for i in range(20)))

    assert memory_adapter.count(None) == 20
    assert engine.index.get_size() == 20


# ---------------------------------------------------------------------------
# Retrieve / search
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_retrieve_formats_selected_memories(engine, vec):
    await engine.store(fragment_input(content="Use optimistic locking for sessions", embedding=vec(1.0)))

    result = await engine.retrieve(RetrievalQuery(namespace="p1:a1", embedding=vec(1.0)))

    assert result.formatted_text.startswith(MEMORY_HEADER)
    assert "Use optimistic locking for sessions" in result.formatted_text
    assert len(result.fragments_used) == 1
    assert result.tokens_used > 0
    assert result.truncated is False
    assert result.degraded is False


@pytest.mark.asyncio
async def test_retrieve_by_text_uses_query_embedding(config, memory_adapter, clock, vec):
    embedding = mock_embedding(embed_query=AsyncMock(return_value=vec(1.0)))
    engine = MemoryEngine(config, embedding=embedding, adapter=memory_adapter, clock=clock)
    await engine.store(fragment_input(embedding=vec(1.0)))

    result = await engine.retrieve(RetrievalQuery(namespace="p1:a1", text="session bugs"))

    embedding.embed_query.assert_awaited_once_with("session bugs")
    assert len(result.fragments_used) == 1


@pytest.mark.asyncio
async def test_retrieve_only_touches_selected_fragments(engine, vec, now):
    chosen = await engine.store(fragment_input(content="first lesson", embedding=vec(1.0)))
    skipped = await engine.store(fragment_input(content="second lesson", embedding=vec(0.9, 0.1)))

    budget = FRAME_TOKENS + 20

    result = await engine.retrieve(RetrievalQuery(namespace="p1:a1", embedding=vec(1.0), token_budget=budget))

    assert [s.fragment.id for s in result.fragments_used] == [chosen.id]
    assert result.truncated is True
    assert estimate_tokens(result.formatted_text) <= result.tokens_used <= budget
    assert result.fragments_used[0].fragment.access_count == 1
    assert (await engine.get(chosen.id)).access_count == 1
    assert (await engine.get(chosen.id)).last_accessed_at == now
    assert (await engine.get(skipped.id)).access_count == 0


@pytest.mark.asyncio
async def test_retrieve_with_no_matches(engine, vec):
    result = await engine.retrieve(RetrievalQuery(namespace="p1:a1", embedding=vec(1.0)))

    assert result.formatted_text == ""
    assert result.fragments_used == []
    assert result.tokens_used == 0


@pytest.mark.asyncio
async def test_retrieve_without_any_embedding_is_empty(config, memory_adapter, clock, vec):
    engine = MemoryEngine(config, adapter=memory_adapter, clock=clock)
    await engine.store(fragment_input(embedding=vec(1.0)))

    result = await engine.retrieve(RetrievalQuery(namespace="p1:a1", text="anything"))

    assert result.fragments_used == []
    assert result.degraded is True


@pytest.mark.asyncio
async def test_namespaces_isolated_by_default(engine, vec):
    await engine.store(fragment_input(agent_id="a2", embedding=vec(1.0)))

    result = await engine.retrieve(RetrievalQuery(namespace="p1:a1", embedding=vec(1.0)))

    assert result.fragments_used == []


@pytest.mark.asyncio
async def test_cross_agent_opt_in(engine, vec):
    sibling = await engine.store(fragment_input(agent_id="a2", embedding=vec(1.0)))

    result = await engine.retrieve(
        RetrievalQuery(namespace="p1:a1", embedding=vec(1.0), include_cross_agent=True)
    )

    assert [s.fragment.id for s in result.fragments_used] == [sibling.id]


@pytest.mark.asyncio
async def test_search_returns_ranked_and_records_access(engine, vec):
    best = await engine.store(fragment_input(content="best", embedding=vec(1.0)))
    other = await engine.store(fragment_input(content="other", embedding=vec(0.5, 0.5)))

    results = await engine.search(RetrievalQuery(namespace="p1:a1", embedding=vec(1.0)))

    assert [s.fragment.id for s in results] == [best.id, other.id]
    assert all(s.fragment.access_count == 1 for s in results)


@pytest.mark.asyncio
async def test_retrieve_rejects_malformed_namespace(engine, vec):
    with pytest.raises(NamespaceError):
        await engine.retrieve(RetrievalQuery(namespace="nope", embedding=vec(1.0)))


# ---------------------------------------------------------------------------
# Scoring commands
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_reinforce_raises_relevance_capped(engine, vec):
    fragment = await engine.store(fragment_input(embedding=vec(1.0), relevance_score=0.5))

    assert (await engine.reinforce(fragment.id)).relevance_score == pytest.approx(0.7)
    assert (await engine.reinforce(fragment.id, boost=0.9)).relevance_score == 1.0
    assert (await engine.get(fragment.id)).relevance_score == 1.0


@pytest.mark.asyncio
@pytest.mark.parametrize("boost", [-5.0, -0.1, float("nan"), float("inf")])
async def test_reinforce_rejects_bad_boost(engine, vec, boost):
    fragment = await engine.store(fragment_input(embedding=vec(1.0), relevance_score=0.5))

    with pytest.raises(ValueError):
        await engine.reinforce(fragment.id, boost=boost)

    assert (await engine.get(fragment.id)).relevance_score == 0.5


@pytest.mark.asyncio
async def test_set_pinned(engine, vec):
    fragment = await engine.store(fragment_input(embedding=vec(1.0)))

    assert (await engine.set_pinned(fragment.id)).is_pinned is True
    assert (await engine.set_pinned(fragment.id, pinned=False)).is_pinned is False


@pytest.mark.asyncio
async def test_commands_on_missing_fragment_return_none(engine):
    assert await engine.reinforce("missing") is None
    assert await engine.set_pinned("missing") is None
    assert await engine.get("missing") is None


# ---------------------------------------------------------------------------
# Maintenance, namespaces, snapshots
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_consolidate_records_time_for_health(engine, vec, now):
    await engine.store(fragment_input(embedding=vec(1.0)))
    await engine.store(fragment_input(embedding=vec(1.0)))

    report = await engine.consolidate()
    health = await engine.health_check()

    assert report.merged == 1
    assert health.last_consolidation_at == now
    assert health.fragment_count == 1
    assert health.index_size == 1


@pytest.mark.asyncio
async def test_consolidate_rejects_malformed_namespace(engine):
    with pytest.raises(NamespaceError):
        await engine.consolidate("bad")


@pytest.mark.asyncio
async def test_scheduled_consolidation_runs_until_shutdown(config, fake_embedding, memory_adapter, clock, now):
    fast = config.model_copy(update={"consolidation_interval_seconds": 0.01})
    engine = MemoryEngine(fast, embedding=fake_embedding, adapter=memory_adapter, clock=clock)
    await engine.initialize()

    task = engine.start_scheduled_consolidation()
    assert engine.start_scheduled_consolidation() is task
    await asyncio.sleep(0.05)

    assert engine._last_consolidation_at == now
    await engine.shutdown()
    assert task.done()


@pytest.mark.asyncio
async def test_fork_and_merge_through_engine(engine, vec):
    original = await engine.store(fragment_input(embedding=vec(1.0)))

    fork = await engine.fork_namespace("p1:a1", "p1:a1-branch")
    await engine.store(fragment_input(namespace="p1:a1-branch", content="branch only", embedding=vec(0.0, 1.0)))
    merge = await engine.merge_namespaces("p1:a1-branch", "p1:a1")

    assert fork.copied == 1
    assert original.id in fork.id_map
    assert merge.kept == 1
    assert merge.discarded == 1


@pytest.mark.asyncio
async def test_snapshot_round_trip_into_new_engine(engine, config, clock, vec):
    stored = [
        await engine.store(fragment_input(content="alpha", embedding=vec(1.0))),
        await engine.store(fragment_input(content="beta", agent_id="a2", embedding=vec(0.0, 1.0))),
    ]
    text = await engine.export_snapshot()

    restored = MemoryEngine(config, clock=clock)
    report = await restored.import_snapshot(text=text)

    assert report.imported == 2
    assert report.skipped == 0
    for fragment in stored:
        assert await restored.get(fragment.id) == fragment
    result = await restored.retrieve(RetrievalQuery(namespace="p1:a1", embedding=vec(1.0)))
    assert [s.fragment.id for s in result.fragments_used] == [stored[0].id]


@pytest.mark.asyncio
async def test_snapshot_of_one_namespace_to_file(engine, config, tmp_path, vec):
    await engine.store(fragment_input(embedding=vec(1.0)))
    await engine.store(fragment_input(agent_id="a2", embedding=vec(1.0)))
    path = tmp_path / "p1-a1.jsonl"

    await engine.export_snapshot(namespace="p1:a1", path=path)
    restored = MemoryEngine(config)
    report = await restored.import_snapshot(path=path)

    assert report.imported == 1
    assert [f.namespace for f in await restored.export_all()] == ["p1:a1"]


@pytest.mark.asyncio
async def test_import_snapshot_needs_exactly_one_source(engine, tmp_path):
    with pytest.raises(ValueError):
        await engine.import_snapshot()
    with pytest.raises(ValueError):
        await engine.import_snapshot(text="x", path=tmp_path / "y")


@pytest.mark.asyncio
async def test_import_all_rebuilds_index(engine, make_fragment, vec):
    count = await engine.import_all([make_fragment(embedding=vec(1.0)), make_fragment(embedding=None)])

    assert count == 2
    assert engine.index.get_size() == 1


@pytest.mark.asyncio
async def test_stats_include_index_details(engine, vec):
    await engine.store(fragment_input(embedding=vec(1.0)))

    stats = await engine.get_stats()

    assert stats.total_fragments == 1
    assert stats.extra["index_size"] == 1
    assert stats.extra["malformed_embeddings"] == 0
    assert stats.extra["pending_writes"] == 0


# ---------------------------------------------------------------------------
# Degraded mode
# ---------------------------------------------------------------------------


@pytest.fixture
def flaky_engine(config, fake_embedding, flaky_adapter, clock):
    config = config.model_copy(
        update={"retry_max_attempts": 20, "retry_base_delay_seconds": 0.01, "retry_max_delay_seconds": 0.05}
    )
    return MemoryEngine(config, embedding=fake_embedding, adapter=flaky_adapter, clock=clock)


@pytest.mark.asyncio
async def test_writes_queue_while_backend_down(flaky_engine, flaky_adapter, vec):
    before = await flaky_engine.store(fragment_input(content="before outage", embedding=vec(1.0)))
    flaky_adapter.available = False

    during = await flaky_engine.store(fragment_input(content="during outage", embedding=vec(0.9, 0.1)))

    assert flaky_engine.degraded
    health = await flaky_engine.health_check()
    assert health.adapter_available is False
    assert health.degraded is True
    assert health.pending_writes == 1
    assert await flaky_engine.get(during.id) == during

    result = await flaky_engine.retrieve(RetrievalQuery(namespace="p1:a1", embedding=vec(1.0)))
    assert result.degraded is True
    assert {s.fragment.id for s in result.fragments_used} == {before.id, during.id}

    flaky_adapter.available = True
    await flaky_engine._drain_task

    assert len(flaky_engine.retry_queue) == 0
    assert not flaky_engine.degraded
    assert flaky_adapter.read(during.id).content == "during outage"
    assert flaky_adapter.read(during.id).access_count == 1


@pytest.mark.asyncio
async def test_reads_fall_back_to_cache(flaky_engine, flaky_adapter, vec):
    fragment = await flaky_engine.store(fragment_input(embedding=vec(1.0)))
    flaky_adapter.available = False

    assert await flaky_engine.get(fragment.id) == fragment
    assert flaky_engine.degraded

    flaky_adapter.available = True
    assert await flaky_engine.get(fragment.id) == fragment
    assert not flaky_engine.degraded


@pytest.mark.asyncio
async def test_writes_fail_once_retries_exhausted(config, fake_embedding, flaky_adapter, clock, vec):
    engine = MemoryEngine(config, embedding=fake_embedding, adapter=flaky_adapter, clock=clock)
    await engine.initialize()
    flaky_adapter.available = False

    await engine.store(fragment_input(embedding=vec(1.0)))
    await engine._drain_task

    assert engine.retry_queue.exhausted is True
    with pytest.raises(StorageUnavailableError):
        await engine.store(fragment_input(embedding=vec(1.0)))

    health = await engine.health_check()
    assert health.healthy is False
    assert any("exhausted" in error for error in health.errors)


@pytest.mark.asyncio
async def test_outage_after_consolidation_does_not_restore_merged_fragments(flaky_engine, flaky_adapter, vec):
    first = await flaky_engine.store(fragment_input(content="retry webhooks with backoff", embedding=vec(1.0)))
    second = await flaky_engine.store(fragment_input(content="webhooks need backoff", embedding=vec(1.0, 0.01)))
    assert (await flaky_engine.consolidate()).merged == 1
    [survivor] = flaky_adapter.query(FragmentFilter.everything())
    merged_away = second.id if survivor.id == first.id else first.id

    flaky_adapter.available = False
    result = await flaky_engine.retrieve(RetrievalQuery(namespace="p1:a1", embedding=vec(1.0)))

    assert result.degraded is True
    assert [s.fragment.id for s in result.fragments_used] == [survivor.id]
    assert await flaky_engine.get(merged_away) is None

    flaky_adapter.available = True
    await flaky_engine._drain_task

    assert flaky_adapter.count(FragmentFilter.everything()) == 1
    assert flaky_adapter.read(merged_away) is None
    assert flaky_adapter.read(survivor.id).access_count == 1


@pytest.mark.asyncio
async def test_outage_after_consolidation_keeps_archived_fragments_archived(flaky_engine, flaky_adapter, vec):
    active = await flaky_engine.store(fragment_input(content="still relevant", embedding=vec(1.0)))
    faded = await flaky_engine.store(
        fragment_input(content="barely remembered", embedding=vec(1.0, 0.5), relevance_score=0.05)
    )
    assert (await flaky_engine.consolidate()).archived == 1

    flaky_adapter.available = False
    result = await flaky_engine.retrieve(RetrievalQuery(namespace="p1:a1", embedding=vec(1.0)))

    assert [s.fragment.id for s in result.fragments_used] == [active.id]
    assert (await flaky_engine.get(faded.id)).is_archived is True

    flaky_adapter.available = True
    await flaky_engine._drain_task

    assert flaky_adapter.read(faded.id).is_archived is True
    assert flaky_adapter.read(faded.id).relevance_score == 0.05
    assert flaky_adapter.read(active.id).access_count == 1


@pytest.mark.asyncio
async def test_forked_copies_readable_during_outage(flaky_engine, flaky_adapter, vec):
    original = await flaky_engine.store(fragment_input(embedding=vec(1.0)))
    fork = await flaky_engine.fork_namespace("p1:a1", "p1:branch")

    flaky_adapter.available = False

    copy = await flaky_engine.get(fork.id_map[original.id])
    assert copy.namespace == "p1:branch"
    assert copy.origin_id == original.id


@pytest.mark.asyncio
async def test_cache_evicts_least_recently_touched(config, fake_embedding, memory_adapter, clock, vec):
    config = config.model_copy(update={"cache_max_fragments": 2})
    engine = MemoryEngine(config, embedding=fake_embedding, adapter=memory_adapter, clock=clock)

    oldest = await engine.store(fragment_input(content="one", embedding=vec(1.0)))
    await engine.store(fragment_input(content="two", embedding=vec(0.0, 1.0)))
    await engine.store(fragment_input(content="three", embedding=vec(0.0, 0.0, 1.0)))

    assert engine.cache.count(FragmentFilter.everything()) == 2
    assert engine.cache.read(oldest.id) is None
    assert not engine.cache_index.contains(oldest.id)
    assert memory_adapter.read(oldest.id) is not None


@pytest.mark.asyncio
async def test_cache_keeps_queued_writes_beyond_cap(config, fake_embedding, flaky_adapter, clock, vec):
    config = config.model_copy(
        update={"cache_max_fragments": 1, "retry_max_attempts": 20, "retry_max_delay_seconds": 0.05}
    )
    engine = MemoryEngine(config, embedding=fake_embedding, adapter=flaky_adapter, clock=clock)
    await engine.initialize()
    flaky_adapter.available = False

    first = await engine.store(fragment_input(content="one", embedding=vec(1.0)))
    second = await engine.store(fragment_input(content="two", embedding=vec(0.0, 1.0)))

    assert await engine.get(first.id) == first
    assert await engine.get(second.id) == second

    flaky_adapter.available = True
    await engine._drain_task
    await engine.store(fragment_input(content="three", embedding=vec(0.0, 0.0, 1.0)))

    assert engine.cache.count(FragmentFilter.everything()) == 1


@pytest.mark.asyncio
async def test_memories_survive_restart_on_sqlite(tmp_path, vec):
    pytest.importorskip("sqlalchemy")
    pytest.importorskip("sqlite_vec")
    config = HindsightConfig(
        storage_type="sqlite", storage_path=str(tmp_path / "hindsight.db"), embedding_dimension=DIMENSION
    )

    async with MemoryEngine(config) as engine:
        stored = await engine.store(fragment_input(embedding=vec(1.0)))

    async with MemoryEngine(config) as engine:
        result = await engine.retrieve(RetrievalQuery(namespace="p1:a1", embedding=vec(1.0)))

    assert [s.fragment.id for s in result.fragments_used] == [stored.id]
    assert result.fragments_used[0].fragment.access_count == 1
