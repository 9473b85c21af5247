"""
Unit tests for the in-memory storage adapter.

Behavior shared with other backends lives in test_adapter_contract.py;
these cover what is specific to the dictionary store.
"""

import pytest

from hindsight.storage import StorageAdapter, create_storage_adapter
from hindsight.storage.memory import InMemoryStorageAdapter
from hindsight.config import HindsightConfig


@pytest.fixture
def store():
    return InMemoryStorageAdapter(dimension=8)


def test_implements_protocol(store):
    assert isinstance(store, StorageAdapter)
    assert store.supports_native_ann is False


def test_callers_cannot_mutate_stored_state(store, make_fragment):
    fragment = make_fragment(tags=["a1"])
    store.write(fragment)

    fragment.tags.append("mutated")
    read_back = store.read(fragment.id)
    read_back.tags.append("mutated-again")

    assert store.read(fragment.id).tags == ["a1"]


def test_wrong_dimension_embedding_not_searchable(store, make_fragment, vec):
    store.write(make_fragment(embedding=[1.0, 0.0, 0.0]))
    store.write(make_fragment(embedding=vec(1.0)))

    assert len(store.search_by_vector(vec(1.0), top_k=10)) == 1


def test_clear(store, make_fragment):
    store.bulk_write([make_fragment(), make_fragment()])
    store.clear()
    assert store.count(None) == 0


def test_factory_builds_memory_backend():
    adapter = create_storage_adapter(HindsightConfig(storage_type="memory", embedding_dimension=8))
    assert isinstance(adapter, InMemoryStorageAdapter)
    assert adapter.dimension == 8
