"""Unit tests for fragment models and validation."""

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from hindsight.models import (
    EpisodicDetails,
    Fragment,
    FragmentFilter,
    FragmentInput,
    ProceduralDetails,
    RetrievalQuery,
    SemanticDetails,
)


def test_create_assigns_generated_fields(now):
    data = FragmentInput(content="Fixed flaky login test", agent_id="builder", project_id="nova")
    fragment = Fragment.create(data, namespace="nova:builder", embedding=[0.1, 0.2], now=now)

    assert fragment.id
    assert fragment.created_at == now
    assert fragment.updated_at == now
    assert fragment.agent_id == "builder"
    assert fragment.project_id == "nova"
    assert "builder" in fragment.tags
    assert fragment.needs_reembedding is False


def test_create_without_embedding_needs_reembedding(now):
    data = FragmentInput(content="x", agent_id="a", project_id="p")
    fragment = Fragment.create(data, namespace="p:a", embedding=None, now=now)
    assert fragment.embedding is None
    assert fragment.needs_reembedding is True


def test_tags_and_source_ids_deduplicated(make_fragment):
    fragment = make_fragment(tags=["a", "b", "a"], source_ids=["s1", "s1", "s2"])
    assert fragment.tags == ["a", "b"]
    assert fragment.source_ids == ["s1", "s2"]


def test_id_and_namespace_are_frozen(make_fragment):
    fragment = make_fragment()
    with pytest.raises(ValidationError):
        fragment.id = "other"
    with pytest.raises(ValidationError):
        fragment.namespace = "p2:a2"


def test_relevance_bounds(make_fragment):
    with pytest.raises(ValidationError):
        make_fragment(relevance_score=1.5)
    with pytest.raises(ValidationError):
        make_fragment(relevance_score=-0.1)


def test_empty_content_rejected(make_fragment):
    with pytest.raises(ValidationError):
        make_fragment(content="")


def test_naive_datetimes_become_utc(make_fragment):
    fragment = make_fragment(created_at=datetime(2025, 1, 1, 9, 0))
    assert fragment.created_at.tzinfo == timezone.utc


def test_details_must_match_kind(make_fragment):
    make_fragment(kind="procedural", details=ProceduralDetails(trigger_pattern="deploy fails"))
    with pytest.raises(ValidationError):
        make_fragment(kind="semantic", details=EpisodicDetails())


def test_details_discriminated_union_round_trip(make_fragment):
    fragment = make_fragment(
        kind="semantic", details=SemanticDetails(confidence=0.9, evidence_count=4)
    )
    restored = Fragment.model_validate_json(fragment.model_dump_json())
    assert isinstance(restored.details, SemanticDetails)
    assert restored == fragment


def test_lineage_id(make_fragment):
    original = make_fragment()
    copy = make_fragment(origin_id=original.id)
    assert original.lineage_id == original.id
    assert copy.lineage_id == original.id


def test_reference_time(make_fragment, now):
    accessed_at = now + timedelta(days=1)
    assert make_fragment().reference_time == now
    assert make_fragment(last_accessed_at=accessed_at).reference_time == accessed_at


def test_filter_everything_includes_archived():
    assert FragmentFilter().include_archived is False
    assert FragmentFilter.everything().include_archived is True


def test_retrieval_query_needs_text_or_embedding():
    RetrievalQuery(namespace="p:a", text="auth bugs")
    RetrievalQuery(namespace="p:a", embedding=[1.0, 0.0])
    with pytest.raises(ValidationError):
        RetrievalQuery(namespace="p:a")
    with pytest.raises(ValidationError):
        RetrievalQuery(namespace="p:a", text="   ")
