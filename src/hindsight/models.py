import uuid
from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator

FragmentKind = Literal["episodic", "semantic", "procedural"]
SourceType = Literal["task", "atlas", "taste-vault", "retrospective", "manual"]
Outcome = Literal["positive", "negative", "neutral"]

FRAGMENT_KINDS: tuple = ("episodic", "semantic", "procedural")


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _dedupe(values: List[str]) -> List[str]:
    seen = set()
    result = []
    for value in values:
        if value not in seen:
            seen.add(value)
            result.append(value)
    return result


# ---------------------------------------------------------------------------
# Kind-specific details
# ---------------------------------------------------------------------------


class EpisodicDetails(BaseModel):
    """What happened, where, and what was decided."""

    kind: Literal["episodic"] = "episodic"
    event_date: Optional[datetime] = None
    location: Optional[str] = Field(
        default=None, description="e.g. 'auth/session.ts during auth sprint'"
    )
    decision: Optional[str] = None
    alternatives_considered: List[str] = Field(default_factory=list)


class SemanticDetails(BaseModel):
    """A generalization backed by evidence."""

    kind: Literal["semantic"] = "semantic"
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    evidence_count: int = Field(default=1, ge=0)
    supporting_fragment_ids: List[str] = Field(default_factory=list)


class ProceduralDetails(BaseModel):
    """A reusable procedure: when it applies and its ordered steps."""

    kind: Literal["procedural"] = "procedural"
    trigger_pattern: str
    steps: List[str] = Field(default_factory=list)
    success_rate: float = Field(default=0.0, ge=0.0, le=1.0)


FragmentDetails = Annotated[
    Union[EpisodicDetails, SemanticDetails, ProceduralDetails],
    Field(discriminator="kind"),
]


# ---------------------------------------------------------------------------
# Fragments
# ---------------------------------------------------------------------------


class FragmentInput(BaseModel):
    """Producer-facing input for storing a fragment (generated fields omitted)."""

    content: str
    agent_id: str
    project_id: str
    kind: FragmentKind = "episodic"
    namespace: Optional[str] = Field(
        default=None, description="Defaults to '{project_id}:{agent_id}'"
    )
    workflow_id: Optional[str] = None
    source_type: SourceType = "manual"
    source_ids: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    outcome: Optional[Outcome] = None
    relevance_score: float = Field(default=1.0, ge=0.0, le=1.0)
    is_pinned: bool = False
    embedding: Optional[List[float]] = Field(
        default=None, description="Pre-computed embedding; skips the provider call"
    )
    details: Optional[FragmentDetails] = None
    extra: Dict[str, Any] = Field(default_factory=dict)


class Fragment(BaseModel):
    """
    One stored memory unit: text, embedding, provenance and scoring state.

    ``id`` and ``namespace`` are frozen. All scoring-state changes go through
    ``hindsight.scoring.apply_command`` which returns an updated copy.
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), frozen=True)
    namespace: str = Field(..., frozen=True)
    kind: FragmentKind
    content: str = Field(..., min_length=1)
    embedding: Optional[List[float]] = Field(
        default=None, description="None means unembedded (distinct from a zero vector)"
    )

    # Provenance
    agent_id: str
    project_id: str
    workflow_id: Optional[str] = None
    source_type: SourceType = "manual"
    source_ids: List[str] = Field(default_factory=list)
    origin_id: Optional[str] = Field(
        default=None, description="Id of the fragment this one was forked from (lineage root)"
    )

    # Scoring state
    relevance_score: float = Field(default=1.0, ge=0.0, le=1.0)
    access_count: int = Field(default=0, ge=0)
    is_pinned: bool = False
    is_archived: bool = False
    needs_reembedding: bool = False

    # Metadata
    tags: List[str] = Field(default_factory=list)
    outcome: Optional[Outcome] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    last_accessed_at: Optional[datetime] = None
    last_decayed_at: Optional[datetime] = None

    details: Optional[FragmentDetails] = None
    extra: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("tags", "source_ids")
    @classmethod
    def _unique(cls, values: List[str]) -> List[str]:
        return _dedupe(values)

    @field_validator("created_at", "updated_at", "last_accessed_at", "last_decayed_at")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)

    @model_validator(mode="after")
    def _details_match_kind(self) -> "Fragment":
        if self.details is not None and self.details.kind != self.kind:
            raise ValueError(
                f"details of kind '{self.details.kind}' do not match fragment kind '{self.kind}'"
            )
        return self

    @property
    def lineage_id(self) -> str:
        """Identifier shared by a fragment and all of its forked copies."""
        return self.origin_id or self.id

    @property
    def reference_time(self) -> datetime:
        """Last access, or creation if never accessed."""
        return self.last_accessed_at or self.created_at

    @classmethod
    def create(
        cls,
        data: FragmentInput,
        namespace: str,
        embedding: Optional[List[float]],
        now: Optional[datetime] = None,
    ) -> "Fragment":
        """Build a new fragment from validated input, assigning id, timestamps and defaults."""
        now = now or utc_now()
        tags = list(data.tags)
        if data.agent_id not in tags:
            tags.append(data.agent_id)

        return cls(
            namespace=namespace,
            kind=data.kind,
            content=data.content,
            embedding=embedding,
            agent_id=data.agent_id,
            project_id=data.project_id,
            workflow_id=data.workflow_id,
            source_type=data.source_type,
            source_ids=list(data.source_ids),
            relevance_score=data.relevance_score,
            is_pinned=data.is_pinned,
            needs_reembedding=embedding is None,
            tags=tags,
            outcome=data.outcome,
            created_at=now,
            updated_at=now,
            details=data.details,
            extra=dict(data.extra),
        )


class FragmentFilter(BaseModel):
    """
    Conjunction of optional predicates shared by every query and vector search.

    Archived fragments are excluded unless ``include_archived`` is set.
    """

    namespace: Optional[str] = None
    agent_id: Optional[str] = None
    project_id: Optional[str] = None
    kind: Optional[FragmentKind] = None
    min_relevance: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    created_after: Optional[datetime] = None
    created_before: Optional[datetime] = None
    tags: Optional[List[str]] = Field(
        default=None, description="Matches fragments sharing at least one tag"
    )
    include_archived: bool = False

    @field_validator("created_after", "created_before")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)

    @classmethod
    def everything(cls) -> "FragmentFilter":
        """Filter matching every fragment, archived included."""
        return cls(include_archived=True)


class ScoredFragment(BaseModel):
    """A fragment paired with its composite ranking score."""

    fragment: Fragment
    score: float
    similarity: float
    recency_weight: float = 1.0
    frequency_weight: float = 1.0

    def sort_key(self) -> tuple:
        """Descending score, ties broken by fragment id."""
        return (-self.score, self.fragment.id)


# ---------------------------------------------------------------------------
# Queries and results
# ---------------------------------------------------------------------------


class RetrievalQuery(BaseModel):
    namespace: str
    text: Optional[str] = None
    embedding: Optional[List[float]] = None
    token_budget: Optional[int] = Field(default=None, gt=0)
    top_k: Optional[int] = Field(default=None, gt=0)
    include_cross_agent: Optional[bool] = Field(
        default=None, description="None falls back to the configured default"
    )
    cross_agent_threshold: Optional[float] = Field(
        default=None, ge=0.0, le=1.0, description="Per-call override of the configured threshold"
    )
    similarity_threshold: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    filter: Optional[FragmentFilter] = Field(
        default=None, description="Extra predicates; the namespace is always taken from the query"
    )

    @model_validator(mode="after")
    def _text_or_embedding(self) -> "RetrievalQuery":
        if self.embedding is None and not (self.text and self.text.strip()):
            raise ValueError("retrieval query needs either text or an embedding")
        return self


class RetrievalResult(BaseModel):
    formatted_text: str
    fragments_used: List[ScoredFragment] = Field(default_factory=list)
    tokens_used: int = 0
    truncated: bool = False
    degraded: bool = False


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------


class ConsolidationReport(BaseModel):
    """
    Outcome of one consolidation run.

    ``compressed`` is the number of fragments merged away; ``merged`` is the
    number of duplicate clusters collapsed into a survivor.
    """

    merged: int = 0
    compressed: int = 0
    archived: int = 0
    decayed: int = 0
    reembedded: int = 0
    namespaces_processed: List[str] = Field(default_factory=list)
    failed_namespaces: List[str] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=utc_now)
    duration_ms: float = 0.0

    @property
    def succeeded(self) -> bool:
        return not self.failed_namespaces


class NamespaceMergeReport(BaseModel):
    source_namespace: str
    target_namespace: str
    kept: int = Field(default=0, description="Source fragments written into the target")
    discarded: int = Field(
        default=0, description="Losing copies: source fragments not brought over plus archived target copies"
    )
    replaced_ids: List[str] = Field(
        default_factory=list, description="Target fragments archived in favour of a source copy"
    )


class ForkReport(BaseModel):
    source_namespace: str
    target_namespace: str
    copied: int = 0
    id_map: Dict[str, str] = Field(default_factory=dict)


class ImportReport(BaseModel):
    imported: int = 0
    skipped: int = 0
    errors: List[str] = Field(default_factory=list)


class StorageStats(BaseModel):
    backend: str
    total_fragments: int = 0
    archived_fragments: int = 0
    pinned_fragments: int = 0
    unembedded_fragments: int = 0
    by_kind: Dict[str, int] = Field(default_factory=dict)
    average_relevance: float = 0.0
    storage_bytes: int = 0
    indexed_vectors: int = 0
    extra: Dict[str, Any] = Field(default_factory=dict)


class HealthStatus(BaseModel):
    healthy: bool
    adapter_available: bool
    index_size: int = 0
    fragment_count: int = 0
    last_consolidation_at: Optional[datetime] = None
    degraded: bool = False
    pending_writes: int = 0
    errors: List[str] = Field(default_factory=list)
