"""
Scoring model and scoring-state mutations.

Ranking weights (recency, frequency), the forgetting curve used by
consolidation, and the command objects through which every change to a
fragment's scoring state is applied. Nothing else in the package edits
``relevance_score``, ``access_count``, ``is_pinned`` or ``is_archived``
directly.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union

from hindsight.models import Fragment, ScoredFragment, utc_now

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400.0
CHARS_PER_TOKEN = 4


def days_between(earlier: datetime, later: datetime) -> float:
    """Elapsed days, never negative."""
    return max(0.0, (later - earlier).total_seconds() / SECONDS_PER_DAY)


def estimate_tokens(text: str) -> int:
    """Rough token estimate: one token per four characters, rounded up."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def decayed_relevance(relevance: float, decay_rate: float, days: float) -> float:
    """Exponential forgetting: ``relevance * exp(-decay_rate * days)``."""
    return max(0.0, min(1.0, relevance * math.exp(-decay_rate * days)))


def recency_weight(days_since_access: float, half_life_days: float) -> float:
    """Halves every ``half_life_days``; 1.0 for a fragment accessed just now."""
    return 0.5 ** (max(0.0, days_since_access) / half_life_days)


def frequency_weight(access_count: int, weight: float) -> float:
    """Grows logarithmically with access count; 1.0 for a never-accessed fragment."""
    return 1.0 + weight * math.log1p(max(0, access_count))


def confidence_label(relevance: float) -> str:
    """Map relevance to the wording used in formatted memories."""
    if relevance >= 0.8:
        return "clear"
    if relevance >= 0.5:
        return "recall"
    if relevance >= 0.2:
        return "vague"
    return "none"


def score_fragment(
    fragment: Fragment,
    similarity: float,
    half_life_days: float,
    access_weight: float,
    negative_outcome_boost: float = 1.0,
    now: Optional[datetime] = None,
) -> ScoredFragment:
    """
    Composite score: ``similarity * recency_weight * frequency_weight``.

    Newer and more frequently accessed fragments never score lower than
    otherwise-identical older or less-accessed ones.
    """
    now = now or utc_now()
    recency = recency_weight(days_between(fragment.reference_time, now), half_life_days)
    frequency = frequency_weight(fragment.access_count, access_weight)
    score = similarity * recency * frequency
    if fragment.outcome == "negative":
        score *= negative_outcome_boost

    return ScoredFragment(
        fragment=fragment,
        score=score,
        similarity=similarity,
        recency_weight=recency,
        frequency_weight=frequency,
    )


# ---------------------------------------------------------------------------
# Scoring-state commands
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RecordAccess:
    """A fragment was selected by retrieval or search."""

    at: datetime


@dataclass(frozen=True)
class Reinforce:
    """Positive feedback: raise relevance by ``boost``, capped at 1.0."""

    boost: float
    at: datetime


@dataclass(frozen=True)
class ApplyDecay:
    """Forgetting curve applied by consolidation. Pinned fragments are left untouched."""

    decay_rate: float
    at: datetime


@dataclass(frozen=True)
class Archive:
    """Soft delete: excluded from default retrieval, still readable by id."""

    at: datetime


@dataclass(frozen=True)
class SetPinned:
    pinned: bool
    at: datetime


ScoringCommand = Union[RecordAccess, Reinforce, ApplyDecay, Archive, SetPinned]


def apply_command(fragment: Fragment, command: ScoringCommand) -> Fragment:
    """
    Apply a scoring command and return the updated copy.

    The input fragment is never modified.
    """
    if isinstance(command, RecordAccess):
        return fragment.model_copy(
            update={
                "access_count": fragment.access_count + 1,
                "last_accessed_at": command.at,
            }
        )

    if isinstance(command, Reinforce):
        return fragment.model_copy(
            update={
                "relevance_score": max(0.0, min(1.0, fragment.relevance_score + command.boost)),
                "updated_at": command.at,
            }
        )

    if isinstance(command, ApplyDecay):
        if fragment.is_pinned:
            return fragment
        # Measured from the later of last access and last decay
        start = fragment.reference_time
        if fragment.last_decayed_at is not None and fragment.last_decayed_at > start:
            start = fragment.last_decayed_at
        days = days_between(start, command.at)
        return fragment.model_copy(
            update={
                "relevance_score": decayed_relevance(
                    fragment.relevance_score, command.decay_rate, days
                ),
                "last_decayed_at": command.at,
            }
        )

    if isinstance(command, Archive):
        if fragment.is_archived:
            return fragment
        return fragment.model_copy(update={"is_archived": True, "updated_at": command.at})

    if isinstance(command, SetPinned):
        return fragment.model_copy(update={"is_pinned": command.pinned, "updated_at": command.at})

    raise TypeError(f"Unknown scoring command: {command!r}")
