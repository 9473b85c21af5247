"""
Retrieval and ranking.

Turns a query vector into a ranked list of fragments: vector search in the
caller's namespace (plus sibling namespaces when cross-agent retrieval is
on), composite scoring, and greedy selection under a token budget.
"""

import logging
from datetime import datetime
from typing import Callable, List, Tuple

from hindsight.config import HindsightConfig
from hindsight.models import Fragment, FragmentFilter, RetrievalQuery, ScoredFragment, utc_now
from hindsight.namespaces import parse_namespace
from hindsight.scoring import confidence_label, estimate_tokens, score_fragment
from hindsight.vector_index import VectorIndex

logger = logging.getLogger(__name__)

MEMORY_HEADER = "You have the following relevant memories from past experience:"
MEMORY_FOOTER = "Use these memories to inform your work. Avoid repeating past mistakes."

# Header, footer and the blank lines around the bullets
FRAME_TOKENS = estimate_tokens(f"{MEMORY_HEADER}\n\n\n{MEMORY_FOOTER}")


def format_fragment(fragment: Fragment) -> str:
    """Render one fragment as a bullet line, worded by kind."""
    details = fragment.details

    if fragment.kind == "episodic":
        label = confidence_label(fragment.relevance_score)
        when = (details.event_date if details and details.event_date else fragment.created_at)
        where = details.location if details and details.location else fragment.project_id
        return f"• Episodic ({label}): On {when.strftime('%Y-%m-%d')} in {where}, {fragment.content}"

    if fragment.kind == "procedural" and details is not None:
        steps = " → ".join(details.steps) if details.steps else fragment.content
        return f"• Procedural: When {details.trigger_pattern}: {steps}"

    return f"• {fragment.kind.capitalize()}: {fragment.content}"


def line_tokens(fragment: Fragment) -> int:
    """Tokens a fragment adds to the formatted text, newline included."""
    return estimate_tokens(format_fragment(fragment) + "\n")


def format_fragments(fragments: List[Fragment]) -> str:
    """
    Render selected fragments as a prompt prefix.

    Returns:
        Header, one line per fragment, closing instruction; or "" when empty
    """
    if not fragments:
        return ""
    lines = [MEMORY_HEADER, ""]
    lines.extend(format_fragment(fragment) for fragment in fragments)
    lines.extend(["", MEMORY_FOOTER])
    return "\n".join(lines)


def select_within_budget(
    ranked: List[ScoredFragment], token_budget: int
) -> Tuple[List[ScoredFragment], int, bool]:
    """
    Greedy selection in priority order.

    Walks the ranking once, taking every fragment whose rendered line still
    fits the remaining budget. A fragment that does not fit is skipped, and
    later, smaller fragments may still be taken, so a lower-scored fragment
    is never chosen over a higher-scored one that fits. The first fragment
    taken also pays for the header and footer, so ``tokens_used`` covers the
    whole formatted text.

    Returns:
        (selected, tokens_used, truncated)
    """
    selected: List[ScoredFragment] = []
    used = 0
    truncated = False
    for scored in ranked:
        cost = line_tokens(scored.fragment)
        if not selected:
            cost += FRAME_TOKENS
        if used + cost > token_budget:
            truncated = True
            continue
        selected.append(scored)
        used += cost
    return selected, used, truncated


class Retriever:
    """
    Candidate search and composite ranking.

    Args:
        index: Vector index to search
        config: Thresholds, top-K and scoring curve parameters
        clock: Source of "now" for recency weights
    """

    def __init__(
        self,
        index: VectorIndex,
        config: HindsightConfig,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.index = index
        self.config = config
        self.clock = clock

    def rank(self, query: RetrievalQuery, embedding: List[float]) -> List[ScoredFragment]:
        """
        Score and order candidates for a query.

        Own-namespace candidates must reach the similarity threshold;
        candidates from sibling namespaces must reach the stricter
        cross-agent threshold. The result holds at most top-K fragments,
        sorted by descending composite score with ties broken by id.
        """
        top_k = query.top_k or self.config.default_top_k
        threshold = (
            query.similarity_threshold
            if query.similarity_threshold is not None
            else self.config.similarity_threshold
        )
        base = query.filter or FragmentFilter()

        own_filter = base.model_copy(update={"namespace": query.namespace})
        hits = self.index.search(embedding, top_k, own_filter, min_similarity=threshold)

        include_cross = (
            query.include_cross_agent
            if query.include_cross_agent is not None
            else self.config.cross_agent_enabled
        )
        if include_cross:
            hits.extend(self._sibling_hits(query, embedding, top_k, base, own_filter, threshold))

        now = self.clock()
        scored = [
            score_fragment(
                fragment,
                similarity,
                half_life_days=self.config.recency_half_life_days,
                access_weight=self.config.frequency_weight,
                negative_outcome_boost=self.config.negative_outcome_boost,
                now=now,
            )
            for fragment, similarity in hits
        ]
        scored.sort(key=ScoredFragment.sort_key)
        logger.debug(f"Ranked {len(scored)} candidates for {query.namespace} (top_k={top_k})")
        return scored[:top_k]

    def _sibling_hits(
        self,
        query: RetrievalQuery,
        embedding: List[float],
        top_k: int,
        base: FragmentFilter,
        own_filter: FragmentFilter,
        threshold: float,
    ) -> List[Tuple[Fragment, float]]:
        project_id, _ = parse_namespace(query.namespace)
        cross_threshold = (
            query.cross_agent_threshold
            if query.cross_agent_threshold is not None
            else self.config.cross_agent_threshold
        )
        cross_threshold = max(cross_threshold, threshold)

        project_filter = base.model_copy(update={"namespace": None, "project_id": project_id})
        # Own-namespace fragments share the project filter; fetch enough to see past them
        limit = top_k + self.index.adapter.count(own_filter)
        hits = self.index.search(embedding, limit, project_filter, min_similarity=cross_threshold)
        return [(fragment, score) for fragment, score in hits if fragment.namespace != query.namespace][:top_k]
