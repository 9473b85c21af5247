"""
Backend-neutral filter evaluation.

Every adapter either translates a FragmentFilter into native predicates or
falls back to these helpers, so pre- and post-filtering agree.
"""

from typing import Optional

from hindsight.models import Fragment, FragmentFilter


def resolve_filter(filters: Optional[FragmentFilter]) -> FragmentFilter:
    """``None`` means every fragment, archived included."""
    return filters if filters is not None else FragmentFilter.everything()


def matches_tags(fragment: Fragment, tags: Optional[list]) -> bool:
    if not tags:
        return True
    return bool(set(fragment.tags) & set(tags))


def matches_filter(fragment: Fragment, filters: Optional[FragmentFilter]) -> bool:
    """Check a fragment against every predicate of the filter."""
    filters = resolve_filter(filters)

    if not filters.include_archived and fragment.is_archived:
        return False
    if filters.namespace is not None and fragment.namespace != filters.namespace:
        return False
    if filters.agent_id is not None and fragment.agent_id != filters.agent_id:
        return False
    if filters.project_id is not None and fragment.project_id != filters.project_id:
        return False
    if filters.kind is not None and fragment.kind != filters.kind:
        return False
    if filters.min_relevance is not None and fragment.relevance_score < filters.min_relevance:
        return False
    if filters.created_after is not None and fragment.created_at < filters.created_after:
        return False
    if filters.created_before is not None and fragment.created_at > filters.created_before:
        return False
    return matches_tags(fragment, filters.tags)
