from __future__ import annotations

from typing import Iterable, List

from codeduel.models.challenge import Challenge
from codeduel.models.evaluation import ActivityItem, RuleResult


def filter_by_difficulty(items: Iterable[ActivityItem], allowed: Iterable[str]) -> List[ActivityItem]:
    """Keep items whose difficulty is allowed. An empty filter lets everything through."""
    allowed_set = set(allowed or [])
    if not allowed_set:
        return list(items)
    return [item for item in items if item.difficulty in allowed_set]


def dedupe_by_slug(items: Iterable[ActivityItem]) -> List[ActivityItem]:
    """First occurrence of each problem wins; order is preserved."""
    seen = set()
    unique: List[ActivityItem] = []
    for item in items:
        if item.title_slug in seen:
            continue
        seen.add(item.title_slug)
        unique.append(item)
    return unique


def apply_challenge_rules(challenge: Challenge, items: Iterable[ActivityItem]) -> RuleResult:
    """Decide one member-day from already-enriched activity."""
    qualifying = filter_by_difficulty(items, challenge.difficulty_filter)
    if challenge.unique_problem_constraint:
        qualifying = dedupe_by_slug(qualifying)

    count = len(qualifying)
    return RuleResult(
        completed=count >= challenge.min_submissions_per_day,
        submissions_count=count,
        problems_solved=[item.title_slug for item in qualifying],
        qualifying_items=qualifying,
    )
