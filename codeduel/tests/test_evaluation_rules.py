"""Pure rule evaluation: difficulty filter, unique-problem dedupe, threshold."""

from datetime import date

from codeduel.features.evaluation.rules import apply_challenge_rules, dedupe_by_slug, filter_by_difficulty
from codeduel.models.challenge import Challenge, ChallengeStatus
from codeduel.models.evaluation import ActivityItem


def _item(slug, difficulty, ts=1705280000):
    return ActivityItem(id=f"{slug}-{ts}", title=slug, title_slug=slug, timestamp=ts, difficulty=difficulty)


def _challenge(**overrides):
    fields = dict(
        id="c1",
        owner_id="u1",
        name="Grind",
        start_date=date(2024, 1, 1),
        end_date=date(2024, 1, 31),
        status=ChallengeStatus.ACTIVE,
    )
    fields.update(overrides)
    return Challenge(**fields)


def test_empty_filter_counts_every_item():
    items = [_item("a", "Easy"), _item("b", "Hard"), _item("c", "Unknown")]
    assert filter_by_difficulty(items, []) == items


def test_filter_keeps_only_allowed_difficulties():
    items = [_item("a", "Easy"), _item("b", "Hard"), _item("c", "Medium")]
    kept = filter_by_difficulty(items, ["Medium", "Hard"])
    assert [i.title_slug for i in kept] == ["b", "c"]


def test_unknown_difficulty_never_passes_a_filter():
    items = [_item("mystery", "Unknown")]
    assert filter_by_difficulty(items, ["Easy", "Medium", "Hard"]) == []


def test_dedupe_keeps_first_seen_order():
    items = [_item("b", "Easy", 1), _item("a", "Easy", 2), _item("b", "Easy", 3)]
    unique = dedupe_by_slug(items)
    assert [(i.title_slug, i.timestamp) for i in unique] == [("b", 1), ("a", 2)]


def test_scenario_two_sum_twice_with_unique_constraint():
    challenge = _challenge(min_submissions_per_day=2, unique_problem_constraint=True)
    items = [_item("two-sum", "Easy", 1), _item("two-sum", "Easy", 2), _item("add-two-numbers", "Medium", 3)]

    result = apply_challenge_rules(challenge, items)

    assert result.submissions_count == 2
    assert result.completed is True
    assert result.problems_solved == ["two-sum", "add-two-numbers"]


def test_repeats_count_without_unique_constraint():
    challenge = _challenge(min_submissions_per_day=3, unique_problem_constraint=False)
    items = [_item("two-sum", "Easy", 1), _item("two-sum", "Easy", 2), _item("add-two-numbers", "Medium", 3)]

    result = apply_challenge_rules(challenge, items)

    assert result.submissions_count == 3
    assert result.completed is True


def test_filter_applies_before_threshold():
    challenge = _challenge(min_submissions_per_day=2, difficulty_filter=["Hard"])
    items = [_item("two-sum", "Easy"), _item("median-of-two-sorted-arrays", "Hard")]

    result = apply_challenge_rules(challenge, items)

    assert result.submissions_count == 1
    assert result.completed is False
    assert result.problems_solved == ["median-of-two-sorted-arrays"]


def test_no_activity_is_a_failed_day():
    result = apply_challenge_rules(_challenge(), [])
    assert result.completed is False
    assert result.submissions_count == 0
    assert result.problems_solved == []
