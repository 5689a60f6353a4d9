"""Challenge creation rules, joining, and invite code redemption."""

from concurrent.futures import ThreadPoolExecutor
from datetime import date, datetime, timedelta, timezone

import pytest
from sqlalchemy.pool import StaticPool

from codeduel.core import database
from codeduel.core.errors import ConflictError, NotFoundError, PermissionError, ValidationError
from codeduel.features.challenges.invites import generate_invite_code, get_invite_code, redeem_invite_code
from codeduel.features.challenges.service import create_challenge, join_challenge, update_challenge_status
from codeduel.features.evaluation.jobs import list_active_memberships
from codeduel.models.challenge import ChallengeStatus


def _create(owner="owner", **overrides):
    fields = dict(name="Winter Arc", start_date=date(2024, 1, 1), end_date=date(2024, 1, 31))
    fields.update(overrides)
    return create_challenge(owner, **fields)


@pytest.fixture
def people(seed):
    for user_id in ("owner", "u1", "u2", "u3", "u4"):
        seed.user(user_id)


def test_create_challenge_enrolls_owner(people):
    challenge = _create(difficulty_filter=["Medium", "Hard"], penalty_amount=5)

    assert challenge.status == ChallengeStatus.PENDING
    members = list_active_memberships(challenge.id)
    assert [m.user_id for m in members] == ["owner"]


@pytest.mark.parametrize(
    "overrides",
    [
        {"end_date": date(2024, 1, 1)},
        {"end_date": date(2023, 12, 31)},
        {"difficulty_filter": ["Easy", "Impossible"]},
        {"visibility": "SECRET"},
        {"min_submissions_per_day": 0},
        {"penalty_amount": -1},
        {"name": "   "},
    ],
)
def test_create_challenge_validation(people, overrides):
    with pytest.raises(ValidationError):
        _create(**overrides)


def test_only_owner_updates_status(people):
    challenge = _create()
    with pytest.raises(PermissionError):
        update_challenge_status(challenge.id, "u1", "ACTIVE")
    with pytest.raises(ValidationError):
        update_challenge_status(challenge.id, "owner", "PAUSED")

    updated = update_challenge_status(challenge.id, "owner", "ACTIVE")
    assert updated.status == ChallengeStatus.ACTIVE


def test_join_public_challenge_once(people):
    challenge = _create()

    membership = join_challenge("u1", challenge.id)

    assert membership.challenge_id == challenge.id
    with pytest.raises(ConflictError):
        join_challenge("u1", challenge.id)


def test_private_and_closed_challenges_reject_direct_join(people):
    private = _create(visibility="PRIVATE")
    with pytest.raises(PermissionError):
        join_challenge("u1", private.id)

    closed = _create()
    update_challenge_status(closed.id, "owner", "CANCELLED")
    with pytest.raises(ValidationError):
        join_challenge("u1", closed.id)


def test_join_unknown_challenge(people):
    with pytest.raises(NotFoundError):
        join_challenge("u1", "missing")


def test_generate_invite_code_rules(people):
    challenge = _create(visibility="PRIVATE")

    invite = generate_invite_code("owner", challenge.id, expires_in_hours=48, max_uses=3)

    assert len(invite.code) == 8
    assert invite.code == invite.code.upper()
    assert invite.remaining_uses == 3
    with pytest.raises(PermissionError):
        generate_invite_code("u1", challenge.id)
    with pytest.raises(ValidationError):
        generate_invite_code("owner", challenge.id, expires_in_hours=169)
    with pytest.raises(ValidationError):
        generate_invite_code("owner", challenge.id, max_uses=0)


def test_redeem_invite_joins_private_challenge(people):
    challenge = _create(visibility="PRIVATE")
    invite = generate_invite_code("owner", challenge.id, max_uses=2)

    result = redeem_invite_code("u1", invite.code.lower())

    assert result.challenge_id == challenge.id
    assert result.used_count == 1
    assert {m.user_id for m in list_active_memberships(challenge.id)} == {"owner", "u1"}


def test_redeem_rejects_exhausted_and_expired_codes(people):
    challenge = _create()
    invite = generate_invite_code("owner", challenge.id, max_uses=1)
    redeem_invite_code("u1", invite.code)

    with pytest.raises(ValidationError):
        redeem_invite_code("u2", invite.code)

    fresh = generate_invite_code("owner", challenge.id, expires_in_hours=1)
    later = datetime.now(timezone.utc) + timedelta(hours=2)
    with pytest.raises(ValidationError):
        redeem_invite_code("u2", fresh.code, now=later)


def test_duplicate_membership_returns_the_claimed_use(people):
    challenge = _create()
    invite = generate_invite_code("owner", challenge.id, max_uses=5)

    with pytest.raises(ConflictError):
        redeem_invite_code("owner", invite.code)

    assert get_invite_code(invite.code).used_count == 0


def test_redemptions_stop_at_max_uses(people):
    challenge = _create()
    invite = generate_invite_code("owner", challenge.id, max_uses=2)

    outcomes = []
    for user_id in ("u1", "u2", "u3"):
        try:
            redeem_invite_code(user_id, invite.code)
            outcomes.append(True)
        except ValidationError:
            outcomes.append(False)

    assert outcomes == [True, True, False]
    assert get_invite_code(invite.code).used_count == 2


@pytest.fixture
def file_database(tmp_path):
    """File-backed SQLite with a real pool so each thread gets its own connection."""
    database.dispose_engine()
    database.init_engine(f"sqlite+pysqlite:///{tmp_path / 'invites.db'}")
    database.create_all_tables()
    yield
    database.drop_all_tables()
    database.dispose_engine()


def test_file_database_does_not_share_one_connection(file_database):
    assert not isinstance(database.get_engine().pool, StaticPool)


def test_concurrent_redemptions_never_exceed_max_uses(file_database, people):
    challenge = _create()
    invite = generate_invite_code("owner", challenge.id, max_uses=2)

    def attempt(user_id):
        try:
            redeem_invite_code(user_id, invite.code)
            return True
        except ValidationError:
            return False

    with ThreadPoolExecutor(max_workers=4) as pool:
        outcomes = list(pool.map(attempt, ["u1", "u2", "u3", "u4"]))

    assert outcomes.count(True) == 2
    assert get_invite_code(invite.code).used_count == 2
    assert len(list_active_memberships(challenge.id)) == 3


def test_unknown_invite_code(people):
    with pytest.raises(NotFoundError):
        redeem_invite_code("u1", "DEADBEEF")
