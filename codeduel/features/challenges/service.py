"""
Challenge and membership helpers the evaluation core relies on.

Only the invariants matter here: valid date window, known difficulties and
visibility, owner auto-membership, and one membership per (challenge, user).
"""
from __future__ import annotations

from datetime import date
from typing import Iterable, Optional
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from codeduel.core.database import challenge_members, challenges, get_db_session
from codeduel.core.errors import ConflictError, NotFoundError, PermissionError, ValidationError
from codeduel.core.logging import log_event
from codeduel.models.challenge import VALID_DIFFICULTIES, Challenge, ChallengeStatus, ChallengeVisibility, Membership

CLOSED_STATUSES = {ChallengeStatus.COMPLETED, ChallengeStatus.CANCELLED}


def _validate_challenge_fields(
    start_date: date,
    end_date: date,
    difficulty_filter: Iterable[str],
    visibility: str,
    min_submissions_per_day: int,
    penalty_amount: int,
) -> ChallengeVisibility:
    if end_date <= start_date:
        raise ValidationError("End date must be after start date")

    invalid = [d for d in difficulty_filter if d not in VALID_DIFFICULTIES]
    if invalid:
        raise ValidationError(f"Invalid difficulty levels: {', '.join(invalid)}")

    try:
        parsed_visibility = ChallengeVisibility(visibility)
    except ValueError:
        raise ValidationError(f"Invalid visibility: {visibility}. Must be PUBLIC or PRIVATE")

    if min_submissions_per_day < 1:
        raise ValidationError("min_submissions_per_day must be at least 1")
    if penalty_amount < 0:
        raise ValidationError("penalty_amount cannot be negative")
    return parsed_visibility


def add_membership(session: Session, challenge_id: str, user_id: str) -> str:
    """Insert a membership row in the caller's transaction. Raises ConflictError on duplicates."""
    existing = session.execute(
        select(challenge_members.c.id).where(
            challenge_members.c.challenge_id == challenge_id,
            challenge_members.c.user_id == user_id,
        )
    ).first()
    if existing is not None:
        raise ConflictError("User is already a member of this challenge")

    member_id = str(uuid4())
    session.execute(
        challenge_members.insert().values(
            id=member_id,
            challenge_id=challenge_id,
            user_id=user_id,
            current_streak=0,
            longest_streak=0,
            total_penalties=0,
            is_active=True,
        )
    )
    return member_id


def create_challenge(
    owner_id: str,
    *,
    name: str,
    start_date: date,
    end_date: date,
    min_submissions_per_day: int = 1,
    difficulty_filter: Optional[Iterable[str]] = None,
    unique_problem_constraint: bool = True,
    penalty_amount: int = 0,
    visibility: str = ChallengeVisibility.PUBLIC.value,
    description: Optional[str] = None,
) -> Challenge:
    """Create a PENDING challenge and enroll its owner as the first member."""
    difficulties = list(difficulty_filter or [])
    parsed_visibility = _validate_challenge_fields(
        start_date, end_date, difficulties, visibility, min_submissions_per_day, penalty_amount
    )
    if not name or not name.strip():
        raise ValidationError("Challenge name is required")

    challenge = Challenge(
        id=str(uuid4()),
        owner_id=owner_id,
        name=name.strip(),
        description=description,
        start_date=start_date,
        end_date=end_date,
        min_submissions_per_day=min_submissions_per_day,
        difficulty_filter=difficulties,
        unique_problem_constraint=unique_problem_constraint,
        penalty_amount=penalty_amount,
        status=ChallengeStatus.PENDING,
        visibility=parsed_visibility,
    )

    with get_db_session() as session:
        session.execute(
            challenges.insert().values(
                id=challenge.id,
                owner_id=owner_id,
                name=challenge.name,
                description=description,
                difficulty_filter=difficulties,
                min_submissions_per_day=min_submissions_per_day,
                unique_problem_constraint=unique_problem_constraint,
                penalty_amount=penalty_amount,
                start_date=start_date,
                end_date=end_date,
                status=challenge.status.value,
                visibility=parsed_visibility.value,
            )
        )
        add_membership(session, challenge.id, owner_id)

    log_event("info", "challenge.created", challenge_id=challenge.id, event_type="challenge.created")
    return challenge


def get_challenge(challenge_id: str) -> Challenge:
    with get_db_session() as session:
        row = session.execute(select(challenges).where(challenges.c.id == challenge_id)).mappings().first()
    if row is None:
        raise NotFoundError("Challenge not found")
    return Challenge.from_row(row)


def update_challenge_status(challenge_id: str, owner_id: str, status: str) -> Challenge:
    try:
        new_status = ChallengeStatus(status)
    except ValueError:
        raise ValidationError(f"Invalid status: {status}")

    challenge = get_challenge(challenge_id)
    if challenge.owner_id != owner_id:
        raise PermissionError("Only the challenge owner can update its status")

    with get_db_session() as session:
        session.execute(
            update(challenges).where(challenges.c.id == challenge_id).values(status=new_status.value)
        )

    log_event(
        "info",
        "challenge.status_updated",
        challenge_id=challenge_id,
        event_type="challenge.status",
        extra={"from": challenge.status.value, "to": new_status.value},
    )
    challenge.status = new_status
    return challenge


def join_challenge(user_id: str, challenge_id: str) -> Membership:
    """Join a PUBLIC, still-open challenge. Private challenges need an invite code."""
    challenge = get_challenge(challenge_id)
    if challenge.visibility != ChallengeVisibility.PUBLIC:
        raise PermissionError("This challenge is private. Use an invite code to join.")
    if challenge.status in CLOSED_STATUSES:
        raise ValidationError("Cannot join a completed or cancelled challenge")

    try:
        with get_db_session() as session:
            member_id = add_membership(session, challenge_id, user_id)
    except IntegrityError:
        raise ConflictError("User is already a member of this challenge")

    log_event("info", "challenge.joined", challenge_id=challenge_id, member_id=member_id, event_type="challenge.joined")
    return Membership(id=member_id, challenge_id=challenge_id, user_id=user_id)
