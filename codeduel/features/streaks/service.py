from __future__ import annotations

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from codeduel.core.database import challenge_members
from codeduel.core.errors import NotFoundError
from codeduel.models.streak import StreakUpdate


def next_streak(current: int, longest: int, completed: bool) -> StreakUpdate:
    """
    Pure streak transition.

    Completed days extend the streak and may raise the record; a failed day
    resets current to zero and never touches longest.
    """
    current = max(0, int(current))
    longest = max(int(longest), current)
    if completed:
        new_current = current + 1
        return StreakUpdate(previous_current=current, current=new_current, longest=max(longest, new_current))
    return StreakUpdate(previous_current=current, current=0, longest=longest)


def apply_streak_outcome(session: Session, member_id: str, completed: bool) -> StreakUpdate:
    """Lock the membership row, fold in one day's outcome, write it back. Does not commit."""
    row = session.execute(
        select(challenge_members.c.current_streak, challenge_members.c.longest_streak)
        .where(challenge_members.c.id == member_id)
        .with_for_update()
    ).first()
    if row is None:
        raise NotFoundError(f"Membership {member_id} not found")

    outcome = next_streak(row.current_streak, row.longest_streak, completed)
    session.execute(
        update(challenge_members)
        .where(challenge_members.c.id == member_id)
        .values(current_streak=outcome.current, longest_streak=outcome.longest)
    )
    return outcome
