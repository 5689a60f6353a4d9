from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Literal, Mapping, Optional

Difficulty = Literal["Easy", "Medium", "Hard"]
VALID_DIFFICULTIES = ("Easy", "Medium", "Hard")
UNKNOWN_DIFFICULTY = "Unknown"


class ChallengeStatus(str, Enum):
    """PENDING -> ACTIVE -> COMPLETED, or CANCELLED at any point."""

    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class ChallengeVisibility(str, Enum):
    PUBLIC = "PUBLIC"
    PRIVATE = "PRIVATE"


@dataclass
class User:
    user_id: str
    username: str
    email: Optional[str] = None
    leetcode_username: Optional[str] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "User":
        return cls(
            user_id=row["user_id"],
            username=row["username"],
            email=row.get("email"),
            leetcode_username=row.get("leetcode_username"),
        )


@dataclass
class Challenge:
    """
    A set of daily rules applied to every active member between start_date and
    end_date (both inclusive, calendar dates).
    """

    id: str
    owner_id: str
    name: str
    start_date: date
    end_date: date
    min_submissions_per_day: int = 1
    difficulty_filter: list[str] = field(default_factory=list)
    unique_problem_constraint: bool = True
    penalty_amount: int = 0
    status: ChallengeStatus = ChallengeStatus.PENDING
    visibility: ChallengeVisibility = ChallengeVisibility.PUBLIC
    description: Optional[str] = None

    def covers(self, on_date: date) -> bool:
        return self.start_date <= on_date <= self.end_date

    def is_evaluable(self, on_date: date) -> bool:
        return self.status == ChallengeStatus.ACTIVE and self.covers(on_date)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Challenge":
        return cls(
            id=row["id"],
            owner_id=row["owner_id"],
            name=row["name"],
            description=row.get("description"),
            start_date=row["start_date"],
            end_date=row["end_date"],
            min_submissions_per_day=int(row["min_submissions_per_day"]),
            difficulty_filter=list(row.get("difficulty_filter") or []),
            unique_problem_constraint=bool(row["unique_problem_constraint"]),
            penalty_amount=int(row["penalty_amount"] or 0),
            status=ChallengeStatus(row["status"]),
            visibility=ChallengeVisibility(row["visibility"]),
        )


@dataclass
class Membership:
    id: str
    challenge_id: str
    user_id: str
    current_streak: int = 0
    longest_streak: int = 0
    total_penalties: int = 0
    is_active: bool = True
    joined_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Membership":
        return cls(
            id=row["id"],
            challenge_id=row["challenge_id"],
            user_id=row["user_id"],
            current_streak=int(row["current_streak"]),
            longest_streak=int(row["longest_streak"]),
            total_penalties=int(row["total_penalties"]),
            is_active=bool(row["is_active"]),
            joined_at=row.get("joined_at"),
        )
