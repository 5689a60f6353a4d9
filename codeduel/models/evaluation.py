from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Literal, Mapping, Optional

EvaluationOutcome = Literal["completed", "failed", "pending"]


@dataclass
class ActivityItem:
    """One accepted submission as reported by LeetCode, enriched later by the cache."""

    id: str
    title: str
    title_slug: str
    timestamp: int  # unix seconds
    language: Optional[str] = None
    difficulty: Optional[str] = None
    topic_tags: list[str] = field(default_factory=list)

    @property
    def submitted_at(self) -> datetime:
        return datetime.fromtimestamp(self.timestamp, timezone.utc)


@dataclass
class ProblemMetadata:
    title_slug: str
    question_id: Optional[str] = None
    title: Optional[str] = None
    difficulty: Optional[str] = None
    topic_tags: list[str] = field(default_factory=list)
    ac_rate: Optional[float] = None
    likes: int = 0
    dislikes: int = 0
    is_paid_only: bool = False
    last_fetched_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "ProblemMetadata":
        return cls(
            title_slug=row["title_slug"],
            question_id=row.get("question_id"),
            title=row.get("title"),
            difficulty=row.get("difficulty"),
            topic_tags=list(row.get("topic_tags") or []),
            ac_rate=row.get("ac_rate"),
            likes=int(row.get("likes") or 0),
            dislikes=int(row.get("dislikes") or 0),
            is_paid_only=bool(row.get("is_paid_only")),
            last_fetched_at=row.get("last_fetched_at"),
        )


@dataclass
class CachedMetadata:
    metadata: ProblemMetadata
    stale: bool = False


@dataclass
class RuleResult:
    """Outcome of applying a challenge's rules to one day of activity."""

    completed: bool
    submissions_count: int
    problems_solved: list[str]
    qualifying_items: list[ActivityItem] = field(default_factory=list)


@dataclass
class DailyResult:
    challenge_id: str
    member_id: str
    date: date
    completed: Optional[bool]  # None = pending
    submissions_count: int = 0
    problems_solved: list[str] = field(default_factory=list)
    evaluated_at: Optional[datetime] = None
    metadata: dict = field(default_factory=dict)
    id: Optional[int] = None

    @property
    def is_pending(self) -> bool:
        return self.completed is None

    @property
    def outcome(self) -> EvaluationOutcome:
        if self.completed is None:
            return "pending"
        return "completed" if self.completed else "failed"

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "DailyResult":
        completed = row["completed"]
        return cls(
            id=row.get("id"),
            challenge_id=row["challenge_id"],
            member_id=row["member_id"],
            date=row["date"],
            completed=None if completed is None else bool(completed),
            submissions_count=int(row["submissions_count"] or 0),
            problems_solved=list(row.get("problems_solved") or []),
            evaluated_at=row.get("evaluated_at"),
            metadata=dict(row.get("metadata") or {}),
        )

    def to_dict(self) -> dict:
        return {
            "challenge_id": self.challenge_id,
            "member_id": self.member_id,
            "date": self.date.isoformat(),
            "completed": self.completed,
            "outcome": self.outcome,
            "submissions_count": self.submissions_count,
            "problems_solved": list(self.problems_solved),
            "evaluated_at": self.evaluated_at.isoformat() if self.evaluated_at else None,
            "metadata": dict(self.metadata),
        }
