"""
LeetCode GraphQL client.

Synchronous httpx client used from worker processes. Every request first takes
a token from the shared upstream rate limiter, and every failure is classified
into the UpstreamError hierarchy so the evaluation engine can mark the day
pending instead of failing the member.
"""
from __future__ import annotations

import json
import logging
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional

import httpx

from codeduel.core.config import settings
from codeduel.core.errors import (
    UpstreamAuthExpiredError,
    UpstreamError,
    UpstreamNotFoundError,
    UpstreamRateLimitedError,
    UpstreamTimeoutError,
)
from codeduel.core.metrics import upstream_errors_total
from codeduel.core.ratelimit import RateLimiter, get_rate_limiter
from codeduel.models.evaluation import ActivityItem, ProblemMetadata
from codeduel.models.session import LeetCodeCredentials

logger = logging.getLogger("codeduel")

RECENT_AC_SUBMISSIONS_QUERY = """
query recentAcSubmissions($username: String!, $limit: Int!) {
  recentAcSubmissionList(username: $username, limit: $limit) {
    id
    title
    titleSlug
    timestamp
    statusDisplay
    lang
  }
}
"""

QUESTION_DATA_QUERY = """
query questionData($titleSlug: String!) {
  question(titleSlug: $titleSlug) {
    questionId
    title
    titleSlug
    difficulty
    likes
    dislikes
    isPaidOnly
    acRate
    topicTags {
      name
      slug
    }
  }
}
"""

USER_PROFILE_CALENDAR_QUERY = """
query userProfileCalendar($username: String!, $year: Int) {
  matchedUser(username: $username) {
    username
    userCalendar(year: $year) {
      activeYears
      streak
      totalActiveDays
      submissionCalendar
    }
  }
}
"""

DEFAULT_HEADERS = {
    "Content-Type": "application/json",
    "User-Agent": "Mozilla/5.0 (compatible; codeduel/1.0)",
    "Referer": "https://leetcode.com/",
}


def _record_error(exc: UpstreamError) -> UpstreamError:
    upstream_errors_total.inc(labels={"kind": exc.kind})
    return exc


class LeetCodeClient:
    def __init__(
        self,
        *,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        recent_limit: Optional[int] = None,
        rate_limiter: Optional[RateLimiter] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = base_url or settings.LEETCODE_GRAPHQL_URL
        self.timeout = timeout if timeout is not None else settings.LEETCODE_TIMEOUT_SECONDS
        self.recent_limit = recent_limit or settings.LEETCODE_RECENT_LIMIT
        self._rate_limiter = rate_limiter
        self._client = httpx.Client(timeout=self.timeout, transport=transport)

    @property
    def rate_limiter(self) -> RateLimiter:
        if self._rate_limiter is None:
            self._rate_limiter = get_rate_limiter()
        return self._rate_limiter

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "LeetCodeClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _headers(self, credentials: Optional[LeetCodeCredentials]) -> Dict[str, str]:
        headers = dict(DEFAULT_HEADERS)
        if credentials:
            if credentials.cookie:
                headers["Cookie"] = credentials.cookie
            if credentials.csrf_token:
                headers["X-CSRFToken"] = credentials.csrf_token
                headers["X-Requested-With"] = "XMLHttpRequest"
        return headers

    def _post(self, operation: str, query: str, variables: Dict[str, Any], credentials: Optional[LeetCodeCredentials] = None) -> Dict[str, Any]:
        if not self.rate_limiter.acquire():
            raise _record_error(UpstreamError(
                f"{operation}: local rate limiter wait exceeded",
                code="upstream_throttled",
            ))

        try:
            response = self._client.post(
                self.base_url,
                json={"query": query, "variables": variables},
                headers=self._headers(credentials),
            )
        except httpx.TimeoutException as exc:
            raise _record_error(UpstreamTimeoutError(f"{operation}: request timed out")) from exc
        except httpx.HTTPError as exc:
            raise _record_error(UpstreamError(f"{operation}: transport error: {exc}")) from exc

        status = response.status_code
        if status == 429:
            raise _record_error(UpstreamRateLimitedError(f"{operation}: rate limited by LeetCode"))
        if status in (401, 403):
            raise _record_error(UpstreamAuthExpiredError(f"{operation}: session expired or unauthorized"))
        if status == 404:
            raise _record_error(UpstreamNotFoundError(f"{operation}: not found"))
        if status >= 400:
            raise _record_error(UpstreamError(f"{operation}: HTTP {status}"))

        try:
            body = response.json()
        except ValueError as exc:
            raise _record_error(UpstreamError(f"{operation}: invalid JSON response")) from exc

        errors = body.get("errors") if isinstance(body, dict) else None
        if errors:
            message = "; ".join(str(err.get("message", err)) if isinstance(err, dict) else str(err) for err in errors)
            if "does not exist" in message.lower():
                raise _record_error(UpstreamNotFoundError(f"{operation}: {message}"))
            raise _record_error(UpstreamError(f"{operation}: {message}"))

        data = body.get("data") if isinstance(body, dict) else None
        if data is None:
            raise _record_error(UpstreamError(f"{operation}: response has no data"))
        return data

    def fetch_activity(self, username: str, on_date: date, session: Optional[LeetCodeCredentials] = None) -> List[ActivityItem]:
        """Accepted submissions whose UTC timestamp falls on on_date, in the order returned."""
        data = self._post(
            "recentAcSubmissions",
            RECENT_AC_SUBMISSIONS_QUERY,
            {"username": username, "limit": self.recent_limit},
            session,
        )
        raw_items = data.get("recentAcSubmissionList") or []

        items: List[ActivityItem] = []
        for raw in raw_items:
            try:
                ts = int(raw.get("timestamp"))
            except (TypeError, ValueError):
                logger.warning("leetcode.bad_timestamp", extra={"event_type": "leetcode.bad_timestamp"})
                continue
            if datetime.fromtimestamp(ts, timezone.utc).date() != on_date:
                continue
            items.append(ActivityItem(
                id=str(raw.get("id")),
                title=raw.get("title") or "",
                title_slug=raw.get("titleSlug") or "",
                timestamp=ts,
                language=raw.get("lang"),
            ))
        return items

    def fetch_problem(self, title_slug: str, session: Optional[LeetCodeCredentials] = None) -> Optional[ProblemMetadata]:
        data = self._post("questionData", QUESTION_DATA_QUERY, {"titleSlug": title_slug}, session)
        question = data.get("question")
        if not question:
            return None
        try:
            ac_rate = float(question["acRate"]) if question.get("acRate") is not None else None
        except (TypeError, ValueError):
            ac_rate = None
        return ProblemMetadata(
            title_slug=question.get("titleSlug") or title_slug,
            question_id=question.get("questionId"),
            title=question.get("title"),
            difficulty=question.get("difficulty"),
            topic_tags=[tag.get("name") for tag in question.get("topicTags") or [] if tag.get("name")],
            ac_rate=ac_rate,
            likes=int(question.get("likes") or 0),
            dislikes=int(question.get("dislikes") or 0),
            is_paid_only=bool(question.get("isPaidOnly")),
            last_fetched_at=datetime.now(timezone.utc),
        )

    def fetch_user_profile(self, username: str, session: Optional[LeetCodeCredentials] = None, year: Optional[int] = None) -> Dict[str, Any]:
        """Calendar summary for a user. Raises UpstreamNotFoundError for unknown users."""
        year = year or datetime.now(timezone.utc).year
        data = self._post(
            "userProfileCalendar",
            USER_PROFILE_CALENDAR_QUERY,
            {"username": username, "year": year},
            session,
        )
        matched = data.get("matchedUser")
        if not matched:
            raise _record_error(UpstreamNotFoundError(f"LeetCode user {username!r} not found"))

        calendar = matched.get("userCalendar") or {}
        raw_calendar = calendar.get("submissionCalendar") or "{}"
        try:
            submission_calendar = json.loads(raw_calendar) if isinstance(raw_calendar, str) else dict(raw_calendar)
        except ValueError:
            submission_calendar = {}
        return {
            "username": matched.get("username") or username,
            "active_years": list(calendar.get("activeYears") or []),
            "streak": int(calendar.get("streak") or 0),
            "total_active_days": int(calendar.get("totalActiveDays") or 0),
            "submission_calendar": {str(k): int(v) for k, v in submission_calendar.items()},
        }


_client: Optional[LeetCodeClient] = None


def get_leetcode_client() -> LeetCodeClient:
    global _client
    if _client is None:
        _client = LeetCodeClient()
    return _client
