"""
Problem metadata cache.

Backed by the problem_metadata table with a TTL (PROBLEM_CACHE_TTL_DAYS,
default 7). Stale rows are refreshed from LeetCode on read; when the live
fetch fails or comes back empty the stale row is still served, flagged stale.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from codeduel.core.config import settings
from codeduel.core.database import as_utc, get_db_session, problem_metadata
from codeduel.core.errors import UpstreamError
from codeduel.core.logging import log_event
from codeduel.core.metrics import problem_cache_lookups_total
from codeduel.models.challenge import UNKNOWN_DIFFICULTY
from codeduel.models.evaluation import ActivityItem, CachedMetadata, ProblemMetadata

logger = logging.getLogger("codeduel")


class ProblemMetadataCache:
    def __init__(self, client=None, ttl: Optional[timedelta] = None, now_fn: Optional[Callable[[], datetime]] = None):
        self._client = client
        self.ttl = ttl or timedelta(days=settings.PROBLEM_CACHE_TTL_DAYS)
        self.now_fn = now_fn or (lambda: datetime.now(timezone.utc))

    @property
    def client(self):
        if self._client is None:
            from codeduel.services.leetcode_client import get_leetcode_client

            self._client = get_leetcode_client()
        return self._client

    def _load(self, title_slug: str) -> Optional[ProblemMetadata]:
        with get_db_session() as session:
            row = session.execute(
                select(problem_metadata).where(problem_metadata.c.title_slug == title_slug)
            ).mappings().first()
        if row is None:
            return None
        meta = ProblemMetadata.from_row(row)
        meta.last_fetched_at = as_utc(meta.last_fetched_at)
        return meta

    def _upsert(self, meta: ProblemMetadata) -> None:
        values = {
            "question_id": meta.question_id,
            "title": meta.title,
            "difficulty": meta.difficulty,
            "topic_tags": list(meta.topic_tags),
            "ac_rate": meta.ac_rate,
            "likes": meta.likes,
            "dislikes": meta.dislikes,
            "is_paid_only": meta.is_paid_only,
            "last_fetched_at": meta.last_fetched_at,
            "updated_at": meta.last_fetched_at,
        }
        if self._update(meta.title_slug, values):
            return
        try:
            with get_db_session() as session:
                session.execute(problem_metadata.insert().values(title_slug=meta.title_slug, **values))
        except IntegrityError:
            # Another worker inserted the slug after our update missed; overwrite its row
            self._update(meta.title_slug, values)

    def _update(self, title_slug: str, values: dict) -> bool:
        with get_db_session() as session:
            result = session.execute(
                update(problem_metadata)
                .where(problem_metadata.c.title_slug == title_slug)
                .values(**values)
            )
            return bool(result.rowcount)

    def is_fresh(self, meta: ProblemMetadata) -> bool:
        fetched = as_utc(meta.last_fetched_at)
        return fetched is not None and self.now_fn() - fetched < self.ttl

    def lookup(self, title_slug: str, session=None) -> Optional[CachedMetadata]:
        """Cached metadata for a slug; session is the member's LeetCode credentials, if any."""
        cached = self._load(title_slug)
        if cached is not None and self.is_fresh(cached):
            problem_cache_lookups_total.inc(labels={"result": "hit"})
            return CachedMetadata(metadata=cached, stale=False)

        live: Optional[ProblemMetadata] = None
        try:
            live = self.client.fetch_problem(title_slug, session=session)
        except UpstreamError as exc:
            log_event(
                "warning",
                "problem_cache.fetch_failed",
                event_type="problem_cache.fetch_failed",
                error_code=exc.code,
                extra={"title_slug": title_slug},
            )

        if live is not None:
            live.last_fetched_at = self.now_fn()
            self._upsert(live)
            problem_cache_lookups_total.inc(labels={"result": "refreshed" if cached else "miss"})
            return CachedMetadata(metadata=live, stale=False)

        if cached is not None:
            problem_cache_lookups_total.inc(labels={"result": "stale"})
            return CachedMetadata(metadata=cached, stale=True)

        problem_cache_lookups_total.inc(labels={"result": "unavailable"})
        return None

    def enrich(self, items: Iterable[ActivityItem], session=None) -> List[ActivityItem]:
        """Attach difficulty and tags to each item; unknown problems get difficulty "Unknown"."""
        seen: Dict[str, Optional[CachedMetadata]] = {}
        enriched: List[ActivityItem] = []
        for item in items:
            if item.title_slug not in seen:
                seen[item.title_slug] = self.lookup(item.title_slug, session=session)
            found = seen[item.title_slug]
            if found is not None and found.metadata.difficulty:
                item.difficulty = found.metadata.difficulty
                item.topic_tags = list(found.metadata.topic_tags)
            else:
                item.difficulty = UNKNOWN_DIFFICULTY
                item.topic_tags = []
            enriched.append(item)
        return enriched
