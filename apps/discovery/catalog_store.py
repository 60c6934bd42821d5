# apps/discovery/catalog_store.py
from __future__ import annotations

import abc
import logging
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence, Tuple
from uuid import UUID

from sqlalchemy import Float, cast, desc, extract, func, select
from sqlalchemy.exc import ProgrammingError
from sqlalchemy.ext.asyncio import async_sessionmaker

from models import (
    Content,
    ContentGenre,
    ContentMood,
    ContentTheme,
    Credit,
    WatchProgress,
)
from sessions import storage_session

log = logging.getLogger("catalog_store")

ScoredId = Tuple[UUID, float]

ROLE_ACTOR = "actor"
ROLE_DIRECTOR = "director"
SEED_CAST_LIMIT = 10


@dataclass
class ContentRow:
    content_id: UUID
    popularity_score: float
    runtime_minutes: Optional[int] = None
    match_count: int = 0


class CatalogStore(abc.ABC):
    """Read-side queries over the catalog and watch history.

    Every method is a single round-trip and may be awaited concurrently with
    any other method on the same store.
    """

    @abc.abstractmethod
    async def recent_watched_content(self, user_id: UUID, limit: int) -> List[UUID]:
        """Distinct content ids the user watched, most recent first."""

    @abc.abstractmethod
    async def genre_similar(self, content_id: UUID, limit: int) -> List[ScoredId]:
        """Content sharing genres with content_id; similarity = shared / seed genre count."""

    @abc.abstractmethod
    async def cast_similar(self, content_id: UUID, limit: int) -> List[ScoredId]:
        """Content sharing actors with the top-billed cast of content_id."""

    @abc.abstractmethod
    async def director_similar(self, content_id: UUID, limit: int) -> List[ScoredId]:
        """Content sharing a director credit; similarity is always 1.0."""

    @abc.abstractmethod
    async def theme_similar(self, content_id: UUID, limit: int) -> List[ScoredId]:
        """Content sharing themes; same ratio as genre_similar."""

    @abc.abstractmethod
    async def similar_users(
        self,
        user_id: UUID,
        seed_content: Sequence[UUID],
        min_overlap: int,
        limit: int,
    ) -> List[ScoredId]:
        """Other users with >= min_overlap seed items watched; similarity = overlap / len(seed)."""

    @abc.abstractmethod
    async def highly_rated_content(
        self, user_id: UUID, min_completion: float, limit: int
    ) -> List[ScoredId]:
        """(content_id, completion_rate) by completion rate then recency."""

    @abc.abstractmethod
    async def content_watched_in_hours(
        self, hour_start: int, hour_end: int, min_completion: float, limit: int
    ) -> List[ContentRow]:
        """Distinct content watched with hour in [hour_start, hour_end), by popularity."""

    @abc.abstractmethod
    async def content_by_runtime(
        self,
        *,
        min_popularity: float,
        limit: int,
        min_runtime: Optional[int] = None,
        max_runtime: Optional[int] = None,
        runtime_order: Optional[str] = None,
    ) -> List[ContentRow]:
        """Popular content within a runtime window; ties broken by runtime in runtime_order."""

    @abc.abstractmethod
    async def has_mood_tags(self) -> bool:
        """True when the mood tag table exists and holds at least one row."""

    @abc.abstractmethod
    async def content_by_mood(
        self, mood: str, min_popularity: float, limit: int
    ) -> List[ContentRow]:
        """Content tagged with mood (case-insensitive), by popularity."""

    @abc.abstractmethod
    async def content_by_genres(
        self, genres: Sequence[str], min_popularity: float, limit: int
    ) -> List[ContentRow]:
        """Content in any of genres, with match_count set, by match count then popularity."""


class SqlCatalogStore(CatalogStore):
    def __init__(self, sessionmaker: async_sessionmaker):
        self._sessionmaker = sessionmaker

    def _session(self, operation: str, entity_id: Optional[Any] = None):
        return storage_session(self._sessionmaker, operation, entity_id, logger=log)

    async def recent_watched_content(self, user_id: UUID, limit: int) -> List[UUID]:
        stmt = (
            select(WatchProgress.content_id)
            .where(WatchProgress.user_id == user_id)
            .order_by(WatchProgress.last_watched.desc())
            .limit(limit)
        )
        async with self._session("recent_watched_content", user_id) as db:
            rows = (await db.execute(stmt)).scalars().all()
        # (user_id, content_id) is the primary key, but keep order-preserving dedupe
        return list(dict.fromkeys(rows))

    async def _attribute_overlap(
        self,
        operation: str,
        table,
        attr_col,
        content_id: UUID,
        limit: int,
    ) -> List[ScoredId]:
        seed_values = select(attr_col).where(table.content_id == content_id).correlate(None)
        seed_count = (
            select(func.count())
            .select_from(seed_values.subquery())
            .scalar_subquery()
        )
        similarity = (cast(func.count(), Float) / func.greatest(seed_count, 1)).label("similarity")
        stmt = (
            select(table.content_id, similarity)
            .where(attr_col.in_(seed_values), table.content_id != content_id)
            .group_by(table.content_id)
            .order_by(desc("similarity"), table.content_id)
            .limit(limit)
        )
        async with self._session(operation, content_id) as db:
            rows = (await db.execute(stmt)).all()
        return [(cid, float(sim or 0.0)) for cid, sim in rows]

    async def genre_similar(self, content_id: UUID, limit: int) -> List[ScoredId]:
        return await self._attribute_overlap(
            "genre_similar", ContentGenre, ContentGenre.genre, content_id, limit
        )

    async def theme_similar(self, content_id: UUID, limit: int) -> List[ScoredId]:
        return await self._attribute_overlap(
            "theme_similar", ContentTheme, ContentTheme.theme, content_id, limit
        )

    async def cast_similar(self, content_id: UUID, limit: int) -> List[ScoredId]:
        # Top-billed actors only, to bound fan-out on large ensembles
        seed_cast = (
            select(Credit.person_name)
            .where(Credit.content_id == content_id, Credit.role_type == ROLE_ACTOR)
            .order_by(Credit.credit_order.asc().nulls_last(), Credit.person_name)
            .limit(SEED_CAST_LIMIT)
        )
        seed_sub = seed_cast.subquery()
        seed_count = select(func.count()).select_from(seed_sub).scalar_subquery()
        similarity = (cast(func.count(), Float) / func.greatest(seed_count, 1)).label("similarity")
        stmt = (
            select(Credit.content_id, similarity)
            .where(
                Credit.person_name.in_(select(seed_sub.c.person_name)),
                Credit.role_type == ROLE_ACTOR,
                Credit.content_id != content_id,
            )
            .group_by(Credit.content_id)
            .order_by(desc("similarity"), Credit.content_id)
            .limit(limit)
        )
        async with self._session("cast_similar", content_id) as db:
            rows = (await db.execute(stmt)).all()
        return [(cid, float(sim or 0.0)) for cid, sim in rows]

    async def director_similar(self, content_id: UUID, limit: int) -> List[ScoredId]:
        seed_directors = (
            select(Credit.person_name)
            .where(Credit.content_id == content_id, Credit.role_type == ROLE_DIRECTOR)
            .correlate(None)
        )
        stmt = (
            select(Credit.content_id)
            .where(
                Credit.person_name.in_(seed_directors),
                Credit.role_type == ROLE_DIRECTOR,
                Credit.content_id != content_id,
            )
            .distinct()
            .order_by(Credit.content_id)
            .limit(limit)
        )
        async with self._session("director_similar", content_id) as db:
            rows = (await db.execute(stmt)).scalars().all()
        return [(cid, 1.0) for cid in rows]

    async def similar_users(
        self,
        user_id: UUID,
        seed_content: Sequence[UUID],
        min_overlap: int,
        limit: int,
    ) -> List[ScoredId]:
        if not seed_content:
            return []
        seed_count = len(seed_content)
        similarity = (cast(func.count(), Float) / seed_count).label("similarity")
        stmt = (
            select(WatchProgress.user_id, similarity)
            .where(
                WatchProgress.content_id.in_(list(seed_content)),
                WatchProgress.user_id != user_id,
            )
            .group_by(WatchProgress.user_id)
            .having(func.count() >= min_overlap)
            .order_by(desc("similarity"), WatchProgress.user_id)
            .limit(limit)
        )
        async with self._session("similar_users", user_id) as db:
            rows = (await db.execute(stmt)).all()
        return [(uid, float(sim or 0.0)) for uid, sim in rows]

    async def highly_rated_content(
        self, user_id: UUID, min_completion: float, limit: int
    ) -> List[ScoredId]:
        stmt = (
            select(WatchProgress.content_id, WatchProgress.completion_rate)
            .where(
                WatchProgress.user_id == user_id,
                WatchProgress.completion_rate >= min_completion,
            )
            .order_by(WatchProgress.completion_rate.desc(), WatchProgress.last_watched.desc())
            .limit(limit)
        )
        async with self._session("highly_rated_content", user_id) as db:
            rows = (await db.execute(stmt)).all()
        return [(cid, float(rate)) for cid, rate in rows]

    async def content_watched_in_hours(
        self, hour_start: int, hour_end: int, min_completion: float, limit: int
    ) -> List[ContentRow]:
        hour = extract("hour", WatchProgress.last_watched)
        stmt = (
            select(Content.id, Content.popularity_score)
            .distinct()
            .join(WatchProgress, WatchProgress.content_id == Content.id)
            .where(
                hour >= hour_start,
                hour < hour_end,
                WatchProgress.completion_rate > min_completion,
            )
            .order_by(Content.popularity_score.desc(), Content.id)
            .limit(limit)
        )
        async with self._session("content_watched_in_hours", f"{hour_start}-{hour_end}") as db:
            rows = (await db.execute(stmt)).all()
        return [ContentRow(content_id=cid, popularity_score=float(pop)) for cid, pop in rows]

    async def content_by_runtime(
        self,
        *,
        min_popularity: float,
        limit: int,
        min_runtime: Optional[int] = None,
        max_runtime: Optional[int] = None,
        runtime_order: Optional[str] = None,
    ) -> List[ContentRow]:
        stmt = select(Content.id, Content.popularity_score, Content.runtime_minutes).where(
            Content.popularity_score > min_popularity
        )
        if min_runtime is not None:
            stmt = stmt.where(Content.runtime_minutes >= min_runtime)
        if max_runtime is not None:
            stmt = stmt.where(
                Content.runtime_minutes.is_not(None),
                Content.runtime_minutes <= max_runtime,
            )
        order = [Content.popularity_score.desc()]
        if runtime_order == "asc":
            order.append(Content.runtime_minutes.asc())
        elif runtime_order == "desc":
            order.append(Content.runtime_minutes.desc())
        stmt = stmt.order_by(*order, Content.id).limit(limit)
        async with self._session("content_by_runtime") as db:
            rows = (await db.execute(stmt)).all()
        return [
            ContentRow(content_id=cid, popularity_score=float(pop), runtime_minutes=runtime)
            for cid, pop, runtime in rows
        ]

    async def has_mood_tags(self) -> bool:
        async with self._session("has_mood_tags") as db:
            try:
                row = (await db.execute(select(ContentMood.content_id).limit(1))).first()
            except ProgrammingError as exc:
                # table not migrated in this deployment
                log.info("catalog_store_mood_table_unavailable: %s", exc.orig)
                return False
        return row is not None

    async def content_by_mood(
        self, mood: str, min_popularity: float, limit: int
    ) -> List[ContentRow]:
        stmt = (
            select(Content.id, Content.popularity_score)
            .distinct()
            .join(ContentMood, ContentMood.content_id == Content.id)
            .where(
                func.lower(ContentMood.mood) == mood.lower(),
                Content.popularity_score > min_popularity,
            )
            .order_by(Content.popularity_score.desc(), Content.id)
            .limit(limit)
        )
        async with self._session("content_by_mood", mood) as db:
            rows = (await db.execute(stmt)).all()
        return [ContentRow(content_id=cid, popularity_score=float(pop)) for cid, pop in rows]

    async def content_by_genres(
        self, genres: Sequence[str], min_popularity: float, limit: int
    ) -> List[ContentRow]:
        wanted = [g.lower() for g in genres]
        if not wanted:
            return []
        match_count = func.count().label("match_count")
        stmt = (
            select(Content.id, Content.popularity_score, match_count)
            .join(ContentGenre, ContentGenre.content_id == Content.id)
            .where(
                func.lower(ContentGenre.genre).in_(wanted),
                Content.popularity_score > min_popularity,
            )
            .group_by(Content.id, Content.popularity_score)
            .order_by(desc("match_count"), Content.popularity_score.desc(), Content.id)
            .limit(limit)
        )
        async with self._session("content_by_genres", ",".join(wanted)) as db:
            rows = (await db.execute(stmt)).all()
        return [
            ContentRow(content_id=cid, popularity_score=float(pop), match_count=int(count))
            for cid, pop, count in rows
        ]
