# apps/discovery/context_filter.py
from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Set, Tuple, Union
from uuid import UUID

from catalog_store import CatalogStore, ContentRow
from domain import (
    DeviceType,
    RecommendationContext,
    RecommendationSource,
    ScoredContent,
    TemporalPatterns,
    UserProfile,
)
from errors import StorageError
from fanout import gather_or_cancel

MIN_POPULARITY = 0.3
MIN_TIME_OF_DAY_COMPLETION = 0.3
MOOD_CAPABILITY_TTL_SECONDS = 300.0

# Out-of-range pattern index; neutral, not a domain signal
NEUTRAL_SCORE = 0.5

TIME_OF_DAY_HOURS: Dict[str, Tuple[int, int]] = {
    "morning": (6, 12),
    "afternoon": (12, 18),
    "evening": (18, 24),
    "night": (0, 6),
}
ALL_DAY = (0, 24)

MOOD_GENRES: Dict[str, Tuple[str, ...]] = {}
for _moods, _genres in (
    (("happy", "joyful", "cheerful"), ("comedy", "family", "animation")),
    (("sad", "melancholy", "somber"), ("drama", "romance")),
    (("excited", "energetic", "pumped"), ("action", "adventure", "thriller")),
    (("relaxed", "calm", "peaceful"), ("documentary", "nature", "lifestyle")),
    (("scared", "fearful"), ("horror", "thriller")),
    (("romantic", "loving"), ("romance", "drama")),
    (("curious", "intrigued"), ("documentary", "mystery", "sci-fi")),
    (("nostalgic", "reminiscent"), ("classic", "drama")),
):
    for _mood in _moods:
        MOOD_GENRES[_mood] = _genres
DEFAULT_MOOD_GENRES: Tuple[str, ...] = ("drama", "comedy")

log = logging.getLogger("context_filter")


def _pattern_value(values: Sequence[float], index: int) -> float:
    if 0 <= index < len(values):
        return float(values[index])
    return NEUTRAL_SCORE


def calculate_temporal_score(patterns: TemporalPatterns, hour: int, weekday: int) -> float:
    hourly = _pattern_value(patterns.hourly_patterns, hour)
    weekday_score = _pattern_value(patterns.weekday_patterns, weekday)
    return hourly * 0.6 + weekday_score * 0.4


def hours_for_time_of_day(label: str) -> Tuple[int, int]:
    return TIME_OF_DAY_HOURS.get((label or "").strip().lower(), ALL_DAY)


def genres_for_mood(mood: str) -> Tuple[str, ...]:
    return MOOD_GENRES.get((mood or "").strip().lower(), DEFAULT_MOOD_GENRES)


def device_compatibility(device: DeviceType, runtime_minutes: Optional[int]) -> float:
    """Favor long content on TV and short content on handhelds."""
    if device == DeviceType.DESKTOP:
        return 0.9
    if runtime_minutes is None:
        return 0.7
    if device == DeviceType.TV:
        return 1.0 if runtime_minutes > 60 else 0.8
    return 1.0 if runtime_minutes < 30 else 0.8


def device_score(device: DeviceType, popularity: float, runtime_minutes: Optional[int]) -> float:
    return min(1.0, popularity * 0.5 + device_compatibility(device, runtime_minutes) * 0.5)


def _by_score(candidates: List[ScoredContent]) -> List[ScoredContent]:
    return sorted(candidates, key=lambda c: (-c.score, str(c.content_id)))


def _coerce_device(device: Union[DeviceType, str]) -> DeviceType:
    if isinstance(device, DeviceType):
        return device
    return DeviceType(str(device).strip().lower())


class MoodTagCapability:
    """Whether mood tags can be queried; checked once and cached for ttl_seconds."""

    def __init__(
        self,
        check: Callable[[], Awaitable[bool]],
        ttl_seconds: float = MOOD_CAPABILITY_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._check = check
        self._ttl = ttl_seconds
        self._clock = clock
        self._value: Optional[bool] = None
        self._resolved_at = 0.0
        self._lock = asyncio.Lock()

    def _fresh(self) -> bool:
        return self._value is not None and (self._clock() - self._resolved_at) < self._ttl

    async def available(self) -> bool:
        if self._fresh():
            return bool(self._value)
        async with self._lock:
            if self._fresh():
                return bool(self._value)
            try:
                value = await self._check()
            except StorageError as exc:
                # not cached; the next request checks again
                log.warning("context_mood_check_failed: %s", exc)
                return False
            self._value = value
            self._resolved_at = self._clock()
            log.info("context_mood_capability available=%s", value)
            return value


class ContextAwareFilter:
    def __init__(
        self,
        store: CatalogStore,
        *,
        min_popularity: float = MIN_POPULARITY,
        mood_capability_ttl_seconds: float = MOOD_CAPABILITY_TTL_SECONDS,
        now: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.min_popularity = min_popularity
        self.mood_capability = MoodTagCapability(store.has_mood_tags, mood_capability_ttl_seconds)
        self._now = now or (lambda: datetime.now(timezone.utc))

    calculate_temporal_score = staticmethod(calculate_temporal_score)

    async def generate_candidates(
        self,
        profile: UserProfile,
        context: RecommendationContext,
        limit: int,
    ) -> List[ScoredContent]:
        if limit <= 0:
            return []

        passes = []
        if context.time_of_day:
            passes.append(self.filter_by_time_of_day(profile, context.time_of_day, limit))
        if context.device_type:
            passes.append(self.filter_by_device(context.device_type, limit))
        if context.mood:
            passes.append(self.filter_by_mood(context.mood, limit))

        results = await gather_or_cancel(passes)
        candidates: List[ScoredContent] = [c for batch in results for c in batch]

        candidates = _by_score(candidates)
        seen: Set[UUID] = set()
        deduped: List[ScoredContent] = []
        for cand in candidates:
            if cand.content_id in seen:
                continue
            seen.add(cand.content_id)
            deduped.append(cand)

        log.info(
            "context_candidates user_id=%s passes=%d raw=%d returned=%d",
            profile.user_id, len(passes), len(candidates), min(len(deduped), limit),
        )
        return deduped[:limit]

    async def filter_by_time_of_day(
        self, profile: UserProfile, time_of_day: str, limit: int
    ) -> List[ScoredContent]:
        started = time.perf_counter()
        hour = self._now().hour
        hour_preference = _pattern_value(profile.temporal_patterns.hourly_patterns, hour)
        hour_start, hour_end = hours_for_time_of_day(time_of_day)

        rows = await self.store.content_watched_in_hours(
            hour_start, hour_end, MIN_TIME_OF_DAY_COMPLETION, limit
        )
        candidates = [
            ScoredContent(
                content_id=row.content_id,
                score=min(1.0, row.popularity_score * 0.6 + hour_preference * 0.4),
                source=RecommendationSource.CONTEXT_AWARE,
                based_on=[f"time_of_day:{time_of_day}"],
            )
            for row in rows
        ]
        log.debug(
            "context_time_of_day label=%s hours=%d-%d candidates=%d elapsed_ms=%.1f",
            time_of_day, hour_start, hour_end, len(candidates), (time.perf_counter() - started) * 1000,
        )
        return candidates

    async def filter_by_device(
        self, device_type: Union[DeviceType, str], limit: int
    ) -> List[ScoredContent]:
        started = time.perf_counter()
        device = _coerce_device(device_type)

        if device == DeviceType.TV:
            rows = await self.store.content_by_runtime(
                min_popularity=self.min_popularity, limit=limit, min_runtime=30, runtime_order="desc"
            )
        elif device in (DeviceType.MOBILE, DeviceType.TABLET):
            rows = await self.store.content_by_runtime(
                min_popularity=self.min_popularity, limit=limit, max_runtime=60, runtime_order="asc"
            )
        else:
            rows = await self.store.content_by_runtime(
                min_popularity=self.min_popularity, limit=limit
            )

        candidates = [
            ScoredContent(
                content_id=row.content_id,
                score=device_score(device, row.popularity_score, row.runtime_minutes),
                source=RecommendationSource.CONTEXT_AWARE,
                based_on=[f"device_type:{device.value}"],
            )
            for row in rows
        ]
        log.debug(
            "context_device device=%s candidates=%d elapsed_ms=%.1f",
            device.value, len(candidates), (time.perf_counter() - started) * 1000,
        )
        return _by_score(candidates)

    async def filter_by_mood(self, mood: str, limit: int) -> List[ScoredContent]:
        genres = genres_for_mood(mood)

        if await self.mood_capability.available():
            rows: List[ContentRow] = []
            try:
                rows = await self.store.content_by_mood(mood, self.min_popularity, limit)
            except StorageError as exc:
                log.warning("context_mood_lookup_failed mood=%s, using genre fallback: %s", mood, exc)
            if rows:
                return [
                    ScoredContent(
                        content_id=row.content_id,
                        # direct mood tag is a high-confidence match
                        score=min(1.0, row.popularity_score * 0.9),
                        source=RecommendationSource.CONTEXT_AWARE,
                        based_on=[f"mood:{mood}"],
                    )
                    for row in rows
                ]
            log.info("context_mood_fallback mood=%s reason=no_tagged_content", mood)
        else:
            log.info("context_mood_fallback mood=%s reason=mood_tags_unavailable", mood)

        return await self.filter_by_genres(genres, limit)

    async def filter_by_genres(self, genres: Sequence[str], limit: int) -> List[ScoredContent]:
        if not genres:
            return []
        rows = await self.store.content_by_genres(genres, self.min_popularity, limit)
        tag = "genres:" + ",".join(genres)
        out: List[ScoredContent] = []
        for row in rows:
            genre_score = min(1.0, row.match_count / len(genres))
            out.append(
                ScoredContent(
                    content_id=row.content_id,
                    score=min(1.0, row.popularity_score * 0.5 + genre_score * 0.5),
                    source=RecommendationSource.CONTEXT_AWARE,
                    based_on=[tag],
                )
            )
        return _by_score(out)
