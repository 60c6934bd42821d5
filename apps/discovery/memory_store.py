# apps/discovery/memory_store.py
"""In-process implementations of the catalog store and experiment repository.

They follow the same query semantics as the SQL implementations and are used
by the test suite and for local runs without Postgres.
"""
from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple
from uuid import UUID

from catalog_store import (
    ROLE_ACTOR,
    ROLE_DIRECTOR,
    SEED_CAST_LIMIT,
    CatalogStore,
    ContentRow,
    ScoredId,
)
from domain import (
    CONVERSION_METRIC,
    EXPOSURE_METRIC,
    Assignment,
    Experiment,
    ExperimentStatus,
    MetricAggregate,
    Variant,
)
from errors import ConflictError, NotFoundError
from experiment_repository import ExperimentRepository


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _top(scored: Iterable[Tuple[UUID, float]], limit: int) -> List[ScoredId]:
    return sorted(scored, key=lambda item: (-item[1], item[0]))[:limit]


@dataclass
class _ContentRecord:
    id: UUID
    popularity_score: float
    runtime_minutes: Optional[int]
    title: str = ""


@dataclass
class _CreditRecord:
    content_id: UUID
    person_name: str
    role_type: str
    credit_order: Optional[int] = None


@dataclass
class _WatchRecord:
    user_id: UUID
    content_id: UUID
    completion_rate: float
    last_watched: datetime


class InMemoryCatalogStore(CatalogStore):
    def __init__(self, *, mood_table_present: bool = True):
        self.mood_table_present = mood_table_present
        self._content: Dict[UUID, _ContentRecord] = {}
        self._genres: Dict[UUID, Set[str]] = {}
        self._themes: Dict[UUID, Set[str]] = {}
        self._moods: Dict[UUID, Set[str]] = {}
        self._credits: List[_CreditRecord] = []
        self._watch: Dict[Tuple[UUID, UUID], _WatchRecord] = {}

    # --- seeding -----------------------------------------------------------

    def add_content(
        self,
        content_id: Optional[UUID] = None,
        *,
        popularity: float = 0.5,
        runtime_minutes: Optional[int] = None,
        title: str = "",
        genres: Iterable[str] = (),
        themes: Iterable[str] = (),
        actors: Iterable[str] = (),
        directors: Iterable[str] = (),
        moods: Iterable[str] = (),
    ) -> UUID:
        cid = content_id or uuid.uuid4()
        self._content[cid] = _ContentRecord(cid, popularity, runtime_minutes, title)
        self._genres.setdefault(cid, set()).update(genres)
        self._themes.setdefault(cid, set()).update(themes)
        self._moods.setdefault(cid, set()).update(moods)
        for order, name in enumerate(actors):
            self._credits.append(_CreditRecord(cid, name, ROLE_ACTOR, order))
        for name in directors:
            self._credits.append(_CreditRecord(cid, name, ROLE_DIRECTOR))
        return cid

    def record_watch(
        self,
        user_id: UUID,
        content_id: UUID,
        *,
        completion_rate: float = 1.0,
        last_watched: Optional[datetime] = None,
    ) -> None:
        self._watch[(user_id, content_id)] = _WatchRecord(
            user_id, content_id, completion_rate, last_watched or _utcnow()
        )

    # --- CatalogStore --------------------------------------------------------

    async def recent_watched_content(self, user_id: UUID, limit: int) -> List[UUID]:
        rows = [w for w in self._watch.values() if w.user_id == user_id]
        rows.sort(key=lambda w: w.last_watched, reverse=True)
        return [w.content_id for w in rows[:limit]]

    def _attribute_overlap(
        self, attrs: Dict[UUID, Set[str]], content_id: UUID, limit: int
    ) -> List[ScoredId]:
        seed = attrs.get(content_id) or set()
        if not seed:
            return []
        scored = []
        for other, values in attrs.items():
            if other == content_id:
                continue
            overlap = len(seed & values)
            if overlap > 0:
                scored.append((other, overlap / max(len(seed), 1)))
        return _top(scored, limit)

    async def genre_similar(self, content_id: UUID, limit: int) -> List[ScoredId]:
        return self._attribute_overlap(self._genres, content_id, limit)

    async def theme_similar(self, content_id: UUID, limit: int) -> List[ScoredId]:
        return self._attribute_overlap(self._themes, content_id, limit)

    async def cast_similar(self, content_id: UUID, limit: int) -> List[ScoredId]:
        seed_credits = sorted(
            (c for c in self._credits if c.content_id == content_id and c.role_type == ROLE_ACTOR),
            key=lambda c: (c.credit_order is None, c.credit_order or 0, c.person_name),
        )[:SEED_CAST_LIMIT]
        seed = {c.person_name for c in seed_credits}
        if not seed:
            return []
        overlap: Dict[UUID, int] = {}
        for credit in self._credits:
            if credit.role_type != ROLE_ACTOR or credit.content_id == content_id:
                continue
            if credit.person_name in seed:
                overlap[credit.content_id] = overlap.get(credit.content_id, 0) + 1
        return _top(((cid, n / len(seed)) for cid, n in overlap.items()), limit)

    async def director_similar(self, content_id: UUID, limit: int) -> List[ScoredId]:
        seed = {
            c.person_name
            for c in self._credits
            if c.content_id == content_id and c.role_type == ROLE_DIRECTOR
        }
        matches = sorted(
            {
                c.content_id
                for c in self._credits
                if c.role_type == ROLE_DIRECTOR and c.person_name in seed and c.content_id != content_id
            }
        )
        return [(cid, 1.0) for cid in matches[:limit]]

    async def similar_users(
        self,
        user_id: UUID,
        seed_content: Sequence[UUID],
        min_overlap: int,
        limit: int,
    ) -> List[ScoredId]:
        if not seed_content:
            return []
        seeds = set(seed_content)
        overlap: Dict[UUID, int] = {}
        for w in self._watch.values():
            if w.user_id != user_id and w.content_id in seeds:
                overlap[w.user_id] = overlap.get(w.user_id, 0) + 1
        scored = [
            (uid, n / len(seed_content)) for uid, n in overlap.items() if n >= min_overlap
        ]
        return _top(scored, limit)

    async def highly_rated_content(
        self, user_id: UUID, min_completion: float, limit: int
    ) -> List[ScoredId]:
        rows = [
            w for w in self._watch.values()
            if w.user_id == user_id and w.completion_rate >= min_completion
        ]
        rows.sort(key=lambda w: (w.completion_rate, w.last_watched), reverse=True)
        return [(w.content_id, w.completion_rate) for w in rows[:limit]]

    def _row(self, content_id: UUID, match_count: int = 0) -> ContentRow:
        rec = self._content[content_id]
        return ContentRow(
            content_id=rec.id,
            popularity_score=rec.popularity_score,
            runtime_minutes=rec.runtime_minutes,
            match_count=match_count,
        )

    @staticmethod
    def _by_popularity(rows: List[ContentRow], limit: int) -> List[ContentRow]:
        return sorted(rows, key=lambda r: (-r.popularity_score, r.content_id))[:limit]

    async def content_watched_in_hours(
        self, hour_start: int, hour_end: int, min_completion: float, limit: int
    ) -> List[ContentRow]:
        ids = {
            w.content_id
            for w in self._watch.values()
            if hour_start <= w.last_watched.astimezone(timezone.utc).hour < hour_end
            and w.completion_rate > min_completion
            and w.content_id in self._content
        }
        return self._by_popularity([self._row(cid) for cid in ids], limit)

    async def content_by_runtime(
        self,
        *,
        min_popularity: float,
        limit: int,
        min_runtime: Optional[int] = None,
        max_runtime: Optional[int] = None,
        runtime_order: Optional[str] = None,
    ) -> List[ContentRow]:
        rows = []
        for rec in self._content.values():
            if rec.popularity_score <= min_popularity:
                continue
            runtime = rec.runtime_minutes
            if min_runtime is not None and (runtime is None or runtime < min_runtime):
                continue
            if max_runtime is not None and (runtime is None or runtime > max_runtime):
                continue
            rows.append(self._row(rec.id))

        def key(row: ContentRow):
            runtime = row.runtime_minutes or 0
            if runtime_order == "asc":
                return (-row.popularity_score, runtime, row.content_id)
            if runtime_order == "desc":
                return (-row.popularity_score, -runtime, row.content_id)
            return (-row.popularity_score, 0, row.content_id)

        return sorted(rows, key=key)[:limit]

    async def has_mood_tags(self) -> bool:
        return self.mood_table_present and any(self._moods.values())

    async def content_by_mood(
        self, mood: str, min_popularity: float, limit: int
    ) -> List[ContentRow]:
        if not self.mood_table_present:
            return []
        wanted = mood.lower()
        rows = [
            self._row(cid)
            for cid, moods in self._moods.items()
            if any(m.lower() == wanted for m in moods)
            and self._content[cid].popularity_score > min_popularity
        ]
        return self._by_popularity(rows, limit)

    async def content_by_genres(
        self, genres: Sequence[str], min_popularity: float, limit: int
    ) -> List[ContentRow]:
        wanted = {g.lower() for g in genres}
        rows = []
        for cid, values in self._genres.items():
            if self._content[cid].popularity_score <= min_popularity:
                continue
            count = sum(1 for g in values if g.lower() in wanted)
            if count:
                rows.append(self._row(cid, match_count=count))
        rows.sort(key=lambda r: (-r.match_count, -r.popularity_score, r.content_id))
        return rows[:limit]


@dataclass
class MetricRecord:
    experiment_id: UUID
    variant_id: UUID
    user_id: UUID
    metric_name: str
    metric_value: float
    metadata: Optional[Dict[str, Any]] = None
    recorded_at: datetime = field(default_factory=_utcnow)


class InMemoryExperimentRepository(ExperimentRepository):
    """Experiment repository backed by dicts.

    With supports_atomic_insert=False the assignment insert yields between its
    existence check and its write, like a store without a unique constraint.
    """

    def __init__(self, *, supports_atomic_insert: bool = True):
        self.supports_atomic_insert = supports_atomic_insert
        self._experiments: Dict[UUID, Experiment] = {}
        self._variants: Dict[UUID, Variant] = {}
        self._assignments: Dict[Tuple[UUID, UUID], Assignment] = {}
        self.metrics: List[MetricRecord] = []

    async def create_experiment(
        self, name: str, description: Optional[str], traffic_allocation: float
    ) -> Experiment:
        await asyncio.sleep(0)
        if any(e.name == name for e in self._experiments.values()):
            raise ConflictError("experiment", name)
        now = _utcnow()
        experiment = Experiment(
            id=uuid.uuid4(),
            name=name,
            description=description,
            status=ExperimentStatus.DRAFT,
            traffic_allocation=traffic_allocation,
            created_at=now,
            updated_at=now,
        )
        self._experiments[experiment.id] = experiment
        return replace(experiment)

    async def get_experiment(self, experiment_id: UUID) -> Optional[Experiment]:
        await asyncio.sleep(0)
        experiment = self._experiments.get(experiment_id)
        return replace(experiment) if experiment else None

    async def get_experiment_by_name(self, name: str) -> Optional[Experiment]:
        await asyncio.sleep(0)
        for experiment in self._experiments.values():
            if experiment.name == name:
                return replace(experiment)
        return None

    async def list_experiments(
        self, status: Optional[ExperimentStatus] = None
    ) -> List[Experiment]:
        await asyncio.sleep(0)
        return [
            replace(e)
            for e in self._experiments.values()
            if status is None or e.status == ExperimentStatus(status)
        ]

    async def update_experiment(
        self,
        experiment_id: UUID,
        traffic_allocation: Optional[float] = None,
    ) -> Experiment:
        await asyncio.sleep(0)
        experiment = self._experiments.get(experiment_id)
        if experiment is None:
            raise NotFoundError("experiment", experiment_id)
        if traffic_allocation is not None:
            experiment.traffic_allocation = traffic_allocation
        experiment.updated_at = _utcnow()
        return replace(experiment)

    async def transition_status(
        self, experiment_id: UUID, expected: ExperimentStatus, target: ExperimentStatus
    ) -> Optional[Experiment]:
        await asyncio.sleep(0)
        experiment = self._experiments.get(experiment_id)
        if experiment is None or experiment.status != ExperimentStatus(expected):
            return None
        experiment.status = ExperimentStatus(target)
        experiment.updated_at = _utcnow()
        return replace(experiment)

    async def delete_experiment(self, experiment_id: UUID) -> bool:
        await asyncio.sleep(0)
        if self._experiments.pop(experiment_id, None) is None:
            return False
        self._variants = {
            vid: v for vid, v in self._variants.items() if v.experiment_id != experiment_id
        }
        self._assignments = {
            key: a for key, a in self._assignments.items() if key[0] != experiment_id
        }
        self.metrics = [m for m in self.metrics if m.experiment_id != experiment_id]
        return True

    async def add_variant(
        self, experiment_id: UUID, name: str, weight: float, config: Dict[str, Any]
    ) -> Variant:
        await asyncio.sleep(0)
        if experiment_id not in self._experiments:
            raise NotFoundError("experiment", experiment_id)
        if any(v.experiment_id == experiment_id and v.name == name for v in self._variants.values()):
            raise ConflictError("variant", f"{experiment_id}/{name}")
        variant = Variant(
            id=uuid.uuid4(),
            experiment_id=experiment_id,
            name=name,
            weight=weight,
            config=dict(config or {}),
        )
        self._variants[variant.id] = variant
        return replace(variant)

    async def get_variants(self, experiment_id: UUID) -> List[Variant]:
        await asyncio.sleep(0)
        return [replace(v) for v in self._variants.values() if v.experiment_id == experiment_id]

    async def get_variant(self, variant_id: UUID) -> Optional[Variant]:
        await asyncio.sleep(0)
        variant = self._variants.get(variant_id)
        return replace(variant) if variant else None

    async def get_assignment(self, experiment_id: UUID, user_id: UUID) -> Optional[Assignment]:
        await asyncio.sleep(0)
        assignment = self._assignments.get((experiment_id, user_id))
        return replace(assignment) if assignment else None

    async def insert_assignment_if_absent(
        self, experiment_id: UUID, user_id: UUID, variant_id: UUID
    ) -> bool:
        key = (experiment_id, user_id)
        if self.supports_atomic_insert:
            await asyncio.sleep(0)
            if key in self._assignments:
                return False
            self._assignments[key] = Assignment(experiment_id, user_id, variant_id, _utcnow())
            return True

        exists = key in self._assignments
        await asyncio.sleep(0)
        if exists:
            return False
        self._assignments[key] = Assignment(experiment_id, user_id, variant_id, _utcnow())
        return True

    async def record_metric(
        self,
        experiment_id: UUID,
        variant_id: UUID,
        user_id: UUID,
        metric_name: str,
        metric_value: float,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        await asyncio.sleep(0)
        self.metrics.append(
            MetricRecord(experiment_id, variant_id, user_id, metric_name, metric_value, metadata)
        )

    async def get_metric_aggregates(self, experiment_id: UUID) -> Dict[UUID, MetricAggregate]:
        await asyncio.sleep(0)
        out: Dict[UUID, MetricAggregate] = {}
        for m in self.metrics:
            if m.experiment_id != experiment_id:
                continue
            agg = out.setdefault(m.variant_id, MetricAggregate())
            if m.metric_name == EXPOSURE_METRIC:
                agg.exposures += 1
                continue
            if m.metric_name == CONVERSION_METRIC:
                agg.conversions += 1
            agg.value_sum += m.metric_value
            agg.value_count += 1
        return out
