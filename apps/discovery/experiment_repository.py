# apps/discovery/experiment_repository.py
from __future__ import annotations

import abc
import logging
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

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
from models import (
    Experiment as ExperimentRow,
    ExperimentAssignment,
    ExperimentMetric,
    ExperimentVariant,
)
from sessions import storage_session

log = logging.getLogger("experiment_repository")


class ExperimentRepository(abc.ABC):
    """Persistence for experiments, variants, assignments and metric facts."""

    # False means insert_assignment_if_absent is not atomic and callers
    # must serialize first assignment with an external lock.
    supports_atomic_insert: bool = True

    @abc.abstractmethod
    async def create_experiment(
        self, name: str, description: Optional[str], traffic_allocation: float
    ) -> Experiment:
        """Insert a draft experiment; ConflictError when the name is taken."""

    @abc.abstractmethod
    async def get_experiment(self, experiment_id: UUID) -> Optional[Experiment]:
        ...

    @abc.abstractmethod
    async def get_experiment_by_name(self, name: str) -> Optional[Experiment]:
        ...

    @abc.abstractmethod
    async def list_experiments(
        self, status: Optional[ExperimentStatus] = None
    ) -> List[Experiment]:
        ...

    @abc.abstractmethod
    async def update_experiment(
        self,
        experiment_id: UUID,
        traffic_allocation: Optional[float] = None,
    ) -> Experiment:
        """NotFoundError when the experiment does not exist.

        Status changes go through transition_status.
        """

    @abc.abstractmethod
    async def transition_status(
        self, experiment_id: UUID, expected: ExperimentStatus, target: ExperimentStatus
    ) -> Optional[Experiment]:
        """Set status to target only while it is still expected. None when no row matched."""

    @abc.abstractmethod
    async def delete_experiment(self, experiment_id: UUID) -> bool:
        """Delete with its variants, assignments and metrics. False if absent."""

    @abc.abstractmethod
    async def add_variant(
        self, experiment_id: UUID, name: str, weight: float, config: Dict[str, Any]
    ) -> Variant:
        """ConflictError on duplicate (experiment_id, name); NotFoundError for unknown experiment."""

    @abc.abstractmethod
    async def get_variants(self, experiment_id: UUID) -> List[Variant]:
        """Variants in a fixed order (creation order) so bucketing is reproducible."""

    @abc.abstractmethod
    async def get_variant(self, variant_id: UUID) -> Optional[Variant]:
        ...

    @abc.abstractmethod
    async def get_assignment(self, experiment_id: UUID, user_id: UUID) -> Optional[Assignment]:
        ...

    @abc.abstractmethod
    async def insert_assignment_if_absent(
        self, experiment_id: UUID, user_id: UUID, variant_id: UUID
    ) -> bool:
        """True if this call wrote the row, False if one already existed."""

    @abc.abstractmethod
    async def record_metric(
        self,
        experiment_id: UUID,
        variant_id: UUID,
        user_id: UUID,
        metric_name: str,
        metric_value: float,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        ...

    @abc.abstractmethod
    async def get_metric_aggregates(self, experiment_id: UUID) -> Dict[UUID, MetricAggregate]:
        """Per-variant counts; variants without metric rows are absent."""


def _to_experiment(row: ExperimentRow) -> Experiment:
    return Experiment(
        id=row.id,
        name=row.name,
        description=row.description,
        status=ExperimentStatus(row.status),
        traffic_allocation=float(row.traffic_allocation),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _to_variant(row: ExperimentVariant) -> Variant:
    return Variant(
        id=row.id,
        experiment_id=row.experiment_id,
        name=row.name,
        weight=float(row.weight),
        config=dict(row.config or {}),
    )


class SqlExperimentRepository(ExperimentRepository):
    supports_atomic_insert = True

    def __init__(self, sessionmaker: async_sessionmaker):
        self._sessionmaker = sessionmaker

    def _session(self, operation: str, entity_id: Optional[Any] = None):
        return storage_session(self._sessionmaker, operation, entity_id, logger=log)

    async def create_experiment(
        self, name: str, description: Optional[str], traffic_allocation: float
    ) -> Experiment:
        async with self._session("create_experiment", name) as db:
            row = ExperimentRow(
                name=name,
                description=description,
                status=ExperimentStatus.DRAFT.value,
                traffic_allocation=traffic_allocation,
            )
            db.add(row)
            try:
                await db.commit()
            except IntegrityError as exc:
                await db.rollback()
                raise ConflictError("experiment", name) from exc
            await db.refresh(row)
            return _to_experiment(row)

    async def get_experiment(self, experiment_id: UUID) -> Optional[Experiment]:
        async with self._session("get_experiment", experiment_id) as db:
            row = await db.get(ExperimentRow, experiment_id)
            return _to_experiment(row) if row else None

    async def get_experiment_by_name(self, name: str) -> Optional[Experiment]:
        stmt = select(ExperimentRow).where(ExperimentRow.name == name)
        async with self._session("get_experiment_by_name", name) as db:
            row = (await db.execute(stmt)).scalar_one_or_none()
            return _to_experiment(row) if row else None

    async def list_experiments(
        self, status: Optional[ExperimentStatus] = None
    ) -> List[Experiment]:
        stmt = select(ExperimentRow).order_by(ExperimentRow.created_at, ExperimentRow.name)
        if status is not None:
            stmt = stmt.where(ExperimentRow.status == ExperimentStatus(status).value)
        async with self._session("list_experiments", status) as db:
            rows = (await db.execute(stmt)).scalars().all()
            return [_to_experiment(r) for r in rows]

    async def update_experiment(
        self,
        experiment_id: UUID,
        traffic_allocation: Optional[float] = None,
    ) -> Experiment:
        async with self._session("update_experiment", experiment_id) as db:
            row = await db.get(ExperimentRow, experiment_id)
            if not row:
                raise NotFoundError("experiment", experiment_id)
            if traffic_allocation is not None:
                row.traffic_allocation = traffic_allocation
            row.updated_at = func.now()
            await db.commit()
            await db.refresh(row)
            return _to_experiment(row)

    async def transition_status(
        self, experiment_id: UUID, expected: ExperimentStatus, target: ExperimentStatus
    ) -> Optional[Experiment]:
        stmt = (
            update(ExperimentRow)
            .where(
                ExperimentRow.id == experiment_id,
                ExperimentRow.status == ExperimentStatus(expected).value,
            )
            .values(status=ExperimentStatus(target).value, updated_at=func.now())
            .returning(ExperimentRow)
        )
        async with self._session("transition_status", experiment_id) as db:
            row = (await db.execute(stmt)).scalar_one_or_none()
            await db.commit()
            return _to_experiment(row) if row else None

    async def delete_experiment(self, experiment_id: UUID) -> bool:
        async with self._session("delete_experiment", experiment_id) as db:
            row = await db.get(ExperimentRow, experiment_id)
            if not row:
                return False
            await db.delete(row)
            await db.commit()
            return True

    async def add_variant(
        self, experiment_id: UUID, name: str, weight: float, config: Dict[str, Any]
    ) -> Variant:
        async with self._session("add_variant", experiment_id) as db:
            if not await db.get(ExperimentRow, experiment_id):
                raise NotFoundError("experiment", experiment_id)
            row = ExperimentVariant(
                experiment_id=experiment_id,
                name=name,
                weight=weight,
                config=config or {},
            )
            db.add(row)
            try:
                await db.commit()
            except IntegrityError as exc:
                await db.rollback()
                raise ConflictError("variant", f"{experiment_id}/{name}") from exc
            await db.refresh(row)
            return _to_variant(row)

    async def get_variants(self, experiment_id: UUID) -> List[Variant]:
        stmt = (
            select(ExperimentVariant)
            .where(ExperimentVariant.experiment_id == experiment_id)
            .order_by(ExperimentVariant.created_at, ExperimentVariant.name)
        )
        async with self._session("get_variants", experiment_id) as db:
            rows = (await db.execute(stmt)).scalars().all()
            return [_to_variant(r) for r in rows]

    async def get_variant(self, variant_id: UUID) -> Optional[Variant]:
        async with self._session("get_variant", variant_id) as db:
            row = await db.get(ExperimentVariant, variant_id)
            return _to_variant(row) if row else None

    async def get_assignment(self, experiment_id: UUID, user_id: UUID) -> Optional[Assignment]:
        stmt = select(ExperimentAssignment).where(
            ExperimentAssignment.experiment_id == experiment_id,
            ExperimentAssignment.user_id == user_id,
        )
        async with self._session("get_assignment", f"{experiment_id}/{user_id}") as db:
            row = (await db.execute(stmt)).scalar_one_or_none()
            if not row:
                return None
            return Assignment(
                experiment_id=row.experiment_id,
                user_id=row.user_id,
                variant_id=row.variant_id,
                assigned_at=row.assigned_at,
            )

    async def insert_assignment_if_absent(
        self, experiment_id: UUID, user_id: UUID, variant_id: UUID
    ) -> bool:
        # First writer wins on the (experiment_id, user_id) unique constraint
        stmt = (
            pg_insert(ExperimentAssignment)
            .values(experiment_id=experiment_id, user_id=user_id, variant_id=variant_id)
            .on_conflict_do_nothing(index_elements=["experiment_id", "user_id"])
            .returning(ExperimentAssignment.id)
        )
        async with self._session("insert_assignment", f"{experiment_id}/{user_id}") as db:
            inserted = (await db.execute(stmt)).first()
            await db.commit()
            return inserted is not None

    async def record_metric(
        self,
        experiment_id: UUID,
        variant_id: UUID,
        user_id: UUID,
        metric_name: str,
        metric_value: float,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        async with self._session("record_metric", f"{experiment_id}/{variant_id}") as db:
            db.add(
                ExperimentMetric(
                    experiment_id=experiment_id,
                    variant_id=variant_id,
                    user_id=user_id,
                    metric_name=metric_name,
                    metric_value=metric_value,
                    meta=metadata,
                )
            )
            await db.commit()

    async def get_metric_aggregates(self, experiment_id: UUID) -> Dict[UUID, MetricAggregate]:
        name = ExperimentMetric.metric_name
        not_exposure = name != EXPOSURE_METRIC
        stmt = (
            select(
                ExperimentMetric.variant_id,
                func.count().filter(name == EXPOSURE_METRIC),
                func.count().filter(name == CONVERSION_METRIC),
                func.coalesce(func.sum(ExperimentMetric.metric_value).filter(not_exposure), 0.0),
                func.count().filter(not_exposure),
            )
            .where(ExperimentMetric.experiment_id == experiment_id)
            .group_by(ExperimentMetric.variant_id)
        )
        async with self._session("get_metric_aggregates", experiment_id) as db:
            rows = (await db.execute(stmt)).all()
        return {
            variant_id: MetricAggregate(
                exposures=int(exposures),
                conversions=int(conversions),
                value_sum=float(value_sum),
                value_count=int(value_count),
            )
            for variant_id, exposures, conversions, value_sum, value_count in rows
        }
