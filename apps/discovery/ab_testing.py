# apps/discovery/ab_testing.py
from __future__ import annotations

import hashlib
import logging
from typing import Any, Dict, List, Optional, Sequence
from uuid import UUID

from domain import (
    EXPOSURE_METRIC,
    Experiment,
    ExperimentMetrics,
    ExperimentStatus,
    Variant,
    VariantMetrics,
)
from errors import InvalidTransitionError, NoVariantsError, NotFoundError
from experiment_repository import ExperimentRepository
from locks import RedisAssignmentLock, assignment_lock_key

log = logging.getLogger("ab_testing")

ALLOWED_TRANSITIONS: Dict[ExperimentStatus, frozenset] = {
    ExperimentStatus.DRAFT: frozenset({ExperimentStatus.RUNNING}),
    ExperimentStatus.RUNNING: frozenset({ExperimentStatus.PAUSED, ExperimentStatus.COMPLETED}),
    ExperimentStatus.PAUSED: frozenset(),
    ExperimentStatus.COMPLETED: frozenset(),
}

_HASH_SPACE = float(1 << 64)


def stable_user_hash(user_id: UUID) -> float:
    """Map a user id to [0, 1), identically across processes and releases.

    Only the user id is hashed, not (experiment, user): a user sits at the same
    point for every experiment, so assignments correlate across experiments
    whose variants are ordered alike.
    """
    digest = hashlib.sha256(UUID(str(user_id)).bytes).digest()
    return int.from_bytes(digest[:8], "big") / _HASH_SPACE


def select_variant_by_hash(variants: Sequence[Variant], user_id: UUID) -> Variant:
    if not variants:
        raise ValueError("cannot select from an empty variant list")

    normalized = stable_user_hash(user_id)
    total_weight = sum(max(v.weight, 0.0) for v in variants)
    if total_weight <= 0:
        # all-zero weights: split evenly
        index = min(int(normalized * len(variants)), len(variants) - 1)
        return variants[index]

    cumulative = 0.0
    for variant in variants:
        cumulative += max(variant.weight, 0.0) / total_weight
        if normalized < cumulative:
            return variant

    # rounding left the cumulative sum just short of 1.0
    return variants[-1]


class ABTestingService:
    def __init__(
        self,
        repository: ExperimentRepository,
        lock: Optional[RedisAssignmentLock] = None,
    ):
        if not repository.supports_atomic_insert and lock is None:
            raise ValueError(
                "repository without atomic insert-if-absent needs an assignment lock"
            )
        self.repository = repository
        self.lock = lock

    async def create_experiment(
        self,
        name: str,
        description: Optional[str] = None,
        traffic_allocation: float = 1.0,
    ) -> Experiment:
        if not 0.0 <= traffic_allocation <= 1.0:
            raise ValueError("traffic_allocation must be within [0, 1]")
        experiment = await self.repository.create_experiment(name, description, traffic_allocation)
        log.info("ab_experiment_created experiment_id=%s name=%s", experiment.id, name)
        return experiment

    async def add_variant(
        self,
        experiment_id: UUID,
        name: str,
        weight: float,
        config: Optional[Dict[str, Any]] = None,
    ) -> Variant:
        if weight < 0:
            raise ValueError("variant weight must be non-negative")
        variant = await self.repository.add_variant(experiment_id, name, weight, config or {})
        log.info(
            "ab_variant_added variant_id=%s experiment_id=%s name=%s weight=%s",
            variant.id, experiment_id, name, weight,
        )
        return variant

    async def get_experiment(self, experiment_id: UUID) -> Experiment:
        experiment = await self.repository.get_experiment(experiment_id)
        if experiment is None:
            raise NotFoundError("experiment", experiment_id)
        return experiment

    async def get_experiment_by_name(self, name: str) -> Experiment:
        experiment = await self.repository.get_experiment_by_name(name)
        if experiment is None:
            raise NotFoundError("experiment", name)
        return experiment

    async def get_running_experiments(self) -> List[Experiment]:
        return await self.repository.list_experiments(ExperimentStatus.RUNNING)

    async def get_variants(self, experiment_id: UUID) -> List[Variant]:
        return await self.repository.get_variants(experiment_id)

    async def start_experiment(self, experiment_id: UUID) -> Experiment:
        return await self._transition(experiment_id, ExperimentStatus.RUNNING)

    async def pause_experiment(self, experiment_id: UUID) -> Experiment:
        return await self._transition(experiment_id, ExperimentStatus.PAUSED)

    async def complete_experiment(self, experiment_id: UUID) -> Experiment:
        return await self._transition(experiment_id, ExperimentStatus.COMPLETED)

    async def update_traffic_allocation(
        self, experiment_id: UUID, traffic_allocation: float
    ) -> Experiment:
        if not 0.0 <= traffic_allocation <= 1.0:
            raise ValueError("traffic_allocation must be within [0, 1]")
        experiment = await self.repository.update_experiment(
            experiment_id, traffic_allocation=traffic_allocation
        )
        log.info(
            "ab_experiment_traffic experiment_id=%s traffic_allocation=%s",
            experiment_id, traffic_allocation,
        )
        return experiment

    async def delete_experiment(self, experiment_id: UUID) -> None:
        if not await self.repository.delete_experiment(experiment_id):
            raise NotFoundError("experiment", experiment_id)
        log.info("ab_experiment_deleted experiment_id=%s", experiment_id)

    async def _transition(self, experiment_id: UUID, target: ExperimentStatus) -> Experiment:
        experiment = await self.get_experiment(experiment_id)
        if experiment.status == target:
            return experiment
        if target not in ALLOWED_TRANSITIONS[experiment.status]:
            raise InvalidTransitionError(experiment_id, experiment.status.value, target.value)
        updated = await self.repository.transition_status(experiment_id, experiment.status, target)
        if updated is None:
            # status moved since it was read
            current = await self.get_experiment(experiment_id)
            if current.status == target:
                return current
            raise InvalidTransitionError(experiment_id, current.status.value, target.value)
        log.info(
            "ab_experiment_status experiment_id=%s from=%s to=%s",
            experiment_id, experiment.status.value, target.value,
        )
        return updated

    async def assign_variant(self, experiment_id: UUID, user_id: UUID) -> Variant:
        """Return the user's variant, assigning one on first touch.

        An existing assignment always wins; a user is never re-bucketed.
        """
        existing = await self.repository.get_assignment(experiment_id, user_id)
        if existing is not None:
            return await self._variant_by_id(existing.variant_id)

        if self.repository.supports_atomic_insert:
            return await self._assign_fresh(experiment_id, user_id)

        async with self.lock.hold(assignment_lock_key(experiment_id, user_id)):
            # another holder may have assigned while we waited
            existing = await self.repository.get_assignment(experiment_id, user_id)
            if existing is not None:
                return await self._variant_by_id(existing.variant_id)
            return await self._assign_fresh(experiment_id, user_id)

    async def _assign_fresh(self, experiment_id: UUID, user_id: UUID) -> Variant:
        variants = await self.repository.get_variants(experiment_id)
        if not variants:
            raise NoVariantsError(experiment_id)

        selected = select_variant_by_hash(variants, user_id)
        inserted = await self.repository.insert_assignment_if_absent(
            experiment_id, user_id, selected.id
        )
        if inserted:
            log.debug(
                "ab_assigned experiment_id=%s user_id=%s variant_id=%s",
                experiment_id, user_id, selected.id,
            )
            return selected

        # Lost a first-assignment race: the stored row is authoritative
        winner = await self.repository.get_assignment(experiment_id, user_id)
        if winner is None:
            raise NotFoundError("assignment", f"{experiment_id}/{user_id}")
        log.info(
            "ab_assignment_race_lost experiment_id=%s user_id=%s computed=%s stored=%s",
            experiment_id, user_id, selected.id, winner.variant_id,
        )
        if winner.variant_id == selected.id:
            return selected
        return await self._variant_by_id(winner.variant_id)

    async def _variant_by_id(self, variant_id: UUID) -> Variant:
        variant = await self.repository.get_variant(variant_id)
        if variant is None:
            raise NotFoundError("variant", variant_id)
        return variant

    async def record_exposure(
        self,
        experiment_id: UUID,
        variant_id: UUID,
        user_id: UUID,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        await self.repository.record_metric(
            experiment_id, variant_id, user_id, EXPOSURE_METRIC, 1.0, metadata
        )
        log.debug(
            "ab_exposure experiment_id=%s variant_id=%s user_id=%s",
            experiment_id, variant_id, user_id,
        )

    async def record_conversion(
        self,
        experiment_id: UUID,
        variant_id: UUID,
        user_id: UUID,
        metric_name: str,
        value: float,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        if metric_name == EXPOSURE_METRIC:
            log.warning(
                "ab_conversion_reserved_name experiment_id=%s variant_id=%s: counted as exposure",
                experiment_id, variant_id,
            )
        await self.repository.record_metric(
            experiment_id, variant_id, user_id, metric_name, value, metadata
        )
        log.debug(
            "ab_conversion experiment_id=%s metric=%s value=%s",
            experiment_id, metric_name, value,
        )

    async def get_experiment_metrics(self, experiment_id: UUID) -> ExperimentMetrics:
        variants = await self.repository.get_variants(experiment_id)
        aggregates = await self.repository.get_metric_aggregates(experiment_id)

        variant_metrics: List[VariantMetrics] = []
        for variant in variants:
            agg = aggregates.get(variant.id)
            exposures = agg.exposures if agg else 0
            conversions = agg.conversions if agg else 0
            conversion_rate = conversions / exposures if exposures > 0 else 0.0
            avg_value = agg.value_sum / agg.value_count if agg and agg.value_count > 0 else 0.0
            variant_metrics.append(
                VariantMetrics(
                    variant_id=variant.id,
                    variant_name=variant.name,
                    exposures=exposures,
                    conversions=conversions,
                    conversion_rate=conversion_rate,
                    avg_metric_value=avg_value,
                )
            )
        return ExperimentMetrics(experiment_id=experiment_id, variant_metrics=variant_metrics)
