import asyncio
import uuid

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from ab_testing import ABTestingService, select_variant_by_hash, stable_user_hash
from domain import Assignment, ExperimentStatus, Variant
from errors import (
    AssignmentLockTimeout,
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    NoVariantsError,
    StorageError,
)
from locks import RedisAssignmentLock, assignment_lock_key
from memory_store import InMemoryExperimentRepository


async def _experiment_with_variants(service, *weights, name="homefeed-strategy"):
    experiment = await service.create_experiment(name, "graph vs blended")
    variants = [
        await service.add_variant(experiment.id, f"v{i}", w, {"strategy": f"s{i}"})
        for i, w in enumerate(weights)
    ]
    return experiment, variants


def _users(n):
    return [uuid.uuid5(uuid.NAMESPACE_OID, f"user-{i}") for i in range(n)]


def test_user_hash_is_stable_and_normalized():
    user = uuid.UUID("6f1c2c3e-7a55-4d8a-9a63-0c1d3f0b9e21")
    assert stable_user_hash(user) == stable_user_hash(str(user))
    values = [stable_user_hash(u) for u in _users(200)]
    assert all(0.0 <= v < 1.0 for v in values)
    assert len(set(values)) == 200


def test_weighted_split_tracks_weights():
    exp_id = uuid.uuid4()
    heavy = Variant(uuid.uuid4(), exp_id, "control", 0.8)
    light = Variant(uuid.uuid4(), exp_id, "treatment", 0.2)

    picks = [select_variant_by_hash([heavy, light], u) for u in _users(1000)]

    share = sum(1 for v in picks if v.id == heavy.id) / len(picks)
    assert 0.70 <= share <= 0.90


def test_weights_need_not_sum_to_one():
    exp_id = uuid.uuid4()
    a = Variant(uuid.uuid4(), exp_id, "a", 8)
    b = Variant(uuid.uuid4(), exp_id, "b", 2)
    a_norm = Variant(a.id, exp_id, "a", 0.8)
    b_norm = Variant(b.id, exp_id, "b", 0.2)
    for user in _users(50):
        assert select_variant_by_hash([a, b], user).id == select_variant_by_hash([a_norm, b_norm], user).id


def test_zero_weights_split_evenly():
    exp_id = uuid.uuid4()
    variants = [Variant(uuid.uuid4(), exp_id, n, 0.0) for n in ("a", "b")]
    picked = {select_variant_by_hash(variants, u).name for u in _users(100)}
    assert picked == {"a", "b"}
    with pytest.raises(ValueError):
        select_variant_by_hash([], uuid.uuid4())


async def test_create_experiment_starts_as_draft(ab_service):
    experiment = await ab_service.create_experiment("ranking", traffic_allocation=0.5)
    assert experiment.status == ExperimentStatus.DRAFT
    assert experiment.traffic_allocation == 0.5
    assert (await ab_service.get_experiment(experiment.id)).name == "ranking"


async def test_duplicate_names_conflict(ab_service):
    experiment = await ab_service.create_experiment("ranking")
    with pytest.raises(ConflictError):
        await ab_service.create_experiment("ranking")

    await ab_service.add_variant(experiment.id, "control", 0.5)
    with pytest.raises(ConflictError):
        await ab_service.add_variant(experiment.id, "control", 0.5)


async def test_input_validation(ab_service):
    with pytest.raises(ValueError):
        await ab_service.create_experiment("x", traffic_allocation=1.5)
    experiment = await ab_service.create_experiment("y")
    with pytest.raises(ValueError):
        await ab_service.add_variant(experiment.id, "neg", -0.1)
    with pytest.raises(NotFoundError):
        await ab_service.add_variant(uuid.uuid4(), "orphan", 0.5)


async def test_lifecycle_transitions(ab_service):
    experiment = await ab_service.create_experiment("lifecycle")

    with pytest.raises(InvalidTransitionError):
        await ab_service.pause_experiment(experiment.id)

    running = await ab_service.start_experiment(experiment.id)
    assert running.status == ExperimentStatus.RUNNING
    assert [e.id for e in await ab_service.get_running_experiments()] == [experiment.id]
    assert (await ab_service.start_experiment(experiment.id)).status == ExperimentStatus.RUNNING

    paused = await ab_service.pause_experiment(experiment.id)
    assert paused.status == ExperimentStatus.PAUSED
    with pytest.raises(InvalidTransitionError):
        await ab_service.start_experiment(experiment.id)
    with pytest.raises(InvalidTransitionError):
        await ab_service.complete_experiment(experiment.id)
    assert await ab_service.get_running_experiments() == []


async def test_concurrent_pause_and_complete_settle_on_one_state(ab_service, repository):
    experiment = await ab_service.create_experiment("contended")
    await ab_service.start_experiment(experiment.id)

    outcomes = await asyncio.gather(
        ab_service.complete_experiment(experiment.id),
        ab_service.pause_experiment(experiment.id),
        return_exceptions=True,
    )

    winners = [o for o in outcomes if not isinstance(o, BaseException)]
    losers = [o for o in outcomes if isinstance(o, BaseException)]
    assert len(winners) == 1
    assert len(losers) == 1 and isinstance(losers[0], InvalidTransitionError)
    stored = await repository.get_experiment(experiment.id)
    assert stored.status == winners[0].status
    assert stored.status in (ExperimentStatus.PAUSED, ExperimentStatus.COMPLETED)


async def test_completed_experiment_stays_completed(ab_service):
    experiment = await ab_service.create_experiment("finished")
    await ab_service.start_experiment(experiment.id)
    await ab_service.complete_experiment(experiment.id)

    with pytest.raises(InvalidTransitionError):
        await ab_service.pause_experiment(experiment.id)
    assert (await ab_service.get_experiment(experiment.id)).status == ExperimentStatus.COMPLETED


async def test_lookup_by_name(ab_service):
    experiment = await ab_service.create_experiment("by-name")

    assert (await ab_service.get_experiment_by_name("by-name")).id == experiment.id
    with pytest.raises(NotFoundError):
        await ab_service.get_experiment_by_name("missing")


async def test_update_traffic_allocation(ab_service):
    experiment = await ab_service.create_experiment("ramp", traffic_allocation=0.1)

    updated = await ab_service.update_traffic_allocation(experiment.id, 0.5)

    assert updated.traffic_allocation == 0.5
    assert updated.status == ExperimentStatus.DRAFT
    with pytest.raises(ValueError):
        await ab_service.update_traffic_allocation(experiment.id, 2.0)
    with pytest.raises(NotFoundError):
        await ab_service.update_traffic_allocation(uuid.uuid4(), 0.5)


async def test_start_unknown_experiment(ab_service):
    with pytest.raises(NotFoundError):
        await ab_service.start_experiment(uuid.uuid4())


async def test_delete_experiment(ab_service, repository):
    experiment, variants = await _experiment_with_variants(ab_service, 0.5, 0.5)
    user = uuid.uuid4()
    await ab_service.assign_variant(experiment.id, user)

    await ab_service.delete_experiment(experiment.id)

    with pytest.raises(NotFoundError):
        await ab_service.get_experiment(experiment.id)
    assert await repository.get_assignment(experiment.id, user) is None
    with pytest.raises(NotFoundError):
        await ab_service.delete_experiment(experiment.id)


async def test_assignment_requires_variants(ab_service):
    experiment = await ab_service.create_experiment("empty")
    with pytest.raises(NoVariantsError):
        await ab_service.assign_variant(experiment.id, uuid.uuid4())


async def test_assignment_is_sticky(ab_service, repository):
    experiment, variants = await _experiment_with_variants(ab_service, 0.5, 0.5)
    user = uuid.uuid4()

    first = await ab_service.assign_variant(experiment.id, user)
    second = await ab_service.assign_variant(experiment.id, user)

    assert first.id == second.id
    assert first.id == select_variant_by_hash(variants, user).id
    stored = await repository.get_assignment(experiment.id, user)
    assert stored.variant_id == first.id


async def test_existing_assignment_wins_over_hash(ab_service, repository):
    experiment, variants = await _experiment_with_variants(ab_service, 0.5, 0.5)
    user = uuid.uuid4()
    hashed = select_variant_by_hash(variants, user)
    other = next(v for v in variants if v.id != hashed.id)
    await repository.insert_assignment_if_absent(experiment.id, user, other.id)

    assert (await ab_service.assign_variant(experiment.id, user)).id == other.id


async def test_concurrent_first_assignment_agrees(ab_service, repository):
    experiment, _ = await _experiment_with_variants(ab_service, 0.7, 0.3)
    user = uuid.uuid4()

    results = await asyncio.gather(*[ab_service.assign_variant(experiment.id, user) for _ in range(8)])

    assert len({v.id for v in results}) == 1
    stored = await repository.get_assignment(experiment.id, user)
    assert stored.variant_id == results[0].id


class RacingRepository(InMemoryExperimentRepository):
    """Another writer stores a different variant just before our insert lands."""

    def __init__(self):
        super().__init__()
        self.competing_variant = None

    async def insert_assignment_if_absent(self, experiment_id, user_id, variant_id):
        if self.competing_variant is not None:
            self._assignments[(experiment_id, user_id)] = Assignment(
                experiment_id, user_id, self.competing_variant
            )
        return await super().insert_assignment_if_absent(experiment_id, user_id, variant_id)


async def test_race_loser_returns_stored_variant():
    repository = RacingRepository()
    service = ABTestingService(repository)
    experiment, variants = await _experiment_with_variants(service, 0.5, 0.5)
    user = uuid.uuid4()
    computed = select_variant_by_hash(variants, user)
    winner = next(v for v in variants if v.id != computed.id)
    repository.competing_variant = winner.id

    assigned = await service.assign_variant(experiment.id, user)

    assert assigned.id == winner.id
    assert assigned.name == winner.name


async def test_service_distribution_through_repository(ab_service):
    experiment, (heavy, light) = await _experiment_with_variants(ab_service, 0.8, 0.2)
    users = _users(1000)

    picks = [await ab_service.assign_variant(experiment.id, u) for u in users]

    share = sum(1 for v in picks if v.id == heavy.id) / len(picks)
    assert 0.70 <= share <= 0.90


async def test_metrics_arithmetic(ab_service, repository):
    experiment, (control, treatment) = await _experiment_with_variants(ab_service, 0.5, 0.5)
    users = _users(10)
    for user in users:
        await ab_service.record_exposure(experiment.id, control.id, user, {"surface": "homefeed"})
    await ab_service.record_conversion(experiment.id, control.id, users[0], "conversion", 1.0)
    await ab_service.record_conversion(experiment.id, control.id, users[1], "conversion", 1.0)
    await ab_service.record_conversion(experiment.id, control.id, users[1], "watch_minutes", 4.0)

    metrics = await ab_service.get_experiment_metrics(experiment.id)

    by_name = {m.variant_name: m for m in metrics.variant_metrics}
    assert metrics.experiment_id == experiment.id
    assert by_name["v0"].exposures == 10
    assert by_name["v0"].conversions == 2
    assert by_name["v0"].conversion_rate == 0.2
    assert by_name["v0"].avg_metric_value == pytest.approx(2.0)
    assert by_name["v1"].exposures == 0
    assert by_name["v1"].conversion_rate == 0.0
    assert by_name["v1"].avg_metric_value == 0.0
    assert repository.metrics[0].metadata == {"surface": "homefeed"}


async def test_conversions_without_exposures_have_zero_rate(ab_service):
    experiment, (control,) = await _experiment_with_variants(ab_service, 1.0)
    await ab_service.record_conversion(experiment.id, control.id, uuid.uuid4(), "conversion", 1.0)

    (metrics,) = (await ab_service.get_experiment_metrics(experiment.id)).variant_metrics

    assert metrics.conversions == 1
    assert metrics.conversion_rate == 0.0


async def test_conversion_named_exposure_counts_as_exposure(ab_service):
    experiment, (control,) = await _experiment_with_variants(ab_service, 1.0)
    await ab_service.record_conversion(experiment.id, control.id, uuid.uuid4(), "exposure", 1.0)

    (metrics,) = (await ab_service.get_experiment_metrics(experiment.id)).variant_metrics

    assert metrics.exposures == 1
    assert metrics.avg_metric_value == 0.0


def test_non_atomic_repository_requires_lock():
    with pytest.raises(ValueError):
        ABTestingService(InMemoryExperimentRepository(supports_atomic_insert=False))


async def test_lock_serializes_non_atomic_assignment(fake_redis):
    repository = InMemoryExperimentRepository(supports_atomic_insert=False)
    lock = RedisAssignmentLock(fake_redis, retry_interval_ms=1)
    service = ABTestingService(repository, lock=lock)
    experiment, _ = await _experiment_with_variants(service, 0.5, 0.5)
    user = uuid.uuid4()

    results = await asyncio.gather(*[service.assign_variant(experiment.id, user) for _ in range(5)])

    assert len({v.id for v in results}) == 1
    assert (await repository.get_assignment(experiment.id, user)).variant_id == results[0].id
    assert fake_redis.store == {}


async def test_lock_times_out_when_held(fake_redis):
    repository = InMemoryExperimentRepository(supports_atomic_insert=False)
    lock = RedisAssignmentLock(fake_redis, wait_ms=20, retry_interval_ms=5)
    service = ABTestingService(repository, lock=lock)
    experiment, _ = await _experiment_with_variants(service, 1.0)
    user = uuid.uuid4()
    fake_redis.store[assignment_lock_key(experiment.id, user)] = "someone-else"

    with pytest.raises(AssignmentLockTimeout):
        await service.assign_variant(experiment.id, user)
    assert fake_redis.store[assignment_lock_key(experiment.id, user)] == "someone-else"


class UnreachableRedis:
    def __init__(self):
        self.set_calls = 0

    async def set(self, key, value, nx=False, px=None):
        self.set_calls += 1
        raise RedisConnectionError("connection refused")

    async def get(self, key):
        raise RedisConnectionError("connection refused")

    async def delete(self, *keys):
        raise RedisConnectionError("connection refused")


async def test_redis_outage_fails_assignment_immediately():
    redis = UnreachableRedis()
    repository = InMemoryExperimentRepository(supports_atomic_insert=False)
    service = ABTestingService(repository, lock=RedisAssignmentLock(redis, retry_interval_ms=1))
    experiment, _ = await _experiment_with_variants(service, 1.0)

    with pytest.raises(StorageError) as excinfo:
        await service.assign_variant(experiment.id, uuid.uuid4())

    assert excinfo.value.operation == "assignment_lock"
    assert redis.set_calls == 1
