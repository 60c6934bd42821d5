import uuid
import warnings
from types import SimpleNamespace

import pytest
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import IntegrityError, OperationalError, ProgrammingError

from catalog_store import SEED_CAST_LIMIT, SqlCatalogStore
from domain import ExperimentStatus, MetricAggregate
from errors import ConflictError, StorageError
from experiment_repository import SqlExperimentRepository


class FakeResult:
    def __init__(self, rows=()):
        self._rows = list(rows)

    def first(self):
        return self._rows[0] if self._rows else None

    def all(self):
        return list(self._rows)

    def scalars(self):
        return self

    def scalar_one_or_none(self):
        return self._rows[0] if self._rows else None


class FakeSession:
    def __init__(self, results=(), execute_error=None, commit_error=None):
        self.results = list(results)
        self.execute_error = execute_error
        self.commit_error = commit_error
        self.statements = []
        self.commits = 0
        self.rollbacks = 0
        self.added = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def execute(self, stmt):
        self.statements.append(stmt)
        if self.execute_error is not None:
            raise self.execute_error
        return self.results.pop(0) if self.results else FakeResult()

    def add(self, obj):
        self.added.append(obj)

    async def commit(self):
        if self.commit_error is not None:
            raise self.commit_error
        self.commits += 1

    async def rollback(self):
        self.rollbacks += 1


class FakeSessionmaker:
    def __init__(self, *results, **kwargs):
        self.session = FakeSession(results, **kwargs)

    def __call__(self):
        return self.session


def render(stmt):
    with warnings.catch_warnings():
        warnings.simplefilter("error")
        compiled = stmt.compile(dialect=postgresql.dialect())
    return " ".join(str(compiled).split()), list(compiled.params.values())


async def test_assignment_insert_is_first_writer_wins():
    exp_id, user_id, variant_id = uuid.uuid4(), uuid.uuid4(), uuid.uuid4()
    won = FakeSessionmaker(FakeResult([(uuid.uuid4(),)]))
    lost = FakeSessionmaker(FakeResult([]))

    assert await SqlExperimentRepository(won).insert_assignment_if_absent(exp_id, user_id, variant_id) is True
    assert await SqlExperimentRepository(lost).insert_assignment_if_absent(exp_id, user_id, variant_id) is False

    sql, params = render(won.session.statements[0])
    assert sql.startswith("INSERT INTO experiment_assignments")
    assert "ON CONFLICT (experiment_id, user_id) DO NOTHING" in sql
    assert sql.endswith("RETURNING experiment_assignments.id")
    assert variant_id in params
    assert won.session.commits == 1


async def test_metric_aggregates_filter_by_metric_name():
    exp_id, variant_id = uuid.uuid4(), uuid.uuid4()
    maker = FakeSessionmaker(FakeResult([(variant_id, 10, 2, 6.0, 3)]))

    aggregates = await SqlExperimentRepository(maker).get_metric_aggregates(exp_id)

    assert aggregates == {variant_id: MetricAggregate(exposures=10, conversions=2, value_sum=6.0, value_count=3)}
    sql, params = render(maker.session.statements[0])
    assert sql.count("FILTER (WHERE experiment_metrics.metric_name = ") == 2
    assert sql.count("FILTER (WHERE experiment_metrics.metric_name != ") == 2
    assert "coalesce(sum(experiment_metrics.metric_value) FILTER" in sql
    assert "GROUP BY experiment_metrics.variant_id" in sql
    assert {"exposure", "conversion"} <= {p for p in params if isinstance(p, str)}


async def test_status_transition_is_conditional_update():
    exp_id = uuid.uuid4()
    row = SimpleNamespace(
        id=exp_id, name="ranking", description=None, status="completed",
        traffic_allocation=1.0, created_at=None, updated_at=None,
    )
    matched = FakeSessionmaker(FakeResult([row]))
    missed = FakeSessionmaker(FakeResult([]))

    updated = await SqlExperimentRepository(matched).transition_status(
        exp_id, ExperimentStatus.RUNNING, ExperimentStatus.COMPLETED
    )
    stale = await SqlExperimentRepository(missed).transition_status(
        exp_id, ExperimentStatus.RUNNING, ExperimentStatus.PAUSED
    )

    assert updated.status == ExperimentStatus.COMPLETED
    assert stale is None
    sql, params = render(matched.session.statements[0])
    assert sql.startswith("UPDATE experiments SET")
    assert "updated_at=now()" in sql
    assert "WHERE experiments.id = " in sql
    assert "AND experiments.status = " in sql
    assert "RETURNING" in sql
    assert "running" in params and "completed" in params


async def test_duplicate_experiment_name_is_conflict():
    maker = FakeSessionmaker(commit_error=IntegrityError("INSERT", {}, Exception("duplicate key")))

    with pytest.raises(ConflictError):
        await SqlExperimentRepository(maker).create_experiment("ranking", None, 1.0)
    assert maker.session.rollbacks == 1


async def test_driver_failure_becomes_storage_error():
    maker = FakeSessionmaker(execute_error=OperationalError("SELECT", {}, Exception("server closed")))
    exp_id = uuid.uuid4()

    with pytest.raises(StorageError) as excinfo:
        await SqlExperimentRepository(maker).get_variants(exp_id)
    assert excinfo.value.operation == "get_variants"
    assert excinfo.value.entity_id == exp_id


async def test_genre_overlap_is_ratio_of_seed_genres():
    seed, other = uuid.uuid4(), uuid.uuid4()
    maker = FakeSessionmaker(FakeResult([(other, 0.5)]))

    assert await SqlCatalogStore(maker).genre_similar(seed, 30) == [(other, 0.5)]

    sql, params = render(maker.session.statements[0])
    assert "CAST(count(*) AS FLOAT) / greatest(" in sql
    assert "content_genres.content_id != " in sql
    assert "GROUP BY content_genres.content_id" in sql
    assert 30 in params


async def test_cast_overlap_caps_seed_cast():
    seed = uuid.uuid4()
    maker = FakeSessionmaker(FakeResult([]))

    await SqlCatalogStore(maker).cast_similar(seed, 20)

    sql, params = render(maker.session.statements[0])
    assert "ORDER BY credits.credit_order ASC NULLS LAST, credits.person_name LIMIT " in sql
    assert SEED_CAST_LIMIT in params and 20 in params
    assert "actor" in params


async def test_director_match_selects_distinct_content():
    maker = FakeSessionmaker(FakeResult([uuid.uuid4()]))

    rows = await SqlCatalogStore(maker).director_similar(uuid.uuid4(), 15)

    assert [score for _, score in rows] == [1.0]
    sql, _ = render(maker.session.statements[0])
    assert sql.startswith("SELECT DISTINCT credits.content_id")


async def test_similar_users_require_min_overlap():
    maker = FakeSessionmaker(FakeResult([]))
    seeds = [uuid.uuid4() for _ in range(4)]

    await SqlCatalogStore(maker).similar_users(uuid.uuid4(), seeds, 3, 20)

    sql, params = render(maker.session.statements[0])
    assert "HAVING count(*) >= " in sql
    assert 3 in params


async def test_missing_mood_table_reports_no_tags():
    maker = FakeSessionmaker(
        execute_error=ProgrammingError("SELECT", {}, Exception('relation "content_moods" does not exist'))
    )

    assert await SqlCatalogStore(maker).has_mood_tags() is False
