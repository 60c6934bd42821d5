import math
import uuid

import pytest

from domain import RecommendationSource
from errors import StorageError
from graph_recommender import (
    COLLABORATIVE_DECAY,
    SIMILARITY_FACTORS,
    GraphRecommender,
    rank_scores,
)
from memory_store import InMemoryCatalogStore


def test_similarity_weights_sum_to_one():
    assert math.isclose(sum(f.weight for f in SIMILARITY_FACTORS), 1.0, abs_tol=1e-9)
    assert [f.limit for f in SIMILARITY_FACTORS] == [30, 20, 15, 20]


def test_decay_must_be_below_one(catalog):
    with pytest.raises(ValueError):
        GraphRecommender(catalog, collaborative_decay=1.0)


async def test_cold_user_gets_empty_result(recommender):
    assert await recommender.recommend(uuid.uuid4(), 10) == []


async def test_content_and_collaborative_lanes_fuse(catalog, recommender):
    user, neighbour = uuid.uuid4(), uuid.uuid4()
    a = catalog.add_content(genres=["drama", "crime"])
    b = catalog.add_content()
    c = catalog.add_content()
    similar = catalog.add_content(genres=["drama"])
    neighbour_pick = catalog.add_content()

    for seed in (a, b, c):
        catalog.record_watch(user, seed)
        catalog.record_watch(neighbour, seed)
    catalog.record_watch(neighbour, neighbour_pick, completion_rate=0.9)

    results = await recommender.recommend(user, 10)

    ids = [cid for cid, _ in results]
    assert ids == [neighbour_pick, similar]
    scores = dict(results)
    assert scores[neighbour_pick] == pytest.approx(0.4 * 1.0 * 0.9 * COLLABORATIVE_DECAY)
    # genre overlap 1/2, weight 0.35, averaged over three seeds
    assert scores[similar] == pytest.approx(0.6 * (0.5 * 0.35) / 3)


async def test_content_affinity_is_mean_over_seeds(catalog, recommender):
    user = uuid.uuid4()
    first = catalog.add_content(genres=["drama"])
    second = catalog.add_content(genres=["drama"])
    candidate = catalog.add_content(genres=["drama"])
    catalog.record_watch(user, first)
    catalog.record_watch(user, second)

    results = await recommender.recommend(user, 5)

    assert results == [(candidate, pytest.approx(0.6 * 0.35))]


async def test_director_and_cast_factors(catalog, recommender):
    user = uuid.uuid4()
    seed = catalog.add_content(actors=["Ann", "Bo"], directors=["Dee"])
    same_director = catalog.add_content(directors=["Dee"])
    half_cast = catalog.add_content(actors=["Bo"])
    catalog.record_watch(user, seed)

    scores = dict(await recommender.recommend(user, 5))

    assert scores[same_director] == pytest.approx(0.6 * 0.20)
    assert scores[half_cast] == pytest.approx(0.6 * 0.5 * 0.25)


async def test_never_returns_watched_content(catalog, recommender):
    user = uuid.uuid4()
    seeds = [catalog.add_content(genres=["comedy", "family"]) for _ in range(5)]
    for seed in seeds:
        catalog.record_watch(user, seed)
    for _ in range(10):
        catalog.add_content(genres=["comedy"])

    results = await recommender.recommend(user, 50)

    assert results
    assert not set(seeds) & {cid for cid, _ in results}


async def test_results_descend_and_truncate(catalog, recommender):
    user = uuid.uuid4()
    genres = ["action", "comedy", "drama", "horror", "romance"]
    for i in range(3):
        catalog.record_watch(user, catalog.add_content(genres=genres[: i + 2]))
    for i in range(20):
        catalog.add_content(genres=genres[: (i % 5) + 1])

    full = await recommender.recommend(user, 50)
    top = await recommender.recommend(user, 5)

    scores = [s for _, s in full]
    assert scores == sorted(scores, reverse=True)
    assert top == full[:5]


async def test_candidates_carry_provenance(catalog, recommender):
    user = uuid.uuid4()
    seed = catalog.add_content(genres=["drama"])
    other = catalog.add_content(genres=["drama"])
    catalog.record_watch(user, seed)

    candidates = await recommender.recommend_candidates(user, 5)

    assert len(candidates) == 1
    assert candidates[0].content_id == other
    assert candidates[0].source == RecommendationSource.GRAPH
    assert candidates[0].based_on == ["content_similarity"]


def test_rank_scores_breaks_ties_by_id():
    low, high = sorted([uuid.uuid4(), uuid.uuid4()], key=str)
    ranked = rank_scores({high: 0.5, low: 0.5, uuid.uuid4(): 0.1}, 2)
    assert ranked == [(low, 0.5), (high, 0.5)]
    assert rank_scores({low: 1.0}, 0) == []


class FailingGenreStore(InMemoryCatalogStore):
    async def genre_similar(self, content_id, limit):
        raise StorageError("genre_similar", content_id)


async def test_storage_failure_propagates():
    store = FailingGenreStore()
    user = uuid.uuid4()
    store.record_watch(user, store.add_content(genres=["drama"]))

    with pytest.raises(StorageError) as excinfo:
        await GraphRecommender(store).recommend(user, 10)
    assert excinfo.value.operation == "genre_similar"
