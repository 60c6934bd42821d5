import uuid
from datetime import datetime, timedelta, timezone

from catalog_store import SEED_CAST_LIMIT
from memory_store import InMemoryCatalogStore


async def test_recent_watched_orders_by_recency(catalog):
    user = uuid.uuid4()
    start = datetime(2026, 1, 1, tzinfo=timezone.utc)
    ids = [catalog.add_content() for _ in range(4)]
    for offset, cid in enumerate(ids):
        catalog.record_watch(user, cid, last_watched=start + timedelta(hours=offset))

    assert await catalog.recent_watched_content(user, 3) == ids[::-1][:3]


async def test_cast_overlap_uses_top_billed_only(catalog):
    cast = [f"actor-{i}" for i in range(SEED_CAST_LIMIT + 2)]
    seed = catalog.add_content(actors=cast)
    billed = catalog.add_content(actors=cast[:2])
    extras_only = catalog.add_content(actors=cast[SEED_CAST_LIMIT:])

    scores = dict(await catalog.cast_similar(seed, 20))

    assert scores[billed] == 2 / SEED_CAST_LIMIT
    assert extras_only not in scores


async def test_similar_users_needs_min_overlap(catalog):
    user, close, far = uuid.uuid4(), uuid.uuid4(), uuid.uuid4()
    seeds = [catalog.add_content() for _ in range(4)]
    for cid in seeds:
        catalog.record_watch(user, cid)
        catalog.record_watch(close, cid)
    for cid in seeds[:2]:
        catalog.record_watch(far, cid)

    neighbours = await catalog.similar_users(user, seeds, 3, 20)

    assert neighbours == [(close, 1.0)]


async def test_highly_rated_filters_and_orders(catalog):
    user = uuid.uuid4()
    great, good, meh = (catalog.add_content() for _ in range(3))
    catalog.record_watch(user, good, completion_rate=0.75)
    catalog.record_watch(user, great, completion_rate=0.95)
    catalog.record_watch(user, meh, completion_rate=0.4)

    assert await catalog.highly_rated_content(user, 0.7, 10) == [(great, 0.95), (good, 0.75)]


async def test_mood_table_absent_reports_no_tags():
    store = InMemoryCatalogStore(mood_table_present=False)
    store.add_content(popularity=0.9, moods=["happy"])

    assert await store.has_mood_tags() is False
    assert await store.content_by_mood("happy", 0.3, 10) == []
