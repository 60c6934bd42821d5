# apps/discovery/graph_recommender.py
from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Tuple
from uuid import UUID

from catalog_store import CatalogStore, ScoredId
from domain import RecommendationSource, ScoredContent
from fanout import bounded, gather_or_cancel

# Seed selection
HISTORY_DEPTH = 50

# Fusion (tunable per deployment, fixed for its lifetime)
CONTENT_WEIGHT = 0.6
COLLABORATIVE_WEIGHT = 0.4

# Collaborative lane tuning
COLLABORATIVE_DECAY = 0.85
SIMILAR_USERS_LIMIT = 20
MIN_USER_OVERLAP = 3
NEIGHBOR_ITEMS_LIMIT = 30
HIGHLY_RATED_COMPLETION = 0.7

MAX_CONCURRENCY = 16

log = logging.getLogger("graph_recommender")


@dataclass(frozen=True)
class SimilarityFactor:
    name: str
    weight: float
    limit: int


# The four content-similarity weights must sum to 1.0, otherwise content affinity
# is silently rescaled against the collaborative lane in the fusion step.
SIMILARITY_FACTORS: Tuple[SimilarityFactor, ...] = (
    SimilarityFactor("genre", 0.35, 30),
    SimilarityFactor("cast", 0.25, 20),
    SimilarityFactor("director", 0.20, 15),
    SimilarityFactor("theme", 0.20, 20),
)

if not math.isclose(sum(f.weight for f in SIMILARITY_FACTORS), 1.0, abs_tol=1e-9):
    raise RuntimeError("content similarity weights must sum to 1.0")


@dataclass
class GraphScores:
    seeds: List[UUID]
    content: Dict[UUID, float]
    collaborative: Dict[UUID, float]
    fused: List[Tuple[UUID, float]]


def rank_scores(scores: Dict[UUID, float], limit: int) -> List[Tuple[UUID, float]]:
    """Sort by score descending (content id breaks ties) and truncate."""
    if limit <= 0:
        return []
    ranked = sorted(scores.items(), key=lambda item: (-item[1], str(item[0])))
    return ranked[:limit]


class GraphRecommender:
    """Ranks unseen content by walking content-content and user-user graphs.

    Content affinity is the mean over seeds of the weighted genre/cast/director/theme
    overlap; collaborative affinity sums similarity * completion * decay across
    neighbours who share at least MIN_USER_OVERLAP seed items.
    """

    def __init__(
        self,
        store: CatalogStore,
        *,
        history_depth: int = HISTORY_DEPTH,
        content_weight: float = CONTENT_WEIGHT,
        collaborative_weight: float = COLLABORATIVE_WEIGHT,
        collaborative_decay: float = COLLABORATIVE_DECAY,
        similar_users_limit: int = SIMILAR_USERS_LIMIT,
        min_user_overlap: int = MIN_USER_OVERLAP,
        neighbor_items_limit: int = NEIGHBOR_ITEMS_LIMIT,
        max_concurrency: Optional[int] = MAX_CONCURRENCY,
    ):
        if not 0.0 < collaborative_decay < 1.0:
            raise ValueError("collaborative_decay must be in (0, 1)")
        if content_weight < 0 or collaborative_weight < 0:
            raise ValueError("fusion weights must be non-negative")
        self.store = store
        self.history_depth = history_depth
        self.content_weight = content_weight
        self.collaborative_weight = collaborative_weight
        self.collaborative_decay = collaborative_decay
        self.similar_users_limit = similar_users_limit
        self.min_user_overlap = min_user_overlap
        self.neighbor_items_limit = neighbor_items_limit
        self.max_concurrency = max_concurrency

    async def recommend(self, user_id: UUID, limit: int) -> List[Tuple[UUID, float]]:
        scores = await self.score(user_id, limit)
        return scores.fused

    async def recommend_candidates(self, user_id: UUID, limit: int) -> List[ScoredContent]:
        scores = await self.score(user_id, limit)
        out: List[ScoredContent] = []
        for content_id, score in scores.fused:
            based_on: List[str] = []
            if scores.content.get(content_id, 0.0) > 0:
                based_on.append("content_similarity")
            if scores.collaborative.get(content_id, 0.0) > 0:
                based_on.append("collaborative")
            out.append(
                ScoredContent(
                    content_id=content_id,
                    score=score,
                    source=RecommendationSource.GRAPH,
                    based_on=based_on,
                )
            )
        return out

    async def score(self, user_id: UUID, limit: int) -> GraphScores:
        seeds = await self.store.recent_watched_content(user_id, self.history_depth)
        if not seeds:
            # cold start is handled by another strategy upstream
            log.info("graph_recommend_cold_start user_id=%s", user_id)
            return GraphScores(seeds=[], content={}, collaborative={}, fused=[])

        semaphore = asyncio.Semaphore(self.max_concurrency) if self.max_concurrency else None
        content_scores, collaborative_scores = await gather_or_cancel(
            [
                self._content_similarity_scores(seeds, semaphore),
                self._collaborative_scores(user_id, seeds, semaphore),
            ]
        )

        merged: Dict[UUID, float] = {}
        for content_id, value in content_scores.items():
            merged[content_id] = merged.get(content_id, 0.0) + value * self.content_weight
        for content_id, value in collaborative_scores.items():
            merged[content_id] = merged.get(content_id, 0.0) + value * self.collaborative_weight

        watched = set(seeds)
        for content_id in watched:
            merged.pop(content_id, None)

        fused = rank_scores(merged, limit)

        log.info(
            "graph_recommend_done user_id=%s seeds=%d content_candidates=%d collaborative_candidates=%d returned=%d",
            user_id, len(seeds), len(content_scores), len(collaborative_scores), len(fused),
        )
        return GraphScores(
            seeds=list(seeds),
            content=content_scores,
            collaborative=collaborative_scores,
            fused=fused,
        )

    def _factor_query(self, factor: SimilarityFactor) -> Callable[[UUID, int], Awaitable[List[ScoredId]]]:
        return {
            "genre": self.store.genre_similar,
            "cast": self.store.cast_similar,
            "director": self.store.director_similar,
            "theme": self.store.theme_similar,
        }[factor.name]

    async def _content_similarity_scores(
        self,
        seeds: Sequence[UUID],
        semaphore: Optional[asyncio.Semaphore],
    ) -> Dict[UUID, float]:
        calls = []
        for seed_id in seeds:
            for factor in SIMILARITY_FACTORS:
                calls.append(bounded(semaphore, self._factor_query(factor), seed_id, factor.limit))
        results = await gather_or_cancel(calls)

        scores: Dict[UUID, float] = {}
        factors = list(SIMILARITY_FACTORS) * len(seeds)
        for factor, rows in zip(factors, results):
            for content_id, similarity in rows:
                scores[content_id] = scores.get(content_id, 0.0) + similarity * factor.weight

        # Mean across seeds so long histories don't inflate affinity
        seed_count = float(len(seeds))
        return {content_id: value / seed_count for content_id, value in scores.items()}

    async def _collaborative_scores(
        self,
        user_id: UUID,
        seeds: Sequence[UUID],
        semaphore: Optional[asyncio.Semaphore],
    ) -> Dict[UUID, float]:
        neighbours = await bounded(
            semaphore,
            self.store.similar_users,
            user_id,
            seeds,
            self.min_user_overlap,
            self.similar_users_limit,
        )
        if not neighbours:
            return {}

        item_lists = await gather_or_cancel(
            [
                bounded(
                    semaphore,
                    self.store.highly_rated_content,
                    neighbour_id,
                    HIGHLY_RATED_COMPLETION,
                    self.neighbor_items_limit,
                )
                for neighbour_id, _ in neighbours
            ]
        )

        scores: Dict[UUID, float] = {}
        for (neighbour_id, similarity), items in zip(neighbours, item_lists):
            for content_id, completion_rate in items:
                weighted = similarity * completion_rate * self.collaborative_decay
                scores[content_id] = scores.get(content_id, 0.0) + weighted

        log.debug(
            "graph_collaborative user_id=%s neighbours=%d candidates=%d",
            user_id, len(neighbours), len(scores),
        )
        return scores
