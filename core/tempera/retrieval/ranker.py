"""RetrievalRanker - Ranks past episodes for a query.

Ranking combines how similar an episode is to the query with how useful
it has proven to be:

    combined = (1 - utility_weight) * similarity + utility_weight * utility

Candidates below ``min_similarity`` are dropped, the rest are sorted by
combined score and re-ranked with Maximal Marginal Relevance so the
result set does not collapse onto near-duplicates of the top hit.

Similarity comes from a SimilarityOracle when one is available, else
from token overlap against each episode's text when the oracle is missing or
none of its hits clear ``min_similarity``. Every returned episode
gets a retrieval record appended and its retrieval counter bumped:
retrieval is itself an observation that feeds future scoring.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Callable

from tempera.config import RetrievalConfig
from tempera.memory.episode import Episode, RetrievalRecord, ScoredEpisode
from tempera.memory.index import SimilarityOracle
from tempera.memory.store import EpisodeStore, StoreError, update_with_retry
from tempera.retrieval.feedback import FeedbackLog

logger = logging.getLogger(__name__)

MMR_LAMBDA = 0.7


def text_similarity(query: str, episode: Episode) -> float:
    """Token-overlap similarity between a query and an episode's text.

    ``matches / (|query tokens| + |episode tokens| - matches)``, where a
    query token matches if it occurs anywhere in the episode text.
    """
    query_words = query.lower().split()
    if not query_words:
        return 0.0

    episode_text = episode.matching_text()
    matches = sum(1 for word in query_words if word in episode_text)
    total_unique = len(query_words) + len(episode_text.split()) - matches

    if total_unique <= 0:
        return 0.0
    return matches / total_unique


def overlap_similarity(a: Episode, b: Episode) -> float:
    """Jaccard overlap of the word sets of two episodes."""
    a_words = set(a.overlap_text().split())
    b_words = set(b.overlap_text().split())
    if not a_words or not b_words:
        return 0.0
    return len(a_words & b_words) / len(a_words | b_words)


def combine_scores(similarity: float, utility: float, utility_weight: float) -> float:
    return (1.0 - utility_weight) * similarity + utility_weight * utility


def apply_mmr(
    candidates: list[ScoredEpisode],
    limit: int,
    lambda_: float = MMR_LAMBDA,
) -> list[ScoredEpisode]:
    """Maximal Marginal Relevance re-ranking.

    ``candidates`` must be sorted by combined score. The best candidate is
    always taken first; each further pick maximizes
    ``lambda * combined - (1 - lambda) * max overlap with picks so far``.
    """
    if not candidates or limit <= 0:
        return []

    remaining = list(candidates)
    selected = [remaining.pop(0)]

    while remaining and len(selected) < limit:
        best_idx = 0
        best_score = float("-inf")
        for idx, candidate in enumerate(remaining):
            redundancy = max(overlap_similarity(candidate.episode, s.episode) for s in selected)
            score = lambda_ * candidate.combined_score - (1.0 - lambda_) * redundancy
            if score > best_score:
                best_idx, best_score = idx, score
        selected.append(remaining.pop(best_idx))

    return selected


@dataclass
class RetrievalResult:
    query: str
    episodes: list[ScoredEpisode] = field(default_factory=list)
    used_fallback: bool = False
    errors: list[str] = field(default_factory=list)

    @property
    def ids(self) -> list[str]:
        return [scored.episode.id for scored in self.episodes]


class RetrievalRanker:
    """Ranks episodes for a query and records the retrieval.

    Usage:
        ranker = RetrievalRanker(store, index)
        result = await ranker.retrieve(
            "fix flaky login test",
            requesting_project="billing-api",
        )
    """

    def __init__(
        self,
        store: EpisodeStore,
        oracle: SimilarityOracle | None = None,
        config: RetrievalConfig | None = None,
        feedback_log: FeedbackLog | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._oracle = oracle
        self._config = config or RetrievalConfig()
        self._feedback_log = feedback_log
        self._clock = clock or (lambda: datetime.now(UTC))

    async def retrieve(
        self,
        query: str,
        requesting_project: str = "unknown",
        limit: int | None = None,
        project_filter: str | None = None,
        utility_weight: float | None = None,
        min_similarity: float | None = None,
    ) -> RetrievalResult:
        """Rank episodes for ``query`` and record the retrieval on each result.

        Args:
            query: Free-text description of the current task
            requesting_project: Project the retrieval is made from
            limit: Maximum number of results (default from config)
            project_filter: Only consider episodes of this project
            utility_weight: Weight of utility vs. similarity, in [0, 1]
            min_similarity: Candidates below this similarity are dropped
        """
        limit = limit if limit is not None else self._config.default_limit
        weight = utility_weight if utility_weight is not None else self._config.utility_weight
        floor = min_similarity if min_similarity is not None else self._config.min_similarity
        if not 0.0 <= weight <= 1.0:
            raise ValueError(f"utility_weight must be within [0, 1], got {weight}")

        result = RetrievalResult(query=query)

        candidates: list[ScoredEpisode] = []
        if self._oracle is not None and await self._oracle.is_available():
            candidates = await self._vector_candidates(query, limit, project_filter, weight)
            candidates = [c for c in candidates if c.similarity_score >= floor]
        if not candidates:
            logger.info("Using text-based search")
            result.used_fallback = True
            candidates = await self._text_candidates(query, project_filter, weight)
            candidates = [c for c in candidates if c.similarity_score >= floor]

        candidates.sort(key=lambda c: c.combined_score, reverse=True)
        result.episodes = apply_mmr(candidates, limit)

        await self._record_retrievals(result, requesting_project)
        return result

    async def _vector_candidates(
        self,
        query: str,
        limit: int,
        project_filter: str | None,
        utility_weight: float,
    ) -> list[ScoredEpisode]:
        try:
            hits = await self._oracle.search(query, limit * 2, project_filter)
        except RuntimeError as e:
            logger.warning(f"Similarity search failed: {e}")
            return []

        candidates = []
        for hit in hits:
            episode = await self._store.load(hit.id)
            if episode is None:
                logger.debug(f"Index hit {hit.id[:8]} has no stored episode")
                continue
            candidates.append(self._score(episode, hit.similarity, utility_weight))
        return candidates

    async def _text_candidates(
        self,
        query: str,
        project_filter: str | None,
        utility_weight: float,
    ) -> list[ScoredEpisode]:
        listing = await self._store.list_all()
        return [
            self._score(episode, text_similarity(query, episode), utility_weight)
            for episode in listing
            if episode.matches_project(project_filter)
        ]

    @staticmethod
    def _score(episode: Episode, similarity: float, utility_weight: float) -> ScoredEpisode:
        utility = episode.utility.effective_score()
        return ScoredEpisode(
            episode=episode,
            similarity_score=similarity,
            utility_score=utility,
            combined_score=combine_scores(similarity, utility, utility_weight),
        )

    async def _record_retrievals(self, result: RetrievalResult, requesting_project: str) -> None:
        now = self._clock()

        def observe(episode: Episode) -> bool:
            episode.retrieval_history.append(
                RetrievalRecord(
                    timestamp=now,
                    project=requesting_project,
                    task_description=result.query,
                )
            )
            episode.utility.retrieval_count += 1
            return True

        recorded = []
        for scored in result.episodes:
            try:
                written = await update_with_retry(
                    self._store, scored.episode.model_copy(deep=True), observe
                )
            except StoreError as e:
                logger.warning(f"Failed to record retrieval: {e}")
                result.errors.append(str(e))
                continue
            if written is None:
                result.errors.append(f"Episode {scored.episode.short_id} no longer exists")
                continue
            scored.episode = written
            recorded.append(written.id)

        if self._feedback_log is not None and recorded:
            self._feedback_log.record_retrieval(result.query, recorded)
