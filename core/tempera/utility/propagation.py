"""PropagationEngine - spreads utility along similarity edges.

Episodes that direct feedback has shown to be useful pass part of their
value to semantically close episodes that have little feedback of their
own. The update is a one-step temporal-difference rule whose "successor
state" is a semantic neighbour rather than a later time step:

    td_error = gamma * source_utility * similarity - old
    new      = clamp(old + alpha * td_error, 0, 1)

Writes smaller than ``MIN_CHANGE`` are skipped, so a converged store sees
no further updates.

When no similarity oracle is available, a coarser pass groups episodes
by tag and task type and pulls below-average members toward the group
average.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field

from tempera.memory.episode import Episode
from tempera.memory.index import SimilarityOracle
from tempera.memory.store import EpisodeStore, try_update
from tempera.utility.model import PRIOR_SCORE
from tempera.utility.params import UtilityParams

logger = logging.getLogger(__name__)

MIN_CHANGE = 0.01
MIN_SOURCE_RETRIEVALS = 2
MIN_SOURCE_HELPFUL_RATIO = 0.5
DEFAULT_NEIGHBOURS = 10
# How far below its tag group's average an episode must sit to be pulled up.
GROUP_MARGIN = 0.1


def clamp(value: float, lo: float = 0.0, hi: float = 1.0) -> float:
    return max(lo, min(hi, value))


@dataclass
class PropagationOutcome:
    propagated: int = 0
    total_change: float = 0.0
    used_fallback: bool = False
    errors: list[str] = field(default_factory=list)


class PropagationEngine:
    """Bellman-style utility propagation between similar episodes.

    Usage:
        engine = PropagationEngine(store, index, UtilityParams())
        outcome = await engine.run(project="billing-api")
    """

    def __init__(
        self,
        store: EpisodeStore,
        oracle: SimilarityOracle | None = None,
        params: UtilityParams | None = None,
        neighbours: int = DEFAULT_NEIGHBOURS,
    ) -> None:
        self._store = store
        self._oracle = oracle
        self._params = params or UtilityParams()
        self._neighbours = neighbours

    @staticmethod
    def is_source(episode: Episode) -> bool:
        """Whether direct feedback makes this episode a propagation source."""
        utility = episode.utility
        return (
            utility.helpful_ratio > MIN_SOURCE_HELPFUL_RATIO
            and utility.retrieval_count >= MIN_SOURCE_RETRIEVALS
        )

    def td_update(self, old: float, source_utility: float, similarity: float) -> float:
        td_error = self._params.discount_factor * source_utility * similarity - old
        return clamp(old + self._params.learning_rate * td_error)

    async def run(self, project: str | None = None) -> PropagationOutcome:
        listing = await self._store.list_all()
        episodes = [ep for ep in listing if ep.matches_project(project)]

        if self._oracle is not None and await self._oracle.is_available():
            return await self._propagate_by_similarity(episodes, project)

        logger.info("Similarity oracle unavailable, using tag-based propagation")
        return await self._propagate_by_tags(episodes)

    async def _propagate_by_similarity(
        self,
        episodes: list[Episode],
        project: str | None,
    ) -> PropagationOutcome:
        outcome = PropagationOutcome()
        sources = [ep for ep in episodes if self.is_source(ep)]
        if not sources:
            return outcome

        logger.info(f"Found {len(sources)} high-utility episodes to propagate from")

        for source in sources:
            source_utility = source.utility.effective_score()
            try:
                hits = await self._oracle.search(source.search_text(), self._neighbours, project)
            except RuntimeError as e:
                message = f"Similarity search failed for {source.short_id}: {e}"
                logger.warning(message)
                outcome.errors.append(message)
                continue

            for hit in hits:
                if hit.id == source.id or hit.similarity < self._params.propagation_threshold:
                    continue

                target = await self._store.load(hit.id)
                if target is None:
                    continue

                old = target.utility.score if target.utility.score is not None else PRIOR_SCORE
                new = self.td_update(old, source_utility, hit.similarity)
                if abs(new - old) <= MIN_CHANGE:
                    continue

                target.utility.score = new
                if await try_update(self._store, target, outcome.errors):
                    outcome.propagated += 1
                    outcome.total_change += new - old
                    logger.debug(
                        f"Propagated {source.short_id} -> {target.short_id} "
                        f"(sim {hit.similarity:.2f}): {old:.3f} -> {new:.3f}"
                    )

        return outcome

    async def _propagate_by_tags(self, episodes: list[Episode]) -> PropagationOutcome:
        outcome = PropagationOutcome(used_fallback=True)

        groups: dict[str, dict[str, Episode]] = defaultdict(dict)
        for ep in episodes:
            for tag in ep.intent.domain:
                groups[tag.lower()][ep.id] = ep
            groups[ep.intent.task_type.value][ep.id] = ep

        for tag, members in groups.items():
            if len(members) < 2:
                continue

            group = list(members.values())
            average = sum(ep.utility.effective_score() for ep in group) / len(group)

            for ep in group:
                current = ep.utility.effective_score()
                if current >= average - GROUP_MARGIN:
                    continue

                new = clamp(current + self._params.learning_rate * (average - current))
                if abs(new - current) <= MIN_CHANGE:
                    continue

                ep.utility.score = new
                if await try_update(self._store, ep, outcome.errors):
                    outcome.propagated += 1
                    outcome.total_change += new - current
                    logger.debug(f"Pulled {ep.short_id} toward '{tag}' average: {current:.3f} -> {new:.3f}")

        return outcome
