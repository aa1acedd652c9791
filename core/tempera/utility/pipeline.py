"""Utility learning pipeline.

One propagate cycle runs, in order:
1. DecayEngine - age scores of inactive episodes
2. PropagationEngine - spread value from proven episodes to their neighbours
3. TemporalCreditAssignment - reward episodes that preceded a success

Each stage re-reads the store so it sees the previous stage's writes.
Propagation reads cached scores, so decay must run first.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from tempera.memory.index import EpisodeIndex, SimilarityOracle
from tempera.memory.store import EpisodeStore
from tempera.utility.decay import DecayEngine
from tempera.utility.params import UtilityParams
from tempera.utility.propagation import PropagationEngine
from tempera.utility.temporal import TemporalCreditAssignment

logger = logging.getLogger(__name__)


@dataclass
class PropagationResult:
    """Summary of one propagate cycle."""

    episodes_processed: int = 0
    episodes_updated: int = 0
    total_utility_change: float = 0.0
    decayed_episodes: int = 0
    propagated_episodes: int = 0
    credited_episodes: int = 0
    used_fallback: bool = False
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "episodes_processed": self.episodes_processed,
            "episodes_updated": self.episodes_updated,
            "total_utility_change": self.total_utility_change,
            "decayed_episodes": self.decayed_episodes,
            "propagated_episodes": self.propagated_episodes,
            "credited_episodes": self.credited_episodes,
            "used_fallback": self.used_fallback,
            "errors": self.errors,
        }


class UtilityPipeline:
    """Runs decay, propagation and temporal credit against one store.

    Usage:
        pipeline = UtilityPipeline(store, index)
        result = await pipeline.run(project="billing-api")
    """

    def __init__(
        self,
        store: EpisodeStore,
        oracle: SimilarityOracle | None = None,
        params: UtilityParams | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._oracle = oracle
        self._params = params or UtilityParams()
        self._decay = DecayEngine(store, self._params, clock=clock)
        self._propagation = PropagationEngine(store, oracle, self._params)
        self._temporal = TemporalCreditAssignment(store, self._params)

    async def run(self, project: str | None = None, temporal: bool = True) -> PropagationResult:
        result = PropagationResult()

        listing = await self._store.list_all()
        result.errors.extend(f"{e.source}: {e.message}" for e in listing.errors)
        episodes = [ep for ep in listing if ep.matches_project(project)]
        result.episodes_processed = len(episodes)
        if not episodes:
            return result

        logger.info(f"Processing {len(episodes)} episodes")

        decay = await self._decay.run(episodes)
        result.decayed_episodes = decay.decayed
        result.total_utility_change += decay.total_change
        result.errors.extend(decay.errors)

        propagation = await self._propagation.run(project)
        result.propagated_episodes = propagation.propagated
        result.total_utility_change += propagation.total_change
        result.used_fallback = propagation.used_fallback
        result.errors.extend(propagation.errors)

        if temporal:
            credit = await self._temporal.run(project)
            result.credited_episodes = credit.credited
            result.total_utility_change += credit.total_change
            result.errors.extend(credit.errors)

        final = await self._store.list_all()
        result.episodes_updated = sum(
            1 for ep in final if ep.matches_project(project) and ep.utility.score is not None
        )

        if isinstance(self._oracle, EpisodeIndex) and not result.used_fallback:
            synced = await self._oracle.sync_utility(final)
            logger.info(f"Synced utility for {synced} indexed episodes")

        logger.info(
            f"Propagation complete: {result.decayed_episodes} decayed, "
            f"{result.propagated_episodes} propagated, {result.credited_episodes} credited "
            f"({result.total_utility_change:+.3f})"
        )
        return result
