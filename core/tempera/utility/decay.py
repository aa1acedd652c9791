"""DecayEngine - ages utility scores down during inactivity.

An episode's inactivity is counted in whole days since the later of its
end timestamp and its most recent retrieval. The decay factor is
``(1 - decay_rate) ** days_inactive`` and is only applied once it is
non-negligible (below 0.99).

Days already charged against the same activity anchor are remembered on
the episode, so a run only applies the days that elapsed since the last
run. Running twice on the same day is a no-op, and scores never rise.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Callable

from tempera.memory.episode import Episode
from tempera.memory.store import EpisodeStore, try_update
from tempera.utility.params import UtilityParams

logger = logging.getLogger(__name__)

SIGNIFICANT_DECAY = 0.99


@dataclass
class DecayResult:
    decayed: int = 0
    total_change: float = 0.0
    errors: list[str] = field(default_factory=list)


class DecayEngine:
    """Applies time-based utility decay to every episode."""

    def __init__(
        self,
        store: EpisodeStore,
        params: UtilityParams | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._params = params or UtilityParams()
        self._clock = clock or (lambda: datetime.now(UTC))

    def decay_factor(self, days: int) -> float:
        return (1.0 - self._params.decay_rate) ** days

    async def run(self, episodes: list[Episode]) -> DecayResult:
        """Decay ``episodes`` in place and persist every changed record."""
        now = self._clock()
        result = DecayResult()

        for episode in episodes:
            anchor = episode.last_activity()
            days_inactive = max((now - anchor).days, 0)

            if self.decay_factor(days_inactive) >= SIGNIFICANT_DECAY:
                continue

            utility = episode.utility
            charged = utility.decay_days if utility.decay_anchor == anchor else 0
            pending = days_inactive - charged
            if pending <= 0:
                continue

            old_score = utility.effective_score()
            new_score = old_score * self.decay_factor(pending)

            utility.score = new_score
            utility.decay_anchor = anchor
            utility.decay_days = days_inactive

            if await try_update(self._store, episode, result.errors):
                result.decayed += 1
                result.total_change += new_score - old_score
                logger.debug(
                    f"Decayed {episode.short_id}: {old_score:.3f} -> {new_score:.3f} "
                    f"({days_inactive} days inactive)"
                )

        logger.info(f"Decay applied to {result.decayed} episodes ({result.total_change:+.3f})")
        return result
