"""Temporal credit assignment.

A successful episode is often preceded by related sessions that never
received feedback themselves but set it up. Each success hands a small
bonus back to related episodes that ended within the lookback window
before it. Closer predecessors (by position, not by clock time) receive
more.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta

from tempera.memory.episode import Episode, OutcomeStatus
from tempera.memory.store import EpisodeStore, try_update
from tempera.utility.model import PRIOR_SCORE
from tempera.utility.params import UtilityParams

logger = logging.getLogger(__name__)

LOOKBACK = timedelta(hours=1)
STEP_PENALTY = 0.2
CREDIT_SCALE = 0.1
MIN_CHANGE = 0.01


@dataclass
class TemporalCreditResult:
    credited: int = 0
    total_change: float = 0.0
    errors: list[str] = field(default_factory=list)


def related(a: Episode, b: Episode) -> bool:
    """Same project, or at least one shared domain tag."""
    return a.project == b.project or any(tag in b.intent.domain for tag in a.intent.domain)


class TemporalCreditAssignment:
    def __init__(self, store: EpisodeStore, params: UtilityParams | None = None) -> None:
        self._store = store
        self._params = params or UtilityParams()

    def credit(self, step_distance: int) -> float:
        time_factor = 1.0 - STEP_PENALTY * step_distance
        return self._params.discount_factor * time_factor * CREDIT_SCALE

    async def run(self, project: str | None = None) -> TemporalCreditResult:
        """Credit predecessors of successful episodes.

        A record preceding several successes keeps only its largest single
        credit, added to the score it had when the run started.
        """
        result = TemporalCreditResult()

        episodes = list(await self._store.list_all())
        if project:
            episodes = [ep for ep in episodes if ep.project.lower() == project.lower()]
        episodes.sort(key=lambda ep: ep.timestamp_start)

        if len(episodes) < 2:
            return result

        best_credit: dict[int, tuple[float, Episode]] = {}
        for i, current in enumerate(episodes):
            if current.outcome != OutcomeStatus.SUCCESS:
                continue

            for j in range(i - 1, -1, -1):
                prev = episodes[j]
                if current.timestamp_start - prev.timestamp_end > LOOKBACK:
                    break
                if not related(prev, current):
                    continue

                credit = self.credit(i - j)
                if j not in best_credit or credit > best_credit[j][0]:
                    best_credit[j] = (credit, current)

        for j, (credit, success) in sorted(best_credit.items()):
            prev = episodes[j]
            old = prev.utility.score if prev.utility.score is not None else PRIOR_SCORE
            new = min(old + credit, 1.0)
            if new <= old + MIN_CHANGE:
                continue

            prev.utility.score = new
            if await try_update(self._store, prev, result.errors):
                result.credited += 1
                result.total_change += new - old
                logger.debug(
                    f"Credited {prev.short_id} for success {success.short_id}: "
                    f"{old:.3f} -> {new:.3f}"
                )

        logger.info(f"Temporal credit assigned to {result.credited} episodes")
        return result
