"""PruneEngine - decides which episodes to evict.

An episode is a prune candidate when it is older than ``max_age_days`` or
its utility is below ``min_utility``. Any helpful feedback vetoes
deletion outright.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Callable

from tempera.config import StorageConfig
from tempera.memory.episode import Episode
from tempera.memory.store import EpisodeStore

logger = logging.getLogger(__name__)


@dataclass
class PruneCandidate:
    id: str
    short_id: str
    intent: str
    reasons: list[str] = field(default_factory=list)


@dataclass
class PruneResult:
    candidates: list[PruneCandidate] = field(default_factory=list)
    pruned: int = 0
    retained: int = 0
    dry_run: bool = True
    errors: list[str] = field(default_factory=list)


class PruneEngine:
    def __init__(
        self,
        store: EpisodeStore,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._clock = clock or (lambda: datetime.now(UTC))

    def prune_reasons(
        self,
        episode: Episode,
        max_age_days: int | None,
        min_utility: float | None,
        now: datetime,
    ) -> list[str]:
        """Reasons to prune ``episode``; empty if it must be retained."""
        if episode.utility.helpful_count > 0:
            return []

        reasons = []
        if max_age_days is not None:
            age_days = (now - episode.timestamp_start).days
            if age_days > max_age_days:
                reasons.append(f"age: {age_days} days")

        if min_utility is not None:
            utility = episode.utility.effective_score()
            if utility < min_utility:
                reasons.append(f"utility: {utility * 100:.0f}%")

        return reasons

    async def run(
        self,
        max_age_days: int | None = None,
        min_utility: float | None = None,
        dry_run: bool = True,
    ) -> PruneResult:
        """Classify every episode and, unless ``dry_run``, delete the candidates."""
        now = self._clock()
        result = PruneResult(dry_run=dry_run)

        listing = await self._store.list_all()
        result.errors.extend(f"{e.source}: {e.message}" for e in listing.errors)

        for episode in listing:
            reasons = self.prune_reasons(episode, max_age_days, min_utility, now)
            if not reasons:
                result.retained += 1
                continue

            result.candidates.append(
                PruneCandidate(
                    id=episode.id,
                    short_id=episode.short_id,
                    intent=episode.intent.raw_prompt[:50],
                    reasons=reasons,
                )
            )

            if dry_run:
                continue
            if await self._store.delete(episode.id):
                result.pruned += 1
            else:
                logger.warning(f"Prune candidate {episode.short_id} was already gone")

        logger.info(
            f"Prune {'dry run' if dry_run else 'run'}: {len(result.candidates)} candidates, "
            f"{result.pruned} pruned, {result.retained} retained"
        )
        return result

    async def run_from_config(self, storage: StorageConfig, dry_run: bool = True) -> PruneResult:
        """Prune with the thresholds of the ``[storage]`` config section."""
        return await self.run(
            max_age_days=storage.max_age_days,
            min_utility=storage.min_utility_threshold,
            dry_run=dry_run,
        )
