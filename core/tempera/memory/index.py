"""Similarity oracle over a vector backend.

The EpisodeIndex answers "which episodes are semantically close to this
text" for the ranker and the propagation engine. It owns no embedding
model: callers hand it an embedding function (sync or async).
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Iterable, Protocol

from tempera.memory.backend import EpisodeVector, SearchHit, VectorBackend
from tempera.memory.episode import Episode

logger = logging.getLogger(__name__)

EmbeddingFunction = Callable[[str], list[float] | Awaitable[list[float]]]


class SimilarityOracle(Protocol):
    """Anything that can rank episode ids by similarity to a text query."""

    async def search(
        self,
        query_text: str,
        k: int,
        project_filter: str | None = None,
    ) -> list[SearchHit]:
        """Return up to ``k`` hits, most similar first, similarity in [0, 1]."""
        ...

    async def is_available(self) -> bool:
        """Whether the oracle can answer queries right now."""
        ...


class EpisodeIndex:
    """Vector index of episodes implementing SimilarityOracle.

    Usage:
        index = EpisodeIndex(InMemoryBackend(), embed)
        await index.index_all(episodes)

        hits = await index.search("fix login redirect", k=10)
    """

    def __init__(
        self,
        backend: VectorBackend,
        embedding_function: EmbeddingFunction | None = None,
    ) -> None:
        self._backend = backend
        self._embedding_function = embedding_function
        self._initialized = False

    async def initialize(self) -> None:
        if self._initialized:
            return
        await self._backend.initialize()
        self._initialized = True

    async def is_available(self) -> bool:
        if self._embedding_function is None:
            return False
        try:
            await self.initialize()
            return await self._backend.count() > 0
        except RuntimeError as e:
            logger.info(f"Vector index unavailable: {e}")
            return False

    async def search(
        self,
        query_text: str,
        k: int,
        project_filter: str | None = None,
    ) -> list[SearchHit]:
        await self.initialize()
        embedding = await self._embed(query_text)
        return await self._backend.search(embedding, k, project_filter)

    async def index_episode(self, episode: Episode) -> None:
        """Index (or re-index) a single episode."""
        await self.initialize()
        text = episode.embedding_text()
        embedding = await self._embed(text)
        await self._backend.upsert(
            [
                EpisodeVector(
                    id=episode.id,
                    embedding=embedding,
                    metadata=self._metadata(episode),
                    text=text,
                )
            ]
        )

    async def index_all(self, episodes: Iterable[Episode], reindex: bool = False) -> int:
        """Index episodes not yet in the backend. Returns the number indexed."""
        await self.initialize()
        episodes = list(episodes)
        if reindex:
            await self._backend.clear()
            existing: set[str] = set()
        else:
            found = await self._backend.fetch([ep.id for ep in episodes])
            existing = {vector.id for vector in found}

        indexed = 0
        for episode in episodes:
            if episode.id in existing:
                continue
            await self.index_episode(episode)
            indexed += 1

        logger.info(f"Indexed {indexed}/{len(episodes)} episodes")
        return indexed

    async def remove(self, episode_ids: list[str]) -> None:
        await self.initialize()
        await self._backend.delete(episode_ids)

    async def sync_utility(self, episodes: Iterable[Episode]) -> int:
        """Refresh stored utility metadata without re-embedding."""
        await self.initialize()
        metadata = {ep.id: self._metadata(ep) for ep in episodes}
        if not metadata:
            return 0
        return await self._backend.update_metadata(metadata)

    @staticmethod
    def _metadata(episode: Episode) -> dict[str, Any]:
        return {
            "project": episode.project,
            "task_type": episode.intent.task_type.value,
            "timestamp": episode.timestamp_start.isoformat(),
            "utility_score": episode.utility.effective_score(),
            "retrieval_count": episode.utility.retrieval_count,
            "helpful_count": episode.utility.helpful_count,
        }

    async def _embed(self, text: str) -> list[float]:
        """Get embedding for text, handling sync/async functions."""
        if self._embedding_function is None:
            raise RuntimeError("No embedding function configured")

        result = self._embedding_function(text)
        if asyncio.iscoroutine(result):
            return await result
        return result
