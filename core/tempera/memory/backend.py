"""Vector storage behind the episode index.

A backend keeps one EpisodeVector per episode: the embedding of its text
plus the metadata the index filters on and reports. Searches come back as
SearchHits whose similarity is already clamped to [0, 1], whatever the
backend measures internally.

- VectorBackend: Protocol the EpisodeIndex talks to
- InMemoryBackend: Cosine similarity over a dict, the default and test backend
- ChromaDBBackend: Persistent local index (optional ``chromadb`` extra)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SearchHit:
    id: str
    similarity: float


@dataclass
class EpisodeVector:
    """One indexed episode."""

    id: str
    embedding: list[float]
    metadata: dict[str, Any] = field(default_factory=dict)
    text: str = ""


def clamp_similarity(value: float) -> float:
    return min(max(float(value), 0.0), 1.0)


def cosine_similarity(a: list[float], b: list[float]) -> float:
    """Cosine of two vectors; 0.0 for mismatched lengths or zero vectors."""
    if len(a) != len(b):
        return 0.0

    dot = sum(x * y for x, y in zip(a, b))
    norm_a = sum(x * x for x in a) ** 0.5
    norm_b = sum(x * x for x in b) ** 0.5
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


class VectorBackend(Protocol):
    """Protocol for episode vector storage."""

    async def initialize(self) -> None:
        """Open or create the underlying storage."""
        ...

    async def upsert(self, vectors: list[EpisodeVector]) -> None:
        """Insert or replace vectors by episode id."""
        ...

    async def search(
        self,
        embedding: list[float],
        k: int,
        project: str | None = None,
    ) -> list[SearchHit]:
        """Up to ``k`` hits, most similar first, optionally for one project."""
        ...

    async def fetch(self, ids: list[str]) -> list[EpisodeVector]:
        """Stored vectors for the ids that are indexed; unknown ids are skipped."""
        ...

    async def update_metadata(self, metadata: dict[str, dict[str, Any]]) -> int:
        """Replace metadata of indexed episodes. Returns how many were updated."""
        ...

    async def delete(self, ids: list[str]) -> None:
        ...

    async def count(self) -> int:
        ...

    async def clear(self) -> None:
        ...


class InMemoryBackend:
    """Non-persistent backend ranking by cosine similarity."""

    def __init__(self) -> None:
        self._vectors: dict[str, EpisodeVector] = {}

    async def initialize(self) -> None:
        pass

    async def upsert(self, vectors: list[EpisodeVector]) -> None:
        for vector in vectors:
            self._vectors[vector.id] = vector

    async def search(
        self,
        embedding: list[float],
        k: int,
        project: str | None = None,
    ) -> list[SearchHit]:
        hits = [
            SearchHit(
                id=vector.id,
                similarity=clamp_similarity(cosine_similarity(embedding, vector.embedding)),
            )
            for vector in self._vectors.values()
            if project is None or vector.metadata.get("project") == project
        ]
        hits.sort(key=lambda hit: hit.similarity, reverse=True)
        return hits[:k]

    async def fetch(self, ids: list[str]) -> list[EpisodeVector]:
        return [self._vectors[id_] for id_ in ids if id_ in self._vectors]

    async def update_metadata(self, metadata: dict[str, dict[str, Any]]) -> int:
        updated = 0
        for id_, values in metadata.items():
            vector = self._vectors.get(id_)
            if vector is None:
                continue
            vector.metadata = dict(values)
            updated += 1
        return updated

    async def delete(self, ids: list[str]) -> None:
        for id_ in ids:
            self._vectors.pop(id_, None)

    async def count(self) -> int:
        return len(self._vectors)

    async def clear(self) -> None:
        self._vectors.clear()


class ChromaDBBackend:
    """Episode index persisted with ChromaDB.

    The collection measures cosine distance, so similarity is
    ``1 - distance``. Requires: pip install tempera[chromadb]
    """

    def __init__(
        self,
        persist_directory: Path | str,
        collection_name: str = "episodes",
    ) -> None:
        self._persist_directory = Path(persist_directory)
        self._collection_name = collection_name
        self._collection: Any = None

    async def initialize(self) -> None:
        if self._collection is not None:
            return
        try:
            import chromadb
        except ImportError as e:
            raise RuntimeError(
                "ChromaDB not installed. Install with: pip install tempera[chromadb]"
            ) from e

        self._persist_directory.mkdir(parents=True, exist_ok=True)
        client = chromadb.PersistentClient(path=str(self._persist_directory))
        self._collection = client.get_or_create_collection(
            name=self._collection_name,
            metadata={"hnsw:space": "cosine"},
        )
        logger.info(
            f"Episode index opened at {self._persist_directory} "
            f"({self._collection.count()} episodes)"
        )

    async def _ready(self) -> Any:
        await self.initialize()
        return self._collection

    async def upsert(self, vectors: list[EpisodeVector]) -> None:
        if not vectors:
            return
        collection = await self._ready()
        collection.upsert(
            ids=[v.id for v in vectors],
            embeddings=[v.embedding for v in vectors],
            metadatas=[v.metadata for v in vectors],
            documents=[v.text for v in vectors],
        )

    async def search(
        self,
        embedding: list[float],
        k: int,
        project: str | None = None,
    ) -> list[SearchHit]:
        collection = await self._ready()
        n_results = min(k, collection.count())
        if n_results <= 0:
            return []

        results = collection.query(
            query_embeddings=[embedding],
            n_results=n_results,
            where={"project": project} if project else None,
            include=["distances"],
        )
        ids = results["ids"][0]
        distances = results["distances"][0]
        return [
            SearchHit(id=id_, similarity=clamp_similarity(1.0 - distance))
            for id_, distance in zip(ids, distances)
        ]

    async def fetch(self, ids: list[str]) -> list[EpisodeVector]:
        if not ids:
            return []
        collection = await self._ready()
        results = collection.get(ids=ids, include=["embeddings", "metadatas", "documents"])

        embeddings = results.get("embeddings")
        if embeddings is None:
            embeddings = []
        metadatas = results.get("metadatas") or []
        documents = results.get("documents") or []

        vectors = []
        for i, id_ in enumerate(results["ids"]):
            vectors.append(
                EpisodeVector(
                    id=id_,
                    embedding=[float(x) for x in embeddings[i]] if i < len(embeddings) else [],
                    metadata=dict(metadatas[i] or {}) if i < len(metadatas) else {},
                    text=(documents[i] or "") if i < len(documents) else "",
                )
            )
        return vectors

    async def update_metadata(self, metadata: dict[str, dict[str, Any]]) -> int:
        if not metadata:
            return 0
        collection = await self._ready()
        present = collection.get(ids=list(metadata), include=["metadatas"])["ids"]
        if present:
            collection.update(ids=present, metadatas=[metadata[id_] for id_ in present])
        return len(present)

    async def delete(self, ids: list[str]) -> None:
        if ids:
            (await self._ready()).delete(ids=ids)

    async def count(self) -> int:
        return (await self._ready()).count()

    async def clear(self) -> None:
        collection = await self._ready()
        ids = collection.get(include=["metadatas"])["ids"]
        if ids:
            collection.delete(ids=ids)
