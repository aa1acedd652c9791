"""Episodic Memory Module.

This module provides the records the utility-learning core operates on:

- Episode: One summarized problem-solving session with its utility counters
- EpisodeStore: Per-record persistence with compare-and-swap updates
- EpisodeIndex: Similarity oracle over a pluggable VectorBackend
- VectorBackend: Pluggable backend (InMemory default, ChromaDB optional)
"""

from tempera.memory.episode import (
    Episode,
    EpisodeContext,
    EpisodeStatistics,
    ErrorRecord,
    Intent,
    OutcomeStatus,
    RetrievalRecord,
    ScoredEpisode,
    TaskType,
    Utility,
)
from tempera.memory.store import (
    EpisodeStore,
    FileEpisodeStore,
    InMemoryEpisodeStore,
    ListResult,
    RecordError,
    StoreError,
    VersionConflictError,
    try_update,
    update_with_retry,
)
from tempera.memory.backend import ChromaDBBackend, EpisodeVector, InMemoryBackend, VectorBackend
from tempera.memory.index import EpisodeIndex, SearchHit, SimilarityOracle

__all__ = [
    "Episode",
    "EpisodeContext",
    "EpisodeStatistics",
    "ErrorRecord",
    "Intent",
    "OutcomeStatus",
    "RetrievalRecord",
    "ScoredEpisode",
    "TaskType",
    "Utility",
    "EpisodeStore",
    "FileEpisodeStore",
    "InMemoryEpisodeStore",
    "ListResult",
    "RecordError",
    "StoreError",
    "VersionConflictError",
    "try_update",
    "update_with_retry",
    "VectorBackend",
    "EpisodeVector",
    "ChromaDBBackend",
    "InMemoryBackend",
    "EpisodeIndex",
    "SearchHit",
    "SimilarityOracle",
]
