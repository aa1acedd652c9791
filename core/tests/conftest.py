"""
Shared fixtures for core tests.

This module provides reusable pytest fixtures to reduce
code duplication in test files.
"""

from datetime import UTC, datetime
from pathlib import Path
from typing import Callable

import pytest

from tempera.memory.episode import Episode, Intent, TaskType
from tempera.memory.store import FileEpisodeStore

VOCABULARY = [
    "login",
    "auth",
    "token",
    "session",
    "database",
    "migration",
    "schema",
    "cache",
    "deploy",
]


@pytest.fixture
def now() -> datetime:
    """Fixed reference time for clock-dependent engines."""
    return datetime(2026, 6, 1, 12, 0, tzinfo=UTC)


@pytest.fixture
def file_store(tmp_path: Path) -> FileEpisodeStore:
    """Create a FileEpisodeStore rooted in a temporary directory."""
    store = FileEpisodeStore(tmp_path)
    store.ensure_dirs()
    return store


@pytest.fixture
def keyword_embedding() -> Callable[[str], list[float]]:
    """Deterministic bag-of-keywords embedding over a small vocabulary."""

    def _embed(text: str) -> list[float]:
        lowered = text.lower()
        return [1.0 if word in lowered else 0.0 for word in VOCABULARY]

    return _embed


@pytest.fixture
def make_episode(now: datetime) -> Callable[..., Episode]:
    """
    Factory fixture for episodes captured at the reference time.

    Returns:
        A function that takes (prompt, project, tags, task_type, **fields)
        and returns an Episode.
    """

    def _make_episode(
        prompt: str,
        project: str = "web-app",
        tags: list[str] | None = None,
        task_type: TaskType = TaskType.UNKNOWN,
        **fields,
    ) -> Episode:
        fields.setdefault("timestamp_start", now)
        fields.setdefault("timestamp_end", now)
        return Episode(
            intent=Intent(raw_prompt=prompt, task_type=task_type, domain=tags or []),
            project=project,
            **fields,
        )

    return _make_episode
