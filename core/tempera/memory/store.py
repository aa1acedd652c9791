"""Episode Store - per-record persistence with optimistic concurrency.

Every store offers the same narrow contract:
1. ``list_all`` returns every readable episode plus the records it could not parse
2. ``load`` / ``update`` / ``delete`` act on a single record and never raise for
   unknown ids; they return ``None`` / ``False`` instead
3. ``update`` is compare-and-swap on ``Episode.version``

There is no multi-record transaction. Batch jobs write record by record,
so an interrupted run leaves every record valid.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Protocol

from pydantic import ValidationError

from tempera.memory.episode import Episode

logger = logging.getLogger(__name__)


class StoreError(RuntimeError):
    """Raised when a stored record cannot be read or written."""


class VersionConflictError(StoreError):
    """Raised when an update is based on a stale copy of the record."""

    def __init__(self, episode_id: str, expected: int, actual: int) -> None:
        super().__init__(
            f"Episode {episode_id} changed concurrently "
            f"(expected version {expected}, stored version {actual})"
        )
        self.episode_id = episode_id
        self.expected = expected
        self.actual = actual


@dataclass
class RecordError:
    """A persisted record that could not be read."""

    source: str
    message: str


@dataclass
class ListResult:
    """Episodes read by ``list_all`` and the records skipped along the way."""

    episodes: list[Episode] = field(default_factory=list)
    errors: list[RecordError] = field(default_factory=list)

    def __iter__(self):
        return iter(self.episodes)

    def __len__(self) -> int:
        return len(self.episodes)


class EpisodeStore(Protocol):
    """Protocol for episode record stores."""

    async def list_all(self) -> ListResult:
        """List every episode, newest first."""
        ...

    async def load(self, episode_id: str) -> Episode | None:
        """Load one episode by full id."""
        ...

    async def save(self, episode: Episode) -> str:
        """Persist a newly captured episode. Returns its id."""
        ...

    async def update(self, episode: Episode) -> bool:
        """Overwrite an episode if ``episode.version`` is current.

        Returns False if the episode does not exist. Raises
        VersionConflictError if the stored copy moved on and StoreError if
        it cannot be read or written. On success the caller's
        ``episode.version`` is advanced to the stored version.
        """
        ...

    async def delete(self, episode_id: str) -> bool:
        """Delete an episode. Returns False if it does not exist."""
        ...


async def try_update(store: EpisodeStore, episode: Episode, errors: list[str]) -> bool:
    """Update for batch jobs: missing records and store errors are logged
    and appended to ``errors``.

    Returns True only if the record was written.
    """
    try:
        if await store.update(episode):
            return True
        message = f"Episode {episode.short_id} no longer exists"
    except StoreError as e:
        message = str(e)

    logger.warning(message)
    errors.append(message)
    return False


async def update_with_retry(
    store: EpisodeStore,
    episode: Episode,
    mutate: Callable[[Episode], bool],
    attempts: int = 3,
) -> Episode | None:
    """Apply ``mutate`` and write, reloading and re-applying on conflict.

    ``mutate`` returns False to abandon the update. Returns the written
    episode, or None if it was abandoned or no longer exists. Raises the
    last VersionConflictError once ``attempts`` are exhausted; other
    StoreErrors propagate immediately.
    """
    for attempt in range(1, attempts + 1):
        if not mutate(episode):
            return None
        try:
            return episode if await store.update(episode) else None
        except VersionConflictError as e:
            if attempt == attempts:
                raise
            logger.debug(f"{e}; retrying ({attempt}/{attempts})")

        fresh = await store.load(episode.id)
        if fresh is None:
            return None
        episode = fresh
    return None


class InMemoryEpisodeStore:
    """Non-persistent store, mainly for testing.

    Hands out deep copies so callers cannot mutate stored state without
    going through ``update``.
    """

    def __init__(self, episodes: list[Episode] | None = None) -> None:
        self._episodes: dict[str, Episode] = {}
        for episode in episodes or []:
            self._episodes[episode.id] = episode.model_copy(deep=True)

    async def list_all(self) -> ListResult:
        episodes = [ep.model_copy(deep=True) for ep in self._episodes.values()]
        episodes.sort(key=lambda ep: ep.timestamp_start, reverse=True)
        return ListResult(episodes=episodes)

    async def load(self, episode_id: str) -> Episode | None:
        episode = self._episodes.get(episode_id)
        return episode.model_copy(deep=True) if episode else None

    async def save(self, episode: Episode) -> str:
        self._episodes[episode.id] = episode.model_copy(deep=True)
        return episode.id

    async def update(self, episode: Episode) -> bool:
        stored = self._episodes.get(episode.id)
        if stored is None:
            return False
        if stored.version != episode.version:
            raise VersionConflictError(episode.id, episode.version, stored.version)

        episode.version += 1
        self._episodes[episode.id] = episode.model_copy(deep=True)
        return True

    async def delete(self, episode_id: str) -> bool:
        return self._episodes.pop(episode_id, None) is not None


class FileEpisodeStore:
    """JSON-file store, one document per episode.

    Storage layout:
        {base_path}/
          episodes/
            {YYYY-MM-DD}/
              session-{id[:8]}.json

    Writes go to a temporary file that replaces the target, so a reader
    never observes a half-written document.
    """

    def __init__(self, base_path: Path | str) -> None:
        self._base_path = Path(base_path)
        self._episodes_dir = self._base_path / "episodes"
        self._lock = threading.Lock()

    @property
    def episodes_dir(self) -> Path:
        return self._episodes_dir

    def ensure_dirs(self) -> None:
        """Create storage directories if they don't exist."""
        self._episodes_dir.mkdir(parents=True, exist_ok=True)

    def _path_for(self, episode: Episode) -> Path:
        date = episode.timestamp_start.strftime("%Y-%m-%d")
        return self._episodes_dir / date / f"session-{episode.short_id}.json"

    def _find_path(self, episode_id: str) -> Path | None:
        if not self._episodes_dir.exists():
            return None
        for path in self._episodes_dir.glob(f"*/session-{episode_id[:8]}.json"):
            return path
        return None

    def _read(self, path: Path) -> Episode:
        return Episode.model_validate_json(path.read_text(encoding="utf-8"))

    def _write(self, path: Path, episode: Episode) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".tmp-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(episode.model_dump_json(indent=2))
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def _list_all(self) -> ListResult:
        result = ListResult()
        if not self._episodes_dir.exists():
            return result

        for path in sorted(self._episodes_dir.glob("*/session-*.json")):
            try:
                result.episodes.append(self._read(path))
            except (OSError, ValidationError, json.JSONDecodeError) as e:
                logger.warning(f"Skipping unreadable episode file {path}: {e}")
                result.errors.append(RecordError(source=str(path), message=str(e)))

        result.episodes.sort(key=lambda ep: ep.timestamp_start, reverse=True)
        return result

    def _load(self, episode_id: str) -> Episode | None:
        path = self._find_path(episode_id)
        if path is None:
            return None
        try:
            episode = self._read(path)
        except (OSError, ValidationError) as e:
            logger.warning(f"Failed to load episode {episode_id}: {e}")
            return None
        if episode.id != episode_id:
            return None
        return episode

    def _save(self, episode: Episode) -> str:
        self.ensure_dirs()
        with self._lock:
            self._write(self._path_for(episode), episode)
        logger.debug(f"Saved episode {episode.short_id}")
        return episode.id

    def _update(self, episode: Episode) -> bool:
        with self._lock:
            path = self._find_path(episode.id)
            if path is None:
                return False
            try:
                stored = self._read(path)
            except (OSError, ValidationError) as e:
                raise StoreError(f"Episode {episode.short_id} is unreadable: {e}") from e
            if stored.id != episode.id:
                return False
            if stored.version != episode.version:
                raise VersionConflictError(episode.id, episode.version, stored.version)

            candidate = episode.model_copy(update={"version": episode.version + 1})
            try:
                self._write(path, candidate)
            except OSError as e:
                raise StoreError(f"Failed to write episode {episode.short_id}: {e}") from e
            episode.version = candidate.version
        return True

    def _delete(self, episode_id: str) -> bool:
        with self._lock:
            path = self._find_path(episode_id)
            if path is None:
                return False
            try:
                if self._read(path).id != episode_id:
                    return False
            except (OSError, ValidationError) as e:
                logger.warning(f"Deleting unreadable episode file {path}: {e}")
            path.unlink(missing_ok=True)
        logger.debug(f"Deleted episode {episode_id[:8]}")
        return True

    async def list_all(self) -> ListResult:
        return await asyncio.to_thread(self._list_all)

    async def load(self, episode_id: str) -> Episode | None:
        return await asyncio.to_thread(self._load, episode_id)

    async def save(self, episode: Episode) -> str:
        return await asyncio.to_thread(self._save, episode)

    async def update(self, episode: Episode) -> bool:
        return await asyncio.to_thread(self._update, episode)

    async def delete(self, episode_id: str) -> bool:
        return await asyncio.to_thread(self._delete, episode_id)
