"""
Feedback Recording

Turns an explicit "this helped" / "this did not help" signal into counter
updates on the episodes that were last retrieved, and keeps an append-only
JSONL log of retrieval and feedback events so that feedback can target
"the last retrieval" without the caller remembering ids.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any

from tempera.memory.episode import Episode
from tempera.memory.store import EpisodeStore, StoreError, update_with_retry

logger = logging.getLogger(__name__)

LAST_RETRIEVAL = "last"
MIN_PREFIX_LENGTH = 8

_HELPFUL = {"helpful", "yes", "y", "1", "good"}
_NOT_HELPFUL = {"not-helpful", "unhelpful", "no", "n", "0", "bad"}
_MIXED = {"mixed", "partial", "skip"}


def parse_feedback_type(text: str) -> bool | None:
    """Parse a feedback keyword.

    Returns True for helpful, False for not helpful and None for mixed.

    Raises:
        ValueError: If the keyword is not recognised.
    """
    value = text.strip().lower()
    if value in _HELPFUL:
        return True
    if value in _NOT_HELPFUL:
        return False
    if value in _MIXED:
        return None
    raise ValueError(
        f"Unknown feedback type: {text!r}. Use 'helpful', 'not-helpful', or 'mixed'."
    )


def feedback_label(helpful: bool | None) -> str:
    if helpful is None:
        return "mixed"
    return "helpful" if helpful else "not-helpful"


class FeedbackEventType(StrEnum):
    """Types of feedback log events."""

    RETRIEVAL = "retrieval"
    FEEDBACK = "feedback"


@dataclass
class FeedbackEvent:
    """One line of the feedback log."""

    event_type: FeedbackEventType
    ids: list[str] = field(default_factory=list)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    query: str | None = None
    feedback: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_type": self.event_type.value,
            "timestamp": self.timestamp.isoformat(),
            "ids": self.ids,
            "query": self.query,
            "feedback": self.feedback,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FeedbackEvent":
        return cls(
            event_type=FeedbackEventType(data["event_type"]),
            ids=list(data.get("ids", [])),
            timestamp=datetime.fromisoformat(data["timestamp"]),
            query=data.get("query"),
            feedback=data.get("feedback"),
        )


class FeedbackLog:
    """Append-only JSONL log of retrievals and feedback.

    A failed write is logged and dropped; it never fails the retrieval or
    feedback that produced it.
    """

    def __init__(self, path: Path | str):
        self.path = Path(path)

    def _append(self, event: FeedbackEvent) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(json.dumps(event.to_dict()) + "\n")
        except OSError as e:
            logger.error(f"Failed to write feedback event to {self.path}: {e}")

    def record_retrieval(self, query: str, ids: list[str]) -> None:
        self._append(FeedbackEvent(event_type=FeedbackEventType.RETRIEVAL, ids=ids, query=query))

    def record_feedback(self, ids: list[str], helpful: bool | None) -> None:
        self._append(
            FeedbackEvent(
                event_type=FeedbackEventType.FEEDBACK,
                ids=ids,
                feedback=feedback_label(helpful),
            )
        )

    def events(self) -> list[FeedbackEvent]:
        """Read every parseable event, oldest first."""
        if not self.path.exists():
            return []

        events = []
        with open(self.path, encoding="utf-8") as f:
            for line_no, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    events.append(FeedbackEvent.from_dict(json.loads(line)))
                except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
                    logger.warning(f"Skipping malformed feedback log line {line_no}: {e}")
        return events

    def last_retrieved_ids(self) -> list[str]:
        """Ids returned by the most recent retrieval, or [] if there was none."""
        for event in reversed(self.events()):
            if event.event_type == FeedbackEventType.RETRIEVAL:
                return event.ids
        return []


@dataclass
class FeedbackResult:
    """Outcome of one feedback submission."""

    helpful: bool | None
    updated: list[str] = field(default_factory=list)
    not_found: list[str] = field(default_factory=list)
    rejected: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "feedback": feedback_label(self.helpful),
            "updated": self.updated,
            "not_found": self.not_found,
            "rejected": self.rejected,
            "errors": self.errors,
        }


class FeedbackRecorder:
    """Applies explicit feedback to retrieved episodes.

    Usage:
        recorder = FeedbackRecorder(store, FeedbackLog(config.feedback_log_path))
        result = await recorder.record("last", parse_feedback_type("helpful"))
    """

    def __init__(self, store: EpisodeStore, feedback_log: FeedbackLog | None = None):
        self._store = store
        self._feedback_log = feedback_log

    async def record(self, ids: list[str] | str, helpful: bool | None) -> FeedbackResult:
        """Record feedback for episodes.

        Args:
            ids: Full ids or unique prefixes of at least eight characters, a
                comma-separated string of them, or ``"last"`` for the ids of
                the most recent retrieval
            helpful: True, False, or None for mixed
        """
        result = FeedbackResult(helpful=helpful)
        requested = self._requested_ids(ids)
        if not requested:
            logger.info("No episodes to provide feedback for")
            return result

        for requested_id in requested:
            episode = await self._resolve(requested_id)
            if episode is None:
                result.not_found.append(requested_id)
                continue
            await self._apply(episode, helpful, result)

        logger.info(
            f"Recorded {feedback_label(helpful)} feedback for {len(result.updated)} episode(s)"
        )
        if self._feedback_log is not None and result.updated:
            self._feedback_log.record_feedback(result.updated, helpful)
        return result

    def _requested_ids(self, ids: list[str] | str) -> list[str]:
        if isinstance(ids, str):
            if ids.strip().lower() == LAST_RETRIEVAL:
                if self._feedback_log is None:
                    return []
                return self._feedback_log.last_retrieved_ids()
            ids = ids.split(",")
        return [i.strip() for i in ids if i.strip()]

    async def _resolve(self, requested_id: str) -> Episode | None:
        episode = await self._store.load(requested_id)
        if episode is not None or len(requested_id) < MIN_PREFIX_LENGTH:
            return episode

        listing = await self._store.list_all()
        matches = [ep for ep in listing if ep.id.startswith(requested_id)]
        if len(matches) > 1:
            logger.warning(f"Episode prefix {requested_id} is ambiguous ({len(matches)} matches)")
            return None
        return matches[0] if matches else None

    async def _apply(self, episode: Episode, helpful: bool | None, result: FeedbackResult) -> None:
        rejected = False

        def mutate(ep: Episode) -> bool:
            nonlocal rejected
            if helpful and ep.utility.helpful_count >= ep.utility.retrieval_count:
                rejected = True
                return False
            if ep.retrieval_history:
                ep.retrieval_history[-1].was_helpful = helpful
            if helpful:
                ep.utility.helpful_count += 1
            ep.utility.refresh_score()
            return True

        try:
            written = await update_with_retry(self._store, episode, mutate)
        except StoreError as e:
            logger.warning(f"Failed to record feedback: {e}")
            result.errors.append(str(e))
            return

        if rejected:
            logger.warning(
                f"Rejected helpful feedback for {episode.short_id}: "
                f"every retrieval is already marked helpful"
            )
            result.rejected.append(episode.id)
        elif written is None:
            result.not_found.append(episode.id)
        else:
            result.updated.append(episode.id)
