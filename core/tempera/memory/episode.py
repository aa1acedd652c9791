"""Episode models for utility-learning memory.

An Episode summarizes one past problem-solving session:
- Intent: what was asked (raw prompt, extracted intent, task type, tags)
- Context: what was touched (files, tools, errors)
- Outcome: how it ended (success / partial / failure)
- Utility: how trustworthy the record has proven when retrieved

Episodes are mutated in place by feedback, decay, propagation and
temporal credit; every mutation goes through the EpisodeStore, which
uses ``version`` for compare-and-swap updates.
"""

from __future__ import annotations

from collections import Counter
from datetime import UTC, datetime
from enum import StrEnum
from uuid import uuid4

from pydantic import BaseModel, Field


def _now() -> datetime:
    return datetime.now(UTC)


class OutcomeStatus(StrEnum):
    """Outcome classification for an episode."""

    SUCCESS = "success"
    PARTIAL = "partial"
    FAILURE = "failure"


class TaskType(StrEnum):
    """Task classification for an episode."""

    BUGFIX = "bugfix"
    FEATURE = "feature"
    REFACTOR = "refactor"
    TEST = "test"
    DOCS = "docs"
    RESEARCH = "research"
    DEBUG = "debug"
    SETUP = "setup"
    UNKNOWN = "unknown"


class Intent(BaseModel):
    raw_prompt: str = ""
    extracted_intent: str = ""
    task_type: TaskType = TaskType.UNKNOWN
    domain: list[str] = Field(default_factory=list)


class ErrorRecord(BaseModel):
    error_type: str = ""
    message: str = ""
    resolved: bool = False
    resolution: str | None = None


class EpisodeContext(BaseModel):
    files_read: list[str] = Field(default_factory=list)
    files_modified: list[str] = Field(default_factory=list)
    tools_invoked: list[str] = Field(default_factory=list)
    errors_encountered: list[ErrorRecord] = Field(default_factory=list)


class Utility(BaseModel):
    """Counters and cached score describing how useful an episode has been.

    ``score`` is a memoization target written by feedback, decay,
    propagation and temporal credit. ``None`` means the episode was never
    scored and readers fall back to :meth:`calculate_score`.
    """

    score: float | None = Field(default=None, ge=0.0, le=1.0)
    retrieval_count: int = Field(default=0, ge=0)
    helpful_count: int = Field(default=0, ge=0)

    # Activity timestamp the decay days below were charged against.
    decay_anchor: datetime | None = None
    decay_days: int = 0

    def calculate_score(self) -> float:
        """Wilson lower bound computed live from the counters."""
        from tempera.utility.model import calculate_score

        return calculate_score(self.retrieval_count, self.helpful_count)

    def refresh_score(self) -> float:
        """Cache the live score. It is undecayed, so decay bookkeeping restarts."""
        self.score = self.calculate_score()
        self.decay_anchor = None
        self.decay_days = 0
        return self.score

    def effective_score(self) -> float:
        """Cached score if present, otherwise the live score."""
        if self.score is not None:
            return self.score
        return self.calculate_score()

    @property
    def helpful_ratio(self) -> float:
        return self.helpful_count / max(self.retrieval_count, 1)


class RetrievalRecord(BaseModel):
    """One retrieval event. The last record is the target of feedback."""

    timestamp: datetime = Field(default_factory=_now)
    project: str = ""
    task_description: str = ""
    was_helpful: bool | None = None


class Episode(BaseModel):
    """A single captured session and its learned utility."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    timestamp_start: datetime = Field(default_factory=_now)
    timestamp_end: datetime = Field(default_factory=_now)
    project: str = ""

    intent: Intent = Field(default_factory=Intent)
    context: EpisodeContext = Field(default_factory=EpisodeContext)
    outcome: OutcomeStatus = OutcomeStatus.PARTIAL
    utility: Utility = Field(default_factory=Utility)
    retrieval_history: list[RetrievalRecord] = Field(default_factory=list)

    version: int = 0

    @property
    def short_id(self) -> str:
        return self.id[:8]

    @property
    def title(self) -> str:
        return self.intent.extracted_intent or self.intent.raw_prompt

    def last_activity(self) -> datetime:
        """Later of the end timestamp and the most recent retrieval."""
        if self.retrieval_history:
            return max(self.timestamp_end, self.retrieval_history[-1].timestamp)
        return self.timestamp_end

    def search_text(self) -> str:
        """Query text used to find semantic neighbours of this episode."""
        return " ".join(
            [
                self.intent.raw_prompt,
                " ".join(self.intent.domain),
                self.intent.task_type.value,
            ]
        )

    def embedding_text(self) -> str:
        """Generate the text indexed for this episode."""
        parts = []
        if self.intent.raw_prompt:
            parts.append(self.intent.raw_prompt)
        if self.intent.extracted_intent:
            parts.append(self.intent.extracted_intent)
        parts.append(f"task type: {self.intent.task_type.value}")
        if self.intent.domain:
            parts.append(f"tags: {', '.join(self.intent.domain)}")
        if self.context.files_modified:
            parts.append(f"files: {', '.join(self.context.files_modified)}")
        if self.context.tools_invoked:
            parts.append(f"tools: {', '.join(self.context.tools_invoked)}")
        if self.context.errors_encountered:
            errors = [e.message for e in self.context.errors_encountered]
            parts.append(f"errors: {', '.join(errors)}")
        return " | ".join(parts)

    def matching_text(self) -> str:
        """Lowercased text the token-overlap fallback matches queries against."""
        return " ".join(
            [
                self.intent.raw_prompt,
                self.intent.extracted_intent,
                " ".join(self.intent.domain),
                " ".join(self.context.files_modified),
            ]
        ).lower()

    def overlap_text(self) -> str:
        """Lowercased text used to measure redundancy between two results."""
        return " ".join(
            [
                self.intent.raw_prompt,
                " ".join(self.intent.domain),
                " ".join(self.context.files_modified),
            ]
        ).lower()

    def matches_project(self, project: str | None) -> bool:
        if not project:
            return True
        return project.lower() in self.project.lower()


class ScoredEpisode(BaseModel):
    """An episode ranked for a query. Never persisted."""

    episode: Episode
    similarity_score: float = 0.0
    utility_score: float = 0.0
    combined_score: float = 0.0


class EpisodeStatistics(BaseModel):
    """Statistics about stored episodes."""

    total_episodes: int = 0
    success_count: int = 0
    partial_count: int = 0
    failure_count: int = 0

    total_retrievals: int = 0
    total_helpful: int = 0
    avg_utility: float = 0.0

    projects: list[str] = Field(default_factory=list)
    top_tags: list[tuple[str, int]] = Field(default_factory=list)

    @property
    def success_rate(self) -> float:
        if self.total_episodes == 0:
            return 0.0
        return self.success_count / self.total_episodes

    @property
    def helpful_rate(self) -> float:
        if self.total_retrievals == 0:
            return 0.0
        return self.total_helpful / self.total_retrievals

    @classmethod
    def from_episodes(
        cls,
        episodes: list[Episode],
        project: str | None = None,
        top_tags: int = 10,
    ) -> "EpisodeStatistics":
        """Compute statistics from a list of episodes."""
        episodes = [ep for ep in episodes if ep.matches_project(project)]
        if not episodes:
            return cls()

        by_outcome: Counter[OutcomeStatus] = Counter(ep.outcome for ep in episodes)
        tags: Counter[str] = Counter(tag for ep in episodes for tag in ep.intent.domain)

        n = len(episodes)
        return cls(
            total_episodes=n,
            success_count=by_outcome[OutcomeStatus.SUCCESS],
            partial_count=by_outcome[OutcomeStatus.PARTIAL],
            failure_count=by_outcome[OutcomeStatus.FAILURE],
            total_retrievals=sum(ep.utility.retrieval_count for ep in episodes),
            total_helpful=sum(ep.utility.helpful_count for ep in episodes),
            avg_utility=sum(ep.utility.calculate_score() for ep in episodes) / n,
            projects=sorted({ep.project for ep in episodes}),
            top_tags=tags.most_common(top_tags),
        )
