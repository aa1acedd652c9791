"""Retrieval Module.

Ranks episodes for a query and closes the loop with explicit feedback:

- RetrievalRanker: Similarity x utility ranking with MMR diversity
- FeedbackRecorder: Applies helpful / not-helpful signals to episodes
- FeedbackLog: JSONL log of retrievals and feedback
"""

from tempera.retrieval.feedback import (
    FeedbackEvent,
    FeedbackEventType,
    FeedbackLog,
    FeedbackRecorder,
    FeedbackResult,
    parse_feedback_type,
)
from tempera.retrieval.ranker import (
    MMR_LAMBDA,
    RetrievalRanker,
    RetrievalResult,
    apply_mmr,
    overlap_similarity,
    text_similarity,
)

__all__ = [
    "FeedbackEvent",
    "FeedbackEventType",
    "FeedbackLog",
    "FeedbackRecorder",
    "FeedbackResult",
    "parse_feedback_type",
    "MMR_LAMBDA",
    "RetrievalRanker",
    "RetrievalResult",
    "apply_mmr",
    "overlap_similarity",
    "text_similarity",
]
