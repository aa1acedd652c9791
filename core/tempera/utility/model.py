"""Utility model: how trustworthy is an episode, given its counters.

The score is the lower bound of the Wilson score interval for the
helpful ratio. Few observations pull the score toward 0.5 even when
every retrieval was marked helpful, and the bound never exceeds the raw
ratio, so a single enthusiastic vote cannot dominate ranking.
"""

from __future__ import annotations

import math

PRIOR_SCORE = 0.5
Z_95 = 1.96


def calculate_score(retrieval_count: int, helpful_count: int, z: float = Z_95) -> float:
    """Wilson lower bound of ``helpful_count / retrieval_count``.

    Returns ``PRIOR_SCORE`` for episodes that were never retrieved.
    Helpful counts above the retrieval count are treated as 100% helpful.
    """
    n = retrieval_count
    if n <= 0:
        return PRIOR_SCORE

    p = min(helpful_count, n) / n
    z2 = z * z

    centre = p + z2 / (2 * n)
    margin = z * math.sqrt((p * (1 - p) + z2 / (4 * n)) / n)
    score = (centre - margin) / (1 + z2 / n)

    return min(max(score, 0.0), 1.0)


def confidence_label(retrieval_count: int) -> str:
    """Human-readable confidence in a score, by sample size."""
    if retrieval_count <= 0:
        return "untested"
    if retrieval_count <= 2:
        return "low confidence"
    if retrieval_count <= 5:
        return "moderate confidence"
    return "high confidence"
