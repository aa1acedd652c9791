"""Utility Learning Module.

Maintains how trustworthy each episode is, from sparse feedback:

- calculate_score: Wilson lower bound over retrieval/helpful counters
- DecayEngine: Ages scores of inactive episodes
- PropagationEngine: Bellman-style value spreading across similar episodes
- TemporalCreditAssignment: Rewards episodes that preceded a success
- PruneEngine: Evicts old or useless episodes, never helpful ones
- UtilityPipeline: Decay -> propagation -> temporal credit
"""

from tempera.utility.model import PRIOR_SCORE, calculate_score, confidence_label
from tempera.utility.params import UtilityParams
from tempera.utility.decay import DecayEngine, DecayResult
from tempera.utility.propagation import PropagationEngine, PropagationOutcome
from tempera.utility.temporal import TemporalCreditAssignment, TemporalCreditResult
from tempera.utility.prune import PruneCandidate, PruneEngine, PruneResult
from tempera.utility.pipeline import PropagationResult, UtilityPipeline

__all__ = [
    "PRIOR_SCORE",
    "calculate_score",
    "confidence_label",
    "UtilityParams",
    "DecayEngine",
    "DecayResult",
    "PropagationEngine",
    "PropagationOutcome",
    "TemporalCreditAssignment",
    "TemporalCreditResult",
    "PruneCandidate",
    "PruneEngine",
    "PruneResult",
    "PropagationResult",
    "UtilityPipeline",
]
