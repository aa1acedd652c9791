"""Parameters for utility learning."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from tempera.config import TemperaConfig


@dataclass(frozen=True)
class UtilityParams:
    """Immutable per-run learning parameters.

    Attributes:
        decay_rate: Fractional utility decay per inactive day.
        discount_factor: Gamma, weight of a neighbour's value when propagating.
        learning_rate: Alpha, fraction of the TD error applied per update.
        propagation_threshold: Minimum similarity for value to flow.
        max_propagation_depth: Declared hop bound. Propagation is single-hop.
    """

    decay_rate: float = 0.01
    discount_factor: float = 0.9
    learning_rate: float = 0.1
    propagation_threshold: float = 0.5
    max_propagation_depth: int = 2

    def __post_init__(self) -> None:
        for name in ("decay_rate", "discount_factor", "learning_rate", "propagation_threshold"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must be within [0, 1], got {value}")
        if self.max_propagation_depth < 1:
            raise ValueError(
                f"max_propagation_depth must be >= 1, got {self.max_propagation_depth}"
            )

    def to_dict(self) -> dict[str, Any]:
        return {
            "decay_rate": self.decay_rate,
            "discount_factor": self.discount_factor,
            "learning_rate": self.learning_rate,
            "propagation_threshold": self.propagation_threshold,
            "max_propagation_depth": self.max_propagation_depth,
        }

    @classmethod
    def from_config(cls, config: "TemperaConfig") -> "UtilityParams":
        bellman = config.bellman
        return cls(
            decay_rate=bellman.decay_rate,
            discount_factor=bellman.gamma,
            learning_rate=bellman.alpha,
            propagation_threshold=bellman.propagation_threshold,
            max_propagation_depth=bellman.max_propagation_depth,
        )
