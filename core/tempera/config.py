"""
Tempera Configuration Models

Defines the configuration structure for the utility-learning core:
- Retrieval settings (result limit, utility weight, similarity floor)
- Bellman settings (discount, learning rate, decay, propagation threshold)
- Storage settings (pruning thresholds)

Configuration is read from ``$TEMPERA_HOME/config.toml`` (default
``~/.tempera/config.toml``). A missing file means defaults; missing keys
fall back to their defaults.
"""

import logging
import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

HOME_ENV_VAR = "TEMPERA_HOME"
CONFIG_FILENAME = "config.toml"


def default_data_dir() -> Path:
    """Data directory, overridable through ``TEMPERA_HOME``."""
    env = os.environ.get(HOME_ENV_VAR)
    if env:
        return Path(env).expanduser()
    return Path.home() / ".tempera"


@dataclass
class RetrievalConfig:
    """Ranking settings for retrieval."""

    default_limit: int = 3
    utility_weight: float = 0.7
    min_similarity: float = 0.5

    def __post_init__(self) -> None:
        if self.default_limit < 1:
            raise ValueError(f"default_limit must be >= 1, got {self.default_limit}")
        if not 0.0 <= self.utility_weight <= 1.0:
            raise ValueError(f"utility_weight must be within [0, 1], got {self.utility_weight}")
        if not 0.0 <= self.min_similarity <= 1.0:
            raise ValueError(f"min_similarity must be within [0, 1], got {self.min_similarity}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "default_limit": self.default_limit,
            "utility_weight": self.utility_weight,
            "min_similarity": self.min_similarity,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RetrievalConfig":
        return cls(
            default_limit=data.get("default_limit", 3),
            utility_weight=data.get("utility_weight", 0.7),
            min_similarity=data.get("min_similarity", 0.5),
        )


@dataclass
class BellmanConfig:
    """Utility learning settings. Validated when turned into UtilityParams."""

    gamma: float = 0.9
    alpha: float = 0.1
    decay_rate: float = 0.01
    propagation_threshold: float = 0.5
    max_propagation_depth: int = 2
    propagate_interval: str = "daily"

    def to_dict(self) -> dict[str, Any]:
        return {
            "gamma": self.gamma,
            "alpha": self.alpha,
            "decay_rate": self.decay_rate,
            "propagation_threshold": self.propagation_threshold,
            "max_propagation_depth": self.max_propagation_depth,
            "propagate_interval": self.propagate_interval,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BellmanConfig":
        return cls(
            gamma=data.get("gamma", 0.9),
            alpha=data.get("alpha", 0.1),
            decay_rate=data.get("decay_rate", 0.01),
            propagation_threshold=data.get("propagation_threshold", 0.5),
            max_propagation_depth=data.get("max_propagation_depth", 2),
            propagate_interval=data.get("propagate_interval", "daily"),
        )


@dataclass
class StorageConfig:
    """Pruning thresholds."""

    max_age_days: int = 180
    min_utility_threshold: float = 0.05
    min_retrievals: int = 2

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_age_days": self.max_age_days,
            "min_utility_threshold": self.min_utility_threshold,
            "min_retrievals": self.min_retrievals,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StorageConfig":
        return cls(
            max_age_days=data.get("max_age_days", 180),
            min_utility_threshold=data.get("min_utility_threshold", 0.05),
            min_retrievals=data.get("min_retrievals", 2),
        )


@dataclass
class TemperaConfig:
    """Complete configuration for the utility-learning core."""

    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)
    bellman: BellmanConfig = field(default_factory=BellmanConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    data_dir: Path = field(default_factory=default_data_dir)

    @property
    def feedback_log_path(self) -> Path:
        return self.data_dir / "feedback.jsonl"

    @property
    def index_dir(self) -> Path:
        return self.data_dir / "index"

    def to_dict(self) -> dict[str, Any]:
        return {
            "retrieval": self.retrieval.to_dict(),
            "bellman": self.bellman.to_dict(),
            "storage": self.storage.to_dict(),
            "data_dir": str(self.data_dir),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], data_dir: Path | None = None) -> "TemperaConfig":
        return cls(
            retrieval=RetrievalConfig.from_dict(data.get("retrieval", {})),
            bellman=BellmanConfig.from_dict(data.get("bellman", {})),
            storage=StorageConfig.from_dict(data.get("storage", {})),
            data_dir=data_dir or Path(data.get("data_dir") or default_data_dir()),
        )

    @classmethod
    def load(cls, path: Path | str | None = None) -> "TemperaConfig":
        """Load configuration, falling back to defaults if the file is missing.

        Raises:
            ValueError: If the file exists but is not valid configuration.
        """
        config_path = Path(path) if path else default_data_dir() / CONFIG_FILENAME
        if not config_path.exists():
            logger.debug(f"No config at {config_path}, using defaults")
            return cls()

        try:
            with open(config_path, "rb") as f:
                data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ValueError(f"Failed to parse {config_path}: {e}") from e

        logger.info(f"Loaded configuration from {config_path}")
        return cls.from_dict(data)
