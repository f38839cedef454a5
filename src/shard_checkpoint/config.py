"""Checkpoint store configuration model."""

import os
from dataclasses import dataclass
from typing import Optional

import yaml

from shard_checkpoint.exceptions import InvalidSequencePositionError
from shard_checkpoint.models import TRIM_HORIZON, SequencePosition

BACKENDS = ("memory", "redis")


@dataclass
class CheckpointConfig:
    """Configuration for a shard checkpoint store."""

    starting_position: str = TRIM_HORIZON
    backend: str = "memory"
    redis_url: str = "redis://localhost:6379"
    key_prefix: str = "shard_checkpoint"
    allow_sentinel_checkpoints: bool = False
    max_connections: int = 10
    connect_retries: int = 5

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        self._validate()

    def _validate(self) -> None:
        """Validate checkpoint configuration."""
        try:
            SequencePosition.parse(self.starting_position)
        except InvalidSequencePositionError as e:
            raise ValueError(f"starting_position is invalid: {e}") from e
        if self.backend not in BACKENDS:
            raise ValueError(f"backend must be one of {', '.join(BACKENDS)}")
        if self.backend == "redis" and not self.redis_url:
            raise ValueError("redis_url is required for the redis backend")
        if not self.key_prefix:
            raise ValueError("key_prefix must not be empty")
        if self.max_connections < 1:
            raise ValueError("max_connections must be >= 1")
        if self.connect_retries < 0:
            raise ValueError("connect_retries must be >= 0")

    @property
    def starting_sequence_position(self) -> SequencePosition:
        """Starting position parsed into a SequencePosition."""
        return SequencePosition.parse(self.starting_position)

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "CheckpointConfig":
        """Create CheckpointConfig from dictionary.

        Args:
            data: Dictionary with checkpoint configuration, or None/empty

        Returns:
            CheckpointConfig instance
        """
        if not data:
            return cls()

        known_fields = {
            "starting_position",
            "backend",
            "redis_url",
            "key_prefix",
            "allow_sentinel_checkpoints",
            "max_connections",
            "connect_retries",
        }
        filtered = {k: v for k, v in data.items() if k in known_fields}
        if "starting_position" in filtered:
            # YAML reads a bare sequence number as an int
            filtered["starting_position"] = str(filtered["starting_position"])
        return cls(**filtered)

    def to_dict(self) -> dict:
        """Convert to dictionary.

        Returns:
            Dictionary representation
        """
        return {
            "starting_position": self.starting_position,
            "backend": self.backend,
            "redis_url": self.redis_url,
            "key_prefix": self.key_prefix,
            "allow_sentinel_checkpoints": self.allow_sentinel_checkpoints,
            "max_connections": self.max_connections,
            "connect_retries": self.connect_retries,
        }


def load_checkpoint_config(config_path: str = "config.yaml") -> CheckpointConfig:
    """Load checkpoint configuration from the "checkpoint" section of a YAML file.

    Args:
        config_path: Path to the YAML configuration file

    Returns:
        CheckpointConfig loaded from the file, or the default config if the
        file or the checkpoint section is missing
    """
    config_data = {}
    if os.path.exists(config_path):
        with open(config_path, "r") as f:
            full_config = yaml.safe_load(f) or {}
            config_data = full_config.get("checkpoint", {})

    return CheckpointConfig.from_dict(config_data)
