"""Data models for shard checkpoint positions."""

import re
from dataclasses import dataclass
from functools import total_ordering
from typing import Optional

from shard_checkpoint.exceptions import InvalidSequencePositionError

# Read from the oldest untrimmed record in the shard
TRIM_HORIZON = "TRIM_HORIZON"
# Read from the current tail of the shard
LATEST = "LATEST"
# Shard is closed and every record in it has been processed
SHARD_END = "SHARD_END"

# Concrete positions rank 0
_SENTINEL_RANK = {
    TRIM_HORIZON: -1,
    LATEST: 1,
    SHARD_END: 2,
}

SEQUENCE_NUMBER_PATTERN = re.compile(r"^\d+$")


@total_ordering
@dataclass(frozen=True)
class SequencePosition:
    """Position of a record within a shard.

    A position is a primary sequence number plus a subsequence number that
    tells apart logical records aggregated into one physical record.
    Positions order by primary number, then subsequence number. The
    TRIM_HORIZON sentinel sorts before every concrete position, LATEST after
    every concrete position, and SHARD_END after everything.
    """

    sequence_number: str
    sub_sequence_number: int = 0

    def __post_init__(self) -> None:
        """Validate and normalise the position."""
        value = self.sequence_number
        if value is None or not str(value).strip():
            raise InvalidSequencePositionError(value, "sequence number must not be empty")

        value = str(value).strip()
        if value.upper() in _SENTINEL_RANK:
            value = value.upper()
            if self.sub_sequence_number:
                raise InvalidSequencePositionError(
                    self.sub_sequence_number,
                    f"{value} cannot carry a subsequence number",
                )
        elif SEQUENCE_NUMBER_PATTERN.match(value):
            # "007" and "7" are the same position
            value = str(int(value))
        else:
            raise InvalidSequencePositionError(value, "sequence number must be numeric")

        if isinstance(self.sub_sequence_number, bool) or not isinstance(
            self.sub_sequence_number, int
        ):
            raise InvalidSequencePositionError(
                self.sub_sequence_number, "subsequence number must be an integer"
            )
        if self.sub_sequence_number < 0:
            raise InvalidSequencePositionError(
                self.sub_sequence_number, "subsequence number must be >= 0"
            )

        object.__setattr__(self, "sequence_number", value)

    @classmethod
    def parse(cls, text: str) -> "SequencePosition":
        """Parse a position from its string form.

        Accepts "100", "100/3" (primary/subsequence) or a sentinel name.

        Args:
            text: String form of the position

        Returns:
            SequencePosition instance

        Raises:
            InvalidSequencePositionError: If text is not a valid position
        """
        if isinstance(text, cls):
            return text
        if text is None or not str(text).strip():
            raise InvalidSequencePositionError(text, "sequence number must not be empty")

        primary, sep, sub = str(text).strip().partition("/")
        if not sep:
            return cls(primary)
        if not SEQUENCE_NUMBER_PATTERN.match(sub):
            raise InvalidSequencePositionError(text, "subsequence number must be numeric")
        return cls(primary, int(sub))

    @classmethod
    def from_dict(cls, data: dict) -> "SequencePosition":
        """Create SequencePosition from its stored dict form."""
        if not isinstance(data, dict) or "sequence_number" not in data:
            raise InvalidSequencePositionError(data, "missing sequence_number")
        return cls(
            sequence_number=data["sequence_number"],
            sub_sequence_number=data.get("sub_sequence_number", 0),
        )

    def to_dict(self) -> dict:
        """Convert to dictionary for storage."""
        return {
            "sequence_number": self.sequence_number,
            "sub_sequence_number": self.sub_sequence_number,
        }

    @property
    def is_sentinel(self) -> bool:
        """True for TRIM_HORIZON, LATEST and SHARD_END."""
        return self.sequence_number in _SENTINEL_RANK

    @property
    def numeric_value(self) -> int:
        """Integer value of the primary sequence number.

        Raises:
            InvalidSequencePositionError: If this position is a sentinel
        """
        if self.is_sentinel:
            raise InvalidSequencePositionError(
                self.sequence_number, "sentinel has no numeric value"
            )
        return int(self.sequence_number)

    def _sort_key(self) -> tuple:
        rank = _SENTINEL_RANK.get(self.sequence_number, 0)
        primary = 0 if rank else int(self.sequence_number)
        return (rank, primary, self.sub_sequence_number)

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, SequencePosition):
            return NotImplemented
        return self._sort_key() < other._sort_key()

    def __str__(self) -> str:
        if self.is_sentinel:
            return self.sequence_number
        return f"{self.sequence_number}/{self.sub_sequence_number}"


TRIM_HORIZON_POSITION = SequencePosition(TRIM_HORIZON)
LATEST_POSITION = SequencePosition(LATEST)
SHARD_END_POSITION = SequencePosition(SHARD_END)


@dataclass(frozen=True)
class ShardCheckpointRecord:
    """Snapshot of one shard's checkpoint state."""

    shard_id: str
    checkpoint: Optional[SequencePosition] = None
    flushpoint: Optional[SequencePosition] = None

    @property
    def has_pending(self) -> bool:
        """True when the tentative checkpoint differs from the flushpoint."""
        return self.checkpoint is not None and self.checkpoint != self.flushpoint

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "shard_id": self.shard_id,
            "checkpoint": self.checkpoint.to_dict() if self.checkpoint else None,
            "flushpoint": self.flushpoint.to_dict() if self.flushpoint else None,
        }
