"""Shard checkpoint exception classes."""

from typing import Optional


class CheckpointError(Exception):
    """Base exception for checkpoint tracking errors."""
    pass


class ValidationError(CheckpointError):
    """Raised when a shard id or position fails validation."""
    pass


class InvalidSequencePositionError(ValidationError):
    """Raised when a value cannot be used as a sequence position."""
    def __init__(self, value, reason: str = "invalid sequence position"):
        self.value = value
        self.reason = reason
        super().__init__(f"{reason}: {value!r}")


class ConcurrencyConflictError(CheckpointError):
    """Raised when a caller's concurrency token no longer owns the shard."""
    def __init__(self, shard_id: str, token: Optional[str], owner: Optional[str] = None):
        self.shard_id = shard_id
        self.token = token
        self.owner = owner
        msg = f"Concurrency token {token!r} does not own shard {shard_id}"
        if owner:
            msg += f" (current owner: {owner})"
        super().__init__(msg)


class PersistenceError(CheckpointError):
    """Raised when the backing store fails to record or read a checkpoint."""
    def __init__(
        self,
        operation: str,
        shard_id: Optional[str] = None,
        cause: Optional[Exception] = None,
    ):
        self.operation = operation
        self.shard_id = shard_id
        self.cause = cause
        msg = f"Checkpoint {operation} failed"
        if shard_id:
            msg += f" for shard {shard_id}"
        if cause:
            msg += f": {cause}"
        super().__init__(msg)
