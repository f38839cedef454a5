"""Shard checkpoint store.

Tracks, per shard, the tentative checkpoint a worker has reported and the
flushpoint that has been durably committed. Workers resume from these
positions after a restart, a failover or a retried batch.
"""

import logging
import uuid
from typing import Dict, List, Optional, Union

from shard_checkpoint.backends import (
    CheckpointBackend,
    InMemoryCheckpointBackend,
    RedisCheckpointBackend,
)
from shard_checkpoint.config import CheckpointConfig
from shard_checkpoint.exceptions import ValidationError
from shard_checkpoint.models import (
    LATEST,
    TRIM_HORIZON,
    SequencePosition,
    ShardCheckpointRecord,
)

logger = logging.getLogger(__name__)

# Read positions that are not data; checkpointing them needs explicit opt-in
READ_ONLY_SENTINELS = frozenset({TRIM_HORIZON, LATEST})


def verify_not_empty(value: Optional[str], message: str):
    """Check that a string is neither None nor empty.

    Raises:
        ValidationError: If value is None or empty
    """
    if value is None or value == "":
        raise ValidationError(message)


class CheckpointStore:
    """Checkpoint and flushpoint bookkeeping for stream shards.

    The store keeps no per-shard state of its own. Each operation is a single
    backend call, and the backend makes it atomic for that shard, so several
    stores (threads or processes) can share one backend.
    """

    def __init__(
        self,
        starting_position: Union[SequencePosition, str],
        backend: Optional[CheckpointBackend] = None,
        allow_sentinel_checkpoints: bool = False,
    ):
        """Initialize CheckpointStore.

        Args:
            starting_position: Position every never-checkpointed shard
                resumes from, e.g. "TRIM_HORIZON" or "LATEST"
            backend: Persistence backend (defaults to in-memory)
            allow_sentinel_checkpoints: Accept TRIM_HORIZON and LATEST as
                checkpoint values
        """
        self.starting_position = SequencePosition.parse(starting_position)
        self.allow_sentinel_checkpoints = allow_sentinel_checkpoints
        self._backend = backend if backend is not None else InMemoryCheckpointBackend()

    @property
    def backend(self) -> CheckpointBackend:
        """Get persistence backend."""
        return self._backend

    def _validate_position(self, position: SequencePosition):
        if not isinstance(position, SequencePosition):
            raise ValidationError(
                f"position must be a SequencePosition, got {type(position).__name__}"
            )
        if (
            position.sequence_number in READ_ONLY_SENTINELS
            and not self.allow_sentinel_checkpoints
        ):
            raise ValidationError(
                f"{position.sequence_number} is a read position and cannot be checkpointed"
            )

    def get_last_checkpoint(self, shard_id: str) -> SequencePosition:
        """Get the tentative checkpoint, falling back to the starting position."""
        checkpoint = self._backend.read(shard_id).checkpoint
        if checkpoint is None:
            checkpoint = self.starting_position
        logger.debug(f"Last checkpoint for shard {shard_id}: {checkpoint}")
        return checkpoint

    def get_last_flushpoint(self, shard_id: str) -> Optional[SequencePosition]:
        """Get the flushpoint as stored, None if never flushed."""
        flushpoint = self._backend.read(shard_id).flushpoint
        logger.debug(f"Last flushpoint for shard {shard_id}: {flushpoint}")
        return flushpoint

    def set_checkpoint(
        self,
        shard_id: str,
        position: SequencePosition,
        concurrency_token: Optional[str],
        monotonic: bool = False,
    ) -> bool:
        """Record a position as both checkpoint and flushpoint.

        Args:
            shard_id: Shard identifier
            position: Last processed position
            concurrency_token: Caller's lease token for the shard
            monotonic: Only save if greater than the current flushpoint

        Returns:
            True if saved, False if skipped (monotonic check failed)

        Raises:
            ValidationError: If shard_id or position is invalid
            ConcurrencyConflictError: If the token does not own the shard
            PersistenceError: If the backend fails to commit
        """
        verify_not_empty(shard_id, "shard_id must not be empty")
        self._validate_position(position)

        if not self._backend.commit(shard_id, position, concurrency_token, monotonic=monotonic):
            logger.debug(
                f"Skipping checkpoint {position} for shard {shard_id} - "
                f"not greater than existing flushpoint"
            )
            return False

        logger.debug(f"Checkpointed shard {shard_id} at {position}")
        return True

    def get_checkpoint(self, shard_id: str) -> Optional[SequencePosition]:
        """Get the durably committed position for a shard.

        Returns:
            The flushpoint, or None if the shard was never checkpointed

        Raises:
            ValidationError: If shard_id is empty
        """
        verify_not_empty(shard_id, "shard_id must not be empty")
        checkpoint = self._backend.read(shard_id).flushpoint
        logger.debug(f"Committed checkpoint for shard {shard_id}: {checkpoint}")
        return checkpoint

    def reset_checkpoint_to_last_flushpoint(self, shard_id: str):
        """Roll the tentative checkpoint back to the last flushpoint.

        Falls back to the starting position when the shard was never
        flushed. The flushpoint itself is left untouched.

        Raises:
            ValidationError: If shard_id is empty
            PersistenceError: If the backend fails to write
        """
        verify_not_empty(shard_id, "shard_id must not be empty")
        checkpoint = self._backend.reset_checkpoint(shard_id, self.starting_position)
        logger.debug(f"Reset checkpoint for shard {shard_id} to {checkpoint}")

    def get_greatest_primary_flushpoint(self, shard_id: str) -> Optional[SequencePosition]:
        """Get the greatest flushpoint recorded for a shard.

        With a single writer this is the stored flushpoint.
        """
        verify_not_empty(shard_id, "shard_id must not be empty")
        greatest_flushpoint = self.get_last_flushpoint(shard_id)
        logger.debug(f"Greatest flushpoint for shard {shard_id}: {greatest_flushpoint}")
        return greatest_flushpoint

    def get_restart_point(self, shard_id: str) -> SequencePosition:
        """Get the position a restarting worker should read from.

        This is the last tentative checkpoint if one exists, otherwise the
        starting position. It may be ahead of the flushpoint, so a worker
        can reprocess records that were never made durable, but never skips
        any.
        """
        verify_not_empty(shard_id, "shard_id must not be empty")
        restart_point = self.get_last_checkpoint(shard_id)
        logger.debug(f"Restart point for shard {shard_id}: {restart_point}")
        return restart_point

    def prepare_checkpoint(
        self,
        shard_id: str,
        position: SequencePosition,
        concurrency_token: Optional[str],
    ):
        """Record a tentative checkpoint without flushing it.

        Raises:
            ValidationError: If shard_id or position is invalid
            ConcurrencyConflictError: If the token does not own the shard
            PersistenceError: If the backend fails to write
        """
        verify_not_empty(shard_id, "shard_id must not be empty")
        self._validate_position(position)
        self._backend.write_checkpoint(shard_id, position, concurrency_token)
        logger.debug(f"Tentative checkpoint for shard {shard_id} at {position}")

    def flush(
        self,
        shard_id: str,
        concurrency_token: Optional[str],
    ) -> Optional[SequencePosition]:
        """Commit the current tentative checkpoint as the flushpoint.

        Returns:
            The flushed position, or None if there is no checkpoint to flush

        Raises:
            ValidationError: If shard_id is empty
            ConcurrencyConflictError: If the token does not own the shard
            PersistenceError: If the backend fails to commit
        """
        verify_not_empty(shard_id, "shard_id must not be empty")
        checkpoint = self._backend.flush(shard_id, concurrency_token)
        if checkpoint is None:
            logger.debug(f"Nothing to flush for shard {shard_id}")
            return None
        logger.debug(f"Flushed shard {shard_id} at {checkpoint}")
        return checkpoint

    def assign_lease(self, shard_id: str, concurrency_token: Optional[str] = None) -> str:
        """Record the caller that now owns a shard.

        Called by the lease manager on hand-off. Writes carrying any other
        token are rejected from then on.

        Args:
            shard_id: Shard identifier
            concurrency_token: Token for the new owner (generated if omitted)

        Returns:
            The concurrency token now owning the shard
        """
        verify_not_empty(shard_id, "shard_id must not be empty")
        token = concurrency_token or uuid.uuid4().hex
        self._backend.set_lease_token(shard_id, token)
        logger.info(f"Assigned lease for shard {shard_id} to token {token}")
        return token

    def get_lease_owner(self, shard_id: str) -> Optional[str]:
        """Get the concurrency token that owns a shard, None if unleased."""
        verify_not_empty(shard_id, "shard_id must not be empty")
        return self._backend.get_lease_token(shard_id)

    def list_shards(self) -> List[str]:
        """List every shard that has a checkpoint record."""
        return self._backend.list_shards()

    def get_all_checkpoints(self) -> Dict[str, ShardCheckpointRecord]:
        """Get a snapshot of every shard's record."""
        return {
            shard_id: self._backend.read(shard_id)
            for shard_id in self._backend.list_shards()
        }

    def close(self):
        """Close the backend."""
        self._backend.close()

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()


def create_checkpoint_store(config: Optional[CheckpointConfig] = None) -> CheckpointStore:
    """Build a CheckpointStore and its backend from configuration.

    Args:
        config: Checkpoint configuration (defaults to in-memory TRIM_HORIZON)

    Returns:
        CheckpointStore instance
    """
    config = config or CheckpointConfig()

    if config.backend == "redis":
        backend = RedisCheckpointBackend(
            redis_url=config.redis_url,
            key_prefix=config.key_prefix,
            max_connections=config.max_connections,
            connect_retries=config.connect_retries,
        )
    else:
        backend = InMemoryCheckpointBackend()

    logger.info(
        f"Created {config.backend} checkpoint store starting at {config.starting_position}"
    )
    return CheckpointStore(
        starting_position=config.starting_sequence_position,
        backend=backend,
        allow_sentinel_checkpoints=config.allow_sentinel_checkpoints,
    )
