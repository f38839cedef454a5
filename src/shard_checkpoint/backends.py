"""Persistence backends for shard checkpoints."""

import json
import logging
import threading
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional

import redis

from shard_checkpoint.connection import RedisConnection
from shard_checkpoint.exceptions import (
    ConcurrencyConflictError,
    InvalidSequencePositionError,
    PersistenceError,
)
from shard_checkpoint.models import SequencePosition, ShardCheckpointRecord

logger = logging.getLogger(__name__)


def verify_lease(shard_id: str, concurrency_token: Optional[str], owner: Optional[str]):
    """Reject a token that does not match the shard's recorded lease.

    A shard with no recorded lease accepts any token.

    Raises:
        ConcurrencyConflictError: If the shard is leased to another token
    """
    if owner is not None and concurrency_token != owner:
        logger.warning(
            f"Rejected stale writer for shard {shard_id}: "
            f"token {concurrency_token!r}, owner {owner!r}"
        )
        raise ConcurrencyConflictError(shard_id, concurrency_token, owner)


class CheckpointBackend(ABC):
    """Abstract storage for checkpoint, flushpoint and lease state.

    Every read-then-write on a shard (lease check, monotonic compare, flush,
    reset) happens inside the backend, atomically with the write, so callers
    in other threads or processes never interleave with it.
    """

    @abstractmethod
    def read(self, shard_id: str) -> ShardCheckpointRecord:
        """Read the current record for a shard.

        Returns:
            ShardCheckpointRecord, with None fields for values never written
        """
        pass

    @abstractmethod
    def write_checkpoint(
        self,
        shard_id: str,
        position: SequencePosition,
        concurrency_token: Optional[str],
    ) -> None:
        """Write a tentative checkpoint without touching the flushpoint."""
        pass

    @abstractmethod
    def commit(
        self,
        shard_id: str,
        position: SequencePosition,
        concurrency_token: Optional[str],
        monotonic: bool = False,
    ) -> bool:
        """Durably record position as both checkpoint and flushpoint.

        Args:
            monotonic: Skip the write unless position is greater than the
                current flushpoint

        Returns:
            True if written, False if skipped by the monotonic check
        """
        pass

    @abstractmethod
    def flush(
        self,
        shard_id: str,
        concurrency_token: Optional[str],
    ) -> Optional[SequencePosition]:
        """Promote the current tentative checkpoint to the flushpoint.

        Returns:
            The flushed position, or None if no checkpoint exists
        """
        pass

    @abstractmethod
    def reset_checkpoint(
        self,
        shard_id: str,
        default: SequencePosition,
    ) -> SequencePosition:
        """Set the checkpoint to the flushpoint, or default if never flushed.

        Returns:
            The position the checkpoint now holds
        """
        pass

    @abstractmethod
    def get_lease_token(self, shard_id: str) -> Optional[str]:
        """Get the concurrency token that currently owns a shard."""
        pass

    @abstractmethod
    def set_lease_token(self, shard_id: str, concurrency_token: str) -> None:
        """Record the concurrency token that owns a shard."""
        pass

    @abstractmethod
    def list_shards(self) -> List[str]:
        """List shard ids that have a checkpoint record."""
        pass

    def close(self):
        """Release backend resources."""
        pass


class InMemoryCheckpointBackend(CheckpointBackend):
    """Everything is stored in memory and there is no fault tolerance.

    Writing and durably committing happen at the same instant, so after a
    commit the checkpoint and flushpoint are always equal. One lock guards
    every shard.
    """

    def __init__(self):
        """Initialize in-memory store."""
        self._checkpoints: Dict[str, SequencePosition] = {}
        self._flushpoints: Dict[str, SequencePosition] = {}
        self._leases: Dict[str, str] = {}
        self._lock = threading.RLock()

    def read(self, shard_id: str) -> ShardCheckpointRecord:
        with self._lock:
            return ShardCheckpointRecord(
                shard_id=shard_id,
                checkpoint=self._checkpoints.get(shard_id),
                flushpoint=self._flushpoints.get(shard_id),
            )

    def write_checkpoint(
        self,
        shard_id: str,
        position: SequencePosition,
        concurrency_token: Optional[str],
    ) -> None:
        with self._lock:
            verify_lease(shard_id, concurrency_token, self._leases.get(shard_id))
            self._checkpoints[shard_id] = position

    def commit(
        self,
        shard_id: str,
        position: SequencePosition,
        concurrency_token: Optional[str],
        monotonic: bool = False,
    ) -> bool:
        with self._lock:
            verify_lease(shard_id, concurrency_token, self._leases.get(shard_id))
            existing = self._flushpoints.get(shard_id)
            if monotonic and existing is not None and existing >= position:
                return False
            self._checkpoints[shard_id] = position
            self._flushpoints[shard_id] = position
            return True

    def flush(
        self,
        shard_id: str,
        concurrency_token: Optional[str],
    ) -> Optional[SequencePosition]:
        with self._lock:
            verify_lease(shard_id, concurrency_token, self._leases.get(shard_id))
            checkpoint = self._checkpoints.get(shard_id)
            if checkpoint is not None:
                self._flushpoints[shard_id] = checkpoint
            return checkpoint

    def reset_checkpoint(
        self,
        shard_id: str,
        default: SequencePosition,
    ) -> SequencePosition:
        with self._lock:
            target = self._flushpoints.get(shard_id, default)
            self._checkpoints[shard_id] = target
            return target

    def get_lease_token(self, shard_id: str) -> Optional[str]:
        with self._lock:
            return self._leases.get(shard_id)

    def set_lease_token(self, shard_id: str, concurrency_token: str) -> None:
        with self._lock:
            self._leases[shard_id] = concurrency_token

    def list_shards(self) -> List[str]:
        with self._lock:
            return sorted(set(self._checkpoints) | set(self._flushpoints))


class RedisCheckpointBackend(CheckpointBackend):
    """Stores shard checkpoints in Redis.

    Layout:
        {prefix}:shard:{shard_id}  hash with "checkpoint" and "flushpoint"
                                   fields, each a JSON-encoded position
        {prefix}:lease:{shard_id}  current concurrency token
        {prefix}:shards            set of shard ids with a record

    Every mutation runs as a redis-py transaction that WATCHes the shard's
    lease key and hash. Reads go through the watched pipeline; if another
    client writes either key before EXEC, the transaction is re-run against
    the new state, so lease checks and comparisons are never made on stale
    data.
    """

    CHECKPOINT_FIELD = "checkpoint"
    FLUSHPOINT_FIELD = "flushpoint"

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        key_prefix: str = "shard_checkpoint",
        max_connections: int = 10,
        connect_retries: int = 5,
    ):
        """Initialize RedisCheckpointBackend.

        Args:
            redis_url: Redis connection URL
            key_prefix: Prefix for every key this backend writes
            max_connections: Maximum connections in pool
            connect_retries: Retry attempts when establishing the connection
        """
        self.key_prefix = key_prefix
        self._connection = RedisConnection(
            redis_url,
            max_connections=max_connections,
            connect_retries=connect_retries,
        )

    @property
    def client(self) -> redis.Redis:
        """Get Redis client."""
        return self._connection.client

    def _shard_key(self, shard_id: str) -> str:
        return f"{self.key_prefix}:shard:{shard_id}"

    def _lease_key(self, shard_id: str) -> str:
        return f"{self.key_prefix}:lease:{shard_id}"

    def _index_key(self) -> str:
        return f"{self.key_prefix}:shards"

    @staticmethod
    def _encode(position: SequencePosition) -> str:
        return json.dumps(position.to_dict())

    @staticmethod
    def _decode(shard_id: str, raw: Optional[str]) -> Optional[SequencePosition]:
        if raw is None:
            return None
        try:
            return SequencePosition.from_dict(json.loads(raw))
        except (json.JSONDecodeError, InvalidSequencePositionError) as e:
            logger.error(f"Corrupt checkpoint value for shard {shard_id}: {raw!r}")
            raise PersistenceError("read", shard_id, e) from e

    def _record(self, shard_id: str, values: dict) -> ShardCheckpointRecord:
        return ShardCheckpointRecord(
            shard_id=shard_id,
            checkpoint=self._decode(shard_id, values.get(self.CHECKPOINT_FIELD)),
            flushpoint=self._decode(shard_id, values.get(self.FLUSHPOINT_FIELD)),
        )

    def read(self, shard_id: str) -> ShardCheckpointRecord:
        try:
            values = self.client.hgetall(self._shard_key(shard_id))
        except redis.RedisError as e:
            logger.error(f"Failed to read checkpoint for shard {shard_id}: {e}")
            raise PersistenceError("read", shard_id, e) from e
        return self._record(shard_id, values)

    def _transact(self, operation: str, shard_id: str, func: Callable):
        """Run func(pipe) in a transaction watching the shard's keys.

        func reads through pipe before calling _stage_write; redis-py re-runs
        it whenever a watched key changes before EXEC.
        """
        try:
            return self.client.transaction(
                func,
                self._lease_key(shard_id),
                self._shard_key(shard_id),
                value_from_callable=True,
            )
        except redis.RedisError as e:
            logger.error(f"Failed to {operation} checkpoint for shard {shard_id}: {e}")
            raise PersistenceError(operation, shard_id, e) from e

    def _verify_watched_lease(self, pipe, shard_id: str, concurrency_token: Optional[str]):
        verify_lease(shard_id, concurrency_token, pipe.get(self._lease_key(shard_id)))

    def _read_watched(self, pipe, shard_id: str) -> ShardCheckpointRecord:
        return self._record(shard_id, pipe.hgetall(self._shard_key(shard_id)))

    def _stage_write(self, pipe, shard_id: str, fields: Dict[str, str]):
        pipe.multi()
        pipe.hset(self._shard_key(shard_id), mapping=fields)
        pipe.sadd(self._index_key(), shard_id)

    def write_checkpoint(
        self,
        shard_id: str,
        position: SequencePosition,
        concurrency_token: Optional[str],
    ) -> None:
        def _write(pipe):
            self._verify_watched_lease(pipe, shard_id, concurrency_token)
            self._stage_write(pipe, shard_id, {self.CHECKPOINT_FIELD: self._encode(position)})

        self._transact("write", shard_id, _write)

    def commit(
        self,
        shard_id: str,
        position: SequencePosition,
        concurrency_token: Optional[str],
        monotonic: bool = False,
    ) -> bool:
        value = self._encode(position)

        def _commit(pipe) -> bool:
            self._verify_watched_lease(pipe, shard_id, concurrency_token)
            if monotonic:
                existing = self._read_watched(pipe, shard_id).flushpoint
                if existing is not None and existing >= position:
                    return False
            self._stage_write(
                pipe,
                shard_id,
                {self.CHECKPOINT_FIELD: value, self.FLUSHPOINT_FIELD: value},
            )
            return True

        return self._transact("commit", shard_id, _commit)

    def flush(
        self,
        shard_id: str,
        concurrency_token: Optional[str],
    ) -> Optional[SequencePosition]:
        def _flush(pipe) -> Optional[SequencePosition]:
            self._verify_watched_lease(pipe, shard_id, concurrency_token)
            checkpoint = self._read_watched(pipe, shard_id).checkpoint
            if checkpoint is not None:
                self._stage_write(
                    pipe, shard_id, {self.FLUSHPOINT_FIELD: self._encode(checkpoint)}
                )
            return checkpoint

        return self._transact("flush", shard_id, _flush)

    def reset_checkpoint(
        self,
        shard_id: str,
        default: SequencePosition,
    ) -> SequencePosition:
        def _reset(pipe) -> SequencePosition:
            flushpoint = self._read_watched(pipe, shard_id).flushpoint
            target = flushpoint if flushpoint is not None else default
            self._stage_write(pipe, shard_id, {self.CHECKPOINT_FIELD: self._encode(target)})
            return target

        return self._transact("reset", shard_id, _reset)

    def get_lease_token(self, shard_id: str) -> Optional[str]:
        try:
            return self.client.get(self._lease_key(shard_id))
        except redis.RedisError as e:
            raise PersistenceError("lease read", shard_id, e) from e

    def set_lease_token(self, shard_id: str, concurrency_token: str) -> None:
        try:
            self.client.set(self._lease_key(shard_id), concurrency_token)
        except redis.RedisError as e:
            raise PersistenceError("lease write", shard_id, e) from e

    def list_shards(self) -> List[str]:
        try:
            return sorted(self.client.smembers(self._index_key()))
        except redis.RedisError as e:
            raise PersistenceError("list", cause=e) from e

    def close(self):
        """Close connection."""
        self._connection.close()
        logger.info("Closed Redis checkpoint backend")
