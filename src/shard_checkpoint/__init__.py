# Shard Checkpoint Tracking
#
# Records how far stream workers have processed each shard so they can
# resume after a restart, a failover or a retried batch.
#
# Key features:
# - Tentative checkpoints and durably committed flushpoints per shard
# - Restart points that fall back to a configured starting position
# - Lease tokens that reject writes from stale workers
# - In-memory and Redis-backed persistence

from shard_checkpoint.store import CheckpointStore, create_checkpoint_store
from shard_checkpoint.backends import (
    CheckpointBackend,
    InMemoryCheckpointBackend,
    RedisCheckpointBackend,
)
from shard_checkpoint.config import CheckpointConfig, load_checkpoint_config
from shard_checkpoint.models import (
    LATEST,
    SHARD_END,
    TRIM_HORIZON,
    LATEST_POSITION,
    SHARD_END_POSITION,
    TRIM_HORIZON_POSITION,
    SequencePosition,
    ShardCheckpointRecord,
)
from shard_checkpoint.exceptions import (
    CheckpointError,
    ValidationError,
    InvalidSequencePositionError,
    ConcurrencyConflictError,
    PersistenceError,
)

__version__ = "0.1.0"

__all__ = [
    "CheckpointStore",
    "create_checkpoint_store",
    "CheckpointBackend",
    "InMemoryCheckpointBackend",
    "RedisCheckpointBackend",
    "CheckpointConfig",
    "load_checkpoint_config",
    "LATEST",
    "SHARD_END",
    "TRIM_HORIZON",
    "LATEST_POSITION",
    "SHARD_END_POSITION",
    "TRIM_HORIZON_POSITION",
    "SequencePosition",
    "ShardCheckpointRecord",
    "CheckpointError",
    "ValidationError",
    "InvalidSequencePositionError",
    "ConcurrencyConflictError",
    "PersistenceError",
]
