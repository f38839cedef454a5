"""Integration test: checkpoint store backed by a live Redis server."""

import threading
import uuid

import pytest
import redis

from shard_checkpoint.backends import RedisCheckpointBackend
from shard_checkpoint.exceptions import ConcurrencyConflictError
from shard_checkpoint.models import TRIM_HORIZON_POSITION, SequencePosition
from shard_checkpoint.store import CheckpointStore

pytestmark = pytest.mark.integration


@pytest.fixture
def redis_store(redis_url):
    """Create a store under a unique key prefix and clean it up afterwards."""
    try:
        redis.from_url(redis_url).ping()
    except redis.RedisError:
        pytest.skip(f"Redis not available at {redis_url}")

    prefix = f"test_checkpoint:{uuid.uuid4().hex}"
    backend = RedisCheckpointBackend(redis_url, key_prefix=prefix, connect_retries=0)
    store = CheckpointStore("TRIM_HORIZON", backend=backend)
    yield store

    keys = list(backend.client.scan_iter(f"{prefix}:*"))
    if keys:
        backend.client.delete(*keys)
    store.close()


def test_lifecycle_survives_new_store(redis_store, redis_url):
    """Test that a restarted worker sees the committed position."""
    assert redis_store.get_checkpoint("shard-0") is None
    assert redis_store.get_restart_point("shard-0") == TRIM_HORIZON_POSITION

    redis_store.set_checkpoint("shard-0", SequencePosition("100", 0), "T1")

    restarted = CheckpointStore(
        "TRIM_HORIZON",
        backend=RedisCheckpointBackend(redis_url, key_prefix=redis_store.backend.key_prefix),
    )
    try:
        assert restarted.get_checkpoint("shard-0") == SequencePosition("100", 0)
        assert restarted.get_restart_point("shard-0") == SequencePosition("100", 0)
    finally:
        restarted.close()


def test_reset_discards_uncommitted_progress(redis_store):
    """Test that reset rolls a tentative checkpoint back to the flushpoint."""
    redis_store.set_checkpoint("shard-0", SequencePosition("100"), "T1")
    redis_store.prepare_checkpoint("shard-0", SequencePosition("300"), "T1")

    redis_store.reset_checkpoint_to_last_flushpoint("shard-0")

    assert redis_store.get_restart_point("shard-0") == SequencePosition("100")
    assert redis_store.get_checkpoint("shard-0") == SequencePosition("100")


def test_reset_without_flushpoint(redis_store):
    """Test that reset on a fresh shard goes to the starting position."""
    redis_store.reset_checkpoint_to_last_flushpoint("shard-9")

    assert redis_store.get_restart_point("shard-9") == TRIM_HORIZON_POSITION
    assert redis_store.get_checkpoint("shard-9") is None


def test_stale_worker_rejected(redis_store):
    """Test lease hand-off between two workers."""
    old = redis_store.assign_lease("shard-0")
    redis_store.set_checkpoint("shard-0", SequencePosition("5"), old)
    new = redis_store.assign_lease("shard-0")

    with pytest.raises(ConcurrencyConflictError):
        redis_store.set_checkpoint("shard-0", SequencePosition("6"), old)

    redis_store.set_checkpoint("shard-0", SequencePosition("7"), new)
    assert redis_store.get_checkpoint("shard-0") == SequencePosition("7")


def test_concurrent_shards(redis_store):
    """Test workers checkpointing different shards at the same time."""
    def worker(shard_id):
        for i in range(50):
            redis_store.set_checkpoint(shard_id, SequencePosition(str(i)), "T1")

    threads = [
        threading.Thread(target=worker, args=(f"shard-{n}",)) for n in range(4)
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30.0)

    records = redis_store.get_all_checkpoints()
    assert sorted(records) == ["shard-0", "shard-1", "shard-2", "shard-3"]
    for record in records.values():
        assert record.checkpoint == record.flushpoint == SequencePosition("49")


@pytest.fixture
def second_store(redis_store, redis_url):
    """Create a second store with its own connection on the same keys."""
    store = CheckpointStore(
        "TRIM_HORIZON",
        backend=RedisCheckpointBackend(
            redis_url, key_prefix=redis_store.backend.key_prefix, connect_retries=0
        ),
    )
    yield store
    store.close()


def interleave_once(monkeypatch, backend, action):
    """Run action the first time backend decodes a stored position."""
    decode = RedisCheckpointBackend._decode
    pending = [action]

    def decode_then_act(shard_id, raw):
        position = decode(shard_id, raw)
        if pending:
            pending.pop()()
        return position

    monkeypatch.setattr(backend, "_decode", decode_then_act)


def test_monotonic_commit_sees_other_writer(redis_store, second_store, monkeypatch):
    """Test that a flushpoint raised by another process is never lowered.

    The second store commits 200 after the first store has read the old
    flushpoint but before it writes 100.
    """
    redis_store.set_checkpoint("shard-0", SequencePosition("50"), "T1")
    interleave_once(
        monkeypatch,
        redis_store.backend,
        lambda: second_store.set_checkpoint(
            "shard-0", SequencePosition("200"), "T1", monotonic=True
        ),
    )

    saved = redis_store.set_checkpoint("shard-0", SequencePosition("100"), "T1", monotonic=True)

    assert saved is False
    assert second_store.get_checkpoint("shard-0") == SequencePosition("200")
    assert second_store.get_restart_point("shard-0") == SequencePosition("200")


def test_flush_sees_other_writer(redis_store, second_store, monkeypatch):
    """Test that flush promotes the checkpoint current at commit time."""
    redis_store.prepare_checkpoint("shard-0", SequencePosition("300"), "T1")
    interleave_once(
        monkeypatch,
        redis_store.backend,
        lambda: second_store.prepare_checkpoint("shard-0", SequencePosition("400"), "T1"),
    )

    flushed = redis_store.flush("shard-0", "T1")

    assert flushed == SequencePosition("400")
    assert second_store.get_checkpoint("shard-0") == SequencePosition("400")


def test_lease_handoff_during_commit(redis_store, second_store, monkeypatch):
    """Test that a lease moved before the write lands rejects the old owner."""
    old = redis_store.assign_lease("shard-0")
    redis_store.set_checkpoint("shard-0", SequencePosition("10"), old)
    interleave_once(
        monkeypatch,
        redis_store.backend,
        lambda: second_store.assign_lease("shard-0", "new-owner"),
    )

    with pytest.raises(ConcurrencyConflictError):
        redis_store.set_checkpoint("shard-0", SequencePosition("20"), old, monotonic=True)

    assert second_store.get_checkpoint("shard-0") == SequencePosition("10")
