from __future__ import annotations

import sqlite3

import pytest

from vitalis.edge.buffer import (
    AsyncBatchBuffer,
    BatchBuffer,
    BufferFullError,
    OverflowPolicy,
)


@pytest.fixture()
def db_path(tmp_path):
    return str(tmp_path / "buffer.db")


@pytest.fixture()
def buffer(db_path):
    buf = BatchBuffer(path=db_path)
    yield buf
    buf.close()


def test_records_come_back_in_insertion_order(buffer):
    payloads = [f"batch-{i}".encode() for i in range(5)]
    ids = [buffer.store(p) for p in payloads]

    records = buffer.retrieve_all()

    assert [r.payload for r in records] == payloads
    assert [r.id for r in records] == ids
    assert ids == sorted(ids)


def test_retrieve_is_non_destructive(buffer):
    buffer.store(b"one")
    buffer.store(b"two")

    first = buffer.retrieve_all()
    second = buffer.retrieve_all()

    assert [r.payload for r in first] == [r.payload for r in second]
    assert buffer.count() == 2


def test_remove_deletes_only_named_records(buffer):
    ids = [buffer.store(f"{i}".encode()) for i in range(4)]

    buffer.remove([ids[0], ids[2]])

    assert [r.id for r in buffer.retrieve_all()] == [ids[1], ids[3]]


def test_remove_empty_list_is_noop(buffer):
    buffer.store(b"x")
    buffer.remove([])
    assert buffer.count() == 1


def test_payload_survives_restart_byte_identical(db_path):
    payload = b'[{"cpu_overall": 12.5}]\x00\xff binary tail'
    with BatchBuffer(path=db_path) as buf:
        stored_id = buf.store(payload)

    with BatchBuffer(path=db_path) as reopened:
        records = reopened.retrieve_all()

    assert len(records) == 1
    assert records[0].id == stored_id
    assert records[0].payload == payload
    assert records[0].size == len(payload)


def test_order_keys_keep_increasing_after_removal(buffer):
    first = buffer.store(b"a")
    buffer.remove([first])

    second = buffer.store(b"b")

    assert second > first


def test_creates_missing_parent_directory(tmp_path):
    path = tmp_path / "nested" / "dir" / "buffer.db"
    with BatchBuffer(path=str(path)) as buf:
        buf.store(b"x")
    assert path.exists()


# ── capacity ───────────────────────────────────────────


def test_drop_oldest_by_count(db_path):
    with BatchBuffer(path=db_path, max_batches=3) as buf:
        for i in range(5):
            buf.store(f"{i}".encode())

        assert [r.payload for r in buf.retrieve_all()] == [b"2", b"3", b"4"]


def test_drop_oldest_by_size(db_path):
    # 1 KiB limit, 400-byte payloads: only two fit at once
    with BatchBuffer(path=db_path, max_size_mb=1 / 1024, max_batches=None) as buf:
        for i in range(4):
            buf.store(bytes([i]) * 400)

        records = buf.retrieve_all()

    assert [r.payload[0] for r in records] == [2, 3]
    assert sum(r.size for r in records) <= 1024


def test_reject_policy_raises_and_keeps_existing(db_path):
    with BatchBuffer(path=db_path, max_batches=2, overflow=OverflowPolicy.REJECT) as buf:
        buf.store(b"a")
        buf.store(b"b")

        with pytest.raises(BufferFullError):
            buf.store(b"c")

        assert [r.payload for r in buf.retrieve_all()] == [b"a", b"b"]


def test_oversize_payload_always_rejected(db_path):
    with BatchBuffer(path=db_path, max_size_mb=1 / 1024) as buf:
        buf.store(b"keep")

        with pytest.raises(BufferFullError):
            buf.store(b"x" * 2048)

        assert buf.count() == 1


def test_overflow_policy_accepts_string(db_path):
    with BatchBuffer(path=db_path, overflow="reject") as buf:
        assert buf.overflow == OverflowPolicy.REJECT


def test_unknown_overflow_policy_rejected(db_path):
    with pytest.raises(ValueError):
        BatchBuffer(path=db_path, overflow="shuffle")


# ── housekeeping ───────────────────────────────────────


def test_stats(db_path):
    with BatchBuffer(path=db_path, max_size_mb=2, max_batches=10) as buf:
        buf.store(b"x" * 100)
        buf.store(b"y" * 50)

        stats = buf.get_stats()

    assert stats['total_batches'] == 2
    assert stats['size_bytes'] == 150
    assert stats['max_size_mb'] == 2
    assert stats['max_batches'] == 10
    assert stats['overflow'] == "drop_oldest"
    assert stats['path'] == db_path
    assert stats['oldest_batch_age'] >= 0


def test_stats_on_empty_buffer(buffer):
    stats = buffer.get_stats()

    assert stats['total_batches'] == 0
    assert stats['size_bytes'] == 0
    assert stats['oldest_batch_age'] == 0


def test_clear(buffer):
    buffer.store(b"a")
    buffer.store(b"b")

    buffer.clear()

    assert buffer.count() == 0
    assert buffer.size_bytes() == 0


# ── async wrapper ──────────────────────────────────────


@pytest.mark.asyncio
async def test_async_buffer_round_trip(db_path):
    buf = AsyncBatchBuffer(path=db_path)
    try:
        first = await buf.store(b"first")
        await buf.store(b"second")

        records = await buf.retrieve_all()
        assert [r.payload for r in records] == [b"first", b"second"]

        await buf.remove([first])
        assert await buf.count() == 1

        stats = await buf.get_stats()
        assert stats['total_batches'] == 1
        assert buf.path == db_path
    finally:
        buf.close()


def test_closed_buffer_does_not_reconnect(db_path):
    buf = BatchBuffer(path=db_path)
    buf.store(b"a")
    buf.close()

    for operation in (buf.count, buf.retrieve_all, lambda: buf.store(b"b"), lambda: buf.remove([1])):
        with pytest.raises(sqlite3.ProgrammingError):
            operation()

    assert buf._conn is None
    buf.close()


@pytest.mark.asyncio
async def test_async_call_after_close_raises(db_path):
    buf = AsyncBatchBuffer(path=db_path)
    buf.close()

    with pytest.raises(sqlite3.Error):
        await buf.retrieve_all()
