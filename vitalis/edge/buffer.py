"""
Local Buffer System.

SQLite-based buffer for storing batches when the ingestion endpoint is
unreachable. Each batch is one committed row, so a crash mid-write can
lose at most the row being written. Records come back in insertion order.
"""

import asyncio
import logging
import sqlite3
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


class OverflowPolicy(Enum):
    """What to do when storing a batch would exceed capacity."""
    DROP_OLDEST = "drop_oldest"
    REJECT = "reject"


class BufferFullError(Exception):
    """Raised when a batch cannot be stored because the buffer is full."""


@dataclass
class BufferedBatch:
    """A batch payload stored in the buffer."""
    id: int
    payload: bytes
    created_at: float
    size: int


class BatchBuffer:
    """
    SQLite-based buffer for undelivered batches.

    Features:
    - Persists opaque batch payloads to disk during network outages
    - Replays records in original creation order
    - Capacity bounded by record count and total payload size
    - Thread-safe operations

    Retrieval is non-destructive: ``retrieve_all`` leaves every record in
    place and the caller removes a record only once its outcome is known.
    """

    SCHEMA = """
    CREATE TABLE IF NOT EXISTS batches (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        payload BLOB NOT NULL,
        size INTEGER NOT NULL,
        created_at REAL NOT NULL
    );
    """

    def __init__(
        self,
        path: str = "./buffer.db",
        max_size_mb: float = 50,
        max_batches: Optional[int] = 10000,
        overflow: OverflowPolicy = OverflowPolicy.DROP_OLDEST,
    ):
        """Initialize the buffer."""
        self.path = path
        self.max_size_mb = max_size_mb
        self.max_batches = max_batches
        self.overflow = OverflowPolicy(overflow)

        self._lock = threading.Lock()
        self._conn = None
        self._closed = False

        # Ensure directory exists
        Path(path).parent.mkdir(parents=True, exist_ok=True)

        self._init_db()

    @property
    def max_size_bytes(self) -> int:
        return int(self.max_size_mb * 1024 * 1024)

    def _init_db(self):
        """Initialize the database."""
        self._conn = sqlite3.connect(self.path, check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=FULL")
        self._conn.executescript(self.SCHEMA)
        self._conn.commit()

    def _get_conn(self) -> sqlite3.Connection:
        """Get database connection."""
        if self._closed:
            raise sqlite3.ProgrammingError(f"Buffer {self.path} is closed")
        if self._conn is None:
            self._init_db()
        return self._conn

    def store(self, payload: bytes) -> int:
        """
        Append a batch payload to the buffer.

        Args:
            payload: Serialized batch, stored byte-for-byte

        Returns:
            Order key of the new record

        Raises:
            BufferFullError: the payload does not fit and the overflow
                policy is ``reject`` (or it exceeds the whole size limit)
        """
        size = len(payload)
        if size > self.max_size_bytes:
            raise BufferFullError(
                f"Batch of {size} bytes exceeds buffer capacity of {self.max_size_bytes} bytes"
            )

        with self._lock:
            conn = self._get_conn()
            self._make_room(conn, size)
            cursor = conn.execute(
                "INSERT INTO batches (payload, size, created_at) VALUES (?, ?, ?)",
                (sqlite3.Binary(payload), size, time.time())
            )
            conn.commit()
            return cursor.lastrowid

    def _make_room(self, conn: sqlite3.Connection, incoming: int):
        """Enforce capacity before an insert. Must be called with the lock held."""
        while self._would_overflow(conn, incoming):
            if self.overflow == OverflowPolicy.REJECT:
                raise BufferFullError("Buffer full, rejecting new batch")

            row = conn.execute(
                "SELECT id FROM batches ORDER BY id ASC LIMIT 1"
            ).fetchone()
            if row is None:
                return
            conn.execute("DELETE FROM batches WHERE id = ?", (row[0],))
            logger.warning(f"Buffer full, dropped oldest batch {row[0]}")
        conn.commit()

    def _would_overflow(self, conn: sqlite3.Connection, incoming: int) -> bool:
        count, total = conn.execute(
            "SELECT COUNT(*), COALESCE(SUM(size), 0) FROM batches"
        ).fetchone()
        if self.max_batches is not None and count + 1 > self.max_batches:
            return True
        return total + incoming > self.max_size_bytes

    def retrieve_all(self) -> list[BufferedBatch]:
        """Return every stored record in ascending creation order."""
        with self._lock:
            conn = self._get_conn()
            cursor = conn.execute(
                "SELECT id, payload, created_at, size FROM batches ORDER BY id ASC"
            )
            return [
                BufferedBatch(
                    id=row[0],
                    payload=bytes(row[1]),
                    created_at=row[2],
                    size=row[3],
                )
                for row in cursor.fetchall()
            ]

    def remove(self, item_ids: list[int]):
        """Remove records whose outcome is confirmed (delivered or dropped)."""
        if not item_ids:
            return

        with self._lock:
            conn = self._get_conn()
            placeholders = ",".join("?" * len(item_ids))
            conn.execute(
                f"DELETE FROM batches WHERE id IN ({placeholders})",
                item_ids
            )
            conn.commit()

    def count(self) -> int:
        """Get the number of stored batches."""
        with self._lock:
            conn = self._get_conn()
            return conn.execute("SELECT COUNT(*) FROM batches").fetchone()[0]

    def size_bytes(self) -> int:
        """Get the total size of stored payloads in bytes."""
        with self._lock:
            conn = self._get_conn()
            return conn.execute(
                "SELECT COALESCE(SUM(size), 0) FROM batches"
            ).fetchone()[0]

    def clear(self):
        """Clear all batches from the buffer."""
        with self._lock:
            conn = self._get_conn()
            conn.execute("DELETE FROM batches")
            conn.commit()
            conn.execute("VACUUM")

    def get_stats(self) -> dict:
        """Get buffer statistics."""
        with self._lock:
            conn = self._get_conn()
            total, size, oldest = conn.execute(
                "SELECT COUNT(*), COALESCE(SUM(size), 0), MIN(created_at) FROM batches"
            ).fetchone()

        return {
            'total_batches': total,
            'size_bytes': size,
            'size_mb': size / (1024 * 1024),
            'max_size_mb': self.max_size_mb,
            'max_batches': self.max_batches,
            'overflow': self.overflow.value,
            'oldest_batch_age': time.time() - oldest if oldest else 0,
            'path': self.path,
        }

    def close(self):
        """Close the database connection. The buffer is unusable afterwards."""
        with self._lock:
            self._closed = True
            if self._conn:
                self._conn.close()
                self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class AsyncBatchBuffer:
    """Async wrapper for BatchBuffer."""

    def __init__(self, *args, **kwargs):
        """Initialize the async buffer."""
        self._buffer = BatchBuffer(*args, **kwargs)
        self._executor = None

    @property
    def path(self) -> str:
        return self._buffer.path

    async def _run(self, func, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, func, *args)

    async def store(self, payload: bytes) -> int:
        """Store a batch payload."""
        return await self._run(self._buffer.store, payload)

    async def retrieve_all(self) -> list[BufferedBatch]:
        """Get all stored batches in creation order."""
        return await self._run(self._buffer.retrieve_all)

    async def remove(self, item_ids: list[int]):
        """Remove batches."""
        await self._run(self._buffer.remove, item_ids)

    async def count(self) -> int:
        """Get batch count."""
        return await self._run(self._buffer.count)

    async def get_stats(self) -> dict:
        """Get buffer statistics."""
        return await self._run(self._buffer.get_stats)

    def close(self):
        """Close the buffer."""
        self._buffer.close()
