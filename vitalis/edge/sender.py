"""
Ingest Sender.

Sends batched snapshots to the ingestion API. Handles gzip encoding,
bearer authentication, retries with exponential backoff, rate limiting
and fallback to the local buffer.
"""

import asyncio
import gzip
import json
import logging
import sqlite3
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional

import aiohttp

from .buffer import AsyncBatchBuffer, BufferFullError
from .models import BatchState, MetricBatch, Snapshot

logger = logging.getLogger(__name__)

INGEST_PATH = "/api/ingest"
USER_AGENT = "VitalisAgent/1.0"


class DeliveryStatus(Enum):
    """Outcome of a single transmission attempt."""
    DELIVERED = "delivered"
    RATE_LIMITED = "rate_limited"
    FAILED = "failed"


@dataclass
class SendResult:
    """Result of a send operation."""
    status: DeliveryStatus
    status_code: int = 0
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status == DeliveryStatus.DELIVERED


class HttpTransport:
    """Posts encoded batches over HTTP with a pooled aiohttp session."""

    def __init__(self, timeout: float = 10):
        """Initialize the transport."""
        self.timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session."""
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.timeout)
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    async def post(self, url: str, body: bytes, headers: dict) -> SendResult:
        """Send a single request."""
        try:
            session = await self._get_session()
            async with session.post(url, data=body, headers=headers) as response:
                await response.read()

                if 200 <= response.status < 300:
                    return SendResult(DeliveryStatus.DELIVERED, status_code=response.status)

                if response.status == 429:
                    return SendResult(
                        DeliveryStatus.RATE_LIMITED,
                        status_code=response.status,
                        error=f"rate limited ({response.status})",
                    )

                return SendResult(
                    DeliveryStatus.FAILED,
                    status_code=response.status,
                    error=f"server returned {response.status}",
                )

        except asyncio.TimeoutError:
            return SendResult(DeliveryStatus.FAILED, error="Request timeout")
        except aiohttp.ClientError as e:
            return SendResult(DeliveryStatus.FAILED, error=str(e))

    async def close(self):
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()


class Sender:
    """
    Delivers batches to the ingestion endpoint, at least once.

    Features:
    - gzip-compressed JSON payloads with bearer authentication
    - Bounded retries with exponential backoff
    - HTTP 429 short-circuits straight to the buffer
    - Buffer drain through the same delivery path

    Only one transmission sequence is in flight at a time; concurrent
    callers queue on an internal lock.
    """

    def __init__(
        self,
        server_url: str,
        machine_token: str,
        buffer: Optional[AsyncBatchBuffer] = None,
        max_retries: int = 3,
        base_delay: float = 2.0,
        timeout: float = 10,
        transport=None,
        sleep: Callable[[float], Awaitable] = asyncio.sleep,
    ):
        """Initialize the sender."""
        self.server_url = server_url.rstrip('/')
        self.machine_token = machine_token
        self.buffer = buffer
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.transport = transport or HttpTransport(timeout=timeout)

        self._sleep = sleep
        self._lock = asyncio.Lock()

    @property
    def ingest_url(self) -> str:
        return f"{self.server_url}{INGEST_PATH}"

    def _get_headers(self) -> dict:
        """Get request headers."""
        return {
            'Content-Type': 'application/json',
            'Content-Encoding': 'gzip',
            'Authorization': f'Bearer {self.machine_token}',
            'User-Agent': USER_AGENT,
        }

    async def send(self, snapshots: list[Snapshot]) -> BatchState:
        """
        Deliver one batch, falling back to the buffer on failure.

        Returns the terminal disposition: DELIVERED, BUFFERED or DROPPED
        (SKIPPED for an empty batch, which is never sent or stored).
        """
        if not snapshots:
            logger.warning("Refusing to send empty batch")
            return BatchState.SKIPPED

        try:
            data = self._encode(snapshots)
        except (TypeError, ValueError) as e:
            logger.error(f"Failed to encode batch of {len(snapshots)} snapshots, dropping: {e}")
            return BatchState.DROPPED

        try:
            body = gzip.compress(data)
        except Exception as e:
            logger.error(f"Failed to compress batch, buffering: {e}")
            return await self._buffer_batch(snapshots)

        async with self._lock:
            state = await self._deliver(body, len(snapshots))

        if state == BatchState.DELIVERED:
            return state
        return await self._buffer_batch(snapshots)

    async def _deliver(self, body: bytes, count: int) -> BatchState:
        """Run the retry loop for one encoded batch. Must hold the send lock."""
        last_error = None

        for attempt in range(self.max_retries + 1):
            if attempt > 0:
                delay = self.base_delay * (2 ** (attempt - 1))
                logger.warning(f"Retrying send (attempt {attempt}) in {delay:g}s")
                await self._sleep(delay)

            result = await self.transport.post(self.ingest_url, body, self._get_headers())

            if result.status == DeliveryStatus.DELIVERED:
                logger.debug(f"Batch sent successfully ({count} snapshots)")
                return BatchState.DELIVERED

            if result.status == DeliveryStatus.RATE_LIMITED:
                logger.warning(f"Rate limited by server, buffering batch: {result.error}")
                return BatchState.RATE_LIMITED

            last_error = result.error
            logger.warning(f"Send attempt {attempt + 1} failed: {result.error}")

        logger.error(
            f"All {self.max_retries + 1} attempts failed, buffering batch: {last_error}"
        )
        return BatchState.RETRIES_EXHAUSTED

    async def _buffer_batch(self, snapshots: list[Snapshot]) -> BatchState:
        """Store a failed batch in the local buffer, or drop it if that fails."""
        if self.buffer is None:
            logger.warning(f"No buffer available, dropping {len(snapshots)} snapshots")
            return BatchState.DROPPED

        try:
            payload = self._encode_metrics(snapshots)
            record_id = await self.buffer.store(payload)
        except (TypeError, ValueError, BufferFullError, sqlite3.Error, OSError) as e:
            logger.error(f"Failed to buffer batch, dropping {len(snapshots)} snapshots: {e}")
            return BatchState.DROPPED

        logger.info(f"Batch buffered for later delivery (record {record_id})")
        return BatchState.BUFFERED

    async def flush_buffer(self) -> int:
        """
        Try to deliver all buffered batches in original order.

        Delivered records are removed. Records that fail again stay in
        place with their original order key. Undecodable records are
        dropped. Returns the number of batches delivered.
        """
        if self.buffer is None:
            return 0

        try:
            records = await self.buffer.retrieve_all()
        except (sqlite3.Error, OSError) as e:
            logger.error(f"Failed to retrieve buffered batches: {e}")
            return 0

        if not records:
            return 0

        logger.info(f"Flushing {len(records)} buffered batches")

        sent_count = 0
        for record in records:
            try:
                snapshots = self._decode_metrics(record.payload)
                body = gzip.compress(self._encode(snapshots))
            except (TypeError, ValueError, KeyError, AttributeError) as e:
                logger.error(f"Dropping unreadable buffered batch {record.id}: {e}")
                await self._remove(record.id)
                continue

            async with self._lock:
                state = await self._deliver(body, len(snapshots))

            if state == BatchState.DELIVERED:
                await self._remove(record.id)
                sent_count += 1
            else:
                logger.warning(f"Buffered batch {record.id} still undeliverable, keeping it")

        return sent_count

    async def _remove(self, record_id: int):
        try:
            await self.buffer.remove([record_id])
        except (sqlite3.Error, OSError) as e:
            # A record left behind here is resent on the next drain
            logger.error(f"Failed to remove buffered batch {record_id}: {e}")

    def _encode(self, snapshots: list[Snapshot]) -> bytes:
        """Serialize a batch into the ingest payload."""
        batch = MetricBatch(machine_token=self.machine_token, metrics=list(snapshots))
        return json.dumps(batch.to_dict(), allow_nan=False).encode('utf-8')

    @staticmethod
    def _encode_metrics(snapshots: list[Snapshot]) -> bytes:
        """Serialize snapshots for the buffer."""
        return json.dumps([s.to_dict() for s in snapshots]).encode('utf-8')

    @staticmethod
    def _decode_metrics(payload: bytes) -> list[Snapshot]:
        data = json.loads(payload.decode('utf-8'))
        if not isinstance(data, list) or not data:
            raise ValueError("buffered payload is not a non-empty snapshot list")
        return [Snapshot.from_dict(item) for item in data]

    async def close(self):
        """Close the transport."""
        await self.transport.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
