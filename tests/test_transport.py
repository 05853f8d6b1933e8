"""HttpTransport and Sender against a real local aiohttp server."""

from __future__ import annotations

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from fakes import RecordingSleep, decode_body, make_snapshot
from vitalis.edge.models import BatchState
from vitalis.edge.sender import DeliveryStatus, HttpTransport, Sender


class IngestStub:
    """Minimal ingestion endpoint that replays scripted status codes."""

    def __init__(self, *statuses: int):
        self.statuses = list(statuses) or [200]
        self.requests: list[dict] = []

    async def handle(self, request: web.Request) -> web.Response:
        body = await request.read()
        self.requests.append({
            'headers': dict(request.headers),
            'payload': decode_body(body),
        })
        status = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        return web.json_response({'ok': status == 200}, status=status)

    async def start(self) -> TestServer:
        app = web.Application()
        app.router.add_post("/api/ingest", self.handle)
        server = TestServer(app)
        await server.start_server()
        return server


@pytest.mark.asyncio
@pytest.mark.parametrize("status,expected", [
    (200, DeliveryStatus.DELIVERED),
    (202, DeliveryStatus.DELIVERED),
    (429, DeliveryStatus.RATE_LIMITED),
    (503, DeliveryStatus.FAILED),
    (401, DeliveryStatus.FAILED),
])
async def test_status_classification(status, expected):
    stub = IngestStub(status)
    server = await stub.start()
    transport = HttpTransport(timeout=5)
    try:
        result = await transport.post(
            str(server.make_url("/api/ingest")),
            b"{}",
            {'Content-Type': "application/json"},
        )
    finally:
        await transport.close()
        await server.close()

    assert result.status == expected
    assert result.status_code == status
    assert result.success == (expected == DeliveryStatus.DELIVERED)


@pytest.mark.asyncio
async def test_connection_refused_is_failure():
    transport = HttpTransport(timeout=2)
    try:
        result = await transport.post("http://127.0.0.1:1/api/ingest", b"{}", {})
    finally:
        await transport.close()

    assert result.status == DeliveryStatus.FAILED
    assert result.error


@pytest.mark.asyncio
async def test_sender_posts_gzipped_batch_with_auth():
    stub = IngestStub(200)
    server = await stub.start()
    base_url = str(server.make_url("/"))
    batch = [make_snapshot(0), make_snapshot(1)]

    try:
        async with Sender(server_url=base_url, machine_token="tok-123", timeout=5) as sender:
            state = await sender.send(batch)
    finally:
        await server.close()

    assert state == BatchState.DELIVERED
    assert len(stub.requests) == 1
    request = stub.requests[0]
    assert request['headers']['Authorization'] == "Bearer tok-123"
    assert request['headers']['Content-Encoding'] == "gzip"
    assert request['headers']['Content-Type'] == "application/json"
    assert request['headers']['User-Agent'].startswith("VitalisAgent/")
    assert request['payload'] == {
        'machine_token': "tok-123",
        'metrics': [s.to_dict() for s in batch],
    }


@pytest.mark.asyncio
async def test_sender_retries_against_flaky_server():
    stub = IngestStub(503, 500, 200)
    server = await stub.start()
    sleep = RecordingSleep()

    try:
        async with Sender(
            server_url=str(server.make_url("/")),
            machine_token="tok",
            timeout=5,
            sleep=sleep,
        ) as sender:
            state = await sender.send([make_snapshot()])
    finally:
        await server.close()

    assert state == BatchState.DELIVERED
    assert len(stub.requests) == 3
    assert sleep.delays == [2.0, 4.0]
