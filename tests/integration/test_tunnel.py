"""Integration tests for the tunnel against a local tunnel service."""

import asyncio
import json
from collections.abc import AsyncGenerator
from dataclasses import dataclass, field

import pytest
from aiohttp import WSMsgType, web
from aiohttp.test_utils import TestServer

from synthetics_ci.errors import TunnelError
from synthetics_ci.models.trigger import TunnelInfo
from synthetics_ci.tunnel import FrameKind, Tunnel, decode_frame, encode_frame

HANDSHAKE = json.dumps({"host": "tunnel.datadog.test", "id": "tunnel-123"})
TIMEOUT = 5


@dataclass
class FakeTunnelService:
    """Tunnel service handing each accepted WebSocket to the test."""

    handshake: str = HANDSHAKE
    connections: asyncio.Queue[web.WebSocketResponse] = field(
        default_factory=asyncio.Queue
    )
    released: asyncio.Event = field(default_factory=asyncio.Event)

    async def handle(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        await ws.send_str(self.handshake)
        await self.connections.put(ws)
        await self.released.wait()
        return ws


@dataclass
class TunnelSession:
    """A started tunnel and the service side of its WebSocket."""

    tunnel: Tunnel
    info: TunnelInfo
    server_ws: web.WebSocketResponse

    async def open_stream(
        self, stream_id: int, port: int, test_id: str = "abc", key: str | None = None
    ) -> None:
        payload = {
            "host": "127.0.0.1",
            "port": port,
            "testId": test_id,
            "key": self.info.private_key if key is None else key,
        }
        await self.server_ws.send_bytes(
            encode_frame(stream_id, FrameKind.OPEN, json.dumps(payload).encode())
        )

    async def next_frame(self) -> tuple[int, FrameKind, bytes]:
        message = await self.server_ws.receive(timeout=TIMEOUT)
        assert message.type == WSMsgType.BINARY
        return decode_frame(message.data)


@pytest.fixture
async def service() -> AsyncGenerator[tuple[FakeTunnelService, str], None]:
    """Run a fake tunnel service, yielding it and its URL."""
    fake = FakeTunnelService()
    app = web.Application()
    app.router.add_get("/tunnel", fake.handle)
    server = TestServer(app)
    await server.start_server()
    try:
        yield fake, str(server.make_url("/tunnel"))
    finally:
        fake.released.set()
        await server.close()


@pytest.fixture
async def echo_port() -> AsyncGenerator[int, None]:
    """Run a local TCP echo server, yielding its port."""
    writers: list[asyncio.StreamWriter] = []

    async def echo(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        writers.append(writer)
        while data := await reader.read(1024):
            writer.write(data)
            await writer.drain()
        writer.close()

    server = await asyncio.start_server(echo, "127.0.0.1", 0)
    async with server:
        yield server.sockets[0].getsockname()[1]
        for writer in writers:
            writer.close()


@pytest.fixture
async def session(
    service: tuple[FakeTunnelService, str],
) -> AsyncGenerator[TunnelSession, None]:
    """Start a tunnel for test abc and consume its ready message."""
    fake, url = service
    tunnel = Tunnel(presigned_url=url, test_ids=["abc"])
    info = await tunnel.start()
    server_ws = await asyncio.wait_for(fake.connections.get(), TIMEOUT)
    ready = await server_ws.receive_json(timeout=TIMEOUT)
    assert ready == {"type": "ready", "testIds": ["abc"]}
    try:
        yield TunnelSession(tunnel=tunnel, info=info, server_ws=server_ws)
    finally:
        await server_ws.close()
        await tunnel.stop()


async def test_start_returns_tunnel_info(session: TunnelSession) -> None:
    """Returns the handshake host and ID with the tunnel's private key."""
    assert session.info.host == "tunnel.datadog.test"
    assert session.info.id == "tunnel-123"
    assert session.info.private_key
    assert session.tunnel.is_connected


async def test_relays_data_both_ways(session: TunnelSession, echo_port: int) -> None:
    """Bytes sent through a stream reach the local server and come back."""
    await session.open_stream(1, echo_port)
    await session.server_ws.send_bytes(encode_frame(1, FrameKind.DATA, b"ping"))

    assert await session.next_frame() == (1, FrameKind.DATA, b"ping")


async def test_streams_are_independent(session: TunnelSession, echo_port: int) -> None:
    """Concurrent streams keep their own data."""
    await session.open_stream(1, echo_port)
    await session.open_stream(2, echo_port)
    await session.server_ws.send_bytes(encode_frame(2, FrameKind.DATA, b"two"))

    assert await session.next_frame() == (2, FrameKind.DATA, b"two")

    await session.server_ws.send_bytes(encode_frame(1, FrameKind.DATA, b"one"))

    assert await session.next_frame() == (1, FrameKind.DATA, b"one")


async def test_local_close_is_forwarded(session: TunnelSession) -> None:
    """A local server closing its connection closes the stream."""

    async def greet(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        writer.write(b"hello")
        await writer.drain()
        writer.close()

    server = await asyncio.start_server(greet, "127.0.0.1", 0)
    async with server:
        await session.open_stream(5, server.sockets[0].getsockname()[1])

        assert await session.next_frame() == (5, FrameKind.DATA, b"hello")
        assert await session.next_frame() == (5, FrameKind.CLOSE, b"")


async def test_rejects_invalid_key(session: TunnelSession, echo_port: int) -> None:
    """Streams presenting another key are closed at once."""
    await session.open_stream(1, echo_port, key="not-the-key")

    assert await session.next_frame() == (1, FrameKind.CLOSE, b"")


async def test_rejects_unknown_test(session: TunnelSession, echo_port: int) -> None:
    """Streams for tests outside the run are closed at once."""
    await session.open_stream(1, echo_port, test_id="other")

    assert await session.next_frame() == (1, FrameKind.CLOSE, b"")


async def test_unreachable_target(session: TunnelSession) -> None:
    """Streams to a closed local port are closed."""
    server = await asyncio.start_server(lambda r, w: None, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    server.close()
    await server.wait_closed()

    await session.open_stream(1, port)

    assert await session.next_frame() == (1, FrameKind.CLOSE, b"")


async def test_stop_is_idempotent(session: TunnelSession) -> None:
    """Stopping twice leaves the tunnel closed."""
    closing = asyncio.create_task(session.server_ws.receive(timeout=TIMEOUT))

    await session.tunnel.stop()
    await session.tunnel.stop()

    assert (await closing).type == WSMsgType.CLOSE
    assert not session.tunnel.is_connected


async def test_invalid_handshake(service: tuple[FakeTunnelService, str]) -> None:
    """Raises TunnelError when the service does not send a valid handshake."""
    fake, url = service
    fake.handshake = "not a handshake"

    async def drain() -> None:
        ws = await fake.connections.get()
        async for _ in ws:
            pass

    drainer = asyncio.create_task(drain())
    tunnel = Tunnel(presigned_url=url, test_ids=["abc"], handshake_timeout=TIMEOUT)

    with pytest.raises(TunnelError):
        await tunnel.start()

    await asyncio.wait_for(drainer, TIMEOUT)
    assert not tunnel.is_connected
