"""Relay giving remotely executed tests access to the local network.

The tunnel service hands out a presigned WebSocket URL. Once connected, the
server sends a handshake naming the tunnel host and ID, then multiplexes the
connections opened by test runners over binary frames::

    +----------------+-----------+---------------+
    | stream id (4B) | kind (1B) | payload (...) |
    +----------------+-----------+---------------+

An OPEN payload is a JSON object naming the target host/port, the test the
connection belongs to and the tunnel key. DATA frames carry raw bytes in
either direction and CLOSE ends a stream from either side.
"""

import asyncio
import logging
import secrets
import struct
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import IntEnum

import aiohttp
from pydantic import Field, ValidationError

from synthetics_ci.errors import TunnelError
from synthetics_ci.models.base import Model
from synthetics_ci.models.trigger import TunnelInfo

log = logging.getLogger(__name__)

FRAME_HEADER = struct.Struct(">IB")
HANDSHAKE_TIMEOUT = 30.0
CONNECT_TIMEOUT = 10.0
HEARTBEAT = 30.0
READ_CHUNK_SIZE = 64 * 1024


class FrameKind(IntEnum):
    """Kind of a relay frame."""

    OPEN = 1
    DATA = 2
    CLOSE = 3


class TunnelHandshake(Model):
    """First message sent by the tunnel service."""

    host: str
    id: str


class StreamOpenRequest(Model):
    """Payload of an OPEN frame."""

    host: str
    port: int
    test_id: str = Field(alias="testId")
    key: str


def encode_frame(stream_id: int, kind: FrameKind, payload: bytes = b"") -> bytes:
    """Encode one relay frame."""
    return FRAME_HEADER.pack(stream_id, kind) + payload


def decode_frame(data: bytes) -> tuple[int, FrameKind, bytes]:
    """Decode one relay frame.

    Raises:
        ValueError: If the frame is truncated or of an unknown kind

    """
    if len(data) < FRAME_HEADER.size:
        raise ValueError(f"Truncated frame of {len(data)} byte(s)")
    stream_id, kind = FRAME_HEADER.unpack_from(data)
    return stream_id, FrameKind(kind), data[FRAME_HEADER.size :]


@dataclass(kw_only=True)
class Tunnel:
    """Connection to the tunnel service for one run."""

    presigned_url: str
    test_ids: Sequence[str]
    proxy: str | None = None
    handshake_timeout: float = HANDSHAKE_TIMEOUT

    _private_key: str = field(
        default_factory=lambda: secrets.token_urlsafe(32), init=False, repr=False
    )
    _session: aiohttp.ClientSession | None = field(default=None, init=False, repr=False)
    _ws: aiohttp.ClientWebSocketResponse | None = field(
        default=None, init=False, repr=False
    )
    _relay_task: asyncio.Task[None] | None = field(default=None, init=False, repr=False)
    _writers: dict[int, asyncio.StreamWriter] = field(
        default_factory=dict, init=False, repr=False
    )
    _pumps: dict[int, asyncio.Task[None]] = field(
        default_factory=dict, init=False, repr=False
    )

    @property
    def is_connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    async def start(self) -> TunnelInfo:
        """Connect to the tunnel service and start relaying in the background.

        Raises:
            TunnelError: If the connection or the handshake fails

        """
        log.info("Opening tunnel for %d test(s)", len(self.test_ids))
        self._session = aiohttp.ClientSession()
        try:
            self._ws = await self._session.ws_connect(
                self.presigned_url, proxy=self.proxy, heartbeat=HEARTBEAT
            )
            message = await self._ws.receive(timeout=self.handshake_timeout)
            if message.type != aiohttp.WSMsgType.TEXT:
                raise ValueError(f"Unexpected handshake message of type {message.type!r}")
            handshake = TunnelHandshake.model_validate_json(message.data)
            await self._ws.send_json({"type": "ready", "testIds": list(self.test_ids)})
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            await self.stop()
            raise TunnelError(f"Unable to open tunnel: {exc}") from exc

        self._relay_task = asyncio.create_task(self._relay())
        log.info("Tunnel %s opened on %s", handshake.id, handshake.host)
        return TunnelInfo(
            host=handshake.host, id=handshake.id, private_key=self._private_key
        )

    async def stop(self) -> None:
        """Close the tunnel; safe to call repeatedly or after a failed start."""
        tasks = [*self._pumps.values()]
        if self._relay_task is not None:
            tasks.append(self._relay_task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._relay_task = None
        self._pumps.clear()

        for writer in self._writers.values():
            writer.close()
        self._writers.clear()

        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        if self._session is not None:
            await self._session.close()
            self._session = None
            log.info("Tunnel closed")

    async def _relay(self) -> None:
        if self._ws is None:
            return
        async for message in self._ws:
            if message.type == aiohttp.WSMsgType.BINARY:
                await self._handle_frame(message.data)
            elif message.type == aiohttp.WSMsgType.ERROR:
                log.warning("Tunnel connection error: %s", self._ws.exception())
                break
        log.info("Tunnel connection ended")

    async def _handle_frame(self, data: bytes) -> None:
        try:
            stream_id, kind, payload = decode_frame(data)
        except ValueError as exc:
            log.warning("Dropping invalid tunnel frame: %s", exc)
            return

        if kind == FrameKind.OPEN:
            await self._open_stream(stream_id, payload)
        elif kind == FrameKind.DATA:
            writer = self._writers.get(stream_id)
            if writer is None:
                log.debug("Data for unknown stream %d", stream_id)
                return
            try:
                writer.write(payload)
                await writer.drain()
            except OSError as exc:
                log.debug("Stream %d write failed: %s", stream_id, exc)
                self._close_stream(stream_id)
                await self._send(stream_id, FrameKind.CLOSE)
        else:
            self._close_stream(stream_id)

    async def _open_stream(self, stream_id: int, payload: bytes) -> None:
        try:
            request = StreamOpenRequest.model_validate_json(payload)
        except ValidationError as exc:
            log.warning("Rejected tunnel stream %d: %s", stream_id, exc)
            await self._send(stream_id, FrameKind.CLOSE)
            return

        if not secrets.compare_digest(request.key.encode(), self._private_key.encode()):
            log.warning("Rejected tunnel stream %d: invalid key", stream_id)
            await self._send(stream_id, FrameKind.CLOSE)
            return
        if request.test_id not in self.test_ids:
            log.warning(
                "Rejected tunnel stream %d: test %s is not part of this run",
                stream_id,
                request.test_id,
            )
            await self._send(stream_id, FrameKind.CLOSE)
            return

        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(request.host, request.port), CONNECT_TIMEOUT
            )
        except (OSError, asyncio.TimeoutError) as exc:
            log.warning(
                "Cannot reach %s:%d for test %s: %s",
                request.host,
                request.port,
                request.test_id,
                exc,
            )
            await self._send(stream_id, FrameKind.CLOSE)
            return

        log.debug(
            "Stream %d opened to %s:%d for test %s",
            stream_id,
            request.host,
            request.port,
            request.test_id,
        )
        self._writers[stream_id] = writer
        self._pumps[stream_id] = asyncio.create_task(self._pump(stream_id, reader))

    async def _pump(self, stream_id: int, reader: asyncio.StreamReader) -> None:
        """Forward bytes read from a local connection to the tunnel."""
        try:
            while chunk := await reader.read(READ_CHUNK_SIZE):
                await self._send(stream_id, FrameKind.DATA, chunk)
        except OSError as exc:
            log.debug("Stream %d read failed: %s", stream_id, exc)

        if stream_id in self._writers:
            await self._send(stream_id, FrameKind.CLOSE)
            writer = self._writers.pop(stream_id, None)
            if writer is not None:
                writer.close()
        self._pumps.pop(stream_id, None)

    def _close_stream(self, stream_id: int) -> None:
        writer = self._writers.pop(stream_id, None)
        if writer is not None:
            writer.close()
        pump = self._pumps.pop(stream_id, None)
        if pump is not None:
            pump.cancel()

    async def _send(self, stream_id: int, kind: FrameKind, payload: bytes = b"") -> None:
        if self._ws is None or self._ws.closed:
            return
        try:
            await self._ws.send_bytes(encode_frame(stream_id, kind, payload))
        except ConnectionResetError as exc:
            log.debug("Cannot send on closed tunnel: %s", exc)
