from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Deque, Optional

from shared.protocol import (
    SignalEvent,
    SignalMessage,
    decode_signal_stream,
    encode_signal,
)
from shared.signaling import SignalingClient

logger = logging.getLogger(__name__)


class TcpSignalingClient(SignalingClient):
    """Signaling adapter speaking length-prefixed JSON to a relay over TCP.

    The relay assigns the connection id in its first ``connected`` event;
    :meth:`connect` returns once that id is known.
    """

    def __init__(self, host: str, port: int, *, connect_timeout: float = 10.0) -> None:
        super().__init__()
        self._host = host
        self._port = port
        self._connect_timeout = connect_timeout
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._buffer = bytearray()
        self._send_queue: Deque[bytes] = deque()
        self._send_event = asyncio.Event()
        self._connected = asyncio.Event()
        self._send_task: Optional[asyncio.Task[None]] = None
        self._recv_task: Optional[asyncio.Task[None]] = None
        self._stop = False

    async def connect(self) -> str:
        logger.info("Connecting to relay %s:%s", self._host, self._port)
        self._connected.clear()
        reader, writer = await asyncio.open_connection(self._host, self._port)
        self.attach(reader, writer)
        try:
            await asyncio.wait_for(self._connected.wait(), timeout=self._connect_timeout)
        except asyncio.TimeoutError as exc:
            await self.close()
            raise ConnectionError("Relay did not assign a connection id") from exc
        if self._stop or self._client_id is None:
            raise ConnectionError("Connection closed before handshake completed")
        return self._client_id

    def attach(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        """Start the send/receive loops over an already open stream pair.

        Every attach starts from an empty frame buffer and send queue, so a
        frame cut short by a dropped connection never leaks into the next one.
        """

        self._cancel_loops()
        self._reader = reader
        self._writer = writer
        self._buffer = bytearray()
        self._send_queue.clear()
        self._send_event.clear()
        self._connected.clear()
        self._stop = False
        self._send_task = asyncio.create_task(self._send_loop(writer))
        self._recv_task = asyncio.create_task(self._recv_loop(reader))

    async def close(self) -> None:
        self._stop = True
        self._send_event.set()
        self._client_id = None
        if self._writer:
            self._writer.close()
            try:
                await self._writer.wait_closed()
            except Exception:
                pass
        self._reader = None
        self._writer = None
        self._buffer = bytearray()
        self._send_queue.clear()
        self._connected.clear()

    def _cancel_loops(self) -> None:
        current = asyncio.current_task()
        for task in (self._send_task, self._recv_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
        self._send_task = None
        self._recv_task = None

    async def _send(self, message: SignalMessage) -> None:
        if self._writer is None or self._stop:
            raise ConnectionError("Signaling client is not connected")
        self._send_queue.append(encode_signal(message))
        self._send_event.set()

    async def _send_loop(self, writer: asyncio.StreamWriter) -> None:
        while not self._stop and self._writer is writer:
            await self._send_event.wait()
            self._send_event.clear()
            while self._send_queue and not self._stop and self._writer is writer:
                data = self._send_queue.popleft()
                try:
                    writer.write(data)
                    await writer.drain()
                except Exception:
                    logger.exception("Failed to send signaling message")
                    self._stop = True
                    break

    async def _recv_loop(self, reader: asyncio.StreamReader) -> None:
        disconnect_reason: Optional[str] = None
        try:
            while not self._stop:
                chunk = await reader.read(4096)
                if not chunk:
                    logger.info("Relay closed signaling connection")
                    disconnect_reason = "server_closed"
                    break
                self._buffer.extend(chunk)
                envelopes, remaining = decode_signal_stream(bytes(self._buffer))
                self._buffer = bytearray(remaining)
                for envelope in envelopes:
                    try:
                        message = SignalMessage.from_envelope(envelope)
                    except (KeyError, ValueError):
                        logger.debug("Ignoring malformed envelope %r", envelope)
                        continue
                    if message.event is SignalEvent.CONNECTED:
                        self._client_id = str(message.data["client_id"])
                        self._connected.set()
                    await self.deliver(message)
        except Exception:
            logger.exception("Error while receiving from relay")
            disconnect_reason = "recv_error"
        finally:
            # a newer attach owns the client state now
            if self._reader is reader:
                was_stopped = self._stop
                if not self._connected.is_set():
                    self._connected.set()
                await self.close()
                if not was_stopped:
                    await self._notify_disconnect(disconnect_reason or "connection_closed")
