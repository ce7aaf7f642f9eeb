from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, Optional

from shared.protocol import (
    CLIENT_VERSION,
    ProtocolError,
    RelayEvent,
    Welcome,
    decode_relay_stream,
    encode_relay_message,
    parse_event,
)

logger = logging.getLogger(__name__)

MessageCallback = Callable[[RelayEvent, dict], Awaitable[None] | None]
DisconnectCallback = Callable[[Optional[str]], Awaitable[None] | None]

HEARTBEAT_INTERVAL = 3.0
CONNECT_TIMEOUT = 10.0


class RelayClient:
    """One TCP connection to the relay server.

    Inbound messages are handed to ``on_message`` strictly one at a time in
    delivery order; the next message is not read until the handler returns.
    """

    def __init__(
        self,
        host: str,
        port: int,
        on_message: MessageCallback,
        *,
        on_disconnect: Optional[DisconnectCallback] = None,
        heartbeat_interval: float = HEARTBEAT_INTERVAL,
        connect_timeout: float = CONNECT_TIMEOUT,
    ) -> None:
        self._host = host
        self._port = port
        self._on_message = on_message
        self._on_disconnect = on_disconnect
        self._heartbeat_interval = heartbeat_interval
        self._connect_timeout = connect_timeout
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._buffer = bytearray()
        self._recv_task: Optional[asyncio.Task[None]] = None
        self._heartbeat_task: Optional[asyncio.Task[None]] = None
        self._welcomed = asyncio.Event()
        self._peer_id: Optional[str] = None
        self._stop = False

    @property
    def peer_id(self) -> Optional[str]:
        return self._peer_id

    @property
    def connected(self) -> bool:
        return self._writer is not None and not self._stop

    async def connect(self) -> str:
        """Open the connection and wait for the relay to assign a peer id."""

        logger.info("Connecting to relay %s:%s", self._host, self._port)
        self._reader, self._writer = await asyncio.open_connection(self._host, self._port)
        await self._send_raw(encode_relay_message(RelayEvent.HELLO, {"clientVersion": CLIENT_VERSION}))
        self._recv_task = asyncio.create_task(self._recv_loop())
        try:
            await asyncio.wait_for(self._welcomed.wait(), timeout=self._connect_timeout)
        except asyncio.TimeoutError:
            await self.close()
            raise ConnectionError("relay did not complete the handshake")
        if self._stop or self._peer_id is None:
            raise ConnectionError("Connection closed before handshake completed")
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        return self._peer_id

    async def close(self) -> None:
        if self._stop and self._writer is None:
            return
        self._stop = True
        current = asyncio.current_task()
        for task in (self._heartbeat_task, self._recv_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
        self._heartbeat_task = None
        self._recv_task = None
        writer, self._writer = self._writer, None
        self._reader = None
        if writer is not None:
            writer.close()
            try:
                await writer.wait_closed()
            except Exception:
                pass
        self._welcomed.set()

    async def send(self, event: RelayEvent, payload: Dict[str, object]) -> None:
        await self._send_raw(encode_relay_message(event, payload))

    async def _send_raw(self, data: bytes) -> None:
        if not self._writer:
            raise ConnectionError("Relay client is not connected")
        self._writer.write(data)
        await self._writer.drain()

    async def _notify_disconnect(self, reason: Optional[str]) -> None:
        if self._on_disconnect is None:
            return
        try:
            result = self._on_disconnect(reason)
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            logger.exception("Disconnect callback failed")

    async def _recv_loop(self) -> None:
        assert self._reader is not None
        reader = self._reader
        disconnect_reason: Optional[str] = None
        try:
            while not self._stop:
                chunk = await reader.read(4096)
                if not chunk:
                    logger.info("Relay closed the connection")
                    disconnect_reason = "relay_closed"
                    break
                self._buffer.extend(chunk)
                messages, remaining = decode_relay_stream(bytes(self._buffer))
                self._buffer = bytearray(remaining)
                for message in messages:
                    try:
                        event = parse_event(message["event"])
                    except ProtocolError:
                        logger.warning("Ignoring unknown relay event %r", message["event"])
                        continue
                    payload = message["data"]
                    if event == RelayEvent.WELCOME:
                        self._peer_id = Welcome.from_dict(payload).peer_id
                        self._welcomed.set()
                        continue
                    await self._dispatch(event, payload)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Error while receiving from relay")
            disconnect_reason = "recv_error"
        finally:
            locally_closed = self._stop
            self._welcomed.set()
            if not locally_closed:
                await self.close()
                await self._notify_disconnect(disconnect_reason or "connection_closed")

    async def _dispatch(self, event: RelayEvent, payload: dict) -> None:
        try:
            result = self._on_message(event, payload)
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            logger.exception("Error while handling relay event %s", event.value)

    async def _heartbeat_loop(self) -> None:
        try:
            while not self._stop:
                await asyncio.sleep(self._heartbeat_interval)
                timestamp_ms = int(time.time() * 1000)
                logger.debug("Sending heartbeat from %s at %s", self._peer_id, timestamp_ms)
                await self.send(RelayEvent.HEARTBEAT, {"timestampMs": timestamp_ms})
        except asyncio.CancelledError:
            pass
        except ConnectionError:
            logger.debug("Heartbeat stopped: relay connection gone")
