from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Awaitable, Dict, List, Optional, Set, Tuple

from shared.protocol import RelayEvent, encode_relay_message

logger = logging.getLogger(__name__)

HEARTBEAT_TIMEOUT = 30.0  # seconds
ROOM_CAPACITY = 2


class RoomFullError(RuntimeError):
    """The room already holds a caller and a callee."""


@dataclass(slots=True)
class RelayPeer:
    peer_id: str
    writer: asyncio.StreamWriter
    room_id: Optional[str] = None
    last_seen: float = field(default_factory=lambda: time.monotonic())
    connected_at: float = field(default_factory=lambda: time.time())
    peer_ip: Optional[str] = None
    peer_port: Optional[int] = None
    bytes_sent: int = 0
    bytes_received: int = 0

    def touch(self) -> None:
        self.last_seen = time.monotonic()

    def send(self, event: RelayEvent, data: Dict[str, object]) -> None:
        payload = encode_relay_message(event, data)
        self.bytes_sent += len(payload)
        self.writer.write(payload)


class RoomRegistry:
    """Tracks relay connections and their room membership."""

    def __init__(self, *, room_capacity: int = ROOM_CAPACITY) -> None:
        self._peers: Dict[str, RelayPeer] = {}
        self._rooms: Dict[str, List[str]] = {}
        self._lock = asyncio.Lock()
        self._room_capacity = room_capacity
        self._event_log: list[dict] = []

    async def register(self, writer: asyncio.StreamWriter, peername: Optional[Tuple[str, ...]] = None) -> RelayPeer:
        async with self._lock:
            peer = RelayPeer(peer_id=uuid.uuid4().hex, writer=writer)
            if peername:
                peer.peer_ip = peername[0]
                if len(peername) > 1:
                    try:
                        peer.peer_port = int(peername[1])
                    except (TypeError, ValueError):
                        peer.peer_port = None
            self._peers[peer.peer_id] = peer
            logger.info("Registered relay peer %s", peer.peer_id)
            self._record_event("peer_connected", {"peer_id": peer.peer_id})
            return peer

    async def unregister(self, peer_id: str) -> Optional[str]:
        """Drop a connection; returns the room it was in, if any."""

        async with self._lock:
            peer = self._peers.pop(peer_id, None)
            if peer is None:
                return None
            room_id = self._leave_locked(peer)
            try:
                peer.writer.close()
            except Exception:  # pragma: no cover - cleanup best effort
                logger.exception("Error while closing writer for %s", peer_id)
            logger.info("Unregistered relay peer %s", peer_id)
            self._record_event("peer_disconnected", {"peer_id": peer_id, "room_id": room_id})
            return room_id

    async def join_room(self, peer_id: str, room_id: str) -> List[str]:
        """Add the peer to ``room_id`` and return the members already present."""

        async with self._lock:
            peer = self._peers.get(peer_id)
            if peer is None:
                raise KeyError(peer_id)
            if peer.room_id == room_id:
                return [member for member in self._rooms.get(room_id, []) if member != peer_id]
            members = self._rooms.get(room_id, [])
            if len(members) >= self._room_capacity:
                self._record_event("room_full", {"peer_id": peer_id, "room_id": room_id})
                raise RoomFullError(f"Room '{room_id}' already has {len(members)} participants")
            self._leave_locked(peer)
            existing = list(members)
            self._rooms.setdefault(room_id, []).append(peer_id)
            peer.room_id = room_id
            self._record_event("room_joined", {"peer_id": peer_id, "room_id": room_id})
            return existing

    async def leave_room(self, peer_id: str) -> Optional[str]:
        async with self._lock:
            peer = self._peers.get(peer_id)
            if peer is None:
                return None
            return self._leave_locked(peer)

    async def room_of(self, peer_id: str) -> Optional[str]:
        async with self._lock:
            peer = self._peers.get(peer_id)
            return peer.room_id if peer else None

    async def members(self, room_id: str) -> List[str]:
        async with self._lock:
            return list(self._rooms.get(room_id, []))

    async def share_room(self, first: str, second: str) -> bool:
        async with self._lock:
            a = self._peers.get(first)
            b = self._peers.get(second)
            return a is not None and b is not None and a.room_id is not None and a.room_id == b.room_id

    async def record_received(self, peer_id: str, num_bytes: int) -> None:
        if num_bytes <= 0:
            return
        async with self._lock:
            peer = self._peers.get(peer_id)
            if peer:
                peer.bytes_received += num_bytes

    async def send_to(self, peer_id: str, event: RelayEvent, data: Dict[str, object]) -> bool:
        drain: Optional[Awaitable[None]] = None
        async with self._lock:
            peer = self._peers.get(peer_id)
            if peer is None:
                return False
            try:
                peer.send(event, data)
                drain = peer.writer.drain()
            except Exception:
                logger.exception("Failed to send %s to %s", event.value, peer_id)
        if drain is not None:
            await asyncio.gather(drain, return_exceptions=True)
        return drain is not None

    async def broadcast_room(
        self,
        room_id: str,
        event: RelayEvent,
        data: Dict[str, object],
        *,
        exclude: Optional[Set[str]] = None,
    ) -> None:
        if exclude is None:
            exclude = set()
        drains: list[Awaitable[None]] = []
        async with self._lock:
            for peer_id in self._rooms.get(room_id, []):
                if peer_id in exclude:
                    continue
                peer = self._peers.get(peer_id)
                if peer is None:
                    continue
                try:
                    peer.send(event, data)
                    drains.append(peer.writer.drain())
                except Exception:
                    logger.exception("Failed to queue %s to %s", event.value, peer_id)
        if drains:
            await asyncio.gather(*drains, return_exceptions=True)

    async def mark_heartbeat(self, peer_id: str) -> None:
        async with self._lock:
            peer = self._peers.get(peer_id)
            if peer:
                elapsed = time.monotonic() - peer.last_seen
                peer.touch()
                logger.debug("Heartbeat received from %s (%.2fs since last)", peer_id, elapsed)

    async def heartbeat_watcher(self, interval: float = HEARTBEAT_TIMEOUT) -> None:
        """Close connections that stopped sending heartbeats.

        Closing the writer ends the connection handler, which performs the
        room-leave broadcast.
        """

        while True:
            await asyncio.sleep(interval)
            async with self._lock:
                now = time.monotonic()
                for peer_id, peer in list(self._peers.items()):
                    if now - peer.last_seen > interval * 2:
                        logger.warning("Relay peer %s timed out", peer_id)
                        self._record_event("peer_timed_out", {"peer_id": peer_id})
                        try:
                            peer.writer.close()
                        except Exception:
                            logger.exception("Error while closing writer for %s", peer_id)

    async def disconnect_all(self, *, reason: str = "Relay shutting down") -> None:
        waiters: list[Awaitable[None]] = []
        async with self._lock:
            peers = list(self._peers.values())
            for peer in peers:
                try:
                    peer.send(RelayEvent.ERROR, {"reason": reason, "code": "shutdown"})
                    peer.writer.close()
                    waiters.append(peer.writer.wait_closed())
                except Exception:
                    logger.exception("Error while closing writer for %s during shutdown", peer.peer_id)
            self._peers.clear()
            self._rooms.clear()
            self._record_event("relay_shutdown", {"reason": reason, "disconnected": len(peers)})
        if waiters:
            await asyncio.gather(*waiters, return_exceptions=True)

    async def record_event(self, event_type: str, details: Dict[str, object]) -> None:
        async with self._lock:
            self._record_event(event_type, details)

    async def get_recent_events(self, limit: int = 300) -> list[dict[str, object]]:
        async with self._lock:
            if limit <= 0:
                return []
            return list(self._event_log[-limit:])

    async def snapshot(self) -> dict:
        async with self._lock:
            now_monotonic = time.monotonic()
            peers = [
                {
                    "peer_id": peer.peer_id,
                    "room_id": peer.room_id,
                    "last_seen_seconds": max(0.0, now_monotonic - peer.last_seen),
                    "connected_at": peer.connected_at,
                    "peer_ip": peer.peer_ip,
                    "peer_port": peer.peer_port,
                    "bytes_sent": peer.bytes_sent,
                    "bytes_received": peer.bytes_received,
                }
                for peer in self._peers.values()
            ]
            return {
                "peers": peers,
                "rooms": {room_id: list(members) for room_id, members in self._rooms.items()},
                "events": list(self._event_log[-300:]),
            }

    def _leave_locked(self, peer: RelayPeer) -> Optional[str]:
        room_id = peer.room_id
        if room_id is None:
            return None
        members = self._rooms.get(room_id, [])
        if peer.peer_id in members:
            members.remove(peer.peer_id)
        if not members:
            self._rooms.pop(room_id, None)
        peer.room_id = None
        self._record_event("room_left", {"peer_id": peer.peer_id, "room_id": room_id})
        return room_id

    def _record_event(self, event_type: str, details: Dict[str, object]) -> None:
        event = {
            "type": event_type,
            "timestamp": time.time(),
            "details": details,
        }
        self._event_log.append(event)
        if len(self._event_log) > 1000:
            self._event_log.pop(0)
