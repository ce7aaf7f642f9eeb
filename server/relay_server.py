from __future__ import annotations

import asyncio
import logging
from typing import Optional

from shared.protocol import (
    AcceptCall,
    CallAccepted,
    JoinRoom,
    LeaveRoom,
    ProtocolError,
    ReceiveCall,
    RelayErrorPayload,
    RelayEvent,
    SendCall,
    UserJoined,
    UserLeft,
    Welcome,
    decode_relay_stream,
    encode_relay_message,
    parse_event,
)

from .room_registry import RoomFullError, RoomRegistry

logger = logging.getLogger(__name__)


class RelayServer:
    """TCP relay that forwards offers and answers between the two members of a room.

    The relay never inspects SDP. It only checks that sender and target share
    a room before forwarding.
    """

    def __init__(self, host: str, port: int, registry: Optional[RoomRegistry] = None) -> None:
        self._host = host
        self._port = port
        self._registry = registry or RoomRegistry()
        self._server: Optional[asyncio.AbstractServer] = None

    @property
    def registry(self) -> RoomRegistry:
        return self._registry

    @property
    def port(self) -> int:
        """Bound port; useful when started with port 0."""

        if self._server and self._server.sockets:
            return int(self._server.sockets[0].getsockname()[1])
        return self._port

    async def start(self) -> None:
        self._server = await asyncio.start_server(self._handle_client, self._host, self._port)
        sockets = ", ".join(str(sock.getsockname()) for sock in self._server.sockets or [])
        logger.info("Relay server listening on %s", sockets)

    async def stop(self) -> None:
        if self._server is None:
            return
        self._server.close()
        await self._registry.disconnect_all()
        await self._server.wait_closed()
        self._server = None

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        peer = writer.get_extra_info("peername")
        logger.info("Incoming relay connection from %s", peer)

        buffer = b""
        peer_id: Optional[str] = None
        try:
            # Expect initial HELLO
            while peer_id is None:
                data = await reader.read(4096)
                if not data:
                    raise ConnectionError("connection closed before handshake")
                buffer += data
                messages, buffer = decode_relay_stream(buffer)
                if not messages:
                    continue
                first, rest = messages[0], messages[1:]
                if parse_event(first["event"]) != RelayEvent.HELLO:
                    raise ProtocolError("Expected HELLO as first message")
                logger.debug("HELLO from %s (client %s)", peer, first["data"].get("clientVersion"))
                relay_peer = await self._registry.register(writer, peername=peer)
                peer_id = relay_peer.peer_id
                await self._registry.record_received(peer_id, len(data))
                await self._registry.send_to(peer_id, RelayEvent.WELCOME, Welcome(peer_id).to_dict())
                for message in rest:
                    await self._dispatch(peer_id, message["event"], message["data"])

            while True:
                data = await reader.read(4096)
                if not data:
                    break
                buffer += data
                await self._registry.record_received(peer_id, len(data))
                messages, buffer = decode_relay_stream(buffer)
                for message in messages:
                    await self._dispatch(peer_id, message["event"], message["data"])
        except (ConnectionError, asyncio.IncompleteReadError) as exc:
            logger.info("Relay connection %s closed: %s", peer, exc)
        except ProtocolError as exc:
            logger.warning("Dropping relay connection %s: %s", peer, exc)
        except Exception as exc:
            logger.exception("Error while handling relay client %s: %s", peer, exc)
        finally:
            if peer_id:
                room_id = await self._registry.unregister(peer_id)
                if room_id:
                    await self._registry.broadcast_room(room_id, RelayEvent.USER_LEFT, UserLeft(peer_id).to_dict())
            writer.close()
            try:
                await writer.wait_closed()
            except Exception:
                pass

    async def _dispatch(self, peer_id: str, raw_event: object, payload: dict) -> None:
        """Handle a single message; malformed payloads are reported back, not fatal."""

        try:
            event = parse_event(raw_event)
            await self._handle_message(peer_id, event, payload)
        except ProtocolError as exc:
            logger.warning("Rejected %r from %s: %s", raw_event, peer_id, exc)
            await self._registry.send_to(
                peer_id,
                RelayEvent.ERROR,
                RelayErrorPayload(str(exc), code="bad_request").to_dict(),
            )

    async def _handle_message(self, peer_id: str, event: RelayEvent, payload: dict) -> None:
        if event == RelayEvent.HEARTBEAT:
            await self._registry.mark_heartbeat(peer_id)
            return

        if event == RelayEvent.JOIN_ROOM:
            room_id = JoinRoom.from_dict(payload).room_id
            try:
                await self._registry.join_room(peer_id, room_id)
            except RoomFullError as exc:
                logger.info("Peer %s refused from %s: %s", peer_id, room_id, exc)
                await self._registry.send_to(
                    peer_id,
                    RelayEvent.ERROR,
                    RelayErrorPayload("Room is full", code="room_full").to_dict(),
                )
                return
            logger.info("Peer %s joined room %s", peer_id, room_id)
            await self._registry.broadcast_room(
                room_id,
                RelayEvent.USER_JOINED,
                UserJoined(peer_id).to_dict(),
                exclude={peer_id},
            )
            return

        if event == RelayEvent.SEND_CALL:
            offer = SendCall.from_dict(payload)
            if not await self._registry.share_room(peer_id, offer.to_peer_id):
                raise ProtocolError(f"peer {offer.to_peer_id} is not in your room")
            delivered = await self._registry.send_to(
                offer.to_peer_id,
                RelayEvent.RECEIVE_CALL,
                ReceiveCall(caller_id=peer_id, signal=offer.signal).to_dict(),
            )
            if delivered:
                await self._registry.record_event("call_offered", {"from": peer_id, "to": offer.to_peer_id})
            return

        if event == RelayEvent.ACCEPT_CALL:
            answer = AcceptCall.from_dict(payload)
            if not await self._registry.share_room(peer_id, answer.caller_id):
                raise ProtocolError(f"peer {answer.caller_id} is not in your room")
            delivered = await self._registry.send_to(
                answer.caller_id,
                RelayEvent.CALL_ACCEPTED,
                CallAccepted(from_peer_id=peer_id, signal=answer.signal).to_dict(),
            )
            if delivered:
                await self._registry.record_event("call_answered", {"from": peer_id, "to": answer.caller_id})
            return

        if event == RelayEvent.LEAVE_ROOM:
            request = LeaveRoom.from_dict(payload)
            if await self._registry.room_of(peer_id) != request.room_id:
                logger.debug("Peer %s is not in room %s; ignoring leave-room", peer_id, request.room_id)
                return
            room_id = await self._registry.leave_room(peer_id)
            if room_id:
                await self._registry.broadcast_room(room_id, RelayEvent.USER_LEFT, UserLeft(peer_id).to_dict())
            return

        logger.debug("Unhandled relay event %s from %s", event.value, peer_id)
