"""Rooms: named sets of clients that see each other's signaling.

A room exists exactly while it has members.  It is created by ``create-room``
or on demand by the first ``join-room`` naming it, and deleted the instant its
last member leaves; a later join with the same id gets a fresh room.

Architecture
------------
- ``Room``: id, optional display name, ordered member set
- ``RoomManager``: membership changes, room events, room broadcast

Every membership change is applied synchronously before any event is sent,
so the room table and ``Client.room_id`` always agree even while sends to
slow clients are still in flight.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import quote

from loguru import logger

from lanrelay.relay.endpoint import Endpoint
from lanrelay.relay.errors import LimitExceeded, ProtocolError
from lanrelay.relay.ids import new_room_id, now_ms
from lanrelay.relay.protocol import (
    ClientJoined,
    ClientLeft,
    QRData,
    RoomCreated,
    RoomJoined,
    WireModel,
    encode,
)
from lanrelay.relay.registry import ClientRegistry


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------

@dataclass
class Room:
    """One room and its members (insertion-ordered, no duplicates)."""

    room_id: str
    name: str | None = None
    members: dict[str, None] = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)
    creator_id: str | None = None

    @property
    def display_name(self) -> str:
        return self.name or f"Room {self.room_id}"

    @property
    def member_ids(self) -> list[str]:
        return list(self.members)

    def to_dict(self) -> dict[str, Any]:
        return {
            "room_id": self.room_id,
            "name": self.display_name,
            "members": self.member_ids,
            "created_at": self.created_at,
            "creator_id": self.creator_id,
        }


# ---------------------------------------------------------------------------
# Room manager
# ---------------------------------------------------------------------------

class RoomManager:
    """Owns the room table and keeps it consistent with the client registry.

    Parameters
    ----------
    registry:
        Client registry used for membership bookkeeping and delivery.
    endpoint:
        Advertised address, used to build the ``qrData`` join link.
    max_rooms:
        Creating a room beyond this raises ``LimitExceeded``.
    max_room_name_len / max_room_id_len:
        Display names are trimmed and truncated; longer ids are rejected.
    """

    def __init__(
        self,
        registry: ClientRegistry,
        endpoint: Endpoint,
        *,
        max_rooms: int = 128,
        max_room_name_len: int = 64,
        max_room_id_len: int = 64,
    ) -> None:
        self.registry = registry
        self.endpoint = endpoint
        self.max_rooms = max_rooms
        self.max_room_name_len = max_room_name_len
        self.max_room_id_len = max_room_id_len
        self._rooms: dict[str, Room] = {}

    # -- queries -------------------------------------------------------------

    def get_room(self, room_id: str) -> Room | None:
        return self._rooms.get(room_id)

    def members(self, room_id: str) -> list[str]:
        room = self._rooms.get(room_id)
        return room.member_ids if room else []

    def list_rooms(self) -> list[Room]:
        return list(self._rooms.values())

    @property
    def count(self) -> int:
        return len(self._rooms)

    # -- membership ----------------------------------------------------------

    async def create_room(self, client_id: str, name: str | None = None) -> Room | None:
        """Create a fresh room with *client_id* as its only member.

        The client leaves its current room first.  Replies ``room-created``.
        Returns None if the client is not registered.
        """
        client = self.registry.lookup(client_id)
        if client is None:
            logger.debug("[Relay/Rooms] create_room from unknown client {}", client_id)
            return None
        self._check_capacity(client_id)

        left = self._detach(client_id)

        room_id = new_room_id()
        while room_id in self._rooms:
            room_id = new_room_id()
        room = Room(
            room_id=room_id,
            name=self._clean_name(name),
            members={client_id: None},
            creator_id=client_id,
        )
        self._rooms[room_id] = room
        self.registry.set_room(client_id, room_id)
        logger.info("[Relay/Rooms] {} created room {} ({!r})", client_id, room_id, room.display_name)

        await self._announce_left(client_id, left)
        await self.registry.send(client_id, RoomCreated(
            room_id=room_id,
            name=room.display_name,
            qr_data=QRData(
                address=self.endpoint.address,
                port=self.endpoint.port,
                room_id=room_id,
                url=f"{self.endpoint.http_url}/?room={quote(room_id, safe='')}",
                timestamp=now_ms(),
            ),
        ))
        return room

    async def join_room(self, client_id: str, room_id: str) -> Room | None:
        """Add *client_id* to *room_id*, creating the room if needed.

        Existing members get ``client-joined``; the joiner gets
        ``room-joined`` listing everyone else.  Joining the room one is
        already in only re-sends the snapshot.
        """
        if not isinstance(room_id, str) or not room_id:
            raise ProtocolError("Room id must be a non-empty string")
        if len(room_id) > self.max_room_id_len:
            raise ProtocolError(f"Room id longer than {self.max_room_id_len} characters")

        client = self.registry.lookup(client_id)
        if client is None:
            logger.debug("[Relay/Rooms] join_room from unknown client {}", client_id)
            return None

        room = self._rooms.get(room_id)
        if room is not None and client.room_id == room_id:
            await self.registry.send(client_id, RoomJoined(
                room_id=room_id,
                clients=[m for m in room.members if m != client_id],
            ))
            return room

        if room is None:
            self._check_capacity(client_id)

        left = self._detach(client_id)

        room = self._rooms.get(room_id)
        if room is None:
            room = Room(room_id=room_id, creator_id=client_id)
            self._rooms[room_id] = room
            logger.info("[Relay/Rooms] room {} created on join by {}", room_id, client_id)
        room.members[client_id] = None
        self.registry.set_room(client_id, room_id)
        members = room.member_ids
        logger.info("[Relay/Rooms] {} joined room {} ({} members)", client_id, room_id, len(members))

        await self._announce_left(client_id, left)
        await self.broadcast(
            room_id,
            ClientJoined(client_id=client_id, room_clients=members),
            exclude_id=client_id,
        )
        await self.registry.send(client_id, RoomJoined(
            room_id=room_id,
            clients=[m for m in members if m != client_id],
        ))
        return room

    async def leave_room(self, client_id: str) -> str | None:
        """Remove *client_id* from its room. Returns the room id it left, if any."""
        left = self._detach(client_id)
        if left is None:
            return None
        await self._announce_left(client_id, left)
        return left[0]

    # -- delivery ------------------------------------------------------------

    async def broadcast(
        self,
        room_id: str,
        message: WireModel | dict[str, Any],
        exclude_id: str | None = None,
    ) -> int:
        """Send *message* to every member of *room_id* except *exclude_id*.

        Fan-out runs over the member set as it is at call time, to all
        recipients at once so one slow member cannot hold up the rest.
        Returns the number of members the message was delivered to.
        """
        room = self._rooms.get(room_id)
        if room is None:
            return 0
        recipients = [m for m in room.members if m != exclude_id]
        if not recipients:
            return 0

        text = encode(message)
        results = await asyncio.gather(
            *(self.registry.send_text(member_id, text) for member_id in recipients)
        )
        return sum(results)

    # -- internals -----------------------------------------------------------

    def _detach(self, client_id: str) -> tuple[str, list[str]] | None:
        """Synchronously remove a client from its room.

        Returns ``(room_id, remaining_members)`` or None if it had no room.
        An emptied room is deleted here.
        """
        client = self.registry.lookup(client_id)
        if client is None or client.room_id is None:
            return None

        room_id = client.room_id
        client.room_id = None
        room = self._rooms.get(room_id)
        if room is None:
            return None
        room.members.pop(client_id, None)

        if not room.members:
            del self._rooms[room_id]
            logger.info("[Relay/Rooms] room {} empty, deleted", room_id)
            return room_id, []

        logger.info(
            "[Relay/Rooms] {} left room {} ({} remaining)", client_id, room_id, len(room.members),
        )
        return room_id, room.member_ids

    async def _announce_left(self, client_id: str, left: tuple[str, list[str]] | None) -> None:
        if left is None:
            return
        room_id, remaining = left
        if remaining:
            await self.broadcast(room_id, ClientLeft(client_id=client_id, room_clients=remaining))

    def _check_capacity(self, client_id: str) -> None:
        """Raise ``LimitExceeded`` if one more room would pass ``max_rooms``.

        A room the client is about to empty by leaving does not count.
        """
        rooms = len(self._rooms)
        client = self.registry.lookup(client_id)
        current = self._rooms.get(client.room_id) if client and client.room_id else None
        if current is not None and list(current.members) == [client_id]:
            rooms -= 1
        if rooms >= self.max_rooms:
            raise LimitExceeded(f"Room limit reached ({self.max_rooms} rooms)")

    def _clean_name(self, name: str | None) -> str | None:
        if not isinstance(name, str):
            return None
        name = name.strip()[: self.max_room_name_len]
        return name or None
