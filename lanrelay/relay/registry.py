"""Connected-client registry.

Tracks every open connection under a server-assigned id and is the only
place that writes to a connection.

Architecture
------------
- ``Client`` holds identity and metadata for one connection.
- ``ClientRegistry`` owns the id → client table:
  - assigns collision-free ids and greets each client with ``welcome``
  - best-effort delivery: a closed, slow or unknown recipient is skipped,
    never retried, never raised to the caller
  - caps the number of simultaneous clients

Usage from RelayServer
----------------------
>>> registry = ClientRegistry(endpoint, max_clients=256)
>>> client_id = await registry.register(ws, "192.168.1.20", "Mozilla/5.0")
>>> await registry.send(client_id, ErrorMessage(message="Room not found"))
>>> registry.unregister(client_id)
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any

from loguru import logger
from websockets.exceptions import ConnectionClosed
from websockets.protocol import State

from lanrelay.relay.endpoint import Endpoint
from lanrelay.relay.errors import LimitExceeded
from lanrelay.relay.ids import new_client_id, now_ms
from lanrelay.relay.protocol import Welcome, WelcomeServerInfo, WireModel, encode


@dataclass
class Client:
    """One connected client."""

    client_id: str
    transport: Any                 # websockets connection (anything with .send / .state)
    address: str = ""
    user_agent: str = ""
    connected_at: float = field(default_factory=time.time)
    room_id: str | None = None     # At most one room at a time

    def to_dict(self) -> dict[str, Any]:
        return {
            "client_id": self.client_id,
            "address": self.address,
            "user_agent": self.user_agent,
            "connected_at": self.connected_at,
            "room_id": self.room_id,
        }


class ClientRegistry:
    """Table of connected clients keyed by client id.

    Parameters
    ----------
    endpoint:
        Advertised address, echoed in ``welcome``.
    max_clients:
        Registration beyond this raises ``LimitExceeded``.
    send_timeout:
        Seconds a single send may take before the message is dropped.
    max_buffered_bytes:
        A recipient whose unsent backlog exceeds this gets nothing more until
        it drains; the message is dropped instead of queued.
    """

    def __init__(
        self,
        endpoint: Endpoint,
        *,
        max_clients: int = 256,
        send_timeout: float = 5.0,
        max_buffered_bytes: int = 1024 * 1024,
    ) -> None:
        self.endpoint = endpoint
        self.max_clients = max_clients
        self.send_timeout = send_timeout
        self.max_buffered_bytes = max_buffered_bytes
        self._clients: dict[str, Client] = {}

    # -- membership ----------------------------------------------------------

    async def register(self, transport: Any, address: str = "", user_agent: str = "") -> str:
        """Add a connection and send it ``welcome``. Returns the new client id.

        The client is stored before the greeting goes out, so it is already
        addressable by the time it can send anything.
        """
        if len(self._clients) >= self.max_clients:
            raise LimitExceeded(f"Server full ({self.max_clients} clients)")

        client_id = new_client_id()
        while client_id in self._clients:
            client_id = new_client_id()

        client = Client(
            client_id=client_id,
            transport=transport,
            address=address,
            user_agent=user_agent,
        )
        self._clients[client_id] = client
        logger.info(
            "[Relay/Registry] client {} connected from {} ({} total)",
            client_id, address or "?", len(self._clients),
        )

        await self.send(client_id, Welcome(
            client_id=client_id,
            server_info=WelcomeServerInfo(
                address=self.endpoint.address,
                port=self.endpoint.port,
                timestamp=now_ms(),
            ),
        ))
        return client_id

    def unregister(self, client_id: str) -> Client | None:
        """Remove a client. Idempotent; returns the removed record or None."""
        client = self._clients.pop(client_id, None)
        if client is not None:
            logger.info(
                "[Relay/Registry] client {} disconnected ({} remaining)",
                client_id, len(self._clients),
            )
        return client

    def lookup(self, client_id: str) -> Client | None:
        return self._clients.get(client_id)

    def set_room(self, client_id: str, room_id: str | None) -> None:
        client = self._clients.get(client_id)
        if client is not None:
            client.room_id = room_id

    def list_others(self, excluding_id: str | None = None) -> list[Client]:
        """All clients except *excluding_id*, in connection order."""
        return [c for cid, c in self._clients.items() if cid != excluding_id]

    def all_clients(self) -> list[Client]:
        return list(self._clients.values())

    @property
    def count(self) -> int:
        return len(self._clients)

    def __contains__(self, client_id: object) -> bool:
        return client_id in self._clients

    # -- delivery ------------------------------------------------------------

    async def send(self, client_id: str, message: WireModel | dict[str, Any]) -> bool:
        """Deliver one message. Returns False if it was dropped."""
        return await self.send_text(client_id, encode(message))

    async def send_text(self, client_id: str, text: str) -> bool:
        """Deliver an already-encoded frame. Returns False if it was dropped."""
        client = self._clients.get(client_id)
        if client is None:
            logger.debug("[Relay/Registry] drop message for unknown client {}", client_id)
            return False

        transport = client.transport
        if getattr(transport, "state", State.OPEN) != State.OPEN:
            logger.debug("[Relay/Registry] drop message for closed client {}", client_id)
            return False

        backlog = _buffered_bytes(transport)
        if backlog > self.max_buffered_bytes:
            logger.warning(
                "[Relay/Registry] {} has {} bytes unsent, message dropped", client_id, backlog,
            )
            return False

        try:
            await asyncio.wait_for(transport.send(text), timeout=self.send_timeout)
            return True
        except asyncio.TimeoutError:
            logger.warning(
                "[Relay/Registry] send to {} timed out after {}s, message dropped",
                client_id, self.send_timeout,
            )
        except ConnectionClosed:
            logger.debug("[Relay/Registry] client {} closed during send", client_id)
        return False


def _buffered_bytes(connection: Any) -> int:
    """Bytes queued in the connection's transport and not yet written."""
    transport = getattr(connection, "transport", None)
    size = getattr(transport, "get_write_buffer_size", None)
    return size() if callable(size) else 0
