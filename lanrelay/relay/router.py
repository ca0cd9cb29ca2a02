"""Message router: one inbound frame in, zero or more frames out.

Each frame is parsed into the closed ``ClientMessage`` union and handed to
the handler registered for its kind.  ``dispatch`` is the error boundary:
nothing raised by parsing or by a handler escapes it.  The sender gets at
most one ``error`` reply per frame; other clients never hear about it.

Relaying
--------
- Signaling (``webrtc-*``) goes to every other member of the sender's room.
- File messages (``file-*``) go to ``targetClient``; one naming a client
  that is gone is dropped.  Without a target they go to the sender's room.

Relayed frames keep every field the sender wrote; ``from`` is always the
sender id the relay assigned.  File transfers are tracked without their
bytes so declared bounds are enforced and a disconnect can cancel them.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable

from loguru import logger

from lanrelay.relay.errors import LimitExceeded, ProtocolError, UnknownMessageType
from lanrelay.relay.protocol import (
    CreateRoom,
    DeviceDiscovery,
    ErrorMessage,
    FileCancel,
    FileCancelNotice,
    FileChunk,
    FileComplete,
    FileMessage,
    FileTransferStart,
    JoinRoom,
    MsgType,
    Signal,
    parse_message,
    relay_payload,
)
from lanrelay.relay.registry import ClientRegistry
from lanrelay.relay.rooms import RoomManager
from lanrelay.relay.status import StatusResponder
from lanrelay.relay.transfer import TransferCoordinator, TransferSession

# handler(client_id, parsed message, raw dict as received)
Handler = Callable[[str, Any, dict[str, Any]], Awaitable[None]]

DISCONNECT_REASON = "peer disconnected"


class MessageRouter:
    """Dispatches client frames to rooms, status and relay handlers.

    Parameters
    ----------
    registry / rooms / status:
        Server components the handlers act on.
    transfers:
        Relay-mode coordinator (``retain_chunks=False``,
        ``scope_by_sender=True``) used for bounds checks and disconnect
        cleanup.
    """

    def __init__(
        self,
        registry: ClientRegistry,
        rooms: RoomManager,
        status: StatusResponder,
        transfers: TransferCoordinator,
    ) -> None:
        self.registry = registry
        self.rooms = rooms
        self.status = status
        self.transfers = transfers
        self._handlers: dict[MsgType, Handler] = {
            MsgType.CREATE_ROOM: self._on_create_room,
            MsgType.JOIN_ROOM: self._on_join_room,
            MsgType.DEVICE_DISCOVERY: self._on_device_discovery,
            MsgType.WEBRTC_OFFER: self._on_signal,
            MsgType.WEBRTC_ANSWER: self._on_signal,
            MsgType.WEBRTC_ICE_CANDIDATE: self._on_signal,
            MsgType.FILE_TRANSFER_START: self._on_file,
            MsgType.FILE_CHUNK: self._on_file,
            MsgType.FILE_COMPLETE: self._on_file,
            MsgType.FILE_CANCEL: self._on_file,
        }

    # -- dispatch ------------------------------------------------------------

    async def dispatch(self, client_id: str, raw: str | bytes) -> None:
        """Handle one frame from *client_id*. Never raises."""
        try:
            message, data = parse_message(raw)
            handler = self._handlers[MsgType(message.type)]
            await handler(client_id, message, data)
        except UnknownMessageType as exc:
            logger.warning("[Relay/Router] {} sent unknown message type {!r}", client_id, exc.kind)
            await self._reply_error(client_id, f"Unknown message type: {exc.kind}")
        except ProtocolError as exc:
            logger.warning("[Relay/Router] bad message from {}: {}", client_id, exc)
            await self._reply_error(client_id, str(exc))
        except LimitExceeded as exc:
            logger.warning("[Relay/Router] limit hit by {}: {}", client_id, exc)
            await self._reply_error(client_id, str(exc))
        except Exception:
            logger.exception("[Relay/Router] error handling message from {}", client_id)
            await self._reply_error(client_id, "Internal server error")

    async def _reply_error(self, client_id: str, text: str) -> None:
        await self.registry.send(client_id, ErrorMessage(message=text))

    # -- disconnect ----------------------------------------------------------

    async def disconnect(self, client_id: str) -> None:
        """Single cleanup path for a closed connection. Safe to call twice.

        Leaves the room (members get ``client-left``), cancels every tracked
        transfer the client was sending or receiving, unregisters it, then
        tells each surviving counterpart with ``file-cancel``.
        """
        await self.rooms.leave_room(client_id)
        cancelled = self.transfers.cancel_owner(client_id, DISCONNECT_REASON)
        self.registry.unregister(client_id)

        for session in cancelled:
            counterpart = _counterpart(session, client_id)
            if counterpart is None or counterpart not in self.registry:
                continue
            await self.registry.send(counterpart, FileCancelNotice(
                transfer_id=session.wire_id,
                reason=DISCONNECT_REASON,
                sender=client_id,
            ))

    # -- rooms / discovery ---------------------------------------------------

    async def _on_create_room(self, client_id: str, msg: CreateRoom, data: dict[str, Any]) -> None:
        await self.rooms.create_room(client_id, msg.room_name)

    async def _on_join_room(self, client_id: str, msg: JoinRoom, data: dict[str, Any]) -> None:
        await self.rooms.join_room(client_id, msg.room_id)

    async def _on_device_discovery(
        self, client_id: str, msg: DeviceDiscovery, data: dict[str, Any],
    ) -> None:
        await self.registry.send(client_id, self.status.device_list(client_id))

    # -- relays --------------------------------------------------------------

    async def _on_signal(self, client_id: str, msg: Signal, data: dict[str, Any]) -> None:
        client = self.registry.lookup(client_id)
        if client is None or client.room_id is None:
            logger.debug("[Relay/Router] {} from {} outside any room, dropped", msg.type, client_id)
            return
        await self.rooms.broadcast(
            client.room_id, relay_payload(data, client_id), exclude_id=client_id,
        )

    async def _on_file(self, client_id: str, msg: FileMessage, data: dict[str, Any]) -> None:
        target = msg.target_client
        if target and target not in self.registry:
            logger.debug(
                "[Relay/Router] {} from {} for departed client {}, dropped",
                msg.type, client_id, target,
            )
            return

        self._track_transfer(client_id, msg)
        payload = relay_payload(data, client_id)
        if target:
            await self.registry.send(target, payload)
            return

        client = self.registry.lookup(client_id)
        if client is not None and client.room_id is not None:
            await self.rooms.broadcast(client.room_id, payload, exclude_id=client_id)
        else:
            logger.debug("[Relay/Router] {} from {} has no target and no room, dropped", msg.type, client_id)

    def _track_transfer(self, client_id: str, msg: FileMessage) -> None:
        """Apply relay-side bookkeeping. Raises before anything is relayed."""
        if isinstance(msg, FileTransferStart):
            self.transfers.start(
                msg.transfer_id,
                msg.file_name,
                msg.file_size,
                msg.total_chunks,
                sender_id=client_id,
                receiver_id=msg.target_client or None,
            )
            return

        session = self.transfers.find(msg.transfer_id, client_id)
        if session is None:
            # Never saw the start (or already finished): relay untouched
            return

        if isinstance(msg, FileChunk):
            if session.sender_id == client_id:
                self.transfers.add_chunk(
                    msg.transfer_id, msg.chunk_index, b"", msg.is_last, sender_id=client_id,
                )
        elif isinstance(msg, FileComplete):
            if session.sender_id == client_id:
                self.transfers.finish(msg.transfer_id, sender_id=client_id)
        elif isinstance(msg, FileCancel):
            self.transfers.cancel(
                msg.transfer_id, msg.reason or "cancelled", sender_id=session.sender_id,
            )


def _counterpart(session: TransferSession, client_id: str) -> str | None:
    if session.sender_id == client_id:
        return session.receiver_id
    return session.sender_id
