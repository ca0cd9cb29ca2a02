"""Python client for the relay.

Speaks the same protocol as the browser app: joins rooms, exchanges
signaling, and sends or receives chunked files.

Sending
-------
``send_file`` splits the bytes into ``chunk_size`` slices, sends
``file-transfer-start``, one ``file-chunk`` per slice (``isLast`` on the
final one) and ``file-complete``.  Every send is bounded by
``chunk_timeout``; a send that does not finish in time aborts the transfer
with ``TransferFailed`` after a best-effort ``file-cancel``.

Receiving
---------
Inbound ``file-*`` messages drive a local ``TransferCoordinator``.  Finished
files land in ``received_files``; ``wait_for_file`` awaits one.  A sender
that leaves the room, or a dropped connection, cancels the affected
sessions.  A transfer that finishes with gaps is reported back to its
sender with ``file-cancel``.

>>> client = RelayClient("ws://192.168.1.10:8080/ws")
>>> await client.connect()
>>> room = await client.create_room("demo")
>>> await client.send_file(b"...", "notes.txt", target=peer_id)
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
import time
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from typing import Any, Callable

from loguru import logger
from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed

from lanrelay.relay.errors import LimitExceeded, ProtocolError, RelayError, TransferFailed
from lanrelay.relay.ids import new_transfer_id
from lanrelay.relay.protocol import (
    SIGNALING_TYPES,
    CreateRoom,
    DeviceDiscovery,
    FileCancel,
    FileChunk,
    FileComplete,
    FileTransferStart,
    JoinRoom,
    MsgType,
    WireModel,
    transfer_key,
    validate_message,
)
from lanrelay.relay.resilience import supervised_task
from lanrelay.relay.transfer import (
    DEFAULT_CHUNK_SIZE,
    TransferCoordinator,
    TransferSession,
    TransferState,
)

# Callback type: receives every decoded server message.
MessageCallback = Callable[[dict[str, Any]], Any]


@dataclass
class ReceivedFile:
    """A file reassembled from chunks."""

    transfer_id: str
    file_name: str
    sender_id: str
    data: bytes
    received_at: float = field(default_factory=time.time)


class RelayClient:
    """One connection to a relay server.

    Parameters
    ----------
    url:
        WebSocket URL, e.g. ``ws://192.168.1.10:8080/ws``.
    chunk_size:
        Raw bytes per outgoing chunk (before base64).
    chunk_timeout:
        Seconds each outgoing send may take.
    lenient_completion:
        Accept incoming files with gaps once the last chunk is flagged.
    max_received_files:
        Completed incoming files kept in ``received_files``; the oldest is
        evicted first.  ``pop_file`` hands one over and forgets it.
    """

    def __init__(
        self,
        url: str,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        chunk_timeout: float = 5.0,
        lenient_completion: bool = False,
        max_transfers: int = 64,
        max_chunks: int = 65536,
        max_file_size: int = 512 * 1024 * 1024,
        max_received_files: int = 64,
    ) -> None:
        self.url = url
        self.chunk_size = chunk_size
        self.chunk_timeout = chunk_timeout
        self.max_received_files = max_received_files
        self.client_id: str | None = None
        self.server_info: dict[str, Any] = {}
        self.room_id: str | None = None
        self.room_clients: list[str] = []
        self.received_files: dict[str, ReceivedFile] = {}

        self.transfers = TransferCoordinator(
            retain_chunks=True,
            max_transfers=max_transfers,
            max_chunks=max_chunks,
            max_file_size=max_file_size,
            lenient_completion=lenient_completion,
        )
        self.transfers.on_complete(self._on_file_complete)
        self.transfers.on_cancel(self._on_file_cancelled)

        self._ws: ClientConnection | None = None
        self._reader: asyncio.Task | None = None
        self._handlers: list[MessageCallback] = []
        self._waiters: dict[str, list[asyncio.Future]] = {}
        self._file_waiters: dict[str, list[asyncio.Future]] = {}
        self._peer_cancels: dict[str, str] = {}   # outgoing transfer key → reason
        self._outgoing: set[str] = set()          # keys send_file is still sending

    # -- handler registration ------------------------------------------------

    def on_message(self, handler: MessageCallback) -> None:
        """Register a callback (sync or async) invoked for every server message."""
        self._handlers.append(handler)

    # -- lifecycle -----------------------------------------------------------

    @property
    def connected(self) -> bool:
        return self._ws is not None and self.client_id is not None

    async def connect(self, timeout: float = 5.0) -> str:
        """Open the connection and wait for ``welcome``. Returns our client id."""
        self._ws = await connect(self.url)
        welcome = self._expect(MsgType.WELCOME.value)
        self._reader = supervised_task(self._read_loop(), name="relay-client-reader")
        try:
            msg = await asyncio.wait_for(welcome, timeout)
        except BaseException:
            await self.close()
            raise
        self.client_id = msg["clientId"]
        self.server_info = msg.get("serverInfo") or {}
        logger.info("[Relay/Client] connected to {} as {}", self.url, self.client_id)
        return self.client_id

    async def close(self) -> None:
        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()
        reader, self._reader = self._reader, None
        if reader is not None and not reader.done():
            await asyncio.wait([reader], timeout=self.chunk_timeout)

    async def __aenter__(self) -> RelayClient:
        await self.connect()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    # -- requests ------------------------------------------------------------

    async def create_room(self, name: str | None = None, timeout: float = 5.0) -> dict[str, Any]:
        """Create a room. Returns the ``room-created`` message."""
        return await self._request(
            CreateRoom(type="create-room", room_name=name),
            MsgType.ROOM_CREATED,
            timeout,
        )

    async def join_room(self, room_id: str, timeout: float = 5.0) -> dict[str, Any]:
        """Join a room. Returns the ``room-joined`` message."""
        return await self._request(
            JoinRoom(type="join-room", room_id=room_id),
            MsgType.ROOM_JOINED,
            timeout,
        )

    async def discover(self, timeout: float = 5.0) -> dict[str, Any]:
        """Ask for the device list. Returns the ``device-list`` message."""
        return await self._request(
            DeviceDiscovery(type="device-discovery"), MsgType.DEVICE_LIST, timeout,
        )

    async def send_signal(self, kind: str, payload: Any, **extra: Any) -> None:
        """Send a WebRTC signaling message to the rest of the room."""
        kind = getattr(kind, "value", kind)
        if kind not in SIGNALING_TYPES:
            raise ValueError(f"not a signaling message type: {kind!r}")
        await self.send({"type": kind, "payload": payload, **extra})

    # -- sending files -------------------------------------------------------

    async def send_file(
        self,
        data: bytes,
        file_name: str,
        target: str | None = None,
        *,
        transfer_id: Any = None,
        chunk_size: int | None = None,
    ) -> str:
        """Send *data* as a chunked transfer. Returns the transfer id.

        Raises ``TransferFailed`` when a send times out, the connection
        drops, or the receiver cancels.
        """
        if self._ws is None:
            raise RelayError("not connected")
        tid = transfer_id if transfer_id is not None else new_transfer_id()
        key = transfer_key(tid)
        size = chunk_size or self.chunk_size
        total = max(1, -(-len(data) // size))  # ceil div
        self._outgoing.add(key)

        try:
            await self._send_bounded(FileTransferStart(
                type="file-transfer-start",
                transfer_id=tid,
                file_name=file_name,
                file_size=len(data),
                total_chunks=total,
                target_client=target,
            ))
            for index in range(total):
                if key in self._peer_cancels:
                    raise TransferFailed(key, f"cancelled by receiver: {self._peer_cancels[key]}")
                piece = data[index * size:(index + 1) * size]
                await self._send_bounded(FileChunk(
                    type="file-chunk",
                    transfer_id=tid,
                    chunk_index=index,
                    chunk=base64.b64encode(piece).decode("ascii"),
                    is_last=index == total - 1,
                    target_client=target,
                ))
            await self._send_bounded(FileComplete(
                type="file-complete", transfer_id=tid, target_client=target,
            ))
        except asyncio.TimeoutError as exc:
            await self._cancel_outgoing(tid, target, "chunk send timed out")
            raise TransferFailed(key, f"send timed out after {self.chunk_timeout}s") from exc
        except ConnectionClosed as exc:
            raise TransferFailed(key, "connection closed") from exc
        finally:
            self._outgoing.discard(key)
            self._peer_cancels.pop(key, None)

        logger.info("[Relay/Client] sent {!r} ({} bytes, {} chunks)", file_name, len(data), total)
        return key

    async def wait_for_file(self, transfer_id: Any, timeout: float = 10.0) -> ReceivedFile:
        """Wait until an incoming transfer completes. Raises ``TransferFailed``."""
        key = transfer_key(transfer_id)
        if key in self.received_files:
            return self.received_files[key]
        fut = asyncio.get_running_loop().create_future()
        self._file_waiters.setdefault(key, []).append(fut)
        try:
            return await asyncio.wait_for(fut, timeout)
        finally:
            waiters = self._file_waiters.get(key, [])
            if fut in waiters:
                waiters.remove(fut)
            if not waiters:
                self._file_waiters.pop(key, None)

    def pop_file(self, transfer_id: Any) -> ReceivedFile | None:
        """Take a completed file out of ``received_files``."""
        return self.received_files.pop(transfer_key(transfer_id), None)

    async def _cancel_outgoing(self, transfer_id: Any, target: str | None, reason: str) -> None:
        try:
            await self._send_bounded(FileCancel(
                type="file-cancel", transfer_id=transfer_id, reason=reason, target_client=target,
            ))
        except (asyncio.TimeoutError, ConnectionClosed, RelayError) as exc:
            logger.debug("[Relay/Client] could not send file-cancel for {}: {}", transfer_id, exc)

    # -- receiving -----------------------------------------------------------

    async def _read_loop(self) -> None:
        ws = self._ws
        if ws is None:
            return
        try:
            async for raw in ws:
                try:
                    msg = json.loads(raw)
                except json.JSONDecodeError:
                    logger.warning("[Relay/Client] ignoring non-JSON frame")
                    continue
                if isinstance(msg, dict):
                    await self._handle(msg)
        except ConnectionClosed as exc:
            logger.debug("[Relay/Client] connection closed: {}", exc)
        finally:
            self._on_connection_lost()

    async def _handle(self, msg: dict[str, Any]) -> None:
        kind = msg.get("type")

        if kind == MsgType.ROOM_CREATED:
            self.room_id = msg.get("roomId")
            self.room_clients = []
        elif kind == MsgType.ROOM_JOINED:
            self.room_id = msg.get("roomId")
            self.room_clients = list(msg.get("clients") or [])
        elif kind == MsgType.CLIENT_JOINED:
            self.room_clients = self._others(msg.get("roomClients"))
        elif kind == MsgType.CLIENT_LEFT:
            self.room_clients = self._others(msg.get("roomClients"))
            departed = msg.get("clientId")
            if departed:
                self.transfers.cancel_owner(departed, "sender left the room")
        elif kind == MsgType.FILE_CANCEL:
            self._on_peer_cancel(msg)
        elif kind in (MsgType.FILE_TRANSFER_START, MsgType.FILE_CHUNK, MsgType.FILE_COMPLETE):
            self._receive_file_message(msg)

        if isinstance(kind, str):
            self._resolve(kind, msg)

        for handler in self._handlers:
            try:
                result = handler(msg)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as exc:
                logger.warning("[Relay/Client] handler error: {}", exc)

    def _receive_file_message(self, msg: dict[str, Any]) -> None:
        sender = msg.get("from") or ""
        try:
            parsed = validate_message(msg)
            if isinstance(parsed, FileTransferStart):
                self.transfers.start(
                    parsed.transfer_id,
                    parsed.file_name,
                    parsed.file_size,
                    parsed.total_chunks,
                    sender_id=sender,
                    receiver_id=self.client_id,
                )
            elif isinstance(parsed, FileChunk):
                data = base64.b64decode(parsed.chunk, validate=True)
                self.transfers.add_chunk(
                    parsed.transfer_id, parsed.chunk_index, data, parsed.is_last,
                )
            elif isinstance(parsed, FileComplete):
                self.transfers.finish(parsed.transfer_id)
        except binascii.Error as exc:
            logger.warning("[Relay/Client] bad chunk encoding from {}: {}", sender, exc)
        except (ProtocolError, LimitExceeded) as exc:
            logger.warning("[Relay/Client] rejected file message from {}: {}", sender, exc)
            transfer_id = msg.get("transferId")
            if transfer_id is not None and sender:
                supervised_task(
                    self._cancel_outgoing(transfer_id, sender, str(exc)),
                    name="relay-client-cancel",
                )

    def _on_peer_cancel(self, msg: dict[str, Any]) -> None:
        transfer_id = msg.get("transferId")
        if transfer_id is None:
            return
        reason = msg.get("reason") or "cancelled"
        key = transfer_key(transfer_id)
        # Either an incoming transfer the sender gave up on, or one of ours
        # the receiver refused.
        if self.transfers.cancel(transfer_id, reason) is not None:
            return
        if key in self._outgoing:
            self._peer_cancels[key] = reason
        else:
            logger.debug("[Relay/Client] file-cancel for finished transfer {} ignored", key)

    def _on_file_complete(self, session: TransferSession, data: bytes | None) -> None:
        received = ReceivedFile(
            transfer_id=session.transfer_id,
            file_name=session.file_name,
            sender_id=session.sender_id,
            data=data or b"",
        )
        self.received_files[session.transfer_id] = received
        while len(self.received_files) > self.max_received_files:
            oldest = next(iter(self.received_files))
            del self.received_files[oldest]
        for fut in self._file_waiters.pop(session.transfer_id, []):
            if not fut.done():
                fut.set_result(received)

    def _on_file_cancelled(self, session: TransferSession, reason: str) -> None:
        if session.state == TransferState.FAILED and session.sender_id and self._ws is not None:
            supervised_task(
                self._cancel_outgoing(session.wire_id, session.sender_id, reason),
                name="relay-client-cancel",
            )
        for fut in self._file_waiters.pop(session.transfer_id, []):
            if not fut.done():
                fut.set_exception(TransferFailed(session.transfer_id, reason))

    def _on_connection_lost(self) -> None:
        for status in self.transfers.list_sessions():
            self.transfers.cancel(status["transfer_id"], "connection closed")
        waiters, self._waiters = self._waiters, {}
        for futures in waiters.values():
            for fut in futures:
                if not fut.done():
                    fut.set_exception(ConnectionError("relay connection closed"))

    def _others(self, members: Any) -> list[str]:
        return [m for m in (members or []) if m != self.client_id]

    # -- plumbing ------------------------------------------------------------

    async def send(self, message: WireModel | dict[str, Any]) -> None:
        """Send one raw message (model or dict)."""
        if self._ws is None:
            raise RelayError("not connected")
        if isinstance(message, WireModel):
            message = message.dump(exclude_none=True)
        await self._ws.send(json.dumps(message, ensure_ascii=False))

    async def _send_bounded(self, message: WireModel | dict[str, Any]) -> None:
        await asyncio.wait_for(self.send(message), self.chunk_timeout)

    def _expect(self, kind: str) -> asyncio.Future:
        fut = asyncio.get_running_loop().create_future()
        self._waiters.setdefault(kind, []).append(fut)
        return fut

    def _resolve(self, kind: str, msg: dict[str, Any]) -> None:
        for fut in self._waiters.pop(kind, []):
            if not fut.done():
                fut.set_result(msg)

    def _discard(self, kind: str, fut: asyncio.Future) -> None:
        waiters = self._waiters.get(kind)
        if waiters and fut in waiters:
            waiters.remove(fut)
            if not waiters:
                del self._waiters[kind]
        if not fut.done():
            fut.cancel()
        elif not fut.cancelled():
            fut.exception()  # mark retrieved

    async def _request(
        self,
        message: WireModel,
        reply: MsgType,
        timeout: float,
    ) -> dict[str, Any]:
        """Send *message* and wait for *reply* or an ``error``, whichever comes first."""
        reply_fut = self._expect(reply.value)
        error_fut = self._expect(MsgType.ERROR.value)
        try:
            await self.send(message)
            done, _ = await asyncio.wait(
                {reply_fut, error_fut}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED,
            )
            if reply_fut in done:
                return reply_fut.result()
            if error_fut in done:
                raise ProtocolError(error_fut.result().get("message", "error"))
            raise asyncio.TimeoutError(f"no {reply.value} within {timeout}s")
        finally:
            self._discard(reply.value, reply_fut)
            self._discard(MsgType.ERROR.value, error_fut)


def probe_status(http_url: str, status_path: str = "/api/status", timeout: float = 2.0) -> dict[str, Any] | None:
    """Return the relay's status snapshot, or None if it is not reachable.

    Blocking; call through ``asyncio.to_thread`` from async code.
    """
    url = http_url.rstrip("/") + status_path
    try:
        with urllib.request.urlopen(url, timeout=timeout) as resp:
            data = json.loads(resp.read().decode("utf-8"))
    except (urllib.error.URLError, OSError, ValueError) as exc:
        logger.debug("[Relay/Client] status probe {} failed: {}", url, exc)
        return None
    if isinstance(data, dict) and data.get("status") == "running":
        return data
    return None
