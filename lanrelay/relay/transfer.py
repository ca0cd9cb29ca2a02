"""Chunked file-transfer coordination.

A file travels as ``file-transfer-start`` (declares ``totalChunks``), then
``file-chunk`` messages carrying a base64 slice and its ``chunkIndex``, then
``file-complete``.  Chunks may arrive in any order; each is stored at its
declared index, so the reconstructed bytes never depend on arrival order.

Architecture
------------
- ``TransferState``: lifecycle of one transfer
- ``TransferSession``: slot array and bookkeeping for one transfer
- ``TransferCoordinator``: session table, completion, cancellation

The same coordinator runs on both sides of the wire:

- receiving clients keep the bytes (``retain_chunks=True``) and get the
  reconstructed file through ``on_complete``;
- the relay only records arrival (``retain_chunks=False``) to enforce the
  declared bounds and to know whom to notify when a peer disconnects.
  Transfer ids are minted by clients, so the relay scopes its table per
  sender (``scope_by_sender=True``): two senders may reuse the same id.

Completion
----------
A session completes when every slot is filled.  The last-chunk flag and
``file-complete`` never paper over gaps: the flag keeps the session waiting,
and ``finish()`` fails it with the list of missing indices.  With
``lenient_completion`` either trigger completes immediately and missing
slots are skipped.  Whatever the trigger, a session is removed exactly once.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from loguru import logger

from lanrelay.relay.errors import LimitExceeded, ProtocolError
from lanrelay.relay.protocol import transfer_key

DEFAULT_CHUNK_SIZE = 16 * 1024


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------

class TransferState(str, Enum):
    RECEIVING = "receiving"    # Slots still being filled
    COMPLETE = "complete"      # All chunks in, file handed over
    CANCELLED = "cancelled"    # Cancelled by a peer or a disconnect
    FAILED = "failed"          # Finished with gaps


@dataclass
class TransferSession:
    """Tracks one inbound (or relayed) chunked transfer."""

    transfer_id: str           # Normalised id (str of the wire id)
    file_name: str
    file_size: int
    total_chunks: int
    sender_id: str
    receiver_id: str | None = None    # None for room broadcasts
    wire_id: Any = None               # Id exactly as the sender wrote it
    key: str = ""                     # Table key (sender-scoped on the relay)
    state: TransferState = TransferState.RECEIVING
    slots: list[bytes | None] = field(default_factory=list)
    received: int = 0
    last_flag_seen: bool = False
    started_at: float = field(default_factory=time.time)
    last_activity: float = field(default_factory=time.time)
    error: str = ""

    def __post_init__(self) -> None:
        if not self.slots:
            self.slots = [None] * self.total_chunks
        if self.wire_id is None:
            self.wire_id = self.transfer_id
        if not self.key:
            self.key = self.transfer_id

    @property
    def progress(self) -> float:
        """Return transfer progress as a fraction 0.0–1.0."""
        if self.total_chunks == 0:
            return 1.0
        return min(1.0, self.received / self.total_chunks)

    @property
    def gap_free(self) -> bool:
        return self.received == self.total_chunks

    def missing(self) -> list[int]:
        return [i for i, s in enumerate(self.slots) if s is None]

    def owners(self) -> tuple[str, ...]:
        if self.receiver_id and self.receiver_id != self.sender_id:
            return (self.sender_id, self.receiver_id)
        return (self.sender_id,)

    def to_status(self) -> dict[str, Any]:
        """Return a summary dict for external consumers."""
        return {
            "transfer_id": self.transfer_id,
            "file_name": self.file_name,
            "file_size": self.file_size,
            "sender_id": self.sender_id,
            "receiver_id": self.receiver_id,
            "state": self.state.value,
            "progress": round(self.progress, 3),
            "received": self.received,
            "total_chunks": self.total_chunks,
            "error": self.error,
        }


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------

class TransferCoordinator:
    """Table of in-flight transfers.

    Parameters
    ----------
    retain_chunks:
        Keep chunk bytes for reconstruction (receiving side).  The relay
        runs with False and only records which slots have arrived.
    max_transfers:
        Concurrent sessions beyond this raise ``LimitExceeded``.
    max_chunks:
        Largest accepted ``totalChunks``.
    max_file_size:
        Largest accepted declared ``fileSize`` in bytes.
    lenient_completion:
        Let the last-chunk flag or ``finish()`` complete a session with gaps.
    scope_by_sender:
        Key sessions by ``(sender_id, transfer id)`` so ids only need to be
        unique per sender.  Lookups then need the ``sender_id`` too.
    """

    def __init__(
        self,
        *,
        retain_chunks: bool = True,
        max_transfers: int = 64,
        max_chunks: int = 65536,
        max_file_size: int = 512 * 1024 * 1024,
        lenient_completion: bool = False,
        scope_by_sender: bool = False,
    ) -> None:
        self.retain_chunks = retain_chunks
        self.max_transfers = max_transfers
        self.max_chunks = max_chunks
        self.max_file_size = max_file_size
        self.lenient_completion = lenient_completion
        self.scope_by_sender = scope_by_sender
        self._sessions: dict[str, TransferSession] = {}
        self._by_owner: dict[str, set[str]] = {}   # client_id → session keys
        self._progress_callbacks: list[Callable[[TransferSession], Any]] = []
        self._complete_callbacks: list[Callable[[TransferSession, bytes | None], Any]] = []
        self._cancel_callbacks: list[Callable[[TransferSession, str], Any]] = []

    # -- callbacks -----------------------------------------------------------

    def on_progress(self, callback: Callable[[TransferSession], Any]) -> None:
        """Register a callback invoked after every stored chunk."""
        self._progress_callbacks.append(callback)

    def on_complete(self, callback: Callable[[TransferSession, bytes | None], Any]) -> None:
        """Register a callback receiving the session and its bytes (None in relay mode)."""
        self._complete_callbacks.append(callback)

    def on_cancel(self, callback: Callable[[TransferSession, str], Any]) -> None:
        """Register a callback for cancelled or failed sessions."""
        self._cancel_callbacks.append(callback)

    def _notify(self, callbacks: list[Callable[..., Any]], *args: Any) -> None:
        for cb in callbacks:
            try:
                cb(*args)
            except Exception as exc:
                logger.warning("[Relay/Transfer] callback error: {}", exc)

    # -- public API ----------------------------------------------------------

    def start(
        self,
        transfer_id: Any,
        file_name: str,
        file_size: int,
        total_chunks: int,
        sender_id: str,
        receiver_id: str | None = None,
    ) -> TransferSession:
        """Open a session with *total_chunks* empty slots."""
        tid = transfer_key(transfer_id)
        key = self._key(transfer_id, sender_id)
        if key in self._sessions:
            raise ProtocolError(f"Transfer {tid} already in progress")
        if total_chunks < 1:
            raise ProtocolError("totalChunks must be at least 1")
        if file_size < 0:
            raise ProtocolError("fileSize must not be negative")
        if total_chunks > self.max_chunks:
            raise LimitExceeded(
                f"Transfer {tid} declares {total_chunks} chunks (limit {self.max_chunks})"
            )
        if file_size > self.max_file_size:
            raise LimitExceeded(
                f"Transfer {tid} declares {file_size} bytes (limit {self.max_file_size})"
            )
        if len(self._sessions) >= self.max_transfers:
            raise LimitExceeded(f"Too many transfers in progress ({self.max_transfers})")

        session = TransferSession(
            transfer_id=tid,
            file_name=file_name,
            file_size=file_size,
            total_chunks=total_chunks,
            sender_id=sender_id,
            receiver_id=receiver_id,
            wire_id=transfer_id,
            key=key,
        )
        self._sessions[key] = session
        for owner in session.owners():
            self._by_owner.setdefault(owner, set()).add(key)

        logger.info(
            "[Relay/Transfer] {} started: {!r} {} bytes in {} chunks ({} → {})",
            tid, file_name, file_size, total_chunks, sender_id, receiver_id or "room",
        )
        return session

    def add_chunk(
        self,
        transfer_id: Any,
        index: int,
        data: bytes,
        is_last: bool = False,
        *,
        sender_id: str | None = None,
    ) -> TransferSession | None:
        """Store one chunk at its declared index.

        Returns the session, or None if no such transfer is in progress.
        A repeated index overwrites the slot without counting twice.
        """
        session = self.get(transfer_id, sender_id)
        if session is None:
            logger.debug(
                "[Relay/Transfer] chunk {} for unknown transfer {}", index, transfer_key(transfer_id),
            )
            return None
        if not 0 <= index < session.total_chunks:
            raise ProtocolError(
                f"Chunk index {index} out of range for transfer {session.transfer_id} "
                f"({session.total_chunks} chunks)"
            )

        fresh = session.slots[index] is None
        session.slots[index] = data if self.retain_chunks else b""
        if fresh:
            session.received += 1
        if is_last:
            session.last_flag_seen = True
        session.last_activity = time.time()
        self._notify(self._progress_callbacks, session)

        if session.gap_free:
            self._complete(session)
        elif is_last:
            if self.lenient_completion:
                self._complete(session)
            else:
                logger.debug(
                    "[Relay/Transfer] {} last chunk seen, still missing {}",
                    session.transfer_id, session.missing(),
                )
        return session

    def finish(self, transfer_id: Any, *, sender_id: str | None = None) -> TransferSession | None:
        """Handle the sender's ``file-complete``.

        Completes a gap-free session; fails one with gaps (unless lenient).
        Returns None when the session is already gone.
        """
        session = self.get(transfer_id, sender_id)
        if session is None:
            return None
        if session.gap_free or self.lenient_completion:
            self._complete(session)
        else:
            self._fail(session, f"missing chunks {session.missing()}")
        return session

    def cancel(
        self,
        transfer_id: Any,
        reason: str = "cancelled",
        *,
        sender_id: str | None = None,
    ) -> TransferSession | None:
        """Cancel one session. Returns it, or None if it was not in progress."""
        session = self.get(transfer_id, sender_id)
        if session is None:
            return None
        self._cancel(session, reason)
        return session

    def cancel_owner(self, client_id: str, reason: str = "peer disconnected") -> list[TransferSession]:
        """Cancel every session *client_id* is sending or receiving."""
        cancelled = self.sessions_for(client_id)
        for session in cancelled:
            self._cancel(session, reason)
        return cancelled

    def expire_idle(self, max_idle: float) -> list[TransferSession]:
        """Cancel sessions with no chunk for *max_idle* seconds. Returns them."""
        if max_idle <= 0:
            return []
        cutoff = time.time() - max_idle
        stale = [s for s in self._sessions.values() if s.last_activity < cutoff]
        for session in stale:
            self._cancel(session, "idle timeout")
        return stale

    def get(self, transfer_id: Any, sender_id: str | None = None) -> TransferSession | None:
        return self._sessions.get(self._key(transfer_id, sender_id))

    def find(self, transfer_id: Any, client_id: str) -> TransferSession | None:
        """Session *client_id* sends or receives under *transfer_id*.

        The client's own outgoing transfer wins over one it is receiving.
        """
        tid = transfer_key(transfer_id)
        matches = [s for s in self.sessions_for(client_id) if s.transfer_id == tid]
        for session in matches:
            if session.sender_id == client_id:
                return session
        return matches[0] if matches else None

    def sessions_for(self, client_id: str) -> list[TransferSession]:
        return [self._sessions[k] for k in sorted(self._by_owner.get(client_id, ()))]

    def list_sessions(self) -> list[dict[str, Any]]:
        return [s.to_status() for s in self._sessions.values()]

    @property
    def count(self) -> int:
        return len(self._sessions)

    @staticmethod
    def reconstruct(session: TransferSession) -> bytes:
        """Concatenate the slots in index order (missing slots are skipped)."""
        return b"".join(s for s in session.slots if s)

    # -- internals -----------------------------------------------------------

    def _key(self, transfer_id: Any, sender_id: str | None) -> str:
        tid = transfer_key(transfer_id)
        if self.scope_by_sender:
            return f"{sender_id or ''}/{tid}"
        return tid

    def _cancel(self, session: TransferSession, reason: str) -> None:
        session.state = TransferState.CANCELLED
        session.error = reason
        self._remove(session)
        logger.info("[Relay/Transfer] {} cancelled: {}", session.transfer_id, reason)
        self._notify(self._cancel_callbacks, session, reason)

    def _complete(self, session: TransferSession) -> None:
        if session.state != TransferState.RECEIVING:
            return
        data = self.reconstruct(session) if self.retain_chunks else None
        session.state = TransferState.COMPLETE
        self._remove(session)
        logger.info(
            "[Relay/Transfer] {} complete ({}/{} chunks)",
            session.transfer_id, session.received, session.total_chunks,
        )
        self._notify(self._complete_callbacks, session, data)

    def _fail(self, session: TransferSession, reason: str) -> None:
        session.state = TransferState.FAILED
        session.error = reason
        self._remove(session)
        logger.warning("[Relay/Transfer] {} failed: {}", session.transfer_id, reason)
        self._notify(self._cancel_callbacks, session, reason)

    def _remove(self, session: TransferSession) -> None:
        self._sessions.pop(session.key, None)
        for owner in session.owners():
            keys = self._by_owner.get(owner)
            if keys is None:
                continue
            keys.discard(session.key)
            if not keys:
                del self._by_owner[owner]
