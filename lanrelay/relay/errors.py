"""Exceptions raised inside the relay.

Only failures that someone has to be told about are exceptions:

- ``ProtocolError``: a payload the sender must get an ``error`` reply for
- ``UnknownMessageType``: a kind outside the closed set (still answered with ``error``)
- ``LimitExceeded``: a request that would grow state past a configured cap
- ``TransferFailed``: a client-side send that could not be completed

Dropped connections surface as ``websockets.exceptions.ConnectionClosed``.
References to clients, rooms or transfers that no longer exist are plain
no-ops (``None`` / ``False`` return values), never exceptions.
"""

from __future__ import annotations


class RelayError(Exception):
    """Base class for relay errors."""


class ProtocolError(RelayError, ValueError):
    """Malformed or out-of-contract message."""


class UnknownMessageType(ProtocolError):
    """Message kind outside the closed set of known kinds."""

    def __init__(self, kind: str) -> None:
        self.kind = kind
        super().__init__(f"unknown message type {kind!r}")


class LimitExceeded(RelayError):
    """A configured cap on clients, rooms or transfers would be exceeded."""


class TransferFailed(RelayError):
    """A chunked send was aborted (timeout, closed connection or peer cancel)."""

    def __init__(self, transfer_id: str, reason: str) -> None:
        self.transfer_id = transfer_id
        self.reason = reason
        super().__init__(f"transfer {transfer_id} failed: {reason}")
