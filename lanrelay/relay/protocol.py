"""Wire-level protocol for the LAN relay.

Every message is one JSON object per WebSocket text frame, tagged by its
``type`` field.  Field names are camelCase on the wire and snake_case in
Python.

Message format
--------------
{
    "type": "join-room",     # message kind (see MsgType)
    "roomId": "lq3k9a1x2b",  # kind-specific fields
    ...
}

Inbound messages form a closed tagged union (``ClientMessage``): a payload
whose kind is known but whose fields do not match the variant is a
``ProtocolError``; a kind outside ``MsgType`` is an ``UnknownMessageType``.
Relayed kinds (signaling and file transfer) keep every field the sender put
in, so they are forwarded verbatim with ``from`` set by the relay.
"""

from __future__ import annotations

import json
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictFloat,
    StrictInt,
    StrictStr,
    TypeAdapter,
    ValidationError,
)
from pydantic.alias_generators import to_camel

from lanrelay.relay.errors import ProtocolError, UnknownMessageType


class MsgType(str, Enum):
    """Recognised message kinds."""

    # Session
    WELCOME = "welcome"
    ERROR = "error"
    # Rooms
    CREATE_ROOM = "create-room"
    ROOM_CREATED = "room-created"
    JOIN_ROOM = "join-room"
    ROOM_JOINED = "room-joined"
    CLIENT_JOINED = "client-joined"
    CLIENT_LEFT = "client-left"
    # WebRTC signaling (opaque, relayed to the room)
    WEBRTC_OFFER = "webrtc-offer"
    WEBRTC_ANSWER = "webrtc-answer"
    WEBRTC_ICE_CANDIDATE = "webrtc-ice-candidate"
    # Chunked file transfer (relayed to a target or the room)
    FILE_TRANSFER_START = "file-transfer-start"
    FILE_CHUNK = "file-chunk"
    FILE_COMPLETE = "file-complete"
    FILE_CANCEL = "file-cancel"
    # Discovery
    DEVICE_DISCOVERY = "device-discovery"
    DEVICE_LIST = "device-list"


SIGNALING_TYPES = frozenset({
    MsgType.WEBRTC_OFFER.value,
    MsgType.WEBRTC_ANSWER.value,
    MsgType.WEBRTC_ICE_CANDIDATE.value,
})
FILE_TYPES = frozenset({
    MsgType.FILE_TRANSFER_START.value,
    MsgType.FILE_CHUNK.value,
    MsgType.FILE_COMPLETE.value,
    MsgType.FILE_CANCEL.value,
})
CLIENT_TYPES = frozenset({
    MsgType.CREATE_ROOM.value,
    MsgType.JOIN_ROOM.value,
    MsgType.DEVICE_DISCOVERY.value,
}) | SIGNALING_TYPES | FILE_TYPES
KNOWN_TYPES = frozenset(t.value for t in MsgType)

# Browsers mint numeric ids (Date.now() + Math.random()); keep whatever came in.
TransferId = Union[StrictStr, StrictInt, StrictFloat]


class WireModel(BaseModel):
    """Base for wire messages: camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def dump(self, exclude_none: bool = False) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=exclude_none)


class RelayedModel(WireModel):
    """Relayed kinds tolerate extra fields; the relay forwards them untouched."""

    model_config = ConfigDict(extra="allow")


# ---------------------------------------------------------------------------
# Client → server
# ---------------------------------------------------------------------------

class CreateRoom(WireModel):
    type: Literal["create-room"]
    room_name: str | None = None


class JoinRoom(WireModel):
    type: Literal["join-room"]
    room_id: Annotated[str, Field(min_length=1)]


class DeviceDiscovery(WireModel):
    type: Literal["device-discovery"]


class Signal(RelayedModel):
    type: Literal["webrtc-offer", "webrtc-answer", "webrtc-ice-candidate"]
    payload: Any = None


class FileTransferStart(RelayedModel):
    type: Literal["file-transfer-start"]
    transfer_id: TransferId
    file_name: str
    file_size: int = Field(ge=0)
    total_chunks: int = Field(ge=1)
    target_client: str | None = None


class FileChunk(RelayedModel):
    type: Literal["file-chunk"]
    transfer_id: TransferId
    chunk_index: int = Field(ge=0)
    chunk: str  # base64 of the raw chunk bytes
    is_last: bool = False
    target_client: str | None = None


class FileComplete(RelayedModel):
    type: Literal["file-complete"]
    transfer_id: TransferId
    target_client: str | None = None


class FileCancel(RelayedModel):
    type: Literal["file-cancel"]
    transfer_id: TransferId
    reason: str = ""
    target_client: str | None = None


ClientMessage = Annotated[
    Union[
        CreateRoom,
        JoinRoom,
        DeviceDiscovery,
        Signal,
        FileTransferStart,
        FileChunk,
        FileComplete,
        FileCancel,
    ],
    Field(discriminator="type"),
]
FileMessage = Union[FileTransferStart, FileChunk, FileComplete, FileCancel]

_CLIENT_ADAPTER: TypeAdapter[ClientMessage] = TypeAdapter(ClientMessage)


# ---------------------------------------------------------------------------
# Server → client
# ---------------------------------------------------------------------------

class WelcomeServerInfo(WireModel):
    address: str
    port: int
    timestamp: int


class Welcome(WireModel):
    type: Literal["welcome"] = "welcome"
    client_id: str
    server_info: WelcomeServerInfo


class QRData(WireModel):
    address: str
    port: int
    room_id: str
    url: str
    timestamp: int


class RoomCreated(WireModel):
    type: Literal["room-created"] = "room-created"
    room_id: str
    name: str
    qr_data: QRData


class RoomJoined(WireModel):
    type: Literal["room-joined"] = "room-joined"
    room_id: str
    clients: list[str]


class ClientJoined(WireModel):
    type: Literal["client-joined"] = "client-joined"
    client_id: str
    room_clients: list[str]


class ClientLeft(WireModel):
    type: Literal["client-left"] = "client-left"
    client_id: str
    room_clients: list[str]


class DeviceEntry(WireModel):
    id: str
    name: str
    address: str
    connected_at: str
    room: str | None = None


class DeviceListServerInfo(WireModel):
    address: str
    port: int
    client_count: int


class DeviceList(WireModel):
    type: Literal["device-list"] = "device-list"
    devices: list[DeviceEntry]
    server_info: DeviceListServerInfo


class ErrorMessage(WireModel):
    type: Literal["error"] = "error"
    message: str


class FileCancelNotice(WireModel):
    """Sent by the relay when one side of a tracked transfer disconnects."""

    type: Literal["file-cancel"] = "file-cancel"
    transfer_id: TransferId
    reason: str
    sender: str = Field(alias="from")


# ---------------------------------------------------------------------------
# Encoding / decoding
# ---------------------------------------------------------------------------

def decode(raw: str | bytes) -> Any:
    """Decode one frame into a JSON value. Raises ``ProtocolError``."""
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ProtocolError("Invalid JSON message") from exc


def validate_message(data: Any) -> ClientMessage:
    """Validate a decoded client message against the closed set of variants."""
    if not isinstance(data, dict):
        raise ProtocolError("Message must be a JSON object")

    kind = data.get("type")
    if not isinstance(kind, str) or not kind:
        raise ProtocolError("Message has no type")
    if kind not in CLIENT_TYPES:
        if kind in KNOWN_TYPES:
            raise ProtocolError(f"Message type {kind!r} is not accepted from clients")
        raise UnknownMessageType(kind)

    try:
        return _CLIENT_ADAPTER.validate_python(data)
    except ValidationError as exc:
        raise ProtocolError(f"Invalid {kind} message ({_describe(exc)})") from exc


def parse_message(raw: str | bytes) -> tuple[ClientMessage, dict[str, Any]]:
    """Decode and validate one frame. Returns ``(message, raw_dict)``."""
    data = decode(raw)
    return validate_message(data), data


def encode(message: WireModel | dict[str, Any]) -> str:
    """Serialise an outbound message to a JSON text frame."""
    if isinstance(message, WireModel):
        message = message.dump()
    return json.dumps(message, ensure_ascii=False)


def relay_payload(data: dict[str, Any], sender_id: str) -> dict[str, Any]:
    """Copy a relayed message, stamping the sender the relay saw."""
    out = dict(data)
    out["from"] = sender_id
    return out


def transfer_key(transfer_id: Any) -> str:
    """Normalise a transfer id for use as a table key."""
    return str(transfer_id)


def _describe(exc: ValidationError) -> str:
    err = exc.errors()[0]
    # First loc element of a discriminated union is the tag itself
    loc = [str(p) for p in err.get("loc", ())][1:]
    field = ".".join(loc) or "message"
    return f"{field}: {err.get('msg', 'invalid value')}"
