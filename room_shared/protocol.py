"""Wire protocol shared between the room server and its clients.

Every event travels over a single TCP stream as a length-prefixed JSON
envelope. An envelope may announce a binary attachment, in which case the raw
bytes follow the JSON body immediately and are framed by their own length.
This keeps file payloads out of base64 when the sender opts for
``encoding: "binary"``.
"""
from __future__ import annotations

import base64
import binascii
import json
import struct
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, TypedDict

_LENGTH_STRUCT = struct.Struct("!I")


class RoomAction(str, Enum):
    """Events exchanged over the control stream."""

    # inbound
    JOIN_ROOM = "joinRoom"
    JOIN_QUEUE_ROOM = "joinQueueRoom"
    LEAVE_ROOM = "leaveRoom"
    CHAT_MESSAGE = "chatMessage"
    SEND_FILE = "sendFile"
    SEND_FILE_CHUNK = "sendFileChunk"
    TYPING = "typing"
    STOPPED = "stopped"
    TRIGGER_REFRESH = "triggerRefresh"
    TRIGGER_PING = "triggerPing"
    ADD_TIME = "addTime"

    # outbound
    ROOM_DATA = "roomData"
    ROOM_FULL = "roomFull"
    MESSAGE = "message"
    UPLOAD_PROGRESS = "uploadProgress"
    FILE_MESSAGE = "fileMessage"
    CHUNK_RECEIVED = "chunkReceived"
    IS_TYPING = "istyping"
    STOP_TYPING = "stoptyping"
    REFRESH = "refresh"
    ROOM_PING = "roomPing"
    TIMER_UPDATE = "timerUpdate"
    ROOM_CLOSED = "roomClosed"
    ERROR = "error"


class RoomMode(str, Enum):
    """Determines the capacity of a room."""

    STANDARD = "standard"
    QUEUE = "queue"

    @property
    def capacity(self) -> int:
        return 2 if self is RoomMode.QUEUE else 4


class Role(str, Enum):
    USER = "user"
    CONSULTANT = "consultant"
    ADMIN = "admin"


class FileEncoding(str, Enum):
    """How ``fileData`` is carried on the wire."""

    BASE64 = "base64"
    BINARY = "binary"


class Envelope(TypedDict, total=False):
    """Decoded control message; ``attachment`` is only present for binary frames."""

    action: str
    data: Dict[str, Any]
    attachment: bytes


@dataclass(slots=True)
class Member:
    """A participant as seen by the other occupants of a room."""

    userid: str
    name: str
    role: Role = Role.USER

    def to_dict(self) -> Dict[str, Any]:
        return {
            "userid": self.userid,
            "name": self.name,
            "role": self.role.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Member":
        userid = data.get("userid")
        if userid is None or str(userid).strip() == "":
            raise ValueError("userid is required")
        try:
            role = Role(data.get("role") or Role.USER.value)
        except ValueError as exc:
            raise ValueError(f"Unknown role: {data.get('role')!r}") from exc
        return cls(
            userid=str(userid),
            name=str(data.get("name") or ""),
            role=role,
        )


_REPLY_FIELDS = ("replyto", "replytoId", "replytousertype")


@dataclass(slots=True)
class Sender:
    """Sender metadata attached to chat messages and file transfers."""

    userid: str
    name: str = ""
    role: str = Role.USER.value
    mid: Optional[str] = None
    type: Optional[str] = None
    replyto: Optional[str] = None
    replytoId: Optional[str] = None
    replytousertype: Optional[str] = None
    recommendations: Any = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "userid": self.userid,
            "name": self.name,
            "role": self.role,
        }
        if self.mid is not None:
            data["mid"] = self.mid
        if self.type is not None:
            data["type"] = self.type
        for key in _REPLY_FIELDS:
            value = getattr(self, key)
            if value:
                data[key] = value
        if self.recommendations:
            data["recommendations"] = self.recommendations
        return data

    def reply_context(self) -> Dict[str, Optional[str]]:
        return {key: getattr(self, key) or None for key in _REPLY_FIELDS}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "Sender":
        if not isinstance(data, dict):
            raise ValueError("sender must be an object")
        userid = data.get("userid", data.get("userId"))
        if userid is None:
            raise ValueError("sender.userid is required")

        def _opt(key: str) -> Optional[str]:
            value = data.get(key)
            return None if value is None or value == "" else str(value)

        return cls(
            userid=str(userid),
            name=str(data.get("name") or ""),
            role=str(data.get("role") or Role.USER.value),
            mid=_opt("mid"),
            type=_opt("type"),
            replyto=_opt("replyto"),
            replytoId=_opt("replytoId"),
            replytousertype=_opt("replytousertype"),
            recommendations=data.get("recommendations"),
        )


@dataclass(slots=True)
class FileReference:
    """Location of a file persisted by the external upload service."""

    path: str
    timestamp: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {"path": self.path, "timestamp": self.timestamp}


def encode_control_message(action: RoomAction, data: Dict[str, Any], *, attachment: Optional[bytes] = None) -> bytes:
    """Serialize a control message using length-prefixed JSON.

    When ``attachment`` is given its size is recorded in the envelope and the
    bytes are appended as a second length-prefixed frame.
    """

    envelope: Dict[str, Any] = {
        "action": action.value,
        "data": data,
    }
    if attachment is not None:
        envelope["attachment_size"] = len(attachment)
    payload = json.dumps(envelope, separators=(",", ":")).encode("utf-8")
    frame = _LENGTH_STRUCT.pack(len(payload)) + payload
    if attachment is not None:
        frame += _LENGTH_STRUCT.pack(len(attachment)) + attachment
    return frame


def decode_control_stream(buffer: bytes) -> tuple[list[Envelope], bytes]:
    """Decode as many complete control messages from the buffer as possible.

    Returns a tuple of (messages, remaining_buffer). A message whose
    attachment has not fully arrived stays in the remaining buffer.
    """

    offset = 0
    messages: list[Envelope] = []
    buf_len = len(buffer)
    header = _LENGTH_STRUCT.size

    while offset + header <= buf_len:
        (length,) = _LENGTH_STRUCT.unpack_from(buffer, offset)
        start = offset + header
        end = start + length
        if end > buf_len:
            break
        raw = json.loads(buffer[start:end].decode("utf-8"))
        if not isinstance(raw, dict):
            raise ValueError("Control envelope must be a JSON object")
        envelope: Envelope = {
            "action": raw.get("action", ""),
            "data": raw.get("data") or {},
        }
        attachment_size = raw.get("attachment_size")
        if attachment_size is not None:
            if end + header > buf_len:
                break
            (blob_length,) = _LENGTH_STRUCT.unpack_from(buffer, end)
            if blob_length != attachment_size:
                raise ValueError("Attachment size does not match envelope")
            blob_start = end + header
            blob_end = blob_start + blob_length
            if blob_end > buf_len:
                break
            envelope["attachment"] = bytes(buffer[blob_start:blob_end])
            end = blob_end
        messages.append(envelope)
        offset = end

    return messages, buffer[offset:]


def decode_file_data(data: Dict[str, Any], attachment: Optional[bytes]) -> bytes:
    """Return the file bytes carried by a ``sendFile``/``sendFileChunk`` payload.

    The payload's ``encoding`` field decides where the bytes live; it defaults
    to base64. A data-URL prefix (``data:...;base64,``) is tolerated.
    """

    raw_encoding = data.get("encoding") or FileEncoding.BASE64.value
    try:
        encoding = FileEncoding(raw_encoding)
    except ValueError as exc:
        raise ValueError(f"Unsupported file encoding: {raw_encoding!r}") from exc

    if encoding is FileEncoding.BINARY:
        if attachment is None:
            raise ValueError("Binary file payload is missing its attachment")
        return attachment

    file_data = data.get("fileData")
    if not isinstance(file_data, str):
        raise ValueError("fileData must be a base64 string")
    if file_data.startswith("data:"):
        _, _, file_data = file_data.partition(",")
    try:
        return base64.b64decode(file_data, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError("fileData is not valid base64") from exc


def encode_file_data(payload: bytes) -> str:
    return base64.b64encode(payload).decode("ascii")


DEFAULT_CONTROL_PORT = 3000
DEFAULT_DIAGNOSTICS_PORT = 8700
