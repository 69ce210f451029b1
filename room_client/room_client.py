from __future__ import annotations

import asyncio
import logging
import math
import uuid
from typing import Any, Awaitable, Callable, Dict, Optional

from room_shared.protocol import (
    FileEncoding,
    RoomAction,
    decode_control_stream,
    encode_control_message,
    encode_file_data,
)

logger = logging.getLogger(__name__)

MessageCallback = Callable[[RoomAction, dict], Awaitable[None] | None]
DisconnectCallback = Callable[[Optional[str]], Awaitable[None] | None]

DEFAULT_CHUNK_SIZE = 256 * 1024


class RoomClient:
    """Client side of the room control stream."""

    def __init__(
        self,
        host: str,
        port: int,
        on_message: MessageCallback,
        *,
        on_disconnect: Optional[DisconnectCallback] = None,
    ) -> None:
        self._host = host
        self._port = port
        self._on_message = on_message
        self._on_disconnect = on_disconnect
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._recv_task: Optional[asyncio.Task[None]] = None
        self._send_lock = asyncio.Lock()
        self._stop = False

    @property
    def connected(self) -> bool:
        return self._writer is not None and not self._stop

    async def connect(self) -> None:
        logger.info("Connecting to room server %s:%s", self._host, self._port)
        self._reader, self._writer = await asyncio.open_connection(self._host, self._port)
        self._stop = False
        self._recv_task = asyncio.create_task(self._recv_loop())

    async def close(self) -> None:
        self._stop = True
        writer = self._writer
        self._writer = None
        self._reader = None
        if writer is not None:
            writer.close()
            try:
                await writer.wait_closed()
            except Exception:
                pass
        if self._recv_task is not None and self._recv_task is not asyncio.current_task():
            await asyncio.gather(self._recv_task, return_exceptions=True)
            self._recv_task = None

    async def send(self, action: RoomAction, payload: Dict[str, Any], *, attachment: Optional[bytes] = None) -> None:
        if self._writer is None:
            raise RuntimeError("Client is not connected")
        frame = encode_control_message(action, payload, attachment=attachment)
        async with self._send_lock:
            self._writer.write(frame)
            await self._writer.drain()

    async def join(self, room: str, userid: str, name: str, role: str = "user", *, queue: bool = False) -> None:
        action = RoomAction.JOIN_QUEUE_ROOM if queue else RoomAction.JOIN_ROOM
        await self.send(action, {"room": room, "userid": userid, "name": name, "role": role})

    async def leave(self) -> None:
        await self.send(RoomAction.LEAVE_ROOM, {})

    async def send_chat(self, room: str, message: str, sender: Dict[str, Any]) -> None:
        await self.send(RoomAction.CHAT_MESSAGE, {"room": room, "message": message, "sender": sender})

    async def send_typing(self, room: str, sender: Dict[str, Any], *, typing: bool = True) -> None:
        action = RoomAction.TYPING if typing else RoomAction.STOPPED
        await self.send(action, {"room": room, "sender": sender})

    async def trigger_refresh(self, room: str) -> None:
        await self.send(RoomAction.TRIGGER_REFRESH, {"room": room})

    async def trigger_ping(self, room: str) -> None:
        await self.send(RoomAction.TRIGGER_PING, {"room": room})

    async def add_time(self, room: str, minutes: int, reference: str) -> None:
        await self.send(RoomAction.ADD_TIME, {"room": room, "minutes": minutes, "reference": reference})

    async def send_file(
        self,
        room: str,
        file_name: str,
        data: bytes,
        sender: Dict[str, Any],
        *,
        encoding: FileEncoding = FileEncoding.BINARY,
    ) -> None:
        payload: Dict[str, Any] = {
            "room": room,
            "fileName": file_name,
            "encoding": encoding.value,
            "sender": sender,
        }
        if encoding is FileEncoding.BASE64:
            payload["fileData"] = encode_file_data(data)
            await self.send(RoomAction.SEND_FILE, payload)
        else:
            await self.send(RoomAction.SEND_FILE, payload, attachment=data)

    async def send_file_chunked(
        self,
        room: str,
        file_name: str,
        data: bytes,
        sender: Dict[str, Any],
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        upload_id: Optional[str] = None,
    ) -> str:
        """Split ``data`` into chunks and send them in order; returns the upload id."""

        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        upload_id = upload_id or uuid.uuid4().hex
        total_chunks = max(1, math.ceil(len(data) / chunk_size))
        for index in range(total_chunks):
            chunk = data[index * chunk_size:(index + 1) * chunk_size]
            await self.send(
                RoomAction.SEND_FILE_CHUNK,
                {
                    "uploadId": upload_id,
                    "fileName": file_name,
                    "chunkIndex": index,
                    "totalChunks": total_chunks,
                    "encoding": FileEncoding.BINARY.value,
                    "sender": sender,
                    "room": room,
                },
                attachment=chunk,
            )
        return upload_id

    async def _recv_loop(self) -> None:
        assert self._reader is not None
        reader = self._reader
        buffer = b""
        disconnect_reason: Optional[str] = None
        try:
            while not self._stop:
                chunk = await reader.read(65536)
                if not chunk:
                    logger.info("Server closed room connection")
                    disconnect_reason = "server_closed"
                    break
                buffer += chunk
                messages, buffer = decode_control_stream(buffer)
                for message in messages:
                    try:
                        action = RoomAction(message["action"])
                    except ValueError:
                        logger.debug("Ignoring unknown action %r", message.get("action"))
                        continue
                    await self._dispatch(action, message.get("data") or {})
        except Exception:
            if not self._stop:
                logger.exception("Error while receiving from room server")
                disconnect_reason = "recv_error"
        finally:
            was_stopped = self._stop
            self._stop = True
            if not was_stopped:
                await self._notify_disconnect(disconnect_reason or "connection_closed")

    async def _dispatch(self, action: RoomAction, payload: dict) -> None:
        try:
            result = self._on_message(action, payload)
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            logger.exception("Error while handling room event %s", action.value)

    async def _notify_disconnect(self, reason: Optional[str]) -> None:
        if self._on_disconnect is None:
            return
        try:
            result = self._on_disconnect(reason)
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            logger.exception("Disconnect callback failed")
