from __future__ import annotations

import asyncio
import logging
import math
import uuid
from collections import deque
from typing import Any, Coroutine, Dict, Optional

from room_shared.protocol import (
    Member,
    RoomAction,
    RoomMode,
    Sender,
    decode_control_stream,
    decode_file_data,
)

from .chunk_assembler import ChunkAssembler, ChunkComplete
from .connection_hub import ConnectionHub
from .errors import (
    CoordinatorError,
    PayloadFormatError,
    RoomFullError,
    RoomNotFoundError,
    UploadRejectedError,
    UpstreamError,
)
from .room_registry import RoomRegistry
from .save_service import ProgressCallback, SaveServiceClient
from .upload_forwarder import UploadForwarder

logger = logging.getLogger(__name__)

UPLOAD_FAILED_MESSAGE = "Failed to upload file"
TRANSACTION_NOT_COMPLETED_MESSAGE = "Transaction not completed. Cannot extend time."
TRANSACTION_LOOKUP_FAILED_MESSAGE = "Failed to check transaction status"
TRANSACTION_COMPLETED = "completed"
APPLIED_REFERENCE_LIMIT = 10_000


class SessionController:
    """Binds TCP connections to room memberships and routes their events."""

    def __init__(
        self,
        host: str,
        port: int,
        registry: RoomRegistry,
        assembler: ChunkAssembler,
        forwarder: UploadForwarder,
        service: SaveServiceClient,
        hub: Optional[ConnectionHub] = None,
        *,
        tick_interval: float = 1.0,
        sweep_interval: float = 30.0,
        applied_reference_limit: int = APPLIED_REFERENCE_LIMIT,
    ) -> None:
        self._host = host
        self._port = port
        self._registry = registry
        self._assembler = assembler
        self._forwarder = forwarder
        self._service = service
        self._hub = hub or ConnectionHub()
        self._tick_interval = tick_interval
        self._sweep_interval = sweep_interval
        self._server: Optional[asyncio.AbstractServer] = None
        self._loops: list[asyncio.Task[None]] = []
        self._background: set[asyncio.Task[Any]] = set()
        self._applied_references: set[str] = set()
        self._applied_order: deque[str] = deque()
        self._applied_reference_limit = max(1, applied_reference_limit)

    @property
    def hub(self) -> ConnectionHub:
        return self._hub

    @property
    def sockets(self) -> list[str]:
        if self._server is None:
            return []
        return [str(sock.getsockname()) for sock in self._server.sockets or []]

    async def start(self, *, run_timers: bool = True) -> None:
        self._server = await asyncio.start_server(self._handle_client, self._host, self._port)
        logger.info("Room server listening on %s", ", ".join(self.sockets))
        if run_timers:
            self._loops.append(asyncio.create_task(self.timer_loop()))
            self._loops.append(asyncio.create_task(self.upload_sweeper()))

    async def stop(self) -> None:
        for task in self._loops:
            task.cancel()
        for task in self._loops:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._loops.clear()
        if self._server is not None:
            self._server.close()
        # wait_closed() blocks until client connections are gone
        await self._hub.disconnect_all()
        if self._server is not None:
            await self._server.wait_closed()
            self._server = None
        await self.drain_background()

    async def drain_background(self) -> None:
        """Wait for fire-and-forget work (chat saves, progress broadcasts)."""

        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def timer_loop(self) -> None:
        while True:
            await asyncio.sleep(self._tick_interval)
            try:
                await self.run_tick()
            except Exception:
                logger.exception("Timer tick failed")

    async def run_tick(self) -> None:
        for event in await self._registry.tick():
            if event.closed:
                logger.info("Room %s closed: timer expired", event.room_key, extra={"room": event.room_key})
                await self._hub.broadcast(event.room_key, RoomAction.ROOM_CLOSED, {"room": event.room_key})
            else:
                await self._hub.broadcast(
                    event.room_key,
                    RoomAction.TIMER_UPDATE,
                    {"room": event.room_key, "timer": event.timer_seconds},
                )

    async def upload_sweeper(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            try:
                expired = await self._assembler.expire_idle()
            except Exception:
                logger.exception("Upload sweep failed")
                continue
            if expired:
                logger.info("Expired %d stalled upload(s)", len(expired))

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        peer = writer.get_extra_info("peername")
        connection_id = uuid.uuid4().hex
        logger.info("Incoming connection %s from %s", connection_id, peer)
        await self._hub.register(connection_id, writer, peername=peer)

        buffer = b""
        try:
            while True:
                data = await reader.read(65536)
                if not data:
                    break
                buffer += data
                await self._hub.record_received(connection_id, len(data))
                messages, buffer = decode_control_stream(buffer)
                for message in messages:
                    await self.handle_message(
                        connection_id,
                        message.get("action", ""),
                        message.get("data") or {},
                        message.get("attachment"),
                    )
        except Exception as exc:
            logger.exception("Error while handling connection %s: %s", connection_id, exc)
        finally:
            await self.handle_disconnect(connection_id)
            writer.close()
            try:
                await writer.wait_closed()
            except Exception:
                pass

    async def handle_disconnect(self, connection_id: str) -> None:
        left = await self._registry.leave(connection_id)
        await self._hub.unregister(connection_id)
        if left is not None:
            room_key, snapshot = left
            await self._hub.broadcast(room_key, RoomAction.ROOM_DATA, snapshot.to_dict())
        logger.info("Connection %s disconnected", connection_id)

    async def handle_message(
        self,
        connection_id: str,
        action_name: str,
        payload: Dict[str, Any],
        attachment: Optional[bytes] = None,
    ) -> None:
        try:
            action = RoomAction(action_name)
        except ValueError:
            logger.debug("Unknown action %r from %s", action_name, connection_id)
            return
        if not isinstance(payload, dict):
            await self._reply_error(connection_id, PayloadFormatError("Payload must be an object"))
            return

        try:
            await self._dispatch(connection_id, action, payload, attachment)
        except CoordinatorError as exc:
            await self._reply_error(connection_id, exc)
        except (KeyError, TypeError, ValueError) as exc:
            await self._reply_error(connection_id, PayloadFormatError(f"Invalid {action.value} payload: {exc}"))
        except Exception:
            logger.exception("Unhandled error processing %s from %s", action.value, connection_id)

    async def _dispatch(
        self,
        connection_id: str,
        action: RoomAction,
        payload: Dict[str, Any],
        attachment: Optional[bytes],
    ) -> None:
        if action == RoomAction.JOIN_ROOM:
            await self._join(connection_id, payload, RoomMode.STANDARD)
            return

        if action == RoomAction.JOIN_QUEUE_ROOM:
            await self._join(connection_id, payload, RoomMode.QUEUE)
            return

        if action == RoomAction.LEAVE_ROOM:
            left = await self._registry.leave(connection_id)
            await self._hub.subscribe(connection_id, None)
            if left is not None:
                room_key, snapshot = left
                await self._hub.broadcast(room_key, RoomAction.ROOM_DATA, snapshot.to_dict())
            return

        if action == RoomAction.CHAT_MESSAGE:
            await self._chat(payload)
            return

        if action == RoomAction.SEND_FILE:
            await self._send_file(connection_id, payload, attachment)
            return

        if action == RoomAction.SEND_FILE_CHUNK:
            await self._send_file_chunk(connection_id, payload, attachment)
            return

        if action == RoomAction.TYPING:
            await self._typing(connection_id, payload, RoomAction.IS_TYPING, "is typing...")
            return

        if action == RoomAction.STOPPED:
            await self._typing(connection_id, payload, RoomAction.STOP_TYPING, "stopped typing")
            return

        if action == RoomAction.TRIGGER_REFRESH:
            await self._notify_room(connection_id, payload, RoomAction.REFRESH, "Refresh the room data or UI")
            return

        if action == RoomAction.TRIGGER_PING:
            await self._notify_room(connection_id, payload, RoomAction.ROOM_PING, "Stay In Room")
            return

        if action == RoomAction.ADD_TIME:
            await self._add_time(connection_id, payload)
            return

        logger.debug("Ignoring outbound-only action %s from %s", action.value, connection_id)

    async def _join(self, connection_id: str, payload: Dict[str, Any], mode: RoomMode) -> None:
        room_key = _require_str(payload, "room")
        member = Member.from_dict(payload)
        try:
            result = await self._registry.join(connection_id, room_key, member, mode)
        except RoomFullError:
            await self._hub.send_to(connection_id, RoomAction.ROOM_FULL, {"room": room_key})
            return
        await self._hub.subscribe(connection_id, room_key)
        if result.previous is not None:
            await self._hub.broadcast(result.previous.room_key, RoomAction.ROOM_DATA, result.previous.to_dict())
        await self._hub.broadcast(room_key, RoomAction.ROOM_DATA, result.snapshot.to_dict())

    async def _chat(self, payload: Dict[str, Any]) -> None:
        room_key = _require_str(payload, "room")
        message = payload.get("message")
        if not isinstance(message, str):
            raise PayloadFormatError("message must be a string")
        sender = Sender.from_dict(payload.get("sender"))

        # Live delivery first; persistence is best effort and never blocks it.
        await self._hub.broadcast(room_key, RoomAction.MESSAGE, {"sender": sender.to_dict(), "message": message})
        self._spawn(self._save_chat(_chat_record(room_key, message, sender)))

    async def _save_chat(self, record: Dict[str, Any]) -> None:
        try:
            await self._service.save_chat_message(record)
            logger.debug("Saved chat message from %s in room %s", record.get("uid"), record.get("room"))
        except UpstreamError as exc:
            logger.error("Error saving chat message for room %s: %s", record.get("room"), exc, extra={"room": record.get("room")})

    async def _send_file(self, connection_id: str, payload: Dict[str, Any], attachment: Optional[bytes]) -> None:
        room_key = _require_str(payload, "room")
        file_name = str(payload.get("fileName") or "uploadedFile")
        sender = Sender.from_dict(payload.get("sender"))
        self._forwarder.check_allowed(file_name)
        try:
            file_bytes = decode_file_data(payload, attachment)
        except ValueError as exc:
            logger.warning("Rejected file %s from %s: %s", file_name, connection_id, exc)
            await self._hub.broadcast(
                room_key,
                RoomAction.ERROR,
                {"message": "File data format is incorrect", "code": PayloadFormatError.code},
            )
            return

        def on_progress(percent: int) -> None:
            self._spawn(
                self._hub.broadcast(
                    room_key,
                    RoomAction.UPLOAD_PROGRESS,
                    {"sender": sender.to_dict(), "fileName": file_name, "progress": percent},
                )
            )

        # Uploads run in the background so this connection keeps being served.
        self._spawn(self._forward_and_announce(connection_id, file_bytes, file_name, sender, room_key, progress=on_progress))

    async def _send_file_chunk(self, connection_id: str, payload: Dict[str, Any], attachment: Optional[bytes]) -> None:
        upload_id = _require_str(payload, "uploadId")
        room_key = _require_str(payload, "room")
        file_name = str(payload.get("fileName") or "uploadedFile")
        chunk_index = _require_int(payload, "chunkIndex")
        total_chunks = _require_int(payload, "totalChunks")
        sender = Sender.from_dict(payload.get("sender"))
        self._forwarder.check_allowed(file_name)
        try:
            chunk = decode_file_data(payload, attachment)
        except ValueError as exc:
            raise PayloadFormatError(f"Chunk {chunk_index} of {upload_id}: {exc}") from exc

        result = await self._assembler.accept_chunk(
            upload_id,
            chunk_index,
            total_chunks,
            file_name,
            chunk,
            sender,
            room_key,
        )
        if not isinstance(result, ChunkComplete):
            await self._hub.send_to(
                connection_id,
                RoomAction.CHUNK_RECEIVED,
                {"uploadId": upload_id, "received": result.received_chunks, "total": result.total_chunks},
            )
            return
        self._spawn(self._forward_and_announce(connection_id, result.payload, result.file_name, result.sender, result.room_key))

    async def _forward_and_announce(
        self,
        connection_id: str,
        file_bytes: bytes,
        file_name: str,
        sender: Sender,
        room_key: str,
        *,
        progress: Optional[ProgressCallback] = None,
    ) -> None:
        try:
            reference = await self._forwarder.forward(file_bytes, file_name, sender, room_key, progress=progress)
        except UploadRejectedError as exc:
            await self._reply_error(connection_id, exc)
            return
        except UpstreamError as exc:
            logger.error("Error uploading %s for room %s: %s", file_name, room_key, exc, extra={"room": room_key})
            await self._hub.broadcast(room_key, RoomAction.ERROR, {"message": UPLOAD_FAILED_MESSAGE, "code": exc.code})
            return
        except Exception:
            logger.exception("Unexpected error uploading %s for room %s", file_name, room_key)
            await self._hub.broadcast(room_key, RoomAction.ERROR, {"message": UPLOAD_FAILED_MESSAGE, "code": UpstreamError.code})
            return
        await self._hub.broadcast(room_key, RoomAction.FILE_MESSAGE, UploadForwarder.file_message(reference, sender, file_name))

    async def _typing(self, connection_id: str, payload: Dict[str, Any], action: RoomAction, verb: str) -> None:
        room_key = _require_str(payload, "room")
        if not await self._registry.exists(room_key):
            raise RoomNotFoundError(room_key)
        sender = payload.get("sender") or {}
        if not isinstance(sender, dict):
            raise PayloadFormatError("sender must be an object")
        user_id = sender.get("userid", sender.get("userId"))
        name = sender.get("name") or user_id or "Someone"
        await self._hub.broadcast(room_key, action, {"userId": user_id, "message": f"{name} {verb}"})

    async def _notify_room(self, connection_id: str, payload: Dict[str, Any], action: RoomAction, message: str) -> None:
        room_key = _require_str(payload, "room")
        if not await self._registry.exists(room_key):
            raise RoomNotFoundError(room_key)
        logger.info("Emitting %s to room %s", action.value, room_key, extra={"room": room_key})
        await self._hub.broadcast(room_key, action, {"message": message})

    async def _add_time(self, connection_id: str, payload: Dict[str, Any]) -> None:
        room_key = _require_str(payload, "room")
        minutes = _require_number(payload, "minutes")
        seconds = int(round(minutes * 60))
        if seconds <= 0:
            raise PayloadFormatError("minutes must be positive")
        reference = _require_str(payload, "reference")
        if not await self._registry.exists(room_key):
            raise RoomNotFoundError(room_key)
        if reference in self._applied_references:
            await self._reply_error(connection_id, PayloadFormatError(f"Transaction {reference} was already applied"))
            return

        try:
            status = await self._service.transaction_status(reference)
        except UpstreamError as exc:
            logger.error("Error checking transaction %s: %s", reference, exc)
            await self._hub.broadcast(room_key, RoomAction.ERROR, {"message": TRANSACTION_LOOKUP_FAILED_MESSAGE, "code": exc.code})
            return

        if status != TRANSACTION_COMPLETED:
            logger.info("Transaction %s is %r; time extension denied for room %s", reference, status, room_key, extra={"room": room_key})
            await self._hub.broadcast(
                room_key,
                RoomAction.ERROR,
                {"message": TRANSACTION_NOT_COMPLETED_MESSAGE, "code": "transaction_not_completed"},
            )
            return

        # Re-checked after the lookup: the reference may have been applied meanwhile.
        if reference in self._applied_references:
            await self._reply_error(connection_id, PayloadFormatError(f"Transaction {reference} was already applied"))
            return
        self._remember_reference(reference)
        try:
            timer = await self._registry.extend_timer(room_key, seconds)
        except RoomNotFoundError:
            self._forget_reference(reference)
            raise
        await self._hub.broadcast(room_key, RoomAction.TIMER_UPDATE, {"room": room_key, "timer": timer})

    def _remember_reference(self, reference: str) -> None:
        # oldest references are evicted once the limit is reached
        self._applied_references.add(reference)
        self._applied_order.append(reference)
        while len(self._applied_order) > self._applied_reference_limit:
            self._applied_references.discard(self._applied_order.popleft())

    def _forget_reference(self, reference: str) -> None:
        self._applied_references.discard(reference)
        try:
            self._applied_order.remove(reference)
        except ValueError:
            pass

    async def _reply_error(self, connection_id: str, error: CoordinatorError) -> None:
        logger.info("Error for %s: %s", connection_id, error.message)
        await self._hub.send_to(connection_id, RoomAction.ERROR, error.to_dict())

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)


def _chat_record(room_key: str, message: str, sender: Sender) -> Dict[str, Any]:
    record: Dict[str, Any] = {
        "mid": sender.mid,
        "uid": sender.userid,
        "role": sender.role,
        "name": sender.name,
        "type": sender.type,
        "room": room_key,
        "message": message,
    }
    for key, value in sender.reply_context().items():
        if value:
            record[key] = value
    if sender.recommendations:
        record["recommendations"] = sender.recommendations
    return record


def _require_str(payload: Dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise PayloadFormatError(f"{key} is required")
    if isinstance(value, (dict, list, bool)):
        raise PayloadFormatError(f"{key} must be a string")
    return str(value)


def _require_int(payload: Dict[str, Any], key: str) -> int:
    value = payload.get(key)
    if isinstance(value, bool) or value is None:
        raise PayloadFormatError(f"{key} must be an integer")
    if isinstance(value, float) and not value.is_integer():
        raise PayloadFormatError(f"{key} must be a whole number")
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise PayloadFormatError(f"{key} must be an integer") from exc


def _require_number(payload: Dict[str, Any], key: str) -> float:
    value = payload.get(key)
    if isinstance(value, bool) or value is None:
        raise PayloadFormatError(f"{key} must be a number")
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise PayloadFormatError(f"{key} must be a number") from exc
    if not math.isfinite(number):
        raise PayloadFormatError(f"{key} must be a number")
    return number
