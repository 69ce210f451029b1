from __future__ import annotations

import asyncio
import hashlib
import logging
import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Optional, Union

import aiofiles

from room_shared.protocol import Sender

from .config import DEFAULT_UPLOAD_IDLE_TIMEOUT
from .errors import ChunkIntegrityError, ChunkMismatchError, PayloadFormatError

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class UploadSession:
    upload_id: str
    file_name: str
    total_chunks: int
    sender: Sender
    room_key: str
    directory: Path
    received: set[int] = field(default_factory=set)
    last_activity: float = 0.0
    completing: bool = False

    @property
    def received_chunks(self) -> int:
        return len(self.received)

    def to_dict(self) -> dict[str, object]:
        return {
            "upload_id": self.upload_id,
            "file_name": self.file_name,
            "total_chunks": self.total_chunks,
            "received_chunks": self.received_chunks,
            "room": self.room_key,
            "sender": self.sender.userid,
        }


@dataclass(frozen=True, slots=True)
class ChunkPending:
    upload_id: str
    received_chunks: int
    total_chunks: int


@dataclass(frozen=True, slots=True)
class ChunkComplete:
    upload_id: str
    payload: bytes
    file_name: str
    sender: Sender
    room_key: str


ChunkResult = Union[ChunkPending, ChunkComplete]


class ChunkAssembler:
    """Reassembles chunked uploads from scratch files on disk.

    Chunks are written to ``scratch_dir`` before any bookkeeping happens so a
    crash loses at most the chunk in flight. Completion is detected on the
    number of distinct chunk indices, never on the number of chunk events.
    """

    def __init__(
        self,
        scratch_dir: Path,
        *,
        idle_timeout: float = DEFAULT_UPLOAD_IDLE_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._scratch_dir = scratch_dir
        self._idle_timeout = idle_timeout
        self._clock = clock
        self._sessions: Dict[str, UploadSession] = {}
        self._lock = asyncio.Lock()
        self._scratch_dir.mkdir(parents=True, exist_ok=True)

    async def accept_chunk(
        self,
        upload_id: str,
        chunk_index: int,
        total_chunks: int,
        file_name: str,
        payload: bytes,
        sender: Sender,
        room_key: str,
    ) -> ChunkResult:
        if not upload_id:
            raise PayloadFormatError("uploadId is required")
        if total_chunks <= 0:
            raise PayloadFormatError("totalChunks must be positive")
        if not 0 <= chunk_index < total_chunks:
            raise PayloadFormatError(f"chunkIndex {chunk_index} outside 0..{total_chunks - 1}")

        async with self._lock:
            session = self._sessions.get(upload_id)
            if session is None:
                session = UploadSession(
                    upload_id=upload_id,
                    file_name=file_name,
                    total_chunks=total_chunks,
                    sender=sender,
                    room_key=room_key,
                    directory=self._scratch_dir / _scratch_name(upload_id),
                    last_activity=self._clock(),
                )
                session.directory.mkdir(parents=True, exist_ok=True)
                self._sessions[upload_id] = session
                logger.info("Started upload %s (%s, %d chunks) for room %s", upload_id, file_name, total_chunks, room_key)
            else:
                self._check_consistent(session, total_chunks, file_name, room_key)
            if session.completing:
                logger.debug("Ignoring chunk %d for upload %s that is already merging", chunk_index, upload_id)
                return ChunkPending(upload_id, session.received_chunks, session.total_chunks)
            chunk_path = session.directory / _chunk_name(chunk_index)

        try:
            async with aiofiles.open(chunk_path, "wb") as file_obj:
                await file_obj.write(payload)
        except FileNotFoundError:
            logger.warning("Scratch directory for upload %s vanished; dropping chunk %d", upload_id, chunk_index)
            return ChunkPending(upload_id, session.received_chunks, session.total_chunks)

        async with self._lock:
            # the session may have expired or completed while the chunk was written
            if self._sessions.get(upload_id) is not session or session.completing:
                logger.warning("Upload %s no longer active; dropping chunk %d", upload_id, chunk_index)
                return ChunkPending(upload_id, session.received_chunks, session.total_chunks)
            if chunk_index in session.received:
                logger.debug("Duplicate chunk %d for upload %s", chunk_index, upload_id)
            session.received.add(chunk_index)
            session.last_activity = self._clock()
            if session.received_chunks < session.total_chunks:
                return ChunkPending(upload_id, session.received_chunks, session.total_chunks)
            session.completing = True

        try:
            merged = await self._merge(session)
        finally:
            async with self._lock:
                if self._sessions.get(upload_id) is session:
                    del self._sessions[upload_id]
            _remove_directory(session.directory)

        logger.info("Upload %s complete (%d bytes)", upload_id, len(merged))
        return ChunkComplete(
            upload_id=upload_id,
            payload=merged,
            file_name=session.file_name,
            sender=session.sender,
            room_key=session.room_key,
        )

    async def expire_idle(self, now: Optional[float] = None) -> list[str]:
        """Drop uploads that have not received a chunk within the idle timeout."""

        current = self._clock() if now is None else now
        expired: list[UploadSession] = []
        async with self._lock:
            for upload_id, session in list(self._sessions.items()):
                if session.completing:
                    continue
                if current - session.last_activity > self._idle_timeout:
                    expired.append(self._sessions.pop(upload_id))
        for session in expired:
            logger.warning(
                "Discarding stalled upload %s (%d/%d chunks)",
                session.upload_id,
                session.received_chunks,
                session.total_chunks,
            )
            _remove_directory(session.directory)
        return [session.upload_id for session in expired]

    async def discard(self, upload_id: str) -> bool:
        async with self._lock:
            session = self._sessions.get(upload_id)
            if session is None or session.completing:
                return False
            del self._sessions[upload_id]
        _remove_directory(session.directory)
        return True

    async def pending_uploads(self) -> list[dict[str, object]]:
        async with self._lock:
            return [session.to_dict() for session in self._sessions.values()]

    async def cleanup(self) -> None:
        async with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            _remove_directory(session.directory)

    async def _merge(self, session: UploadSession) -> bytes:
        paths = [session.directory / _chunk_name(index) for index in range(session.total_chunks)]
        missing = [path.name for path in paths if not path.is_file()]
        if missing:
            logger.error("Upload %s is missing chunk files %s; aborting merge", session.upload_id, missing)
            raise ChunkIntegrityError(f"Upload {session.upload_id} is missing chunks")
        merged = bytearray()
        for path in paths:
            try:
                async with aiofiles.open(path, "rb") as file_obj:
                    merged.extend(await file_obj.read())
            except FileNotFoundError as exc:
                raise ChunkIntegrityError(f"Upload {session.upload_id} lost chunk {path.name}") from exc
        return bytes(merged)

    def _check_consistent(self, session: UploadSession, total_chunks: int, file_name: str, room_key: str) -> None:
        if session.total_chunks != total_chunks:
            raise ChunkMismatchError(
                f"Upload {session.upload_id} declared {session.total_chunks} chunks, got {total_chunks}"
            )
        if session.file_name != file_name:
            raise ChunkMismatchError(f"Upload {session.upload_id} file name changed mid-transfer")
        if session.room_key != room_key:
            raise ChunkMismatchError(f"Upload {session.upload_id} room changed mid-transfer")


def _scratch_name(upload_id: str) -> str:
    # upload ids are client supplied; never use them as a path directly
    return hashlib.sha256(upload_id.encode("utf-8")).hexdigest()[:32]


def _chunk_name(index: int) -> str:
    return f"{index:06d}.part"


def _remove_directory(directory: Path) -> None:
    try:
        shutil.rmtree(directory, ignore_errors=False)
    except FileNotFoundError:
        pass
    except OSError:
        logger.exception("Failed to delete scratch directory %s", directory)
