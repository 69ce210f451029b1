from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, HTTPException

from .chunk_assembler import ChunkAssembler
from .connection_hub import ConnectionHub
from .room_registry import RoomRegistry

logger = logging.getLogger(__name__)


_LOG_BUFFER_LIMIT = 200
_log_buffer: deque[dict[str, object]] = deque(maxlen=_LOG_BUFFER_LIMIT)
_PACKAGE_LOGGER = "room_server"


class _RoomLogTail(logging.Handler):
    """Keeps the latest server records, tagged with the room they concern.

    Call sites pass ``extra={"room": room_key}`` to tag a record.
    """

    def emit(self, record: logging.LogRecord) -> None:  # pragma: no cover - logging side effect
        component = record.name
        if component.startswith(_PACKAGE_LOGGER + "."):
            component = component[len(_PACKAGE_LOGGER) + 1:]
        try:
            text = record.getMessage()
        except Exception:
            text = str(record.msg)
        _log_buffer.append(
            {
                "at": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
                "level": record.levelname.lower(),
                "component": component,
                "room": getattr(record, "room", None),
                "message": text,
            }
        )


def install_log_handler(level: int = logging.INFO) -> None:
    package_logger = logging.getLogger(_PACKAGE_LOGGER)
    if not any(isinstance(handler, _RoomLogTail) for handler in package_logger.handlers):
        package_logger.addHandler(_RoomLogTail(level=level))


def get_log_tail(limit: int = 50, *, room: Optional[str] = None) -> list[dict[str, object]]:
    if limit <= 0:
        return []
    entries = list(_log_buffer)
    if room is not None:
        entries = [entry for entry in entries if entry["room"] == room]
    return entries[-limit:]


def create_app(
    registry: RoomRegistry,
    assembler: ChunkAssembler,
    hub: Optional[ConnectionHub] = None,
) -> FastAPI:
    """FastAPI application exposing read-only insight into the room server."""

    app = FastAPI(title="Room coordinator diagnostics")
    started_at = time.time()

    @app.get("/export")
    async def export() -> dict:
        logger.info("Export endpoint accessed")
        return {
            "message": "Export functionality activated!",
            "status": "success",
            "date": datetime.now(timezone.utc).isoformat(),
        }

    @app.get("/api/health")
    async def health() -> dict:
        rooms = await registry.snapshot_all()
        return {
            "status": "ok",
            "room_count": len(rooms),
            "member_count": sum(len(room.members) for room in rooms),
            "uptime_seconds": round(time.time() - started_at, 3),
            "timestamp": time.time(),
        }

    @app.get("/api/state")
    async def state() -> dict:
        rooms = await registry.snapshot_all()
        connections = await hub.snapshot() if hub is not None else []
        return {
            "rooms": [room.to_dict() for room in rooms],
            "pending_uploads": await assembler.pending_uploads(),
            "connections": connections,
            "log_tail": get_log_tail(40),
            "timestamp": time.time(),
        }

    @app.get("/api/rooms/{room_key}")
    async def room(room_key: str) -> dict:
        snapshot = await registry.get_snapshot(room_key)
        if snapshot is None:
            raise HTTPException(status_code=404, detail=f"Room {room_key} does not exist")
        return snapshot.to_dict()

    @app.get("/api/rooms/{room_key}/log")
    async def room_log(room_key: str, limit: int = 50) -> dict:
        return {"room": room_key, "entries": get_log_tail(limit, room=room_key)}

    return app


class DiagnosticsServer:
    """Background task helper for running the diagnostics app under uvicorn."""

    def __init__(self, app: FastAPI, *, host: str, port: int) -> None:
        self._app = app
        self._host = host
        self._port = port
        self._server: Optional[object] = None
        self._task: Optional[asyncio.Task[None]] = None

    async def start(self) -> None:
        import uvicorn

        if self._server is not None:
            return
        config = uvicorn.Config(self._app, host=self._host, port=self._port, log_level="info")
        self._server = uvicorn.Server(config)
        self._task = asyncio.create_task(self._server.serve())
        logger.info("Diagnostics available at http://%s:%s", self._host, self._port)

    async def stop(self) -> None:
        if self._server is None:
            return
        assert self._task is not None
        self._server.should_exit = True
        await self._task
        self._server = None
        self._task = None
