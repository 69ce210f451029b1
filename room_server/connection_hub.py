from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Dict, Optional, Set, Tuple

from room_shared.protocol import RoomAction, encode_control_message

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Connection:
    connection_id: str
    writer: asyncio.StreamWriter
    connected_at: float = field(default_factory=lambda: time.time())
    room_key: Optional[str] = None
    peer_ip: Optional[str] = None
    peer_port: Optional[int] = None
    bytes_sent: int = 0
    bytes_received: int = 0

    def send(self, action: RoomAction, data: Dict[str, object]) -> None:
        payload = encode_control_message(action, data)
        self.bytes_sent += len(payload)
        self.writer.write(payload)


class ConnectionHub:
    """Tracks live connections and the room each one listens to."""

    def __init__(self) -> None:
        self._connections: Dict[str, Connection] = {}
        self._lock = asyncio.Lock()

    async def register(
        self,
        connection_id: str,
        writer: asyncio.StreamWriter,
        peername: Optional[Tuple[str, ...]] = None,
    ) -> Connection:
        async with self._lock:
            if connection_id in self._connections:
                raise ValueError(f"Connection '{connection_id}' already registered")
            connection = Connection(connection_id=connection_id, writer=writer)
            if peername:
                connection.peer_ip = peername[0]
                if len(peername) > 1:
                    try:
                        connection.peer_port = int(peername[1])
                    except (TypeError, ValueError):
                        connection.peer_port = None
            self._connections[connection_id] = connection
            logger.info("Registered connection %s from %s", connection_id, connection.peer_ip)
            return connection

    async def unregister(self, connection_id: str) -> bool:
        async with self._lock:
            connection = self._connections.pop(connection_id, None)
            if connection is None:
                return False
            try:
                connection.writer.close()
            except Exception:  # pragma: no cover - cleanup best effort
                logger.exception("Error while closing writer for %s", connection_id)
            logger.info("Unregistered connection %s", connection_id)
            return True

    async def subscribe(self, connection_id: str, room_key: Optional[str]) -> None:
        async with self._lock:
            connection = self._connections.get(connection_id)
            if connection is not None:
                connection.room_key = room_key

    async def record_received(self, connection_id: str, num_bytes: int) -> None:
        if num_bytes <= 0:
            return
        async with self._lock:
            connection = self._connections.get(connection_id)
            if connection:
                connection.bytes_received += num_bytes

    async def broadcast(self, room_key: str, action: RoomAction, data: Dict[str, object], *, exclude: Optional[Set[str]] = None) -> int:
        """Send to every connection subscribed to ``room_key``; returns the fan-out."""

        if exclude is None:
            exclude = set()
        drains: list[Awaitable[None]] = []
        async with self._lock:
            for connection_id, connection in self._connections.items():
                if connection.room_key != room_key or connection_id in exclude:
                    continue
                try:
                    connection.send(action, data)
                    drains.append(connection.writer.drain())
                except Exception:
                    logger.exception("Failed to queue %s to %s", action.value, connection_id)
        if drains:
            await asyncio.gather(*drains, return_exceptions=True)
        return len(drains)

    async def send_to(self, connection_id: str, action: RoomAction, data: Dict[str, object]) -> None:
        drain: Optional[Awaitable[None]] = None
        async with self._lock:
            connection = self._connections.get(connection_id)
            if connection is None:
                return
            try:
                connection.send(action, data)
                drain = connection.writer.drain()
            except Exception:
                logger.exception("Failed to send direct message to %s", connection_id)
        if drain is not None:
            await asyncio.gather(drain, return_exceptions=True)

    async def list_connections(self) -> list[str]:
        async with self._lock:
            return list(self._connections.keys())

    async def snapshot(self) -> list[dict[str, object]]:
        async with self._lock:
            return [
                {
                    "connection_id": connection.connection_id,
                    "room": connection.room_key,
                    "peer_ip": connection.peer_ip,
                    "peer_port": connection.peer_port,
                    "connected_at": connection.connected_at,
                    "bytes_sent": connection.bytes_sent,
                    "bytes_received": connection.bytes_received,
                }
                for connection in self._connections.values()
            ]

    async def disconnect_all(self) -> None:
        waiters: list[Awaitable[None]] = []
        async with self._lock:
            connections = list(self._connections.values())
            self._connections.clear()
            for connection in connections:
                try:
                    connection.writer.close()
                    waiters.append(connection.writer.wait_closed())
                except Exception:
                    logger.exception("Error while closing writer for %s during shutdown", connection.connection_id)
        if waiters:
            await asyncio.gather(*waiters, return_exceptions=True)
