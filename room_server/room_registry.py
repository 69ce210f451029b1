from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

from room_shared.protocol import Member, RoomMode

from .config import DEFAULT_ROOM_TIMER_SECONDS
from .errors import RoomFullError, RoomModeMismatchError, RoomNotFoundError

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Room:
    key: str
    mode: RoomMode
    timer_seconds: int
    members: list[Member] = field(default_factory=list)
    closure_announced: bool = False

    @property
    def capacity(self) -> int:
        return self.mode.capacity

    def snapshot(self) -> "RoomSnapshot":
        return RoomSnapshot(
            room_key=self.key,
            mode=self.mode,
            capacity=self.capacity,
            members=tuple(self.members),
            timer_seconds=self.timer_seconds,
        )


@dataclass(frozen=True, slots=True)
class RoomSnapshot:
    """Immutable view of a room, safe to hand out across suspension points."""

    room_key: str
    mode: RoomMode
    capacity: int
    members: Tuple[Member, ...]
    timer_seconds: int

    def to_dict(self) -> dict[str, object]:
        return {
            "room": self.room_key,
            "mode": self.mode.value,
            "capacity": self.capacity,
            "users": [member.to_dict() for member in self.members],
            "timer": self.timer_seconds,
        }


@dataclass(frozen=True, slots=True)
class JoinResult:
    snapshot: RoomSnapshot
    # Set when the connection was moved out of another room by this join.
    previous: Optional[RoomSnapshot] = None


@dataclass(frozen=True, slots=True)
class TickEvent:
    room_key: str
    timer_seconds: int
    closed: bool = False


@dataclass(slots=True)
class _Binding:
    room_key: str
    member_id: str


class RoomRegistry:
    """Owns every room, its membership, and its countdown timer.

    All state changes are synchronous under the lock; nothing in here awaits
    I/O, so compound check-then-mutate steps are atomic.
    """

    def __init__(self, *, default_timer_seconds: int = DEFAULT_ROOM_TIMER_SECONDS) -> None:
        if default_timer_seconds < 0:
            raise ValueError("default_timer_seconds must be >= 0")
        self._default_timer_seconds = default_timer_seconds
        self._rooms: Dict[str, Room] = {}
        self._bindings: Dict[str, _Binding] = {}
        self._lock = asyncio.Lock()

    async def join(self, connection_id: str, room_key: str, member: Member, mode: RoomMode) -> JoinResult:
        async with self._lock:
            room = self._rooms.get(room_key)
            binding = self._bindings.get(connection_id)
            if room is not None:
                if room.mode is not mode:
                    raise RoomModeMismatchError(room_key, room.mode.value, mode.value)
                occupied = len(room.members)
                if binding is not None and binding.room_key == room_key and _index_of(room, binding.member_id) is not None:
                    # the connection's current seat is given up by this join
                    occupied -= 1
                if occupied >= room.capacity:
                    logger.info("Rejected %s from full room %s (%d/%d)", member.userid, room_key, len(room.members), room.capacity, extra={"room": room_key})
                    raise RoomFullError(room_key, room.capacity)

            previous: Optional[RoomSnapshot] = None
            if binding is not None:
                previous = self._release_locked(connection_id, binding)
                # Rejoining the same room must not report a stale previous snapshot.
                if previous is not None and previous.room_key == room_key:
                    previous = None

            if room is None:
                room = Room(key=room_key, mode=mode, timer_seconds=self._default_timer_seconds)
                self._rooms[room_key] = room
                logger.info("Created %s room %s (timer=%ss)", mode.value, room_key, room.timer_seconds, extra={"room": room_key})

            room.members.append(member)
            room.closure_announced = False
            self._bindings[connection_id] = _Binding(room_key=room_key, member_id=member.userid)
            logger.info("%s joined room %s as %s", member.name or member.userid, room_key, member.role.value, extra={"room": room_key})
            return JoinResult(snapshot=room.snapshot(), previous=previous)

    async def leave(self, connection_id: str) -> Optional[Tuple[str, RoomSnapshot]]:
        async with self._lock:
            binding = self._bindings.get(connection_id)
            if binding is None:
                return None
            snapshot = self._release_locked(connection_id, binding)
            if snapshot is None:
                return None
            return snapshot.room_key, snapshot

    async def extend_timer(self, room_key: str, additional_seconds: int) -> int:
        if additional_seconds < 0:
            raise ValueError("additional_seconds must be >= 0")
        async with self._lock:
            room = self._rooms.get(room_key)
            if room is None:
                raise RoomNotFoundError(room_key)
            room.timer_seconds += additional_seconds
            if room.timer_seconds > 0:
                room.closure_announced = False
            logger.info("Timer for room %s extended by %ss to %ss", room_key, additional_seconds, room.timer_seconds, extra={"room": room_key})
            return room.timer_seconds

    async def tick(self) -> list[TickEvent]:
        """Advance every room's countdown by one second.

        A room whose timer is already zero is closed: its members are cleared
        and a single closing event is produced. It stays silent until someone
        joins again or its timer is extended.
        """

        events: list[TickEvent] = []
        async with self._lock:
            for room in self._rooms.values():
                if room.timer_seconds > 0:
                    room.timer_seconds -= 1
                    events.append(TickEvent(room.key, room.timer_seconds))
                    continue
                if room.closure_announced:
                    continue
                if room.members:
                    logger.info("Room %s expired, removing %d member(s)", room.key, len(room.members), extra={"room": room.key})
                room.members.clear()
                # closed-out connections hold no seat; a later leave must not hit a rejoined member
                for connection_id, binding in list(self._bindings.items()):
                    if binding.room_key == room.key:
                        del self._bindings[connection_id]
                room.closure_announced = True
                events.append(TickEvent(room.key, 0, closed=True))
        return events

    async def exists(self, room_key: str) -> bool:
        async with self._lock:
            return room_key in self._rooms

    async def get_snapshot(self, room_key: str) -> Optional[RoomSnapshot]:
        async with self._lock:
            room = self._rooms.get(room_key)
            return room.snapshot() if room is not None else None

    async def snapshot_all(self) -> list[RoomSnapshot]:
        async with self._lock:
            return [room.snapshot() for room in self._rooms.values()]

    async def bound_room(self, connection_id: str) -> Optional[str]:
        async with self._lock:
            binding = self._bindings.get(connection_id)
            return binding.room_key if binding else None

    def _release_locked(self, connection_id: str, binding: _Binding) -> Optional[RoomSnapshot]:
        self._bindings.pop(connection_id, None)
        room = self._rooms.get(binding.room_key)
        if room is None:
            return None
        index = _index_of(room, binding.member_id)
        if index is None:
            return None
        removed = room.members.pop(index)
        logger.info("%s removed from room %s", removed.name or removed.userid, room.key, extra={"room": room.key})
        return room.snapshot()


def _index_of(room: Room, member_id: str) -> Optional[int]:
    for index, member in enumerate(room.members):
        if member.userid == member_id:
            return index
    return None
