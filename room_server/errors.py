"""Exceptions raised by the room coordinator core.

Each error carries a short ``code`` that is sent to clients alongside the
human readable message in ``error`` events.
"""
from __future__ import annotations


class CoordinatorError(Exception):
    code = "error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, str]:
        return {"message": self.message, "code": self.code}


class RoomFullError(CoordinatorError):
    code = "room_full"

    def __init__(self, room_key: str, capacity: int) -> None:
        super().__init__(f"Room {room_key} is full")
        self.room_key = room_key
        self.capacity = capacity


class RoomModeMismatchError(CoordinatorError):
    code = "room_mode_mismatch"

    def __init__(self, room_key: str, existing: str, requested: str) -> None:
        super().__init__(f"Room {room_key} is a {existing} room and cannot be joined as {requested}")
        self.room_key = room_key


class RoomNotFoundError(CoordinatorError):
    code = "room_not_found"

    def __init__(self, room_key: str) -> None:
        super().__init__(f"Room {room_key} does not exist")
        self.room_key = room_key


class PayloadFormatError(CoordinatorError):
    code = "invalid_payload"


class ChunkMismatchError(CoordinatorError):
    code = "chunk_mismatch"


class ChunkIntegrityError(CoordinatorError):
    code = "chunk_integrity"


class UpstreamError(CoordinatorError):
    code = "upstream_failed"


class UploadRejectedError(UpstreamError):
    code = "upload_rejected"


class UploadFailedError(UpstreamError):
    code = "upload_failed"


class TransactionLookupError(UpstreamError):
    code = "transaction_lookup_failed"
