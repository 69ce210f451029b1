import logging

import pytest
from fastapi.testclient import TestClient

from room_server.chunk_assembler import ChunkAssembler
from room_server.connection_hub import ConnectionHub
from room_server.diagnostics import create_app, get_log_tail, install_log_handler
from room_server.room_registry import RoomRegistry
from room_shared.protocol import Member, RoomMode, Sender


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.mark.anyio
async def test_state_reports_rooms_and_uploads(tmp_path) -> None:
    registry = RoomRegistry(default_timer_seconds=120)
    assembler = ChunkAssembler(tmp_path)
    await registry.join("conn-a", "R1", Member(userid="a", name="Ada"), RoomMode.QUEUE)
    await assembler.accept_chunk("up-1", 0, 3, "a.bin", b"x", Sender(userid="a"), "R1")

    client = TestClient(create_app(registry, assembler, ConnectionHub()))

    health = client.get("/api/health").json()
    assert health["status"] == "ok"
    assert health["room_count"] == 1
    assert health["member_count"] == 1

    state = client.get("/api/state").json()
    assert state["rooms"] == [
        {
            "room": "R1",
            "mode": "queue",
            "capacity": 2,
            "users": [{"userid": "a", "name": "Ada", "role": "user"}],
            "timer": 120,
        }
    ]
    assert state["pending_uploads"][0]["upload_id"] == "up-1"
    assert state["pending_uploads"][0]["received_chunks"] == 1
    assert state["connections"] == []


@pytest.mark.anyio
async def test_room_lookup(tmp_path) -> None:
    registry = RoomRegistry()
    await registry.join("conn-a", "R1", Member(userid="a", name="Ada"), RoomMode.STANDARD)
    client = TestClient(create_app(registry, ChunkAssembler(tmp_path)))

    response = client.get("/api/rooms/R1")
    assert response.status_code == 200
    assert response.json()["capacity"] == 4

    assert client.get("/api/rooms/missing").status_code == 404


def test_export_endpoint(tmp_path) -> None:
    client = TestClient(create_app(RoomRegistry(), ChunkAssembler(tmp_path)))

    body = client.get("/export").json()

    assert body["message"] == "Export functionality activated!"
    assert body["status"] == "success"
    assert body["date"]


@pytest.mark.anyio
async def test_log_tail_is_tagged_by_room(tmp_path, caplog) -> None:
    caplog.set_level(logging.INFO, logger="room_server")
    install_log_handler()
    install_log_handler()
    registry = RoomRegistry(default_timer_seconds=0)
    await registry.join("conn-a", "tail-room", Member(userid="a", name="Ada"), RoomMode.STANDARD)
    await registry.tick()

    entries = get_log_tail(10, room="tail-room")
    assert [entry["component"] for entry in entries] == ["room_registry"] * 3
    assert "Created standard room tail-room" in entries[0]["message"]
    assert "expired" in entries[-1]["message"]
    assert all(entry["level"] == "info" for entry in entries)
    handlers = logging.getLogger("room_server").handlers
    assert sum(type(handler).__name__ == "_RoomLogTail" for handler in handlers) == 1

    client = TestClient(create_app(registry, ChunkAssembler(tmp_path)))
    body = client.get("/api/rooms/tail-room/log", params={"limit": 1}).json()
    assert body["room"] == "tail-room"
    assert [entry["message"] for entry in body["entries"]] == [entries[-1]["message"]]
