import pytest

from room_server.errors import RoomFullError, RoomModeMismatchError, RoomNotFoundError
from room_server.room_registry import RoomRegistry
from room_shared.protocol import Member, Role, RoomMode


@pytest.fixture
def anyio_backend():
    return "asyncio"


def _member(userid: str) -> Member:
    return Member(userid=userid, name=userid.upper(), role=Role.USER)


@pytest.mark.anyio
async def test_queue_room_admits_two_then_rejects() -> None:
    registry = RoomRegistry(default_timer_seconds=600)

    first = await registry.join("conn-a", "R1", _member("a"), RoomMode.QUEUE)
    second = await registry.join("conn-b", "R1", _member("b"), RoomMode.QUEUE)

    assert [m.userid for m in first.snapshot.members] == ["a"]
    assert [m.userid for m in second.snapshot.members] == ["a", "b"]
    assert second.snapshot.capacity == 2
    assert second.snapshot.timer_seconds == 600

    with pytest.raises(RoomFullError):
        await registry.join("conn-c", "R1", _member("c"), RoomMode.QUEUE)

    snapshot = await registry.get_snapshot("R1")
    assert [m.userid for m in snapshot.members] == ["a", "b"]
    assert await registry.bound_room("conn-c") is None


@pytest.mark.anyio
async def test_standard_room_capacity_is_four() -> None:
    registry = RoomRegistry()
    for index in range(4):
        await registry.join(f"conn-{index}", "S", _member(str(index)), RoomMode.STANDARD)

    with pytest.raises(RoomFullError):
        await registry.join("conn-4", "S", _member("4"), RoomMode.STANDARD)

    snapshot = await registry.get_snapshot("S")
    assert len(snapshot.members) == 4
    assert snapshot.to_dict()["users"][0] == {"userid": "0", "name": "0", "role": "user"}


@pytest.mark.anyio
async def test_mode_is_fixed_at_creation() -> None:
    registry = RoomRegistry()
    await registry.join("conn-a", "R", _member("a"), RoomMode.STANDARD)

    with pytest.raises(RoomModeMismatchError):
        await registry.join("conn-b", "R", _member("b"), RoomMode.QUEUE)

    snapshot = await registry.get_snapshot("R")
    assert snapshot.mode is RoomMode.STANDARD
    assert [m.userid for m in snapshot.members] == ["a"]


@pytest.mark.anyio
async def test_leave_removes_only_the_bound_member() -> None:
    registry = RoomRegistry()
    await registry.join("conn-a", "R1", _member("a"), RoomMode.STANDARD)
    await registry.join("conn-b", "R1", _member("b"), RoomMode.STANDARD)
    await registry.join("conn-c", "R2", _member("c"), RoomMode.STANDARD)

    left = await registry.leave("conn-a")

    assert left is not None
    room_key, snapshot = left
    assert room_key == "R1"
    assert [m.userid for m in snapshot.members] == ["b"]
    other = await registry.get_snapshot("R2")
    assert [m.userid for m in other.members] == ["c"]
    assert await registry.bound_room("conn-a") is None

    assert await registry.leave("conn-a") is None
    assert await registry.leave("never-joined") is None


@pytest.mark.anyio
async def test_rejoining_elsewhere_releases_previous_seat() -> None:
    registry = RoomRegistry()
    await registry.join("conn-a", "R1", _member("a"), RoomMode.STANDARD)

    result = await registry.join("conn-a", "R2", _member("a"), RoomMode.STANDARD)

    assert result.previous is not None
    assert result.previous.room_key == "R1"
    assert result.previous.members == ()
    assert await registry.bound_room("conn-a") == "R2"


@pytest.mark.anyio
async def test_rejoining_same_full_room_keeps_seat() -> None:
    registry = RoomRegistry()
    await registry.join("conn-a", "Q", _member("a"), RoomMode.QUEUE)
    await registry.join("conn-b", "Q", _member("b"), RoomMode.QUEUE)

    result = await registry.join("conn-a", "Q", _member("a"), RoomMode.QUEUE)

    assert result.previous is None
    assert [m.userid for m in result.snapshot.members] == ["b", "a"]


@pytest.mark.anyio
async def test_tick_decrements_once_and_never_goes_negative() -> None:
    registry = RoomRegistry(default_timer_seconds=2)
    await registry.join("conn-a", "R", _member("a"), RoomMode.STANDARD)

    first = await registry.tick()
    second = await registry.tick()

    assert [(e.room_key, e.timer_seconds, e.closed) for e in first] == [("R", 1, False)]
    assert [(e.room_key, e.timer_seconds, e.closed) for e in second] == [("R", 0, False)]

    closing = await registry.tick()
    assert [(e.room_key, e.timer_seconds, e.closed) for e in closing] == [("R", 0, True)]
    snapshot = await registry.get_snapshot("R")
    assert snapshot.members == ()
    assert snapshot.timer_seconds == 0

    # closure is announced once per expiry
    assert await registry.tick() == []
    assert await registry.tick() == []


@pytest.mark.anyio
async def test_rejoining_expired_room_rearms_closure() -> None:
    registry = RoomRegistry(default_timer_seconds=0)
    await registry.join("conn-a", "R", _member("a"), RoomMode.STANDARD)
    assert [e.closed for e in await registry.tick()] == [True]
    assert await registry.tick() == []

    await registry.join("conn-b", "R", _member("b"), RoomMode.STANDARD)
    snapshot = await registry.get_snapshot("R")
    assert snapshot.timer_seconds == 0

    assert [e.closed for e in await registry.tick()] == [True]


@pytest.mark.anyio
async def test_closed_out_connection_cannot_remove_rejoined_seat() -> None:
    registry = RoomRegistry(default_timer_seconds=0)
    await registry.join("old-tab", "R", _member("alice"), RoomMode.STANDARD)
    await registry.tick()
    assert await registry.bound_room("old-tab") is None

    await registry.join("new-tab", "R", _member("alice"), RoomMode.STANDARD)

    assert await registry.leave("old-tab") is None
    snapshot = await registry.get_snapshot("R")
    assert [m.userid for m in snapshot.members] == ["alice"]
    assert await registry.bound_room("new-tab") == "R"


@pytest.mark.anyio
async def test_extend_timer() -> None:
    registry = RoomRegistry(default_timer_seconds=0)
    await registry.join("conn-a", "R", _member("a"), RoomMode.STANDARD)
    await registry.tick()

    timer = await registry.extend_timer("R", 5 * 60)
    assert timer == 300
    events = await registry.tick()
    assert [(e.timer_seconds, e.closed) for e in events] == [(299, False)]

    with pytest.raises(RoomNotFoundError):
        await registry.extend_timer("missing", 60)
