import json

import httpx
import pytest

from room_server.errors import TransactionLookupError, UploadFailedError, UploadRejectedError, UpstreamError
from room_server.save_service import SaveServiceClient
from room_server.upload_forwarder import UploadForwarder
from room_shared.protocol import FileReference, Sender


@pytest.fixture
def anyio_backend():
    return "asyncio"


SENDER = Sender(userid="u1", name="Ada", role="user", mid="m1", type="file", replyto="see this", replytoId="m0")


def _service(handler) -> SaveServiceClient:
    return SaveServiceClient("https://save.example", transport=httpx.MockTransport(handler))


@pytest.mark.anyio
async def test_forward_posts_multipart_and_returns_reference() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"file": {"path": "https://cdn.example/a.png", "timestamp": "2024-01-01T00:00:00Z"}})

    service = _service(handler)
    forwarder = UploadForwarder(service)
    progress: list[int] = []

    reference = await forwarder.forward(b"PNGDATA" * 100, "a.png", SENDER, "R1", progress=progress.append)

    assert reference == FileReference(path="https://cdn.example/a.png", timestamp="2024-01-01T00:00:00Z")
    assert len(seen) == 1
    request = seen[0]
    assert request.method == "POST"
    assert request.url.path == "/api/chat/upload"
    assert request.headers["content-type"].startswith("multipart/form-data")
    body = request.content
    assert b"PNGDATA" * 100 in body
    assert b'name="uid"' in body and b"u1" in body
    assert b'name="room"' in body and b"R1" in body
    assert b'name="replytoId"' in body
    assert b'name="replytousertype"' not in body
    assert progress and progress[-1] == 100
    assert progress == sorted(progress)
    await service.close()


@pytest.mark.anyio
async def test_denied_extension_is_rejected_before_any_request() -> None:
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={})

    service = _service(handler)
    forwarder = UploadForwarder(service, denied_extensions=[".exe", ".bat"])

    with pytest.raises(UploadRejectedError):
        await forwarder.forward(b"MZ", "setup.EXE", SENDER, "R1")
    with pytest.raises(UploadRejectedError):
        await forwarder.forward(b"@echo", "C:\\tmp\\run.bat", SENDER, "R1")

    assert calls == []
    forwarder.check_allowed("notes.txt")
    forwarder.check_allowed("README")
    await service.close()


@pytest.mark.anyio
@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(500, json={"error": "boom"}),
        httpx.Response(200, text="not json"),
        httpx.Response(200, json={"file": {}}),
    ],
)
async def test_upload_failures_map_to_upload_failed(response) -> None:
    service = _service(lambda request: response)
    forwarder = UploadForwarder(service)

    with pytest.raises(UploadFailedError):
        await forwarder.forward(b"data", "a.txt", SENDER, "R1")
    await service.close()


@pytest.mark.anyio
async def test_transport_error_maps_to_upload_failed() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("unreachable", request=request)

    service = _service(handler)
    with pytest.raises(UploadFailedError):
        await UploadForwarder(service).forward(b"data", "a.txt", SENDER, "R1")
    await service.close()


def test_file_message_carries_reply_context() -> None:
    message = UploadForwarder.file_message(FileReference("https://cdn.example/f", "ts"), SENDER, "f.txt")
    assert message["fileUrl"] == "https://cdn.example/f"
    assert message["timestamp"] == "ts"
    assert message["fileName"] == "f.txt"
    assert message["replyto"] == "see this"
    assert message["replytoId"] == "m0"
    assert message["replytousertype"] is None
    assert message["sender"]["userid"] == "u1"


@pytest.mark.anyio
async def test_chat_save_posts_json() -> None:
    seen: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/chat/save"
        seen.append(json.loads(request.content))
        return httpx.Response(201, json={"ok": True})

    service = _service(handler)
    result = await service.save_chat_message({"room": "R1", "message": "hi"})
    assert result == {"ok": True}
    assert seen == [{"room": "R1", "message": "hi"}]
    await service.close()


@pytest.mark.anyio
async def test_chat_save_failure_raises_upstream_error() -> None:
    service = _service(lambda request: httpx.Response(503))
    with pytest.raises(UpstreamError):
        await service.save_chat_message({"room": "R1"})
    await service.close()


@pytest.mark.anyio
async def test_transaction_status_lookup() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/users/gettranstat/TX1"
        return httpx.Response(200, json={"status": "completed"})

    service = _service(handler)
    assert await service.transaction_status("TX1") == "completed"
    await service.close()


@pytest.mark.anyio
async def test_transaction_status_failure() -> None:
    service = _service(lambda request: httpx.Response(404, json={"message": "unknown"}))
    with pytest.raises(TransactionLookupError):
        await service.transaction_status("TX1")
    await service.close()
