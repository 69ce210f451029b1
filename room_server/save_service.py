"""HTTP client for the external save service.

The service persists chat messages and files and answers payment status
lookups. It is treated as an opaque dependency; this module only knows its
three endpoints.
"""
from __future__ import annotations

import io
import logging
from typing import Any, Callable, Dict, Optional
from urllib.parse import quote

import httpx

from room_shared.protocol import FileReference

from .config import DEFAULT_SERVICE_URL
from .errors import TransactionLookupError, UploadFailedError, UpstreamError

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int], None]

CHAT_SAVE_PATH = "/api/chat/save"
UPLOAD_PATH = "/api/chat/upload"
TRANSACTION_STATUS_PATH = "/api/users/gettranstat/{reference}"


class _ProgressReader(io.BytesIO):
    """File object that reports how much of itself has been read, in percent."""

    def __init__(self, payload: bytes, on_progress: ProgressCallback) -> None:
        super().__init__(payload)
        self._total = len(payload)
        self._on_progress = on_progress
        self._last_reported = -1

    def read(self, size: Optional[int] = -1) -> bytes:
        chunk = super().read(size)
        if self._total == 0:
            percent = 100
        else:
            percent = round(self.tell() * 100 / self._total)
        if percent != self._last_reported:
            self._last_reported = percent
            try:
                self._on_progress(percent)
            except Exception:
                logger.exception("Upload progress callback failed")
        return chunk


class SaveServiceClient:
    """Async wrapper around the save service's HTTP endpoints."""

    def __init__(
        self,
        base_url: str = DEFAULT_SERVICE_URL,
        *,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

    async def __aenter__(self) -> "SaveServiceClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    async def save_chat_message(self, message: Dict[str, Any]) -> Any:
        try:
            response = await self._client.post(CHAT_SAVE_PATH, json=message)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise UpstreamError(f"Chat save failed with status {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            raise UpstreamError(f"Chat save failed: {exc}") from exc
        return _json_or_text(response)

    async def upload_file(
        self,
        file_bytes: bytes,
        file_name: str,
        fields: Dict[str, str],
        *,
        progress: Optional[ProgressCallback] = None,
    ) -> FileReference:
        body: io.BytesIO
        if progress is not None:
            body = _ProgressReader(file_bytes, progress)
        else:
            body = io.BytesIO(file_bytes)
        files = {"file": (file_name or "uploadedFile", body, "application/octet-stream")}
        try:
            response = await self._client.post(UPLOAD_PATH, data=fields, files=files)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as exc:
            raise UploadFailedError(f"Upload failed with status {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            raise UploadFailedError(f"Upload failed: {exc}") from exc
        except ValueError as exc:
            raise UploadFailedError("Upload response was not JSON") from exc

        file_info = data.get("file") if isinstance(data, dict) else None
        if not isinstance(file_info, dict) or not file_info.get("path"):
            raise UploadFailedError("Upload response did not include a file path")
        return FileReference(path=str(file_info["path"]), timestamp=file_info.get("timestamp"))

    async def transaction_status(self, reference: str) -> str:
        path = TRANSACTION_STATUS_PATH.format(reference=quote(reference, safe=""))
        try:
            response = await self._client.get(path)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as exc:
            raise TransactionLookupError(f"Transaction lookup failed with status {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            raise TransactionLookupError(f"Transaction lookup failed: {exc}") from exc
        except ValueError as exc:
            raise TransactionLookupError("Transaction lookup response was not JSON") from exc
        if not isinstance(data, dict):
            raise TransactionLookupError("Transaction lookup response was not an object")
        return str(data.get("status", ""))


def _json_or_text(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return {"raw_response": response.text}
