from __future__ import annotations

import logging
from pathlib import PurePosixPath
from typing import Dict, Iterable, Optional

from room_shared.protocol import FileReference, Sender

from .config import DEFAULT_DENIED_EXTENSIONS
from .errors import UploadRejectedError
from .save_service import ProgressCallback, SaveServiceClient

logger = logging.getLogger(__name__)


class UploadForwarder:
    """Pushes finished file payloads to the external upload endpoint."""

    def __init__(
        self,
        service: SaveServiceClient,
        *,
        denied_extensions: Iterable[str] = DEFAULT_DENIED_EXTENSIONS,
    ) -> None:
        self._service = service
        self._denied_extensions = frozenset(ext.lower() for ext in denied_extensions)

    def check_allowed(self, file_name: str) -> None:
        # windows clients send backslash separated names
        suffix = PurePosixPath(file_name.replace("\\", "/")).suffix.lower()
        if suffix and suffix in self._denied_extensions:
            raise UploadRejectedError(f"{suffix} files are not allowed")

    async def forward(
        self,
        file_bytes: bytes,
        file_name: str,
        sender: Sender,
        room_key: str,
        *,
        progress: Optional[ProgressCallback] = None,
    ) -> FileReference:
        self.check_allowed(file_name)
        fields = _form_fields(sender, room_key)
        logger.info("Forwarding %s (%d bytes) from %s in room %s", file_name, len(file_bytes), sender.userid, room_key)
        reference = await self._service.upload_file(file_bytes, file_name, fields, progress=progress)
        logger.info("Stored %s at %s", file_name, reference.path)
        return reference

    @staticmethod
    def file_message(reference: FileReference, sender: Sender, file_name: str) -> Dict[str, object]:
        message: Dict[str, object] = {
            "sender": sender.to_dict(),
            "fileName": file_name,
            "fileUrl": reference.path,
            "timestamp": reference.timestamp,
        }
        message.update(sender.reply_context())
        return message


def _form_fields(sender: Sender, room_key: str) -> Dict[str, str]:
    fields = {
        "mid": sender.mid,
        "uid": sender.userid,
        "role": sender.role,
        "name": sender.name,
        "type": sender.type,
        "room": room_key,
        "replyto": sender.replyto,
        "replytoId": sender.replytoId,
        "replytousertype": sender.replytousertype,
    }
    return {key: str(value) for key, value in fields.items() if value is not None}
