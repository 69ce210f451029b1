import logging

from room_server.__main__ import LOG_FORMAT, _rotating_handler
from room_server.config import ServerConfig


def test_rotating_log_file_receives_server_records(tmp_path) -> None:
    log_file = tmp_path / "logs" / "rooms.log"
    handler = _rotating_handler(ServerConfig(log_file=log_file, log_max_bytes=10, log_backup_count=0))
    room_logger = logging.getLogger("room_server.test_rotation")
    room_logger.addHandler(handler)
    room_logger.setLevel(logging.INFO)
    try:
        room_logger.info("room %s ready", "R1")
        handler.flush()
    finally:
        room_logger.removeHandler(handler)
        handler.close()

    assert handler.maxBytes == 1024
    assert handler.backupCount == 1
    assert handler.formatter._fmt == LOG_FORMAT
    assert "INFO room_server.test_rotation: room R1 ready" in log_file.read_text(encoding="utf-8")
