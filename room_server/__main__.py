from __future__ import annotations

import asyncio
import logging
import signal
from logging.handlers import RotatingFileHandler
from typing import Optional, Sequence

from room_server.chunk_assembler import ChunkAssembler
from room_server.config import ServerConfig, load_config
from room_server.diagnostics import DiagnosticsServer, create_app, install_log_handler
from room_server.room_registry import RoomRegistry
from room_server.save_service import SaveServiceClient
from room_server.session_controller import SessionController
from room_server.upload_forwarder import UploadForwarder

logger = logging.getLogger(__name__)

LOG_FORMAT = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"


def _rotating_handler(config: ServerConfig) -> RotatingFileHandler:
    assert config.log_file is not None
    config.log_file.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        config.log_file,
        maxBytes=max(1024, config.log_max_bytes),
        backupCount=max(1, config.log_backup_count),
        encoding="utf-8",
    )
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    return handler


def configure_logging(config: ServerConfig) -> None:
    """Console output always; a rotating file when ``--log-file`` is set."""

    level = getattr(logging, config.log_level, logging.INFO)
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if config.log_file:
        handlers.append(_rotating_handler(config))
    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers, force=True)
    # diagnostics request lines only at WARNING and above
    logging.getLogger("uvicorn.access").setLevel(max(level, logging.WARNING))
    install_log_handler(level)


async def serve(config: ServerConfig) -> None:
    registry = RoomRegistry(default_timer_seconds=config.default_timer_seconds)
    assembler = ChunkAssembler(config.scratch_dir, idle_timeout=config.upload_idle_timeout)
    service = SaveServiceClient(config.service_url, timeout=config.http_timeout)
    forwarder = UploadForwarder(service, denied_extensions=config.denied_extensions)
    controller = SessionController(config.host, config.port, registry, assembler, forwarder, service)
    diagnostics: Optional[DiagnosticsServer] = None
    if config.enable_diagnostics:
        diagnostics = DiagnosticsServer(
            create_app(registry, assembler, controller.hub),
            host=config.diagnostics_host,
            port=config.diagnostics_port,
        )

    stop_event = asyncio.Event()

    def _signal_handler() -> None:
        logger.info("Shutdown signal received")
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _signal_handler)
        except NotImplementedError:
            # Signals aren't implemented on Windows for ProactorEventLoop; fallback to keyboard interrupt.
            pass

    await controller.start()
    if diagnostics is not None:
        await diagnostics.start()

    await stop_event.wait()
    logger.info("Stopping services")

    try:
        await controller.stop()
    except Exception:
        logger.exception("Error stopping room server")

    if diagnostics is not None:
        try:
            await diagnostics.stop()
        except Exception:
            logger.exception("Error stopping diagnostics server")

    try:
        await assembler.cleanup()
    except Exception:
        logger.exception("Failed to clear upload scratch storage during shutdown")

    await service.close()
    logger.info("Shutdown complete")


def main(argv: Optional[Sequence[str]] = None) -> None:
    config = load_config(argv)
    configure_logging(config)
    try:
        asyncio.run(serve(config))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
