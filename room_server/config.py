from __future__ import annotations

import argparse
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Mapping, Optional, Sequence

from room_shared.protocol import DEFAULT_CONTROL_PORT, DEFAULT_DIAGNOSTICS_PORT

DEFAULT_ROOM_TIMER_SECONDS = 600
DEFAULT_UPLOAD_IDLE_TIMEOUT = 300.0
DEFAULT_SERVICE_URL = "https://api.nollywoodfilmmaker.com"
DEFAULT_DENIED_EXTENSIONS = (".exe",)

_ENV_PREFIX = "ROOMS_"


@dataclass(slots=True)
class ServerConfig:
    """Runtime settings for the room server."""

    host: str = "0.0.0.0"
    port: int = DEFAULT_CONTROL_PORT
    diagnostics_host: str = "127.0.0.1"
    diagnostics_port: int = DEFAULT_DIAGNOSTICS_PORT
    enable_diagnostics: bool = True
    default_timer_seconds: int = DEFAULT_ROOM_TIMER_SECONDS
    denied_extensions: tuple[str, ...] = DEFAULT_DENIED_EXTENSIONS
    scratch_dir: Path = field(default_factory=lambda: Path("upload_scratch"))
    upload_idle_timeout: float = DEFAULT_UPLOAD_IDLE_TIMEOUT
    service_url: str = DEFAULT_SERVICE_URL
    http_timeout: float = 30.0
    log_level: str = "INFO"
    log_file: Optional[Path] = None
    log_max_bytes: int = 5 * 1024 * 1024
    log_backup_count: int = 5

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ServerConfig":
        """Build a config from ``ROOMS_*`` environment variables."""

        env = os.environ if environ is None else environ
        config = cls()
        for name, (attr, convert) in _ENV_FIELDS.items():
            raw = env.get(_ENV_PREFIX + name)
            if raw is None or raw == "":
                continue
            try:
                setattr(config, attr, convert(raw))
            except ValueError as exc:
                raise ValueError(f"Invalid value for {_ENV_PREFIX + name}: {raw!r}") from exc
        config.validate()
        return config

    def validate(self) -> None:
        if self.default_timer_seconds < 0:
            raise ValueError("default_timer_seconds must be >= 0")
        if self.upload_idle_timeout <= 0:
            raise ValueError("upload_idle_timeout must be positive")
        if self.http_timeout <= 0:
            raise ValueError("http_timeout must be positive")


def parse_extensions(raw: str) -> tuple[str, ...]:
    """Parse a comma separated extension list into normalised ``.ext`` entries."""

    extensions: list[str] = []
    for item in raw.split(","):
        item = item.strip().lower()
        if not item:
            continue
        if not item.startswith("."):
            item = "." + item
        extensions.append(item)
    return tuple(extensions)


_ENV_FIELDS: dict[str, tuple[str, Callable[[str], Any]]] = {
    "HOST": ("host", str),
    "PORT": ("port", int),
    "DIAGNOSTICS_HOST": ("diagnostics_host", str),
    "DIAGNOSTICS_PORT": ("diagnostics_port", int),
    "DEFAULT_TIMER": ("default_timer_seconds", int),
    "DENIED_EXTENSIONS": ("denied_extensions", parse_extensions),
    "SCRATCH_DIR": ("scratch_dir", Path),
    "UPLOAD_IDLE_TIMEOUT": ("upload_idle_timeout", float),
    "SERVICE_URL": ("service_url", str),
    "HTTP_TIMEOUT": ("http_timeout", float),
    "LOG_LEVEL": ("log_level", str.upper),
    "LOG_FILE": ("log_file", Path),
}


def build_parser(defaults: ServerConfig) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Real-time room coordinator server")
    parser.add_argument("--host", default=defaults.host, help="Host/IP to bind the control server")
    parser.add_argument("--port", type=int, default=defaults.port, help="TCP control port")
    parser.add_argument("--diagnostics-host", default=defaults.diagnostics_host, help="Host for the diagnostics HTTP server")
    parser.add_argument("--diagnostics-port", type=int, default=defaults.diagnostics_port, help="Port for the diagnostics HTTP server")
    parser.add_argument("--no-diagnostics", action="store_true", help="Do not start the diagnostics HTTP server")
    parser.add_argument(
        "--default-timer",
        type=int,
        default=defaults.default_timer_seconds,
        help="Countdown in seconds given to newly created rooms",
    )
    parser.add_argument(
        "--denied-extensions",
        type=parse_extensions,
        default=defaults.denied_extensions,
        help="Comma separated file extensions that may not be uploaded",
    )
    parser.add_argument(
        "--scratch-dir",
        type=Path,
        default=defaults.scratch_dir,
        help="Directory for in-flight upload chunks",
    )
    parser.add_argument(
        "--upload-idle-timeout",
        type=float,
        default=defaults.upload_idle_timeout,
        help="Seconds before a stalled chunked upload is discarded",
    )
    parser.add_argument("--service-url", default=defaults.service_url, help="Base URL of the external save service")
    parser.add_argument("--http-timeout", type=float, default=defaults.http_timeout, help="Timeout for external HTTP calls")
    parser.add_argument(
        "--log-level",
        type=str.upper,
        default=defaults.log_level,
        choices=["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG", "NOTSET"],
        help="Logging verbosity",
    )
    parser.add_argument("--log-file", type=Path, default=defaults.log_file, help="Optional path to a rotating log file")
    parser.add_argument("--log-max-bytes", type=int, default=defaults.log_max_bytes, help="Max size of the log file before rotation")
    parser.add_argument("--log-backup-count", type=int, default=defaults.log_backup_count, help="Number of rotated log files to retain")
    return parser


def load_config(argv: Optional[Sequence[str]] = None, environ: Optional[Mapping[str, str]] = None) -> ServerConfig:
    """Resolve configuration: defaults, then environment, then command line."""

    base = ServerConfig.from_env(environ)
    args = build_parser(base).parse_args(argv)
    config = ServerConfig(
        host=args.host,
        port=args.port,
        diagnostics_host=args.diagnostics_host,
        diagnostics_port=args.diagnostics_port,
        enable_diagnostics=not args.no_diagnostics,
        default_timer_seconds=args.default_timer,
        denied_extensions=tuple(args.denied_extensions),
        scratch_dir=args.scratch_dir,
        upload_idle_timeout=args.upload_idle_timeout,
        service_url=args.service_url,
        http_timeout=args.http_timeout,
        log_level=args.log_level,
        log_file=args.log_file,
        log_max_bytes=args.log_max_bytes,
        log_backup_count=args.log_backup_count,
    )
    config.validate()
    return config
