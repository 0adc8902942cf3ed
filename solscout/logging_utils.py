from __future__ import annotations

import contextlib
import json
import logging
import os
import sys
import threading
import time
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Iterable

DEFAULT_MAX_BYTES = 5_000_000
DEFAULT_BACKUP_COUNT = 3
DEFAULT_FORMAT = "%(asctime)sZ [%(levelname)s] %(name)s:%(lineno)d | %(message)s"
DEFAULT_DATEFMT = "%Y-%m-%d %H:%M:%S"

_NOISY_LOGGERS: tuple[str, ...] = (
    "asyncio",
    "websockets",
    "httpx",
    "solana",
)

_warn_once_lock = threading.Lock()
_warn_once_last_emit: dict[str, float] = {}

_SENTINEL = "_solscout_stdout_handler"


class _UTCFormatter(logging.Formatter):
    """Formatter that renders timestamps in UTC."""

    converter = time.gmtime


_LOG_RECORD_RESERVED = set(logging.LogRecord(None, 0, "", 0, "", (), None).__dict__.keys())


class JsonFormatter(logging.Formatter):
    """Structured logging formatter producing JSON payloads."""

    def format(self, record: logging.LogRecord) -> str:  # noqa: D401 - short summary sufficient
        ts = datetime.fromtimestamp(record.created, tz=timezone.utc)
        payload: dict[str, Any] = {
            "ts": ts.strftime("%Y-%m-%dT%H:%M:%S.") + f"{int(record.msecs):03d}Z",
            "level": record.levelname,
            "logger": record.name,
            "line": record.lineno,
            "msg": record.getMessage(),
        }

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key in payload or key.startswith("_") or key in _LOG_RECORD_RESERVED:
                continue
            payload[key] = value

        return json.dumps(payload, ensure_ascii=False, separators=(",", ":"), default=str)


def setup_stdout_logging(
    *,
    level: int = logging.INFO,
    formatter: logging.Formatter | None = None,
    quiet: Iterable[str] = _NOISY_LOGGERS,
) -> logging.StreamHandler:
    """Ensure a single ``StreamHandler`` to ``sys.stdout`` exists on the root logger."""

    root = logging.getLogger()
    root.setLevel(level)

    handler = getattr(root, _SENTINEL, None)
    if not isinstance(handler, logging.StreamHandler) or handler not in root.handlers:
        handler = logging.StreamHandler(sys.stdout)
        root.addHandler(handler)
        setattr(root, _SENTINEL, handler)

    handler.setLevel(level)
    if formatter is not None:
        handler.setFormatter(formatter)

    # Third-party chatter stays at WARNING unless the root runs at DEBUG.
    for name in quiet:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    return handler


def warn_once_per(
    minutes: float,
    key: str,
    message: str,
    *args: Any,
    logger: logging.Logger | None = None,
    **kwargs: Any,
) -> bool:
    """Emit ``logger.warning`` for *message* at most once per *minutes* interval."""

    interval = max(0.0, minutes) * 60.0
    now = time.monotonic()

    with _warn_once_lock:
        last = _warn_once_last_emit.get(key)
        if last is not None and interval > 0 and now - last < interval:
            return False
        _warn_once_last_emit[key] = now

    target = logger or logging.getLogger()
    target.warning(message, *args, **kwargs)
    return True


def reset_warn_once_cache() -> None:
    """Clear cached emission timestamps for :func:`warn_once_per`."""

    with _warn_once_lock:
        _warn_once_last_emit.clear()


def _parse_log_level(value: str | int | None) -> int:
    if value is None or value == "":
        return logging.INFO
    if isinstance(value, int):
        return value
    level = str(value).strip().upper()
    if level.isdigit():
        return int(level)
    resolved = logging.getLevelName(level)
    return resolved if isinstance(resolved, int) else logging.INFO


def _env_flag(name: str) -> bool | None:
    raw = os.getenv(name)
    if raw is None:
        return None
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def configure_logging(
    *,
    level: str | int | None = None,
    json_logs: bool | None = None,
    logfile: str | Path | None = None,
    max_bytes: int | None = None,
    backup_count: int | None = None,
) -> Path | None:
    """Install stdout (and optionally rotating file) handlers on the root logger.

    Unset arguments fall back to ``LOG_LEVEL``, ``LOG_JSON`` and ``LOG_FILE``.
    Returns the resolved log file path, or ``None`` when logging only to stdout.
    """

    resolved_level = _parse_log_level(level if level is not None else os.getenv("LOG_LEVEL"))
    if json_logs is None:
        json_logs = bool(_env_flag("LOG_JSON"))

    formatter: logging.Formatter
    if json_logs:
        formatter = JsonFormatter()
    else:
        formatter = _UTCFormatter(DEFAULT_FORMAT, datefmt=DEFAULT_DATEFMT)

    setup_stdout_logging(level=resolved_level, formatter=formatter)

    target = logfile or os.getenv("LOG_FILE")
    if not target:
        return None

    log_path = Path(target).expanduser().resolve()
    log_path.parent.mkdir(parents=True, exist_ok=True)
    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, "baseFilename", None) == str(log_path):
            root.removeHandler(handler)
            with contextlib.suppress(Exception):
                handler.close()

    file_handler = RotatingFileHandler(
        log_path,
        maxBytes=max_bytes or DEFAULT_MAX_BYTES,
        backupCount=backup_count or DEFAULT_BACKUP_COUNT,
        encoding="utf-8",
    )
    file_handler.setLevel(resolved_level)
    file_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    root.debug("Logging initialised", extra={"log_file": str(log_path)})
    return log_path
