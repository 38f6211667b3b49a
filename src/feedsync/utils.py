from __future__ import annotations

import dataclasses
import json
import logging
import os
import re
import sys
from datetime import date, datetime, timezone
from typing import Any, Callable, Iterator

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

_SECRET_PARAM_RE = re.compile(r"(?i)\b(apikey|api_key|token|key)=([^&\s\"']+)")


def log_event(logger: logging.Logger, level: int, event: str, **fields: Any) -> None:
    message = " ".join([f"event={event}", *(f"{key}={value}" for key, value in fields.items())])
    logger.log(level, message)


def configure_logging(logger_name: str, default_level: str = "INFO") -> logging.Logger:
    """Attach the stdout (and optional file) handler once per process.

    ``FS_LOG_LEVEL`` sets the handler level, ``FS_LOG_FILE`` adds a file
    handler and ``FS_LOG_LEVELS`` holds ``logger=LEVEL`` overrides.
    """
    level = _level_from_name(os.environ.get("FS_LOG_LEVEL", default_level))
    root = logging.getLogger()
    if not root.handlers:
        root.setLevel(level)

    _attach_once(
        root,
        lambda handler: isinstance(handler, logging.StreamHandler) and handler.stream is sys.stdout,
        lambda: logging.StreamHandler(sys.stdout),
        level,
    )
    log_file = os.environ.get("FS_LOG_FILE")
    if log_file:
        log_path = os.path.abspath(log_file)
        _attach_once(
            root,
            lambda handler: isinstance(handler, logging.FileHandler)
            and handler.baseFilename == log_path,
            lambda: _file_handler(log_path),
            level,
        )

    for name, override in _level_overrides(os.environ.get("FS_LOG_LEVELS", "")):
        logging.getLogger(name).setLevel(override)
    return logging.getLogger(logger_name)


def _level_from_name(name: str) -> int:
    return getattr(logging, name.strip().upper(), logging.INFO)


def _attach_once(
    root: logging.Logger,
    matches: Callable[[logging.Handler], bool],
    build: Callable[[], logging.Handler],
    level: int,
) -> None:
    if any(matches(handler) for handler in root.handlers):
        return
    handler = build()
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)


def _file_handler(log_path: str) -> logging.FileHandler:
    os.makedirs(os.path.dirname(log_path), exist_ok=True)
    return logging.FileHandler(log_path)


def _level_overrides(raw: str) -> Iterator[tuple[str, int]]:
    for item in raw.split(","):
        name, sep, level = item.partition("=")
        if sep and name.strip():
            yield name.strip(), _level_from_name(level)


def redact_secrets(text: str) -> str:
    """Mask credential-bearing query parameters, e.g. ``apikey=abc`` -> ``apikey=[REDACTED]``."""
    if not text:
        return text
    return _SECRET_PARAM_RE.sub(lambda match: f"{match.group(1)}=[REDACTED]", text)


def json_dumps(value: Any) -> str:
    return json.dumps(value, default=_json_default, sort_keys=True)


def json_loads_or(value: str | None, default: Any) -> Any:
    if value is None or value == "":
        return default
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return default


def _json_default(value: Any) -> Any:
    if dataclasses.is_dataclass(value):
        return dataclasses.asdict(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if hasattr(value, "model_dump"):
        return value.model_dump(mode="json")
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    return str(value)


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


def utc_now_iso() -> str:
    return utc_now().isoformat()


def utc_today() -> date:
    return utc_now().date()
