import json, logging, sys, time
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

# LogRecord attributes that are never copied into the JSON line.
_RESERVED = frozenset((
    "msg", "args", "exc_info", "exc_text", "stack_info", "created", "msecs",
    "relativeCreated", "levelno", "levelname", "pathname", "filename", "module",
    "lineno", "funcName", "thread", "threadName", "processName", "process",
    "name", "taskName", "message",
))


class JsonFormatter(logging.Formatter):
    """One JSON object per line: ts, level, name, msg, static fields, then extras."""

    def __init__(self, static_fields: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__()
        self.static_fields: Dict[str, Any] = dict(static_fields or {})

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(record.created)),
            "level": record.levelname,
            "name": record.name,
            "msg": record.getMessage(),
        }
        payload.update(self.static_fields)
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        for key, value in record.__dict__.items():
            if key in _RESERVED:
                continue
            try:
                json.dumps(value)
            except (TypeError, ValueError):
                value = str(value)
            payload[key] = value
        return json.dumps(payload)


def get_logger(name: str = "sstunnel") -> logging.Logger:
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger
    logger.setLevel(logging.INFO)
    h = logging.StreamHandler(sys.stdout)
    h.setFormatter(JsonFormatter())
    logger.addHandler(h)
    logger.propagate = False
    return logger


def set_verbosity(logger: logging.Logger, *, quiet: bool = False, verbose: bool = False) -> int:
    """Map the CLI flags onto a level; quiet wins over verbose."""
    level = logging.WARNING if quiet else logging.DEBUG if verbose else logging.INFO
    logger.setLevel(level)
    return level


def tag_role(role: str, logger: Optional[logging.Logger] = None) -> None:
    """Stamp every line written by the logger's JSON handlers with the process role."""
    for handler in (logger or get_logger()).handlers:
        if isinstance(handler.formatter, JsonFormatter):
            handler.formatter.static_fields["role"] = role


def configure_file_logger(role: str, logger: logging.Logger | None = None, logs_dir: Path | None = None) -> Path:
    """Attach a JSON file handler for `role` and return the log path."""

    active_logger = logger or get_logger()

    # Only one file handler per logger; tests start several roles in one process.
    for handler in list(active_logger.handlers):
        if getattr(handler, "_sstunnel_file_handler", False):
            active_logger.removeHandler(handler)
            handler.close()

    logs_dir = logs_dir or Path("logs")
    logs_dir.mkdir(parents=True, exist_ok=True)
    timestamp = time.strftime("%Y%m%d-%H%M%S", time.gmtime())
    path = logs_dir / f"sstunnel-{role}-{timestamp}.log"

    file_handler = logging.FileHandler(path, encoding="utf-8")
    file_handler.setFormatter(JsonFormatter({"role": role}))
    file_handler._sstunnel_file_handler = True  # type: ignore[attr-defined]
    active_logger.addHandler(file_handler)

    return path
