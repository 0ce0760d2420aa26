"""Logging setup for FrameDiffusion runs.

Render attempts run on pool threads named ``render_N``, so every format
carries the thread name next to the component. Keyword fields passed to a
:class:`StructuredLogger` (``frame=12, worker="localhost:9000"``) become
JSON keys or a trailing ``[frame=12 worker=localhost:9000]`` in text mode.

Example usage:
    >>> from framediffusion.utils.logging import LogConfig, configure_logging, get_logger
    >>> configure_logging(LogConfig(log_level="DEBUG", log_format="json"))
    >>> log = get_logger("scheduling.dispatcher").bind(worker="localhost:9000")
    >>> log.info("Frame rendered", frame=12)
"""

import argparse
import json
import logging
import sys
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
LogFormat = Literal["text", "json"]

ROOT_LOGGER_NAME = "framediffusion"
VALID_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
VALID_FORMATS = ("text", "json")

# Attributes the logging module reserves on adapter kwargs
_RESERVED_KWARGS = ("exc_info", "stack_info", "stacklevel", "extra")


def _check_level(level: str, where: str) -> None:
    if level.upper() not in VALID_LEVELS:
        raise ValueError(
            f"Invalid {where} '{level}'. Must be one of: {', '.join(VALID_LEVELS)}"
        )


@dataclass
class LogConfig:
    """Where and how run logs are written.

    Attributes:
        log_level: Level for the whole ``framediffusion`` tree
        log_format: ``text`` for terminals, ``json`` for log shippers
        log_file: Optional rotating log file, in addition to stderr
        component_levels: Per-module overrides keyed by path below the
            package, e.g. ``{"client": "DEBUG", "scheduling.retry": "WARNING"}``
        max_file_size_mb: Rotation size of the log file
        backup_count: Rotated files kept
        include_timestamp: Prefix text lines with the wall-clock time
    """

    log_level: LogLevel = "INFO"
    log_format: LogFormat = "text"
    log_file: Optional[str] = None
    component_levels: Dict[str, LogLevel] = field(default_factory=dict)
    max_file_size_mb: int = 10
    backup_count: int = 5
    include_timestamp: bool = True

    def __post_init__(self) -> None:
        _check_level(self.log_level, "log_level")
        if self.log_format not in VALID_FORMATS:
            raise ValueError(
                f"Invalid log_format '{self.log_format}'. Must be 'text' or 'json'"
            )
        for component, level in self.component_levels.items():
            _check_level(level, f"log level for component '{component}'")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LogConfig":
        """Build from the ``logging`` config section; None means default."""
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known and v is not None})


class JSONFormatter(logging.Formatter):
    """One JSON object per line.

    {"timestamp": "2025-08-02T20:46:10.123Z", "level": "INFO",
     "component": "scheduling.dispatcher", "thread": "render_0",
     "message": "Frame rendered", "frame": 12}
    """

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        entry: Dict[str, Any] = {
            "timestamp": created.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname,
            "component": record.name.split(".", 1)[-1],
            "thread": record.threadName,
            "message": record.getMessage(),
        }
        entry.update(getattr(record, "extra_fields", None) or {})
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str, ensure_ascii=False)


class TextFormatter(logging.Formatter):
    """``2025-08-02 20:46:10 INFO    [render_0] framediffusion.scheduling.dispatcher: msg [frame=12]``"""

    def __init__(self, include_timestamp: bool = True) -> None:
        fmt = "%(levelname)-7s [%(threadName)s] %(name)s: %(message)s"
        if include_timestamp:
            fmt = "%(asctime)s " + fmt
        super().__init__(fmt=fmt, datefmt="%Y-%m-%d %H:%M:%S")

    def formatMessage(self, record: logging.LogRecord) -> str:
        extra_fields = getattr(record, "extra_fields", None)
        if extra_fields:
            pairs = " ".join(f"{k}={v}" for k, v in extra_fields.items())
            record.message = f"{record.message} [{pairs}]"
        return super().formatMessage(record)


class StructuredLogger(logging.LoggerAdapter):
    """Adapter that turns keyword arguments into structured fields.

    ``log.info("Frame rendered", frame=3)`` keeps ``frame`` for the JSON
    formatter and appends it to the line for the text formatter. Fields
    given to :meth:`bind` are added to every record.
    """

    def __init__(
        self,
        logger: logging.Logger,
        component: str,
        extra: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(logger, extra or {})
        self.component = component

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        extra_fields = {k: kwargs.pop(k) for k in list(kwargs) if k not in _RESERVED_KWARGS}
        for key, value in (self.extra or {}).items():
            extra_fields.setdefault(key, value)
        kwargs.setdefault("extra", {})["extra_fields"] = extra_fields
        return msg, kwargs

    def bind(self, **context: Any) -> "StructuredLogger":
        return StructuredLogger(self.logger, self.component, {**(self.extra or {}), **context})


def _logger_name(component: str) -> str:
    """``scheduling.dispatcher`` and ``framediffusion.scheduling.dispatcher`` name the same logger."""
    if component == ROOT_LOGGER_NAME or component.startswith(ROOT_LOGGER_NAME + "."):
        return component
    return f"{ROOT_LOGGER_NAME}.{component}"


def _build_handlers(config: LogConfig) -> List[logging.Handler]:
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if config.log_file:
        log_path = Path(config.log_file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(
            RotatingFileHandler(
                log_path,
                maxBytes=config.max_file_size_mb * 1024 * 1024,
                backupCount=config.backup_count,
                encoding="utf-8",
            )
        )

    if config.log_format == "json":
        formatter: logging.Formatter = JSONFormatter()
    else:
        formatter = TextFormatter(include_timestamp=config.include_timestamp)
    for handler in handlers:
        handler.setFormatter(formatter)
    return handlers


def configure_logging(config: Optional[LogConfig] = None) -> None:
    """Install handlers on the ``framediffusion`` logger tree.

    Called once by the command line entry point; calling it again replaces
    the previous handlers. Component levels are keyed by the module path below
    the package, e.g. ``{"scheduling.dispatcher": "DEBUG"}``.
    """
    config = config or LogConfig()

    root = logging.getLogger(ROOT_LOGGER_NAME)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    root.setLevel(config.log_level.upper())
    for handler in _build_handlers(config):
        root.addHandler(handler)
    root.propagate = False

    for component, level in config.component_levels.items():
        logging.getLogger(_logger_name(component)).setLevel(level.upper())


def get_logger(name: str) -> StructuredLogger:
    """Structured logger for a module (``get_logger(__name__)``) or a package subpath."""
    full_name = _logger_name(name)
    component = full_name[len(ROOT_LOGGER_NAME) + 1:] or ROOT_LOGGER_NAME
    return StructuredLogger(logging.getLogger(full_name), component)


def add_logging_arguments(parser: argparse.ArgumentParser) -> None:
    """Add ``--log-level``, ``--log-format`` and ``--log-file``.

    Defaults are None so config file values apply unless an option is given.
    """
    group = parser.add_argument_group("logging")
    group.add_argument("--log-level", type=str.upper, choices=VALID_LEVELS, default=None,
                       help="Logging level (default: INFO)")
    group.add_argument("--log-format", choices=VALID_FORMATS, default=None,
                       help="Log line format (default: text)")
    group.add_argument("--log-file", type=str, default=None,
                       help="Also write logs to this rotating file")
