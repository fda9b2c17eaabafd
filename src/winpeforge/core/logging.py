"""
WinPEForge structured logging.

Provides structured logging for the build pipeline with an audit trail of
every mount, injection and ISO operation.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog
from rich.console import Console
from structlog.types import EventDict, WrappedLogger

if TYPE_CHECKING:
    from winpeforge.core.config import LoggingConfig


_configured = False
_fallback_console = Console(stderr=True)

_LEVEL_STYLES = {
    "DEBUG": "dim",
    "INFO": "cyan",
    "WARNING": "yellow",
    "ERROR": "red",
    "CRITICAL": "bold red",
}


def add_timestamp(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Add ISO format timestamp to log events."""
    event_dict["timestamp"] = datetime.now().isoformat()
    return event_dict


def add_log_level(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Add log level to event dict."""
    event_dict["level"] = method_name.upper()
    return event_dict


def setup_logging(config: LoggingConfig) -> None:
    """Configure structured logging for WinPEForge."""
    global _configured

    if _configured:
        return

    config.log_directory.mkdir(parents=True, exist_ok=True)

    handlers: list[logging.Handler] = []

    if config.console_enabled:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(getattr(logging, config.level))
        handlers.append(console_handler)

    if config.file_enabled:
        log_file = config.log_directory / f"winpeforge_{datetime.now().strftime('%Y%m%d')}.log"
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)  # Always log everything to file
        handlers.append(file_handler)

    if not handlers:
        # Keeps logging's last-resort stderr handler quiet
        handlers.append(logging.NullHandler())

    logging.basicConfig(
        level=logging.DEBUG,
        handlers=handlers,
        format="%(message)s",
    )

    shared_processors: list[structlog.types.Processor] = [
        structlog.stdlib.add_logger_name,
        add_timestamp,
        add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    tail: list[structlog.types.Processor]
    if config.json_format:
        tail = [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        tail = [structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())]

    structlog.configure(
        processors=shared_processors + tail,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    _configured = True


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name or "winpeforge")


def log_event(
    message: str,
    level: str = "INFO",
    component: str = "winpeforge",
    exception: BaseException | None = None,
    context: dict[str, Any] | None = None,
    logger: Any | None = None,
) -> None:
    """
    Log a message for a pipeline component.

    Falls back to plain console output when the structured logger is
    unavailable or raises, so a broken log handler never fails a build.
    """
    fields: dict[str, Any] = dict(context or {})
    fields["component"] = component
    if exception is not None:
        fields["error"] = str(exception)
        fields["error_type"] = type(exception).__name__

    try:
        target = logger or get_logger(component)
        log_method = getattr(target, level.lower(), target.info)
        log_method(message, **fields)
    except Exception as e:
        style = _LEVEL_STYLES.get(level.upper(), "white")
        details = " ".join(f"{k}={v}" for k, v in fields.items())
        _fallback_console.print(
            f"[{style}][{level.upper()}] {component}: {message}[/{style}] {details}",
            markup=True,
            highlight=False,
        )
        _fallback_console.print(f"[dim](logger unavailable: {e})[/dim]")


class OperationLogger:
    """Context manager for logging operations with start/end tracking."""

    def __init__(
        self,
        operation: str,
        logger: structlog.stdlib.BoundLogger | None = None,
        **context: Any,
    ):
        self.operation = operation
        self.logger = logger or get_logger()
        self.context = context
        self.start_time: datetime | None = None

    def __enter__(self) -> OperationLogger:
        self.start_time = datetime.now()
        self.logger.info(
            f"Starting {self.operation}",
            operation=self.operation,
            **self.context,
        )
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        duration = (datetime.now() - self.start_time).total_seconds() if self.start_time else 0

        if exc_type is not None:
            self.logger.error(
                f"Failed {self.operation}",
                operation=self.operation,
                duration_seconds=duration,
                error_type=exc_type.__name__,
                error=str(exc_val),
                **self.context,
            )
        else:
            self.logger.info(
                f"Completed {self.operation}",
                operation=self.operation,
                duration_seconds=duration,
                **self.context,
            )

    def update(self, **additional_context: Any) -> None:
        """Update the operation context."""
        self.context.update(additional_context)


class BuildLogger:
    """Logger that writes to structlog and keeps entries for the build report."""

    def __init__(self, log_file: Path, logger: structlog.stdlib.BoundLogger | None = None):
        self.log_file = log_file
        self.logger = logger or get_logger()
        self.entries: list[dict[str, Any]] = []

    def log(self, level: str, message: str, **kwargs: Any) -> None:
        """Log to structlog and record the entry."""
        entry = {
            "timestamp": datetime.now().isoformat(),
            "level": level,
            "message": message,
            **kwargs,
        }
        self.entries.append(entry)

        log_event(
            message,
            level=level,
            component=kwargs.pop("component", "pipeline"),
            context=kwargs,
            logger=self.logger,
        )

    def info(self, message: str, **kwargs: Any) -> None:
        self.log("INFO", message, **kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        self.log("WARNING", message, **kwargs)

    def error(self, message: str, **kwargs: Any) -> None:
        self.log("ERROR", message, **kwargs)

    def debug(self, message: str, **kwargs: Any) -> None:
        self.log("DEBUG", message, **kwargs)

    def save(self) -> None:
        """Save the build log to file."""
        self.log_file.parent.mkdir(parents=True, exist_ok=True)
        with open(self.log_file, "w", encoding="utf-8") as f:
            json.dump(
                {
                    "log_file": str(self.log_file),
                    "entries": self.entries,
                    "summary": {
                        "total_entries": len(self.entries),
                        "errors": sum(1 for e in self.entries if e["level"] == "ERROR"),
                        "warnings": sum(1 for e in self.entries if e["level"] == "WARNING"),
                    },
                },
                f,
                indent=2,
                default=str,
            )
