"""
Event Sink - single structured reporting interface for core components.

Every component receives one EventSink at construction instead of ad hoc
log/notify callbacks. Events are logged with their fields as `extra`; an
optional forwarder receives WARNING and ERROR events (e.g. to push alerts).
"""

import logging
from enum import Enum
from typing import Any, Callable, Optional

Forwarder = Callable[["Severity", str, dict[str, Any]], None]


class Severity(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"

    @property
    def level(self) -> int:
        return _LEVELS[self]


_LEVELS = {
    Severity.DEBUG: logging.DEBUG,
    Severity.INFO: logging.INFO,
    Severity.WARNING: logging.WARNING,
    Severity.ERROR: logging.ERROR,
}


class EventSink:
    """Structured event sink backed by a stdlib logger."""

    def __init__(
        self,
        logger: logging.Logger | str,
        forwarder: Optional[Forwarder] = None,
    ) -> None:
        self.logger = logging.getLogger(logger) if isinstance(logger, str) else logger
        self.forwarder = forwarder

    def emit(self, severity: Severity, message: str, **fields: Any) -> None:
        self.logger.log(severity.level, message, extra=fields or None)
        if self.forwarder is not None and severity in (Severity.WARNING, Severity.ERROR):
            try:
                self.forwarder(severity, message, fields)
            except Exception as e:
                self.logger.error("Event forwarder failed: %s", e)

    def child(self, name: str) -> "EventSink":
        """Sink for a sub-component sharing this sink's forwarder."""
        return EventSink(self.logger.getChild(name), self.forwarder)

    def debug(self, message: str, **fields: Any) -> None:
        self.emit(Severity.DEBUG, message, **fields)

    def info(self, message: str, **fields: Any) -> None:
        self.emit(Severity.INFO, message, **fields)

    def warning(self, message: str, **fields: Any) -> None:
        self.emit(Severity.WARNING, message, **fields)

    def error(self, message: str, **fields: Any) -> None:
        self.emit(Severity.ERROR, message, **fields)
