"""Progress and log reporting for the generation core.

The core emits leveled log lines and optional fractional progress. Both
sinks are optional; a Reporter with neither configured only logs through
the module logger.
"""

import logging
from typing import Callable, Optional

from .protocols import LogSink

ProgressCallback = Callable[[float], None]

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


class Reporter:
    """Routes core messages to an external log sink or the standard logger.

    When a sink is given (e.g. an editor integration's logger) messages go
    there instead of ``logging`` so they are not printed twice. Progress
    values are clamped to [0, 1].
    """

    def __init__(
        self,
        logger: Optional[logging.Logger] = None,
        sink: Optional[LogSink] = None,
        on_progress: Optional[ProgressCallback] = None,
    ):
        self.logger = logger or logging.getLogger("prd_taskgen")
        self.sink = sink
        self.on_progress = on_progress

    def log(self, level: str, message: str, *args: object) -> None:
        if args:
            message = message % args
        if self.sink is not None:
            method = getattr(self.sink, level, None)
            if method is None and level == "warning":
                method = getattr(self.sink, "warn", None)
            if callable(method):
                method(message)
                return
        self.logger.log(_LEVELS.get(level, logging.INFO), message)

    def debug(self, message: str, *args: object) -> None:
        self.log("debug", message, *args)

    def info(self, message: str, *args: object) -> None:
        self.log("info", message, *args)

    def warning(self, message: str, *args: object) -> None:
        self.log("warning", message, *args)

    def error(self, message: str, *args: object) -> None:
        self.log("error", message, *args)

    def progress(self, fraction: float) -> None:
        if self.on_progress is None:
            return
        self.on_progress(max(0.0, min(1.0, fraction)))


def ensure_reporter(reporter: Optional[Reporter], name: str) -> Reporter:
    """Return ``reporter`` or a plain one logging under ``name``."""
    if reporter is not None:
        return reporter
    return Reporter(logger=logging.getLogger(name))
