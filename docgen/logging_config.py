"""
Logging setup for the worker.

Every record carries a `correlation_id` attribute taken from a context
variable, so log lines emitted while serving a request or processing a job
can be tied back to the originating generation request.
"""
import logging
import sys
from contextvars import ContextVar
from typing import Optional

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] [cid=%(correlation_id)s] %(message)s"


class CorrelationIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id_var.get() or "-"
        return True


def configure_logging(level: str = "INFO") -> None:
    root = logging.getLogger()

    # Idempotent: uvicorn reloads and tests may call this more than once
    for handler in root.handlers:
        if getattr(handler, "_docgen", False):
            root.setLevel(level.upper())
            return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(CorrelationIdFilter())
    handler._docgen = True
    root.addHandler(handler)
    root.setLevel(level.upper())
