"""Root logging setup with worker/job/run correlation.

The worker binds its id once and the job and run ids per job
(``ctx_job_id.set(...)``); every record emitted in that context carries them.
JSON output puts them in their own fields, text output appends them as
``[worker=.. job=.. run=..]``.
"""

import contextvars
import logging
import sys
from typing import TextIO

from pythonjsonlogger.json import JsonFormatter

ctx_worker_id = contextvars.ContextVar("worker_id", default=None)
ctx_job_id = contextvars.ContextVar("job_id", default=None)
ctx_run_id = contextvars.ContextVar("run_id", default=None)

_CORRELATION_FIELDS = (
    ("worker_id", ctx_worker_id),
    ("job_id", ctx_job_id),
    ("run_id", ctx_run_id),
)

_QUIET_LOGGERS = ("httpx", "httpcore", "aiosqlite", "alembic")


class CorrelationFilter(logging.Filter):
    """Copy the bound correlation ids onto each record that passes."""

    def filter(self, record: logging.LogRecord) -> bool:
        for name, var in _CORRELATION_FIELDS:
            value = var.get()
            if value and not hasattr(record, name):
                setattr(record, name, value)
        return True


class CorrelationTextFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        tags = [
            f"{name[:-3]}={getattr(record, name)}"
            for name, _ in _CORRELATION_FIELDS
            if getattr(record, name, None)
        ]
        return f"{line} [{' '.join(tags)}]" if tags else line


def build_handler(log_format: str = "text", stream: TextIO | None = None) -> logging.Handler:
    handler = logging.StreamHandler(stream or sys.stdout)
    if log_format.lower() == "json":
        formatter: logging.Formatter = JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"levelname": "level", "asctime": "timestamp"},
        )
    else:
        formatter = CorrelationTextFormatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    handler.setFormatter(formatter)
    handler.addFilter(CorrelationFilter())
    return handler


def setup_logger(log_format: str = "text", log_level: str = "INFO"):
    """Configure the root logger (replacing any handlers already on it)."""
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    root_logger.addHandler(build_handler(log_format))
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root_logger
