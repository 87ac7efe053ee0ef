"""Structured JSON logging tagged with the scenario, sub-suite and check being run."""
from __future__ import annotations

import contextvars
import json
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator

# Where in the run a log line was emitted; empty outside that scope.
scenario_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "scenario_id", default=""
)
sub_suite_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "sub_suite", default=""
)
check_var: contextvars.ContextVar[str] = contextvars.ContextVar("check", default="")

_CONTEXT_VARS: dict[str, contextvars.ContextVar[str]] = {
    "scenario_id": scenario_id_var,
    "sub_suite": sub_suite_var,
    "check": check_var,
}


@contextmanager
def log_context(**values: str) -> Iterator[None]:
    """Tag log entries emitted inside the block, e.g. ``log_context(sub_suite="a2a")``.

    Previous values are restored on exit, including when the block raises.

    Raises:
        KeyError: If a keyword is not one of ``scenario_id``, ``sub_suite``
            or ``check``.
    """
    tokens = [(_CONTEXT_VARS[name], _CONTEXT_VARS[name].set(value)) for name, value in values.items()]
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


class JSONFormatter(logging.Formatter):
    """Custom JSON log formatter."""

    def __init__(self, service_name: str = "conformance") -> None:
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "service_name": self.service_name,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name, var in _CONTEXT_VARS.items():
            log_entry[name] = var.get()
        if record.exc_info and record.exc_info[1]:
            log_entry["exception"] = str(record.exc_info[1])
        return json.dumps(log_entry)


def setup_logging(service_name: str = "src.conformance", level: str = "INFO") -> logging.Logger:
    """Configure structured JSON logging for the harness.

    Args:
        service_name: Logger name to configure; module loggers below it
            inherit the handler.
        level: Log level string (e.g. "INFO", "DEBUG").

    Returns:
        Configured logger instance.
    """
    logger = logging.getLogger(service_name)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Remove existing handlers
    logger.handlers.clear()

    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter(service_name=service_name))
    logger.addHandler(handler)

    return logger
