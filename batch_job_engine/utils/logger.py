"""
Logging utilities for the batch job engine

Provides structured logging configuration and per-execution log context
(job name, job execution id, step name) for the engine's loggers.
"""

import contextvars
import logging
import sys
import json
from datetime import datetime, timezone
from typing import Dict, Any, Optional
from pathlib import Path


ROOT_LOGGER_NAME = "batch_job_engine"

# Context of the job/step the current asyncio task is working for
_log_context: contextvars.ContextVar = contextvars.ContextVar("batch_log_context", default={})

_RESERVED_ATTRS = frozenset({
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname',
    'filename', 'module', 'lineno', 'funcName', 'created',
    'msecs', 'relativeCreated', 'thread', 'threadName',
    'processName', 'process', 'message', 'exc_info', 'exc_text',
    'stack_info', 'taskName'
})


class StructuredFormatter(logging.Formatter):
    """
    Custom formatter for structured JSON logging.

    Formats log records as JSON with the execution context and any extra
    fields attached to the record.
    """

    def __init__(self, include_extra: bool = True):
        super().__init__()
        self.include_extra = include_extra

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno
        }

        if record.exc_info:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": self.formatException(record.exc_info)
            }

        if self.include_extra:
            extra_fields = {
                key: value for key, value in record.__dict__.items()
                if key not in _RESERVED_ATTRS
            }
            if extra_fields:
                log_entry["extra"] = extra_fields

        return json.dumps(log_entry, default=str, ensure_ascii=False)


class JobContextFilter(logging.Filter):
    """
    Filter to add execution context to log records.

    Copies job_name, job_execution_id, step_name and any other values set
    through set_log_context()/LoggerContext onto every record. The values
    live in a context variable, so concurrently running jobs each log
    their own context.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in _log_context.get().items():
            if not hasattr(record, key):
                setattr(record, key, value)
        return True


def setup_logger(
    name: str = ROOT_LOGGER_NAME,
    level: str = "INFO",
    structured: bool = True,
    log_file: Optional[str] = None
) -> logging.Logger:
    """
    Set up a logger with appropriate configuration.

    Args:
        name: Logger name
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        structured: Whether to use structured JSON logging
        log_file: Optional log file path

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)
    logger.setLevel(getattr(logging, level.upper()))

    # Avoid adding handlers multiple times
    if any(isinstance(f, JobContextFilter) for h in logger.handlers for f in h.filters):
        return logger

    if structured:
        formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

    console_handler = logging.StreamHandler(sys.stdout)
    handlers = [console_handler]

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    # Handler-level filter so records propagated from child loggers get context too
    for handler in handlers:
        handler.setLevel(getattr(logging, level.upper()))
        handler.setFormatter(formatter)
        handler.addFilter(JobContextFilter())
        logger.addHandler(handler)

    return logger


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance.

    Args:
        name: Logger name

    Returns:
        Logger instance
    """
    return logging.getLogger(name)


def get_log_context() -> Dict[str, Any]:
    return dict(_log_context.get())


def set_log_context(**kwargs):
    """
    Set context variables for the current task.

    Args:
        **kwargs: Context variables to set
    """
    context = dict(_log_context.get())
    context.update(kwargs)
    _log_context.set(context)


def clear_log_context():
    _log_context.set({})


class LoggerContext:
    """
    Context manager for temporary log context.

    Sets context variables on entry and restores the previous context on exit.
    """

    def __init__(self, **kwargs):
        self.context = kwargs
        self._token: Optional[contextvars.Token] = None

    def __enter__(self):
        context = dict(_log_context.get())
        context.update(self.context)
        self._token = _log_context.set(context)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._token is not None:
            _log_context.reset(self._token)
            self._token = None
