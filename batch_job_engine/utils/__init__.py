"""
Utilities package for the batch job engine

Contains database pool management and logging helpers. Settings live in
utils.config.
"""

from .database import DatabaseManager
from .logger import setup_logger, get_logger, set_log_context, clear_log_context, LoggerContext

__all__ = [
    "DatabaseManager",
    "setup_logger",
    "get_logger",
    "set_log_context",
    "clear_log_context",
    "LoggerContext"
]
