"""
Execution metadata stores.
"""

from .base import JobRepository
from .memory import InMemoryJobRepository
from .postgres import PostgresJobRepository

__all__ = [
    "JobRepository",
    "InMemoryJobRepository",
    "PostgresJobRepository",
]
