"""
Services package for the batch job engine

Fault tolerance policies and task executors used by the step runner.
"""

from .fault_tolerance import RetryPolicy, SkipPolicy, RetryTemplate, NO_RETRY, NEVER_SKIP
from .task_executor import TaskExecutor, SyncTaskExecutor, AsyncPoolTaskExecutor, create_task_executor

__all__ = [
    "RetryPolicy",
    "SkipPolicy",
    "RetryTemplate",
    "NO_RETRY",
    "NEVER_SKIP",
    "TaskExecutor",
    "SyncTaskExecutor",
    "AsyncPoolTaskExecutor",
    "create_task_executor"
]
