"""
Core package for the batch job engine

Contains the orchestrator, launcher, job and step runners, the job registry
and the exception hierarchy.
"""

from .exceptions import (
    BatchEngineError,
    JobLaunchError,
    NoSuchJobError,
    JobExecutionAlreadyRunningError,
    JobRestartError,
    JobInstanceAlreadyCompleteError,
    JobParametersInvalidError,
    NoSuchJobExecutionError,
    JobExecutionNotRunningError,
    ItemReadError,
    ItemProcessError,
    ItemWriteError,
    SkipLimitExceededError,
    RetryLimitExceededError,
    OrchestratorError,
    ExecutionStoreError,
    ConfigurationError,
    error_registry
)
from .orchestrator import BatchOrchestrator
from .registry import JobRegistry
from .launcher import JobLauncher
from .job import JobRunner
from .step import StepRunner

__all__ = [
    "BatchOrchestrator",
    "JobRegistry",
    "JobLauncher",
    "JobRunner",
    "StepRunner",
    "BatchEngineError",
    "JobLaunchError",
    "NoSuchJobError",
    "JobExecutionAlreadyRunningError",
    "JobRestartError",
    "JobInstanceAlreadyCompleteError",
    "JobParametersInvalidError",
    "NoSuchJobExecutionError",
    "JobExecutionNotRunningError",
    "ItemReadError",
    "ItemProcessError",
    "ItemWriteError",
    "SkipLimitExceededError",
    "RetryLimitExceededError",
    "OrchestratorError",
    "ExecutionStoreError",
    "ConfigurationError",
    "error_registry"
]
