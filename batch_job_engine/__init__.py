"""
Batch Job Engine

A chunk-oriented batch processing engine: jobs are ordered steps, each
step reads items, optionally transforms them and writes them in chunks,
with every chunk's writes and its progress metadata committed together.
Execution history lives in PostgreSQL (or in memory for tests), so a
failed or stopped job restarts from its last committed chunk.

Usage:
    from batch_job_engine import BatchOrchestrator, JobParametersBuilder
    from batch_job_engine.jobs import build_registry
    from batch_job_engine.utils.config import load_settings

    settings = load_settings("engine.yaml")
    orchestrator = BatchOrchestrator.from_settings(settings, build_registry(settings, db_manager))
    await orchestrator.start()

    parameters = JobParametersBuilder().add_string("input.file", "customers.csv").to_job_parameters()
    execution = await orchestrator.launch("importCustomers", parameters)
    execution = await orchestrator.wait_for(execution.job_execution_id)
    print(execution.status)
"""

__version__ = "1.0.0"
__author__ = "Batch Job Engine Team"
__license__ = "MIT"

# Exceptions
from .core.exceptions import (
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
    ExecutionStoreError,
    ConfigurationError
)

# Core orchestrator
from .core.orchestrator import BatchOrchestrator
from .core.registry import JobRegistry

# Data models
from .models.job import BatchStatus, ExitStatus, JobParameter, JobParameters, JobParametersBuilder, ParameterType
from .models.execution import JobExecution, StepExecution, ExecutionContext
from .models.definitions import JobDefinition, StepDefinition, TaskletStepDefinition, Split, JobParametersValidator

# Utilities
from .utils.database import DatabaseManager
from .utils.logger import setup_logger, get_logger

__all__ = [
    # Core
    "BatchOrchestrator",
    "JobRegistry",

    # Models
    "BatchStatus",
    "ExitStatus",
    "JobParameter",
    "JobParameters",
    "JobParametersBuilder",
    "ParameterType",
    "JobExecution",
    "StepExecution",
    "ExecutionContext",
    "JobDefinition",
    "StepDefinition",
    "TaskletStepDefinition",
    "Split",
    "JobParametersValidator",

    # Utilities
    "DatabaseManager",
    "setup_logger",
    "get_logger",

    # Exceptions
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
    "ExecutionStoreError",
    "ConfigurationError",

    # Package metadata
    "__version__",
    "__author__",
    "__license__"
]

# Package-level configuration
import logging
logging.getLogger(__name__).addHandler(logging.NullHandler())
