"""
Data models for the batch job engine

Job parameters, instances, statuses and execution tracking. Job and step
definitions live in models.definitions.
"""

from .job import (
    BatchStatus,
    ExitStatus,
    JobInstance,
    JobParameter,
    JobParameters,
    JobParametersBuilder,
    ParameterType,
    BATCH_STATUS_TRANSITIONS,
    can_transition_to,
    get_valid_transitions
)

from .execution import (
    ChunkContribution,
    ExecutionContext,
    JobExecution,
    StepExecution
)

__all__ = [
    "BatchStatus",
    "ExitStatus",
    "JobInstance",
    "JobParameter",
    "JobParameters",
    "JobParametersBuilder",
    "ParameterType",
    "BATCH_STATUS_TRANSITIONS",
    "can_transition_to",
    "get_valid_transitions",
    "ChunkContribution",
    "ExecutionContext",
    "JobExecution",
    "StepExecution"
]
