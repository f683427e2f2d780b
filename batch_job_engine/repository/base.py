"""
Execution metadata store interface.

The JobRepository is the only component that mutates job and step
execution metadata. Step counts change exclusively through
apply_chunk_contribution(), which adds a chunk's deltas and stores the
execution context in one atomic operation.
"""

from abc import ABC, abstractmethod
from typing import List, Optional, Tuple

from ..models.job import BatchStatus, JobInstance, JobParameters
from ..models.execution import ChunkContribution, ExecutionContext, JobExecution, StepExecution


class JobRepository(ABC):
    """Abstract base class for execution metadata stores."""

    async def initialize(self) -> None:
        """Prepare the store (connection pools, schema checks)."""
        return None

    async def close(self) -> None:
        return None

    async def is_healthy(self) -> bool:
        return True

    # Job instances

    @abstractmethod
    async def get_or_create_job_instance(self, job_name: str, parameters: JobParameters) -> Tuple[JobInstance, bool]:
        """
        Find the instance for (job_name, identifying parameters), creating it if needed.

        Returns:
            The instance and whether it was created by this call
        """
        pass

    @abstractmethod
    async def get_job_instance(self, job_name: str, parameters: JobParameters) -> Optional[JobInstance]:
        pass

    @abstractmethod
    async def get_job_names(self) -> List[str]:
        pass

    # Job executions

    @abstractmethod
    async def create_job_execution(self, job_instance: JobInstance, parameters: JobParameters) -> JobExecution:
        """Create a JobExecution in STARTING state and persist its parameters."""
        pass

    @abstractmethod
    async def update_job_execution(self, job_execution: JobExecution) -> None:
        """Persist status, exit status, timestamps and the job execution context."""
        pass

    @abstractmethod
    async def get_job_execution(self, job_execution_id: int) -> Optional[JobExecution]:
        """Load a job execution with its step executions."""
        pass

    @abstractmethod
    async def get_job_execution_status(self, job_execution_id: int) -> Optional[BatchStatus]:
        pass

    @abstractmethod
    async def find_job_executions(self, job_instance: JobInstance) -> List[JobExecution]:
        """All executions of an instance, newest first."""
        pass

    async def get_last_job_execution(self, job_instance: JobInstance) -> Optional[JobExecution]:
        executions = await self.find_job_executions(job_instance)
        return executions[0] if executions else None

    @abstractmethod
    async def find_running_job_executions(self, job_name: Optional[str] = None) -> List[JobExecution]:
        pass

    @abstractmethod
    async def list_job_executions(self, job_name: Optional[str] = None, limit: int = 20) -> List[JobExecution]:
        """Most recent executions, newest first."""
        pass

    # Step executions

    @abstractmethod
    async def create_step_execution(
        self,
        job_execution: JobExecution,
        step_name: str,
        execution_context: Optional[ExecutionContext] = None,
        initial_counts: Optional[ChunkContribution] = None
    ) -> StepExecution:
        """Create a StepExecution in STARTING state and attach it to the job execution."""
        pass

    @abstractmethod
    async def update_step_execution(self, step_execution: StepExecution) -> None:
        """Persist status, exit status, timestamps and context. Counts are untouched."""
        pass

    @abstractmethod
    async def apply_chunk_contribution(
        self,
        step_execution: StepExecution,
        contribution: ChunkContribution,
        execution_context: ExecutionContext
    ) -> None:
        """
        Atomically add a chunk's count deltas and store the execution context.

        The in-memory step_execution is refreshed from the stored totals.
        """
        pass

    @abstractmethod
    async def get_last_step_execution(self, job_instance: JobInstance, step_name: str) -> Optional[StepExecution]:
        """Latest execution of a step across all executions of the instance."""
        pass

    @abstractmethod
    async def get_step_execution_count(self, job_instance: JobInstance, step_name: str) -> int:
        pass
