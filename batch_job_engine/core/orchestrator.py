"""
BatchOrchestrator: the facade that wires the registry, the execution
metadata store, the task executor, the job runner and the launcher.

Provides the operator interface used by the HTTP trigger and the CLI:
launch by job name, stop, restart, abandon and status queries.
"""

import asyncio
from typing import Any, Dict, List, Optional

from ..models.job import BatchStatus, ExitStatus, JobParameters, utcnow
from ..models.execution import JobExecution
from ..models.definitions import JobDefinition
from ..repository.base import JobRepository
from ..repository.memory import InMemoryJobRepository
from ..repository.postgres import PostgresJobRepository
from ..services.task_executor import TaskExecutor, create_task_executor
from ..utils.config import EngineSettings
from ..utils.database import DatabaseManager
from ..utils.logger import get_logger
from .exceptions import (
    JobExecutionAlreadyRunningError,
    JobExecutionNotRunningError,
    NoSuchJobExecutionError,
    OrchestratorError,
    error_registry,
)
from .job import JobRunner
from .launcher import JobLauncher
from .registry import JobRegistry
from .step import StepRunner


class BatchOrchestrator:
    """
    Main orchestrator class that coordinates the engine components.

    Provides a unified interface for:
    - Job registration and launch
    - Stopping, restarting and abandoning executions
    - Execution status queries and health checks
    """

    def __init__(
        self,
        repository: JobRepository,
        registry: Optional[JobRegistry] = None,
        task_executor: Optional[TaskExecutor] = None,
        synchronous: bool = False,
        sleep=asyncio.sleep
    ):
        """
        Initialize the orchestrator.

        Args:
            repository: Execution metadata store
            registry: Job registry (an empty one is created when omitted)
            task_executor: Pool for parallel steps (inline execution when omitted)
            synchronous: Whether launch() waits for the execution to finish
            sleep: Coroutine used for retry backoff
        """
        self.repository = repository
        self.registry = registry or JobRegistry()
        self.task_executor = task_executor or create_task_executor(1)
        self.step_runner = StepRunner(repository, self.task_executor, sleep=sleep)
        self.job_runner = JobRunner(repository, self.step_runner)
        self.launcher = JobLauncher(repository, self.job_runner, synchronous=synchronous)

        self._is_running = False
        self.logger = get_logger(__name__)

    @classmethod
    def from_settings(
        cls,
        settings: EngineSettings,
        registry: Optional[JobRegistry] = None,
        database_manager: Optional[DatabaseManager] = None
    ) -> "BatchOrchestrator":
        """
        Build an orchestrator with the store and executor described by settings.

        Args:
            settings: Engine settings
            registry: Jobs to offer
            database_manager: Pool to share with item writers (postgres store only)
        """
        if settings.store == "memory":
            repository: JobRepository = InMemoryJobRepository()
        else:
            database_manager = database_manager or DatabaseManager(
                settings.database_url,
                pool_size=settings.pool_size,
                max_overflow=settings.max_overflow
            )
            repository = PostgresJobRepository(database_manager, apply_schema=settings.apply_schema)

        executor = create_task_executor(settings.concurrency_limit, settings.queue_capacity, name="chunk-pool")
        return cls(repository, registry=registry, task_executor=executor)

    @property
    def is_running(self) -> bool:
        return self._is_running

    async def start(self):
        """Start the orchestrator and open the execution metadata store."""
        if self._is_running:
            return
        self.logger.info("Starting BatchOrchestrator", extra={
            "repository": self.repository.__class__.__name__,
            "jobs": self.registry.get_job_names(),
            "concurrency_limit": self.task_executor.concurrency_limit
        })

        try:
            await self.repository.initialize()
        except Exception as e:
            self.logger.error("Failed to start BatchOrchestrator", exc_info=True)
            await self.repository.close()
            raise OrchestratorError(f"Failed to start orchestrator: {str(e)}") from e

        self._is_running = True
        self.logger.info("BatchOrchestrator started successfully")

    async def stop(self, timeout: Optional[float] = None):
        """
        Stop the orchestrator.

        Args:
            timeout: Seconds to wait for running executions before cancelling them
        """
        self.logger.info("Stopping BatchOrchestrator")
        self._is_running = False

        await self.launcher.shutdown(timeout=timeout)
        await self.task_executor.shutdown(wait=True)
        await self.repository.close()

        self.logger.info("BatchOrchestrator stopped")

    def _require_running(self):
        if not self._is_running:
            raise OrchestratorError("Orchestrator is not running")

    def register_job(self, job: JobDefinition, replace: bool = False):
        self.registry.register(job, replace=replace)

    # Job execution interface

    async def launch(self, job_name: str, parameters: Optional[JobParameters] = None) -> JobExecution:
        """
        Launch a registered job.

        Args:
            job_name: Registered job name
            parameters: Job parameters (empty when omitted)

        Returns:
            The new job execution (STARTED, or finished in synchronous mode)

        Raises:
            NoSuchJobError: If the job is not registered
            JobLaunchError: If the launch is rejected
        """
        self._require_running()
        job = self.registry.get_job(job_name)
        return await self.launcher.run(job, parameters or JobParameters())

    async def _get_execution(self, job_execution_id: int) -> JobExecution:
        execution = await self.repository.get_job_execution(job_execution_id)
        if execution is None:
            raise NoSuchJobExecutionError(job_execution_id)
        return execution

    async def stop_execution(self, job_execution_id: int) -> JobExecution:
        """
        Request a graceful stop.

        The execution moves to STOPPING; its step runner finishes the
        chunks in flight and the execution ends STOPPED.

        Raises:
            NoSuchJobExecutionError: If the id is unknown
            JobExecutionNotRunningError: If the execution already ended
        """
        self._require_running()
        execution = await self._get_execution(job_execution_id)
        if not execution.is_running():
            raise JobExecutionNotRunningError(job_execution_id, execution.status.value)
        if execution.status == BatchStatus.STOPPING:
            return execution

        execution.status = BatchStatus.STOPPING
        await self.repository.update_job_execution(execution)
        self.logger.info(f"Stop requested for job execution {job_execution_id}", extra={
            "job_name": execution.job_name,
            "job_execution_id": job_execution_id
        })
        return execution

    async def restart(self, job_execution_id: int) -> JobExecution:
        """Launch the instance of a failed or stopped execution again with the same parameters."""
        self._require_running()
        execution = await self._get_execution(job_execution_id)
        job = self.registry.get_job(execution.job_name)
        self.logger.info(f"Restarting job execution {job_execution_id}", extra={"job_name": job.name})
        return await self.launcher.run(job, execution.job_parameters)

    async def abandon(self, job_execution_id: int) -> JobExecution:
        """
        Mark an execution ABANDONED so its instance is never restarted.

        Executions still running inside this process cannot be abandoned;
        running executions left behind by a dead process can.

        Raises:
            NoSuchJobExecutionError: If the id is unknown
            JobExecutionAlreadyRunningError: If this process is still running it
        """
        self._require_running()
        execution = await self._get_execution(job_execution_id)
        if job_execution_id in self.launcher.running_execution_ids():
            raise JobExecutionAlreadyRunningError(execution.job_name, job_execution_id, execution.status.value)
        if execution.status == BatchStatus.ABANDONED:
            return execution

        now = utcnow()
        for step_execution in execution.step_executions:
            if step_execution.status.is_running():
                step_execution.status = BatchStatus.ABANDONED
                step_execution.exit_status = ExitStatus.for_status(BatchStatus.ABANDONED)
                step_execution.end_time = step_execution.end_time or now
                await self.repository.update_step_execution(step_execution)

        execution.status = BatchStatus.ABANDONED
        execution.exit_status = ExitStatus.for_status(BatchStatus.ABANDONED)
        execution.end_time = execution.end_time or now
        await self.repository.update_job_execution(execution)
        self.logger.info(f"Job execution {job_execution_id} abandoned", extra={"job_name": execution.job_name})
        return execution

    async def wait_for(self, job_execution_id: int, timeout: Optional[float] = None) -> JobExecution:
        """Wait for a background execution launched by this process, then reload it."""
        await self.launcher.wait_for(job_execution_id, timeout=timeout)
        return await self._get_execution(job_execution_id)

    # Query interface

    async def get_job_execution(self, job_execution_id: int) -> JobExecution:
        self._require_running()
        return await self._get_execution(job_execution_id)

    async def get_execution_status(self, job_execution_id: int) -> Optional[Dict[str, Any]]:
        """
        Get execution status and step summaries.

        Returns:
            Execution dictionary, or None if the id is unknown
        """
        self._require_running()
        execution = await self.repository.get_job_execution(job_execution_id)
        return execution.to_dict() if execution is not None else None

    async def list_executions(self, job_name: Optional[str] = None, limit: int = 20) -> List[Dict[str, Any]]:
        self._require_running()
        executions = await self.repository.list_job_executions(job_name, limit)
        return [e.to_dict() for e in executions]

    async def get_system_health(self) -> Dict[str, Any]:
        store_healthy = await self.repository.is_healthy() if self._is_running else False
        return {
            "overall_status": "healthy" if self._is_running and store_healthy else "unhealthy",
            "orchestrator_running": self._is_running,
            "store_healthy": store_healthy,
            "jobs": self.registry.get_job_names(),
            "running_executions": self.launcher.running_execution_ids(),
            "task_executor": self.task_executor.get_statistics(),
            "errors": error_registry.get_error_statistics()
        }

    async def health_check(self) -> bool:
        """
        Perform a health check.

        Returns:
            True if the orchestrator is running and the store is reachable
        """
        if not self._is_running:
            return False
        return await self.repository.is_healthy()
