"""
Job launcher: validates a launch request, resolves the job instance and
hands a new job execution to the job runner.
"""

import asyncio
from typing import Dict, List, Optional

from ..models.job import BatchStatus, ExitStatus, JobParameters, utcnow
from ..models.execution import JobExecution
from ..models.definitions import JobDefinition
from ..repository.base import JobRepository
from ..utils.logger import get_logger
from .job import JobRunner
from .step import describe_failure
from .exceptions import (
    JobExecutionAlreadyRunningError,
    JobInstanceAlreadyCompleteError,
    JobLaunchError,
    JobRestartError,
)


class JobLauncher:
    """
    Launches job executions.

    In asynchronous mode (the default) run() returns as soon as the new
    execution is persisted as STARTED and the steps continue on a
    background task. In synchronous mode run() returns the finished
    execution.
    """

    def __init__(self, repository: JobRepository, job_runner: JobRunner, synchronous: bool = False):
        self.repository = repository
        self.job_runner = job_runner
        self.synchronous = synchronous
        self._launch_lock = asyncio.Lock()
        self._tasks: Dict[int, asyncio.Task] = {}
        self.logger = get_logger(__name__)

    async def run(self, job: JobDefinition, parameters: JobParameters) -> JobExecution:
        """
        Launch a job.

        Args:
            job: Job definition
            parameters: Job parameters; identifying ones select the instance

        Returns:
            The new job execution

        Raises:
            JobParametersInvalidError: If the job's validator rejects the parameters
            JobExecutionAlreadyRunningError: If the instance has a running execution
            JobRestartError: If the instance may not be run again
            ExecutionStoreError: If the repository fails
        """
        job.validate_parameters(parameters)

        async with self._launch_lock:
            instance, created = await self.repository.get_or_create_job_instance(job.name, parameters)
            if not created:
                await self._check_restart(job, instance)
            job_execution = await self.repository.create_job_execution(instance, parameters)

        self.logger.info(f"Launching job {job.name}", extra={
            "job_name": job.name,
            "job_execution_id": job_execution.job_execution_id,
            "job_instance_id": instance.instance_id,
            "new_instance": created
        })

        if self.synchronous:
            return await self.job_runner.run(job, job_execution)
        return await self._run_in_background(job, job_execution)

    async def _check_restart(self, job: JobDefinition, instance) -> None:
        executions = await self.repository.find_job_executions(instance)
        if not executions:
            return

        for execution in executions:
            if execution.status.is_running():
                raise JobExecutionAlreadyRunningError(job.name, execution.job_execution_id, execution.status.value)

        last = executions[0]
        if not job.restartable:
            raise JobRestartError(job.name, "job is not restartable", error_code="JOB_NOT_RESTARTABLE")
        if last.status == BatchStatus.UNKNOWN:
            raise JobRestartError(
                job.name, f"last execution {last.job_execution_id} ended in UNKNOWN status; abandon it first"
            )
        if last.status == BatchStatus.ABANDONED:
            raise JobRestartError(job.name, f"last execution {last.job_execution_id} was abandoned")
        if last.status == BatchStatus.COMPLETED and not job.allow_completed_rerun:
            raise JobInstanceAlreadyCompleteError(job.name, instance.instance_id)

    async def _run_in_background(self, job: JobDefinition, job_execution: JobExecution) -> JobExecution:
        started = asyncio.Event()
        task = asyncio.create_task(
            self.job_runner.run(job, job_execution, on_started=started.set),
            name=f"job-{job.name}-{job_execution.job_execution_id}"
        )
        self._tasks[job_execution.job_execution_id] = task
        task.add_done_callback(lambda t, execution_id=job_execution.job_execution_id: self._on_task_done(execution_id, t))

        started_waiter = asyncio.create_task(started.wait())
        try:
            await asyncio.wait({task, started_waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            started_waiter.cancel()

        if not started.is_set():
            # The runner died before the execution reached STARTED
            exc = task.exception() if not task.cancelled() else asyncio.CancelledError()
            await self._mark_failed(job_execution, exc)
            raise JobLaunchError(f"Job {job.name} failed to start: {exc}") from exc

        return job_execution

    def _on_task_done(self, job_execution_id: int, task: asyncio.Task):
        self._tasks.pop(job_execution_id, None)
        if task.cancelled():
            self.logger.warning(f"Job execution {job_execution_id} was cancelled")
            return
        exc = task.exception()
        if exc is not None:
            self.logger.error(
                f"Job execution {job_execution_id} ended with an unhandled error: {exc}",
                exc_info=(type(exc), exc, exc.__traceback__)
            )

    async def _mark_failed(self, job_execution: JobExecution, exc: BaseException):
        job_execution.add_failure_exception(exc)
        job_execution.status = BatchStatus.FAILED
        job_execution.exit_status = ExitStatus.for_status(BatchStatus.FAILED, describe_failure(exc))
        job_execution.end_time = utcnow()
        await self.repository.update_job_execution(job_execution)

    def running_execution_ids(self) -> List[int]:
        return sorted(self._tasks)

    async def wait_for(self, job_execution_id: int, timeout: Optional[float] = None) -> None:
        """Wait until a background execution finishes."""
        task = self._tasks.get(job_execution_id)
        if task is not None:
            await asyncio.wait({task}, timeout=timeout)

    async def shutdown(self, timeout: Optional[float] = None) -> None:
        """
        Wait for background executions, cancelling any still running after timeout.

        Cancelled executions are left for an operator to abandon or restart.
        """
        tasks = list(self._tasks.values())
        if not tasks:
            return
        done, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            self.logger.warning(f"Cancelled {len(pending)} running job executions on shutdown")
