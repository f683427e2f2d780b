"""
Job runner: executes the steps and splits of a job definition for one
job execution, deciding per step whether to run, resume or skip it.
"""

import asyncio
from typing import Callable, List, Optional, Sequence

from ..models.job import EXIT_NOOP, BatchStatus, ExitStatus, utcnow
from ..models.execution import ChunkContribution, ExecutionContext, JobExecution
from ..models.definitions import AnyStep, JobDefinition, Split
from ..repository.base import JobRepository
from ..services.task_executor import AsyncPoolTaskExecutor
from ..utils.logger import LoggerContext, get_logger
from .exceptions import JobRestartError, error_registry
from .step import StepRunner, describe_failure


class JobRunner:
    """Runs a job execution from STARTED to a terminal status."""

    def __init__(self, repository: JobRepository, step_runner: StepRunner):
        self.repository = repository
        self.step_runner = step_runner
        self.logger = get_logger(__name__)

    async def run(
        self,
        job: JobDefinition,
        job_execution: JobExecution,
        on_started: Optional[Callable[[], None]] = None
    ) -> JobExecution:
        """
        Execute the job.

        Args:
            job: Job definition
            job_execution: Execution in STARTING status
            on_started: Called once the execution is persisted as STARTED

        Returns:
            The same execution, in COMPLETED, FAILED or STOPPED status
        """
        with LoggerContext(job_name=job.name, job_execution_id=job_execution.job_execution_id):
            job_execution.start_time = utcnow()
            job_execution.status = BatchStatus.STARTED
            job_execution.exit_status = ExitStatus.for_status(BatchStatus.STARTED)
            await self.repository.update_job_execution(job_execution)
            if on_started is not None:
                on_started()

            self.logger.info(f"Job {job.name} started", extra={
                "job_instance_id": job_execution.job_instance_id,
                "parameters": job_execution.job_parameters.to_values()
            })

            try:
                status, executed = await self._run_elements(job, job.steps, job_execution)
            except Exception as e:
                error_registry.record_error(e)
                job_execution.add_failure_exception(e)
                status, executed = BatchStatus.FAILED, True
                self.logger.error(f"Job {job.name} failed: {str(e)}", exc_info=True)

            job_execution.status = status
            job_execution.exit_status = self._exit_status(job_execution, status, executed)
            job_execution.end_time = utcnow()
            await self.repository.update_job_execution(job_execution)

            self.logger.info(f"Job {job.name} finished with status {status.value}", extra={
                "exit_code": job_execution.exit_status.exit_code,
                "duration_seconds": job_execution.get_duration().total_seconds()
            })
            return job_execution

    @staticmethod
    def _exit_status(job_execution: JobExecution, status: BatchStatus, executed: bool) -> ExitStatus:
        if status == BatchStatus.COMPLETED and not executed:
            return EXIT_NOOP
        if status == BatchStatus.FAILED:
            failures = job_execution.all_failure_exceptions()
            if failures:
                return ExitStatus.for_status(status, describe_failure(failures[0]))
            failed_steps = [s.step_name for s in job_execution.step_executions if s.status == BatchStatus.FAILED]
            return ExitStatus.for_status(status, f"Failed steps: {', '.join(failed_steps)}")
        return ExitStatus.for_status(status)

    async def _stop_requested(self, job_execution: JobExecution) -> bool:
        status = await self.repository.get_job_execution_status(job_execution.job_execution_id)
        if status == BatchStatus.STOPPING:
            job_execution.status = BatchStatus.STOPPING
            return True
        return False

    async def _run_elements(self, job: JobDefinition, elements: Sequence, job_execution: JobExecution):
        """
        Run steps and splits in order.

        Returns:
            (final status, whether any step actually ran)
        """
        executed = False
        for element in elements:
            if await self._stop_requested(job_execution):
                return BatchStatus.STOPPED, executed

            if isinstance(element, Split):
                status, ran = await self._run_split(job, element, job_execution)
                continue_on_failure = False
            else:
                status = await self._run_step(job, element, job_execution)
                ran = status is not None
                continue_on_failure = element.continue_on_failure
            executed = executed or ran

            if status == BatchStatus.STOPPED:
                return BatchStatus.STOPPED, executed
            if status == BatchStatus.FAILED:
                if continue_on_failure:
                    self.logger.warning(f"Step {element.name} failed; continuing with the next step")
                    continue
                return BatchStatus.FAILED, executed

        return BatchStatus.COMPLETED, executed

    async def _run_split(self, job: JobDefinition, split: Split, job_execution: JobExecution):
        """Run every flow of the split concurrently; one failed flow does not cancel the others."""
        executor = AsyncPoolTaskExecutor(
            concurrency_limit=split.max_concurrency or len(split.flows),
            name=f"split-{split.name}"
        )
        self.logger.info(f"Split {split.name} started with {len(split.flows)} flows")
        try:
            futures = [
                await executor.submit(lambda flow=flow: self._run_elements(job, flow, job_execution))
                for flow in split.flows
            ]
            results = await asyncio.gather(*futures, return_exceptions=True)
        finally:
            await executor.shutdown(wait=False)

        statuses: List[BatchStatus] = []
        executed = False
        for result in results:
            if isinstance(result, BaseException):
                job_execution.add_failure_exception(result)
                statuses.append(BatchStatus.FAILED)
            else:
                status, ran = result
                statuses.append(status)
                executed = executed or ran

        if BatchStatus.FAILED in statuses:
            return BatchStatus.FAILED, executed
        if BatchStatus.STOPPED in statuses:
            return BatchStatus.STOPPED, executed
        return BatchStatus.COMPLETED, executed

    async def _run_step(self, job: JobDefinition, step: AnyStep, job_execution: JobExecution) -> Optional[BatchStatus]:
        """
        Run one step, resuming it when its last execution did not complete.

        Returns:
            The step's final status, or None when it was skipped as already complete
        """
        instance = job_execution.job_instance
        last = await self.repository.get_last_step_execution(instance, step.name)

        if last is not None and last.status == BatchStatus.COMPLETED and not step.allow_start_if_complete:
            self.logger.info(f"Step {step.name} already completed for this instance; skipping")
            return None

        if step.start_limit is not None:
            starts = await self.repository.get_step_execution_count(instance, step.name)
            if starts >= step.start_limit:
                raise JobRestartError(
                    job.name,
                    f"step '{step.name}' reached its start limit of {step.start_limit}",
                    error_code="START_LIMIT_EXCEEDED"
                )

        execution_context: Optional[ExecutionContext] = None
        initial_counts: Optional[ChunkContribution] = None
        if last is not None and last.status in (BatchStatus.FAILED, BatchStatus.STOPPED, BatchStatus.UNKNOWN):
            execution_context = last.execution_context
            initial_counts = last.counts()
            self.logger.info(f"Resuming step {step.name} from previous execution {last.step_execution_id}", extra={
                "read_count": last.read_count,
                "write_count": last.write_count
            })

        step_execution = await self.repository.create_step_execution(
            job_execution, step.name, execution_context, initial_counts
        )
        await self.step_runner.execute(step, job_execution, step_execution)
        return step_execution.status
