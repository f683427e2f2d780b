"""
Step runner: drives one step execution.

Chunk-oriented steps read items one at a time, run them through the
processor, hand each chunk to the writer in one all-or-nothing call and
then commit the chunk's count deltas and checkpoint to the repository.
Parallel steps keep reading in the step coroutine (source order is
preserved) while process/write/commit run on the task executor.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from ..models.job import BatchStatus, ExitStatus, utcnow
from ..models.execution import ChunkContribution, ExecutionContext, JobExecution, StepExecution
from ..models.definitions import AnyStep, StepDefinition, TaskletStepDefinition
from ..items.base import ItemProcessor, ItemReader, ItemWriter, close_streams, open_streams, update_streams
from ..items.processors import PassThroughItemProcessor
from ..repository.base import JobRepository
from ..services.fault_tolerance import RetryTemplate
from ..services.task_executor import SyncTaskExecutor, TaskExecutor
from ..utils.logger import LoggerContext, get_logger
from .exceptions import error_registry


def describe_failure(exc: BaseException) -> str:
    return f"{exc.__class__.__name__}: {exc}"


@dataclass
class Chunk:
    """Items read for one chunk plus the reader checkpoint taken right after reading them."""

    number: int
    items: List[Any]
    contribution: ChunkContribution
    checkpoint: ExecutionContext
    end_of_input: bool = False

    @property
    def is_empty(self) -> bool:
        return not self.items and self.contribution.read_skip_count == 0


@dataclass
class _StepState:
    skip_count: int = 0
    chunk_number: int = 0


@dataclass
class _CheckpointTracker:
    """
    Tracks the highest contiguous run of committed chunks.

    The checkpoint only advances to chunk N once chunks 1..N have all
    committed, so a restart never skips an uncommitted chunk.
    """

    checkpoint: ExecutionContext
    next_expected: int = 1
    committed: Dict[int, ExecutionContext] = field(default_factory=dict)

    def commit(self, chunk: Chunk) -> ExecutionContext:
        self.committed[chunk.number] = chunk.checkpoint
        while self.next_expected in self.committed:
            self.checkpoint = self.committed.pop(self.next_expected)
            self.next_expected += 1
        return self.checkpoint


class StepRunner:
    """Executes step definitions against a repository and a task executor."""

    def __init__(self, repository: JobRepository, task_executor: Optional[TaskExecutor] = None, sleep=asyncio.sleep):
        """
        Initialize the step runner.

        Args:
            repository: Execution metadata store
            task_executor: Pool used by parallel steps (inline execution when None)
            sleep: Coroutine used for retry backoff
        """
        self.repository = repository
        self.task_executor = task_executor or SyncTaskExecutor()
        self.sleep = sleep
        self.logger = get_logger(__name__)

    async def execute(self, step: AnyStep, job_execution: JobExecution, step_execution: StepExecution) -> None:
        """
        Run a step to a terminal status.

        The outcome is recorded on step_execution (COMPLETED, FAILED or
        STOPPED); step failures are not raised. Repository failures while
        recording the final status propagate.
        """
        with LoggerContext(step_name=step.name, step_execution_id=step_execution.step_execution_id):
            step_execution.start_time = utcnow()
            step_execution.status = BatchStatus.STARTED
            await self.repository.update_step_execution(step_execution)
            self.logger.info(f"Step {step.name} started")

            try:
                if isinstance(step, TaskletStepDefinition):
                    await self._run_tasklet(step, job_execution, step_execution)
                    stopped = False
                else:
                    stopped = await self._run_chunks(step, job_execution, step_execution)
            except Exception as e:
                error_registry.record_error(e)
                step_execution.add_failure_exception(e)
                step_execution.status = BatchStatus.FAILED
                step_execution.exit_status = ExitStatus.for_status(BatchStatus.FAILED, describe_failure(e))
                self.logger.error(f"Step {step.name} failed: {str(e)}", exc_info=True)
            else:
                if stopped:
                    step_execution.status = BatchStatus.STOPPED
                    step_execution.exit_status = ExitStatus.for_status(BatchStatus.STOPPED, "Stop requested")
                    self.logger.info(f"Step {step.name} stopped")
                else:
                    step_execution.status = BatchStatus.COMPLETED
                    step_execution.exit_status = ExitStatus.for_status(BatchStatus.COMPLETED)

            step_execution.end_time = utcnow()
            await self.repository.update_step_execution(step_execution)

            self.logger.info(f"Step {step.name} finished with status {step_execution.status.value}", extra={
                "read_count": step_execution.read_count,
                "write_count": step_execution.write_count,
                "commit_count": step_execution.commit_count,
                "skip_count": step_execution.skip_count,
                "rollback_count": step_execution.rollback_count
            })

    async def _run_tasklet(self, step: TaskletStepDefinition, job_execution: JobExecution, step_execution: StepExecution):
        await step.tasklet(step_execution, job_execution.job_parameters)
        await self.repository.apply_chunk_contribution(
            step_execution, ChunkContribution(commit_count=1), step_execution.execution_context
        )

    async def stop_requested(self, job_execution: JobExecution, step_execution: StepExecution) -> bool:
        """True when the step should end after the chunks already in flight."""
        if step_execution.terminate_only:
            return True
        status = await self.repository.get_job_execution_status(job_execution.job_execution_id)
        if status == BatchStatus.STOPPING:
            job_execution.status = BatchStatus.STOPPING
            step_execution.set_terminate_only()
            return True
        return False

    # Chunk loop

    async def _run_chunks(self, step: StepDefinition, job_execution: JobExecution, step_execution: StepExecution) -> bool:
        """Returns True when the step ended because a stop was requested."""
        parameters = job_execution.job_parameters
        reader = step.reader_factory(parameters)
        writer = step.writer_factory(parameters)
        processor = step.processor or PassThroughItemProcessor()
        streams = [reader, writer]

        state = _StepState(skip_count=step_execution.skip_count)
        await open_streams(streams, step_execution.execution_context)
        try:
            if step.parallel and self.task_executor.concurrency_limit > 1:
                return await self._run_parallel(step, job_execution, step_execution, reader, processor, writer, state)
            return await self._run_sequential(step, job_execution, step_execution, reader, processor, writer, state)
        finally:
            await close_streams(streams)

    async def _run_sequential(
        self, step: StepDefinition, job_execution: JobExecution, step_execution: StepExecution,
        reader: ItemReader, processor: ItemProcessor, writer: ItemWriter, state: _StepState
    ) -> bool:
        while True:
            if await self.stop_requested(job_execution, step_execution):
                return True

            chunk = await self._read_chunk(step, step_execution, reader, state)
            if chunk.is_empty:
                return False

            await self._process_and_write(step, step_execution, processor, writer, chunk, state)
            await self._commit(step_execution, writer, chunk, chunk.checkpoint)

            if chunk.end_of_input:
                return False

    async def _run_parallel(
        self, step: StepDefinition, job_execution: JobExecution, step_execution: StepExecution,
        reader: ItemReader, processor: ItemProcessor, writer: ItemWriter, state: _StepState
    ) -> bool:
        throttle = asyncio.Semaphore(step.throttle_limit or self.task_executor.concurrency_limit)
        tracker = _CheckpointTracker(checkpoint=step_execution.execution_context.copy())
        commit_lock = asyncio.Lock()
        pending: Set[asyncio.Future] = set()
        failures: List[BaseException] = []
        stopped = False

        async def run_chunk(chunk: Chunk):
            await self._process_and_write(step, step_execution, processor, writer, chunk, state)
            async with commit_lock:
                checkpoint = tracker.commit(chunk)
                await self._commit(step_execution, writer, chunk, checkpoint)

        def on_done(future: asyncio.Future):
            throttle.release()
            pending.discard(future)
            if not future.cancelled() and future.exception() is not None:
                failures.append(future.exception())

        try:
            while not failures:
                if await self.stop_requested(job_execution, step_execution):
                    stopped = True
                    break

                chunk = await self._read_chunk(step, step_execution, reader, state)
                if chunk.is_empty:
                    break

                await throttle.acquire()
                future = await self.task_executor.submit(lambda c=chunk: run_chunk(c))
                pending.add(future)
                future.add_done_callback(on_done)
                # Let workers pick the chunk up before reading the next one
                await asyncio.sleep(0)

                if chunk.end_of_input:
                    break
        finally:
            # In-flight chunks always finish their commit, also when reading fails
            if pending:
                await asyncio.gather(*list(pending), return_exceptions=True)

        if failures:
            raise failures[0]
        return stopped

    async def _read_chunk(self, step: StepDefinition, step_execution: StepExecution, reader: ItemReader, state: _StepState) -> Chunk:
        contribution = ChunkContribution()
        items: List[Any] = []
        end_of_input = False

        while len(items) < step.chunk_size:
            try:
                item = await reader.read()
            except Exception as e:
                if step.skip_policy.should_skip(e, state.skip_count):
                    state.skip_count += 1
                    contribution.read_skip_count += 1
                    error_registry.record_error(e)
                    self.logger.warning(f"Skipped unreadable item: {str(e)}")
                    continue
                raise

            if item is None:
                end_of_input = True
                break
            items.append(item)
            contribution.read_count += 1

        state.chunk_number += 1
        checkpoint = step_execution.execution_context.copy()
        if step.save_state:
            await update_streams([reader], checkpoint)
        return Chunk(state.chunk_number, items, contribution, checkpoint, end_of_input)

    async def _process_and_write(
        self, step: StepDefinition, step_execution: StepExecution,
        processor: ItemProcessor, writer: ItemWriter, chunk: Chunk, state: _StepState
    ):
        contribution = chunk.contribution
        outputs = []
        for item in chunk.items:
            try:
                result = await processor.process(item)
            except Exception as e:
                if step.skip_policy.should_skip(e, state.skip_count):
                    state.skip_count += 1
                    contribution.process_skip_count += 1
                    error_registry.record_error(e)
                    self.logger.warning(f"Skipped item rejected by processor: {str(e)}")
                    continue
                raise

            if result is None:
                contribution.filter_count += 1
            else:
                outputs.append(result)

        if not outputs:
            return

        async def write():
            await writer.write(outputs)

        def on_failure(exc: BaseException, attempt: int):
            contribution.incr_rollback()

        try:
            await RetryTemplate(step.retry_policy, sleep=self.sleep).execute(
                write, f"{step.name} chunk {chunk.number} write", on_failure=on_failure
            )
        except Exception:
            # The chunk is not committed; only its rollbacks are recorded
            await self.repository.apply_chunk_contribution(
                step_execution,
                ChunkContribution(rollback_count=contribution.rollback_count),
                step_execution.execution_context
            )
            raise

        contribution.write_count = len(outputs)

    async def _commit(self, step_execution: StepExecution, writer: ItemWriter, chunk: Chunk, checkpoint: ExecutionContext):
        chunk.contribution.commit_count = 1
        await update_streams([writer], checkpoint)
        await self.repository.apply_chunk_contribution(step_execution, chunk.contribution, checkpoint)
        step_execution.execution_context.update(checkpoint)
        step_execution.execution_context.clear_dirty_flag()

        self.logger.debug(f"Chunk {chunk.number} committed", extra={
            "chunk": chunk.number,
            "read": chunk.contribution.read_count,
            "written": chunk.contribution.write_count
        })
