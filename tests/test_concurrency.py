"""
Parallel chunk processing, stop requests and the contiguous checkpoint.
"""

import asyncio

import pytest

from batch_job_engine.core.step import Chunk, _CheckpointTracker
from batch_job_engine.items.processors import FunctionItemProcessor
from batch_job_engine.models.definitions import JobDefinition
from batch_job_engine.models.execution import ChunkContribution, ExecutionContext
from batch_job_engine.models.job import BatchStatus, JobParametersBuilder
from batch_job_engine.services.task_executor import AsyncPoolTaskExecutor

from conftest import FailingItemWriter, FlakyItemReader, GateProcessor, list_step, start_orchestrator


def params():
    return JobParametersBuilder().add_long("run", 1).to_job_parameters()


def chunk(number: int, position: int) -> Chunk:
    return Chunk(number, [], ChunkContribution(), ExecutionContext({"reader.read.count": position}))


def test_checkpoint_only_advances_over_contiguous_commits():
    tracker = _CheckpointTracker(checkpoint=ExecutionContext({"reader.read.count": 0}))

    assert tracker.commit(chunk(2, 20))["reader.read.count"] == 0
    assert tracker.commit(chunk(3, 30))["reader.read.count"] == 0
    assert tracker.commit(chunk(1, 10))["reader.read.count"] == 30
    assert tracker.commit(chunk(5, 50))["reader.read.count"] == 30
    assert tracker.next_expected == 4


async def jittery(item):
    await asyncio.sleep(0.001 * (item % 3))
    return item


@pytest.mark.asyncio
async def test_parallel_step_writes_same_items_as_sequential():
    items = list(range(500))
    sequential_writer, parallel_writer = FailingItemWriter(), FailingItemWriter()
    job = JobDefinition("compareJob", (
        list_step("sequential", items, sequential_writer, chunk_size=25),
        list_step("parallel", items, parallel_writer, chunk_size=25, parallel=True,
                  processor=FunctionItemProcessor(jittery)),
    ))
    executor = AsyncPoolTaskExecutor(concurrency_limit=4)
    orchestrator = await start_orchestrator(job, task_executor=executor)

    execution = await orchestrator.launch("compareJob", params())

    assert execution.status == BatchStatus.COMPLETED
    assert set(parallel_writer.items) == set(sequential_writer.items) == set(items)
    parallel_step = execution.get_step_execution("parallel")
    assert parallel_step.read_count == 500
    assert parallel_step.write_count == 500
    assert parallel_step.commit_count == 20
    assert parallel_step.execution_context["parallelReader.read.count"] == 500
    assert executor.peak_active > 1
    await orchestrator.stop()


@pytest.mark.asyncio
async def test_throttle_limit_caps_chunks_in_flight():
    active = 0
    peak = 0

    async def tracked(item):
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.001)
        active -= 1
        return item

    writer = FailingItemWriter()
    job = JobDefinition("throttledJob", (
        list_step("load", list(range(40)), writer, chunk_size=1, parallel=True,
                  throttle_limit=2, processor=FunctionItemProcessor(tracked)),
    ))
    orchestrator = await start_orchestrator(job, task_executor=AsyncPoolTaskExecutor(concurrency_limit=8))

    execution = await orchestrator.launch("throttledJob", params())

    assert execution.status == BatchStatus.COMPLETED
    assert peak <= 2
    assert sorted(writer.items) == list(range(40))
    await orchestrator.stop()


@pytest.mark.asyncio
async def test_parallel_failure_restarts_without_losing_items():
    items = list(range(100))
    writer = FailingItemWriter(poison={55}, failures=1)
    job = JobDefinition("parallelJob", (
        list_step("load", items, writer, chunk_size=10, parallel=True),
    ))
    orchestrator = await start_orchestrator(job, task_executor=AsyncPoolTaskExecutor(concurrency_limit=3))

    first = await orchestrator.launch("parallelJob", params())
    assert first.status == BatchStatus.FAILED
    checkpoint = first.step_executions[0].execution_context.get_int("loadReader.read.count")
    assert checkpoint <= 50
    assert checkpoint % 10 == 0

    second = await orchestrator.restart(first.job_execution_id)
    assert second.status == BatchStatus.COMPLETED
    assert sorted(writer.items) == items
    await orchestrator.stop()


@pytest.mark.asyncio
async def test_stop_request_ends_step_after_in_flight_chunk():
    gate = GateProcessor(item=7)
    writer = FailingItemWriter()
    job = JobDefinition("stoppableJob", (
        list_step("load", list(range(20)), writer, chunk_size=5, processor=gate),
    ))
    orchestrator = await start_orchestrator(job, synchronous=False)

    execution = await orchestrator.launch("stoppableJob", params())
    await gate.reached.wait()

    stopping = await orchestrator.stop_execution(execution.job_execution_id)
    assert stopping.status == BatchStatus.STOPPING
    gate.release.set()

    stopped = await orchestrator.wait_for(execution.job_execution_id)
    assert stopped.status == BatchStatus.STOPPED
    step = stopped.step_executions[0]
    assert step.status == BatchStatus.STOPPED
    assert (step.write_count, step.commit_count) == (10, 2)
    assert sorted(writer.items) == list(range(10))

    # Restart picks up at the third chunk
    gate.item = None
    restarted = await orchestrator.restart(execution.job_execution_id)
    finished = await orchestrator.wait_for(restarted.job_execution_id)
    assert finished.status == BatchStatus.COMPLETED
    assert finished.step_executions[0].read_count == 20
    assert sorted(writer.items) == list(range(20))
    assert [b[0] for b in writer.batches] == [0, 5, 10, 15]
    await orchestrator.stop()


@pytest.mark.asyncio
async def test_read_failure_waits_for_in_flight_chunks_before_failing():
    gate = GateProcessor(item=2)
    writer = FailingItemWriter()
    job = JobDefinition("unreadableJob", (
        list_step("load", list(range(20)), writer, reader_cls=FlakyItemReader,
                  reader_kwargs={"fail_at": {12}}, chunk_size=5, parallel=True, processor=gate),
    ))
    orchestrator = await start_orchestrator(
        job, synchronous=False, task_executor=AsyncPoolTaskExecutor(concurrency_limit=4)
    )

    execution = await orchestrator.launch("unreadableJob", params())
    await gate.reached.wait()
    # The read error at item 12 happens while chunk 1 is still held
    await asyncio.sleep(0.05)

    running = await orchestrator.get_job_execution(execution.job_execution_id)
    assert running.status == BatchStatus.STARTED
    assert running.step_executions[0].status == BatchStatus.STARTED

    gate.release.set()
    finished = await orchestrator.wait_for(execution.job_execution_id)

    assert finished.status == BatchStatus.FAILED
    step = finished.step_executions[0]
    assert step.status == BatchStatus.FAILED
    assert "ItemReadError" in step.exit_status.exit_description
    assert (step.commit_count, step.write_count) == (2, 10)
    assert sorted(writer.items) == list(range(10))

    stored = await orchestrator.get_job_execution(execution.job_execution_id)
    assert stored.step_executions[0].commit_count == 2
    assert stored.step_executions[0].execution_context.get_int("loadReader.read.count") == 10
    await orchestrator.stop()
