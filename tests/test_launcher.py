"""
Launch rules: instance identity, restart, rerun and rejection cases.
"""

import pytest

from batch_job_engine.core.exceptions import (
    JobExecutionAlreadyRunningError,
    JobInstanceAlreadyCompleteError,
    JobParametersInvalidError,
    JobRestartError,
    NoSuchJobError,
)
from batch_job_engine.models.definitions import JobDefinition, JobParametersValidator, Split, TaskletStepDefinition
from batch_job_engine.models.job import BatchStatus, JobParametersBuilder

from conftest import FailingItemWriter, GateProcessor, list_step, start_orchestrator


def params(run: int = 1, note: str = None):
    builder = JobParametersBuilder().add_long("run", run)
    if note is not None:
        builder.add_string("note", note, identifying=False)
    return builder.to_job_parameters()


@pytest.mark.asyncio
async def test_failed_execution_restarts_from_last_committed_chunk():
    writer = FailingItemWriter(poison={25}, failures=1)
    job = JobDefinition("importJob", (list_step("load", list(range(30)), writer, chunk_size=10),))
    orchestrator = await start_orchestrator(job)

    first = await orchestrator.launch("importJob", params())
    assert first.status == BatchStatus.FAILED
    first_step = first.step_executions[0]
    assert (first_step.write_count, first_step.commit_count) == (20, 2)
    assert first_step.execution_context["loadReader.read.count"] == 20

    second = await orchestrator.restart(first.job_execution_id)
    assert second.status == BatchStatus.COMPLETED
    assert second.job_instance_id == first.job_instance_id
    assert second.job_execution_id != first.job_execution_id

    resumed = second.step_executions[0]
    assert resumed.read_count == 30
    assert resumed.write_count == 30
    assert resumed.commit_count == 3
    # Only the third chunk was written again
    assert [b[0] for b in writer.batches] == [0, 10, 20]
    assert sorted(writer.items) == list(range(30))

    await orchestrator.stop()


@pytest.mark.asyncio
async def test_completed_instance_rerun_skips_completed_steps():
    writer = FailingItemWriter()
    job = JobDefinition("importJob", (list_step("load", list(range(5)), writer),))
    orchestrator = await start_orchestrator(job)

    first = await orchestrator.launch("importJob", params())
    second = await orchestrator.launch("importJob", params())

    assert first.status == BatchStatus.COMPLETED
    assert second.status == BatchStatus.COMPLETED
    assert second.job_instance_id == first.job_instance_id
    assert second.exit_status.exit_code == "NOOP"
    assert second.step_executions == []
    assert len(writer.batches) == 1

    await orchestrator.stop()


@pytest.mark.asyncio
async def test_allow_start_if_complete_reruns_step():
    runs = []

    async def tasklet(step_execution, parameters):
        runs.append(step_execution.step_execution_id)

    job = JobDefinition("setupJob", (TaskletStepDefinition("setup", tasklet, allow_start_if_complete=True),))
    orchestrator = await start_orchestrator(job)

    await orchestrator.launch("setupJob", params())
    second = await orchestrator.launch("setupJob", params())

    assert len(runs) == 2
    assert second.exit_status.exit_code == "COMPLETED"
    await orchestrator.stop()


@pytest.mark.asyncio
async def test_completed_instance_rejected_when_reruns_disallowed():
    job = JobDefinition(
        "importJob",
        (list_step("load", [1, 2], FailingItemWriter()),),
        allow_completed_rerun=False
    )
    orchestrator = await start_orchestrator(job)

    await orchestrator.launch("importJob", params())
    with pytest.raises(JobInstanceAlreadyCompleteError):
        await orchestrator.launch("importJob", params())

    # A new identifying value is a new instance
    other = await orchestrator.launch("importJob", params(run=2))
    assert other.status == BatchStatus.COMPLETED
    await orchestrator.stop()


@pytest.mark.asyncio
async def test_non_identifying_parameters_share_instance():
    job = JobDefinition("importJob", (list_step("load", [1], FailingItemWriter()),))
    orchestrator = await start_orchestrator(job)

    first = await orchestrator.launch("importJob", params(note="a"))
    second = await orchestrator.launch("importJob", params(note="b"))
    third = await orchestrator.launch("importJob", params(run=2, note="a"))

    assert first.job_instance_id == second.job_instance_id
    assert third.job_instance_id != first.job_instance_id
    await orchestrator.stop()


@pytest.mark.asyncio
async def test_running_instance_cannot_be_launched_twice():
    gate = GateProcessor(item=3)
    job = JobDefinition("slowJob", (list_step("load", list(range(10)), FailingItemWriter(), processor=gate, chunk_size=5),))
    orchestrator = await start_orchestrator(job, synchronous=False)

    execution = await orchestrator.launch("slowJob", params())
    await gate.reached.wait()

    with pytest.raises(JobExecutionAlreadyRunningError):
        await orchestrator.launch("slowJob", params())
    with pytest.raises(JobExecutionAlreadyRunningError):
        await orchestrator.abandon(execution.job_execution_id)

    gate.release.set()
    finished = await orchestrator.wait_for(execution.job_execution_id)
    assert finished.status == BatchStatus.COMPLETED
    await orchestrator.stop()


@pytest.mark.asyncio
async def test_non_restartable_job_rejects_relaunch_after_failure():
    writer = FailingItemWriter(poison={1})
    job = JobDefinition("oneShot", (list_step("load", [1, 2], writer),), restartable=False)
    orchestrator = await start_orchestrator(job)

    first = await orchestrator.launch("oneShot", params())
    assert first.status == BatchStatus.FAILED

    with pytest.raises(JobRestartError) as excinfo:
        await orchestrator.launch("oneShot", params())
    assert excinfo.value.error_code == "JOB_NOT_RESTARTABLE"
    await orchestrator.stop()


@pytest.mark.asyncio
async def test_unknown_and_abandoned_executions_block_restart():
    writer = FailingItemWriter(poison={1})
    job = JobDefinition("importJob", (list_step("load", [1, 2], writer),))
    orchestrator = await start_orchestrator(job)

    failed = await orchestrator.launch("importJob", params())
    stored = await orchestrator.get_job_execution(failed.job_execution_id)
    stored.status = BatchStatus.UNKNOWN
    await orchestrator.repository.update_job_execution(stored)

    with pytest.raises(JobRestartError):
        await orchestrator.launch("importJob", params())

    abandoned = await orchestrator.abandon(failed.job_execution_id)
    assert abandoned.status == BatchStatus.ABANDONED
    assert abandoned.exit_status.exit_code == "ABANDONED"

    with pytest.raises(JobRestartError):
        await orchestrator.restart(failed.job_execution_id)
    await orchestrator.stop()


@pytest.mark.asyncio
async def test_invalid_parameters_create_no_instance():
    job = JobDefinition(
        "importJob",
        (list_step("load", [1], FailingItemWriter()),),
        validator=JobParametersValidator(required_keys=frozenset({"input.file"}))
    )
    orchestrator = await start_orchestrator(job)

    with pytest.raises(JobParametersInvalidError) as excinfo:
        await orchestrator.launch("importJob", params())
    assert excinfo.value.error_code == "JOB_PARAMETERS_INVALID"
    assert await orchestrator.repository.get_job_names() == []
    await orchestrator.stop()


@pytest.mark.asyncio
async def test_unknown_job_name_is_rejected():
    orchestrator = await start_orchestrator()
    with pytest.raises(NoSuchJobError):
        await orchestrator.launch("missing")
    await orchestrator.stop()


@pytest.mark.asyncio
async def test_start_limit_fails_the_restart():
    writer = FailingItemWriter(poison={1})
    job = JobDefinition("importJob", (list_step("load", [1, 2], writer, start_limit=1),))
    orchestrator = await start_orchestrator(job)

    await orchestrator.launch("importJob", params())
    second = await orchestrator.launch("importJob", params())

    assert second.status == BatchStatus.FAILED
    assert "start limit" in second.exit_status.exit_description
    assert second.step_executions == []
    await orchestrator.stop()


@pytest.mark.asyncio
async def test_continue_on_failure_runs_following_steps():
    async def broken(step_execution, parameters):
        raise RuntimeError("optional cleanup failed")

    writer = FailingItemWriter()
    job = JobDefinition("importJob", (
        TaskletStepDefinition("cleanup", broken, continue_on_failure=True),
        list_step("load", [1, 2, 3], writer),
    ))
    orchestrator = await start_orchestrator(job)

    execution = await orchestrator.launch("importJob", params())

    assert execution.status == BatchStatus.COMPLETED
    assert [s.status for s in execution.step_executions] == [BatchStatus.FAILED, BatchStatus.COMPLETED]
    assert sorted(writer.items) == [1, 2, 3]
    await orchestrator.stop()


@pytest.mark.asyncio
async def test_failed_step_stops_the_job():
    async def broken(step_execution, parameters):
        raise RuntimeError("boom")

    writer = FailingItemWriter()
    job = JobDefinition("importJob", (
        TaskletStepDefinition("prepare", broken),
        list_step("load", [1, 2, 3], writer),
    ))
    orchestrator = await start_orchestrator(job)

    execution = await orchestrator.launch("importJob", params())

    assert execution.status == BatchStatus.FAILED
    assert len(execution.step_executions) == 1
    assert writer.items == []
    await orchestrator.stop()


@pytest.mark.asyncio
async def test_split_runs_flows_concurrently_and_waits_for_all():
    left, right = FailingItemWriter(), FailingItemWriter(poison={"b"})
    job = JobDefinition("splitJob", (
        Split("fanOut", (
            (list_step("left", [1, 2, 3], left),),
            (list_step("right", ["a", "b"], right),),
        )),
    ))
    orchestrator = await start_orchestrator(job)

    execution = await orchestrator.launch("splitJob", params())

    assert execution.status == BatchStatus.FAILED
    statuses = {s.step_name: s.status for s in execution.step_executions}
    assert statuses == {"left": BatchStatus.COMPLETED, "right": BatchStatus.FAILED}
    assert sorted(left.items) == [1, 2, 3]

    # The restart only reruns the failed flow
    right.poison.clear()
    restarted = await orchestrator.restart(execution.job_execution_id)
    assert restarted.status == BatchStatus.COMPLETED
    assert [s.step_name for s in restarted.step_executions] == ["right"]
    assert sorted(right.items) == ["a", "b"]
    await orchestrator.stop()
