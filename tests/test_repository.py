import pytest

from batch_job_engine.core.exceptions import NoSuchJobExecutionError
from batch_job_engine.models.execution import ChunkContribution, ExecutionContext
from batch_job_engine.models.job import BatchStatus, JobParametersBuilder


def params(run):
    return JobParametersBuilder().add_long("run", run).to_job_parameters()


@pytest.mark.asyncio
async def test_instance_is_created_once_per_identity(repository):
    first, created = await repository.get_or_create_job_instance("job", params(1))
    again, created_again = await repository.get_or_create_job_instance("job", params(1))
    other, _ = await repository.get_or_create_job_instance("job", params(2))

    assert created and not created_again
    assert first.instance_id == again.instance_id
    assert other.instance_id != first.instance_id
    assert await repository.get_job_instance("job", params(1)) == first
    assert await repository.get_job_names() == ["job"]


@pytest.mark.asyncio
async def test_executions_are_listed_newest_first(repository):
    instance, _ = await repository.get_or_create_job_instance("job", params(1))
    first = await repository.create_job_execution(instance, params(1))
    second = await repository.create_job_execution(instance, params(1))

    found = await repository.find_job_executions(instance)
    assert [e.job_execution_id for e in found] == [second.job_execution_id, first.job_execution_id]
    assert (await repository.get_last_job_execution(instance)).job_execution_id == second.job_execution_id
    assert len(await repository.list_job_executions(limit=1)) == 1
    assert len(await repository.find_running_job_executions("job")) == 2


@pytest.mark.asyncio
async def test_updates_are_persisted_not_shared(repository):
    instance, _ = await repository.get_or_create_job_instance("job", params(1))
    execution = await repository.create_job_execution(instance, params(1))

    execution.status = BatchStatus.STARTED
    execution.execution_context["stage"] = "load"
    await repository.update_job_execution(execution)
    execution.status = BatchStatus.COMPLETED  # not persisted yet

    stored = await repository.get_job_execution(execution.job_execution_id)
    assert stored.status == BatchStatus.STARTED
    assert stored.execution_context["stage"] == "load"
    assert await repository.get_job_execution_status(execution.job_execution_id) == BatchStatus.STARTED
    assert stored.version == 1


@pytest.mark.asyncio
async def test_chunk_contributions_accumulate_with_context(repository):
    instance, _ = await repository.get_or_create_job_instance("job", params(1))
    execution = await repository.create_job_execution(instance, params(1))
    step = await repository.create_step_execution(execution, "load")

    await repository.apply_chunk_contribution(
        step, ChunkContribution(read_count=10, write_count=10, commit_count=1), ExecutionContext({"r.read.count": 10})
    )
    await repository.apply_chunk_contribution(
        step, ChunkContribution(read_count=4, write_count=3, filter_count=1, commit_count=1), ExecutionContext({"r.read.count": 14})
    )

    assert (step.read_count, step.write_count, step.filter_count, step.commit_count) == (14, 13, 1, 2)
    last = await repository.get_last_step_execution(instance, "load")
    assert last.read_count == 14
    assert last.execution_context["r.read.count"] == 14
    assert execution.step_executions == [step]


@pytest.mark.asyncio
async def test_resumed_step_starts_from_previous_counts(repository):
    instance, _ = await repository.get_or_create_job_instance("job", params(1))
    first = await repository.create_job_execution(instance, params(1))
    step = await repository.create_step_execution(first, "load")
    await repository.apply_chunk_contribution(
        step, ChunkContribution(read_count=20, write_count=20, commit_count=2), ExecutionContext({"pos": 20})
    )

    second = await repository.create_job_execution(instance, params(1))
    resumed = await repository.create_step_execution(second, "load", ExecutionContext({"pos": 20}), step.counts())

    assert resumed.read_count == 20
    assert resumed.execution_context["pos"] == 20
    assert await repository.get_step_execution_count(instance, "load") == 2
    assert (await repository.get_last_step_execution(instance, "load")).step_execution_id == resumed.step_execution_id


@pytest.mark.asyncio
async def test_unknown_execution_cannot_be_updated(repository):
    instance, _ = await repository.get_or_create_job_instance("job", params(1))
    execution = await repository.create_job_execution(instance, params(1))
    execution.job_execution_id = 999

    with pytest.raises(NoSuchJobExecutionError):
        await repository.update_job_execution(execution)
    assert await repository.get_job_execution(999) is None
    assert await repository.get_job_execution_status(999) is None
