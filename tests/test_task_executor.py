import asyncio

import pytest

from batch_job_engine.core.exceptions import ConfigurationError
from batch_job_engine.services.task_executor import AsyncPoolTaskExecutor, SyncTaskExecutor, create_task_executor


@pytest.mark.asyncio
async def test_sync_executor_runs_inline():
    executor = SyncTaskExecutor()
    order = []

    async def task():
        order.append("ran")
        return 42

    future = await executor.submit(task)
    order.append("submitted")

    assert future.result() == 42
    assert order == ["ran", "submitted"]


@pytest.mark.asyncio
async def test_sync_executor_captures_exception():
    async def boom():
        raise ValueError("bad")

    future = await SyncTaskExecutor().submit(boom)
    with pytest.raises(ValueError):
        future.result()


@pytest.mark.asyncio
async def test_pool_limits_concurrency():
    executor = AsyncPoolTaskExecutor(concurrency_limit=3, queue_capacity=2)
    active = 0
    peak = 0

    async def task(i):
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.001)
        active -= 1
        return i

    futures = [await executor.submit(lambda i=i: task(i)) for i in range(20)]
    results = await asyncio.gather(*futures)
    await executor.shutdown()

    assert sorted(results) == list(range(20))
    assert peak <= 3
    stats = executor.get_statistics()
    assert stats["completed"] == 20
    assert stats["peak_active"] == peak


@pytest.mark.asyncio
async def test_pool_failure_does_not_stop_other_tasks():
    executor = AsyncPoolTaskExecutor(concurrency_limit=2)

    async def ok():
        return "ok"

    async def fail():
        raise RuntimeError("nope")

    futures = [await executor.submit(f) for f in (ok, fail, ok)]
    results = await asyncio.gather(*futures, return_exceptions=True)
    await executor.shutdown()

    assert results[0] == "ok" and results[2] == "ok"
    assert isinstance(results[1], RuntimeError)
    assert executor.failed == 1


@pytest.mark.asyncio
async def test_submit_after_shutdown_is_rejected():
    executor = AsyncPoolTaskExecutor(concurrency_limit=2)
    await executor.shutdown()

    async def task():
        return None

    with pytest.raises(RuntimeError):
        await executor.submit(task)


def test_invalid_limits_are_rejected():
    with pytest.raises(ConfigurationError):
        AsyncPoolTaskExecutor(concurrency_limit=0)
    with pytest.raises(ConfigurationError):
        AsyncPoolTaskExecutor(concurrency_limit=2, queue_capacity=0)


def test_factory_picks_inline_executor_for_single_task():
    assert isinstance(create_task_executor(1), SyncTaskExecutor)
    pool = create_task_executor(30)
    assert isinstance(pool, AsyncPoolTaskExecutor)
    assert pool.concurrency_limit == 30
    assert pool.queue_capacity == 60
