"""Tests for the bounded-concurrency dispatch pool."""

from __future__ import annotations

import asyncio
import random

import pytest

from colloquy.ai.orchestration.dispatch_pool import DispatchPool


@pytest.mark.asyncio
async def test_results_follow_input_order_regardless_of_completion() -> None:
    rng = random.Random(7)
    delays = [rng.uniform(0, 0.02) for _ in range(20)]

    async def work(index: int) -> int:
        await asyncio.sleep(delays[index])
        return index * 10

    async with DispatchPool(concurrency=5) as pool:
        results = await pool.submit(range(20), work)

    assert [result.index for result in results] == list(range(20))
    assert [result.value for result in results] == [i * 10 for i in range(20)]
    assert all(result.ok for result in results)


@pytest.mark.asyncio
async def test_reverse_completion_order_is_still_ordered() -> None:
    async def work(index: int) -> str:
        await asyncio.sleep(0.01 * (3 - index))
        return f"unit-{index}"

    async with DispatchPool(concurrency=4) as pool:
        results = await pool.submit([0, 1, 2, 3], work)

    assert [result.value for result in results] == ["unit-0", "unit-1", "unit-2", "unit-3"]


@pytest.mark.asyncio
async def test_failure_is_isolated_to_its_unit() -> None:
    async def work(index: int) -> int:
        if index == 2:
            raise RuntimeError("unit two exploded")
        return index

    async with DispatchPool(concurrency=3) as pool:
        results = await pool.submit(range(5), work)

    assert [result.ok for result in results] == [True, True, False, True, True]
    assert results[2].reason == "unit two exploded"
    assert isinstance(results[2].error, RuntimeError)
    assert [result.value for result in results if result.ok] == [0, 1, 3, 4]


@pytest.mark.asyncio
async def test_cancelled_unit_does_not_stall_the_pool() -> None:
    async def work(index: int) -> int:
        if index == 1:
            cancelled: asyncio.Future[int] = asyncio.get_running_loop().create_future()
            cancelled.cancel()
            return await cancelled
        return index * 10

    async with DispatchPool(concurrency=2) as pool:
        results = await asyncio.wait_for(pool.submit([0, 1, 2], work), timeout=2)
        again = await asyncio.wait_for(pool.submit([3], work), timeout=2)

    assert [result.ok for result in results] == [True, False, True]
    assert isinstance(results[1].error, asyncio.CancelledError)
    assert results[1].reason == "CancelledError"
    assert [results[0].value, results[2].value] == [0, 20]
    assert [result.value for result in again] == [30]


@pytest.mark.asyncio
async def test_cancelling_the_submitter_does_not_hang_join() -> None:
    started = asyncio.Event()

    async def work(_item: int) -> None:
        started.set()
        await asyncio.sleep(10)

    pool = DispatchPool(concurrency=1)
    submitter = asyncio.create_task(pool.submit([0], work))
    await started.wait()
    submitter.cancel()
    with pytest.raises(asyncio.CancelledError):
        await submitter

    for worker in list(pool._workers):
        worker.cancel()
    pool.shutdown()
    await asyncio.wait_for(pool.join(), timeout=2)

    assert pool.closed


@pytest.mark.asyncio
async def test_concurrency_is_bounded() -> None:
    active = 0
    peak = 0

    async def work(_item: int) -> None:
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.01)
        active -= 1

    async with DispatchPool(concurrency=3) as pool:
        await pool.submit(range(12), work)

    assert peak == 3


@pytest.mark.asyncio
async def test_sync_work_is_supported() -> None:
    async with DispatchPool(concurrency=2) as pool:
        results = await pool.submit(["a", "bb", "ccc"], len)

    assert [result.value for result in results] == [1, 2, 3]


@pytest.mark.asyncio
async def test_pool_is_reusable_across_submissions() -> None:
    async with DispatchPool(concurrency=2) as pool:
        first = await pool.submit([1, 2], lambda item: item + 1)
        second = await pool.submit([], lambda item: item)
        third = await pool.submit([5], lambda item: item * 2)

    assert [result.value for result in first] == [2, 3]
    assert second == []
    assert [result.value for result in third] == [10]


@pytest.mark.asyncio
async def test_submit_after_shutdown_raises() -> None:
    pool = DispatchPool(concurrency=2)
    await pool.submit([1], lambda item: item)

    pool.shutdown()
    await pool.join()

    assert pool.closed
    with pytest.raises(RuntimeError):
        await pool.submit([1], lambda item: item)


@pytest.mark.asyncio
async def test_context_manager_releases_workers_on_error_path() -> None:
    pool = DispatchPool(concurrency=2)

    with pytest.raises(ValueError):
        async with pool:
            await pool.submit([1, 2], lambda item: item)
            raise ValueError("caller failed")

    assert pool.closed
    await pool.join()


def test_concurrency_must_be_positive() -> None:
    with pytest.raises(ValueError):
        DispatchPool(concurrency=0)
