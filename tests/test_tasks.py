import logging

import anyio
import pytest

from websubhub.tasks import TaskExecutor

pytestmark = pytest.mark.anyio


async def test_submitted_task_is_awaitable():
    executor = TaskExecutor()

    async def work() -> int:
        await anyio.sleep(0)
        return 42

    task = executor.submit(work(), name="work")

    assert await task == 42


async def test_drain_waits_for_everything():
    executor = TaskExecutor()
    done: list[int] = []

    async def work(i: int) -> None:
        await anyio.sleep(0.01 * i)
        done.append(i)

    for i in range(5):
        executor.submit(work(i))
    assert executor.pending == 5

    await executor.drain()

    assert sorted(done) == [0, 1, 2, 3, 4]
    assert executor.pending == 0


async def test_failures_are_logged_not_raised(caplog):
    executor = TaskExecutor()

    async def broken() -> None:
        raise ValueError("boom")

    with caplog.at_level(logging.ERROR, logger="websubhub.tasks"):
        executor.submit(broken(), name="broken")
        await executor.drain()

    assert "broken" in caplog.text
    assert "boom" in caplog.text


async def test_shutdown_cancels_pending():
    executor = TaskExecutor()

    async def forever() -> None:
        await anyio.sleep(3600)

    task = executor.submit(forever())
    await anyio.sleep(0)

    await executor.shutdown()

    assert task.cancelled()
    assert executor.pending == 0
