"""
Unit Tests for BackgroundTaskRunner

Covers results, failures, timeouts, cancellation and disposal.
"""
import asyncio
import time
from datetime import timedelta

import pytest
from unittest.mock import MagicMock

from bgrunner.core.tasks.errors import DuplicateTaskError, RunnerDisposedError, TaskTimeoutError
from bgrunner.core.tasks.models import TaskState
from bgrunner.core.tasks.runner import BackgroundTaskRunner


class Boom(Exception):
    pass


def double(x):
    return x * 2


def blocking(gate):
    """Computation that holds its worker until the gate opens."""
    def compute(x):
        gate.wait(60)
        return x
    return compute


@pytest.mark.asyncio
async def test_run_returns_result(runner):
    result = await runner.run(5, double, timeout=None)

    assert result == 10
    assert runner.active_count == 0


@pytest.mark.asyncio
async def test_run_does_not_block_the_loop(runner, gate):
    handle = runner.run(5, blocking(gate), task_id="slow")

    # Dispatch returned before the worker finished
    assert not handle.done()
    assert runner.has_active_computations
    assert runner.active_ids() == ["slow"]

    gate.set()
    assert await handle == 5
    assert not runner.has_active_computations


@pytest.mark.asyncio
async def test_async_computation(runner):
    async def add_one(x):
        await asyncio.sleep(0.01)
        return x + 1

    assert await runner.run(5, add_one) == 6


@pytest.mark.asyncio
async def test_computation_error_propagates_unchanged(runner):
    error = Boom("bad input")

    def fail(x):
        raise error

    with pytest.raises(Boom) as exc_info:
        await runner.run(1, fail, task_id="f1")

    assert exc_info.value is error
    assert runner.get_task("f1") is None


@pytest.mark.asyncio
async def test_timeout_fires_and_late_result_is_ignored(runner, gate):
    completed = MagicMock()
    runner.task_completed.connect(completed)

    started = time.monotonic()
    handle = runner.run(5, blocking(gate), task_id="t", timeout=0.2)

    with pytest.raises(TaskTimeoutError) as exc_info:
        await handle

    assert time.monotonic() - started < 5
    assert exc_info.value.timeout == 0.2
    assert exc_info.value.task_id == "t"
    assert isinstance(exc_info.value, TimeoutError)
    assert runner.active_count == 0

    # Let the worker finish late; nothing observable changes
    gate.set()
    await asyncio.sleep(0.1)
    assert isinstance(handle.exception(), TaskTimeoutError)
    completed.assert_not_called()


@pytest.mark.asyncio
async def test_default_timeout_comes_from_config(runner, config, gate):
    config.update("runner", "default_timeout_seconds", 0.1)

    handle = runner.run(1, blocking(gate))

    with pytest.raises(TaskTimeoutError) as exc_info:
        await handle
    assert exc_info.value.timeout == 0.1


@pytest.mark.asyncio
async def test_timeout_values(runner, gate):
    runner.run(1, blocking(gate), task_id="default")
    runner.run(1, blocking(gate), task_id="off", timeout=0)
    runner.run(1, blocking(gate), task_id="none", timeout=None)
    runner.run(1, blocking(gate), task_id="delta", timeout=timedelta(seconds=1.5))

    assert runner.get_task("default").timeout == 30.0
    assert runner.get_task("off").timeout is None
    assert runner.get_task("none").timeout is None
    assert runner.get_task("delta").timeout == 1.5
    assert runner.get_task("delta").state is TaskState.PENDING

    with pytest.raises(ValueError):
        runner.run(1, double, timeout=-1)

    gate.set()
    await runner.all_done()


@pytest.mark.asyncio
async def test_cancel_resolves_with_none(runner, gate):
    handle = runner.run(5, blocking(gate), task_id="t1")

    assert runner.cancel("t1") is True
    assert await handle is None
    assert runner.cancel("t1") is False
    assert runner.active_count == 0


@pytest.mark.asyncio
async def test_cancel_unknown_or_finished_task(runner):
    assert runner.cancel("missing") is False

    await runner.run(2, double, task_id="done")
    assert runner.cancel("done") is False


@pytest.mark.asyncio
async def test_cancelled_task_discards_late_result(runner, gate):
    completed = MagicMock()
    cancelled = MagicMock()
    runner.task_completed.connect(completed)
    runner.task_cancelled.connect(cancelled)

    handle = runner.run(5, blocking(gate), task_id="t1")
    runner.cancel("t1")
    gate.set()
    await asyncio.sleep(0.1)

    assert handle.result() is None
    completed.assert_not_called()
    cancelled.assert_called_once_with("t1")


@pytest.mark.asyncio
async def test_cancel_all(runner, gate):
    handles = [runner.run(i, blocking(gate), task_id=f"t{i}") for i in range(3)]

    assert runner.cancel_all() == 3
    assert runner.active_count == 0
    assert await asyncio.gather(*handles) == [None, None, None]


@pytest.mark.asyncio
async def test_caller_cancelling_the_handle_cleans_up(runner, gate):
    cancelled = MagicMock()
    runner.task_cancelled.connect(cancelled)

    handle = runner.run(5, blocking(gate), task_id="c")
    handle.cancel()
    await asyncio.sleep(0)

    assert runner.active_count == 0
    cancelled.assert_called_once_with("c")


@pytest.mark.asyncio
async def test_duplicate_active_id_is_rejected(runner, gate):
    handle = runner.run(1, blocking(gate), task_id="dup")

    with pytest.raises(DuplicateTaskError):
        runner.run(2, double, task_id="dup")

    # The first task is untouched
    assert runner.active_ids() == ["dup"]
    gate.set()
    assert await handle == 1

    # Reusing the id after completion is fine
    assert await runner.run(2, double, task_id="dup") == 4


@pytest.mark.asyncio
async def test_generated_ids_are_unique_and_prefixed(runner, config, gate):
    config.update("runner", "id_prefix", "job")

    for i in range(5):
        runner.run(i, blocking(gate))

    ids = runner.active_ids()
    assert len(set(ids)) == 5
    assert all(task_id.startswith("job-") for task_id in ids)
    assert ids == sorted(ids, key=lambda t: int(t.split("-")[1]))

    gate.set()
    await runner.all_done()


@pytest.mark.asyncio
async def test_all_done_waits_for_current_tasks(runner, gate):
    handles = [runner.run(i, blocking(gate)) for i in range(2)]

    waiter = asyncio.ensure_future(runner.all_done())
    await asyncio.sleep(0.05)
    assert not waiter.done()

    gate.set()
    await waiter
    assert all(h.done() for h in handles)


@pytest.mark.asyncio
async def test_all_done_with_nothing_running(runner):
    await asyncio.wait_for(runner.all_done(), 1)


@pytest.mark.asyncio
async def test_lifecycle_signals(runner):
    started = MagicMock()
    completed = MagicMock()
    failed = MagicMock()
    runner.task_started.connect(started)
    runner.task_completed.connect(completed)
    runner.task_failed.connect(failed)

    await runner.run(3, double, task_id="ok")
    with pytest.raises(ZeroDivisionError):
        await runner.run(0, lambda x: 1 / x, task_id="bad")

    assert [c.args[0] for c in started.call_args_list] == ["ok", "bad"]
    completed.assert_called_once_with("ok", 6)
    assert failed.call_args.args[0] == "bad"
    assert isinstance(failed.call_args.args[1], ZeroDivisionError)


@pytest.mark.asyncio
async def test_dispose_with_active_tasks(runner, gate):
    a = runner.run(1, blocking(gate), task_id="a")
    b = runner.run(2, blocking(gate), task_id="b")
    channel = runner.progress_stream("a")
    sub = channel.subscribe()

    runner.dispose()

    assert await a is None
    assert await b is None
    assert runner.active_count == 0
    assert channel.is_closed
    assert [p async for p in sub] == []

    # Disposed runners never reopen channels or accept work
    assert runner.progress_stream("a").is_closed
    assert not runner.progress_stream("new").emit("x")
    with pytest.raises(RunnerDisposedError):
        runner.run(1, double)

    runner.dispose()


@pytest.mark.asyncio
async def test_shutdown_disposes(config, gate):
    async with BackgroundTaskRunner(MagicMock(), config) as runner:
        handle = runner.run(1, blocking(gate))
        assert runner.is_ready

    assert runner.is_disposed
    assert not runner.is_ready
    assert await handle is None


def first_item(items):
    return next(iter(items))


@pytest.mark.asyncio
async def test_stop_iteration_surfaces_as_runtime_error(runner):
    with pytest.raises(RuntimeError) as exc_info:
        await asyncio.wait_for(runner.run([], first_item, task_id="empty", timeout=None), 5)

    assert isinstance(exc_info.value.__cause__, StopIteration)
    assert runner.active_count == 0

    # Non-empty input still works through the same path
    assert await runner.run([7, 8], first_item) == 7


@pytest.mark.asyncio
async def test_async_stop_iteration_surfaces_as_runtime_error(runner):
    async def first_async(items):
        return next(iter(items))

    with pytest.raises(RuntimeError):
        await asyncio.wait_for(runner.run([], first_async, timeout=None), 5)
    assert runner.active_count == 0
