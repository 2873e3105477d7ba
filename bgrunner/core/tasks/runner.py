"""
BackgroundTaskRunner - offload work from the event loop with progress,
timeouts and task tracking.

Each run() dispatches one computation to a worker context (thread or
spawned process) and returns an asyncio.Future at once. The caller only
suspends when it awaits that future.

Usage:
    async with BackgroundTaskRunner(locator, config) as runner:
        handle = runner.run(frames, encode, on_progress=print, timeout=10)
        video = await handle

Cancellation is cooperative: cancel() resolves the handle with None so the
caller stops waiting, but a worker that already started keeps running until
it returns on its own. Its late result is discarded.
"""
import asyncio
import time
from dataclasses import dataclass
from datetime import timedelta
from functools import partial
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar, Union
from loguru import logger

from ..base_system import BaseSystem
from ..config import ConfigManager
from ..events import Signal
from .errors import DuplicateTaskError, RunnerDisposedError, TaskTimeoutError
from .executor import ProgressRelay, WorkerExecutor, accepts_progress, invoke
from .models import TaskInfo, TaskState
from .progress import ProgressChannel

I = TypeVar("I")
O = TypeVar("O")
P = TypeVar("P")

# Marker for "use runner.default_timeout_seconds from config"
DEFAULT_TIMEOUT: Any = object()

Timeout = Union[float, int, timedelta, None]


@dataclass(eq=False)
class _TaskEntry:
    task_id: str
    handle: asyncio.Future
    started_at: float
    timeout: Optional[float]
    state: TaskState = TaskState.PENDING
    timer: Optional[asyncio.TimerHandle] = None
    relay: Optional[ProgressRelay] = None
    worker: Optional[asyncio.Task] = None
    released: bool = False


class BackgroundTaskRunner(BaseSystem, Generic[I, O, P]):
    """
    Runs computations off the event loop and tracks them by task id.

    Signals:
        task_started: (task_id)
        task_completed: (task_id, result)
        task_failed: (task_id, error) - computation errors and timeouts
        task_cancelled: (task_id)

    All bookkeeping happens on the loop that calls run(); the runner is not
    meant to be shared across event loops.
    """

    def __init__(self, locator=None, config: Optional[ConfigManager] = None,
                 executor: Optional[WorkerExecutor] = None):
        super().__init__(locator, config if config is not None else ConfigManager())

        self._executor = executor
        self._owns_executor = executor is None

        self._active: Dict[str, _TaskEntry] = {}
        self._channels: Dict[str, ProgressChannel[P]] = {}
        self._disposed = False
        self._last_id_ns = 0

        self.task_started = Signal("TaskStarted")
        self.task_completed = Signal("TaskCompleted")
        self.task_failed = Signal("TaskFailed")
        self.task_cancelled = Signal("TaskCancelled")

        self.config.on_changed.connect(self._on_config_changed)

    async def initialize(self):
        logger.info("BackgroundTaskRunner initializing...")
        await super().initialize()

    async def shutdown(self):
        self.dispose()
        await super().shutdown()

    # --- Properties ---

    @property
    def executor(self) -> WorkerExecutor:
        """Worker pool; created from config on first use unless injected."""
        if self._executor is None:
            settings = self.config.data.runner
            self._executor = WorkerExecutor(settings.executor, settings.max_workers)
        return self._executor

    @property
    def active_count(self) -> int:
        return len(self._active)

    @property
    def has_active_computations(self) -> bool:
        return bool(self._active)

    @property
    def is_disposed(self) -> bool:
        return self._disposed

    def active_ids(self) -> List[str]:
        return list(self._active)

    def get_task(self, task_id: str) -> Optional[TaskInfo]:
        entry = self._active.get(task_id)
        if entry is None:
            return None
        return TaskInfo(entry.task_id, entry.state, entry.started_at, entry.timeout)

    async def all_done(self):
        """
        Wait until every task active right now has finished.

        Tasks started after this call are not awaited.
        """
        pending = [entry.handle for entry in self._active.values()]
        if pending:
            await asyncio.wait(pending)

    # --- Running ---

    def run(self, input: I, computation: Callable[..., Any], *,
            on_progress: Optional[Callable[[P], Any]] = None,
            task_id: Optional[str] = None,
            timeout: Timeout = DEFAULT_TIMEOUT) -> "asyncio.Future[Optional[O]]":
        """
        Dispatch computation(input[, send_progress]) to a worker.

        Args:
            input: Value handed to the computation
            computation: Sync or async callable. If it accepts a second
                positional argument it receives a progress sender.
            on_progress: Called on the event loop for each progress payload
            task_id: Unique id; generated from a monotonic clock if omitted
            timeout: Seconds (or timedelta). Defaults to
                runner.default_timeout_seconds; None or 0 disables it.

        Returns:
            Future resolved with the computation's result, with None if the
            task is cancelled, or failed with TaskTimeoutError / the
            computation's own exception.

        Raises:
            RunnerDisposedError: after dispose()
            DuplicateTaskError: task_id is still active
            ValueError: negative timeout
        """
        if self._disposed:
            raise RunnerDisposedError()

        loop = asyncio.get_running_loop()
        timeout_s = self._resolve_timeout(timeout)

        if task_id is None:
            task_id = self._next_id()
        elif task_id in self._active:
            raise DuplicateTaskError(task_id)

        executor = self.executor
        entry = _TaskEntry(task_id, loop.create_future(), time.monotonic(), timeout_s)

        try:
            if accepts_progress(computation):
                entry.relay = executor.progress_relay(partial(self._deliver_progress, task_id, on_progress))
                work = executor.dispatch(invoke, computation, input, entry.relay.sender)
            else:
                work = executor.dispatch(invoke, computation, input)
        except Exception:
            if entry.relay is not None:
                entry.relay.close()
            raise

        self._active[task_id] = entry
        entry.worker = loop.create_task(self._await_worker(entry, work))
        entry.worker.add_done_callback(partial(self._on_worker_done, entry))
        entry.handle.add_done_callback(partial(self._on_handle_done, entry))

        if timeout_s:
            entry.timer = loop.call_later(timeout_s, self._expire, entry)

        logger.debug(f"Task {task_id} dispatched ({executor.kind}, timeout={timeout_s})")
        self.task_started.emit(task_id)
        return entry.handle

    async def _await_worker(self, entry: _TaskEntry, work: asyncio.Future):
        try:
            return await work
        finally:
            if entry.relay is not None and not entry.handle.done():
                await entry.relay.drain()

    def _on_worker_done(self, entry: _TaskEntry, worker: asyncio.Task):
        if entry.handle.done():
            if not worker.cancelled() and worker.exception() is not None:
                logger.debug(f"Task {entry.task_id}: late failure discarded: {worker.exception()!r}")
            elif not worker.cancelled():
                logger.debug(f"Task {entry.task_id}: late result discarded")
            return

        if worker.cancelled():
            self._resolve(entry, TaskState.CANCELLED)
            return

        error = worker.exception()
        if error is not None:
            logger.warning(f"Task {entry.task_id} failed: {error!r}")
            self._resolve(entry, TaskState.FAILED, error=error)
        else:
            self._resolve(entry, TaskState.COMPLETED, result=worker.result())

    def _expire(self, entry: _TaskEntry):
        if entry.handle.done():
            return
        logger.warning(f"Task {entry.task_id} timed out after {entry.timeout}s")
        self._resolve(entry, TaskState.TIMED_OUT, error=TaskTimeoutError(entry.task_id, entry.timeout))

    def _on_handle_done(self, entry: _TaskEntry, handle: asyncio.Future):
        # Caller cancelled the future directly
        if handle.cancelled() and not entry.state.is_terminal:
            entry.state = TaskState.CANCELLED
            self._release(entry)

    def _resolve(self, entry: _TaskEntry, state: TaskState, result: Any = None,
                 error: Optional[BaseException] = None) -> bool:
        """First resolution wins; later ones are no-ops."""
        if entry.handle.done() or entry.state.is_terminal:
            return False
        entry.state = state
        if error is not None:
            entry.handle.set_exception(error)
        else:
            entry.handle.set_result(result)
        self._release(entry, result, error)
        return True

    def _release(self, entry: _TaskEntry, result: Any = None, error: Optional[BaseException] = None):
        """Tear down everything a task holds. Runs once per task."""
        if entry.released:
            return
        entry.released = True

        if self._active.get(entry.task_id) is entry:
            del self._active[entry.task_id]
        if entry.timer is not None:
            entry.timer.cancel()
        if entry.relay is not None:
            entry.relay.close()
        channel = self._channels.get(entry.task_id)
        if channel is not None and channel.subscriber_count == 0:
            # Nobody listening; a later subscriber only sees payloads emitted after it joins
            del self._channels[entry.task_id]
            channel.close()
        if entry.worker is not None and not entry.worker.done():
            # Withdraws the work if the pool has not started it yet
            entry.worker.cancel()

        logger.debug(f"Task {entry.task_id} -> {entry.state.value}")
        if entry.state is TaskState.COMPLETED:
            self.task_completed.emit(entry.task_id, result)
        elif entry.state in (TaskState.FAILED, TaskState.TIMED_OUT):
            self.task_failed.emit(entry.task_id, error)
        else:
            self.task_cancelled.emit(entry.task_id)

    # --- Progress ---

    def _deliver_progress(self, task_id: str, on_progress: Optional[Callable[[P], Any]], payload: P):
        if not self._disposed:
            channel = self._channels.get(task_id)
            if channel is None:
                channel = self._channels[task_id] = ProgressChannel(task_id)
            channel.emit(payload)

        if on_progress is not None:
            try:
                on_progress(payload)
            except Exception as e:
                logger.error(f"Task {task_id}: on_progress callback error: {e}")

    def progress_stream(self, task_id: str) -> ProgressChannel[P]:
        """
        Broadcast channel for a task's progress, created if absent.

        Does not check that the task exists. After dispose() the returned
        channel is already closed.
        """
        if self._disposed:
            channel = ProgressChannel(task_id)
            channel.close()
            return channel
        channel = self._channels.get(task_id)
        if channel is None:
            channel = self._channels[task_id] = ProgressChannel(task_id)
        return channel

    def close_progress_stream(self, task_id: str) -> bool:
        channel = self._channels.pop(task_id, None)
        if channel is None:
            return False
        channel.close()
        return True

    # --- Cancellation ---

    def cancel(self, task_id: str) -> bool:
        """
        Stop waiting for a task. Its handle resolves with None.

        Does not interrupt a worker that is already running.

        Returns:
            True if an active task was found
        """
        entry = self._active.get(task_id)
        if entry is None:
            return False
        cancelled = self._resolve(entry, TaskState.CANCELLED)
        if cancelled:
            logger.info(f"Task {task_id} cancelled")
        return cancelled

    def cancel_all(self) -> int:
        """Cancel every active task. Returns how many were cancelled."""
        count = 0
        for task_id in list(self._active):
            if self.cancel(task_id):
                count += 1
        return count

    def dispose(self):
        """
        Cancel all tasks, close every progress channel and release the pool.

        The runner cannot be used afterwards. Idempotent.
        """
        if self._disposed:
            return
        self._disposed = True

        cancelled = self.cancel_all()

        for channel in self._channels.values():
            channel.close()
        self._channels.clear()

        self.config.on_changed.disconnect(self._on_config_changed)

        if self._owns_executor and self._executor is not None:
            self._executor.shutdown(wait=False)

        logger.info(f"BackgroundTaskRunner disposed ({cancelled} tasks cancelled)")

    # --- Helpers ---

    def _resolve_timeout(self, timeout: Timeout) -> Optional[float]:
        if timeout is DEFAULT_TIMEOUT:
            timeout = self.config.data.runner.default_timeout_seconds
        if timeout is None:
            return None
        if isinstance(timeout, timedelta):
            timeout = timeout.total_seconds()
        timeout = float(timeout)
        if timeout < 0:
            raise ValueError(f"timeout must be >= 0, got {timeout}")
        return timeout or None

    def _next_id(self) -> str:
        prefix = self.config.data.runner.id_prefix
        ns = max(time.monotonic_ns(), self._last_id_ns + 1)
        while f"{prefix}-{ns}" in self._active:
            ns += 1
        self._last_id_ns = ns
        return f"{prefix}-{ns}"

    def _on_config_changed(self, section: str, key: str, value):
        """Handle config changes for reactive updates."""
        if section == "runner" and key in ("executor", "max_workers") and self._executor is not None:
            logger.info(f"Runner {key} changed to {value} (restart required)")
