"""
WorkerExecutor - thread or process pool behind an asyncio interface.

The "thread" kind keeps work off the event loop thread; the "process" kind
uses a ProcessPoolExecutor with the 'spawn' context for CPU-heavy work that
must bypass the GIL.

Progress travels back to the loop through a relay:
- threads: the sender schedules delivery with loop.call_soon_threadsafe
- processes: the sender puts into a multiprocessing.Manager queue that a
  pump coroutine drains onto the loop

Usage:
    executor = WorkerExecutor(kind="process", max_workers=4)
    result = await executor.submit(cpu_heavy_function, arg)
    executor.shutdown()
"""
import asyncio
import inspect
import multiprocessing as mp
from concurrent.futures import Executor, ProcessPoolExecutor, ThreadPoolExecutor
from typing import Any, Callable, Optional
from loguru import logger

_PROGRESS = "progress"
_END = "end"


def accepts_progress(fn: Callable) -> bool:
    """True if fn can take a progress sender as its second positional argument."""
    try:
        params = inspect.signature(fn).parameters.values()
    except (TypeError, ValueError):
        # Builtins without introspectable signatures take the input only
        return False
    positional = 0
    for p in params:
        if p.kind is inspect.Parameter.VAR_POSITIONAL:
            return True
        if p.kind in (inspect.Parameter.POSITIONAL_ONLY, inspect.Parameter.POSITIONAL_OR_KEYWORD):
            positional += 1
    return positional >= 2


def invoke(computation: Callable, value: Any, sender: Optional[Callable] = None) -> Any:
    """
    Worker-side trampoline.

    Runs inside the pool. Coroutine results are driven to completion on a
    fresh event loop owned by the worker.
    """
    try:
        result = computation(value) if sender is None else computation(value, sender)
        if inspect.iscoroutine(result):
            result = asyncio.run(result)
    except StopIteration as e:
        # asyncio futures refuse StopIteration; the awaiting side would never wake
        raise RuntimeError(f"computation raised StopIteration: {e!r}") from e
    return result


class ThreadProgressSender:
    """Progress sender for thread workers."""

    def __init__(self, loop: asyncio.AbstractEventLoop, deliver: Callable[[Any], None]):
        self._loop = loop
        self._deliver = deliver

    def send(self, payload: Any):
        try:
            self._loop.call_soon_threadsafe(self._deliver, payload)
        except RuntimeError:
            # Loop already closed; nobody is listening anymore
            logger.debug("Progress dropped: event loop closed")

    __call__ = send


class QueueProgressSender:
    """Picklable progress sender for process workers."""

    def __init__(self, queue):
        self._queue = queue

    def send(self, payload: Any):
        self._queue.put((_PROGRESS, payload))

    __call__ = send


class ProgressRelay:
    """Carries progress from one worker back to the loop until closed."""

    def __init__(self, deliver: Callable[[Any], None]):
        self._deliver = deliver
        self._closed = False
        self.sender: Optional[Callable[[Any], None]] = None

    @property
    def is_closed(self) -> bool:
        return self._closed

    def _on_payload(self, payload: Any):
        if self._closed:
            return
        self._deliver(payload)

    async def drain(self):
        """Wait until payloads sent before the worker returned are delivered."""

    def close(self):
        self._closed = True


class ThreadProgressRelay(ProgressRelay):
    def __init__(self, loop: asyncio.AbstractEventLoop, deliver: Callable[[Any], None]):
        super().__init__(deliver)
        # Callbacks run in FIFO order, so everything the worker sent is
        # delivered before its result callback; drain() has nothing to do.
        self.sender = ThreadProgressSender(loop, self._on_payload)


class QueueProgressRelay(ProgressRelay):
    def __init__(self, loop: asyncio.AbstractEventLoop, queue, deliver: Callable[[Any], None]):
        super().__init__(deliver)
        self._loop = loop
        self._queue = queue
        self._ended = False
        self.sender = QueueProgressSender(queue)
        self._pump = loop.create_task(self._run_pump())

    async def _run_pump(self):
        while True:
            try:
                kind, payload = await self._loop.run_in_executor(None, self._queue.get)
            except Exception as e:
                logger.debug(f"Progress relay stopped: {e}")
                return
            if kind == _END:
                return
            self._on_payload(payload)

    def _end(self):
        if self._ended:
            return
        self._ended = True
        try:
            self._queue.put((_END, None))
        except Exception as e:
            # Manager already gone; the pump exits on its own
            logger.debug(f"Progress relay end marker not sent: {e}")

    async def drain(self):
        self._end()
        await self._pump

    def close(self):
        super().close()
        self._end()


class WorkerExecutor:
    """
    Wrapper for thread/process pools with asyncio integration.

    A dispatched computation cannot be interrupted once a worker picked it
    up; only work still queued in the pool can be withdrawn.
    """

    KINDS = ("thread", "process")

    def __init__(self, kind: str = "thread", max_workers: int = 4):
        if kind not in self.KINDS:
            raise ValueError(f"Unknown executor kind: {kind}")
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")

        self._kind = kind
        self._max_workers = max_workers
        self._manager = None
        self._closed = False

        if kind == "process":
            # Use 'spawn' context for Windows compatibility
            # and to avoid inheriting the parent's event loop state
            self._ctx = mp.get_context('spawn')
            self._pool: Executor = ProcessPoolExecutor(max_workers=max_workers, mp_context=self._ctx)
        else:
            self._ctx = None
            self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="bgrunner")

        logger.info(f"WorkerExecutor initialized ({kind}, {max_workers} workers)")

    @property
    def kind(self) -> str:
        return self._kind

    @property
    def max_workers(self) -> int:
        return self._max_workers

    @property
    def is_shutdown(self) -> bool:
        return self._closed

    def dispatch(self, fn: Callable, *args) -> asyncio.Future:
        """
        Schedule fn(*args) on the pool without waiting.

        Must be called from a running event loop.
        """
        if self._closed:
            raise RuntimeError("WorkerExecutor is shut down")
        loop = asyncio.get_running_loop()
        return loop.run_in_executor(self._pool, fn, *args)

    async def submit(self, fn: Callable, *args) -> Any:
        """
        Run fn(*args) on the pool and await the result.

        Raises:
            Whatever fn raised in the worker
        """
        return await self.dispatch(fn, *args)

    def progress_relay(self, deliver: Callable[[Any], None]) -> ProgressRelay:
        """Create a relay whose sender matches this pool's worker context."""
        loop = asyncio.get_running_loop()
        if self._kind == "process":
            if self._manager is None:
                self._manager = self._ctx.Manager()
            return QueueProgressRelay(loop, self._manager.Queue(), deliver)
        return ThreadProgressRelay(loop, deliver)

    def shutdown(self, wait: bool = True):
        """
        Shutdown the pool. Queued work that has not started is cancelled.

        Args:
            wait: If True, wait for running work to finish
        """
        if self._closed:
            return
        self._closed = True
        logger.info(f"WorkerExecutor shutting down (wait={wait})...")
        self._pool.shutdown(wait=wait, cancel_futures=True)
        if self._manager is not None:
            self._manager.shutdown()
            self._manager = None
        logger.info("WorkerExecutor shutdown complete")
