"""
Task error taxonomy.

Errors raised by the computation itself are never wrapped: the runner
re-raises the original exception object through the task handle.
The one exception is StopIteration, which asyncio futures cannot carry:
it surfaces as RuntimeError with the original as __cause__.
Cancellation is not an error either; a cancelled task resolves to None.
"""
from typing import Optional


class TaskError(Exception):
    """Base class for runner-level task errors."""

    def __init__(self, message: str, task_id: Optional[str] = None):
        super().__init__(message)
        self.task_id = task_id


class TaskTimeoutError(TaskError, TimeoutError):
    """Computation did not finish within the configured window."""

    def __init__(self, task_id: str, timeout: float):
        super().__init__(f"Task '{task_id}' timed out after {timeout}s", task_id)
        self.timeout = timeout


class DuplicateTaskError(TaskError, ValueError):
    """A task with the same id is still active."""

    def __init__(self, task_id: str):
        super().__init__(f"Task '{task_id}' is already running", task_id)


class RunnerDisposedError(TaskError, RuntimeError):
    """run() was called on a runner after dispose()."""

    def __init__(self):
        super().__init__("Runner has been disposed")
