"""
Core tasks module - background task execution.
"""
from bgrunner.core.tasks.errors import (
    TaskError,
    TaskTimeoutError,
    DuplicateTaskError,
    RunnerDisposedError,
)
from bgrunner.core.tasks.executor import WorkerExecutor
from bgrunner.core.tasks.models import TaskInfo, TaskState
from bgrunner.core.tasks.progress import ProgressChannel, ProgressSubscription
from bgrunner.core.tasks.runner import BackgroundTaskRunner, DEFAULT_TIMEOUT

__all__ = [
    "BackgroundTaskRunner",
    "DEFAULT_TIMEOUT",
    "WorkerExecutor",
    "ProgressChannel",
    "ProgressSubscription",
    "TaskInfo",
    "TaskState",
    "TaskError",
    "TaskTimeoutError",
    "DuplicateTaskError",
    "RunnerDisposedError",
]
