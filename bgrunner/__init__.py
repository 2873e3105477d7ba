"""
bgrunner - background computation for asyncio applications

Offloads work to threads or processes, streams progress back to the
event loop, enforces timeouts and tracks tasks for bulk cancellation.
"""

from bgrunner.core.base_system import BaseSystem
from bgrunner.core.locator import ServiceLocator
from bgrunner.core.config import (
    ConfigManager,
    AppConfig,
    GeneralSettings,
    RunnerSettings,
)
from bgrunner.core.events import Signal
from bgrunner.core.logging import setup_logging
from bgrunner.core.tasks import (
    BackgroundTaskRunner,
    DEFAULT_TIMEOUT,
    WorkerExecutor,
    ProgressChannel,
    ProgressSubscription,
    TaskInfo,
    TaskState,
    TaskError,
    TaskTimeoutError,
    DuplicateTaskError,
    RunnerDisposedError,
)

__version__ = "0.1.0"

__all__ = [
    # Core
    "BaseSystem",
    "ServiceLocator",
    "ConfigManager",
    "AppConfig",
    "GeneralSettings",
    "RunnerSettings",
    "Signal",
    "setup_logging",

    # Tasks
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
