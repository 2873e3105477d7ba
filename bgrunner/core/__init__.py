"""
bgrunner Core - Background Execution Infrastructure.

Provides:
- ServiceLocator: explicitly owned registry of systems and runners
- BaseSystem: Abstract base for all systems
- ConfigManager: Configuration with persistence
- Signal: synchronous observer
- BackgroundTaskRunner: off-loop execution with progress, timeouts and cancellation

Usage:
    from bgrunner.core import ServiceLocator, ConfigManager

    locator = ServiceLocator(ConfigManager("config.json"))
    runner = locator.runner_for(int, int)
    result = await runner.run(5, double)
"""
from .base_system import BaseSystem
from .config import ConfigManager, AppConfig, GeneralSettings, RunnerSettings
from .events import Signal
from .locator import ServiceLocator
from .tasks import (
    BackgroundTaskRunner,
    WorkerExecutor,
    ProgressChannel,
    TaskState,
    TaskTimeoutError,
)

__all__ = [
    # Core infrastructure
    "BaseSystem",
    "ServiceLocator",

    # Configuration
    "ConfigManager",
    "AppConfig",
    "GeneralSettings",
    "RunnerSettings",

    # Events
    "Signal",

    # Tasks
    "BackgroundTaskRunner",
    "WorkerExecutor",
    "ProgressChannel",
    "TaskState",
    "TaskTimeoutError",
]
