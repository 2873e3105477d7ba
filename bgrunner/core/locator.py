"""
ServiceLocator - explicitly owned registry of systems and runners.

There is no module-level instance: the application builds one locator
during setup and passes it to whoever needs it.

Usage:
    locator = ServiceLocator(ConfigManager("config.json"))
    resize = locator.runner_for(bytes, bytes)
    await locator.start_all()
    ...
    await locator.stop_all()
"""
from typing import Dict, List, Optional, Tuple, Type, TypeVar
from loguru import logger

from .base_system import BaseSystem
from .config import ConfigManager
from .tasks.runner import BackgroundTaskRunner

T = TypeVar("T", bound=BaseSystem)


class ServiceLocator:
    def __init__(self, config: Optional[ConfigManager] = None):
        self.config = config if config is not None else ConfigManager()
        self._systems: Dict[type, BaseSystem] = {}
        self._order: List[type] = []
        self._runners: Dict[Tuple[type, type], BackgroundTaskRunner] = {}

    def register_system(self, system_cls: Type[T]) -> T:
        """
        Instantiate and register a system. Registering twice returns the
        existing instance.
        """
        if system_cls in self._systems:
            return self._systems[system_cls]  # type: ignore[return-value]
        instance = system_cls(self, self.config)
        self._systems[system_cls] = instance
        self._order.append(system_cls)
        logger.debug(f"Registered system: {system_cls.__name__}")
        return instance

    def get_system(self, system_cls: Type[T]) -> T:
        """
        Raises:
            KeyError: system_cls was never registered
        """
        try:
            return self._systems[system_cls]  # type: ignore[return-value]
        except KeyError:
            raise KeyError(f"System not registered: {system_cls.__name__}") from None

    def has_system(self, system_cls: type) -> bool:
        return system_cls in self._systems

    def runner_for(self, input_type: type, output_type: type) -> BackgroundTaskRunner:
        """
        Shared runner for one (input_type, output_type) pair.

        Call sites that agree on the pair share one task registry.
        """
        key = (input_type, output_type)
        runner = self._runners.get(key)
        if runner is None or runner.is_disposed:
            runner = BackgroundTaskRunner(self, self.config)
            self._runners[key] = runner
            logger.debug(f"Created runner for {input_type.__name__} -> {output_type.__name__}")
        return runner

    async def start_all(self):
        """Initialize systems in registration order."""
        for system_cls in self._order:
            system = self._systems[system_cls]
            if not system.is_ready:
                await system.initialize()
        for runner in self._runners.values():
            if not runner.is_ready and not runner.is_disposed:
                await runner.initialize()
        logger.info(f"ServiceLocator started ({len(self._order)} systems, {len(self._runners)} runners)")

    async def stop_all(self):
        """Shut systems down in reverse order, then dispose every runner."""
        for system_cls in reversed(self._order):
            system = self._systems[system_cls]
            try:
                await system.shutdown()
            except Exception as e:
                logger.error(f"Shutdown of {system_cls.__name__} failed: {e}")
        for runner in self._runners.values():
            runner.dispose()
        self._runners.clear()
        logger.info("ServiceLocator stopped")
