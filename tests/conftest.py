import threading

import pytest
import pytest_asyncio
from unittest.mock import MagicMock
from loguru import logger

from bgrunner.core.config import ConfigManager
from bgrunner.core.tasks.runner import BackgroundTaskRunner


@pytest.fixture
def config():
    """In-memory config; nothing is written to disk."""
    return ConfigManager()


@pytest.fixture
def log_messages():
    """Capture loguru output as plain message strings."""
    messages = []
    sink_id = logger.add(lambda msg: messages.append(msg.record["message"]), level="DEBUG", format="{message}")
    yield messages
    logger.remove(sink_id)


@pytest.fixture
def gate():
    """Event that blocking computations wait on; always released at teardown."""
    event = threading.Event()
    yield event
    event.set()


@pytest_asyncio.fixture
async def runner(config):
    runner = BackgroundTaskRunner(MagicMock(), config)
    await runner.initialize()
    yield runner
    runner.dispose()
