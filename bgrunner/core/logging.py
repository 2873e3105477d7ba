import sys
from loguru import logger
import os

# Worker threads are named "bgrunner_N"; showing the thread tells loop-side
# bookkeeping apart from code running inside a worker.
CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
    "<magenta>{thread.name: <12}</magenta> | <cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {process.id}:{thread.name} | {name}:{function}:{line} - {message}"


def setup_logging(debug_mode: bool = True, log_dir: str = "logs", file_logging: bool = True):
    """
    Configures Loguru logger.

    Task lifecycle (dispatch, state changes, discarded late results) is
    logged at DEBUG, so debug_mode=False keeps the console to failures,
    timeouts and cancellations.
    """
    # Remove default handler
    logger.remove()

    level = "DEBUG" if debug_mode else "INFO"
    logger.add(sys.stderr, level=level, format=CONSOLE_FORMAT)

    if file_logging:
        if not os.path.exists(log_dir):
            os.makedirs(log_dir)
        # enqueue: sinks are written from worker threads as well as the loop
        logger.add(os.path.join(log_dir, "bgrunner_{time}.log"), rotation="10 MB", retention="1 week",
                   level="DEBUG", format=FILE_FORMAT, enqueue=True)

    logger.info(f"Logging initialized (level={level}, file={'on' if file_logging else 'off'})")


def setup_logging_from_config(config, file_logging: bool = True):
    """Configure logging from the `general` section of a ConfigManager."""
    general = config.data.general
    setup_logging(debug_mode=general.debug_mode, log_dir=general.log_dir, file_logging=file_logging)
