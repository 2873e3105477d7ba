from loguru import logger
from typing import Callable, List


class Signal:
    """
    A simple observer pattern implementation (Synchronous).
    Subscribers connect to this signal and are notified on emit().

    The runner emits its task lifecycle signals on the event loop thread,
    so subscribers must not block.
    """
    def __init__(self, name: str = "Signal"):
        self.name = name
        self._subscribers: List[Callable] = []

    def connect(self, callback: Callable) -> Callable:
        """Connect a callback; returns it so connect can be used as a decorator."""
        if callback not in self._subscribers:
            self._subscribers.append(callback)
        return callback

    def disconnect(self, callback: Callable):
        """Disconnect a callback function from this signal."""
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    def clear(self):
        """Drop every subscriber."""
        self._subscribers.clear()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def emit(self, *args, **kwargs) -> int:
        """
        Broadcast arguments to all subscribers synchronously.

        A failing subscriber is logged with its traceback and skipped.

        Returns:
            Number of subscribers that ran without raising
        """
        delivered = 0
        # Copy: a subscriber may disconnect itself while being notified
        for sub in list(self._subscribers):
            try:
                sub(*args, **kwargs)
            except Exception as e:
                logger.opt(exception=e).error(f"Signal '{self.name}' error in subscriber '{sub}': {e}")
            else:
                delivered += 1
        return delivered
