from dataclasses import dataclass
from enum import Enum
from typing import Optional


class TaskState(Enum):
    """Task lifecycle states. Everything but PENDING is terminal."""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not TaskState.PENDING


@dataclass(frozen=True)
class TaskInfo:
    """Snapshot of an active task."""
    task_id: str
    state: TaskState
    started_at: float  # time.monotonic()
    timeout: Optional[float] = None
