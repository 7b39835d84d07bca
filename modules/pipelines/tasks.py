"""Generation task states and the pure transition function driving the poll loop."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple


class TaskState(str, Enum):
    """Observed lifecycle of a provider task."""

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SUCCEEDED = "SUCCEED"
    FAILED = "FAILED"
    TIMED_OUT = "TIMED_OUT"

    @property
    def terminal(self) -> bool:
        return self in _TERMINAL


_TERMINAL = frozenset({TaskState.SUCCEEDED, TaskState.FAILED, TaskState.TIMED_OUT})
_RANK = {TaskState.PENDING: 0, TaskState.PROCESSING: 1}


@dataclass(frozen=True, slots=True)
class PollResult:
    """Outcome of a single status round trip."""

    state: TaskState
    images: Tuple[str, ...] = ()
    error_message: Optional[str] = None

    @classmethod
    def pending(cls) -> "PollResult":
        return cls(state=TaskState.PENDING)

    @classmethod
    def processing(cls) -> "PollResult":
        return cls(state=TaskState.PROCESSING)

    @classmethod
    def succeeded(cls, images: Tuple[str, ...] | list[str]) -> "PollResult":
        return cls(state=TaskState.SUCCEEDED, images=tuple(images))

    @classmethod
    def failed(cls, message: str) -> "PollResult":
        return cls(state=TaskState.FAILED, error_message=message)


def next_state(state: TaskState, result: PollResult) -> TaskState:
    """Advance ``state`` by one observation.

    Terminal states absorb every later observation, a success without images
    counts as a failure, and a PENDING report after PROCESSING does not move
    the task backwards.
    """
    if state.terminal:
        return state
    observed = result.state
    if observed is TaskState.SUCCEEDED:
        return TaskState.SUCCEEDED if result.images else TaskState.FAILED
    if observed in (TaskState.FAILED, TaskState.TIMED_OUT):
        return TaskState.FAILED
    if _RANK[observed] < _RANK[state]:
        return state
    return observed


def expire(state: TaskState) -> TaskState:
    """Client-side timeout once the caller's attempt budget is spent."""
    return state if state.terminal else TaskState.TIMED_OUT


@dataclass(slots=True)
class GenerationTask:
    """The orchestrator's reference to a provider task plus its last observed state."""

    task_id: str
    state: TaskState = TaskState.PENDING
    created_at: float = field(default_factory=time.time)
    attempts: int = 0
    error_message: Optional[str] = None

    def observe(self, result: PollResult) -> TaskState:
        self.attempts += 1
        previous = self.state
        self.state = next_state(self.state, result)
        if self.state is TaskState.FAILED and not previous.terminal:
            self.error_message = result.error_message or "生成成功但未返回图片"
        return self.state
