"""Exception types raised along the generation flow."""

from __future__ import annotations

from typing import Optional


class GenerationError(RuntimeError):
    """Base class for failures surfaced to callers of the generation flow."""


class ValidationError(GenerationError, ValueError):
    """The request was rejected before any network call or ledger change."""


class QuotaExceededError(GenerationError):
    """Guest trial exhausted or account credits insufficient."""

    def __init__(
        self,
        message: str,
        remaining: int = 0,
        need_login: bool = False,
        need_credits: bool = False,
    ) -> None:
        super().__init__(message)
        self.remaining = remaining
        self.need_login = need_login
        self.need_credits = need_credits


class SubmissionError(GenerationError):
    """The provider rejected the submission synchronously."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TaskQueryError(GenerationError):
    """A status round trip failed before the provider reported a state."""


class TaskFailedError(GenerationError):
    """The provider resolved the task to a failed state."""

    def __init__(self, task_id: str, message: str) -> None:
        super().__init__(message)
        self.task_id = task_id


class ReconstructionError(GenerationError):
    """Outpaint post-processing could not decode one of its inputs."""
