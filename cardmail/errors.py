"""
Error taxonomy for the card-processing pipeline.
"""

from typing import Optional


class CardMailError(Exception):
    """Base class for all pipeline errors."""


class CapacityExceeded(CardMailError):
    """Raised by enqueue when too many jobs are outstanding.

    Not retried automatically; the caller is expected to back off.
    """

    def __init__(self, outstanding: int, limit: int):
        self.outstanding = outstanding
        self.limit = limit
        super().__init__(f"Queue is full: {outstanding} outstanding jobs (limit {limit})")


class ProviderError(CardMailError):
    """An OCR, AI or dispatch provider failed, timed out or returned garbage.

    Always retryable.
    """

    def __init__(self, provider: str, message: str):
        self.provider = provider
        self.message = message
        super().__init__(f"{provider}: {message}")


class ValidationError(CardMailError):
    """Content that failed validation and could not be repaired."""


class StaleTransition(CardMailError):
    """A status update that violates the job state machine.

    Signals a sequencing bug; never retried.
    """

    def __init__(self, job_id: str, current: str, requested: str, reason: Optional[str] = None):
        self.job_id = job_id
        self.current = current
        self.requested = requested
        message = f"Job {job_id}: cannot move from {current} to {requested}"
        if reason:
            message += f" ({reason})"
        super().__init__(message)


class ExhaustedRetries(CardMailError):
    """Terminal failure of a job, the only failure users ever see."""

    def __init__(self, attempts: int, stage: str, error: str):
        self.attempts = attempts
        self.stage = stage
        self.error = error
        super().__init__(f"job failed after {attempts} attempts: {stage}: {error}")


class JobNotFound(CardMailError):
    """No job with the given id exists."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")
