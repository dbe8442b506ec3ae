"""
Shared fixtures for CardMail tests.
"""

import pytest

from cardmail.job_store import JobStore
from cardmail.models import JobPayload
from cardmail.scheduler import RateLimiter
from cardmail.storage import InMemorySnapshotStore

from tests.fakes import SENDER, FakeClock


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def snapshots():
    return InMemorySnapshotStore()


@pytest.fixture
def store(clock, snapshots):
    """JobStore on a fake clock: 2 slots, 3 attempts, 2s base backoff."""
    return JobStore(
        max_concurrency=2,
        rate_limiter=RateLimiter(max_starts=10, window_seconds=1.0, clock=clock),
        max_attempts=3,
        backoff_base=2.0,
        backoff_max=60.0,
        max_outstanding=5,
        snapshots=snapshots,
        clock=clock
    )


@pytest.fixture
def payload():
    return JobPayload(image=b"\x89PNG fake", mime_type="image/png", sender=SENDER)
