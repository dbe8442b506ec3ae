"""
Tests for JobStore.

Covers the queue, concurrency and rate gates, the state machine and
retry/backoff policy.
"""

import pytest
from unittest.mock import Mock, patch

from cardmail.errors import CapacityExceeded, JobNotFound, StaleTransition
from cardmail.job_store import CLAIM_PROGRESS, JobStore
from cardmail.models import ContactRecord, EmailContent, JobPayload, JobStatus, RetryDecision
from cardmail.scheduler import RateLimiter
from cardmail.storage import InMemorySnapshotStore


def _drive_to_sent(store, job_id):
    store.update_status(job_id, JobStatus.PARSING, 40)
    store.update_status(job_id, JobStatus.COMPOSING, 40, contact=ContactRecord(name="Taro", email="t@example.com"))
    store.update_status(job_id, JobStatus.SENDING, 70, email=EmailContent(subject="Hi", body="Hello"))
    store.update_status(job_id, JobStatus.SENT, 100, delivery_id="msg_1")


class TestEnqueue:
    """Test cases for enqueue."""

    def test_enqueue_creates_queued_job(self, store, payload):
        job_id = store.enqueue(payload)

        job = store.get_status(job_id)
        assert job_id.startswith("job_")
        assert job.status == JobStatus.QUEUED
        assert job.progress == 0
        assert job.attempt == 0
        assert job.completed_at is None

    def test_job_ids_are_unique(self, store, payload):
        ids = {store.enqueue(payload) for _ in range(5)}
        assert len(ids) == 5

    def test_capacity_exceeded(self, store, payload):
        for _ in range(store.max_outstanding):
            store.enqueue(payload)

        with pytest.raises(CapacityExceeded) as exc_info:
            store.enqueue(payload)
        assert exc_info.value.limit == 5

    def test_terminal_jobs_free_capacity(self, store, payload):
        ids = [store.enqueue(payload) for _ in range(store.max_outstanding)]
        assert store.cancel_if_queued(ids[0]) is True

        store.enqueue(payload)

    def test_enqueue_notifies_listeners(self, store, payload):
        listener = Mock()
        store.add_listener(listener)

        store.enqueue(payload)

        listener.assert_called_once()

    def test_enqueue_persists_snapshot(self, store, payload, snapshots):
        job_id = store.enqueue(payload)

        snapshot = snapshots.load_job_snapshot(job_id)
        assert snapshot["status"] == "queued"
        assert "image" not in snapshot


class TestDequeue:
    """Test cases for dequeue_next and the gates."""

    def test_dequeue_empty(self, store):
        assert store.dequeue_next() is None

    def test_dequeue_claims_oldest_first(self, store, payload):
        first = store.enqueue(payload)
        second = store.enqueue(payload)

        assert store.dequeue_next().id == first
        assert store.dequeue_next().id == second

    def test_claim_moves_to_extracting_text(self, store, payload):
        job_id = store.enqueue(payload)

        job = store.dequeue_next()

        assert job.id == job_id
        assert job.status == JobStatus.EXTRACTING_TEXT
        assert job.progress == CLAIM_PROGRESS
        assert job.payload.image == payload.image

    def test_concurrency_gate(self, store, payload):
        ids = [store.enqueue(payload) for _ in range(3)]

        assert store.dequeue_next().id == ids[0]
        assert store.dequeue_next().id == ids[1]
        assert store.dequeue_next() is None
        assert store.in_flight_count() == 2

        _drive_to_sent(store, ids[0])

        assert store.dequeue_next().id == ids[2]

    def test_rate_limiter_gate(self, clock, payload):
        store = JobStore(
            max_concurrency=10,
            rate_limiter=RateLimiter(max_starts=2, window_seconds=1.0, clock=clock),
            clock=clock
        )
        for _ in range(3):
            store.enqueue(payload)

        assert store.dequeue_next() is not None
        assert store.dequeue_next() is not None
        assert store.dequeue_next() is None
        assert store.seconds_until_eligible() == pytest.approx(1.0)

        clock.advance(1.0)

        assert store.dequeue_next() is not None

    def test_seconds_until_eligible(self, store, payload):
        assert store.seconds_until_eligible() is None

        store.enqueue(payload)

        assert store.seconds_until_eligible() == 0

    def test_slot_release_notifies_listeners(self, store, payload):
        job_id = store.enqueue(payload)
        store.dequeue_next()
        listener = Mock()
        store.add_listener(listener)

        _drive_to_sent(store, job_id)

        listener.assert_called_once()


class TestUpdateStatus:
    """Test cases for the forward transitions."""

    @pytest.fixture
    def claimed(self, store, payload):
        job_id = store.enqueue(payload)
        store.dequeue_next()
        return job_id

    def test_full_forward_path(self, store, claimed):
        _drive_to_sent(store, claimed)

        job = store.get_status(claimed)
        assert job.status == JobStatus.SENT
        assert job.progress == 100
        assert job.contact.email == "t@example.com"
        assert job.email.subject == "Hi"
        assert job.delivery_id == "msg_1"
        assert job.completed_at is not None
        assert store.in_flight_count() == 0

    def test_backwards_status_rejected(self, store, claimed):
        store.update_status(claimed, JobStatus.COMPOSING, 40)

        with pytest.raises(StaleTransition):
            store.update_status(claimed, JobStatus.PARSING, 40)

    def test_decreasing_progress_rejected(self, store, claimed):
        store.update_status(claimed, JobStatus.PARSING, 40)

        with pytest.raises(StaleTransition):
            store.update_status(claimed, JobStatus.COMPOSING, 30)

    @pytest.mark.parametrize("status", [JobStatus.QUEUED, JobStatus.FAILED])
    def test_queued_and_failed_not_settable(self, store, claimed, status):
        with pytest.raises(StaleTransition):
            store.update_status(claimed, status, 50)

    def test_update_on_queued_job_rejected(self, store, payload):
        job_id = store.enqueue(payload)

        with pytest.raises(StaleTransition):
            store.update_status(job_id, JobStatus.PARSING, 40)

    def test_update_after_sent_rejected(self, store, claimed):
        _drive_to_sent(store, claimed)

        with pytest.raises(StaleTransition):
            store.update_status(claimed, JobStatus.SENT, 100)

    def test_unknown_job(self, store):
        with pytest.raises(JobNotFound):
            store.update_status("job_missing", JobStatus.PARSING, 40)


class TestRecordFailure:
    """Test cases for retry and give-up decisions."""

    def test_retry_resets_job(self, store, clock, payload):
        job_id = store.enqueue(payload)
        store.dequeue_next()
        store.update_status(job_id, JobStatus.PARSING, 40)
        store.update_status(job_id, JobStatus.COMPOSING, 40, contact=ContactRecord(name="Taro"))

        decision = store.record_failure(job_id, "composing", "model overloaded")

        job = store.get_status(job_id)
        assert decision == RetryDecision.RETRY
        assert job.status == JobStatus.QUEUED
        assert job.progress == 0
        assert job.attempt == 1
        assert job.contact is None
        assert job.error == "composing: model overloaded"
        assert store.in_flight_count() == 0

    def test_backoff_delays_eligibility(self, store, clock, payload):
        job_id = store.enqueue(payload)
        store.dequeue_next()
        store.record_failure(job_id, "extracting_text", "timeout")

        # base 2s for the first retry
        assert store.dequeue_next() is None
        assert store.seconds_until_eligible() == pytest.approx(2.0)

        clock.advance(2.0)
        assert store.dequeue_next().id == job_id

        store.record_failure(job_id, "extracting_text", "timeout")
        clock.advance(3.5)
        assert store.dequeue_next() is None
        clock.advance(0.5)
        assert store.dequeue_next().id == job_id

    def test_give_up_after_max_attempts(self, store, clock, payload):
        job_id = store.enqueue(payload)
        decisions = []
        for _ in range(store.max_attempts):
            clock.advance(60)
            assert store.dequeue_next().id == job_id
            decisions.append(store.record_failure(job_id, "sending", "mail server unavailable"))

        job = store.get_status(job_id)
        assert decisions == [RetryDecision.RETRY, RetryDecision.RETRY, RetryDecision.GIVE_UP]
        assert job.status == JobStatus.FAILED
        assert job.attempt == store.max_attempts
        assert job.error == "job failed after 3 attempts: sending: mail server unavailable"
        assert job.completed_at is not None

        clock.advance(600)
        assert store.dequeue_next() is None

    def test_non_retryable_gives_up_immediately(self, store, payload):
        job_id = store.enqueue(payload)
        store.dequeue_next()

        decision = store.record_failure(job_id, "parsing", "bad transition", retryable=False)

        assert decision == RetryDecision.GIVE_UP
        assert store.get_status(job_id).status == JobStatus.FAILED

    def test_failure_on_queued_job_rejected(self, store, payload):
        job_id = store.enqueue(payload)

        with pytest.raises(StaleTransition):
            store.record_failure(job_id, "sending", "late")

    def test_error_cleared_on_sent(self, store, clock, payload):
        job_id = store.enqueue(payload)
        store.dequeue_next()
        store.record_failure(job_id, "sending", "flaky")
        clock.advance(2.0)
        store.dequeue_next()

        _drive_to_sent(store, job_id)

        job = store.get_status(job_id)
        assert job.error is None
        assert job.attempt == 1
        assert "error" not in job.to_dict()


class TestCallerOperations:
    """Test cases for retry, cancel_if_queued and get_status."""

    def _fail(self, store, job_id):
        store.dequeue_next()
        store.record_failure(job_id, "sending", "rejected", retryable=False)

    def test_retry_failed_job(self, store, payload):
        job_id = store.enqueue(payload)
        self._fail(store, job_id)

        store.retry(job_id)

        job = store.get_status(job_id)
        assert job.status == JobStatus.QUEUED
        assert job.attempt == 0
        assert job.progress == 0
        assert job.completed_at is None
        assert store.dequeue_next().id == job_id

    def test_retry_logs_failed_stage(self, store, payload):
        job_id = store.enqueue(payload)
        self._fail(store, job_id)

        with patch("cardmail.job_store.logger") as mock_logger:
            store.retry(job_id)

        mock_logger.info.assert_called_once()
        assert "after failing in sending" in mock_logger.info.call_args[0][0]

    def test_retry_requires_failed(self, store, payload):
        job_id = store.enqueue(payload)

        with pytest.raises(StaleTransition):
            store.retry(job_id)

    def test_cancel_queued_job(self, store, payload):
        job_id = store.enqueue(payload)

        assert store.cancel_if_queued(job_id) is True

        job = store.get_status(job_id)
        assert job.status == JobStatus.FAILED
        assert job.error == "cancelled"
        assert store.dequeue_next() is None

    def test_cancel_claimed_job_refused(self, store, payload):
        job_id = store.enqueue(payload)
        store.dequeue_next()

        assert store.cancel_if_queued(job_id) is False
        assert store.get_status(job_id).status == JobStatus.EXTRACTING_TEXT

    def test_get_status_is_idempotent(self, store, payload):
        job_id = store.enqueue(payload)
        store.dequeue_next()

        first = store.get_status(job_id)
        second = store.get_status(job_id)

        assert first == second
        assert first.to_dict() == second.to_dict()

    def test_get_status_returns_copy(self, store, payload):
        job_id = store.enqueue(payload)

        snapshot = store.get_status(job_id)
        snapshot.status = JobStatus.SENT
        snapshot.progress = 100

        job = store.get_status(job_id)
        assert job.status == JobStatus.QUEUED
        assert job.progress == 0

    def test_get_status_falls_back_to_snapshots(self, store, payload, snapshots):
        job_id = store.enqueue(payload)
        store.dequeue_next()
        _drive_to_sent(store, job_id)

        restarted = JobStore(snapshots=snapshots)
        job = restarted.get_status(job_id)

        assert job.status == JobStatus.SENT
        assert job.delivery_id == "msg_1"
        assert job.contact.name == "Taro"

    def test_unknown_job(self, store):
        with pytest.raises(JobNotFound):
            store.get_status("job_missing")

    def test_stats(self, store, payload):
        store.enqueue(payload)
        store.enqueue(payload)
        store.dequeue_next()

        stats = store.stats()

        assert stats["queued"] == 1
        assert stats["extracting_text"] == 1
        assert stats["in_flight"] == 1
        assert stats["total"] == 2
        assert stats["max_concurrency"] == 2
        assert stats["starts_in_window"] == 1


class TestRetention:
    """Finished jobs are bounded in memory; older ones answer from snapshots."""

    @pytest.fixture
    def bounded(self, clock, snapshots):
        return JobStore(
            max_concurrency=2,
            rate_limiter=RateLimiter(max_starts=1000, window_seconds=1.0, clock=clock),
            max_attempts=1,
            max_outstanding=5,
            snapshots=snapshots,
            clock=clock,
            max_retained_completed=3,
            max_retained_failed=2
        )

    def _run_to_sent(self, store, payload):
        job_id = store.enqueue(payload)
        store.dequeue_next()
        _drive_to_sent(store, job_id)
        return job_id

    def _run_to_failed(self, store, payload):
        job_id = store.enqueue(payload)
        store.dequeue_next()
        store.record_failure(job_id, "sending", "rejected")
        return job_id

    def test_sent_jobs_stay_bounded(self, bounded, payload):
        ids = [self._run_to_sent(bounded, payload) for _ in range(50)]

        assert len(bounded._jobs) == 3
        assert set(bounded._jobs) == set(ids[-3:])
        assert sum(len(job.payload.image) for job in bounded._jobs.values()) == 0
        assert bounded.stats()["sent"] == 3

    def test_evicted_job_answers_from_snapshot(self, bounded, payload):
        first = self._run_to_sent(bounded, payload)
        for _ in range(5):
            self._run_to_sent(bounded, payload)

        job = bounded.get_status(first)

        assert first not in bounded._jobs
        assert job.status == JobStatus.SENT
        assert job.delivery_id == "msg_1"

    def test_failed_jobs_keep_image_until_evicted(self, bounded, payload):
        ids = [self._run_to_failed(bounded, payload) for _ in range(4)]

        assert set(bounded._jobs) == set(ids[-2:])
        assert all(job.payload.image == payload.image for job in bounded._jobs.values())
        assert bounded.get_status(ids[0]).status == JobStatus.FAILED

    def test_cancelled_jobs_count_as_failed(self, bounded, payload):
        ids = [bounded.enqueue(payload) for _ in range(3)]
        for job_id in ids:
            bounded.cancel_if_queued(job_id)

        assert set(bounded._jobs) == set(ids[-2:])

    def test_retried_job_leaves_failed_history(self, bounded, payload):
        retried = self._run_to_failed(bounded, payload)
        bounded.retry(retried)
        for _ in range(3):
            bounded.cancel_if_queued(bounded.enqueue(payload))

        # Back in the queue, so never evicted with the failed jobs
        assert bounded.get_status(retried).status == JobStatus.QUEUED
        assert bounded.dequeue_next().id == retried

    def test_retry_of_evicted_job_conflicts(self, bounded, payload):
        ids = [self._run_to_failed(bounded, payload) for _ in range(3)]

        with pytest.raises(StaleTransition):
            bounded.retry(ids[0])

    def test_zero_retention(self, clock, payload):
        store = JobStore(clock=clock, max_retained_completed=0, max_retained_failed=0)
        job_id = self._run_to_sent(store, payload)

        assert store._jobs == {}
        assert store.get_status(job_id).status == JobStatus.SENT


class TestSnapshotFailures:
    """Persistence errors never break the in-memory state."""

    def test_persist_oserror_is_logged(self, payload):
        snapshots = Mock(spec=InMemorySnapshotStore)
        snapshots.persist_job_snapshot.side_effect = OSError("disk full")
        store = JobStore(snapshots=snapshots)

        job_id = store.enqueue(payload)

        assert store.get_status(job_id).status == JobStatus.QUEUED

    def test_invalid_limits(self):
        with pytest.raises(ValueError):
            JobStore(max_concurrency=0)
        with pytest.raises(ValueError):
            JobStore(max_attempts=0)
        with pytest.raises(ValueError):
            JobStore(max_retained_failed=-1)

    def test_payload_is_immutable(self, payload):
        with pytest.raises(Exception):
            payload.image = b"other"

    def test_payload_defaults(self):
        payload = JobPayload(image=b"x", mime_type="image/jpeg")
        assert payload.sender is None
        assert payload.options is None
