"""
Job store and scheduler for card processing.

Owns every Job's lifecycle: it is the only writer of status, progress,
attempt and results. Callers (orchestrator, workers, HTTP routes) get
deep-copied snapshots and request transitions through its methods.
"""

import copy
import logging
import threading
import time
import uuid
from collections import deque
from dataclasses import replace
from typing import Callable, Deque, Dict, List, Optional

from .errors import CapacityExceeded, ExhaustedRetries, JobNotFound, StaleTransition
from .models import (
    ContactRecord,
    EmailContent,
    Job,
    JobPayload,
    JobStatus,
    RetryDecision,
    utc_now,
)
from .scheduler import RateLimiter, backoff_delay
from .storage import InMemorySnapshotStore, SnapshotStore

logger = logging.getLogger(__name__)

# Progress checkpoint applied when a worker claims a job
CLAIM_PROGRESS = 10


class JobStore:
    """Thread-safe job queue with concurrency, rate and retry policy.

    Attributes:
        max_concurrency: Maximum jobs in flight (extracting_text..sending)
        max_attempts: Failed attempts after which a job is given up
        max_outstanding: Maximum non-terminal jobs accepted by enqueue
        max_retained_completed: Sent jobs kept in memory, newest first
        max_retained_failed: Failed jobs kept in memory (and retryable)

    Older finished jobs are dropped from memory; get_status still answers
    for them from their persisted snapshot.
    """

    def __init__(
        self,
        max_concurrency: int = 4,
        rate_limiter: Optional[RateLimiter] = None,
        max_attempts: int = 3,
        backoff_base: float = 2.0,
        backoff_max: float = 60.0,
        max_outstanding: int = 100,
        snapshots: Optional[SnapshotStore] = None,
        clock: Callable[[], float] = time.monotonic,
        max_retained_completed: int = 100,
        max_retained_failed: int = 50
    ):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if max_retained_completed < 0 or max_retained_failed < 0:
            raise ValueError("retention limits cannot be negative")

        self.max_concurrency = max_concurrency
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.max_outstanding = max_outstanding
        self.max_retained_completed = max_retained_completed
        self.max_retained_failed = max_retained_failed
        self.clock = clock
        self.rate_limiter = rate_limiter or RateLimiter(max_starts=10, window_seconds=1.0, clock=clock)
        self.snapshots = snapshots if snapshots is not None else InMemorySnapshotStore()

        self._jobs: Dict[str, Job] = {}
        self._pending: List[str] = []  # queued job ids, FIFO
        self._in_flight: set = set()
        self._lock = threading.Lock()
        self._listeners: List[Callable[[], None]] = []
        # Finished job ids per terminal status, oldest first
        self._finished: Dict[JobStatus, Deque[str]] = {
            JobStatus.SENT: deque(),
            JobStatus.FAILED: deque(),
        }

    # ======================================================
    # WAKE SIGNAL
    # ======================================================

    def add_listener(self, callback: Callable[[], None]) -> None:
        """Register a callback fired whenever a job may have become dequeueable."""
        self._listeners.append(callback)

    def remove_listener(self, callback: Callable[[], None]) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    def _notify(self) -> None:
        for callback in list(self._listeners):
            callback()

    # ======================================================
    # INTERNAL HELPERS (caller holds the lock)
    # ======================================================

    def _require(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    def _persist(self, job: Job) -> None:
        try:
            self.snapshots.persist_job_snapshot(job.to_dict())
        except OSError as e:
            # In-memory state stays authoritative
            logger.error(f"Failed to persist snapshot for {job.id}: {e}")

    def _retire(self, job: Job) -> None:
        """Track a job that just reached sent/failed and evict the oldest beyond the limit."""
        if job.status == JobStatus.SENT:
            # Failed jobs keep their image so the caller can retry them
            job.payload = replace(job.payload, image=b"")
            limit = self.max_retained_completed
        else:
            limit = self.max_retained_failed

        finished = self._finished[job.status]
        finished.append(job.id)
        while len(finished) > limit:
            evicted = finished.popleft()
            self._jobs.pop(evicted, None)
            logger.debug(f"Dropped finished job {evicted} from memory")

    def _outstanding(self) -> int:
        return len(self._pending) + len(self._in_flight)

    # ======================================================
    # QUEUE API
    # ======================================================

    def enqueue(self, payload: JobPayload) -> str:
        """Create a queued job.

        Args:
            payload: Image bytes, MIME type and per-job options

        Returns:
            The new job id

        Raises:
            CapacityExceeded: If max_outstanding non-terminal jobs exist
        """
        with self._lock:
            outstanding = self._outstanding()
            if outstanding >= self.max_outstanding:
                raise CapacityExceeded(outstanding, self.max_outstanding)

            job_id = f"job_{uuid.uuid4().hex[:12]}"
            job = Job(id=job_id, payload=payload)
            self._jobs[job_id] = job
            self._pending.append(job_id)
            self._persist(job)

        logger.info(f"Enqueued {job_id} ({payload.mime_type}, {len(payload.image)} bytes)")
        self._notify()
        return job_id

    def dequeue_next(self) -> Optional[Job]:
        """Claim the oldest eligible queued job.

        Returns:
            Snapshot of the claimed job (now extracting_text), or None when
            nothing is eligible or a concurrency/rate gate is saturated
        """
        with self._lock:
            if len(self._in_flight) >= self.max_concurrency:
                return None

            now = self.clock()
            job_id = next(
                (jid for jid in self._pending if self._jobs[jid].eligible_at <= now),
                None
            )
            if job_id is None:
                return None

            if not self.rate_limiter.try_acquire():
                logger.debug("Start rate limit reached")
                return None

            self._pending.remove(job_id)
            self._in_flight.add(job_id)
            job = self._jobs[job_id]
            job.status = JobStatus.EXTRACTING_TEXT
            job.progress = CLAIM_PROGRESS
            self._persist(job)
            snapshot = copy.deepcopy(job)

        logger.info(f"Claimed {job_id} (attempt {snapshot.attempt})")
        return snapshot

    def seconds_until_eligible(self) -> Optional[float]:
        """Time until dequeue_next could succeed without another notification.

        Returns:
            0 if a job can be claimed now, a positive delay when waiting on
            backoff or the rate window, None when only a notification helps
        """
        with self._lock:
            if not self._pending or len(self._in_flight) >= self.max_concurrency:
                return None
            now = self.clock()
            earliest = min(self._jobs[jid].eligible_at for jid in self._pending)
            backoff_wait = max(0.0, earliest - now)
            return max(backoff_wait, self.rate_limiter.seconds_until_available())

    # ======================================================
    # TRANSITIONS
    # ======================================================

    def update_status(
        self,
        job_id: str,
        status: JobStatus,
        progress: int,
        contact: Optional[ContactRecord] = None,
        email: Optional[EmailContent] = None,
        delivery_id: Optional[str] = None
    ) -> None:
        """Apply a forward transition of an in-flight job.

        Raises:
            StaleTransition: On a backwards status, decreasing progress, a
                job that is not in flight, or a target of queued/failed
            JobNotFound: Unknown job id
        """
        status = JobStatus(status)
        if not 0 <= progress <= 100:
            raise ValueError(f"progress out of range: {progress}")

        released = False
        with self._lock:
            job = self._require(job_id)
            current = job.status.value

            if status in (JobStatus.QUEUED, JobStatus.FAILED):
                raise StaleTransition(job_id, current, status.value, "reachable only via retry or failure")
            if not job.status.is_in_flight:
                raise StaleTransition(job_id, current, status.value, "job is not in flight")
            if status.order < job.status.order:
                raise StaleTransition(job_id, current, status.value, "status would move backwards")
            if progress < job.progress:
                raise StaleTransition(
                    job_id, current, status.value,
                    f"progress would decrease from {job.progress} to {progress}"
                )

            job.status = status
            job.progress = progress
            if contact is not None:
                job.contact = contact
            if email is not None:
                job.email = email
            if delivery_id is not None:
                job.delivery_id = delivery_id

            if status == JobStatus.SENT:
                job.completed_at = utc_now()
                job.error = None
                job.failed_stage = None
                self._in_flight.discard(job_id)
                released = True

            self._persist(job)
            if released:
                self._retire(job)

        logger.debug(f"{job_id} -> {status.value} ({progress}%)")
        if released:
            logger.info(f"Job {job_id} sent")
            self._notify()

    def record_failure(
        self,
        job_id: str,
        stage: str,
        error: str,
        retryable: bool = True
    ) -> RetryDecision:
        """Record a stage failure and decide between retry and give-up.

        The attempt counter is incremented first; the job is retried while
        it stays below max_attempts, becoming eligible again after
        ``backoff_base * 2 ** previous_attempt`` seconds.

        Args:
            job_id: The failing job
            stage: Stage the failure is attributed to
            error: Failure message
            retryable: False forces give-up (e.g. on a stale transition)

        Returns:
            RetryDecision.RETRY or RetryDecision.GIVE_UP
        """
        with self._lock:
            job = self._require(job_id)
            if not job.status.is_in_flight:
                raise StaleTransition(job_id, job.status.value, JobStatus.FAILED.value, "job is not in flight")

            previous_attempt = job.attempt
            job.attempt += 1
            job.failed_stage = stage
            self._in_flight.discard(job_id)

            if retryable and job.attempt < self.max_attempts:
                delay = backoff_delay(self.backoff_base, previous_attempt, self.backoff_max)
                job.status = JobStatus.QUEUED
                job.progress = 0
                job.clear_results()
                job.error = f"{stage}: {error}"
                job.eligible_at = self.clock() + delay
                self._pending.append(job_id)
                decision = RetryDecision.RETRY
                logger.warning(
                    f"Job {job_id} failed in {stage} (attempt {job.attempt}/{self.max_attempts}), "
                    f"retrying in {delay:.1f}s: {error}"
                )
            else:
                job.status = JobStatus.FAILED
                job.completed_at = utc_now()
                job.error = str(ExhaustedRetries(job.attempt, stage, error))
                decision = RetryDecision.GIVE_UP
                logger.error(f"Job {job_id} gave up: {job.error}")

            self._persist(job)
            if decision == RetryDecision.GIVE_UP:
                self._retire(job)

        self._notify()
        return decision

    def retry(self, job_id: str) -> None:
        """Caller-initiated retry of a failed job with a fresh attempt budget.

        Raises:
            StaleTransition: If the job is not failed, or its image was
                already dropped from memory
            JobNotFound: Unknown job id
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                data = self.snapshots.load_job_snapshot(job_id)
                if data is None:
                    raise JobNotFound(job_id)
                raise StaleTransition(job_id, data["status"], JobStatus.QUEUED.value, "job is no longer retained")
            if job.status != JobStatus.FAILED:
                raise StaleTransition(job_id, job.status.value, JobStatus.QUEUED.value, "only failed jobs can be retried")

            self._finished[JobStatus.FAILED].remove(job_id)
            stage = job.failed_stage
            job.status = JobStatus.QUEUED
            job.progress = 0
            job.attempt = 0
            job.completed_at = None
            job.eligible_at = 0.0
            job.failed_stage = None
            job.clear_results()
            self._pending.append(job_id)
            self._persist(job)

        suffix = f" after failing in {stage}" if stage else ""
        logger.info(f"Job {job_id} re-queued by caller{suffix}")
        self._notify()

    def cancel_if_queued(self, job_id: str) -> bool:
        """Cancel a job that no worker has claimed yet.

        Returns:
            True if the job was cancelled, False if it was claimed or finished
        """
        with self._lock:
            job = self._require(job_id)
            if job.status != JobStatus.QUEUED:
                return False

            self._pending.remove(job_id)
            job.status = JobStatus.FAILED
            job.error = "cancelled"
            job.completed_at = utc_now()
            self._persist(job)
            self._retire(job)

        logger.info(f"Job {job_id} cancelled before start")
        return True

    # ======================================================
    # READS
    # ======================================================

    def get_status(self, job_id: str) -> Job:
        """Snapshot of the latest committed state of a job."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is not None:
                return copy.deepcopy(job)

        data = self.snapshots.load_job_snapshot(job_id)
        if data is None:
            raise JobNotFound(job_id)
        return Job.from_dict(data)

    def in_flight_count(self) -> int:
        with self._lock:
            return len(self._in_flight)

    def stats(self) -> Dict[str, int]:
        """Queue counters by status."""
        with self._lock:
            counts = {status.value: 0 for status in JobStatus}
            for job in self._jobs.values():
                counts[job.status.value] += 1
            counts.update({
                "in_flight": len(self._in_flight),
                "total": len(self._jobs),
                "starts_in_window": self.rate_limiter.in_window(),
                "max_concurrency": self.max_concurrency,
                "max_outstanding": self.max_outstanding,
            })
            return counts
