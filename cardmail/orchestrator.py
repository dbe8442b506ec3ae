"""
Pipeline orchestrator: drives one claimed job through every stage.

    extracting_text -> parsing -> composing -> sending -> sent

It is the only component that knows the stage sequence, and the single
place where stage errors are caught and handed to the JobStore.
"""

import asyncio
import logging
from typing import Awaitable, Optional, TypeVar

from .composer import EmailComposer
from .dispatcher import Dispatcher
from .errors import ProviderError, StaleTransition, ValidationError
from .job_store import JobStore
from .models import ComposeOptions, Job, JobStatus, RetryDecision, SenderIdentity
from .ocr import TextExtractor
from .parser import StructuredParser

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Progress checkpoints per stage
PROGRESS = {
    JobStatus.PARSING: 40,
    JobStatus.COMPOSING: 40,
    JobStatus.SENDING: 70,
    JobStatus.SENT: 100,
}


class PipelineOrchestrator:
    """Runs the stage sequence for jobs claimed from a JobStore."""

    def __init__(
        self,
        store: JobStore,
        extractor: TextExtractor,
        parser: StructuredParser,
        composer: EmailComposer,
        dispatcher: Dispatcher,
        provider_timeout: Optional[float] = 30.0,
        default_options: Optional[ComposeOptions] = None,
        default_sender: Optional[SenderIdentity] = None
    ):
        self.store = store
        self.extractor = extractor
        self.parser = parser
        self.composer = composer
        self.dispatcher = dispatcher
        self.provider_timeout = provider_timeout
        self.default_options = default_options or ComposeOptions()
        self.default_sender = default_sender

    async def _call(self, provider: str, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.provider_timeout)
        except asyncio.TimeoutError as e:
            raise ProviderError(provider, f"timed out after {self.provider_timeout}s") from e

    async def run(self, job: Job) -> Optional[RetryDecision]:
        """
        Process a job that dequeue_next has already moved to extracting_text.

        Args:
            job: Snapshot returned by JobStore.dequeue_next

        Returns:
            None when the job was sent, else the store's retry decision.
            Never raises for a stage failure.
        """
        payload = job.payload
        options = payload.options or self.default_options
        sender = payload.sender or self.default_sender
        stage = JobStatus.EXTRACTING_TEXT.value

        try:
            ocr = await self._call(
                "ocr", self.extractor.extract_text(payload.image, payload.mime_type)
            )
            logger.info(f"{job.id}: extracted text via {ocr.method} ({ocr.confidence:.2%})")
            self.store.update_status(job.id, JobStatus.PARSING, PROGRESS[JobStatus.PARSING])

            stage = JobStatus.PARSING.value
            contact = await self.parser.parse(ocr.text)
            if not contact.email:
                raise ValidationError("no recipient email address found on card")
            self.store.update_status(
                job.id, JobStatus.COMPOSING, PROGRESS[JobStatus.COMPOSING], contact=contact
            )

            stage = JobStatus.COMPOSING.value
            email = await self.composer.compose(contact, options, sender)
            self.store.update_status(
                job.id, JobStatus.SENDING, PROGRESS[JobStatus.SENDING], email=email
            )

            stage = JobStatus.SENDING.value
            receipt = await self._call(
                "dispatch",
                self.dispatcher.dispatch(
                    contact.email,
                    email.subject,
                    email.body,
                    sender.credential if sender else None
                )
            )
            self.store.update_status(
                job.id, JobStatus.SENT, PROGRESS[JobStatus.SENT], delivery_id=receipt.delivery_id
            )
            return None

        except StaleTransition as e:
            logger.exception(f"{job.id}: invalid transition during {stage}: {e}")
            return self._record(job.id, stage, str(e), retryable=False)
        except Exception as e:
            logger.error(f"{job.id}: {stage} failed: {e}")
            return self._record(job.id, stage, str(e))

    def _record(self, job_id: str, stage: str, error: str, retryable: bool = True) -> Optional[RetryDecision]:
        try:
            return self.store.record_failure(job_id, stage, error, retryable=retryable)
        except StaleTransition as e:
            # Job already left the in-flight states
            logger.error(f"{job_id}: could not record failure: {e}")
            return None
