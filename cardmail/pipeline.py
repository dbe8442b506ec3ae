"""
CardMail Pipeline

Caller-facing facade over the job store, orchestrator and worker pool:

1. submit() validates and enqueues a card image
2. Workers run OCR -> parsing -> composition -> dispatch per job
3. get_status() reports progress; retry() and cancel_if_queued() steer jobs

build_pipeline() wires everything from a Config class. BackgroundRunner
lets synchronous callers (Flask) drive the asyncio side.
"""

import asyncio
import logging
import threading
from typing import Any, AsyncIterator, Coroutine, Dict, Iterator, Optional, TypeVar, Union

from .composer import EmailComposer, EmailGenerator
from .dispatcher import Dispatcher, GmailDispatcher
from .errors import ProviderError, ValidationError
from .job_store import JobStore
from .llm import DEFAULT_MODEL, GeminiContactExtractor, GeminiEmailGenerator, create_client
from .models import (
    ComposeOptions,
    ContactRecord,
    EmailContent,
    JobPayload,
    Language,
    PartialEmail,
    SenderIdentity,
    Tone,
)
from .ocr import EasyOCRExtractor, FallbackTextExtractor, TextExtractor
from .orchestrator import PipelineOrchestrator
from .parser import ContactExtractor, StructuredParser
from .scheduler import RateLimiter
from .storage import InMemorySnapshotStore, JsonSnapshotStore, SnapshotStore
from .vlm_ocr import GeminiOCR
from .worker import WorkerPool

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CardMailPipeline:
    """Business card to follow-up email pipeline."""

    def __init__(
        self,
        store: JobStore,
        orchestrator: PipelineOrchestrator,
        workers: Optional[WorkerPool] = None
    ):
        self.store = store
        self.orchestrator = orchestrator
        self.workers = workers or WorkerPool(store, orchestrator)

    @property
    def parser(self) -> StructuredParser:
        return self.orchestrator.parser

    @property
    def composer(self) -> EmailComposer:
        return self.orchestrator.composer

    # ======================================================
    # LIFECYCLE
    # ======================================================

    async def start(self) -> None:
        await self.workers.start()

    async def stop(self) -> None:
        await self.workers.stop()
        # Snapshot writes queued by the last transitions land before shutdown returns
        await asyncio.to_thread(self.store.snapshots.flush)

    # ======================================================
    # JOB API
    # ======================================================

    def submit(
        self,
        image: bytes,
        mime_type: str,
        sender: Optional[SenderIdentity] = None,
        options: Optional[ComposeOptions] = None
    ) -> str:
        """
        Queue a business card image for processing.

        Args:
            image: Encoded image bytes
            mime_type: Image MIME type (image/*)
            sender: Identity and credential used to send the email
            options: Tone, language, custom message and overrides

        Returns:
            Job id

        Raises:
            ValidationError: Empty image or non-image MIME type
            CapacityExceeded: Too many outstanding jobs
        """
        if not image:
            raise ValidationError("Empty image")
        if not mime_type or not mime_type.startswith("image/"):
            raise ValidationError(f"Unsupported MIME type: {mime_type}")

        return self.store.enqueue(JobPayload(
            image=image,
            mime_type=mime_type,
            sender=sender,
            options=options
        ))

    def get_status(self, job_id: str) -> Dict[str, Any]:
        return self.store.get_status(job_id).to_dict()

    def retry(self, job_id: str) -> None:
        self.store.retry(job_id)

    def cancel_if_queued(self, job_id: str) -> bool:
        return self.store.cancel_if_queued(job_id)

    async def wait_for(
        self,
        job_id: str,
        timeout: Optional[float] = None,
        poll_interval: float = 0.05
    ) -> Dict[str, Any]:
        """Poll until the job reaches sent or failed, then return its snapshot."""
        async def _poll() -> Dict[str, Any]:
            while True:
                job = self.store.get_status(job_id)
                if job.status.is_terminal:
                    return job.to_dict()
                await asyncio.sleep(poll_interval)

        return await asyncio.wait_for(_poll(), timeout=timeout)

    # ======================================================
    # STANDALONE STAGES
    # ======================================================

    async def parse_text(self, raw_text: str, language_hint: str = "auto") -> ContactRecord:
        return await self.parser.parse(raw_text, language_hint)

    async def compose(
        self,
        contact: ContactRecord,
        options: Optional[ComposeOptions] = None,
        sender: Optional[SenderIdentity] = None
    ) -> EmailContent:
        return await self.composer.compose(
            contact, options or self.orchestrator.default_options, sender
        )

    def stream_email(
        self,
        contact: ContactRecord,
        options: Optional[ComposeOptions] = None,
        sender: Optional[SenderIdentity] = None
    ) -> AsyncIterator[Union[PartialEmail, EmailContent]]:
        return self.composer.stream(
            contact, options or self.orchestrator.default_options, sender
        )

    def get_info(self) -> Dict[str, Any]:
        """Pipeline configuration and queue counters."""
        return {
            "workers": self.workers.concurrency,
            "workers_running": self.workers.running,
            "max_attempts": self.store.max_attempts,
            "rate_limit": {
                "max_starts": self.store.rate_limiter.max_starts,
                "window_seconds": self.store.rate_limiter.window_seconds,
            },
            "retention": {
                "completed": self.store.max_retained_completed,
                "failed": self.store.max_retained_failed,
            },
            "ai_parsing": self.parser.ai_extractor is not None,
            "ai_composition": self.composer.generator is not None,
            "queue": self.store.stats(),
        }


# =========================
# FACTORY
# =========================

def build_pipeline(
    config,
    extractor: Optional[TextExtractor] = None,
    contact_extractor: Optional[ContactExtractor] = None,
    generator: Optional[EmailGenerator] = None,
    dispatcher: Optional[Dispatcher] = None,
    snapshots: Optional[SnapshotStore] = None
) -> CardMailPipeline:
    """
    Construct the store, providers, orchestrator and worker pool once.

    Args:
        config: Config class (see config.py)
        extractor, contact_extractor, generator, dispatcher, snapshots:
            Replace the providers built from config

    Returns:
        A pipeline whose workers are not yet started
    """
    timeout = config.PROVIDER_TIMEOUT_SECONDS

    if snapshots is None:
        snapshots = JsonSnapshotStore(config.SNAPSHOT_FOLDER) if config.SNAPSHOT_FOLDER else InMemorySnapshotStore()

    store = JobStore(
        max_concurrency=config.WORKER_CONCURRENCY,
        rate_limiter=RateLimiter(config.RATE_LIMIT_MAX_STARTS, config.RATE_LIMIT_WINDOW_SECONDS),
        max_attempts=config.MAX_ATTEMPTS,
        backoff_base=config.BACKOFF_BASE_SECONDS,
        backoff_max=config.BACKOFF_MAX_SECONDS,
        max_outstanding=config.MAX_OUTSTANDING_JOBS,
        max_retained_completed=config.MAX_RETAINED_COMPLETED,
        max_retained_failed=config.MAX_RETAINED_FAILED,
        snapshots=snapshots
    )

    client = None
    if extractor is None or contact_extractor is None or generator is None:
        try:
            client = create_client(config.GOOGLE_API_KEY)
        except ProviderError as e:
            logger.warning(f"Gemini not configured, running without AI providers: {e}")

    model = config.GEMINI_MODEL or DEFAULT_MODEL

    if extractor is None:
        local = EasyOCRExtractor(languages=config.OCR_LANGUAGES, gpu=config.OCR_GPU) \
            if config.USE_LOCAL_OCR_FALLBACK or client is None else None
        if client is not None:
            extractor = FallbackTextExtractor(GeminiOCR(client, model), local)
        else:
            extractor = FallbackTextExtractor(local)

    if contact_extractor is None and client is not None:
        contact_extractor = GeminiContactExtractor(client, model)
    if generator is None and client is not None:
        generator = GeminiEmailGenerator(client, model)

    default_sender = SenderIdentity(
        name=config.SENDER_NAME or "",
        company=config.SENDER_COMPANY
    ) if config.SENDER_NAME else None

    orchestrator = PipelineOrchestrator(
        store=store,
        extractor=extractor,
        parser=StructuredParser(contact_extractor, ai_timeout=timeout),
        composer=EmailComposer(generator, ai_timeout=timeout, default_sender=default_sender),
        dispatcher=dispatcher or GmailDispatcher(api_url=config.GMAIL_API_URL, timeout=timeout),
        provider_timeout=timeout,
        default_options=ComposeOptions(
            tone=Tone(config.DEFAULT_TONE),
            language=Language.parse(config.DEFAULT_LANGUAGE)
        ),
        default_sender=default_sender
    )

    pipeline = CardMailPipeline(
        store, orchestrator, WorkerPool(store, orchestrator, config.WORKER_CONCURRENCY)
    )
    logger.info(
        f"Pipeline built: {config.WORKER_CONCURRENCY} workers, "
        f"AI {'enabled' if client is not None or generator is not None else 'disabled'}"
    )
    return pipeline


# =========================
# SYNC BRIDGE
# =========================

class BackgroundRunner:
    """Event loop on a daemon thread for calling async code from sync code."""

    def __init__(self):
        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self.loop = asyncio.new_event_loop()
        ready = threading.Event()

        def _run():
            asyncio.set_event_loop(self.loop)
            self.loop.call_soon(ready.set)
            self.loop.run_forever()

        self._thread = threading.Thread(target=_run, name="cardmail-loop", daemon=True)
        self._thread.start()
        ready.wait()

    def run(self, coro: Coroutine[Any, Any, T], timeout: Optional[float] = None) -> T:
        """Run a coroutine on the loop thread and block for its result."""
        return asyncio.run_coroutine_threadsafe(coro, self.loop).result(timeout)

    def iterate(self, agen: AsyncIterator[T], timeout: Optional[float] = None) -> Iterator[T]:
        """Drive an async iterator from the calling thread."""
        async def _next():
            return await agen.__anext__()

        while True:
            try:
                item = self.run(_next(), timeout)
            except StopAsyncIteration:
                return
            yield item

    def stop(self) -> None:
        if not self.running:
            return
        self.loop.call_soon_threadsafe(self.loop.stop)
        self._thread.join()
        self.loop.close()
        self._thread = None
