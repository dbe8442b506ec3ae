"""
Tests for CardMailPipeline.

Tests the full pipeline: facade, worker pool and end-to-end scenarios.
"""

import asyncio

import pytest

from cardmail.errors import JobNotFound, StaleTransition, ValidationError
from cardmail.models import IN_FLIGHT_STATUSES, ComposeOptions, ContactRecord, EmailContent, Language, Tone
from cardmail.pipeline import BackgroundRunner, build_pipeline
from cardmail.storage import InMemorySnapshotStore
from config import TestingConfig

from tests.fakes import (
    SENDER,
    FakeContactExtractor,
    FakeDispatcher,
    FakeExtractor,
    FakeGenerator,
    make_pipeline,
)

IMAGE = b"\x89PNG fake card"
IN_FLIGHT = {status.value for status in IN_FLIGHT_STATUSES}


async def _wait_until(predicate, timeout=5.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


class TestSubmit:
    """Test cases for submit validation and status reads."""

    @pytest.fixture
    def pipeline(self):
        return make_pipeline()

    def test_submit_returns_job_id(self, pipeline):
        job_id = pipeline.submit(IMAGE, "image/png", sender=SENDER)

        status = pipeline.get_status(job_id)
        assert status["job_id"] == job_id
        assert status["status"] == "queued"
        assert status["progress"] == 0

    @pytest.mark.parametrize("image,mime_type", [
        (b"", "image/png"),
        (IMAGE, "application/pdf"),
        (IMAGE, ""),
    ])
    def test_submit_rejects_invalid_input(self, pipeline, image, mime_type):
        with pytest.raises(ValidationError):
            pipeline.submit(image, mime_type)

    def test_get_status_idempotent(self, pipeline):
        job_id = pipeline.submit(IMAGE, "image/png")

        assert pipeline.get_status(job_id) == pipeline.get_status(job_id)

    def test_unknown_job(self, pipeline):
        with pytest.raises(JobNotFound):
            pipeline.get_status("job_nope")

    def test_cancel_if_queued(self, pipeline):
        job_id = pipeline.submit(IMAGE, "image/png")

        assert pipeline.cancel_if_queued(job_id) is True
        assert pipeline.get_status(job_id)["error"] == "cancelled"
        assert pipeline.cancel_if_queued(job_id) is False

    def test_retry_requires_failed_job(self, pipeline):
        job_id = pipeline.submit(IMAGE, "image/png")

        with pytest.raises(StaleTransition):
            pipeline.retry(job_id)

    def test_get_info(self, pipeline):
        info = pipeline.get_info()

        assert info["workers"] == 2
        assert info["workers_running"] is False
        assert info["max_attempts"] == 3
        assert info["ai_parsing"] is False
        assert info["queue"]["total"] == 0


class TestEndToEnd:
    """Scenarios run through real worker tasks."""

    def test_card_to_sent(self):
        dispatcher = FakeDispatcher()
        pipeline = make_pipeline(dispatcher=dispatcher)

        async def scenario():
            await pipeline.start()
            try:
                job_id = pipeline.submit(IMAGE, "image/jpeg", sender=SENDER)
                return await pipeline.wait_for(job_id, timeout=5)
            finally:
                await pipeline.stop()

        status = asyncio.run(scenario())

        assert status["status"] == "sent"
        assert status["progress"] == 100
        assert status["attempt"] == 0
        assert status["contact"]["email"] == "taro@example.com"
        assert status["delivery_id"] == "msg_1"
        assert "error" not in status
        assert len(dispatcher.calls) == 1

    def test_dispatch_always_fails(self):
        """Every send errors: job fails with attempt == max_attempts."""
        dispatcher = FakeDispatcher(always_fail=True)
        pipeline = make_pipeline(dispatcher=dispatcher, max_attempts=3)

        async def scenario():
            await pipeline.start()
            try:
                job_id = pipeline.submit(IMAGE, "image/png", sender=SENDER)
                status = await pipeline.wait_for(job_id, timeout=5)
                # No further automatic retry once failed
                await asyncio.sleep(0.2)
                return status, pipeline.get_status(job_id)
            finally:
                await pipeline.stop()

        status, later = asyncio.run(scenario())

        assert status["status"] == "failed"
        assert status["attempt"] == 3
        assert status["error"] == "job failed after 3 attempts: sending: fake_mail: mail server unavailable"
        assert later == status
        assert len(dispatcher.calls) == 3

    def test_transient_failure_recovers(self):
        extractor = FakeExtractor(failures=2)
        pipeline = make_pipeline(extractor=extractor)

        async def scenario():
            await pipeline.start()
            try:
                job_id = pipeline.submit(IMAGE, "image/png", sender=SENDER)
                return await pipeline.wait_for(job_id, timeout=5)
            finally:
                await pipeline.stop()

        status = asyncio.run(scenario())

        assert status["status"] == "sent"
        assert status["attempt"] == 2
        assert extractor.calls == 3

    def test_concurrency_gate_with_twice_the_jobs(self):
        """2N jobs with limit N: exactly N in flight until the first completes."""
        limit = 2
        gate = asyncio.Event()
        dispatcher = FakeDispatcher(gate=gate)
        pipeline = make_pipeline(dispatcher=dispatcher, max_concurrency=limit, workers=2 * limit)

        async def scenario():
            await pipeline.start()
            try:
                ids = [pipeline.submit(IMAGE, "image/png", sender=SENDER) for _ in range(2 * limit)]
                await _wait_until(lambda: dispatcher.active == limit)
                await asyncio.sleep(0.1)

                snapshot = [pipeline.get_status(job_id)["status"] for job_id in ids]

                gate.set()
                final = [await pipeline.wait_for(job_id, timeout=5) for job_id in ids]
                return snapshot, final
            finally:
                await pipeline.stop()

        snapshot, final = asyncio.run(scenario())

        assert sum(status in IN_FLIGHT for status in snapshot) == limit
        assert snapshot.count("queued") == limit
        assert dispatcher.max_active == limit
        assert [status["status"] for status in final] == ["sent"] * (2 * limit)

    def test_progress_monotonic_and_reset_on_retry(self):
        snapshots = InMemorySnapshotStore()
        history = []
        original = snapshots.persist_job_snapshot

        def record(snapshot):
            history.append((snapshot["status"], snapshot["progress"]))
            original(snapshot)

        snapshots.persist_job_snapshot = record
        pipeline = make_pipeline(dispatcher=FakeDispatcher(failures=1), snapshots=snapshots)

        async def scenario():
            await pipeline.start()
            try:
                job_id = pipeline.submit(IMAGE, "image/png", sender=SENDER)
                return await pipeline.wait_for(job_id, timeout=5)
            finally:
                await pipeline.stop()

        status = asyncio.run(scenario())

        assert status["status"] == "sent"
        for (prev_status, prev_progress), (status_name, progress) in zip(history, history[1:]):
            if status_name == "queued":
                assert progress == 0
            else:
                assert progress >= prev_progress
        assert [entry for entry in history if entry[0] == "queued"] == [("queued", 0), ("queued", 0)]

    def test_caller_retry_after_failure(self):
        dispatcher = FakeDispatcher(failures=1)
        pipeline = make_pipeline(dispatcher=dispatcher, max_attempts=1)

        async def scenario():
            await pipeline.start()
            try:
                job_id = pipeline.submit(IMAGE, "image/png", sender=SENDER)
                failed = await pipeline.wait_for(job_id, timeout=5)
                pipeline.retry(job_id)
                sent = await pipeline.wait_for(job_id, timeout=5)
                return failed, sent
            finally:
                await pipeline.stop()

        failed, sent = asyncio.run(scenario())

        assert failed["status"] == "failed"
        assert failed["attempt"] == 1
        assert sent["status"] == "sent"
        assert sent["attempt"] == 0

    def test_wait_for_timeout(self):
        pipeline = make_pipeline()
        job_id = pipeline.submit(IMAGE, "image/png")

        with pytest.raises(asyncio.TimeoutError):
            asyncio.run(pipeline.wait_for(job_id, timeout=0.05))

    def test_finished_jobs_bounded_in_memory(self):
        pipeline = make_pipeline(max_retained_completed=5)

        async def scenario():
            await pipeline.start()
            try:
                ids = [pipeline.submit(IMAGE, "image/png", sender=SENDER) for _ in range(20)]
                return [await pipeline.wait_for(job_id, timeout=10) for job_id in ids]
            finally:
                await pipeline.stop()

        statuses = asyncio.run(scenario())

        retained = pipeline.store._jobs.values()
        assert [status["status"] for status in statuses] == ["sent"] * 20
        assert len(retained) == 5
        assert sum(len(job.payload.image) for job in retained) == 0


class TestStandaloneStages:
    """Test cases for parse_text, compose and stream_email."""

    def test_parse_text(self):
        pipeline = make_pipeline(contact_extractor=FakeContactExtractor(ContactRecord(name="Taro", confidence=0.2)))

        record = asyncio.run(pipeline.parse_text("Taro Yamada\nExample Corp\ntaro@example.com"))

        assert record.email == "taro@example.com"
        assert record.confidence == 0.6

    def test_compose_and_stream(self):
        generator = FakeGenerator(
            EmailContent(subject="Hi", body="Hello Taro", tone=Tone.CASUAL, language=Language.SECONDARY),
            deltas=["Subject: Hi\n---\n", "Hello Taro"]
        )
        pipeline = make_pipeline(generator=generator)
        options = ComposeOptions(tone=Tone.CASUAL, language=Language.SECONDARY)
        contact = ContactRecord(name="Taro", email="taro@example.com")

        async def scenario():
            composed = await pipeline.compose(contact, options)
            streamed = [item async for item in pipeline.stream_email(contact, options)]
            return composed, streamed

        composed, streamed = asyncio.run(scenario())

        assert composed.body == "Hello Taro"
        assert streamed[-1] == composed


class TestBuildPipeline:
    """Test cases for build_pipeline."""

    def test_builds_from_config_with_injected_providers(self):
        pipeline = build_pipeline(
            TestingConfig,
            extractor=FakeExtractor(),
            contact_extractor=FakeContactExtractor(ContactRecord(name="x", confidence=0.9)),
            generator=FakeGenerator(),
            dispatcher=FakeDispatcher()
        )

        info = pipeline.get_info()
        assert info["workers"] == TestingConfig.WORKER_CONCURRENCY
        assert info["max_attempts"] == TestingConfig.MAX_ATTEMPTS
        assert pipeline.store.max_retained_completed == TestingConfig.MAX_RETAINED_COMPLETED
        assert pipeline.store.max_retained_failed == TestingConfig.MAX_RETAINED_FAILED
        assert info["ai_parsing"] is True
        assert info["ai_composition"] is True
        assert pipeline.orchestrator.default_options.language == Language.PRIMARY


class TestBackgroundRunner:
    """Test cases for the sync bridge."""

    def test_run_and_iterate(self):
        runner = BackgroundRunner()
        runner.start()
        try:
            async def double(value):
                await asyncio.sleep(0)
                return value * 2

            async def count():
                for i in range(3):
                    yield i

            assert runner.run(double(21)) == 42
            assert list(runner.iterate(count())) == [0, 1, 2]
        finally:
            runner.stop()

        assert runner.running is False
