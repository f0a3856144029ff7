"""
Tests for the per-email graph and its queue runner, with all network
collaborators mocked.
"""
import json
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from email_precis.errors import MissingTokenError, ParseError, RateLimitError
from email_precis.models.queue import JobState, QueueJob
from email_precis.pipeline.graph import pipeline_executor
from email_precis.pipeline.state import PipelineServices
from email_precis.processing.queue import ProcessingQueue
from email_precis.processing.runner import PipelineRunner
from email_precis.services import gmail
from email_precis.services.credentials import CredentialGate


@pytest.fixture
def store():
    store = AsyncMock()
    store.is_email_processed.return_value = False
    return store


@pytest.fixture
def token_store(cipher):
    token_store = AsyncMock()
    token_store.get_access_token.return_value = cipher.encrypt("ya29.token")
    return token_store


@pytest.fixture
def fetch(gmail_message):
    api = MagicMock()
    api.users.return_value.messages.return_value.get.return_value.execute.return_value = gmail_message
    return MagicMock(side_effect=lambda token, email_id: gmail.fetch_message(api, email_id))


@pytest.fixture
def classify(scripted_reply):
    return AsyncMock(return_value=scripted_reply)


@pytest.fixture
def services(store, token_store, fetch, classify, cipher):
    return PipelineServices(
        store=store,
        gate=CredentialGate(token_store, cipher),
        fetch_message=fetch,
        classify=classify,
        cipher=cipher,
    )


async def run_pipeline(services, user_id="u1", email_id="m1"):
    return await pipeline_executor.ainvoke(
        {"user_id": user_id, "email_id": email_id},
        config={"configurable": {"services": services}},
    )


class TestPipelineGraph:
    """fetch -> classify -> persist"""

    async def test_processes_and_persists(self, services, store, fetch, classify):
        state = await run_pipeline(services)

        assert state["saved"] is True
        fetch.assert_called_once_with("ya29.token", "m1")
        classify.assert_awaited_once()
        prompt = classify.await_args.args[0]
        assert "Unsubscribe Link Present: Yes" in prompt
        assert "Attachment Names: invoice.pdf" in prompt
        assert "[Link Removed]" in prompt
        store.save_processed_email.assert_awaited_once()

    async def test_record_encrypts_personal_fields(self, services, store, cipher):
        await run_pipeline(services)

        record = store.save_processed_email.await_args.args[0]
        document = record.to_document()

        assert document["emailOwner"] == "u1"
        assert document["emailId"] == "m1"
        assert document["urgencyScore"] == 75
        assert document["classification"] == "Work-Related"
        assert cipher.decrypt(record.sender) == "Acme Billing <billing@acme.example>"
        assert cipher.decrypt(record.subject) == "Your May invoice"
        assert cipher.decrypt(record.summary) == "Pay invoice."
        assert cipher.decrypt(record.email_url) == "https://mail.google.com/mail/u/0/#inbox/t1"
        assert cipher.decrypt(record.unsubscribe_link) == "https://acme.example/unsubscribe?id=1"
        assert cipher.decrypt_json(record.keywords) == ["invoice", "payment"]
        assert cipher.decrypt_json(record.extracted_entities)["senderName"] == "Acme Billing"
        assert cipher.decrypt_json(record.attachments) == [
            {"filename": "invoice.pdf", "mime_type": "application/pdf", "part_id": "1", "attachment_ref": "A1"}
        ]

        flat = json.dumps(document, default=str)
        assert "Hello Jane" not in flat
        assert "Acme Billing" not in flat
        assert set(document["sender"]) == {"ciphertext", "authTag", "nonce"}

    async def test_already_processed_skips_work(self, services, store, fetch, classify):
        store.is_email_processed.return_value = True

        state = await run_pipeline(services)

        assert state["already_processed"] is True
        fetch.assert_not_called()
        classify.assert_not_awaited()
        store.save_processed_email.assert_not_awaited()

    async def test_parse_error_persists_nothing(self, services, store, classify):
        classify.return_value = "Summary: only one line"

        with pytest.raises(ParseError):
            await run_pipeline(services)

        store.save_processed_email.assert_not_awaited()

    async def test_missing_token(self, services, token_store, fetch):
        token_store.get_access_token.return_value = None

        with pytest.raises(MissingTokenError):
            await run_pipeline(services)

        fetch.assert_not_called()


class TestPipelineRunner:
    """Runner as seen by the queue"""

    async def test_reports_classifying_after_fetch(self, services):
        advance = AsyncMock()
        job = QueueJob(email_id="m1", user_id="u1", enqueued_at="2024-05-01T12:00:00Z")

        await PipelineRunner(services)(job, advance)

        advance.assert_awaited_once_with(JobState.CLASSIFYING)

    async def test_skipped_email_never_classifying(self, services, store):
        store.is_email_processed.return_value = True
        advance = AsyncMock()
        job = QueueJob(email_id="m1", user_id="u1", enqueued_at="2024-05-01T12:00:00Z")

        await PipelineRunner(services)(job, advance)

        advance.assert_not_awaited()

    async def test_queue_end_to_end(self, services, clock):
        queue = ProcessingQueue(runner=PipelineRunner(services), clock=clock)
        await queue.enqueue("u1", "m1")

        tasks = await queue.tick()
        await tasks[0]

        assert queue.get_job("u1", "m1").state is JobState.SUCCEEDED

    async def test_quota_from_provider_reaches_queue(self, services, classify, clock):
        classify.side_effect = RateLimitError("quota", retry_after=timedelta(seconds=30))
        queue = ProcessingQueue(runner=PipelineRunner(services), clock=clock)
        await queue.enqueue("u1", "m1")

        tasks = await queue.tick()
        await tasks[0]

        job = queue.get_job("u1", "m1")
        assert job.state is JobState.QUOTA_WAIT
        assert job.next_eligible_at == clock.now + timedelta(seconds=30)

    async def test_reauth_from_gate_reaches_queue(self, services, token_store, clock):
        token_store.get_access_token.return_value = None
        queue = ProcessingQueue(runner=PipelineRunner(services), clock=clock)
        await queue.enqueue("u1", "m1")

        tasks = await queue.tick()
        await tasks[0]

        job = queue.get_job("u1", "m1")
        assert job.state is JobState.FAILED
        assert job.needs_reauth is True
