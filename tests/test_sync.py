"""
Mailbox sync against a mocked Gmail list endpoint and a real queue.
"""
from unittest.mock import AsyncMock, MagicMock

import pytest

from email_precis.errors import MissingCredentialError
from email_precis.models.queue import JobState
from email_precis.processing.queue import ProcessingQueue
from email_precis.processing.sync import sync_recent_emails


def list_service(*pages):
    service = MagicMock()
    service.users.return_value.messages.return_value.list.return_value.execute.side_effect = list(pages)
    return service


@pytest.fixture
def store():
    store = AsyncMock()
    store.is_email_processed.side_effect = lambda user_id, email_id: email_id.startswith("done")
    return store


@pytest.fixture
def queue(clock):
    return ProcessingQueue(runner=AsyncMock(), clock=clock)


class TestSyncRecentEmails:
    async def test_pages_until_exhausted(self, store, queue):
        service = list_service(
            {"messages": [{"id": "a"}, {"id": "done-1"}], "nextPageToken": "p2"},
            {"messages": [{"id": "b"}]},
        )

        result = await sync_recent_emails(service, "u1", store, queue)

        assert result.listed == 3
        assert result.already_processed == 1
        assert result.accepted == ["a", "b"]
        assert queue.get_job("u1", "b").state is JobState.PENDING
        assert queue.get_job("u1", "done-1") is None
        calls = service.users.return_value.messages.return_value.list.call_args_list
        assert "pageToken" not in calls[0].kwargs
        assert calls[1].kwargs["pageToken"] == "p2"

    async def test_stops_at_page_limit(self, store, queue):
        service = list_service(
            {"messages": [{"id": "a"}], "nextPageToken": "p2"},
            {"messages": [{"id": "b"}], "nextPageToken": "p3"},
            {"messages": [{"id": "c"}]},
        )

        result = await sync_recent_emails(service, "u1", store, queue, max_pages=2)

        assert result.accepted == ["a", "b"]

    async def test_already_queued_reported_as_duplicate(self, store, queue):
        await queue.enqueue("u1", "a")
        service = list_service({"messages": [{"id": "a"}, {"id": "a"}, {"id": "b"}]})

        result = await sync_recent_emails(service, "u1", store, queue)

        assert result.listed == 2
        assert result.duplicates == ["a"]
        assert result.accepted == ["b"]

    async def test_empty_mailbox(self, store, queue):
        result = await sync_recent_emails(list_service({"resultSizeEstimate": 0}), "u1", store, queue)

        assert result.listed == 0
        assert result.accepted == []
        assert queue.stats().total == 0

    async def test_listing_errors_propagate(self, store, queue):
        service = MagicMock()
        service.users.return_value.messages.return_value.list.return_value.execute.side_effect = (
            MissingCredentialError("expired")
        )

        with pytest.raises(MissingCredentialError):
            await sync_recent_emails(service, "u1", store, queue)
