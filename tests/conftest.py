"""
Shared fixtures. Environment is set BEFORE any package import, since the
configuration is read when ``email_precis.config`` is first imported.
"""
import os

os.environ.setdefault("ENCRYPTION_KEY", "0123456789abcdef" * 4)
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("LANGSMITH_TRACING", "false")

import base64
from datetime import datetime, timedelta, timezone

import pytest

from email_precis.models.gmail import MessagePart
from email_precis.services.crypto import FieldCipher


SCRIPTED_REPLY = (
    "Summary: Pay invoice.\n"
    "Urgency Score: 75\n"
    "Action: Review invoice\n"
    "Classification: Work-Related\n"
    "Keywords: invoice, payment\n"
    'ExtractedEntities: {"senderName": "Acme Billing", "recipientNames": "Jane Doe", '
    '"subjectTerms": "invoice, May", "date": "2024-05-01", '
    '"attachmentNames": "invoice.pdf", "snippet": "Please find the May invoice attached."}'
)


def b64url(text: str) -> str:
    return base64.urlsafe_b64encode(text.encode("utf-8")).decode("ascii").rstrip("=")


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def encode():
    """base64url-encodes text the way Gmail does (no padding)."""
    return b64url


@pytest.fixture
def make_part():
    """Builds a MessagePart from Gmail-shaped keyword arguments."""

    def _make(part_id="0", mime_type="text/plain", text=None, filename="", attachment_id=None, parts=None):
        body = {}
        if text is not None:
            body["data"] = b64url(text)
        if attachment_id is not None:
            body["attachmentId"] = attachment_id
        return MessagePart.model_validate(
            {
                "partId": part_id,
                "mimeType": mime_type,
                "filename": filename,
                "body": body,
                "parts": parts or [],
            }
        )

    return _make


@pytest.fixture
def scripted_reply():
    return SCRIPTED_REPLY


@pytest.fixture
def cipher():
    return FieldCipher(os.urandom(32))


@pytest.fixture
def gmail_message():
    """Gmail ``users.messages.get(format=full)`` response with an attachment by reference."""
    return {
        "id": "m1",
        "threadId": "t1",
        "snippet": "Please find the May invoice attached.",
        "payload": {
            "partId": "",
            "mimeType": "multipart/mixed",
            "filename": "",
            "headers": [
                {"name": "From", "value": "Acme Billing <billing@acme.example>"},
                {"name": "To", "value": "Jane Doe <jane@example.com>, bob@example.com"},
                {"name": "Cc", "value": "jane@example.com"},
                {"name": "Subject", "value": "Your May invoice"},
                {"name": "Date", "value": "Wed, 01 May 2024 09:30:00 +0000"},
                {"name": "List-Unsubscribe", "value": "<mailto:u@acme.example>, <https://acme.example/unsubscribe?id=1>"},
            ],
            "body": {"size": 0},
            "parts": [
                {
                    "partId": "0",
                    "mimeType": "text/plain",
                    "filename": "",
                    "body": {"data": b64url("Hello Jane, your invoice is attached. See https://acme.example/pay")},
                },
                {
                    "partId": "1",
                    "mimeType": "application/pdf",
                    "filename": "invoice.pdf",
                    "body": {"attachmentId": "A1", "size": 52000},
                },
            ],
        },
    }
