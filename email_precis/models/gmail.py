from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class MessagePart(BaseModel):
    """
    One node of a message's content tree, as returned by the Gmail API
    (``format=full``). The API nests ``data``/``attachmentId`` under ``body``;
    they are flattened here.
    """

    model_config = ConfigDict(populate_by_name=True)

    part_id: str = Field("", alias="partId")
    mime_type: str = Field("", alias="mimeType")
    filename: Optional[str] = None
    data: Optional[str] = None
    attachment_ref: Optional[str] = Field(None, alias="attachmentId")
    parts: List["MessagePart"] = []

    @model_validator(mode="before")
    @classmethod
    def _flatten_body(cls, value):
        if not isinstance(value, dict) or "body" not in value:
            return value
        value = dict(value)
        body = value.pop("body") or {}
        value.setdefault("data", body.get("data"))
        value.setdefault("attachmentId", body.get("attachmentId"))
        return value

    @model_validator(mode="after")
    def _blank_to_none(self):
        # The API sends filename="" for non-attachment parts
        if not self.filename:
            self.filename = None
        if not self.data:
            self.data = None
        if not self.attachment_ref:
            self.attachment_ref = None
        return self


class AttachmentDescriptor(BaseModel):
    """Attachment found by the tree walker. Never carries decoded bytes."""

    filename: str
    mime_type: str
    part_id: str
    data: Optional[str] = None
    attachment_ref: Optional[str] = None

    def metadata(self) -> dict:
        """Fields safe to persist (no inline data)."""
        return self.model_dump(exclude={"data"})


class EmailHeaders(BaseModel):
    """Represents the email headers used for classification."""

    subject: str = "No Subject"
    sender: str = "Unknown Sender"
    recipients: List[str] = []
    date: Optional[datetime] = None
    unsubscribe_link: Optional[str] = None

    @property
    def formatted_date(self) -> str:
        return self.date.date().isoformat() if self.date else "unknown date"


class EmailMessage(BaseModel):
    """Represents a fetched message: headers, content tree and provider preview."""

    id: str
    thread_id: str
    snippet: str = ""
    headers: EmailHeaders
    payload: MessagePart

    @property
    def email_url(self) -> str:
        return f"https://mail.google.com/mail/u/0/#inbox/{self.thread_id}"


class AttachmentBody(BaseModel):
    """Decoded attachment content returned by the download-on-demand path."""

    filename: str
    mime_type: str
    data: bytes


class AttachmentListing(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    filename: str
    mime_type: str = Field(alias="mimeType")
    part_id: str = Field(alias="partId")
    download_path: str = Field(alias="downloadPath")


class EmailContent(BaseModel):
    """Body and attachment listing of one email, without attachment bytes."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    subject: str
    sender: str
    body: str
    attachments: List[AttachmentListing] = []
