import datetime as dt
from enum import Enum
from typing import List

from pydantic import BaseModel, ConfigDict, Field


class Classification(str, Enum):
    PROMOTIONAL = "Promotional"
    NOTIFICATION = "Notification"
    TRANSACTIONAL = "Transactional"
    PERSONAL = "Personal"
    WORK_RELATED = "Work-Related"
    SPAM = "Spam"


class ExtractedEntities(BaseModel):
    """Flat entity object the provider returns on the ExtractedEntities line."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    sender_name: str = Field(alias="senderName")
    recipient_names: List[str] = Field(alias="recipientNames")
    subject_terms: List[str] = Field(alias="subjectTerms")
    date: dt.date
    attachment_names: List[str] = Field(alias="attachmentNames")
    snippet: str


class ClassificationRequest(BaseModel):
    """Everything the prompt needs about one email. Built once, never stored."""

    model_config = ConfigDict(frozen=True)

    sender: str
    recipients: List[str] = []
    unsubscribe_link_present: bool = False
    attachment_names: List[str] = []
    formatted_date: str
    body: str


class ClassificationResult(BaseModel):
    """Parsed provider reply. All fields are required; partial records are rejected."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    summary: str
    urgency_score: int = Field(alias="urgencyScore", ge=1, le=100)
    action: str
    classification: Classification
    keywords: List[str]
    extracted_entities: ExtractedEntities = Field(alias="extractedEntities")
