from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class EncryptedField(BaseModel):
    """
    AES-256-GCM ciphertext of a single value, base64 encoded.

    ``nonce`` is generated per encryption. Records written before per-field
    nonces existed have none and decrypt with the configured legacy nonce.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    ciphertext: str
    auth_tag: str = Field(alias="authTag")
    nonce: Optional[str] = None


class ProcessedEmailRecord(BaseModel):
    """
    Document persisted per classified email. Never holds the message body;
    text-derived fields are stored encrypted, score and category in clear.
    """

    model_config = ConfigDict(populate_by_name=True)

    provider: str = "gmail"
    email_owner: str = Field(alias="emailOwner")
    email_id: str = Field(alias="emailId")
    date_received: datetime = Field(alias="dateReceived")
    processed_at: datetime = Field(alias="processedAt")
    read: bool = False

    urgency_score: int = Field(alias="urgencyScore")
    classification: str

    sender: EncryptedField
    subject: EncryptedField
    recipients: EncryptedField
    email_url: EncryptedField = Field(alias="emailUrl")
    unsubscribe_link: Optional[EncryptedField] = Field(None, alias="unsubscribeLink")
    summary: EncryptedField
    action: EncryptedField
    keywords: EncryptedField
    extracted_entities: EncryptedField = Field(alias="extractedEntities")
    attachments: Optional[EncryptedField] = None

    def to_document(self) -> dict:
        return self.model_dump(by_alias=True)
