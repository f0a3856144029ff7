from typing import Awaitable, Callable, List, Optional, Protocol, TypedDict

from email_precis.models.gmail import AttachmentDescriptor, EmailMessage
from email_precis.models.precis import ClassificationRequest, ClassificationResult
from email_precis.models.storage import ProcessedEmailRecord
from email_precis.services.credentials import CredentialGate
from email_precis.services.crypto import FieldCipher


class PipelineState(TypedDict, total=False):
    """
    Per-email pipeline state dictionary.

    - user_id / email_id: the job's dedup key
    - already_processed: a record for this email is already stored
    - message: the fetched `EmailMessage`
    - attachments: descriptors found by the tree walker
    - request: the `ClassificationRequest` built from the message
    - unsubscribe_link: header or body unsubscribe link, if any
    - result: the parsed `ClassificationResult`
    - saved: the record was written to the document store
    """

    user_id: str
    email_id: str
    already_processed: bool
    message: EmailMessage
    attachments: List[AttachmentDescriptor]
    request: ClassificationRequest
    unsubscribe_link: Optional[str]
    result: ClassificationResult
    saved: bool


class EmailStore(Protocol):
    async def is_email_processed(self, user_id: str, email_id: str) -> bool: ...

    async def save_processed_email(self, record: ProcessedEmailRecord) -> None: ...


class PipelineServices:
    """
    Collaborators the pipeline nodes call out to. Passed to the graph via
    ``config["configurable"]["services"]``.

    - store: document store for processed records
    - gate: resolves the user's mail access token
    - fetch_message: blocking ``(access_token, email_id) -> EmailMessage``
    - classify: ``async (prompt) -> raw reply text``
    - cipher: field cipher for the persisted record
    """

    def __init__(
        self,
        store: EmailStore,
        gate: CredentialGate,
        fetch_message: Callable[[str, str], EmailMessage],
        classify: Callable[[str], Awaitable[str]],
        cipher: FieldCipher,
    ):
        self.store = store
        self.gate = gate
        self.fetch_message = fetch_message
        self.classify = classify
        self.cipher = cipher
