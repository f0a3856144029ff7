import json
import math
import re
from datetime import timedelta
from email.utils import getaddresses, parsedate_to_datetime
from typing import List, Optional, Set, Tuple

import httplib2
from bs4 import BeautifulSoup
from google.auth.exceptions import RefreshError, TransportError
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from email_precis.config import CFG
from email_precis.errors import (
    MissingCredentialError,
    NotFoundError,
    PrecisError,
    ProviderRequestError,
    RateLimitError,
    TransientProviderError,
    UnprocessableEmailError,
)
from email_precis.models.gmail import (
    AttachmentBody,
    AttachmentDescriptor,
    AttachmentListing,
    EmailContent,
    EmailHeaders,
    EmailMessage,
    MessagePart,
)
from email_precis.models.precis import ClassificationRequest
from email_precis.services.walker import decode_base64url, extract, find_part
from email_precis.utils.logger import get_logger

logger = get_logger("gmail")

SCOPES = ["https://www.googleapis.com/auth/gmail.readonly"]

URL_PATTERN = re.compile(r"https?://[^\s]+")
UNSUBSCRIBE_HREF = re.compile(r"\b(?:unsubscribe|optout|remove)\b", re.IGNORECASE)
UNSUBSCRIBE_TEXT = re.compile(r"unsubscribe|opt ?out|remove me|manage preferences", re.IGNORECASE)

#######################
### Setup Functions ###
#######################


def get_gmail_service(access_token: str) -> build:
    """
    Builds a Gmail API client acting with the user's OAuth access token.
    """
    credentials = Credentials(token=access_token, scopes=SCOPES)
    return build("gmail", "v1", credentials=credentials, cache_discovery=False)


RATE_LIMIT_REASONS = {"rateLimitExceeded", "userRateLimitExceeded", "dailyLimitExceeded", "quotaExceeded"}


def _error_reasons(error: HttpError) -> Set[str]:
    """
    Collects the ``reason`` codes of a Gmail error body. Gmail reports quota
    exhaustion as a 403 that is only told apart from an auth failure by these.
    """
    try:
        body = json.loads(error.content.decode("utf-8"))
        details = body["error"].get("errors", [])
    except (AttributeError, KeyError, TypeError, UnicodeDecodeError, ValueError):
        return set()
    return {d["reason"] for d in details if isinstance(d, dict) and d.get("reason")}


def _retry_after(error: HttpError) -> Optional[timedelta]:
    value = error.resp.get("retry-after")
    if value and value.isdigit():
        return timedelta(seconds=int(value))
    return None


def _translate_http_error(error: HttpError, what: str) -> PrecisError:
    status = int(error.resp.status)
    if status == 404:
        return NotFoundError(f"{what} not found")
    if status == 429 or (status == 403 and _error_reasons(error) & RATE_LIMIT_REASONS):
        return RateLimitError(
            f"Mail provider rate limit reached while fetching {what}",
            retry_after=_retry_after(error),
            status=status,
        )
    if status in (401, 403):
        return MissingCredentialError(f"Mail provider rejected the access token ({status})")
    if status >= 500:
        return TransientProviderError(f"Mail provider error {status} while fetching {what}", status=status)
    return ProviderRequestError(f"Mail provider rejected the request for {what} ({status})", status=status)


def _execute(request, what: str) -> dict:
    """
    Runs a Gmail API request, translating transport errors into the
    pipeline's error taxonomy.
    """
    try:
        return request.execute()
    except HttpError as e:
        logger.warning(f"Gmail API error for {what}: {e}")
        raise _translate_http_error(e, what) from e
    except RefreshError as e:
        logger.warning(f"Access token expired for {what}: {e}")
        raise MissingCredentialError("Mail provider access token expired") from e
    except (httplib2.HttpLib2Error, TransportError, OSError) as e:
        # OSError covers socket timeouts, refused connections and SSL failures
        logger.warning(f"Gmail API unreachable for {what}: {e}")
        raise TransientProviderError(f"Mail provider unreachable while fetching {what}") from e


#####################
### Email Reading ###
#####################


def _unsubscribe_from_header(value: str) -> str:
    match = re.search(r"<(https?://[^>]+)>", value)
    if match:
        return match.group(1)
    match = re.search(r"<(mailto:[^>]+)>", value)
    if match:
        return match.group(1)
    return value.strip()


def _parse_headers(headers: List[dict]) -> EmailHeaders:
    """
    Iterate over email headers and assign the required ones to an 'EmailHeaders' instance.
    """
    header_data = {}
    addresses = []

    for header in headers:
        name = header["name"].lower()
        value = header["value"]

        if name == "subject" and value.strip():
            header_data["subject"] = value
        elif name == "from" and value.strip():
            header_data["sender"] = value
        elif name in ("to", "cc", "bcc"):
            addresses.append(value)
        elif name == "date":
            try:
                header_data["date"] = parsedate_to_datetime(value)
            except (TypeError, ValueError):
                logger.warning(f"Unparsable Date header '{value}'")
        elif name == "list-unsubscribe" and value.strip():
            header_data["unsubscribe_link"] = _unsubscribe_from_header(value)

    recipients = []
    for display_name, address in getaddresses(addresses):
        recipient = address or display_name
        if recipient and recipient not in recipients:
            recipients.append(recipient)
    header_data["recipients"] = recipients

    return EmailHeaders(**header_data)


def fetch_message(service: build, email_id: str) -> EmailMessage:
    """
    Fetches the full message (headers, content tree and preview) by id.
    """
    message = _execute(
        service.users().messages().get(userId="me", id=email_id, format="full"),
        f"message {email_id}",
    )
    payload = message.get("payload") or {}

    return EmailMessage(
        id=message.get("id", email_id),
        thread_id=message.get("threadId", ""),
        snippet=message.get("snippet", ""),
        headers=_parse_headers(payload.get("headers", [])),
        payload=MessagePart.model_validate(payload),
    )


def list_recent_message_ids(
    service: build,
    page_token: Optional[str] = None,
    page_size: int = CFG.sync_page_size,
) -> Tuple[List[str], Optional[str]]:
    """
    One page of ids of recent messages (``CFG.sync_query``). Returns the ids
    and the token of the next page, or None on the last page.
    """
    params = {"userId": "me", "q": CFG.sync_query, "maxResults": page_size}
    if page_token:
        params["pageToken"] = page_token
    response = _execute(service.users().messages().list(**params), "recent messages")

    ids = [m["id"] for m in response.get("messages", []) if m.get("id")]
    return ids, response.get("nextPageToken")


def fetch_attachment(service: build, email_id: str, attachment_ref: str) -> bytes:
    """
    Second-tier fetch for attachments stored by reference.
    """
    attachment = _execute(
        service.users().messages().attachments().get(userId="me", messageId=email_id, id=attachment_ref),
        f"attachment {attachment_ref} of message {email_id}",
    )
    data = attachment.get("data")
    if not data:
        raise NotFoundError(f"Attachment {attachment_ref} of message {email_id} has no data")
    return decode_base64url(data)


def download_attachment(service: build, email_id: str, part_id: str) -> AttachmentBody:
    """
    Resolves one part of a message and returns its decoded bytes, fetching
    by reference when the part is not inline.
    """
    message = fetch_message(service, email_id)
    part = find_part(message.payload, part_id)
    if part is None:
        raise NotFoundError(f"Part {part_id} not found in message {email_id}")

    if part.data:
        data = decode_base64url(part.data)
    elif part.attachment_ref:
        logger.info(f"Downloading attachment {part.filename} of message {email_id}...")
        data = fetch_attachment(service, email_id, part.attachment_ref)
    else:
        raise NotFoundError(f"Part {part_id} of message {email_id} has no data")

    return AttachmentBody(
        filename=part.filename or f"attachment-{part_id}",
        mime_type=part.mime_type or "application/octet-stream",
        data=data,
    )


def get_email_content(service: build, email_id: str) -> EmailContent:
    message = fetch_message(service, email_id)
    body, attachments = extract(message.payload, preview=message.snippet)

    return EmailContent(
        id=message.id,
        subject=message.headers.subject,
        sender=message.headers.sender,
        body=body,
        attachments=[
            AttachmentListing(
                filename=a.filename,
                mime_type=a.mime_type,
                part_id=a.part_id,
                download_path=f"/v1/emails/{message.id}/attachments/{a.part_id}",
            )
            for a in attachments
        ],
    )


############################
### Classification input ###
############################


def find_unsubscribe_link(body: str) -> Optional[str]:
    """
    Looks for an anchor whose href points at an unsubscribe endpoint and
    whose text reads like an unsubscribe link.
    """
    soup = BeautifulSoup(body, "html.parser")
    for anchor in soup.find_all("a", href=True):
        href = anchor["href"]
        if not href.lower().startswith(("http://", "https://")):
            continue
        if UNSUBSCRIBE_HREF.search(href) and UNSUBSCRIBE_TEXT.search(anchor.get_text(" ")):
            return href
    return None


def clean_body(body: str) -> str:
    """
    Reduces HTML to text and masks URLs before the body goes to the provider.
    """
    soup = BeautifulSoup(body, "html.parser")
    if soup.find() is not None:
        for tag in soup(["script", "style", "head"]):
            tag.decompose()
        body = soup.get_text(separator=" ")
        body = re.sub(r"[ \t]+", " ", body)
        body = re.sub(r"\s*\n\s*", "\n", body)
    return URL_PATTERN.sub("[Link Removed]", body).strip()


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / 4)


def build_classification_request(
    message: EmailMessage,
    body: str,
    attachments: List[AttachmentDescriptor],
) -> Tuple[ClassificationRequest, Optional[str]]:
    """
    Assembles the prompt input for one email. Returns the request and the
    unsubscribe link, if any was found.

    Raises UnprocessableEmailError when the cleaned body is over the token budget.
    """
    unsubscribe_link = message.headers.unsubscribe_link or find_unsubscribe_link(body)
    text = clean_body(body)

    token_count = estimate_tokens(text)
    if token_count > CFG.max_body_tokens:
        raise UnprocessableEmailError(
            f"Email {message.id} exceeds the token limit of {CFG.max_body_tokens} (estimated {token_count})"
        )

    request = ClassificationRequest(
        sender=message.headers.sender,
        recipients=message.headers.recipients,
        unsubscribe_link_present=unsubscribe_link is not None,
        attachment_names=[a.filename for a in attachments],
        formatted_date=message.headers.formatted_date,
        body=text,
    )
    return request, unsubscribe_link
