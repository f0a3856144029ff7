from datetime import timedelta
from typing import Optional

from fastapi import Header, HTTPException

from email_precis.config import CFG
from email_precis.errors import (
    MissingCredentialError,
    NotFoundError,
    PrecisError,
    ProviderError,
    RateLimitError,
)
from email_precis.models.queue import QuotaNotice
from email_precis.pipeline.state import EmailStore
from email_precis.processing.queue import ProcessingQueue
from email_precis.processing.runner import get_queue
from email_precis.services.credentials import CredentialGate
from email_precis.services.firestore import get_firestore_service
from email_precis.utils.logger import logger

REAUTH_DETAIL = "Please reconnect your account to continue processing emails."


async def get_current_user(x_user_id: Optional[str] = Header(None)) -> str:
    """
    Caller identity as set by the session provider in front of the service.
    """
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Not authenticated")
    return x_user_id.strip()


def get_processing_queue() -> ProcessingQueue:
    return get_queue()


def get_credential_gate() -> CredentialGate:
    return CredentialGate(get_firestore_service())


def get_email_store() -> EmailStore:
    return get_firestore_service()


def to_http_exception(error: PrecisError) -> HTTPException:
    """
    Maps pipeline errors onto HTTP responses without leaking diagnostics.
    """
    if isinstance(error, MissingCredentialError):
        return HTTPException(status_code=401, detail=REAUTH_DETAIL)
    if isinstance(error, NotFoundError):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, RateLimitError):
        notice = QuotaNotice(
            message="Mail provider rate limit reached, please retry later.",
            retry_after=error.retry_after or timedelta(seconds=CFG.quota_base_delay),
            quota_limit=error.quota_limit,
            help_url=CFG.quota_help_url,
        )
        return HTTPException(status_code=429, detail=notice.model_dump(mode="json", by_alias=True))
    if isinstance(error, ProviderError):
        logger.error(f"Upstream provider failure: {error}")
        return HTTPException(status_code=502, detail="Upstream provider failure")

    logger.error(f"Request failed: {type(error).__name__}: {error}")
    return HTTPException(status_code=500, detail="Internal error")
