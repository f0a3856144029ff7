from fastapi import APIRouter, Depends, HTTPException

from email_precis.errors import PrecisError
from email_precis.models.request import (
    EnqueueRequest,
    EnqueueResponse,
    QueueCounts,
    QueueStatusResponse,
    SyncResponse,
)
from email_precis.pipeline.state import EmailStore
from email_precis.processing.queue import ProcessingQueue
from email_precis.processing.sync import sync_recent_emails
from email_precis.routes.dependencies import (
    get_credential_gate,
    get_current_user,
    get_email_store,
    get_processing_queue,
    to_http_exception,
)
from email_precis.services.credentials import CredentialGate
from email_precis.services.gmail import get_gmail_service
from email_precis.utils.logger import logger


router = APIRouter(prefix="/queue")


@router.post("/emails")
async def enqueue_emails(
    request: EnqueueRequest,
    user_id: str = Depends(get_current_user),
    queue: ProcessingQueue = Depends(get_processing_queue),
):
    """
    Queues the caller's emails for classification. Emails already queued are
    reported as duplicates; emails over the queue capacity as rejected.
    """
    outcome = await queue.enqueue_many(user_id, request.email_ids)
    logger.info(
        f"User {user_id} enqueued {len(outcome['accepted'])} email(s), "
        f"{len(outcome['duplicate'])} duplicate(s), {len(outcome['rejected'])} rejected"
    )
    return EnqueueResponse(
        accepted=outcome["accepted"],
        rejected=outcome["rejected"],
        duplicates=outcome["duplicate"],
    )


@router.post("/sync")
async def sync_mailbox(
    user_id: str = Depends(get_current_user),
    gate: CredentialGate = Depends(get_credential_gate),
    store: EmailStore = Depends(get_email_store),
    queue: ProcessingQueue = Depends(get_processing_queue),
) -> SyncResponse:
    """
    Lists the caller's recent emails and queues the ones not processed yet.
    """
    try:
        access_token = await gate.resolve_access_token(user_id)
        service = get_gmail_service(access_token)
        return await sync_recent_emails(service, user_id, store, queue)
    except PrecisError as e:
        raise to_http_exception(e)


@router.get("/status")
async def queue_status(
    user_id: str = Depends(get_current_user),
    queue: ProcessingQueue = Depends(get_processing_queue),
) -> QueueStatusResponse:
    """
    Global queue statistics plus the latest quota notice, if processing is
    currently stalled on the provider's quota.
    """
    stats = queue.stats()
    return QueueStatusResponse(
        queue_stats=QueueCounts(total=stats.total, by_state=stats.by_state),
        is_active=stats.is_active,
        quota=queue.quota_notice,
        timestamp=stats.timestamp,
    )


@router.get("/emails/{email_id}")
async def job_status(
    email_id: str,
    user_id: str = Depends(get_current_user),
    queue: ProcessingQueue = Depends(get_processing_queue),
):
    job = queue.get_job(user_id, email_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"No job for email {email_id}")
    return job.public_view()
