import asyncio
from urllib.parse import quote

from fastapi import APIRouter, Depends, Response

from email_precis.errors import PrecisError
from email_precis.services.credentials import CredentialGate
from email_precis.services.gmail import (
    download_attachment,
    get_email_content,
    get_gmail_service,
)
from email_precis.routes.dependencies import (
    get_credential_gate,
    get_current_user,
    to_http_exception,
)
from email_precis.utils.logger import logger


router = APIRouter(prefix="/emails")


@router.get("/{email_id}")
async def read_email(
    email_id: str,
    user_id: str = Depends(get_current_user),
    gate: CredentialGate = Depends(get_credential_gate),
):
    """
    Returns the body and attachment listing of one email, fetched live from
    the mailbox. Attachment bytes are only served by the download route.
    """
    try:
        access_token = await gate.resolve_access_token(user_id)
        service = get_gmail_service(access_token)
        content = await asyncio.to_thread(get_email_content, service, email_id)
    except PrecisError as e:
        raise to_http_exception(e)

    return content.model_dump(by_alias=True)


@router.get("/{email_id}/attachments/{part_id}")
async def read_attachment(
    email_id: str,
    part_id: str,
    user_id: str = Depends(get_current_user),
    gate: CredentialGate = Depends(get_credential_gate),
):
    try:
        access_token = await gate.resolve_access_token(user_id)
        service = get_gmail_service(access_token)
        attachment = await asyncio.to_thread(download_attachment, service, email_id, part_id)
    except PrecisError as e:
        raise to_http_exception(e)

    logger.info(f"Serving attachment {part_id} of email {email_id} ({len(attachment.data)} bytes)")
    return Response(
        content=attachment.data,
        media_type=attachment.mime_type,
        headers={"Content-Disposition": f"attachment; filename*=UTF-8''{quote(attachment.filename)}"},
    )
