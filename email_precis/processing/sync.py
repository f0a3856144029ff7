"""
Mailbox sync: lists the user's recent messages and queues those that have no
processed record yet.
"""

import asyncio

from email_precis.config import CFG
from email_precis.models.request import SyncResponse
from email_precis.pipeline.state import EmailStore
from email_precis.processing.queue import ProcessingQueue
from email_precis.services.gmail import list_recent_message_ids
from email_precis.utils.logger import get_logger

logger = get_logger("sync")


async def sync_recent_emails(
    service,
    user_id: str,
    store: EmailStore,
    queue: ProcessingQueue,
    max_pages: int = CFG.sync_max_pages,
    page_size: int = CFG.sync_page_size,
) -> SyncResponse:
    listed = []
    page_token = None
    for _ in range(max_pages):
        ids, page_token = await asyncio.to_thread(list_recent_message_ids, service, page_token, page_size)
        listed.extend(ids)
        if not page_token:
            break
    else:
        logger.info(f"Stopped listing after {max_pages} page(s) for user {user_id}")

    listed = list(dict.fromkeys(listed))
    fresh = [email_id for email_id in listed if not await store.is_email_processed(user_id, email_id)]
    outcome = await queue.enqueue_many(user_id, fresh)

    logger.info(
        f"Synced user {user_id}: {len(listed)} listed, {len(listed) - len(fresh)} already processed, "
        f"{len(outcome['accepted'])} queued"
    )
    return SyncResponse(
        listed=len(listed),
        already_processed=len(listed) - len(fresh),
        accepted=outcome["accepted"],
        rejected=outcome["rejected"],
        duplicates=outcome["duplicate"],
    )
