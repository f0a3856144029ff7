import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, Literal

from langchain_core.runnables import RunnableConfig
from langsmith import traceable

from email_precis.errors import ParseError
from email_precis.models.storage import ProcessedEmailRecord
from email_precis.pipeline.state import PipelineServices, PipelineState
from email_precis.services.codec import build_prompt, parse_response
from email_precis.services.gmail import build_classification_request
from email_precis.services.walker import extract
from email_precis.utils.logger import get_logger

logger = get_logger("pipeline")


def _services(config: RunnableConfig) -> PipelineServices:
    services = (config or {}).get("configurable", {}).get("services")
    if services is None:
        raise ValueError("Pipeline config must include 'services' in 'configurable'")
    return services


def _require(state: PipelineState, key: str):
    value = state.get(key)
    if value is None:
        raise ValueError(f"PipelineState must include '{key}'")
    return value


@traceable(run_type="chain", name="Check Processed")
async def check_processed_node(state: PipelineState, config: RunnableConfig) -> Dict[str, Any]:
    """
    Skips the provider call entirely for emails that already have a record.
    """
    services = _services(config)
    processed = await services.store.is_email_processed(
        _require(state, "user_id"), _require(state, "email_id")
    )
    if processed:
        logger.info(f"Email {state['email_id']} already processed, skipping")
    return {"already_processed": processed}


@traceable(run_type="chain", name="Fetch Message")
async def fetch_message_node(state: PipelineState, config: RunnableConfig) -> Dict[str, Any]:
    """
    Resolves the access token, fetches the message and builds the
    classification request from its body and attachments.
    """
    services = _services(config)
    user_id = _require(state, "user_id")
    email_id = _require(state, "email_id")

    access_token = await services.gate.resolve_access_token(user_id)
    # The Gmail client is blocking
    message = await asyncio.to_thread(services.fetch_message, access_token, email_id)

    body, attachments = extract(message.payload, preview=message.snippet)
    request, unsubscribe_link = build_classification_request(message, body, attachments)

    logger.info(
        f"Fetched email {email_id}: {len(body)} body chars, {len(attachments)} attachment(s)"
    )
    return {
        "message": message,
        "attachments": attachments,
        "request": request,
        "unsubscribe_link": unsubscribe_link,
    }


@traceable(run_type="chain", name="Classify Email")
async def classify_email_node(state: PipelineState, config: RunnableConfig) -> Dict[str, Any]:
    services = _services(config)
    prompt = build_prompt(_require(state, "request"))
    raw_reply = await services.classify(prompt)

    try:
        result = parse_response(raw_reply)
    except ParseError as e:
        logger.error(f"Unparseable reply for email {state.get('email_id')}: {e}\n{e.raw_text}")
        raise

    logger.info(
        f"Classified email {state.get('email_id')}: {result.classification.value}, urgency {result.urgency_score}"
    )
    return {"result": result}


@traceable(run_type="chain", name="Persist Result")
async def persist_result_node(state: PipelineState, config: RunnableConfig) -> Dict[str, Any]:
    """
    Encrypts the personal fields and stores the processed email record.
    The message body itself is never persisted.
    """
    services = _services(config)
    cipher = services.cipher
    message = _require(state, "message")
    result = _require(state, "result")
    attachments = state.get("attachments") or []
    unsubscribe_link = state.get("unsubscribe_link")
    now = datetime.now(timezone.utc)

    record = ProcessedEmailRecord(
        email_owner=_require(state, "user_id"),
        email_id=_require(state, "email_id"),
        date_received=message.headers.date or now,
        processed_at=now,
        urgency_score=result.urgency_score,
        classification=result.classification.value,
        sender=cipher.encrypt(message.headers.sender),
        subject=cipher.encrypt(message.headers.subject),
        recipients=cipher.encrypt_json(message.headers.recipients),
        email_url=cipher.encrypt(message.email_url),
        unsubscribe_link=cipher.encrypt(unsubscribe_link) if unsubscribe_link else None,
        summary=cipher.encrypt(result.summary),
        action=cipher.encrypt(result.action),
        keywords=cipher.encrypt_json(result.keywords),
        extracted_entities=cipher.encrypt_json(
            result.extracted_entities.model_dump(mode="json", by_alias=True)
        ),
        attachments=cipher.encrypt_json([a.metadata() for a in attachments]) if attachments else None,
    )

    await services.store.save_processed_email(record)
    return {"saved": True}


def should_fetch_or_skip(state: PipelineState) -> Literal["fetch", "skip"]:
    """
    Routing node:
    - If a record already exists, end the graph.
    - Otherwise fetch the message.
    """
    if state.get("already_processed"):
        return "skip"

    return "fetch"
