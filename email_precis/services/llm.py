import asyncio
import re
from datetime import timedelta
from typing import Optional, Tuple

from google.api_core import exceptions as google_exceptions
from langchain_core.messages import AIMessage, HumanMessage
from langchain_google_vertexai import ChatVertexAI
from langsmith import traceable

from email_precis.config import CFG
from email_precis.errors import (
    ParseError,
    ProviderError,
    ProviderRequestError,
    RateLimitError,
    TransientProviderError,
)
from email_precis.utils.logger import get_logger

logger = get_logger("llm")

TRANSIENT_ERRORS = (
    google_exceptions.ServiceUnavailable,
    google_exceptions.InternalServerError,
    google_exceptions.DeadlineExceeded,
    google_exceptions.BadGateway,
    google_exceptions.GatewayTimeout,
)
RATE_LIMIT_ERRORS = (
    google_exceptions.ResourceExhausted,
    google_exceptions.TooManyRequests,
)

DELAY_PATTERN = re.compile(r"retry(?:Delay)?[^0-9]{0,12}(\d+(?:\.\d+)?)\s*s", re.IGNORECASE)

llm: Optional[ChatVertexAI] = None


def get_llm() -> ChatVertexAI:
    global llm
    if llm is None:
        # Backoff is owned by the processing queue. SDK retries (off by default) run inside each attempt
        llm = ChatVertexAI(
            project=CFG.project_id,
            location=CFG.region,
            model=CFG.model_name,
            temperature=CFG.temperature,
            max_retries=CFG.llm_max_retries,
        )
    return llm


def _parse_delay(value) -> Optional[timedelta]:
    if value is None:
        return None
    if hasattr(value, "seconds"):
        return timedelta(seconds=value.seconds, microseconds=getattr(value, "nanos", 0) // 1000)
    match = re.fullmatch(r"\s*(\d+(?:\.\d+)?)s?\s*", str(value))
    return timedelta(seconds=float(match.group(1))) if match else None


def _quota_details(error: google_exceptions.GoogleAPICallError) -> Tuple[Optional[timedelta], Optional[str], Optional[str]]:
    """
    Pulls the retry delay and the violated quota out of a rate-limit error.
    Details arrive either as decoded JSON dicts or as protobuf messages.
    """
    retry_after = None
    quota_metric = None
    quota_value = None

    for detail in getattr(error, "details", None) or []:
        if isinstance(detail, dict):
            kind = detail.get("@type", "")
            if kind.endswith("RetryInfo"):
                retry_after = _parse_delay(detail.get("retryDelay"))
            elif kind.endswith("QuotaFailure"):
                for violation in detail.get("violations", []):
                    quota_metric = violation.get("quotaMetric") or violation.get("subject")
                    quota_value = violation.get("quotaValue")
                    break
        elif hasattr(detail, "retry_delay"):
            retry_after = _parse_delay(detail.retry_delay)
        elif hasattr(detail, "violations"):
            for violation in detail.violations:
                quota_metric = getattr(violation, "subject", None) or None
                quota_value = getattr(violation, "description", None) or None
                break

    if retry_after is None:
        match = DELAY_PATTERN.search(str(error))
        if match:
            retry_after = timedelta(seconds=float(match.group(1)))

    return retry_after, quota_metric, quota_value


def translate_error(error: Exception) -> ProviderError:
    """
    Maps a text-generation client exception onto the pipeline's taxonomy.
    """
    if isinstance(error, RATE_LIMIT_ERRORS):
        retry_after, quota_metric, quota_value = _quota_details(error)
        return RateLimitError(
            "Text-generation quota exhausted",
            retry_after=retry_after,
            quota_metric=quota_metric,
            quota_value=quota_value,
        )
    if isinstance(error, TRANSIENT_ERRORS) or isinstance(error, (asyncio.TimeoutError, ConnectionError)):
        return TransientProviderError(f"Text-generation provider unavailable: {error}", status=getattr(error, "code", None))
    if isinstance(error, google_exceptions.ClientError):
        return ProviderRequestError(f"Text-generation request rejected: {error}", status=getattr(error, "code", None))
    if isinstance(error, google_exceptions.GoogleAPICallError):
        return TransientProviderError(f"Text-generation provider error: {error}", status=getattr(error, "code", None))
    return ProviderRequestError(f"Text-generation call failed: {error}")


def _content_text(response: AIMessage) -> str:
    # Parse text response
    if type(response.content) is list:
        parts = []
        for chunk in response.content:
            if isinstance(chunk, dict):
                parts.append(chunk.get("text", ""))
            else:
                parts.append(str(chunk))
        return "".join(parts)
    return response.content or ""


@traceable(run_type="llm", name="Classify Email")
async def classify(prompt: str) -> str:
    """
    Sends the prompt and returns the raw reply text.

    Raises RateLimitError, TransientProviderError or ProviderRequestError
    for provider failures, and ParseError for an empty reply.
    """
    try:
        response: AIMessage = await get_llm().ainvoke([HumanMessage(content=prompt)])
    except (google_exceptions.GoogleAPICallError, asyncio.TimeoutError, ConnectionError) as e:
        translated = translate_error(e)
        logger.warning(f"Text-generation call failed: {type(translated).__name__}: {translated}")
        raise translated from e

    reply = _content_text(response).strip()
    if not reply:
        raise ParseError("Text-generation provider returned an empty reply", "")

    logger.debug(f"Provider reply: {reply[:50]}...")
    return reply
