"""
Prompt construction and reply parsing for email classification.

The provider replies in a fixed six-line text format (wire format version 1).
Everything that knows about that format lives in this module.
"""

import datetime as dt
import json
import re
from typing import Dict, List

from langchain_core.prompts import PromptTemplate
from pydantic import ValidationError

from email_precis.config import CFG
from email_precis.errors import ParseError
from email_precis.models.precis import (
    Classification,
    ClassificationRequest,
    ClassificationResult,
    ExtractedEntities,
)
from email_precis.utils.logger import logger
from email_precis.utils.utils import get_package_root

WIRE_FORMAT_VERSION = 1

SUMMARY = "Summary"
URGENCY = "Urgency Score"
ACTION = "Action"
CLASSIFICATION = "Classification"
KEYWORDS = "Keywords"
ENTITIES = "ExtractedEntities"
LABELS = (SUMMARY, URGENCY, ACTION, CLASSIFICATION, KEYWORDS, ENTITIES)

ENTITY_TEXT_FIELDS = ("senderName", "snippet")
ENTITY_LIST_FIELDS = ("recipientNames", "subjectTerms", "attachmentNames")

# Load Jinja2-templated prompt
with open(
    get_package_root(CFG.package_name) / CFG.prompt_path, "r", encoding="utf-8"
) as file:
    CLASSIFICATION_PROMPT = PromptTemplate(
        input_variables=[
            "sender",
            "recipients",
            "unsubscribe_link_present",
            "attachment_names",
            "formatted_date",
            "body",
        ],
        template=file.read(),
        template_format="jinja2",
    )


####################
### Prompt side ###
####################


def build_prompt(request: ClassificationRequest) -> str:
    """
    Renders the classification prompt. Pure: equal requests give
    byte-identical prompts.
    """
    return CLASSIFICATION_PROMPT.format(
        sender=request.sender,
        recipients=", ".join(request.recipients) or "none",
        unsubscribe_link_present="Yes" if request.unsubscribe_link_present else "No",
        attachment_names=", ".join(request.attachment_names) or "none",
        formatted_date=request.formatted_date,
        body=request.body,
    )


def format_response(result: ClassificationResult) -> str:
    """
    Renders a result in the exact reply format the prompt asks for.
    """
    entities = result.extracted_entities
    entity_obj = {
        "senderName": entities.sender_name,
        "recipientNames": ", ".join(entities.recipient_names),
        "subjectTerms": ", ".join(entities.subject_terms),
        "date": entities.date.isoformat(),
        "attachmentNames": ", ".join(entities.attachment_names),
        "snippet": entities.snippet,
    }
    return "\n".join(
        [
            f"{SUMMARY}: {result.summary}",
            f"{URGENCY}: {result.urgency_score}",
            f"{ACTION}: {result.action}",
            f"{CLASSIFICATION}: {result.classification.value}",
            f"{KEYWORDS}: {', '.join(result.keywords)}",
            f"{ENTITIES}: {json.dumps(entity_obj, ensure_ascii=False)}",
        ]
    )


###################
### Reply side ###
###################


def _label_of(line: str):
    for label in LABELS:
        if line.startswith(f"{label}:"):
            return label
    return None


def _split_segments(raw_text: str) -> Dict[str, str]:
    """
    Splits the reply into its labelled segments. Lines before the first
    label and code fences are ignored; other unlabelled lines continue the
    current segment.
    """
    segments: Dict[str, List[str]] = {}
    current = None

    for line in raw_text.splitlines():
        line = line.strip()
        if line.startswith("```"):
            continue

        label = _label_of(line)
        if label is None:
            if current is not None and line:
                segments[current].append(line)
            continue

        if label in segments:
            raise ParseError(f"Duplicate '{label}' segment", raw_text)
        expected = LABELS[len(segments)]
        if label != expected:
            raise ParseError(f"Found '{label}' where '{expected}' was expected", raw_text)

        segments[label] = [line[len(label) + 1 :].strip()]
        current = label

    missing = [label for label in LABELS if label not in segments]
    if missing:
        raise ParseError(f"Missing segment(s): {', '.join(missing)}", raw_text)

    return {label: "\n".join(p for p in parts if p) for label, parts in segments.items()}


def _split_list(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def _parse_urgency(value: str, raw_text: str) -> int:
    if not re.fullmatch(r"\d+", value):
        raise ParseError(f"Urgency score '{value}' is not an integer", raw_text)
    score = int(value)
    if not 1 <= score <= 100:
        raise ParseError(f"Urgency score {score} outside 1-100", raw_text)
    return score


def _parse_classification(value: str, raw_text: str) -> Classification:
    try:
        return Classification(value)
    except ValueError:
        raise ParseError(f"Unknown classification '{value}'", raw_text)


def _load_entity_json(value: str, raw_text: str) -> dict:
    try:
        obj = json.loads(value)
    except json.JSONDecodeError:
        # Single quotes and trailing commas are the usual drift
        cleaned = re.sub(r"(?<!\\)'", '"', value)
        cleaned = re.sub(r",\s*([}\]])", r"\1", cleaned)
        try:
            obj = json.loads(cleaned)
        except json.JSONDecodeError as e:
            raise ParseError(f"ExtractedEntities is not a JSON object: {e}", raw_text)

    if not isinstance(obj, dict):
        raise ParseError("ExtractedEntities is not a JSON object", raw_text)
    return obj


def _entity_list(obj: dict, key: str, raw_text: str) -> List[str]:
    value = obj[key]
    if isinstance(value, list):
        return [str(item).strip() for item in value if str(item).strip()]
    if isinstance(value, str):
        return _split_list(value)
    raise ParseError(f"Entity '{key}' must be a list or comma-separated string", raw_text)


def _parse_entities(value: str, raw_text: str) -> ExtractedEntities:
    obj = _load_entity_json(value, raw_text)

    missing = [k for k in ENTITY_TEXT_FIELDS + ENTITY_LIST_FIELDS + ("date",) if k not in obj]
    if missing:
        raise ParseError(f"ExtractedEntities missing: {', '.join(missing)}", raw_text)

    for key in ENTITY_TEXT_FIELDS:
        if not isinstance(obj[key], str):
            raise ParseError(f"Entity '{key}' must be a string", raw_text)

    try:
        date = dt.date.fromisoformat(str(obj["date"]).strip())
    except ValueError:
        raise ParseError(f"Entity date '{obj['date']}' is not an ISO date", raw_text)

    return ExtractedEntities(
        sender_name=obj["senderName"].strip(),
        recipient_names=_entity_list(obj, "recipientNames", raw_text),
        subject_terms=_entity_list(obj, "subjectTerms", raw_text),
        date=date,
        attachment_names=_entity_list(obj, "attachmentNames", raw_text),
        snippet=obj["snippet"].strip(),
    )


def parse_response(raw_text: str) -> ClassificationResult:
    """
    Parses the provider's six-segment reply.

    Raises ParseError when a segment is missing, duplicated or out of order,
    the urgency score is not an integer in 1-100, the classification is not
    one of the fixed categories, or the entity object is malformed. Nothing
    is guessed or filled in.
    """
    segments = _split_segments(raw_text)

    summary = " ".join(segments[SUMMARY].split())
    action = " ".join(segments[ACTION].split())
    if not summary:
        raise ParseError("Summary is empty", raw_text)
    if not action:
        raise ParseError("Action is empty", raw_text)

    keywords = _split_list(" ".join(segments[KEYWORDS].split()))
    if not keywords:
        raise ParseError("Keywords is empty", raw_text)
    if not 5 <= len(keywords) <= 10:
        logger.debug(f"Reply carries {len(keywords)} keywords, prompt asks for 5-10")

    try:
        return ClassificationResult(
            summary=summary,
            urgency_score=_parse_urgency(segments[URGENCY], raw_text),
            action=action,
            classification=_parse_classification(segments[CLASSIFICATION], raw_text),
            keywords=keywords,
            extracted_entities=_parse_entities(segments[ENTITIES], raw_text),
        )
    except ValidationError as e:
        raise ParseError(f"Reply failed validation: {e}", raw_text)
