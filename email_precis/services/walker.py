import base64
import binascii
from typing import List, Optional, Tuple

from email_precis.config import CFG
from email_precis.models.gmail import AttachmentDescriptor, MessagePart
from email_precis.utils.logger import logger


def decode_base64url(data: str) -> bytes:
    """
    Decodes Gmail's base64url payloads, which are frequently sent without padding.
    """
    return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))


def _decode_text(part: MessagePart) -> str:
    try:
        return decode_base64url(part.data).decode("utf-8", errors="replace")
    except (binascii.Error, ValueError):
        logger.warning(f"Undecodable {part.mime_type} body in part '{part.part_id}'")
        return ""


def _walk(root: MessagePart, max_depth: int, max_parts: int):
    """
    Pre-order, depth-first traversal using an explicit stack. Yields at most
    ``max_parts`` nodes and does not descend below ``max_depth``.
    """
    stack = [(root, 0)]
    visited = 0
    while stack:
        if visited >= max_parts:
            logger.warning(f"Message tree exceeds {max_parts} parts, traversal truncated")
            return
        part, depth = stack.pop()
        visited += 1
        yield part

        if part.parts:
            if depth + 1 > max_depth:
                logger.warning(
                    f"Message tree deeper than {max_depth} levels below part '{part.part_id}', children skipped"
                )
                continue
            # Reverse so the first child is popped first
            for child in reversed(part.parts):
                stack.append((child, depth + 1))


def extract(
    root: MessagePart,
    preview: str = "",
    max_depth: int = CFG.max_part_depth,
    max_parts: int = CFG.max_parts,
) -> Tuple[str, List[AttachmentDescriptor]]:
    """
    Locates body text and attachments in a message tree.

    A part with both a filename and a mime type is an attachment no matter
    its type or depth. Otherwise the last text/html part with data wins the
    HTML candidate and the last text/plain part wins the plain candidate.
    The body is the HTML candidate, else the plain one, else ``preview``.
    Attachment bodies referenced by id are never fetched here.
    """
    html_body = ""
    plain_body = ""
    attachments: List[AttachmentDescriptor] = []

    for part in _walk(root, max_depth, max_parts):
        if part.filename and part.mime_type:
            if part.data is None and part.attachment_ref is None:
                logger.debug(f"Attachment part '{part.part_id}' carries no data or reference")
                continue
            attachments.append(
                AttachmentDescriptor(
                    filename=part.filename,
                    mime_type=part.mime_type,
                    part_id=part.part_id,
                    data=part.data,
                    attachment_ref=None if part.data else part.attachment_ref,
                )
            )
        elif part.mime_type == "text/html" and part.data:
            html_body = _decode_text(part)
        elif part.mime_type == "text/plain" and part.data:
            plain_body = _decode_text(part)

    body_text = html_body or plain_body or preview or ""
    return body_text, attachments


def find_part(
    root: MessagePart,
    part_id: str,
    max_depth: int = CFG.max_part_depth,
    max_parts: int = CFG.max_parts,
) -> Optional[MessagePart]:
    """
    Returns the first part whose identifier matches exactly, checking the
    root before its children, or ``None`` when the tree has no such part.
    """
    for part in _walk(root, max_depth, max_parts):
        if part.part_id == part_id:
            return part
    return None
