"""
Inbound email adapter service.

Normalizes relay-provider webhook payloads into a single provider-agnostic
IncomingEmail model. Dispatch is purely on the declared Content-Type:

  application/x-www-form-urlencoded  relay form post (Mailgun / SendGrid style)
  multipart/form-data                relay form post with file parts
  application/json                   generic JSON

Form field names differ between relay integrations, so every canonical field
is filled from an ordered list of extraction rules. A rule is a pure function
from the raw form fields to an optional value; the first non-empty value wins.

Attachments in form posts come in two shapes, both supported:

  attachment-count=N   with file parts attachment-1 .. attachment-N
  attachments=N        with attachmentN (filename or file part),
                       attachmentN_content_type and attachmentN_content (base64)

Adding a new content type:
  1. Write a parse_<kind>(payload) -> IncomingEmail function.
  2. Register it in _PARSERS.
"""

import base64
import binascii
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional

from pydantic import ValidationError

from app.errors import MalformedPayload, UnsupportedContentType
from app.models.inbound_email import Attachment, IncomingEmail

logger = logging.getLogger(__name__)

FORM_URLENCODED = "application/x-www-form-urlencoded"
MULTIPART_FORM = "multipart/form-data"
JSON = "application/json"

FORM_CONTENT_TYPES = frozenset({FORM_URLENCODED, MULTIPART_FORM})

_DEFAULT_CONTENT_TYPE = "application/octet-stream"


# ---------------------------------------------------------------------------
# Form payload (framework-independent)
# ---------------------------------------------------------------------------

@dataclass
class FormFile:
    """A file part of a multipart form, already read into memory."""

    filename: str
    content_type: str
    content: bytes


@dataclass
class FormPayload:
    """Text fields and file parts of a relay form post."""

    fields: dict[str, str] = field(default_factory=dict)
    files: dict[str, FormFile] = field(default_factory=dict)


def media_type(content_type: str | None) -> str:
    """``multipart/form-data; boundary=x`` -> ``multipart/form-data``."""
    return (content_type or "").split(";", 1)[0].strip().lower()


def parse_count(raw: Any) -> int:
    """Parse a count/size field; anything non-numeric or negative is 0."""
    try:
        value = int(str(raw).strip())
    except (TypeError, ValueError):
        return 0
    return max(value, 0)


def decode_base64(raw: Any) -> bytes:
    if not raw:
        return b""
    try:
        return base64.b64decode(str(raw))
    except (binascii.Error, ValueError):
        logger.warning("Discarding attachment content that is not valid base64")
        return b""


# ---------------------------------------------------------------------------
# Extraction rules
# ---------------------------------------------------------------------------

FieldRule = Callable[[Mapping[str, str]], Optional[str]]


def form_field(name: str) -> FieldRule:
    def rule(fields: Mapping[str, str]) -> Optional[str]:
        value = fields.get(name)
        return value.strip() if isinstance(value, str) and value.strip() else None

    return rule


def raw_header(name: str) -> FieldRule:
    """Pull a header out of a raw ``headers`` blob (SendGrid posts one)."""
    pattern = re.compile(rf"^{re.escape(name)}:\s*(.+)$", re.IGNORECASE | re.MULTILINE)

    def rule(fields: Mapping[str, str]) -> Optional[str]:
        blob = fields.get("headers")
        if not blob:
            return None
        match = pattern.search(blob)
        return match.group(1).strip() if match else None

    return rule


FORM_FIELD_RULES: dict[str, list[FieldRule]] = {
    "to": [
        form_field("recipient"),
        form_field("to"),
        form_field("To"),
        form_field("recipients"),
    ],
    "from": [form_field("sender"), form_field("from"), form_field("From")],
    "subject": [form_field("subject"), form_field("Subject")],
    "text": [form_field("body-plain"), form_field("stripped-text"), form_field("text")],
    "html": [form_field("body-html"), form_field("stripped-html"), form_field("html")],
    "timestamp": [form_field("timestamp")],
    "message_id": [
        form_field("Message-Id"),
        form_field("message-id"),
        form_field("Message-ID"),
        raw_header("Message-ID"),
    ],
}


def extract_field(fields: Mapping[str, str], rules: list[FieldRule]) -> Optional[str]:
    """Apply rules in order and return the first non-empty result."""
    for rule in rules:
        value = rule(fields)
        if value:
            return value
    return None


# ---------------------------------------------------------------------------
# Form attachments
# ---------------------------------------------------------------------------

def _attachment_from_file(part: FormFile, fallback_name: str) -> Optional[Attachment]:
    if not part.content:
        logger.warning(f"Skipping empty attachment part {fallback_name!r}")
        return None
    return Attachment(
        filename=part.filename or fallback_name,
        content_type=part.content_type or _DEFAULT_CONTENT_TYPE,
        size=len(part.content),
        content=part.content,
    )


def _counted_file_attachments(payload: FormPayload) -> list[Attachment]:
    """``attachment-count`` + ``attachment-{i}`` file parts."""
    attachments: list[Attachment] = []
    count = parse_count(payload.fields.get("attachment-count"))
    for i in range(1, count + 1):
        name = f"attachment-{i}"
        part = payload.files.get(name)
        if part is None:
            logger.warning(f"attachment-count={count} but part {name!r} is missing")
            continue
        attachment = _attachment_from_file(part, name)
        if attachment is not None:
            attachments.append(attachment)
    return attachments


def _numbered_field_attachments(payload: FormPayload) -> list[Attachment]:
    """``attachments`` + ``attachmentN`` / ``_content_type`` / ``_content`` fields."""
    attachments: list[Attachment] = []
    count = parse_count(payload.fields.get("attachments"))
    for i in range(1, count + 1):
        name = f"attachment{i}"

        part = payload.files.get(name)
        if part is not None:
            attachment = _attachment_from_file(part, name)
            if attachment is not None:
                attachments.append(attachment)
            continue

        content = decode_base64(payload.fields.get(f"{name}_content"))
        if not content:
            logger.warning(f"Skipping attachment {name!r} with empty content")
            continue
        attachments.append(
            Attachment(
                filename=payload.fields.get(name) or name,
                content_type=payload.fields.get(f"{name}_content_type") or _DEFAULT_CONTENT_TYPE,
                size=len(content),
                content=content,
            )
        )
    return attachments


# ---------------------------------------------------------------------------
# Parsers
# ---------------------------------------------------------------------------

def _build_email(**values: Any) -> IncomingEmail:
    if not values.get("to") or not values.get("from"):
        raise MalformedPayload("Missing required email fields (to, from)")
    try:
        return IncomingEmail(**values)
    except ValidationError as exc:
        raise MalformedPayload(f"Invalid email fields: {exc.error_count()} error(s)") from exc


def email_from_fields(
    fields: Mapping[str, str], attachments: list[Attachment]
) -> IncomingEmail:
    """
    Build IncomingEmail from flat provider fields using FORM_FIELD_RULES.

    Shared by form posts and stored messages fetched from the provider, which
    use the same field names.
    """
    values = {name: extract_field(fields, rules) for name, rules in FORM_FIELD_RULES.items()}
    return _build_email(
        to=values["to"],
        **{"from": values["from"]},
        subject=values["subject"] or "",
        text=values["text"] or "",
        html=values["html"],
        timestamp=values["timestamp"],
        message_id=values["message_id"],
        attachments=attachments,
    )


def parse_form(payload: FormPayload) -> IncomingEmail:
    """Convert a relay form post into IncomingEmail."""
    if not isinstance(payload, FormPayload):
        raise MalformedPayload("Form content type with a non-form body")

    attachments = _counted_file_attachments(payload) + _numbered_field_attachments(payload)
    return email_from_fields(payload.fields, attachments)


def _json_attachment(entry: Any, index: int) -> Optional[Attachment]:
    if not isinstance(entry, dict):
        return None
    content = decode_base64(entry.get("content"))
    url = str(entry.get("url") or "")
    if not content and not url:
        logger.warning(f"Skipping JSON attachment #{index} with neither content nor url")
        return None
    return Attachment(
        filename=str(entry.get("filename") or entry.get("name") or f"attachment{index}"),
        content_type=str(
            entry.get("contentType") or entry.get("content_type") or _DEFAULT_CONTENT_TYPE
        ),
        size=len(content) if content else parse_count(entry.get("size")),
        url=url,
        content=content or None,
    )


def parse_json(payload: Any) -> IncomingEmail:
    """Convert a generic JSON payload; ``to`` and ``from`` are required."""
    if not isinstance(payload, dict):
        raise MalformedPayload("JSON body must be an object")

    raw_attachments = payload.get("attachments")
    attachments: list[Attachment] = []
    if isinstance(raw_attachments, list):
        for i, entry in enumerate(raw_attachments, start=1):
            attachment = _json_attachment(entry, i)
            if attachment is not None:
                attachments.append(attachment)

    message_id = payload.get("messageId") or payload.get("message_id")
    timestamp = payload.get("timestamp")

    return _build_email(
        to=str(payload.get("to") or ""),
        **{"from": str(payload.get("from") or "")},
        subject=str(payload.get("subject") or ""),
        text=str(payload.get("text") or ""),
        html=str(payload["html"]) if payload.get("html") else None,
        timestamp=str(timestamp) if timestamp else None,
        message_id=str(message_id) if message_id else None,
        attachments=attachments,
    )


# ---------------------------------------------------------------------------
# Registry and dispatcher
# ---------------------------------------------------------------------------

_PARSERS: dict[str, Callable[[Any], IncomingEmail]] = {
    FORM_URLENCODED: parse_form,
    MULTIPART_FORM: parse_form,
    JSON: parse_json,
}


def parse_email(content_type: str | None, payload: Any) -> IncomingEmail:
    """
    Route to the parser for the declared Content-Type.

    Raises UnsupportedContentType for anything not in _PARSERS and
    MalformedPayload when required fields are missing.
    """
    kind = media_type(content_type)
    parser = _PARSERS.get(kind)
    if parser is None:
        raise UnsupportedContentType(f"Unsupported content type: {content_type!r}")

    email = parser(payload)
    logger.info(
        f"Parsed inbound email ({kind}): to={email.to!r} "
        f"attachments={len(email.attachments)} message_id={email.message_id!r}"
    )
    return email
