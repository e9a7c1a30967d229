"""
Email webhook router.

Receives inbound email from the relay provider and turns it into a leaf.

Endpoints:
  POST /email         provider push (form, multipart or JSON body)
  POST /email/notify  provider store-and-notify: fetch the stored message,
                      then ingest it like a push

Both endpoints authenticate from headers before the body is parsed. Every
pipeline failure is an IngestionError and is returned as

    {"success": false, "error": <fixed message>, "code": <kind>}

with the error's status code. Anything unexpected is logged and returned as
a plain 500 so no internals leak to the caller.
"""

import json
import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from starlette.datastructures import UploadFile

from app.config import IngestionConfig, get_ingestion_config
from app.errors import (
    AuthenticationFailure,
    IngestionError,
    MalformedPayload,
    PayloadTooLarge,
    UnrecognizedAddressScheme,
)
from app.models.ingestion import IngestionOutcome
from app.services.inbound_email_adapter import (
    FORM_CONTENT_TYPES,
    JSON,
    FormFile,
    FormPayload,
    media_type,
    parse_email,
)
from app.services.ingestion import IngestionPipeline
from app.services.leaf_store import SupabaseIdentityStore, SupabaseLeafStore
from app.services.storage import SupabaseMediaStorage
from app.services.stored_message import StoredMessageFetcher
from app.services.webhook_auth import WebhookAuthenticator

logger = logging.getLogger(__name__)

router = APIRouter()


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

def get_authenticator(
    config: IngestionConfig = Depends(get_ingestion_config),
) -> WebhookAuthenticator:
    return WebhookAuthenticator(config)


def get_pipeline(
    config: IngestionConfig = Depends(get_ingestion_config),
) -> IngestionPipeline:
    return IngestionPipeline(
        config,
        identity_store=SupabaseIdentityStore(),
        leaf_store=SupabaseLeafStore(),
        storage=SupabaseMediaStorage(config.media_bucket),
    )


def get_fetcher(
    config: IngestionConfig = Depends(get_ingestion_config),
) -> StoredMessageFetcher:
    return StoredMessageFetcher(config)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _error_response(exc: Exception) -> JSONResponse:
    if isinstance(exc, IngestionError):
        logger.warning(f"Inbound email rejected ({exc.code}): {exc.detail}")
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "error": exc.public_message, "code": exc.code},
        )
    logger.exception(f"Unexpected error processing inbound email: {exc}")
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": "Internal server error", "code": "internal_error"},
    )


def _success_response(outcome: IngestionOutcome, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=200,
        content={"success": True, "data": outcome.response_data(), "message": message},
    )


def _authenticate(
    request: Request, authenticator: WebhookAuthenticator, content_type: Optional[str]
) -> None:
    peer_ip = request.client.host if request.client else None
    result = authenticator.authenticate(request.headers, content_type, peer_ip)
    if not result.is_valid:
        raise AuthenticationFailure(result.error)
    logger.info(f"Webhook authenticated via {result.method.value}")


def _check_declared_size(request: Request, max_size: int) -> None:
    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > max_size:
        raise PayloadTooLarge(f"Content-Length {declared} exceeds {max_size}")


async def _read_form(request: Request, max_size: int) -> FormPayload:
    """Split a form body into text fields and in-memory file parts."""
    payload = FormPayload()
    form = await request.form(max_part_size=max_size)
    try:
        for key, value in form.multi_items():
            if isinstance(value, UploadFile):
                if key not in payload.files:
                    payload.files[key] = FormFile(
                        filename=value.filename or key,
                        content_type=value.content_type or "application/octet-stream",
                        content=await value.read(),
                    )
            elif key not in payload.fields:
                payload.fields[key] = value
    finally:
        await form.close()
    return payload


async def _read_payload(request: Request, content_type: str, max_size: int) -> Any:
    body = await request.body()
    if len(body) > max_size:
        raise PayloadTooLarge(f"Body of {len(body)} bytes exceeds {max_size}")

    kind = media_type(content_type)
    if kind in FORM_CONTENT_TYPES:
        try:
            return await _read_form(request, max_size)
        except Exception as e:
            raise MalformedPayload(f"Unreadable form body: {e}") from e
    if kind == JSON:
        try:
            return json.loads(body)
        except ValueError as e:
            raise MalformedPayload(f"Invalid JSON body: {e}") from e
    # parse_email rejects the content type
    return body


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post("/email")
async def receive_email(
    request: Request,
    config: IngestionConfig = Depends(get_ingestion_config),
    authenticator: WebhookAuthenticator = Depends(get_authenticator),
    pipeline: IngestionPipeline = Depends(get_pipeline),
) -> JSONResponse:
    """
    Provider push webhook.

    Returns 200 with {leafId, leafType, hasMedia, duplicate} once the leaf
    exists (or already existed). Non-2xx responses make the provider retry.
    """
    content_type = request.headers.get("content-type")
    try:
        _check_declared_size(request, config.max_email_size)
        _authenticate(request, authenticator, content_type)
        payload = await _read_payload(request, content_type or "", config.max_email_size)
        email = parse_email(content_type, payload)
        outcome = await pipeline.ingest(email)
    except Exception as exc:
        return _error_response(exc)

    return _success_response(outcome, "Email processed successfully")


@router.post("/email/notify")
async def receive_stored_message_notification(
    request: Request,
    config: IngestionConfig = Depends(get_ingestion_config),
    authenticator: WebhookAuthenticator = Depends(get_authenticator),
    pipeline: IngestionPipeline = Depends(get_pipeline),
    fetcher: StoredMessageFetcher = Depends(get_fetcher),
) -> JSONResponse:
    """
    Store-and-notify webhook.

    The notification form carries recipient, sender, subject and
    message-url. The recipient is checked before anything is fetched so
    mail for unknown addresses costs no provider API call.
    """
    content_type = request.headers.get("content-type")
    try:
        _check_declared_size(request, config.max_email_size)
        _authenticate(request, authenticator, content_type)
        if media_type(content_type) not in FORM_CONTENT_TYPES:
            raise MalformedPayload(f"Notification must be a form post, got {content_type!r}")

        notification = await _read_payload(request, content_type or "", config.max_email_size)
        fields = notification.fields
        recipient = fields.get("recipient") or ""
        message_url = fields.get("message-url")

        if pipeline.resolver.resolve_any(recipient) is None:
            raise UnrecognizedAddressScheme(f"No addressing scheme matched {recipient!r}")
        if not message_url:
            raise MalformedPayload("Notification without message-url")
        if not fetcher.is_trusted_url(message_url):
            raise MalformedPayload(f"Untrusted message-url {message_url!r}")

        email = await fetcher.fetch(message_url, fallback_fields=fields)
        outcome = await pipeline.ingest(email)
    except Exception as exc:
        return _error_response(exc)

    return _success_response(outcome, "Stored message processed successfully")
