"""
Stored message fetcher (store-and-notify).

With store-and-notify routing the relay provider keeps the message and only
posts a notification carrying a ``message-url``. This service fetches the
stored message from the provider API (basic auth ``api:PROVIDER_API_KEY``),
downloads its attachments and returns the same IncomingEmail the push
webhook would have produced.

Stored messages use the relay's form field names (recipient, sender,
body-plain, ...), so they go through the adapter's extraction rules.
"""

import asyncio
import logging
from typing import Any, Mapping, Optional
from urllib.parse import urlparse

import httpx

from app.config import IngestionConfig
from app.errors import StoredMessageUnavailable
from app.models.inbound_email import Attachment, IncomingEmail
from app.services.inbound_email_adapter import email_from_fields, parse_count

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT = 30.0


class StoredMessageFetcher:
    def __init__(
        self,
        config: IngestionConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = _DEFAULT_TIMEOUT,
    ):
        self.config = config
        self._transport = transport
        self._timeout = timeout

    def is_trusted_url(self, message_url: str | None) -> bool:
        """Only https URLs on one of PROVIDER_STORAGE_HOSTS are fetched."""
        if not message_url:
            return False
        parsed = urlparse(message_url)
        host = (parsed.hostname or "").lower()
        if parsed.scheme != "https" or not host:
            return False
        return any(allowed in host for allowed in self.config.provider_storage_hosts)

    async def fetch(
        self, message_url: str, fallback_fields: Optional[Mapping[str, str]] = None
    ) -> IncomingEmail:
        """
        Fetch and normalize one stored message.

        ``fallback_fields`` (the notification form) fills in fields the
        stored message lacks, e.g. recipient when the API omits it.

        Raises:
            StoredMessageUnavailable: untrusted URL, missing API key, network
                error, non-2xx response or a body that is not a JSON object
        """
        if not self.is_trusted_url(message_url):
            logger.warning(f"Refusing to fetch stored message from untrusted URL {message_url!r}")
            raise StoredMessageUnavailable("untrusted message url")
        if not self.config.provider_api_key:
            logger.error("PROVIDER_API_KEY not configured; cannot fetch stored messages")
            raise StoredMessageUnavailable("provider api key not configured")

        async with self._client() as client:
            try:
                response = await client.get(message_url)
            except httpx.HTTPError as e:
                logger.error(f"Stored message request failed: {e}")
                raise StoredMessageUnavailable(str(e)) from e

            if response.status_code >= 400:
                logger.error(
                    f"Provider returned {response.status_code} for stored message {message_url!r}"
                )
                raise StoredMessageUnavailable(f"status {response.status_code}")

            try:
                data = response.json()
            except ValueError as e:
                raise StoredMessageUnavailable("stored message is not JSON") from e
            if not isinstance(data, dict):
                raise StoredMessageUnavailable("stored message is not a JSON object")

            attachments = await self._download_attachments(client, data.get("attachments"))

        # stored values win over the notification form
        fields: dict[str, str] = {}
        for source in (fallback_fields or {}, data):
            for key, value in source.items():
                if isinstance(value, (str, int, float)) and str(value).strip():
                    fields[key] = str(value)
        return email_from_fields(fields, attachments)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            auth=("api", self.config.provider_api_key or ""),
            timeout=self._timeout,
            transport=self._transport,
        )

    async def _download_attachments(
        self, client: httpx.AsyncClient, entries: Any
    ) -> list[Attachment]:
        if not isinstance(entries, list):
            return []
        described = [e for e in entries if isinstance(e, dict)]
        results = await asyncio.gather(
            *(self._download_one(client, entry, i) for i, entry in enumerate(described, start=1)),
            return_exceptions=True,
        )

        attachments: list[Attachment] = []
        for result in results:
            if isinstance(result, Attachment):
                attachments.append(result)
            elif isinstance(result, BaseException):
                logger.error(f"Unexpected error downloading stored attachment: {result!r}")
        return attachments

    async def _download_one(
        self, client: httpx.AsyncClient, entry: dict, index: int
    ) -> Attachment:
        """Download one attachment; on failure keep its metadata only."""
        filename = str(entry.get("filename") or entry.get("name") or f"attachment{index}")
        content_type = str(
            entry.get("content-type") or entry.get("contentType") or "application/octet-stream"
        )
        declared_size = parse_count(entry.get("size"))
        metadata = Attachment(filename=filename, content_type=content_type, size=declared_size)

        url = entry.get("url")
        if not url:
            logger.warning(f"Stored attachment {filename!r} has no url")
            return metadata
        # the attachment handler drops it by size; no point downloading
        if declared_size > self.config.max_attachment_size:
            return metadata

        try:
            response = await client.get(str(url))
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Failed to download stored attachment {filename!r}: {e}")
            return metadata

        content = response.content
        return Attachment(
            filename=filename,
            content_type=content_type,
            size=len(content),
            content=content,
        )
