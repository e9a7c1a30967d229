"""
Attachment handler.

Uploads the attachments of one inbound email to object storage. Every file
is handled independently: uploads run concurrently and each outcome is
collected on its own, so one oversized or failing file never blocks or fails
the others.

  oversized      -> AttachmentTooLarge, logged, left out of the result
  upload failure -> AttachmentUploadFailed, logged, kept as metadata-only (url="")
  success        -> public url + storage_path

Storage layout: email-attachments/{owner_id}/{correlation_id}/{index}-{filename}
The path is deterministic for a given email, so a redelivery overwrites rather
than duplicates.
"""

import asyncio
import logging
import re
import time
from typing import Optional, Protocol, Sequence
from uuid import uuid4

from app.config import IngestionConfig
from app.errors import AttachmentTooLarge, AttachmentUploadFailed
from app.models.inbound_email import Attachment
from app.services.storage import sanitize_filename

logger = logging.getLogger(__name__)

_URL_UNSAFE = re.compile(r"[^A-Za-z0-9._\-]")


class MediaStorage(Protocol):
    def put(self, content: bytes, path: str, content_type: str) -> str: ...


def derive_correlation_id(message_id: Optional[str], timestamp: Optional[str] = None) -> str:
    """
    Storage prefix shared by all attachments of one email.

    Deterministic when the provider supplied a message id (stripped of
    URL-unsafe characters); otherwise timestamp plus a random suffix.
    """
    if message_id:
        cleaned = _URL_UNSAFE.sub("", message_id)
        if cleaned:
            return cleaned[:128]
    stamp = _URL_UNSAFE.sub("", timestamp or "") or str(int(time.time() * 1000))
    return f"{stamp}-{uuid4().hex[:9]}"


def describe(files: Sequence[Attachment]) -> list[Attachment]:
    """Metadata-only records: media is present but not retrievable."""
    return [
        Attachment(
            filename=f.filename,
            content_type=f.content_type,
            size=f.size,
            url=f.url,
            storage_path=f.storage_path,
        )
        for f in files
    ]


class AttachmentHandler:
    def __init__(self, config: IngestionConfig, storage: MediaStorage):
        self.max_attachment_size = config.max_attachment_size
        self.storage = storage

    async def upload(
        self,
        files: Sequence[Attachment],
        owner_id: str,
        correlation_id: str,
    ) -> list[Attachment]:
        """
        Upload ``files`` concurrently and return the surviving attachments in
        input order. Files already carrying a url and no bytes pass through.
        """
        if not files:
            return []

        results = await asyncio.gather(
            *(
                self._upload_one(f, index, owner_id, correlation_id)
                for index, f in enumerate(files, start=1)
            ),
            return_exceptions=True,
        )

        attachments: list[Attachment] = []
        for f, result in zip(files, results):
            if isinstance(result, Attachment):
                attachments.append(result)
            elif isinstance(result, AttachmentTooLarge):
                logger.warning(
                    f"Dropping attachment {f.filename!r}: {f.size} bytes exceeds "
                    f"limit of {self.max_attachment_size} bytes"
                )
            elif isinstance(result, AttachmentUploadFailed):
                logger.error(f"Attachment upload failed for {f.filename!r}: {result.detail}")
                attachments.extend(describe([f]))
            elif isinstance(result, BaseException):
                # anything the per-file task did not classify is still per-file
                logger.error(f"Unexpected error uploading {f.filename!r}: {result!r}")
                attachments.extend(describe([f]))

        uploaded = sum(1 for a in attachments if a.is_retrievable)
        logger.info(
            f"Attachment upload results for {correlation_id!r}: requested={len(files)} "
            f"uploaded={uploaded} metadata_only={len(attachments) - uploaded} "
            f"dropped={len(files) - len(attachments)}"
        )
        return attachments

    async def _upload_one(
        self,
        f: Attachment,
        index: int,
        owner_id: str,
        correlation_id: str,
    ) -> Attachment:
        if f.size > self.max_attachment_size:
            raise AttachmentTooLarge(f.filename)

        if f.content is None:
            return describe([f])[0]

        storage_path = (
            f"email-attachments/{owner_id}/{correlation_id}/"
            f"{index}-{sanitize_filename(f.filename)}"
        )
        try:
            url = await asyncio.to_thread(
                self.storage.put, f.content, storage_path, f.content_type
            )
        except Exception as e:
            raise AttachmentUploadFailed(f.filename, str(e)) from e

        return Attachment(
            filename=f.filename,
            content_type=f.content_type,
            size=f.size,
            url=url,
            storage_path=storage_path,
        )
