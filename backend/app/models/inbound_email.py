"""
Canonical inbound email model.

These models represent an inbound email after provider-specific wire formats
(relay form posts, SendGrid-style forms, generic JSON) have been normalized by
the adapter layer. The pipeline works exclusively with these models.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

MEDIA_TYPE_PREFIXES = ("image/", "audio/", "video/")


class Attachment(BaseModel):
    """
    A single attachment.

    Created by the parser with the raw bytes in ``content``. The attachment
    handler returns a copy with ``url`` / ``storage_path`` filled in and the
    bytes dropped. ``url`` stays empty when the upload was skipped or failed.
    """

    filename: str
    content_type: str = "application/octet-stream"
    size: int = Field(default=0, ge=0)
    url: str = ""
    storage_path: Optional[str] = None
    content: Optional[bytes] = Field(default=None, exclude=True, repr=False)

    @property
    def is_retrievable(self) -> bool:
        return bool(self.url)

    @property
    def is_media(self) -> bool:
        """Image, audio or video; only these become leaf media."""
        return self.content_type.lower().startswith(MEDIA_TYPE_PREFIXES)


class IncomingEmail(BaseModel):
    """
    Normalized inbound email, provider-agnostic.

    ``to`` and ``from_`` are always non-empty; the parser raises
    MalformedPayload otherwise.
    """

    model_config = ConfigDict(populate_by_name=True)

    to: str = Field(min_length=1)
    from_: str = Field(alias="from", min_length=1)
    subject: str = ""
    text: str = ""
    html: Optional[str] = None
    attachments: list[Attachment] = Field(default_factory=list)
    timestamp: Optional[str] = None
    message_id: Optional[str] = None
