"""
Supabase Storage service for leaf media.
Handles upload (returning a public URL) and deletion of email attachments.
"""

import os
import re
from typing import Any, Optional
from urllib.parse import urlparse, urlunparse

from app import db

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9.\-]")
_MAX_FILENAME_LENGTH = 100


def sanitize_filename(filename: str) -> str:
    """Replace unsafe characters with underscores and cap the length."""
    return _UNSAFE_FILENAME_CHARS.sub("_", filename)[:_MAX_FILENAME_LENGTH] or "attachment"


def _rewrite_public_url_host(public_url: str) -> str:
    """
    Replace the host in a storage URL with the browser-accessible Supabase URL.

    When the backend runs inside Docker it reaches Supabase through an internal
    host such as ``http://host.docker.internal:54321``, and Supabase embeds that
    host in every URL it generates. If ``SUPABASE_PUBLIC_URL`` is set, its
    scheme and host replace the internal ones; otherwise the URL is returned
    unchanged.
    """
    public_base = os.getenv("SUPABASE_PUBLIC_URL", "").strip()
    if not public_base:
        return public_url

    parsed_url = urlparse(public_url)
    parsed_base = urlparse(public_base)

    return urlunparse((
        parsed_base.scheme,
        parsed_base.netloc,
        parsed_url.path,
        parsed_url.params,
        parsed_url.query,
        parsed_url.fragment,
    ))


class SupabaseMediaStorage:
    """
    Object storage collaborator backed by a Supabase Storage bucket.

    ``client`` defaults to the service-role client from app.db, resolved at call
    time so tests can patch ``app.db.supabase_admin``.
    """

    def __init__(self, bucket: str, client: Optional[Any] = None):
        self.bucket = bucket
        self._client = client

    @property
    def client(self) -> Any:
        client = self._client or db.supabase_admin
        if not client:
            raise ValueError("SUPABASE_SERVICE_KEY is required for storage operations")
        return client

    def put(self, content: bytes, path: str, content_type: str) -> str:
        """
        Upload bytes to ``path`` and return the public URL.

        Uses upsert so a redelivered email overwrites its own earlier upload
        instead of failing on the existing object.

        Raises:
            Exception: If the upload fails or no public URL is returned
        """
        bucket = self.client.storage.from_(self.bucket)
        try:
            bucket.upload(
                path,
                content,
                {
                    "content-type": content_type,
                    "cache-control": "3600",
                    "upsert": "true",
                },
            )
        except Exception as e:
            raise Exception(f"Failed to upload media to storage: {str(e)}")

        public_url = bucket.get_public_url(path)
        if not public_url:
            raise Exception(f"No public URL returned for {path!r}")
        return _rewrite_public_url_host(public_url.rstrip("?"))

    def delete(self, path: str) -> bool:
        """
        Delete an uploaded object.

        Returns:
            True if deleted, False if the object was not found
        """
        try:
            result = self.client.storage.from_(self.bucket).remove([path])
        except Exception as e:
            raise Exception(f"Failed to delete media from storage: {str(e)}")
        return bool(result)
