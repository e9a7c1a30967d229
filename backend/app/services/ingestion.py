"""
Ingestion orchestrator.

Turns one authenticated, parsed IncomingEmail into a leaf:

  1. Resolve the recipient address to a user or tree.
  2. Look up the identity; tree addresses post as the tree's first manager
     (or its creator).
  3. Derive the idempotency key and stop early if this email was already
     ingested.
  4. Upload attachments (concurrent, per-file failure isolation).
  5. Classify the content against the uploaded image, audio and video
     attachments. Other files are stored but never become leaf media.
  6. Build content and caption.
  7. Create the leaf. This is the only externally visible commit.

Nothing is retried here; the provider re-delivers on non-2xx and the
idempotency key keeps redeliveries from creating a second leaf.
"""

import asyncio
import hashlib
import html as html_lib
import logging
import re
from typing import Optional, Protocol

from app.config import IngestionConfig
from app.errors import IdentityNotFound, PersistenceFailure, UnrecognizedAddressScheme
from app.models.inbound_email import Attachment, IncomingEmail
from app.models.ingestion import IngestionOutcome, LeafType, ResolvedRecipient
from app.services.address_resolver import AddressResolver
from app.services.attachment_handler import (
    AttachmentHandler,
    MediaStorage,
    derive_correlation_id,
)
from app.services.classifier import classify
from app.services.leaf_store import StoredLeaf

logger = logging.getLogger(__name__)

_HTML_TAG = re.compile(r"<[^>]*>")


class IdentityStore(Protocol):
    def get_profile(self, user_id: str) -> Optional[dict]: ...

    def get_tree(self, tree_id: str) -> Optional[dict]: ...


class LeafStore(Protocol):
    def find_by_source_message_id(self, source_message_id: str) -> Optional[StoredLeaf]: ...

    def create_leaf(self, author_id: str, content: str, media_urls: list[str],
                    leaf_type: str, tags: list[str], milestone_keywords: list[str],
                    branch_id: Optional[str] = None, ai_caption: Optional[str] = None,
                    source_message_id: Optional[str] = None) -> StoredLeaf: ...


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

def idempotency_key(email: IncomingEmail) -> Optional[str]:
    """
    Key identifying one logical delivery.

    Uses the provider message id when present. Otherwise hashes the canonical
    email, but only when a provider timestamp is available: without one, two
    genuinely separate emails with the same text would collide.
    """
    if email.message_id:
        message_id = email.message_id.strip().strip("<>").strip().lower()
        if message_id:
            return f"msg:{message_id}"

    if not email.timestamp:
        return None

    digest = hashlib.sha256()
    parts = [email.to, email.from_, email.subject, email.timestamp, email.text]
    parts += [f"{a.filename}:{a.size}" for a in email.attachments]
    for part in parts:
        digest.update(part.encode("utf-8"))
        digest.update(b"\x1f")
    return f"sha256:{digest.hexdigest()}"


def html_to_text(markup: str) -> str:
    return html_lib.unescape(_HTML_TAG.sub("", markup)).strip()


def body_text(email: IncomingEmail) -> str:
    """Plain-text body, falling back to stripped HTML."""
    if email.text.strip():
        return email.text
    if email.html:
        return html_to_text(email.html)
    return ""


def generate_caption(email: IncomingEmail, max_length: int) -> str:
    """Subject, else the first sentence of the body (truncated)."""
    if email.subject.strip():
        return email.subject.strip()
    text = body_text(email).strip()
    if not text:
        return ""
    first_sentence = text.split(".")[0]
    if len(first_sentence) > max_length:
        return text[:max_length] + "..."
    return first_sentence


def build_content(
    email: IncomingEmail,
    attachments: list[Attachment],
    max_length: int,
    person_name: Optional[str] = None,
) -> str:
    content = ""
    if person_name:
        content += f"Email for: {person_name}\n\n"
    if email.subject:
        content += f"Subject: {email.subject}\n\n"
    content += body_text(email)

    failed = sum(1 for a in attachments if not a.is_retrievable)
    dropped = len(email.attachments) - len(attachments)
    if failed:
        content += f"\n\n[{failed} attachment(s) failed to upload]"
    if dropped:
        content += f"\n\n[{dropped} attachment(s) exceeded the size limit]"

    return content.strip()[:max_length]


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

class IngestionPipeline:
    def __init__(
        self,
        config: IngestionConfig,
        identity_store: IdentityStore,
        leaf_store: LeafStore,
        storage: MediaStorage,
    ):
        self.config = config
        self.identity_store = identity_store
        self.leaf_store = leaf_store
        self.storage = storage
        self.resolver = AddressResolver(config)
        self.attachment_handler = AttachmentHandler(config, storage)

    async def ingest(self, email: IncomingEmail) -> IngestionOutcome:
        # 1. Resolve recipient address
        recipient = self.resolver.resolve_any(email.to)
        if recipient is None:
            logger.warning(f"Unrecognized recipient address: {email.to!r}")
            raise UnrecognizedAddressScheme(f"No addressing scheme matched {email.to!r}")

        # 2. Look up identity
        author_id, person_name = await self._resolve_author(recipient)

        # 3. Duplicate delivery check
        source_key = idempotency_key(email)
        if source_key:
            existing = await asyncio.to_thread(
                self.leaf_store.find_by_source_message_id, source_key
            )
            if existing is not None:
                logger.info(
                    f"Duplicate delivery of {source_key!r}; leaf {existing.id} already exists"
                )
                return self._outcome(existing)
        else:
            logger.info("Inbound email has no message id or timestamp; idempotency disabled")

        # 4. Upload attachments
        correlation_id = derive_correlation_id(email.message_id, email.timestamp)
        attachments = await self.attachment_handler.upload(
            email.attachments, author_id, correlation_id
        )
        media = [a for a in attachments if a.is_retrievable and a.is_media]
        media_urls = [a.url for a in media]

        # 5. Classify on the media the leaf will actually show
        text = "\n".join(part for part in (email.subject, body_text(email)) if part)
        classification = classify(text, media, self.config.milestone_keywords)
        logger.info(
            f"Classified email for {author_id}: {classification.leaf_type.value} "
            f"({classification.confidence.value}, {classification.reason})"
        )

        # 6. Content and caption
        content = build_content(
            email, attachments, self.config.max_content_length, person_name=person_name
        )
        caption = generate_caption(email, self.config.max_caption_length)

        # 7. Persist
        try:
            leaf = await asyncio.to_thread(
                self.leaf_store.create_leaf,
                author_id=author_id,
                content=content,
                media_urls=media_urls,
                leaf_type=classification.leaf_type.value,
                tags=classification.tags,
                milestone_keywords=classification.milestone_keywords,
                ai_caption=caption or None,
                source_message_id=source_key,
            )
        except PersistenceFailure:
            await self._discard_uploads(attachments)
            raise

        logger.info(
            f"Created leaf {leaf.id} from email (author={author_id}, "
            f"type={leaf.leaf_type}, media={len(media_urls)}, "
            f"routing={recipient.match_pattern.value})"
        )
        return self._outcome(leaf)

    async def _resolve_author(self, recipient: ResolvedRecipient) -> tuple[str, Optional[str]]:
        """Return (author_id, person_name) for the recipient."""
        if recipient.is_tree_scoped:
            tree = await asyncio.to_thread(self.identity_store.get_tree, recipient.tree_id)
            if not tree:
                logger.warning(f"Tree not found for person address: {recipient.tree_id!r}")
                raise IdentityNotFound(f"tree {recipient.tree_id!r}")
            managers = tree.get("managed_by") or []
            author_id = managers[0] if managers else tree.get("created_by")
            if not author_id:
                logger.warning(f"Tree {recipient.tree_id!r} has no manager or creator")
                raise IdentityNotFound(f"tree {recipient.tree_id!r} has no author")
            return author_id, tree.get("person_name")

        profile = await asyncio.to_thread(self.identity_store.get_profile, recipient.user_id)
        if not profile:
            logger.warning(f"User not found for address: {recipient.user_id!r}")
            raise IdentityNotFound(f"user {recipient.user_id!r}")
        return profile["id"], None

    async def _discard_uploads(self, attachments: list[Attachment]) -> None:
        """Best-effort removal of media uploaded for a leaf that was never created."""
        delete = getattr(self.storage, "delete", None)
        if delete is None:
            return
        for attachment in attachments:
            if not attachment.storage_path:
                continue
            try:
                await asyncio.to_thread(delete, attachment.storage_path)
            except Exception as e:
                logger.warning(f"Could not remove orphaned upload {attachment.storage_path!r}: {e}")

    @staticmethod
    def _outcome(leaf: StoredLeaf) -> IngestionOutcome:
        return IngestionOutcome(
            success=True,
            leaf_id=leaf.id,
            leaf_type=LeafType(leaf.leaf_type),
            has_media=leaf.has_media,
            duplicate=not leaf.created,
        )
