"""
Supabase-backed collaborators of the ingestion pipeline.

SupabaseIdentityStore  - looks up the profile or tree an address points at
SupabaseLeafStore      - creates leaves and finds earlier ones by idempotency key

Both use the service-role client (the webhook has no user session). The client
is resolved at call time from app.db unless one is injected.

Idempotency relies on the leaves.source_message_id column and its partial
unique index, added by migrations/001_leaves_source_message_id.sql.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

from app import db
from app.errors import PersistenceFailure
from app.services.address_resolver import is_uuid

logger = logging.getLogger(__name__)

_UNIQUE_VIOLATION = "23505"


def _client(injected: Optional[Any]) -> Any:
    client = injected or db.supabase_admin
    if not client:
        raise ValueError("SUPABASE_SERVICE_KEY is required for webhook ingestion")
    return client


@dataclass(frozen=True)
class StoredLeaf:
    id: str
    leaf_type: str
    has_media: bool = False
    created: bool = True


class SupabaseIdentityStore:
    def __init__(self, client: Optional[Any] = None):
        self._client = client

    def get_profile(self, user_id: str) -> Optional[dict]:
        """Return the profile row, or None if no such user exists."""
        # profiles.id is a uuid column; anything else cannot exist
        if not is_uuid(user_id):
            return None
        result = (
            _client(self._client).table("profiles")
            .select("id, email, first_name, last_name")
            .eq("id", user_id)
            .limit(1)
            .execute()
        )
        return result.data[0] if result.data else None

    def get_tree(self, tree_id: str) -> Optional[dict]:
        """Return the tree row (id, person_name, managed_by, created_by) or None."""
        if not is_uuid(tree_id):
            return None
        result = (
            _client(self._client).table("trees")
            .select("id, person_name, managed_by, created_by")
            .eq("id", tree_id)
            .limit(1)
            .execute()
        )
        return result.data[0] if result.data else None


class SupabaseLeafStore:
    def __init__(self, client: Optional[Any] = None):
        self._client = client

    def find_by_source_message_id(self, source_message_id: str) -> Optional[StoredLeaf]:
        result = (
            _client(self._client).table("leaves")
            .select("id, leaf_type, media_urls")
            .eq("source_message_id", source_message_id)
            .limit(1)
            .execute()
        )
        if not result.data:
            return None
        row = result.data[0]
        return StoredLeaf(
            id=row["id"],
            leaf_type=row["leaf_type"],
            has_media=bool(row.get("media_urls")),
            created=False,
        )

    def create_leaf(
        self,
        author_id: str,
        content: str,
        media_urls: list[str],
        leaf_type: str,
        tags: list[str],
        milestone_keywords: list[str],
        branch_id: Optional[str] = None,
        ai_caption: Optional[str] = None,
        source_message_id: Optional[str] = None,
    ) -> StoredLeaf:
        """
        Insert one leaf. Leaves without a branch are created unassigned.

        A unique-constraint conflict on source_message_id means a concurrent
        delivery of the same email won the race; the existing leaf is returned
        with created=False.

        Raises:
            PersistenceFailure: insert failed or returned no row
        """
        row: dict = {
            "author_id": author_id,
            "branch_id": branch_id,
            "leaf_type": leaf_type,
            "content": content,
            "media_urls": media_urls,
            "tags": tags,
            "milestone_type": (
                milestone_keywords[0]
                if leaf_type == "milestone" and milestone_keywords
                else None
            ),
            "ai_caption": ai_caption,
            "message_type": "post",
            "assignment_status": "assigned" if branch_id else "unassigned",
            "source_message_id": source_message_id,
        }

        try:
            result = _client(self._client).table("leaves").insert(row).execute()
        except Exception as e:
            if source_message_id and getattr(e, "code", None) == _UNIQUE_VIOLATION:
                existing = self.find_by_source_message_id(source_message_id)
                if existing is not None:
                    logger.info(
                        f"Leaf for source message {source_message_id!r} already exists "
                        f"({existing.id}); treating insert conflict as duplicate"
                    )
                    return existing
            logger.error(f"Failed to insert leaf for author {author_id!r}: {e}")
            raise PersistenceFailure(str(e)) from e

        if not result.data:
            logger.error("leaves insert returned no data")
            raise PersistenceFailure("leaves insert returned no data")

        created = result.data[0]
        return StoredLeaf(
            id=created["id"],
            leaf_type=created.get("leaf_type", leaf_type),
            has_media=bool(media_urls),
        )
