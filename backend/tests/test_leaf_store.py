"""
Tests for the Supabase-backed identity and leaf stores.
All Supabase calls are mocked.
"""

from pathlib import Path
from unittest.mock import MagicMock, Mock, patch

import pytest

from app.errors import PersistenceFailure
from app.services.leaf_store import SupabaseIdentityStore, SupabaseLeafStore

USER_ID = "0b5c3d8e-1f2a-4b6c-9d7e-8f9a0b1c2d3e"
TREE_ID = "7a6b5c4d-3e2f-4a1b-8c9d-0e1f2a3b4c5d"

MIGRATION = Path(__file__).resolve().parents[2] / "migrations" / "001_leaves_source_message_id.sql"


def _make_supabase_chain(*results):
    """
    Build a MagicMock that returns results[i] from the i-th .execute() call,
    regardless of which chaining methods were called. An Exception in
    ``results`` is raised instead.
    """
    mock = MagicMock()
    mock.select.return_value = mock
    mock.eq.return_value = mock
    mock.insert.return_value = mock
    mock.limit.return_value = mock
    mock.execute.side_effect = [r if isinstance(r, Exception) else Mock(data=r) for r in results]
    return mock


def _client_for(chain):
    client = MagicMock()
    client.table.return_value = chain
    return client


class _UniqueViolation(Exception):
    code = "23505"


class TestIdentityStore:
    def test_get_profile_found(self):
        chain = _make_supabase_chain([{"id": USER_ID, "email": "me@example.com"}])
        store = SupabaseIdentityStore(client=_client_for(chain))

        profile = store.get_profile(USER_ID)

        assert profile["id"] == USER_ID
        chain.eq.assert_called_with("id", USER_ID)

    def test_get_profile_missing(self):
        store = SupabaseIdentityStore(client=_client_for(_make_supabase_chain([])))
        assert store.get_profile(USER_ID) is None

    def test_non_uuid_profile_is_not_queried(self):
        client = MagicMock()
        assert SupabaseIdentityStore(client=client).get_profile("abc123") is None
        client.table.assert_not_called()

    def test_get_tree(self):
        row = {"id": TREE_ID, "person_name": "Nana", "managed_by": [USER_ID], "created_by": USER_ID}
        client = _client_for(_make_supabase_chain([row]))

        assert SupabaseIdentityStore(client=client).get_tree(TREE_ID) == row
        client.table.assert_called_with("trees")

    def test_uses_service_client_by_default(self):
        chain = _make_supabase_chain([])
        with patch("app.db.supabase_admin", _client_for(chain)):
            assert SupabaseIdentityStore().get_profile(USER_ID) is None
        chain.execute.assert_called_once()


class TestFindBySourceMessageId:
    def test_existing_leaf_is_reported_as_not_created(self):
        chain = _make_supabase_chain(
            [{"id": "leaf-1", "leaf_type": "photo", "media_urls": ["https://cdn/x.jpg"]}]
        )
        leaf = SupabaseLeafStore(client=_client_for(chain)).find_by_source_message_id("msg:abc")

        assert leaf.id == "leaf-1"
        assert leaf.has_media is True
        assert leaf.created is False

    def test_no_leaf(self):
        chain = _make_supabase_chain([])
        assert SupabaseLeafStore(client=_client_for(chain)).find_by_source_message_id("msg:x") is None


class TestCreateLeaf:
    def test_unassigned_leaf_row(self):
        chain = _make_supabase_chain([{"id": "leaf-9", "leaf_type": "milestone"}])
        store = SupabaseLeafStore(client=_client_for(chain))

        leaf = store.create_leaf(
            author_id=USER_ID,
            content="First steps!",
            media_urls=[],
            leaf_type="milestone",
            tags=["milestone"],
            milestone_keywords=["first steps", "first"],
            ai_caption="First steps!",
            source_message_id="msg:abc",
        )

        row = chain.insert.call_args[0][0]
        assert row["author_id"] == USER_ID
        assert row["branch_id"] is None
        assert row["assignment_status"] == "unassigned"
        assert row["milestone_type"] == "first steps"
        assert row["message_type"] == "post"
        assert row["source_message_id"] == "msg:abc"
        assert leaf.id == "leaf-9"
        assert leaf.created is True
        assert leaf.has_media is False

    def test_branch_leaf_is_assigned(self):
        chain = _make_supabase_chain([{"id": "leaf-2", "leaf_type": "photo"}])
        SupabaseLeafStore(client=_client_for(chain)).create_leaf(
            author_id=USER_ID, content="", media_urls=["https://cdn/a.jpg"], leaf_type="photo",
            tags=[], milestone_keywords=["birthday"], branch_id="branch-1",
        )
        row = chain.insert.call_args[0][0]
        assert row["assignment_status"] == "assigned"
        assert row["milestone_type"] is None

    def test_unique_violation_returns_existing_leaf(self):
        chain = _make_supabase_chain(
            _UniqueViolation("duplicate key"),
            [{"id": "leaf-1", "leaf_type": "text", "media_urls": []}],
        )
        leaf = SupabaseLeafStore(client=_client_for(chain)).create_leaf(
            author_id=USER_ID, content="hi", media_urls=[], leaf_type="text",
            tags=[], milestone_keywords=[], source_message_id="msg:abc",
        )
        assert leaf.id == "leaf-1"
        assert leaf.created is False

    def test_insert_error_raises_persistence_failure(self):
        chain = _make_supabase_chain(RuntimeError("connection reset"))
        with pytest.raises(PersistenceFailure):
            SupabaseLeafStore(client=_client_for(chain)).create_leaf(
                author_id=USER_ID, content="hi", media_urls=[], leaf_type="text",
                tags=[], milestone_keywords=[],
            )

    def test_empty_insert_result_raises_persistence_failure(self):
        chain = _make_supabase_chain([])
        with pytest.raises(PersistenceFailure):
            SupabaseLeafStore(client=_client_for(chain)).create_leaf(
                author_id=USER_ID, content="hi", media_urls=[], leaf_type="text",
                tags=[], milestone_keywords=[],
            )


class TestSourceMessageIdMigration:
    def test_adds_the_column_the_store_writes(self):
        sql = MIGRATION.read_text().lower()
        assert "add column if not exists source_message_id" in sql

    def test_unique_index_ignores_null_keys(self):
        sql = " ".join(MIGRATION.read_text().lower().split())
        assert "create unique index if not exists leaves_source_message_id_key" in sql
        assert "on leaves (source_message_id) where source_message_id is not null" in sql
