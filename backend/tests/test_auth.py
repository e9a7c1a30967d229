"""
Unit tests for user authentication.
Tests bearer-token verification (remote and local) and tree-manager checks.
"""

import time
from unittest.mock import Mock, patch

import jwt as pyjwt
import pytest
from fastapi import HTTPException

from app.auth import _verify_jwt_locally, get_current_user, verify_tree_manager

TREE_ID = "7a6b5c4d-3e2f-4a1b-8c9d-0e1f2a3b4c5d"
USER_ID = "0b5c3d8e-1f2a-4b6c-9d7e-8f9a0b1c2d3e"
OTHER_ID = "11111111-2222-4333-8444-555555555555"


class TestGetCurrentUser:
    """Remote verification path (no SUPABASE_JWT_SECRET)."""

    @pytest.fixture(autouse=True)
    def no_local_secret(self):
        with patch("app.auth.SUPABASE_JWT_SECRET", None):
            yield

    @pytest.mark.asyncio
    async def test_valid_token_returns_user_id(self):
        with patch("app.auth.supabase") as mock_supabase:
            mock_supabase.auth.get_user.return_value = Mock(user=Mock(id=USER_ID))

            user_id = await get_current_user("Bearer valid.jwt.token")

            assert user_id == USER_ID
            mock_supabase.auth.get_user.assert_called_once_with("valid.jwt.token")

    @pytest.mark.asyncio
    async def test_missing_header_raises_401(self):
        with pytest.raises(HTTPException) as exc_info:
            await get_current_user(None)

        assert exc_info.value.status_code == 401
        assert "Not authenticated" in str(exc_info.value.detail)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("header", ["valid.jwt.token", "Token abc", "Bearer ", "Bearer a b"])
    async def test_malformed_header_raises_401(self, header):
        with pytest.raises(HTTPException) as exc_info:
            await get_current_user(header)

        assert exc_info.value.status_code == 401
        assert "Invalid authentication" in str(exc_info.value.detail)

    @pytest.mark.asyncio
    async def test_rejected_token_raises_401(self):
        with patch("app.auth.supabase") as mock_supabase:
            mock_supabase.auth.get_user.side_effect = Exception("invalid JWT")

            with pytest.raises(HTTPException) as exc_info:
                await get_current_user("Bearer bad.jwt.token")

            assert exc_info.value.status_code == 401
            assert exc_info.value.detail == "Invalid token"

    @pytest.mark.asyncio
    async def test_expired_token_raises_401(self):
        with patch("app.auth.supabase") as mock_supabase:
            mock_supabase.auth.get_user.side_effect = Exception("Token expired")

            with pytest.raises(HTTPException) as exc_info:
                await get_current_user("Bearer old.jwt.token")

            assert exc_info.value.status_code == 401
            assert exc_info.value.detail == "Token expired"

    @pytest.mark.asyncio
    async def test_no_user_in_response_raises_401(self):
        with patch("app.auth.supabase") as mock_supabase:
            mock_supabase.auth.get_user.return_value = Mock(user=None)

            with pytest.raises(HTTPException) as exc_info:
                await get_current_user("Bearer valid.jwt.token")

            assert exc_info.value.status_code == 401


class TestVerifyJwtLocally:
    """Local HS256 verification; tokens are minted with PyJWT."""

    TEST_SECRET = "test-jwt-secret-for-unit-tests"

    def _make_token(self, payload: dict, secret: str = TEST_SECRET) -> str:
        return pyjwt.encode(payload, secret, algorithm="HS256")

    def test_valid_token_returns_sub(self):
        token = self._make_token({"sub": USER_ID, "aud": "authenticated", "exp": int(time.time()) + 3600})

        with patch("app.auth.SUPABASE_JWT_SECRET", self.TEST_SECRET):
            assert _verify_jwt_locally(token) == USER_ID

    @pytest.mark.asyncio
    async def test_get_current_user_uses_local_path_when_secret_set(self):
        token = self._make_token({"sub": USER_ID, "exp": int(time.time()) + 3600})

        with patch("app.auth.SUPABASE_JWT_SECRET", self.TEST_SECRET), \
                patch("app.auth.supabase") as mock_supabase:
            assert await get_current_user(f"Bearer {token}") == USER_ID
            mock_supabase.auth.get_user.assert_not_called()

    def test_expired_token(self):
        token = self._make_token({"sub": USER_ID, "exp": int(time.time()) - 10})

        with patch("app.auth.SUPABASE_JWT_SECRET", self.TEST_SECRET):
            with pytest.raises(HTTPException) as exc_info:
                _verify_jwt_locally(token)

        assert exc_info.value.status_code == 401
        assert exc_info.value.detail == "Token expired"

    def test_wrong_secret(self):
        token = self._make_token({"sub": USER_ID, "exp": int(time.time()) + 3600}, secret="other")

        with patch("app.auth.SUPABASE_JWT_SECRET", self.TEST_SECRET):
            with pytest.raises(HTTPException) as exc_info:
                _verify_jwt_locally(token)

        assert exc_info.value.detail == "Invalid token"

    def test_missing_sub_claim(self):
        token = self._make_token({"role": "authenticated", "exp": int(time.time()) + 3600})

        with patch("app.auth.SUPABASE_JWT_SECRET", self.TEST_SECRET):
            with pytest.raises(HTTPException) as exc_info:
                _verify_jwt_locally(token)

        assert exc_info.value.detail == "Invalid token"

    def test_garbage_token(self):
        with patch("app.auth.SUPABASE_JWT_SECRET", self.TEST_SECRET):
            with pytest.raises(HTTPException) as exc_info:
                _verify_jwt_locally("not.a.real.jwt.at.all")

        assert exc_info.value.status_code == 401


class TestVerifyTreeManager:
    def _tree(self, **overrides) -> dict:
        row = {"id": TREE_ID, "person_name": "Nana", "managed_by": [USER_ID], "created_by": OTHER_ID}
        row.update(overrides)
        return row

    @pytest.mark.asyncio
    async def test_manager_gets_tree_row(self):
        with patch("app.auth.supabase_admin") as mock_supabase:
            mock_supabase.table.return_value.select.return_value.eq.return_value.execute.return_value = Mock(
                data=[self._tree()]
            )

            tree = await verify_tree_manager(TREE_ID, USER_ID)

            assert tree["person_name"] == "Nana"
            mock_supabase.table.assert_called_once_with("trees")

    @pytest.mark.asyncio
    async def test_creator_is_allowed(self):
        with patch("app.auth.supabase_admin") as mock_supabase:
            mock_supabase.table.return_value.select.return_value.eq.return_value.execute.return_value = Mock(
                data=[self._tree(managed_by=None, created_by=USER_ID)]
            )

            tree = await verify_tree_manager(TREE_ID, USER_ID)

            assert tree["id"] == TREE_ID

    @pytest.mark.asyncio
    async def test_tree_not_found_raises_404(self):
        with patch("app.auth.supabase_admin") as mock_supabase:
            mock_supabase.table.return_value.select.return_value.eq.return_value.execute.return_value = Mock(
                data=[]
            )

            with pytest.raises(HTTPException) as exc_info:
                await verify_tree_manager(TREE_ID, USER_ID)

            assert exc_info.value.status_code == 404

    @pytest.mark.asyncio
    async def test_non_uuid_tree_id_raises_404_without_query(self):
        with patch("app.auth.supabase_admin") as mock_supabase:
            with pytest.raises(HTTPException) as exc_info:
                await verify_tree_manager("not-a-tree", USER_ID)

            assert exc_info.value.status_code == 404
            mock_supabase.table.assert_not_called()

    @pytest.mark.asyncio
    async def test_other_user_raises_403(self):
        with patch("app.auth.supabase_admin") as mock_supabase:
            mock_supabase.table.return_value.select.return_value.eq.return_value.execute.return_value = Mock(
                data=[self._tree(managed_by=[OTHER_ID])]
            )

            with pytest.raises(HTTPException) as exc_info:
                await verify_tree_manager(TREE_ID, USER_ID)

            assert exc_info.value.status_code == 403
            assert "not authorized" in str(exc_info.value.detail).lower()

    @pytest.mark.asyncio
    async def test_database_error_raises_500(self):
        with patch("app.auth.supabase_admin") as mock_supabase:
            mock_supabase.table.return_value.select.return_value.eq.return_value.execute.side_effect = (
                Exception("Database error")
            )

            with pytest.raises(HTTPException) as exc_info:
                await verify_tree_manager(TREE_ID, USER_ID)

            assert exc_info.value.status_code == 500
