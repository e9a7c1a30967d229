"""
Authentication for user-facing endpoints (Supabase JWT).

The webhook endpoints do not use this module; they authenticate the relay
provider in app.services.webhook_auth.

- get_current_user verifies the bearer token locally (python-jose, HS256) when
  SUPABASE_JWT_SECRET is set and asks the Supabase Auth API otherwise.
- verify_tree_manager checks that the caller may hand out a tree's
  ingestion address and returns the tree row.
"""

import logging
import os
from typing import Optional

from fastapi import Header, HTTPException
from jose import ExpiredSignatureError, JWTError, jwt

from app.db import supabase, supabase_admin
from app.services.address_resolver import is_uuid

logger = logging.getLogger(__name__)

# Loaded once at import. Without it tokens are verified remotely.
SUPABASE_JWT_SECRET: Optional[str] = os.environ.get("SUPABASE_JWT_SECRET") or None


async def get_current_user(authorization: Optional[str] = Header(None)) -> str:
    """
    Return the user id (JWT ``sub``) of the bearer token.

    Raises:
        HTTPException: 401 if the header is missing or the token is invalid or expired
    """
    if not authorization:
        raise HTTPException(status_code=401, detail="Not authenticated")

    scheme, _, token = authorization.partition(" ")
    if scheme != "Bearer" or not token or " " in token:
        raise HTTPException(status_code=401, detail="Invalid authentication credentials")

    if SUPABASE_JWT_SECRET:
        return _verify_jwt_locally(token)
    return await _verify_jwt_remotely(token)


def _verify_jwt_locally(token: str) -> str:
    """HS256 verification against the project's JWT secret; no network call."""
    try:
        payload = jwt.decode(
            token,
            SUPABASE_JWT_SECRET,
            algorithms=["HS256"],
            # Supabase tokens carry the "authenticated" audience; not checked here
            options={"verify_aud": False},
        )
    except ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid token")

    user_id: Optional[str] = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token")
    return user_id


async def _verify_jwt_remotely(token: str) -> str:
    """Ask the Supabase Auth API; used when SUPABASE_JWT_SECRET is unset."""
    try:
        response = supabase.auth.get_user(token)
    except Exception as e:
        detail = "Token expired" if "expired" in str(e).lower() else "Invalid token"
        raise HTTPException(status_code=401, detail=detail)

    if not response or not response.user:
        raise HTTPException(status_code=401, detail="Invalid token")
    return response.user.id


async def verify_tree_manager(tree_id: str, user_id: str) -> dict:
    """
    Verify that the authenticated user manages (or created) the specified tree
    and return the tree row.

    Args:
        tree_id: ID of the tree to check
        user_id: ID of the authenticated user

    Returns:
        The tree row dict (id, person_name, managed_by, created_by).

    Raises:
        HTTPException: 404 if tree not found, 403 if the user neither manages nor
            created it, 500 on database error
    """
    if not is_uuid(tree_id):
        raise HTTPException(status_code=404, detail="Tree not found")

    try:
        result = (
            supabase_admin.table("trees")
            .select("id, person_name, managed_by, created_by")
            .eq("id", tree_id)
            .execute()
        )

        if not result.data:
            raise HTTPException(
                status_code=404,
                detail="Tree not found"
            )

        tree = result.data[0]

        managers = tree.get("managed_by") or []
        if user_id not in managers and tree.get("created_by") != user_id:
            raise HTTPException(
                status_code=403,
                detail="You are not authorized to manage this tree"
            )

        return tree

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Failed to verify tree manager for {tree_id!r}: {e}")
        raise HTTPException(
            status_code=500,
            detail="Failed to verify tree access"
        )
