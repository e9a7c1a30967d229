"""
Ingestion address router.

Endpoints:
  GET /inbound-address              caller's own address (auth: JWT)
  GET /inbound-address?tree_id=...  a tree's person address; the caller must
                                    manage or have created the tree
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from app.auth import get_current_user, verify_tree_manager
from app.config import IngestionConfig, get_ingestion_config

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/inbound-address")
async def get_inbound_address(
    tree_id: Optional[str] = None,
    user_id: str = Depends(get_current_user),
    config: IngestionConfig = Depends(get_ingestion_config),
) -> dict:
    """
    Return the address that mail must be sent to for it to become a leaf.

    Users get ``u-{user_id}@{domain}``. With ``tree_id`` the address is
    ``person-{tree_id}@{domain}`` and leaves are posted as the tree's manager.
    """
    domain = config.primary_domain
    if not domain:
        logger.error("INBOUND_ALLOWED_DOMAINS is not set; cannot hand out addresses")
        raise HTTPException(status_code=503, detail="Email ingestion is not configured")

    if tree_id:
        tree = await verify_tree_manager(tree_id, user_id)
        return {
            "inbound_address": f"{config.person_prefix}{tree['id']}@{domain}",
            "tree_id": tree["id"],
            "person_name": tree.get("person_name"),
        }

    return {
        "inbound_address": f"{config.short_user_prefix}{user_id}@{domain}",
        "user_id": user_id,
    }
