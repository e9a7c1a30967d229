"""
Pydantic models for the ingestion pipeline results.

Models:
  ResolvedRecipient     - identity an inbound address points at
  ClassificationResult  - leaf type chosen for an email, plus tags
  AuthenticationResult  - outcome of the webhook authenticity check
  IngestionOutcome      - the only value returned across the HTTP boundary
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class LeafType(str, Enum):
    PHOTO = "photo"
    VIDEO = "video"
    AUDIO = "audio"
    TEXT = "text"
    MILESTONE = "milestone"


class Confidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class MatchPattern(str, Enum):
    DIRECT_ID = "direct-id"
    PREFIXED_ID = "prefixed-id"
    BARE_UUID = "bare-uuid"
    PERSON_TREE = "person-tree"


class AuthMethod(str, Enum):
    API_KEY = "api-key"
    PROVIDER_SIGNATURE = "provider-signature"
    PROVIDER_IP = "provider-ip"


# ---------------------------------------------------------------------------
# Address resolution
# ---------------------------------------------------------------------------

class ResolvedRecipient(BaseModel):
    """Either a user or a tree, never both."""

    model_config = ConfigDict(frozen=True)

    user_id: Optional[str] = None
    tree_id: Optional[str] = None
    match_pattern: MatchPattern

    @model_validator(mode="after")
    def _exactly_one_identity(self) -> "ResolvedRecipient":
        if bool(self.user_id) == bool(self.tree_id):
            raise ValueError("exactly one of user_id or tree_id must be set")
        return self

    @property
    def is_tree_scoped(self) -> bool:
        return self.tree_id is not None


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

class ClassificationResult(BaseModel):
    leaf_type: LeafType
    confidence: Confidence
    reason: str
    tags: list[str] = Field(default_factory=list)
    milestone_keywords: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Webhook authentication
# ---------------------------------------------------------------------------

class AuthenticationResult(BaseModel):
    is_valid: bool
    method: Optional[AuthMethod] = None
    error: Optional[str] = None


# ---------------------------------------------------------------------------
# HTTP boundary
# ---------------------------------------------------------------------------

class IngestionOutcome(BaseModel):
    """
    Result of one ingestion pass.

    Serialized with camelCase keys (leafId, leafType, hasMedia). The shape is
    part of the webhook contract and must stay stable.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    success: bool
    leaf_id: Optional[str] = None
    leaf_type: Optional[LeafType] = None
    has_media: bool = False
    error: Optional[str] = None
    duplicate: bool = False

    def response_data(self) -> dict:
        """The ``data`` object of a successful webhook response."""
        return self.model_dump(
            mode="json",
            by_alias=True,
            include={"leaf_id", "leaf_type", "has_media", "duplicate"},
        )
