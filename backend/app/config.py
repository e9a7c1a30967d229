"""
Ingestion configuration.

All settings for the inbound email pipeline are read from the environment
exactly once and frozen into an IngestionConfig. Components take the config
through their constructors; nothing inside the pipeline calls os.getenv.

Environment variables
---------------------
INBOUND_ALLOWED_DOMAINS            Comma-separated recipient domains
                                   (substring match, so subdomains pass).
INBOUND_USER_PREFIX                Local-part prefix for direct ids (default: "user").
INBOUND_SHORT_USER_PREFIX          Local-part prefix for prefixed ids (default: "u-").
INBOUND_PERSON_PREFIX              Local-part prefix for tree-scoped ids (default: "person-").
WEBHOOK_API_KEY                    Shared key expected in the X-Api-Key header.
WEBHOOK_SIGNING_KEY                HMAC signing key of the relay provider.
                                   MAILGUN_WEBHOOK_SIGNING_KEY is accepted as a legacy alias.
WEBHOOK_SIGNATURE_MAX_AGE_SECONDS  Freshness window for signed timestamps (default: 300).
WEBHOOK_IP_PREFIXES                Comma-separated source IP prefixes of the relay provider.
                                   Empty disables the IP allow-list.
MAX_ATTACHMENT_SIZE                Per-file limit in bytes (default: 10 MB).
MAX_EMAIL_SIZE                     Request body limit in bytes (default: 10 MB).
MAX_CONTENT_LENGTH                 Leaf content is truncated to this many characters.
MAX_CAPTION_LENGTH                 Caption length before "..." is appended (default: 100).
MILESTONE_KEYWORDS                 Comma-separated keywords that mark a milestone leaf.
MEDIA_BUCKET                       Storage bucket for uploaded media (default: "media").
PROVIDER_API_KEY                   Relay provider API key, used to fetch stored messages.
                                   MAILGUN_API_KEY is accepted as a legacy alias.
PROVIDER_STORAGE_HOSTS             Hosts allowed in store-and-notify message URLs.
"""

import logging
import os
from functools import lru_cache

from pydantic import BaseModel, ConfigDict

logger = logging.getLogger(__name__)

_MB = 1024 * 1024

DEFAULT_MILESTONE_KEYWORDS: tuple[str, ...] = (
    # general
    "milestone",
    "achievement",
    "first",
    # life events
    "birthday",
    "anniversary",
    "born",
    "wedding",
    "engaged",
    "engagement",
    "graduation",
    "graduated",
    "retired",
    "retirement",
    "new home",
    # achievements
    "award",
    "promoted",
    "promotion",
    "won",
    # ages
    "years old",
    "months old",
    "turned",
    # family milestones
    "first steps",
    "first word",
    "first day",
    "lost a tooth",
    "christening",
    "baptism",
)


class IngestionConfig(BaseModel):
    """Immutable settings for the inbound email pipeline."""

    model_config = ConfigDict(frozen=True)

    allowed_domains: tuple[str, ...] = ()
    user_prefix: str = "user"
    short_user_prefix: str = "u-"
    person_prefix: str = "person-"

    webhook_api_key: str | None = None
    webhook_signing_key: str | None = None
    signature_max_age_seconds: int = 300
    provider_ip_prefixes: tuple[str, ...] = ()

    max_attachment_size: int = 10 * _MB
    max_email_size: int = 10 * _MB
    max_content_length: int = 5000
    max_caption_length: int = 100

    milestone_keywords: tuple[str, ...] = DEFAULT_MILESTONE_KEYWORDS
    media_bucket: str = "media"

    provider_api_key: str | None = None
    provider_storage_hosts: tuple[str, ...] = ("api.mailgun.net", "storage.mailgun.net")

    @property
    def primary_domain(self) -> str | None:
        """The domain used when handing out ingestion addresses."""
        return self.allowed_domains[0] if self.allowed_domains else None


def _split_list(raw: str | None, lower: bool = True) -> tuple[str, ...]:
    if not raw:
        return ()
    items = [item.strip() for item in raw.split(",")]
    return tuple(item.lower() if lower else item for item in items if item)


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning(f"Ignoring non-numeric {name}={raw!r}; using {default}")
        return default
    if value < 0:
        logger.warning(f"Ignoring negative {name}={raw!r}; using {default}")
        return default
    return value


def load_ingestion_config_from_env() -> IngestionConfig:
    """
    Build an IngestionConfig from environment variables.

    Unset variables keep their defaults. Numeric variables that do not parse
    are logged and replaced by their defaults rather than failing startup.
    """
    defaults = IngestionConfig()

    keywords = _split_list(os.getenv("MILESTONE_KEYWORDS"))
    storage_hosts = _split_list(os.getenv("PROVIDER_STORAGE_HOSTS"))

    config = IngestionConfig(
        allowed_domains=_split_list(os.getenv("INBOUND_ALLOWED_DOMAINS")),
        user_prefix=(os.getenv("INBOUND_USER_PREFIX") or defaults.user_prefix).lower(),
        short_user_prefix=(
            os.getenv("INBOUND_SHORT_USER_PREFIX") or defaults.short_user_prefix
        ).lower(),
        person_prefix=(os.getenv("INBOUND_PERSON_PREFIX") or defaults.person_prefix).lower(),
        webhook_api_key=os.getenv("WEBHOOK_API_KEY") or None,
        webhook_signing_key=(
            os.getenv("WEBHOOK_SIGNING_KEY")
            or os.getenv("MAILGUN_WEBHOOK_SIGNING_KEY")
            or None
        ),
        signature_max_age_seconds=_int_env(
            "WEBHOOK_SIGNATURE_MAX_AGE_SECONDS", defaults.signature_max_age_seconds
        ),
        provider_ip_prefixes=_split_list(os.getenv("WEBHOOK_IP_PREFIXES"), lower=False),
        max_attachment_size=_int_env("MAX_ATTACHMENT_SIZE", defaults.max_attachment_size),
        max_email_size=_int_env("MAX_EMAIL_SIZE", defaults.max_email_size),
        max_content_length=_int_env("MAX_CONTENT_LENGTH", defaults.max_content_length),
        max_caption_length=_int_env("MAX_CAPTION_LENGTH", defaults.max_caption_length),
        milestone_keywords=keywords or defaults.milestone_keywords,
        media_bucket=os.getenv("MEDIA_BUCKET") or defaults.media_bucket,
        provider_api_key=(
            os.getenv("PROVIDER_API_KEY") or os.getenv("MAILGUN_API_KEY") or None
        ),
        provider_storage_hosts=storage_hosts or defaults.provider_storage_hosts,
    )

    if not config.allowed_domains:
        logger.warning(
            "INBOUND_ALLOWED_DOMAINS is not set; every inbound address will be rejected"
        )
    if not (config.webhook_api_key or config.webhook_signing_key or config.provider_ip_prefixes):
        logger.warning(
            "No webhook credentials configured (WEBHOOK_API_KEY / WEBHOOK_SIGNING_KEY / "
            "WEBHOOK_IP_PREFIXES); all inbound webhook requests will be rejected"
        )
    return config


@lru_cache
def get_ingestion_config() -> IngestionConfig:
    """Process-wide config, loaded on first use and never reloaded."""
    return load_ingestion_config_from_env()
