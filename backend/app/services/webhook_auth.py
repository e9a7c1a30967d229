"""
Webhook authenticator.

Decides whether an inbound webhook request really comes from the relay
provider, using request metadata only (headers, content type, source IP).
It runs before the body is parsed.

Methods, in priority order:

  1. api-key             X-Api-Key header == WEBHOOK_API_KEY
  2. provider-signature  X-Signature == HMAC-SHA256(WEBHOOK_SIGNING_KEY,
                         X-Timestamp + X-Token), timestamp within the
                         freshness window. The X-Mailgun-* header names are
                         accepted too.
  3. provider-ip         source IP starts with a WEBHOOK_IP_PREFIXES entry.
                         Form posts only: JSON callers must present a key or
                         a signature.

A method is skipped when its secret is unconfigured or the request carries no
credential for it. The first method that passes authenticates the request.
Failures return one generic error; the failing check is only logged.
"""

import hashlib
import hmac
import logging
import time
from typing import Callable, Mapping, Optional

from app.config import IngestionConfig
from app.errors import AuthenticationFailure
from app.models.ingestion import AuthenticationResult, AuthMethod
from app.services.inbound_email_adapter import FORM_CONTENT_TYPES, media_type

logger = logging.getLogger(__name__)

GENERIC_AUTH_ERROR = AuthenticationFailure.public_message

_SIGNATURE_HEADERS = ("x-signature", "x-mailgun-signature-256")
_TIMESTAMP_HEADERS = ("x-timestamp", "x-mailgun-timestamp")
_TOKEN_HEADERS = ("x-token", "x-mailgun-token")


def _first_header(headers: Mapping[str, str], names: tuple[str, ...]) -> Optional[str]:
    for name in names:
        value = headers.get(name)
        if value:
            return value.strip()
    return None


def client_ip_from(headers: Mapping[str, str], peer_ip: Optional[str]) -> Optional[str]:
    """First X-Forwarded-For hop, else the socket peer."""
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return peer_ip


def compute_signature(signing_key: str, timestamp: str, token: str) -> str:
    return hmac.new(
        signing_key.encode(), f"{timestamp}{token}".encode(), hashlib.sha256
    ).hexdigest()


class WebhookAuthenticator:
    def __init__(self, config: IngestionConfig, clock: Callable[[], float] = time.time):
        self.api_key = config.webhook_api_key
        self.signing_key = config.webhook_signing_key
        self.max_age_seconds = config.signature_max_age_seconds
        self.ip_prefixes = config.provider_ip_prefixes
        self._clock = clock

    def authenticate(
        self,
        headers: Mapping[str, str],
        content_type: Optional[str] = None,
        client_ip: Optional[str] = None,
    ) -> AuthenticationResult:
        # starlette Headers are case-insensitive; plain dicts from callers may not be
        headers = {k.lower(): v for k, v in headers.items()}
        kind = media_type(content_type)

        checks: list[tuple[AuthMethod, Callable[[], Optional[bool]]]] = [
            (AuthMethod.API_KEY, lambda: self._check_api_key(headers)),
            (AuthMethod.PROVIDER_SIGNATURE, lambda: self._check_signature(headers)),
        ]
        if kind in FORM_CONTENT_TYPES:
            checks.append(
                (AuthMethod.PROVIDER_IP, lambda: self._check_ip(client_ip_from(headers, client_ip)))
            )

        attempted: list[str] = []
        for method, check in checks:
            passed = check()
            if passed is None:
                continue
            if passed:
                return AuthenticationResult(is_valid=True, method=method)
            attempted.append(method.value)

        logger.warning(
            f"Webhook authentication failed (content_type={kind!r}, "
            f"failed_checks={attempted or 'none-applicable'}, "
            f"ip={client_ip_from(headers, client_ip)!r})"
        )
        return AuthenticationResult(is_valid=False, error=GENERIC_AUTH_ERROR)

    # ------------------------------------------------------------------
    # Individual checks: None = not applicable, True/False = verdict
    # ------------------------------------------------------------------

    def _check_api_key(self, headers: Mapping[str, str]) -> Optional[bool]:
        provided = headers.get("x-api-key")
        if not provided or not self.api_key:
            return None
        return hmac.compare_digest(provided.encode(), self.api_key.encode())

    def _check_signature(self, headers: Mapping[str, str]) -> Optional[bool]:
        signature = _first_header(headers, _SIGNATURE_HEADERS)
        timestamp = _first_header(headers, _TIMESTAMP_HEADERS)
        token = _first_header(headers, _TOKEN_HEADERS)
        if not self.signing_key or not (signature or timestamp or token):
            return None
        if not (signature and timestamp and token):
            logger.warning("Incomplete provider signature headers")
            return False

        if not self._is_fresh(timestamp):
            logger.warning(f"Rejecting stale or invalid signature timestamp {timestamp!r}")
            return False

        expected = compute_signature(self.signing_key, timestamp, token)
        return hmac.compare_digest(signature.lower().encode(), expected.encode())

    def _is_fresh(self, timestamp: str) -> bool:
        try:
            sent_at = float(timestamp)
        except ValueError:
            return False
        return abs(self._clock() - sent_at) <= self.max_age_seconds

    def _check_ip(self, ip: Optional[str]) -> Optional[bool]:
        if not self.ip_prefixes:
            return None
        if not ip:
            return False
        return any(ip.startswith(prefix) for prefix in self.ip_prefixes)
