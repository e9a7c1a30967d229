"""
Unit tests for webhook authentication.
"""

from app.config import IngestionConfig
from app.models.ingestion import AuthMethod
from app.services.webhook_auth import (
    GENERIC_AUTH_ERROR,
    WebhookAuthenticator,
    client_ip_from,
    compute_signature,
)

NOW = 1_700_000_000.0
FORM = "application/x-www-form-urlencoded"
JSON = "application/json"


def _authenticator(**overrides) -> WebhookAuthenticator:
    config = IngestionConfig(**overrides)
    return WebhookAuthenticator(config, clock=lambda: NOW)


def _signed_headers(key: str = "signing-key", timestamp: float = NOW, token: str = "tok") -> dict:
    ts = str(int(timestamp))
    return {
        "X-Signature": compute_signature(key, ts, token),
        "X-Timestamp": ts,
        "X-Token": token,
    }


class TestApiKey:
    def test_valid_api_key(self):
        result = _authenticator(webhook_api_key="secret").authenticate(
            {"X-Api-Key": "secret"}, JSON
        )
        assert result.is_valid
        assert result.method == AuthMethod.API_KEY

    def test_wrong_api_key(self):
        result = _authenticator(webhook_api_key="secret").authenticate(
            {"X-Api-Key": "nope"}, JSON
        )
        assert not result.is_valid
        assert result.error == GENERIC_AUTH_ERROR

    def test_api_key_ignored_when_unconfigured(self):
        result = _authenticator().authenticate({"X-Api-Key": "anything"}, JSON)
        assert not result.is_valid


class TestSignature:
    def test_valid_signature(self):
        result = _authenticator(webhook_signing_key="signing-key").authenticate(
            _signed_headers(), JSON
        )
        assert result.is_valid
        assert result.method == AuthMethod.PROVIDER_SIGNATURE

    def test_mailgun_header_names(self):
        headers = {
            "X-Mailgun-Signature-256": compute_signature("signing-key", str(int(NOW)), "t"),
            "X-Mailgun-Timestamp": str(int(NOW)),
            "X-Mailgun-Token": "t",
        }
        result = _authenticator(webhook_signing_key="signing-key").authenticate(headers, FORM)
        assert result.is_valid

    def test_tampered_signature(self):
        headers = _signed_headers()
        headers["X-Token"] = "other-token"
        result = _authenticator(webhook_signing_key="signing-key").authenticate(headers, JSON)
        assert not result.is_valid
        assert result.error == GENERIC_AUTH_ERROR

    def test_wrong_key(self):
        result = _authenticator(webhook_signing_key="signing-key").authenticate(
            _signed_headers(key="other-key"), JSON
        )
        assert not result.is_valid

    def test_stale_timestamp_is_rejected(self):
        result = _authenticator(webhook_signing_key="signing-key").authenticate(
            _signed_headers(timestamp=NOW - 301), JSON
        )
        assert not result.is_valid

    def test_future_timestamp_is_rejected(self):
        result = _authenticator(webhook_signing_key="signing-key").authenticate(
            _signed_headers(timestamp=NOW + 301), JSON
        )
        assert not result.is_valid

    def test_timestamp_inside_window_is_accepted(self):
        result = _authenticator(webhook_signing_key="signing-key").authenticate(
            _signed_headers(timestamp=NOW - 299), JSON
        )
        assert result.is_valid

    def test_non_numeric_timestamp(self):
        headers = _signed_headers()
        headers["X-Timestamp"] = "yesterday"
        headers["X-Signature"] = compute_signature("signing-key", "yesterday", "tok")
        result = _authenticator(webhook_signing_key="signing-key").authenticate(headers, JSON)
        assert not result.is_valid

    def test_incomplete_signature_headers(self):
        headers = _signed_headers()
        del headers["X-Token"]
        result = _authenticator(webhook_signing_key="signing-key").authenticate(headers, JSON)
        assert not result.is_valid


class TestIpAllowList:
    def test_allowed_ip_for_form_post(self):
        result = _authenticator(provider_ip_prefixes=("198.51.100.",)).authenticate(
            {}, FORM, client_ip="198.51.100.7"
        )
        assert result.is_valid
        assert result.method == AuthMethod.PROVIDER_IP

    def test_multipart_with_boundary_counts_as_form(self):
        result = _authenticator(provider_ip_prefixes=("198.51.100.",)).authenticate(
            {}, "multipart/form-data; boundary=abc", client_ip="198.51.100.7"
        )
        assert result.is_valid

    def test_ip_not_considered_for_json(self):
        result = _authenticator(provider_ip_prefixes=("198.51.100.",)).authenticate(
            {}, JSON, client_ip="198.51.100.7"
        )
        assert not result.is_valid

    def test_forwarded_for_first_hop_is_used(self):
        result = _authenticator(provider_ip_prefixes=("198.51.100.",)).authenticate(
            {"X-Forwarded-For": "198.51.100.9, 10.0.0.1"}, FORM, client_ip="10.0.0.1"
        )
        assert result.is_valid

    def test_unlisted_ip(self):
        result = _authenticator(provider_ip_prefixes=("198.51.100.",)).authenticate(
            {}, FORM, client_ip="203.0.113.5"
        )
        assert not result.is_valid


class TestPriority:
    def test_valid_api_key_wins_over_bad_signature(self):
        headers = {"X-Api-Key": "secret", **_signed_headers(key="wrong")}
        result = _authenticator(
            webhook_api_key="secret", webhook_signing_key="signing-key"
        ).authenticate(headers, JSON)
        assert result.is_valid
        assert result.method == AuthMethod.API_KEY

    def test_signature_succeeds_after_wrong_api_key(self):
        headers = {"X-Api-Key": "wrong", **_signed_headers()}
        result = _authenticator(
            webhook_api_key="secret", webhook_signing_key="signing-key"
        ).authenticate(headers, JSON)
        assert result.is_valid
        assert result.method == AuthMethod.PROVIDER_SIGNATURE

    def test_no_credentials_at_all(self):
        result = _authenticator(webhook_api_key="secret").authenticate({}, JSON)
        assert not result.is_valid
        assert result.error == GENERIC_AUTH_ERROR


class TestClientIpFrom:
    def test_peer_ip_without_forwarding(self):
        assert client_ip_from({}, "10.1.2.3") == "10.1.2.3"

    def test_forwarded_header(self):
        assert client_ip_from({"x-forwarded-for": " 1.2.3.4 ,5.6.7.8"}, "10.1.2.3") == "1.2.3.4"
