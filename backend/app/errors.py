"""
Error taxonomy for the inbound email pipeline.

Every terminal failure is an IngestionError carrying the HTTP status and a
fixed public message. The webhook router turns these into the canonical
error body; details stay in the server log.

AttachmentTooLarge and AttachmentUploadFailed are per-file and never reach
the HTTP boundary: the attachment handler catches them and degrades.
"""


class IngestionError(Exception):
    """Base class for pipeline failures."""

    status_code: int = 500
    code: str = "internal_error"
    public_message: str = "Internal server error"

    def __init__(self, detail: str | None = None):
        # detail is for logs only
        super().__init__(detail or self.public_message)
        self.detail = detail or self.public_message


class AuthenticationFailure(IngestionError):
    status_code = 401
    code = "authentication_failure"
    public_message = "Authentication failed"


class UnsupportedContentType(IngestionError):
    status_code = 400
    code = "unsupported_content_type"
    public_message = "Unsupported content type"


class MalformedPayload(IngestionError):
    status_code = 400
    code = "malformed_payload"
    public_message = "Invalid email payload"


class PayloadTooLarge(IngestionError):
    status_code = 413
    code = "payload_too_large"
    public_message = "Email exceeds the maximum allowed size"


class UnrecognizedAddressScheme(IngestionError):
    status_code = 400
    code = "unrecognized_address_scheme"
    public_message = "Invalid email address format"


class IdentityNotFound(IngestionError):
    status_code = 404
    code = "identity_not_found"
    public_message = "Recipient not found"


class StoredMessageUnavailable(IngestionError):
    status_code = 502
    code = "stored_message_unavailable"
    public_message = "Failed to retrieve message"


class PersistenceFailure(IngestionError):
    status_code = 500
    code = "persistence_failure"
    public_message = "Failed to create leaf"


class AttachmentError(IngestionError):
    """Per-file failure; downgraded by the attachment handler."""

    code = "attachment_error"

    def __init__(self, filename: str, detail: str | None = None):
        super().__init__(detail or f"{self.code}: {filename}")
        self.filename = filename


class AttachmentTooLarge(AttachmentError):
    code = "attachment_too_large"


class AttachmentUploadFailed(AttachmentError):
    code = "attachment_upload_failed"
