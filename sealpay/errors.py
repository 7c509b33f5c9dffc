"""
SealPay SDK - Error Types
Every failure the core can raise, with the HTTP status it maps to.
"""

from typing import Any, Dict, Optional


class SealPayError(Exception):
    """Base class for all SealPay errors."""

    status_code = 500
    code = "internal_error"

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.__class__.__name__

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.message}


class InputError(SealPayError):
    """Malformed payload, id or payment proof. Caller corrects and retries."""

    status_code = 400
    code = "invalid_input"


class PayloadTooLargeError(InputError):
    status_code = 413
    code = "payload_too_large"


class NotFoundError(SealPayError):
    status_code = 404
    code = "not_found"


class PaymentRequiredError(SealPayError):
    """
    Authoritative check says the content is not paid for (yet).

    Attributes:
        content_id: Content the key was requested for
        intent_status: Current payment intent status, if an intent exists
    """

    status_code = 402
    code = "payment_required"

    def __init__(self, content_id: str, intent_status: Optional[str] = None, message: str = ""):
        super().__init__(message or "Payment required")
        self.content_id = content_id
        self.intent_status = intent_status

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["content_id"] = self.content_id
        data["intent_status"] = self.intent_status
        return data


class IllegalTransitionError(SealPayError):
    status_code = 409
    code = "illegal_transition"


class AuthenticationError(SealPayError):
    """AEAD tag mismatch. Signals tampering or an id-binding bug."""

    status_code = 500
    code = "authentication_failed"


class IntegrityError(SealPayError):
    """Finalized blob without a metadata row, or the inverse. Needs an operator."""

    status_code = 500
    code = "integrity_violation"


class ExternalBackendError(SealPayError):
    """
    Settlement backend unreachable or misbehaving.

    Transient by default: callers retry with backoff. Never interpreted
    as a failed payment.
    """

    status_code = 503
    code = "backend_unavailable"

    def __init__(self, message: str = "", retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable
