"""Error types raised by the certificate issuance services."""

from typing import Optional


class CertMagicError(Exception):
    """
    Base class for all service errors.

    Each subclass carries the HTTP status the API layer should answer with
    and a short machine-readable code. A single raise site may override the
    status when the same condition means something different in context.
    """

    status_code = 500
    code = "internal_error"

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> dict:
        return {"error": self.message, "code": self.code}


# ==================== Input errors ====================

class InvalidRequest(CertMagicError):
    status_code = 400
    code = "invalid_request"


class InvalidDomain(CertMagicError):
    status_code = 400
    code = "invalid_domain"


class MissingCredentials(CertMagicError):
    status_code = 400
    code = "missing_credentials"


class UnsupportedDnsProvider(CertMagicError):
    status_code = 400
    code = "unsupported_dns_provider"


class InvalidToken(CertMagicError):
    status_code = 400
    code = "invalid_token"


class DomainMismatch(CertMagicError):
    status_code = 400
    code = "domain_mismatch"


# ==================== State errors ====================

class OrderNotReady(CertMagicError):
    """Raised when finalization is attempted on an order that is not 'ready'."""

    status_code = 400
    code = "order_not_ready"

    def __init__(self, message: str, order_status: Optional[str] = None):
        super().__init__(message)
        self.order_status = order_status


class PendingOrderNotFound(CertMagicError):
    status_code = 404
    code = "pending_order_not_found"


class UnknownDomain(CertMagicError):
    status_code = 404
    code = "unknown_domain"


class ChallengeNotFound(CertMagicError):
    status_code = 404
    code = "challenge_not_found"


class IssuanceInProgress(CertMagicError):
    status_code = 409
    code = "issuance_in_progress"


# ==================== Protocol and transport errors ====================

class ChallengeUnavailable(CertMagicError):
    status_code = 502
    code = "challenge_unavailable"


class ChallengeValidationFailed(CertMagicError):
    """The ACME server checked the challenge and did not accept it."""

    status_code = 422
    code = "challenge_validation_failed"

    def __init__(self, message: str, detail: Optional[str] = None):
        super().__init__(message)
        self.detail = detail


class AcmeServerError(CertMagicError):
    """The ACME server answered with an error document or unexpected status."""

    status_code = 502
    code = "acme_server_error"

    def __init__(
        self,
        message: str,
        detail: Optional[str] = None,
        response_status: Optional[int] = None
    ):
        super().__init__(message)
        self.detail = detail
        self.response_status = response_status


class AcmeTransportError(CertMagicError):
    """The ACME server could not be reached (timeout, DNS, connection reset)."""

    status_code = 504
    code = "acme_transport_error"


class DnsProviderError(CertMagicError):
    status_code = 502
    code = "dns_provider_error"


class StorageError(CertMagicError):
    status_code = 500
    code = "storage_error"
