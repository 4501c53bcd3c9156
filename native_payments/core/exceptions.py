"""
Service-level exceptions.

Every error carries a machine-readable ``error_code`` and the HTTP status the
API layer should answer with, so routes never translate errors by hand.
"""
from typing import Any, Dict, Optional


class PaymentSystemError(Exception):
    """Base exception for domain errors raised by the services."""

    http_status = 500
    default_code = "payment_system_error"

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        **details: Any,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.default_code
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for API responses."""
        body: Dict[str, Any] = {
            "code": self.error_code,
            "message": self.message,
            "type": self.__class__.__name__,
        }
        if self.details:
            body["details"] = self.details
        return {"error": body}


class ValidationError(PaymentSystemError):
    """Request is well-formed but violates a business rule."""

    http_status = 400
    default_code = "validation_error"


class NotFoundError(PaymentSystemError):
    """Referenced entity does not exist."""

    http_status = 404
    default_code = "not_found"

    def __init__(self, entity: str, entity_id: str):
        super().__init__(
            f"{entity} {entity_id} not found",
            error_code=f"{entity.lower().replace(' ', '_')}_not_found",
            entity_id=entity_id,
        )


class ConflictError(PaymentSystemError):
    """Operation conflicts with the entity's current state."""

    http_status = 409
    default_code = "conflict"


class PaymentDeclinedError(PaymentSystemError):
    """The provider refused the charge."""

    http_status = 402
    default_code = "payment_declined"


class ProviderUnavailableError(PaymentSystemError):
    """The provider could not be reached; the request may be retried."""

    http_status = 502
    default_code = "provider_unavailable"
