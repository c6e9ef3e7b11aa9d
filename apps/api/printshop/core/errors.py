from __future__ import annotations

from typing import Any


class BillingError(Exception):
    """Base error for entitlement and billing operations.

    ``code`` is the machine-readable string returned to clients as ``error``,
    ``status_code`` is the HTTP status the API layer maps it to.
    """

    code = "billing_error"
    status_code = 500

    def __init__(self, message: str, *, code: str | None = None, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details = details or {}


class ValidationError(BillingError):
    code = "validation_error"
    status_code = 400


class NotFoundError(BillingError):
    code = "not_found"
    status_code = 404


class ConflictError(BillingError):
    code = "conflict"
    status_code = 409


class BusinessRuleError(BillingError):
    """Expected rejection the caller can render as a message."""

    code = "business_rule_violation"
    status_code = 422


class ExternalServiceError(BillingError):
    code = "external_service_error"
    status_code = 502

    def __init__(self, message: str, *, operation: str, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.operation = operation


class AuthorizationError(BillingError):
    code = "forbidden"
    status_code = 403
