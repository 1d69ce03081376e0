"""Billing error taxonomy.

Each error carries the HTTP status it maps to and optional extra fields that
are merged into the error envelope.
"""

from typing import Any, Optional


class BillingError(Exception):
    """Base class for billing failures."""

    status_code = 500

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(BillingError):
    """Missing or malformed input, or a business rule rejected the request."""
    status_code = 400


class AuthorizationError(BillingError):
    """Caller acted on a resource they do not own."""
    status_code = 403


class NotFoundError(BillingError):
    status_code = 404


class ConflictError(BillingError):
    """Request conflicts with current state (duplicate, exhausted, terminal)."""
    status_code = 409


class PaymentFailedError(BillingError):
    status_code = 402


class InternalError(BillingError):
    status_code = 500
