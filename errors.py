"""
Domain errors for the commerce ledger.

Every error carries the HTTP status it maps to and a short machine code.
Buyer-facing messages are short and tied to the field or coupon reason that
caused them; `extra` carries structured context (e.g. an order's current
status) for the response body.
"""
from typing import Any, Dict, Optional


class CommerceError(Exception):
    status_code = 500
    code = "COMMERCE_ERROR"

    def __init__(self, message: str, extra: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.extra = extra or {}


class ValidationError(CommerceError):
    """User-correctable input problem. Never leaves partial state behind."""

    status_code = 400
    code = "VALIDATION_ERROR"


class NotFoundError(CommerceError):
    status_code = 404
    code = "NOT_FOUND"


class PermissionDeniedError(CommerceError):
    status_code = 403
    code = "PERMISSION_DENIED"


class ConflictError(CommerceError):
    """The record was already processed; the caller should refresh, not retry."""

    status_code = 409
    code = "ALREADY_PROCESSED"


class OrderFailedError(CommerceError):
    status_code = 500
    code = "ORDER_FAILED"
