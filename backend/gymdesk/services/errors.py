# Overview: Error kinds and the discriminated result returned by state-changing services.

"""
Service Errors and Operation Results

WHY: Enrollment, payment and refund callers need to branch on *why* an
operation failed (render "coupon fully redeemed" vs "try again later")
without parsing exception messages or catching stack traces.

DESIGN PRINCIPLES:
- Inside a unit of work, business-rule failures are raised as ServiceError
  so the transaction unwinds in one place
- At the service boundary, run_transaction converts them to OperationResult
- Storage failures become TRANSACTION_ABORTED with retryable=True
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


# =============================================================================
# ERROR KINDS (CONSTANTS)
# =============================================================================

NOT_FOUND = "NOT_FOUND"
USAGE_LIMIT_EXCEEDED = "USAGE_LIMIT_EXCEEDED"
PLAN_NOT_APPLICABLE = "PLAN_NOT_APPLICABLE"
BELOW_MINIMUM_PURCHASE = "BELOW_MINIMUM_PURCHASE"
INVALID_STATE = "INVALID_STATE"
TRANSACTION_ABORTED = "TRANSACTION_ABORTED"

ERROR_KINDS = [
    NOT_FOUND,
    USAGE_LIMIT_EXCEEDED,
    PLAN_NOT_APPLICABLE,
    BELOW_MINIMUM_PURCHASE,
    INVALID_STATE,
    TRANSACTION_ABORTED,
]

# HTTP status per error kind, used by the routes layer
HTTP_STATUS_BY_KIND = {
    NOT_FOUND: 404,
    USAGE_LIMIT_EXCEEDED: 409,
    PLAN_NOT_APPLICABLE: 400,
    BELOW_MINIMUM_PURCHASE: 400,
    INVALID_STATE: 409,
    TRANSACTION_ABORTED: 503,
}


class ServiceError(Exception):
    """Business-rule failure raised inside a unit of work."""

    def __init__(self, kind: str, message: str):
        super().__init__(message)
        self.kind = kind
        self.message = message


class CouponError(ServiceError):
    """Raised when a coupon cannot be redeemed."""
    pass


class EnrollmentError(ServiceError):
    """Raised for enrollment failures not owned by another service."""
    pass


class InvoiceError(ServiceError):
    """Raised for invoice creation and state-transition errors."""
    pass


class ReconciliationError(ServiceError):
    """Raised for payment, refund and webhook errors."""
    pass


@dataclass
class OperationResult:
    """
    Discriminated success/failure payload.

    ok=True carries value; ok=False carries error_kind and message.
    retryable is only ever True for TRANSACTION_ABORTED.
    """
    ok: bool
    value: Any = None
    error_kind: str | None = None
    message: str | None = None
    retryable: bool = False

    @classmethod
    def success(cls, value: Any = None) -> "OperationResult":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, kind: str, message: str, *, retryable: bool = False) -> "OperationResult":
        return cls(ok=False, error_kind=kind, message=message, retryable=retryable)

    @property
    def http_status(self) -> int:
        if self.ok:
            return 200
        return HTTP_STATUS_BY_KIND.get(self.error_kind, 400)

    def error_dict(self) -> dict:
        return {
            "error": self.message,
            "error_kind": self.error_kind,
            "retryable": self.retryable,
        }
