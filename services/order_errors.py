"""
============================================================================
Canteen Order Engine - Error Taxonomy
============================================================================

Reliability Level: L6 Critical (Order Integrity)
Traceability: Every error carries a stable error_code for audit

Four families of failure, each with a distinct propagation rule:

    VALIDATION      malformed input, rejected before touching the store
    POLICY          expected, user-facing refusals (cutoff, restriction...)
                    logged at INFO, never coalesced into a generic failure
    CONFLICT        a concurrent transition won the race; retried a bounded
                    number of times, then surfaced (retryable or final)
    INFRASTRUCTURE  store unavailable; logged at ERROR

ERROR CODES:
    - ORD-400: Validation failed
    - ORD-101: Cutoff passed
    - ORD-102: Booking horizon exceeded (or date in the past)
    - ORD-103: Person is restricted
    - ORD-104: Duplicate live order for date
    - ORD-105: Shift unavailable
    - ORD-106: Outside collection window
    - ORD-201: Order already finalized
    - ORD-202: Concurrency conflict (retryable)
    - ORD-404: Entity not found
    - ORD-503: Infrastructure failure

============================================================================
"""

from typing import Optional, Dict, Any


# =============================================================================
# Error Codes
# =============================================================================

class OrderErrorCode:
    """Order engine error codes for audit logging and API responses."""
    VALIDATION = "ORD-400"
    CUTOFF_PASSED = "ORD-101"
    HORIZON_EXCEEDED = "ORD-102"
    RESTRICTED = "ORD-103"
    DUPLICATE_FOR_DATE = "ORD-104"
    SHIFT_UNAVAILABLE = "ORD-105"
    OUTSIDE_COLLECTION_WINDOW = "ORD-106"
    ALREADY_FINALIZED = "ORD-201"
    CONCURRENCY_CONFLICT = "ORD-202"
    NOT_FOUND = "ORD-404"
    INFRASTRUCTURE = "ORD-503"


class ErrorCategory:
    """Error families; the API layer maps these onto HTTP statuses."""
    VALIDATION = "VALIDATION"
    POLICY = "POLICY"
    CONFLICT = "CONFLICT"
    NOT_FOUND = "NOT_FOUND"
    INFRASTRUCTURE = "INFRASTRUCTURE"


# =============================================================================
# Base Exception
# =============================================================================

class OrderEngineError(Exception):
    """
    Base class for every failure the engine reports to a caller.

    Attributes:
        error_code: Stable machine-readable code (ORD-xxx)
        message: Human-readable message
        reason: Short reason token (e.g. PAST_DATE, HOLIDAY)
        retryable: Whether the caller may simply re-issue the request
        details: Extra context for the response body
    """

    category = ErrorCategory.INFRASTRUCTURE
    default_code = OrderErrorCode.INFRASTRUCTURE
    default_retryable = False

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        reason: Optional[str] = None,
        retryable: Optional[bool] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.error_code = error_code or self.default_code
        self.message = message
        self.reason = reason
        self.retryable = self.default_retryable if retryable is None else retryable
        self.details = details or {}
        super().__init__(f"[{self.error_code}] {message}")

    def to_dict(self) -> Dict[str, Any]:
        body = {
            "error_code": self.error_code,
            "error_type": type(self).__name__,
            "category": self.category,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.reason:
            body["reason"] = self.reason
        if self.details:
            body["details"] = self.details
        return body


# =============================================================================
# Validation
# =============================================================================

class ValidationError(OrderEngineError):
    """Malformed input."""
    category = ErrorCategory.VALIDATION
    default_code = OrderErrorCode.VALIDATION


class PolicyValidationError(ValidationError):
    """A policy snapshot failed its range checks."""


# =============================================================================
# Policy
# =============================================================================

class PolicyViolation(OrderEngineError):
    """Base for expected, user-facing refusals."""
    category = ErrorCategory.POLICY


class CutoffPassed(PolicyViolation):
    default_code = OrderErrorCode.CUTOFF_PASSED


class HorizonExceeded(PolicyViolation):
    default_code = OrderErrorCode.HORIZON_EXCEEDED


class Restricted(PolicyViolation):
    default_code = OrderErrorCode.RESTRICTED


class DuplicateForDate(PolicyViolation):
    default_code = OrderErrorCode.DUPLICATE_FOR_DATE


class ShiftUnavailable(PolicyViolation):
    default_code = OrderErrorCode.SHIFT_UNAVAILABLE


class OutsideCollectionWindow(PolicyViolation):
    default_code = OrderErrorCode.OUTSIDE_COLLECTION_WINDOW


# =============================================================================
# Not Found
# =============================================================================

class NotFoundError(OrderEngineError):
    category = ErrorCategory.NOT_FOUND
    default_code = OrderErrorCode.NOT_FOUND


class OrderNotFound(NotFoundError):
    pass


class PersonNotFound(NotFoundError):
    pass


# =============================================================================
# Conflict
# =============================================================================

class ConflictError(OrderEngineError):
    """A transition could not be applied because the stored row moved on."""
    category = ErrorCategory.CONFLICT
    default_code = OrderErrorCode.CONCURRENCY_CONFLICT


class AlreadyFinalized(ConflictError):
    """The order is already in a terminal status. Re-requesting cannot help."""
    default_code = OrderErrorCode.ALREADY_FINALIZED
    default_retryable = False


class ConcurrencyConflict(ConflictError):
    """Retries were exhausted while other writers kept winning."""
    default_code = OrderErrorCode.CONCURRENCY_CONFLICT
    default_retryable = True


# =============================================================================
# Infrastructure
# =============================================================================

class InfrastructureError(OrderEngineError):
    category = ErrorCategory.INFRASTRUCTURE
    default_code = OrderErrorCode.INFRASTRUCTURE


# =============================================================================
# Module Exports
# =============================================================================

__all__ = [
    "OrderErrorCode",
    "ErrorCategory",
    "OrderEngineError",
    "ValidationError",
    "PolicyValidationError",
    "PolicyViolation",
    "CutoffPassed",
    "HorizonExceeded",
    "Restricted",
    "DuplicateForDate",
    "ShiftUnavailable",
    "OutsideCollectionWindow",
    "NotFoundError",
    "OrderNotFound",
    "PersonNotFound",
    "ConflictError",
    "AlreadyFinalized",
    "ConcurrencyConflict",
    "InfrastructureError",
]
