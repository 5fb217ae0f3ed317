"""
Error taxonomy for the reconciliation engine.

Every domain error carries an HTTP status and a stable error code so the
API layer can render it without knowing the concrete class.
"""
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional


class PaymentReconciliationError(Exception):
    """Base exception for all domain errors."""

    status_code = 500
    error_code = "INTERNAL_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        """
        Initialize domain error.

        Args:
            message: Human readable message
            details: Optional structured context returned to the caller
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_response(self) -> Dict[str, Any]:
        """Render the error as a JSON-serializable body."""
        body: Dict[str, Any] = {"code": self.error_code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return {"error": body}


class ValidationError(PaymentReconciliationError):
    """Request or configuration is not acceptable."""

    status_code = 400
    error_code = "VALIDATION_ERROR"


class NotFoundError(PaymentReconciliationError):
    """Referenced entity does not exist in the institution."""

    status_code = 404
    error_code = "NOT_FOUND"


class ConflictError(PaymentReconciliationError):
    """Write would violate a ledger uniqueness rule."""

    status_code = 409
    error_code = "CONFLICT"


class AmountMismatchError(PaymentReconciliationError):
    """Gateway reported an amount outside tolerance of the expected amount."""

    status_code = 422
    error_code = "AMOUNT_MISMATCH"

    def __init__(self, reference: str, expected: Decimal, reported: Decimal):
        super().__init__(
            f"Amount mismatch for {reference}: expected {expected}, gateway reported {reported}",
            details={
                "reference": reference,
                "expected": str(expected),
                "reported": str(reported),
            },
        )
        self.reference = reference
        self.expected = expected
        self.reported = reported


class GatewayErrorType(Enum):
    """Classification of gateway failures."""

    TIMEOUT = "timeout"
    NETWORK = "network"
    UPSTREAM = "upstream"  # non-2xx or status: false
    MALFORMED = "malformed"  # unparseable or missing fields


class GatewayError(PaymentReconciliationError):
    """Payment gateway call failed or returned an unusable response."""

    status_code = 502
    error_code = "GATEWAY_ERROR"

    def __init__(
        self,
        message: str,
        error_type: GatewayErrorType,
        upstream_status: Optional[int] = None,
        original_error: Optional[Exception] = None,
    ):
        """
        Initialize gateway error.

        Args:
            message: Error message
            error_type: Classification of error
            upstream_status: HTTP status returned by the gateway, if any
            original_error: Underlying transport exception
        """
        super().__init__(
            message,
            details={"type": error_type.value, "upstream_status": upstream_status},
        )
        self.error_type = error_type
        self.upstream_status = upstream_status
        self.original_error = original_error

    @property
    def retryable(self) -> bool:
        """Transport level failures are worth retrying by the caller."""
        return self.error_type in (GatewayErrorType.TIMEOUT, GatewayErrorType.NETWORK) or (
            self.upstream_status is not None and self.upstream_status >= 500
        )
