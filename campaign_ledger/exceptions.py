"""
Error taxonomy for the ledger.

Caller-visible rejections (returned as `{error, errorType}` bodies):
- ValidationError: bad input shape/range, rejected before any state change
- BudgetExceeded: withdrawal would overspend its category
- ReasonMismatch: withdrawal justification scored below the plausibility threshold
- FlaggedForReview: donation risk score above the fraud threshold
- NotFound: unknown organization, donor, campaign or category

Internal only:
- PropagationFailure: primary commit succeeded, secondary mirror update failed
- ConcurrentModification: compare-and-swap lost against a concurrent writer
"""

from typing import Any, Optional


class LedgerError(Exception):
    """Base class for all ledger errors."""

    error_type = "LedgerError"

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_body(self) -> dict[str, Any]:
        """Error body returned to callers."""
        body: dict[str, Any] = {"error": self.message, "errorType": self.error_type}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(LedgerError):
    """Raised when a request fails input validation."""

    error_type = "ValidationError"


class BudgetExceeded(LedgerError):
    """Raised when a withdrawal would push category spending above its budget."""

    error_type = "BudgetExceeded"


class ReasonMismatch(LedgerError):
    """Raised when a withdrawal reason does not plausibly belong to its category."""

    error_type = "ReasonMismatch"


class FlaggedForReview(LedgerError):
    """Raised when a donation's fraud risk is above the review threshold."""

    error_type = "FlaggedForReview"


class NotFound(LedgerError):
    """Raised when a referenced record does not exist."""

    error_type = "NotFound"


class PropagationFailure(LedgerError):
    """Raised when a committed event could not be mirrored to the secondary store."""

    error_type = "PropagationFailure"


class ConcurrentModification(LedgerError):
    """Raised when a compare-and-swap write loses against a concurrent update."""

    error_type = "ConcurrentModification"


# Errors the facade reports to callers; anything else is internal
CALLER_VISIBLE_ERRORS = (ValidationError, BudgetExceeded, ReasonMismatch, FlaggedForReview, NotFound)
