"""
Coupon engine exception hierarchy.

Every error carries a human-readable message, a machine-readable code and
optional details, so HTTP handlers and logs can render them uniformly.

Exception Hierarchy:
    CouponError
    ├── ValidationError      malformed input, rejected before any state change
    ├── NotFoundError        unknown coupon code or id
    ├── IneligibleError      coupon or user fails an eligibility rule
    ├── ConflictError        well-formed input that clashes with current state
    └── ConcurrencyError     lost a race against a limit at commit time
"""

from typing import Any, Dict, List, Optional


class CouponError(Exception):
    """
    Base exception for coupon engine errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code for programmatic handling
        details: Additional context for debugging/audit
    """

    default_code: str = "COUPON_ERROR"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code!r}, message={self.message!r})"


class ValidationError(CouponError):
    """Malformed coupon data. Carries every field error found, not just the first."""

    default_code = "VALIDATION_FAILED"

    def __init__(self, errors: List[Dict[str, str]], message: Optional[str] = None):
        self.errors = errors
        if message is None:
            message = errors[0]["message"] if len(errors) == 1 else "Coupon data is invalid"
        super().__init__(message, details={"errors": errors})


class NotFoundError(CouponError):
    default_code = "NOT_FOUND"


class IneligibleError(CouponError):
    default_code = "INELIGIBLE"


class ConflictError(CouponError):
    default_code = "CONFLICT"


class ConcurrencyError(CouponError):
    """
    A redemption or issuance passed validation but the limit was consumed
    by another request before it committed. Not worth retrying as-is.
    """

    default_code = "LIMIT_RACE_LOST"
