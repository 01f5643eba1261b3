"""
Error taxonomy for the pricing and booking pipeline.

ConfigurationError and ValidationError abort a single operation and reach
the caller unchanged. Carrier errors are classified as recoverable (the
booking resolver falls back to the next ranked option) or non-recoverable
(booking stops, a human reconciles). Every booking failure carries the
attempt trail.
"""
from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorCode(str, Enum):
    """Stable error codes shared with carrier adapters."""
    # System
    SYS_TIMEOUT = "SYS_TIMEOUT"
    SYS_INTERNAL_ERROR = "SYS_INTERNAL_ERROR"

    # Validation
    VAL_INVALID_PINCODE = "VAL_INVALID_PINCODE"
    VAL_INVALID_WEIGHT = "VAL_INVALID_WEIGHT"
    VAL_INVALID_INPUT = "VAL_INVALID_INPUT"
    VAL_INVALID_OPTION = "VAL_INVALID_OPTION"
    VAL_PINCODE_NOT_SERVICEABLE = "VAL_PINCODE_NOT_SERVICEABLE"

    # Business / configuration
    BIZ_RATE_CARD_NOT_FOUND = "BIZ_RATE_CARD_NOT_FOUND"
    BIZ_ZONE_RULE_NOT_FOUND = "BIZ_ZONE_RULE_NOT_FOUND"
    BIZ_NO_ELIGIBLE_CANDIDATES = "BIZ_NO_ELIGIBLE_CANDIDATES"
    BIZ_FEATURE_DISABLED = "BIZ_FEATURE_DISABLED"
    BIZ_QUOTE_SESSION_NOT_FOUND = "BIZ_QUOTE_SESSION_NOT_FOUND"
    BIZ_QUOTE_SESSION_EXPIRED = "BIZ_QUOTE_SESSION_EXPIRED"
    BIZ_QUOTE_SESSION_USED = "BIZ_QUOTE_SESSION_USED"
    BIZ_BOOKING_EXHAUSTED = "BIZ_BOOKING_EXHAUSTED"

    # External services
    EXT_SERVICE_ERROR = "EXT_SERVICE_ERROR"
    EXT_SERVICE_UNAVAILABLE = "EXT_SERVICE_UNAVAILABLE"
    EXT_COURIER_FAILURE = "EXT_COURIER_FAILURE"
    EXT_BOOKING_REJECTED = "EXT_BOOKING_REJECTED"
    EXT_POST_AWB_FAILURE = "EXT_POST_AWB_FAILURE"


# Codes the fallback engine treats as transient
RECOVERABLE_ERROR_CODES = frozenset({
    ErrorCode.SYS_TIMEOUT,
    ErrorCode.EXT_SERVICE_ERROR,
    ErrorCode.EXT_SERVICE_UNAVAILABLE,
    ErrorCode.EXT_COURIER_FAILURE,
    ErrorCode.VAL_PINCODE_NOT_SERVICEABLE,
})


class ShipquoteError(Exception):
    """Base class for all pipeline errors."""

    default_code = ErrorCode.SYS_INTERNAL_ERROR

    def __init__(
        self,
        message: str,
        code: Optional[ErrorCode] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        return {
            "code": self.code.value,
            "message": self.message,
            "details": self.details,
        }


# ==================== Operator / caller errors ====================

class ConfigurationError(ShipquoteError):
    """No applicable rate card or zone rule. Needs operator action."""
    default_code = ErrorCode.BIZ_RATE_CARD_NOT_FOUND


class RateCardNotFoundError(ConfigurationError):
    """No selection tier resolved a rate card."""
    default_code = ErrorCode.BIZ_RATE_CARD_NOT_FOUND


class ValidationError(ShipquoteError):
    """Malformed input such as a bad pincode or non-positive weight."""
    default_code = ErrorCode.VAL_INVALID_INPUT


class QuoteSessionNotFoundError(ShipquoteError):
    default_code = ErrorCode.BIZ_QUOTE_SESSION_NOT_FOUND


class ExpiredSessionError(ShipquoteError):
    default_code = ErrorCode.BIZ_QUOTE_SESSION_EXPIRED


class AlreadyUsedSessionError(ShipquoteError):
    default_code = ErrorCode.BIZ_QUOTE_SESSION_USED


# ==================== Carrier errors ====================

class CarrierError(ShipquoteError):
    """
    Error raised by a carrier adapter.

    Adapters may raise this directly with explicit flags, or raise one of
    the two classified subclasses below. The booking resolver classifies
    anything else it receives.
    """

    default_code = ErrorCode.EXT_COURIER_FAILURE

    def __init__(
        self,
        message: str,
        code: Optional[ErrorCode] = None,
        carrier: Optional[str] = None,
        recoverable: Optional[bool] = None,
        post_awb_issued: bool = False,
        tracking_number: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, code=code, details=details)
        self.carrier = carrier
        self.recoverable = recoverable
        self.post_awb_issued = post_awb_issued or bool(tracking_number)
        self.tracking_number = tracking_number
        self.status_code = status_code

    def to_dict(self) -> dict:
        data = super().to_dict()
        data.update({
            "carrier": self.carrier,
            "recoverable": self.recoverable,
            "post_awb_issued": self.post_awb_issued,
            "tracking_number": self.tracking_number,
            "status_code": self.status_code,
        })
        return data


class RecoverableProviderError(CarrierError):
    """Timeout or transient unavailability. Triggers fallback."""

    default_code = ErrorCode.EXT_SERVICE_UNAVAILABLE

    def __init__(self, message: str, **kwargs):
        kwargs["recoverable"] = True
        super().__init__(message, **kwargs)


class NonRecoverableProviderError(CarrierError):
    """
    Failure after the carrier issued a tracking number, or any failure the
    resolver must not retry. Carries the partial carrier reference and the
    attempt trail for manual reconciliation.
    """

    default_code = ErrorCode.EXT_POST_AWB_FAILURE

    def __init__(self, message: str, trail: Optional[Any] = None, **kwargs):
        kwargs["recoverable"] = False
        super().__init__(message, **kwargs)
        self.trail = trail

    def to_dict(self) -> dict:
        data = super().to_dict()
        if self.trail is not None:
            data["trail"] = self.trail.to_dict()
        return data


class ExhaustedError(ShipquoteError):
    """Every ranked option was tried and none succeeded."""

    default_code = ErrorCode.BIZ_BOOKING_EXHAUSTED

    def __init__(
        self,
        message: str,
        last_error: Optional[BaseException] = None,
        trail: Optional[Any] = None,
        attempted_option_ids: Optional[List[str]] = None,
    ):
        super().__init__(message)
        self.last_error = last_error
        self.trail = trail
        self.attempted_option_ids = attempted_option_ids or []

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["attempted_option_ids"] = self.attempted_option_ids
        data["last_error"] = str(self.last_error) if self.last_error else None
        if self.trail is not None:
            data["trail"] = self.trail.to_dict()
        return data
