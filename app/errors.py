"""
Error taxonomy shared by every service.

Components raise DispatchError internally; public service operations catch it
and hand back an ErrorDetail inside their result model, so callers branch on
`success` instead of wrapping calls in try/except.
"""
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel


class ErrorKind(str, Enum):
    validation = "validation"
    resource_state = "resource_state"
    availability = "availability"
    payment = "payment"
    rate_limit = "rate_limit"
    transport = "transport"


class ErrorCode(str, Enum):
    # Validation
    INVALID_LOCATION = "INVALID_LOCATION"
    MISSING_REQUIRED_FIELDS = "MISSING_REQUIRED_FIELDS"
    INVALID_SURGE = "INVALID_SURGE"
    INVALID_AMOUNT = "INVALID_AMOUNT"
    INVALID_RIDE_OPTION = "INVALID_RIDE_OPTION"
    INVALID_PASSENGER_COUNT = "INVALID_PASSENGER_COUNT"
    INVALID_SCHEDULE = "INVALID_SCHEDULE"

    # Resource state
    RIDE_NOT_FOUND = "RIDE_NOT_FOUND"
    INVALID_RIDE_STATUS = "INVALID_RIDE_STATUS"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    RIDE_NOT_CAPTURABLE = "RIDE_NOT_CAPTURABLE"
    ACTIVE_RIDE_EXISTS = "ACTIVE_RIDE_EXISTS"
    PAYMENT_NOT_FOUND = "PAYMENT_NOT_FOUND"
    VERSION_CONFLICT = "VERSION_CONFLICT"
    DRIVER_NOT_ASSIGNED = "DRIVER_NOT_ASSIGNED"
    IDEMPOTENCY_KEY_REUSED = "IDEMPOTENCY_KEY_REUSED"

    # Availability
    NO_DRIVERS_AVAILABLE = "NO_DRIVERS_AVAILABLE"

    # Payment
    PAYMENT_DECLINED = "PAYMENT_DECLINED"

    # Rate limiting
    RATE_LIMITED = "RATE_LIMITED"

    # Transport
    PROVIDER_TIMEOUT = "PROVIDER_TIMEOUT"
    PROVIDER_UNAVAILABLE = "PROVIDER_UNAVAILABLE"


_KINDS: dict[ErrorCode, ErrorKind] = {
    ErrorCode.INVALID_LOCATION: ErrorKind.validation,
    ErrorCode.MISSING_REQUIRED_FIELDS: ErrorKind.validation,
    ErrorCode.INVALID_SURGE: ErrorKind.validation,
    ErrorCode.INVALID_AMOUNT: ErrorKind.validation,
    ErrorCode.INVALID_RIDE_OPTION: ErrorKind.validation,
    ErrorCode.INVALID_PASSENGER_COUNT: ErrorKind.validation,
    ErrorCode.INVALID_SCHEDULE: ErrorKind.validation,
    ErrorCode.RIDE_NOT_FOUND: ErrorKind.resource_state,
    ErrorCode.INVALID_RIDE_STATUS: ErrorKind.resource_state,
    ErrorCode.INVALID_TRANSITION: ErrorKind.resource_state,
    ErrorCode.RIDE_NOT_CAPTURABLE: ErrorKind.resource_state,
    ErrorCode.ACTIVE_RIDE_EXISTS: ErrorKind.resource_state,
    ErrorCode.PAYMENT_NOT_FOUND: ErrorKind.resource_state,
    ErrorCode.VERSION_CONFLICT: ErrorKind.resource_state,
    ErrorCode.DRIVER_NOT_ASSIGNED: ErrorKind.resource_state,
    ErrorCode.IDEMPOTENCY_KEY_REUSED: ErrorKind.resource_state,
    ErrorCode.NO_DRIVERS_AVAILABLE: ErrorKind.availability,
    ErrorCode.PAYMENT_DECLINED: ErrorKind.payment,
    ErrorCode.RATE_LIMITED: ErrorKind.rate_limit,
    ErrorCode.PROVIDER_TIMEOUT: ErrorKind.transport,
    ErrorCode.PROVIDER_UNAVAILABLE: ErrorKind.transport,
}

_USER_MESSAGES: dict[ErrorCode, str] = {
    ErrorCode.INVALID_LOCATION: "Please choose a valid pickup and destination.",
    ErrorCode.MISSING_REQUIRED_FIELDS: "Some required details are missing. Please check your request.",
    ErrorCode.INVALID_SURGE: "Pricing is temporarily unavailable. Please try again.",
    ErrorCode.INVALID_AMOUNT: "The amount entered is not valid.",
    ErrorCode.INVALID_RIDE_OPTION: "That ride type is not available.",
    ErrorCode.INVALID_PASSENGER_COUNT: "Passenger count must be between 1 and 8.",
    ErrorCode.INVALID_SCHEDULE: "Scheduled time must be in the future.",
    ErrorCode.RIDE_NOT_FOUND: "We couldn't find that ride.",
    ErrorCode.INVALID_RIDE_STATUS: "This ride can no longer be changed. Please refresh.",
    ErrorCode.INVALID_TRANSITION: "This ride can't move to that step yet. Please refresh.",
    ErrorCode.RIDE_NOT_CAPTURABLE: "This ride isn't ready for payment.",
    ErrorCode.ACTIVE_RIDE_EXISTS: "You already have an active ride.",
    ErrorCode.PAYMENT_NOT_FOUND: "We couldn't find that payment.",
    ErrorCode.VERSION_CONFLICT: "This ride was updated elsewhere. Please refresh.",
    ErrorCode.DRIVER_NOT_ASSIGNED: "You are not assigned to this ride.",
    ErrorCode.IDEMPOTENCY_KEY_REUSED: "This request key was already used for a different payment.",
    ErrorCode.NO_DRIVERS_AVAILABLE: "No drivers are currently available in your area. Please try again in a few minutes.",
    ErrorCode.PAYMENT_DECLINED: "Your payment was declined. Please try a different payment method.",
    ErrorCode.RATE_LIMITED: "Too many attempts. Please wait a moment before trying again.",
    ErrorCode.PROVIDER_TIMEOUT: "The request timed out. Please try again.",
    ErrorCode.PROVIDER_UNAVAILABLE: "Something went wrong on our end. Please try again in a moment.",
}

_RETRYABLE_KINDS = {ErrorKind.availability, ErrorKind.rate_limit, ErrorKind.transport}

HTTP_STATUS: dict[ErrorKind, int] = {
    ErrorKind.validation: 400,
    ErrorKind.resource_state: 409,
    ErrorKind.availability: 503,
    ErrorKind.payment: 402,
    ErrorKind.rate_limit: 429,
    ErrorKind.transport: 504,
}


class ErrorDetail(BaseModel):
    code: ErrorCode
    kind: ErrorKind
    message: str
    user_message: str
    retryable: bool = False
    details: dict[str, Any] = {}


class DispatchError(Exception):
    """Raised inside the core; converted to an ErrorDetail at the service boundary."""

    def __init__(self, code: ErrorCode, message: str = "", details: Optional[dict[str, Any]] = None):
        super().__init__(message or code.value)
        self.code = code
        self.message = message or code.value
        self.details = details or {}

    @property
    def kind(self) -> ErrorKind:
        return _KINDS[self.code]

    def to_detail(self, retryable: Optional[bool] = None) -> ErrorDetail:
        return ErrorDetail(
            code=self.code,
            kind=self.kind,
            message=self.message,
            user_message=_USER_MESSAGES[self.code],
            retryable=self.kind in _RETRYABLE_KINDS if retryable is None else retryable,
            details=self.details,
        )


def error_detail(code: ErrorCode, message: str = "", **details: Any) -> ErrorDetail:
    return DispatchError(code, message, details).to_detail()


def http_status_for(error: ErrorDetail) -> int:
    if error.code == ErrorCode.RIDE_NOT_FOUND or error.code == ErrorCode.PAYMENT_NOT_FOUND:
        return 404
    if error.code == ErrorCode.DRIVER_NOT_ASSIGNED:
        return 403
    return HTTP_STATUS[error.kind]
