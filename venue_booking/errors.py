"""
Typed rejections raised by the booking core.

Every error carries a machine-readable `reason`; the HTTP layer maps each
class to one status code (see `STATUS_CODES`).
"""
from __future__ import annotations


class BookingError(Exception):
    reason = "internal_error"

    def __init__(self, reason: str | None = None, detail: str | None = None, **context):
        self.reason = reason or self.reason
        self.detail = detail or self.reason.replace("_", " ")
        self.context = context
        super().__init__(self.detail)

    def as_dict(self) -> dict:
        out = {"reason": self.reason, "detail": self.detail}
        if self.context:
            out.update(self.context)
        return out


class ValidationFailed(BookingError):
    reason = "validation_error"


class CapacityRejected(BookingError):
    """no_availability | outside_service_window | private_booking_blocked"""

    reason = "no_availability"


class IdempotencyConflict(BookingError):
    reason = "conflict"


class IdempotencyInProgress(BookingError):
    reason = "in_progress"


class Expired(BookingError):
    reason = "expired"


class RateLimited(BookingError):
    reason = "rate_limited"


class PaymentFailed(BookingError):
    """payment_failed | payment_expired"""

    reason = "payment_failed"


class ChargeCapExceeded(BookingError):
    reason = "charge_cap_exceeded"


class InvalidTransition(BookingError):
    reason = "invalid_transition"


class NotFound(BookingError):
    reason = "not_found"


class TokenRejected(BookingError):
    """invalid_token | token_used | token_expired | wrong_scope"""

    reason = "invalid_token"


class MoveNotAllowed(BookingError):
    reason = "joined_assignment"


class WebhookRejected(BookingError):
    reason = "invalid_signature"


STATUS_CODES: list[tuple[type[BookingError], int]] = [
    (ValidationFailed, 422),
    (CapacityRejected, 409),
    (IdempotencyConflict, 409),
    (IdempotencyInProgress, 409),
    (Expired, 410),
    (RateLimited, 429),
    (PaymentFailed, 402),
    (ChargeCapExceeded, 422),
    (InvalidTransition, 409),
    (NotFound, 404),
    (TokenRejected, 403),
    (MoveNotAllowed, 409),
    (WebhookRejected, 400),
]


def status_code_for(exc: BookingError) -> int:
    for cls, code in STATUS_CODES:
        if isinstance(exc, cls):
            return code
    return 500
