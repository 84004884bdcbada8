"""
Booking intake: throttle -> idempotency guard -> reserve -> (checkout).
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from sqlalchemy.engine import Engine

from . import bookings, idempotency, payments, tables, throttle, tokens
from .db import session
from .notifications import SmsSender, notify_booking

INTAKE_SCOPE = "booking_intake"

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


@dataclass
class IntakeResult:
    response: dict
    events: list[tuple[str, dict]] = field(default_factory=list)


def submit_booking(
    engine: Engine,
    request: dict,
    *,
    idempotency_key: str,
    caller: str,
    processor: payments.Processor | None = None,
    sender: SmsSender | None = None,
    now: datetime | None = None,
) -> IntakeResult:
    """
    Run one booking intake request at most once per idempotency key.

    `request` holds resource_id, party_size, customer_name, phone, email and
    payment_mode. Cash bookings are confirmed immediately; prepaid and
    card-capture bookings are left in `pending_payment` with a payment hold
    and, when a processor is given, a checkout/setup session already opened.
    A replayed request returns the stored response and emits no events.
    """
    now = now or _now()
    throttle.enforce(engine, tokens.hash_token(request.get("phone") or caller), INTAKE_SCOPE, caller)

    result = IntakeResult(response={})

    def _operation() -> dict:
        with session(engine) as s:
            booking = bookings.create_booking_hold(
                s,
                resource_id=request.get("resource_id"),
                party_size=request.get("party_size"),
                customer_name=request.get("customer_name"),
                phone=request.get("phone"),
                email=request.get("email"),
                payment_mode=request.get("payment_mode"),
                now=now,
            )
            if booking.payment_mode == "cash":
                booking = bookings.confirm_booking(s, booking.id, now=now)
            else:
                booking = bookings.mark_pending_payment(s, booking.id, now=now)
            table_ids = tables.table_ids_for(s, [booking.id])[booking.id]
            s.commit()

        response = bookings.booking_view(booking, table_ids)
        result.events.append(
            (
                "booking.confirmed" if booking.status == "confirmed" else "booking.held",
                {"booking_id": booking.id, "resource_id": booking.resource_id, "party_size": booking.party_size, "status": booking.status},
            )
        )

        if processor is not None and booking.payment_mode == "prepaid":
            response["checkout"] = payments.start_checkout(engine, processor, booking.id, now=now)
        elif processor is not None and booking.payment_mode == "card_capture":
            response["checkout"] = payments.capture_card(engine, processor, booking.id, now=now)

        if sender is not None and booking.status == "confirmed":
            notify_booking(
                engine,
                sender,
                kind="booking_confirmed",
                booking=booking,
                body=f"Your booking {booking.booking_ref} for {booking.party_size} is confirmed.",
                now=now,
            )
        return response

    result.response = idempotency.guard(engine, idempotency_key, request, _operation, now=now)
    return result
