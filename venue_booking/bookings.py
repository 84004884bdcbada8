"""
Booking intake and the booking state machine.

    pending_hold    -> confirmed | pending_payment | expired | cancelled
    pending_payment -> confirmed | expired | cancelled
    confirmed       -> cancelled

Every move is one guarded UPDATE (`WHERE status = <prior>`), writes a
`booking_audit` row and logs prior/new status. All functions run inside the
caller's session; the caller commits.
"""
from __future__ import annotations

import logging
import os
import secrets
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from . import ledger, tables
from .errors import CapacityRejected, Expired, InvalidTransition, NotFound, ValidationFailed
from .models import Booking, BookingAudit, Resource
from .notifications import normalize_phone

MAX_PARTY_SIZE = int(os.getenv("MAX_PARTY_SIZE", "20"))
BOOKING_HOLD_MINUTES = int(os.getenv("BOOKING_HOLD_MINUTES", "15"))
PAYMENT_HOLD_MINUTES = int(os.getenv("PAYMENT_HOLD_MINUTES", "1440"))

PAYMENT_MODES = ("cash", "prepaid", "card_capture")
PENDING_STATUSES = ("pending_hold", "pending_payment")
ACTIVE_STATUSES = ("pending_hold", "pending_payment", "confirmed")

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    "pending_hold": {"confirmed", "pending_payment", "expired", "cancelled"},
    "pending_payment": {"confirmed", "expired", "cancelled"},
    "confirmed": {"cancelled"},
    "cancelled": set(),
    "expired": set(),
}

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def new_booking_ref() -> str:
    return f"BK-{secrets.token_hex(4).upper()}"


def validate_party_size(party_size: int) -> int:
    try:
        value = int(party_size)
    except (TypeError, ValueError):
        raise ValidationFailed(detail="party_size must be a whole number")
    if not 1 <= value <= MAX_PARTY_SIZE:
        raise ValidationFailed(detail=f"party_size must be between 1 and {MAX_PARTY_SIZE}")
    return value


def lock_booking(s: Session, booking_id: str) -> Booking:
    booking = s.execute(
        select(Booking).where(Booking.id == booking_id).with_for_update().execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if booking is None:
        raise NotFound(detail=f"Booking {booking_id} not found")
    return booking


def audit(s: Session, booking_id: str, event: str, old: str | None, new: str | None, now: datetime, /, **meta) -> None:
    s.add(
        BookingAudit(
            booking_id=booking_id,
            event=event,
            old_status=old,
            new_status=new,
            meta=meta,
            created_at=now,
        )
    )


def transition(
    s: Session,
    booking: Booking,
    new_status: str,
    *,
    event: str,
    now: datetime | None = None,
    meta: dict | None = None,
    **values,
) -> Booking:
    now = now or _now()
    old = booking.status
    if new_status not in ALLOWED_TRANSITIONS.get(old, set()):
        raise InvalidTransition(
            detail=f"Booking cannot move from {old} to {new_status}", booking_id=booking.id, status=old
        )
    result = s.execute(
        update(Booking)
        .where(Booking.id == booking.id)
        .where(Booking.status == old)
        .values(status=new_status, updated_at=now, **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise InvalidTransition(detail="Booking was changed concurrently", booking_id=booking.id)
    audit(s, booking.id, event, old, new_status, now, **(meta or {}))
    logger.info("Booking %s %s -> %s (%s)", booking.id, old, new_status, event)
    s.refresh(booking)
    return booking


def _clean_customer(customer_name: str, phone: str | None, email: str | None) -> tuple[str, str | None, str | None]:
    name = (customer_name or "").strip()
    if not name:
        raise ValidationFailed(detail="customer_name is required")
    try:
        phone = normalize_phone(phone)
    except ValueError as e:
        raise ValidationFailed(detail=str(e))
    email = (email or "").strip().lower() or None
    return name, phone, email


def create_booking_hold(
    s: Session,
    *,
    resource_id: str,
    party_size: int,
    customer_name: str,
    phone: str | None = None,
    email: str | None = None,
    payment_mode: str | None = None,
    source: str = "direct",
    now: datetime | None = None,
) -> Booking:
    """
    Intake: reserve capacity and create a `pending_hold` booking in one transaction.

    Table-pool bookings are bound to physical tables here as well; if the floor
    plan cannot seat the party the whole transaction is rejected.
    """
    now = now or _now()
    party_size = validate_party_size(party_size)
    customer_name, phone, email = _clean_customer(customer_name, phone, email)

    resource = s.get(Resource, resource_id)
    if resource is None:
        raise NotFound(detail=f"Resource {resource_id} not found")
    payment_mode = payment_mode or resource.payment_mode
    if payment_mode not in PAYMENT_MODES:
        raise ValidationFailed(detail=f"payment_mode must be one of {', '.join(PAYMENT_MODES)}")

    hold_expires_at = now + timedelta(minutes=BOOKING_HOLD_MINUTES)
    if resource.starts_at is not None:
        hold_expires_at = min(hold_expires_at, resource.starts_at)

    booking = Booking(
        id=str(uuid4()),
        booking_ref=new_booking_ref(),
        resource_id=resource_id,
        customer_name=customer_name,
        phone=phone,
        email=email,
        party_size=party_size,
        committed_party_size=party_size,
        status="pending_hold",
        payment_mode=payment_mode,
        source=source,
        created_at=now,
        updated_at=now,
        hold_expires_at=hold_expires_at,
    )
    s.add(booking)
    s.flush()

    ledger.reserve(s, resource_id, party_size, kind="booking", expires_at=hold_expires_at, now=now, booking_id=booking.id)
    if resource.kind == "table_pool":
        tables.assign_tables(s, booking, resource)

    audit(s, booking.id, "created", None, "pending_hold", now, party_size=party_size, source=source)
    logger.info("Booking %s held %s unit(s) on %s (mode=%s)", booking.id, party_size, resource_id, payment_mode)
    return booking


def _live_hold(s: Session, booking: Booking, now: datetime):
    hold = ledger.active_hold_for_booking(s, booking.id)
    if hold is None or hold.expires_at <= now:
        raise Expired(detail="Booking hold has expired", booking_id=booking.id)
    return hold


def confirm_booking(s: Session, booking_id: str, *, now: datetime | None = None, event: str = "confirmed", **meta) -> Booking:
    """
    Consume the booking's hold and confirm it. Confirming a confirmed booking is a no-op.

    A lapsed hold raises Expired without mutating anything; the sweep expires
    the booking and returns its capacity.
    """
    now = now or _now()
    booking = lock_booking(s, booking_id)
    if booking.status == "confirmed":
        return booking
    if booking.status not in PENDING_STATUSES:
        raise InvalidTransition(detail=f"Booking is {booking.status}", booking_id=booking.id, status=booking.status)

    hold = _live_hold(s, booking, now)
    resource = ledger.lock_resource(s, booking.resource_id)
    if not ledger.consume(s, hold.id, now=now):
        raise Expired(detail="Booking hold is no longer active", booking_id=booking.id)
    if resource.kind == "table_pool" and not tables.assignments_for(s, booking.id):
        tables.assign_tables(s, booking, resource)

    return transition(
        s,
        booking,
        "confirmed",
        event=event,
        now=now,
        meta=meta,
        confirmed_at=now,
        hold_expires_at=None,
        committed_party_size=booking.party_size,
    )


def payment_hold_expiry(resource: Resource, now: datetime) -> datetime:
    expires_at = now + timedelta(minutes=PAYMENT_HOLD_MINUTES)
    if resource.starts_at is not None:
        expires_at = min(expires_at, resource.starts_at)
    if expires_at <= now:
        raise CapacityRejected("outside_service_window", "Too late to take payment for this booking")
    return expires_at


def mark_pending_payment(s: Session, booking_id: str, *, now: datetime | None = None) -> Booking:
    """Swap the short intake hold for a payment hold that lasts until checkout completes."""
    now = now or _now()
    booking = lock_booking(s, booking_id)
    if booking.status == "pending_payment":
        return booking
    if booking.status != "pending_hold":
        raise InvalidTransition(detail=f"Booking is {booking.status}", booking_id=booking.id, status=booking.status)

    resource = ledger.lock_resource(s, booking.resource_id)
    expires_at = payment_hold_expiry(resource, now)
    hold = _live_hold(s, booking, now)
    if ledger.convert(s, hold.id, kind="payment", expires_at=expires_at, now=now, booking_id=booking.id) is None:
        raise Expired(detail="Booking hold is no longer active", booking_id=booking.id)

    return transition(s, booking, "pending_payment", event="awaiting_payment", now=now, hold_expires_at=expires_at)


def _release_capacity(s: Session, booking: Booking, now: datetime, hold_status: str) -> int:
    if booking.status == "confirmed":
        ledger.lock_resource(s, booking.resource_id)
        ledger.release_committed(s, booking.resource_id, booking.party_size)
        released = booking.party_size
    else:
        hold = ledger.active_hold_for_booking(s, booking.id)
        released = 0
        if hold is not None:
            ledger.lock_resource(s, booking.resource_id)
            if ledger.release(s, hold.id, now=now, status=hold_status):
                released = hold.units
    tables.unassign_tables(s, booking.id)
    return released


def cancel_booking(s: Session, booking_id: str, *, now: datetime | None = None, reason: str = "guest_cancelled") -> tuple[Booking, int]:
    """
    Cancel and return capacity. Cancelling a cancelled or expired booking is a no-op.

    Returns the booking and the number of units released, so the caller can
    advance the resource's waitlist.
    """
    now = now or _now()
    booking = lock_booking(s, booking_id)
    if booking.status in ("cancelled", "expired"):
        return booking, 0
    released = _release_capacity(s, booking, now, "released")
    booking = transition(
        s, booking, "cancelled", event="cancelled", now=now, meta={"reason": reason}, cancelled_at=now, hold_expires_at=None
    )
    return booking, released


def expire_booking(s: Session, booking_id: str, *, now: datetime | None = None, reason: str = "hold_expired") -> int | None:
    """Expire a pending booking. None when it already left the pending states."""
    now = now or _now()
    booking = lock_booking(s, booking_id)
    if booking.status not in PENDING_STATUSES:
        return None
    released = _release_capacity(s, booking, now, "expired")
    transition(s, booking, "expired", event="expired", now=now, meta={"reason": reason}, hold_expires_at=None)
    return released


def change_party_size(s: Session, booking_id: str, party_size: int, *, now: datetime | None = None) -> tuple[Booking, int]:
    """
    Seat change on a confirmed booking. Growth reserves and commits the extra
    units atomically; shrinking releases them. `committed_party_size` keeps the
    largest size the guest committed to, which is what fee caps are based on.

    Returns the booking and the number of units released (0 on growth).
    """
    now = now or _now()
    party_size = validate_party_size(party_size)
    booking = lock_booking(s, booking_id)
    if booking.status != "confirmed":
        raise InvalidTransition(detail="Only confirmed bookings can change size", booking_id=booking.id, status=booking.status)
    old_size = booking.party_size
    if party_size == old_size:
        return booking, 0

    resource = ledger.lock_resource(s, booking.resource_id)
    released = 0
    if party_size > old_size:
        extra = ledger.reserve(
            s, booking.resource_id, party_size - old_size, kind="booking", expires_at=now + timedelta(minutes=1), now=now, booking_id=booking.id
        )
        ledger.consume(s, extra.id, now=now)
    else:
        released = old_size - party_size
        ledger.release_committed(s, booking.resource_id, released)

    booking.party_size = party_size
    booking.committed_party_size = max(booking.committed_party_size, party_size)
    booking.updated_at = now
    s.flush()
    if resource.kind == "table_pool":
        tables.unassign_tables(s, booking.id)
        s.flush()
        tables.assign_tables(s, booking, resource)
    audit(s, booking.id, "party_size_changed", booking.status, booking.status, now, old=old_size, new=party_size)
    logger.info("Booking %s party size %s -> %s", booking.id, old_size, party_size)
    return booking, released


def booking_view(booking: Booking, table_ids: list[str] | None = None) -> dict:
    return {
        "booking_id": booking.id,
        "booking_ref": booking.booking_ref,
        "resource_id": booking.resource_id,
        "status": booking.status,
        "party_size": booking.party_size,
        "payment_mode": booking.payment_mode,
        "source": booking.source,
        "hold_expires_at": booking.hold_expires_at.isoformat() if booking.hold_expires_at else None,
        "confirmed_at": booking.confirmed_at.isoformat() if booking.confirmed_at else None,
        "tables": table_ids or [],
    }
