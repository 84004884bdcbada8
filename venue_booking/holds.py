"""
Offer/hold lifecycle: creating time-bounded holds, scheduling waitlist offers
against the quiet-hours gate, and expiring whatever is due.
"""
from __future__ import annotations

import logging
import os
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from . import bookings, ledger, quiet_hours
from .db import session
from .models import Booking, Hold, Resource, WaitlistEntry, WaitlistOffer

WAITLIST_OFFER_WINDOW_MINUTES = int(os.getenv("WAITLIST_OFFER_WINDOW_MINUTES", "1440"))

OPEN_OFFER_STATUSES = ("pending_send", "sent")

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def create_hold(
    s: Session,
    resource_id: str,
    units: int,
    ttl: timedelta,
    *,
    kind: str = "booking",
    now: datetime | None = None,
    booking_id: str | None = None,
    waitlist_offer_id: str | None = None,
) -> Hold:
    now = now or _now()
    return ledger.reserve(
        s,
        resource_id,
        units,
        kind=kind,
        expires_at=now + ttl,
        now=now,
        booking_id=booking_id,
        waitlist_offer_id=waitlist_offer_id,
    )


def set_entry_status(s: Session, entry_id: str, expected: tuple[str, ...], status: str, now: datetime) -> bool:
    result = s.execute(
        update(WaitlistEntry)
        .where(WaitlistEntry.id == entry_id)
        .where(WaitlistEntry.status.in_(expected))
        .values(status=status, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def schedule_offer(
    s: Session,
    resource: Resource,
    entry: WaitlistEntry,
    *,
    now: datetime | None = None,
    window: timedelta | None = None,
    gate: quiet_hours.QuietHours | None = None,
) -> WaitlistOffer:
    """
    Create the offer for `entry`. The response window starts at the gated send
    time, not at `now`.

    If that window would reach the resource's start, the offer is recorded as
    expired without a hold or a message and the entry is expired with it, so
    the queue can move on. Otherwise the offer's units are held until it expires.
    Caller holds the resource lock.
    """
    now = now or _now()
    window = window or timedelta(minutes=WAITLIST_OFFER_WINDOW_MINUTES)
    send_at = quiet_hours.next_permitted_instant(now, gate)
    expires_at = send_at + window

    offer = WaitlistOffer(
        id=str(uuid4()),
        entry_id=entry.id,
        resource_id=resource.id,
        units=entry.party_size,
        status="pending_send",
        created_at=now,
        scheduled_send_at=send_at,
        expires_at=expires_at,
    )

    if resource.starts_at is not None and expires_at >= resource.starts_at:
        offer.status = "expired"
        offer.resolved_at = now
        offer.expiry_reason = "insufficient_response_window"
        s.add(offer)
        set_entry_status(s, entry.id, ("waiting",), "expired", now)
        s.flush()
        logger.info(
            "Waitlist entry %s expired: offer would send at %s and close at %s, after start %s",
            entry.id,
            send_at.isoformat(),
            expires_at.isoformat(),
            resource.starts_at.isoformat(),
        )
        return offer

    s.add(offer)
    s.flush()
    ledger.reserve(
        s,
        resource.id,
        entry.party_size,
        kind="waitlist",
        expires_at=expires_at,
        now=now,
        waitlist_offer_id=offer.id,
    )
    set_entry_status(s, entry.id, ("waiting",), "offered", now)
    s.flush()
    logger.info("Waitlist offer %s for entry %s scheduled at %s", offer.id, entry.id, send_at.isoformat())
    return offer


def reschedule_offer(s: Session, offer: WaitlistOffer, send_at: datetime, *, now: datetime | None = None) -> bool:
    """
    Move a pending offer to a later send time, shifting its response window
    and its hold with it. If the shifted window would reach the resource's
    start the offer is expired instead and False is returned.
    Caller holds the offer lock.
    """
    now = now or _now()
    resource = ledger.lock_resource(s, offer.resource_id)
    expires_at = send_at + (offer.expires_at - offer.scheduled_send_at)
    if resource.starts_at is not None and expires_at >= resource.starts_at:
        expire_offer(s, offer.id, now=now, reason="insufficient_response_window")
        return False

    moved = s.execute(
        update(WaitlistOffer)
        .where(WaitlistOffer.id == offer.id)
        .where(WaitlistOffer.status == "pending_send")
        .values(scheduled_send_at=send_at, expires_at=expires_at)
        .execution_options(synchronize_session=False)
    )
    if moved.rowcount != 1:
        return False
    s.execute(
        update(Hold)
        .where(Hold.waitlist_offer_id == offer.id)
        .where(Hold.status == "active")
        .values(expires_at=expires_at)
        .execution_options(synchronize_session=False)
    )
    s.refresh(offer)
    logger.info("Waitlist offer %s moved to %s (closes %s)", offer.id, send_at.isoformat(), expires_at.isoformat())
    return True


def hold_for_offer(s: Session, offer_id: str) -> Hold | None:
    return s.execute(
        select(Hold).where(Hold.waitlist_offer_id == offer_id).where(Hold.status == "active").limit(1)
    ).scalar_one_or_none()


def expire_offer(s: Session, offer_id: str, *, now: datetime | None = None, reason: str = "response_window_elapsed") -> int | None:
    """
    Expire an open offer, return its held units and expire its entry.
    None if the offer was already resolved; otherwise the units released.
    """
    now = now or _now()
    offer = s.execute(
        select(WaitlistOffer).where(WaitlistOffer.id == offer_id).with_for_update().execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if offer is None or offer.status not in OPEN_OFFER_STATUSES:
        return None
    result = s.execute(
        update(WaitlistOffer)
        .where(WaitlistOffer.id == offer_id)
        .where(WaitlistOffer.status.in_(OPEN_OFFER_STATUSES))
        .values(status="expired", resolved_at=now, expiry_reason=reason)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return None

    released = 0
    hold = hold_for_offer(s, offer_id)
    if hold is not None:
        ledger.lock_resource(s, offer.resource_id)
        if ledger.release(s, hold.id, now=now, status="expired"):
            released = hold.units
    set_entry_status(s, offer.entry_id, ("offered",), "expired", now)
    logger.info("Waitlist offer %s expired (%s)", offer_id, reason)
    return released


def expire_due(engine: Engine, *, now: datetime | None = None) -> list[dict]:
    """
    Apply every expiry that is due at `now`, one short transaction per item.

    Safe to run repeatedly or concurrently: each item is transitioned by a
    status-guarded update, so an item already handled is skipped.
    """
    now = now or _now()
    expired: list[dict] = []

    with session(engine) as s:
        due_bookings = s.execute(
            select(Booking.id, Booking.resource_id, Booking.status)
            .where(Booking.status.in_(bookings.PENDING_STATUSES))
            .where(Booking.hold_expires_at <= now)
            .order_by(Booking.hold_expires_at)
        ).all()
        due_offers = s.execute(
            select(WaitlistOffer.id, WaitlistOffer.resource_id)
            .where(WaitlistOffer.status.in_(OPEN_OFFER_STATUSES))
            .where(WaitlistOffer.expires_at <= now)
            .order_by(WaitlistOffer.expires_at)
        ).all()

    for booking_id, resource_id, status in due_bookings:
        reason = "payment_expired" if status == "pending_payment" else "hold_expired"
        with session(engine) as s:
            released = bookings.expire_booking(s, booking_id, now=now, reason=reason)
            s.commit()
        if released is not None:
            expired.append({"type": "booking", "id": booking_id, "resource_id": resource_id, "reason": reason})

    for offer_id, resource_id in due_offers:
        with session(engine) as s:
            released = expire_offer(s, offer_id, now=now)
            s.commit()
        if released is not None:
            expired.append({"type": "waitlist_offer", "id": offer_id, "resource_id": resource_id, "reason": "response_window_elapsed"})

    # Holds whose owner is gone or was resolved without releasing them.
    with session(engine) as s:
        orphans = s.execute(
            select(Hold.id, Hold.resource_id).where(Hold.status == "active").where(Hold.expires_at <= now)
        ).all()
    for hold_id, resource_id in orphans:
        with session(engine) as s:
            ledger.lock_resource(s, resource_id)
            released = ledger.release(s, hold_id, now=now, status="expired")
            s.commit()
        if released:
            expired.append({"type": "hold", "id": hold_id, "resource_id": resource_id, "reason": "hold_expired"})

    if expired:
        logger.info("Expired %s item(s)", len(expired))
    return expired
