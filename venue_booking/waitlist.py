"""
Waitlist engine.

Entries queue per resource in enqueue order. Whenever capacity is released
the queue is advanced under the resource lock: the earliest waiting entry
whose party fits the free capacity gets an offer (and a hold on those units).
Entries that cannot be offered a fair response window are expired and the
queue moves on to the next one.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from . import bookings, holds, ledger, quiet_hours, tokens
from .db import session
from .errors import CapacityRejected, Expired, NotFound, TokenRejected, ValidationFailed
from .models import Booking, Resource, WaitlistEntry, WaitlistOffer
from .notifications import SmsSender, dispatch_sms, normalize_phone

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def enqueue(
    s: Session,
    *,
    resource_id: str,
    party_size: int,
    customer_name: str,
    phone: str,
    now: datetime | None = None,
) -> WaitlistEntry:
    now = now or _now()
    party_size = bookings.validate_party_size(party_size)
    name = (customer_name or "").strip()
    if not name:
        raise ValidationFailed(detail="customer_name is required")
    try:
        phone = normalize_phone(phone)
    except ValueError as e:
        raise ValidationFailed(detail=str(e))
    if not phone:
        raise ValidationFailed(detail="A phone number is required to receive waitlist offers")

    resource = s.get(Resource, resource_id)
    if resource is None:
        raise NotFound(detail=f"Resource {resource_id} not found")
    if resource.starts_at is not None and now >= resource.starts_at:
        raise CapacityRejected("outside_service_window", "Resource has already started")

    entry = WaitlistEntry(
        id=str(uuid4()),
        resource_id=resource_id,
        customer_name=name,
        phone=phone,
        party_size=party_size,
        status="waiting",
        created_at=now,
        updated_at=now,
    )
    s.add(entry)
    s.flush()
    logger.info("Waitlist entry %s queued for %s (party=%s)", entry.id, resource_id, party_size)
    return entry


def withdraw(s: Session, entry_id: str, *, now: datetime | None = None) -> int:
    """
    Withdraw a waiting or offered entry. Returns units released by an open
    offer (0 otherwise). Withdrawing twice is a no-op.
    """
    now = now or _now()
    entry = s.execute(select(WaitlistEntry).where(WaitlistEntry.id == entry_id).with_for_update()).scalar_one_or_none()
    if entry is None:
        raise NotFound(detail=f"Waitlist entry {entry_id} not found")

    if not holds.set_entry_status(s, entry_id, ("waiting", "offered"), "withdrawn", now):
        return 0

    released = 0
    open_offers = s.execute(
        select(WaitlistOffer.id)
        .where(WaitlistOffer.entry_id == entry_id)
        .where(WaitlistOffer.status.in_(holds.OPEN_OFFER_STATUSES))
    ).scalars().all()
    for offer_id in open_offers:
        released += holds.expire_offer(s, offer_id, now=now, reason="withdrawn") or 0
    logger.info("Waitlist entry %s withdrawn", entry_id)
    return released


def _next_eligible(s: Session, resource_id: str, free: int | None) -> WaitlistEntry | None:
    q = (
        select(WaitlistEntry)
        .where(WaitlistEntry.resource_id == resource_id)
        .where(WaitlistEntry.status == "waiting")
        .order_by(WaitlistEntry.created_at, WaitlistEntry.id)
    )
    if free is not None:
        q = q.where(WaitlistEntry.party_size <= free)
    return s.execute(q.limit(1)).scalar_one_or_none()


def on_capacity_released(
    s: Session,
    resource_id: str,
    *,
    now: datetime | None = None,
    gate: quiet_hours.QuietHours | None = None,
    window=None,
) -> list[WaitlistOffer]:
    """
    Advance the queue for `resource_id` as far as free capacity allows.

    Capacity is re-read under the resource row lock on every step, in the same
    transaction that creates each offer's hold, so two release events can never
    offer the same freed units twice. Returns every offer created, including
    those recorded as expired by the response-window rule.
    """
    now = now or _now()
    offers: list[WaitlistOffer] = []
    while True:
        resource = ledger.lock_resource(s, resource_id)
        if ledger.reclaim_expired(s, resource_id, now):
            s.refresh(resource)
        try:
            ledger.check_service_window(s, resource, now)
        except CapacityRejected as e:
            logger.debug("Waitlist for %s not advanced: %s", resource_id, e.reason)
            break

        free = ledger.available(resource)
        if free == 0:
            break
        entry = _next_eligible(s, resource_id, free)
        if entry is None:
            break
        offers.append(holds.schedule_offer(s, resource, entry, now=now, gate=gate, window=window))
    return offers


def send_offer(
    engine: Engine,
    sender: SmsSender,
    offer_id: str,
    *,
    now: datetime | None = None,
    gate: quiet_hours.QuietHours | None = None,
) -> bool:
    """
    Issue the guest's acceptance link and hand the SMS to the provider for the
    offer's scheduled send time. The offer is claimed (`pending_send -> sent`)
    before the call; a provider failure puts it back for the next sweep.

    A retry that can no longer go out at the scheduled time moves the send
    and the response window to the next permitted instant. If that window no
    longer closes before the start, the offer is expired and the queue advances.
    """
    now = now or _now()
    with session(engine) as s:
        offer = s.execute(
            select(WaitlistOffer)
            .where(WaitlistOffer.id == offer_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if offer is None or offer.status != "pending_send":
            return False
        if offer.expires_at <= now:
            return False
        send_at = max(offer.scheduled_send_at, quiet_hours.next_permitted_instant(now, gate))
        if send_at != offer.scheduled_send_at and not holds.reschedule_offer(s, offer, send_at, now=now):
            on_capacity_released(s, offer.resource_id, now=now, gate=gate)
            s.commit()
            return False
        claimed = s.execute(
            update(WaitlistOffer)
            .where(WaitlistOffer.id == offer_id)
            .where(WaitlistOffer.status == "pending_send")
            .values(status="sent", sent_at=offer.scheduled_send_at)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            s.rollback()
            return False
        entry = s.get(WaitlistEntry, offer.entry_id)
        resource = s.get(Resource, offer.resource_id)
        raw, _token = tokens.issue_token(
            s,
            scope=tokens.TokenScope.WAITLIST_OFFER,
            expires_at=offer.expires_at,
            waitlist_offer_id=offer.id,
            now=now,
        )
        s.commit()

    body = (
        f"A space for {entry.party_size} has opened up for {resource.name}. "
        f"Reply by {offer.expires_at:%d %b %H:%M} UTC: {tokens.action_url('waitlist/offers', raw)}"
    )
    msg = dispatch_sms(
        engine,
        sender,
        kind="waitlist_offer",
        to=entry.phone,
        body=body,
        scheduled_for=send_at,
        waitlist_offer_id=offer.id,
        gate=gate,
    )
    if msg.status == "failed":
        with session(engine) as s:
            s.execute(
                update(WaitlistOffer)
                .where(WaitlistOffer.id == offer_id)
                .where(WaitlistOffer.status == "sent")
                .values(status="pending_send", sent_at=None)
            )
            s.commit()
        return False
    return True


def dispatch_pending_offers(
    engine: Engine,
    sender: SmsSender,
    *,
    now: datetime | None = None,
    gate: quiet_hours.QuietHours | None = None,
) -> int:
    now = now or _now()
    with session(engine) as s:
        pending = s.execute(
            select(WaitlistOffer.id)
            .where(WaitlistOffer.status == "pending_send")
            .where(WaitlistOffer.expires_at > now)
            .order_by(WaitlistOffer.created_at)
        ).scalars().all()
    return sum(1 for offer_id in pending if send_offer(engine, sender, offer_id, now=now, gate=gate))


def accept_offer(s: Session, token_hash: str, *, now: datetime | None = None) -> Booking:
    """
    Turn a sent offer into a booking in one transaction: the offer's hold is
    handed to the new booking, which is confirmed straight away for cash
    resources or moved to `pending_payment` otherwise.
    """
    now = now or _now()
    token = tokens.resolve_token(s, token_hash, tokens.TokenScope.WAITLIST_OFFER, now=now)
    offer = s.execute(
        select(WaitlistOffer)
        .where(WaitlistOffer.id == token.waitlist_offer_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if offer is None:
        raise TokenRejected("invalid_token")
    if offer.status == "accepted":
        raise TokenRejected("token_used")
    if offer.status != "sent" or offer.expires_at <= now:
        raise Expired(detail="This waitlist offer has expired", waitlist_offer_id=offer.id)

    resource = ledger.lock_resource(s, offer.resource_id)
    hold = holds.hold_for_offer(s, offer.id)
    if hold is None or hold.expires_at <= now:
        raise Expired(detail="This waitlist offer has expired", waitlist_offer_id=offer.id)

    entry = s.get(WaitlistEntry, offer.entry_id)
    booking = Booking(
        id=str(uuid4()),
        booking_ref=bookings.new_booking_ref(),
        resource_id=resource.id,
        customer_name=entry.customer_name,
        phone=entry.phone,
        party_size=offer.units,
        committed_party_size=offer.units,
        status="pending_hold",
        payment_mode=resource.payment_mode,
        source="waitlist",
        created_at=now,
        updated_at=now,
        hold_expires_at=hold.expires_at,
    )
    s.add(booking)
    s.flush()
    ledger.convert(s, hold.id, kind="booking", expires_at=hold.expires_at, now=now, booking_id=booking.id)
    bookings.audit(s, booking.id, "created", None, "pending_hold", now, waitlist_offer_id=offer.id)

    if booking.payment_mode == "cash":
        booking = bookings.confirm_booking(s, booking.id, now=now, event="waitlist_accepted", waitlist_offer_id=offer.id)
    else:
        booking = bookings.mark_pending_payment(s, booking.id, now=now)

    s.execute(
        update(WaitlistOffer)
        .where(WaitlistOffer.id == offer.id)
        .where(WaitlistOffer.status == "sent")
        .values(status="accepted", resolved_at=now, booking_id=booking.id)
        .execution_options(synchronize_session=False)
    )
    holds.set_entry_status(s, entry.id, ("offered",), "accepted", now)
    tokens.consume_token(s, token, now=now)
    logger.info("Waitlist offer %s accepted as booking %s (%s)", offer.id, booking.id, booking.status)
    return booking
