"""
Periodic sweep, driven by an external trigger (cron, scheduler, `POST /sweep`).

Every step is safe to repeat: expiries, offer dispatch and reminders are all
claimed with status-guarded updates, so overlapping or repeated ticks never
apply an effect twice.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import select, update
from sqlalchemy.engine import Engine

from . import holds, idempotency, quiet_hours, waitlist
from .db import session
from .models import Booking, Resource, WaitlistEntry, WaitlistOffer
from .notifications import SmsSender, notify_booking

REMINDER_LEAD = timedelta(hours=24)

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def advance_waitlist(
    engine: Engine,
    resource_id: str,
    *,
    now: datetime | None = None,
    gate: quiet_hours.QuietHours | None = None,
) -> list[WaitlistOffer]:
    with session(engine) as s:
        offers = waitlist.on_capacity_released(s, resource_id, now=now, gate=gate)
        s.commit()
    return offers


def send_reminders(engine: Engine, sender: SmsSender, *, now: datetime | None = None, gate: quiet_hours.QuietHours | None = None) -> int:
    now = now or _now()
    with session(engine) as s:
        due = s.execute(
            select(Booking)
            .join(Resource, Resource.id == Booking.resource_id)
            .where(Booking.status == "confirmed")
            .where(Booking.reminder_sent_at.is_(None))
            .where(Booking.phone.is_not(None))
            .where(Resource.starts_at > now)
            .where(Resource.starts_at <= now + REMINDER_LEAD)
        ).scalars().all()

    sent = 0
    for booking in due:
        with session(engine) as s:
            claimed = s.execute(
                update(Booking)
                .where(Booking.id == booking.id)
                .where(Booking.reminder_sent_at.is_(None))
                .values(reminder_sent_at=now)
            )
            s.commit()
        if claimed.rowcount != 1:
            continue
        notify_booking(
            engine,
            sender,
            kind="reminder",
            booking=booking,
            body=f"Reminder: your booking {booking.booking_ref} for {booking.party_size} is coming up.",
            now=now,
            gate=gate,
        )
        sent += 1
    return sent


def run_sweep(
    engine: Engine,
    sender: SmsSender,
    *,
    now: datetime | None = None,
    gate: quiet_hours.QuietHours | None = None,
) -> dict:
    now = now or _now()
    expired = holds.expire_due(engine, now=now)

    resource_ids = {item["resource_id"] for item in expired}
    with session(engine) as s:
        # Queues with waiting entries can also have capacity freed by cancellations.
        resource_ids |= set(
            s.execute(
                select(WaitlistEntry.resource_id)
                .join(Resource, Resource.id == WaitlistEntry.resource_id)
                .where(WaitlistEntry.status == "waiting")
                .where(Resource.starts_at.is_(None) | (Resource.starts_at > now))
                .distinct()
            ).scalars().all()
        )

    offers = []
    for resource_id in sorted(resource_ids):
        offers.extend(advance_waitlist(engine, resource_id, now=now, gate=gate))

    dispatched = waitlist.dispatch_pending_offers(engine, sender, now=now, gate=gate)
    reminders = send_reminders(engine, sender, now=now, gate=gate)
    purged = idempotency.purge_expired(engine, now=now)

    summary = {
        "expired_bookings": sum(1 for e in expired if e["type"] == "booking"),
        "expired_booking_ids": [e["id"] for e in expired if e["type"] == "booking"],
        "expired_offers": sum(1 for e in expired if e["type"] == "waitlist_offer"),
        "expired_holds": sum(1 for e in expired if e["type"] == "hold"),
        "offers_created": sum(1 for o in offers if o.status == "pending_send"),
        "offers_expired_unsent": sum(1 for o in offers if o.status == "expired"),
        "offers_dispatched": dispatched,
        "reminders_sent": reminders,
        "idempotency_keys_purged": purged,
    }
    logger.info("Sweep at %s: %s", now.isoformat(), summary)
    return summary

