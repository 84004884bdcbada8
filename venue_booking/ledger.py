"""
Capacity ledger.

`Resource.committed` and `Resource.held` are mutated only here, inside the
caller's transaction, with the resource row locked (`SELECT ... FOR UPDATE`)
and every increment guarded by the capacity predicate in the UPDATE itself,
so two concurrent writers can never both succeed past the limit.

Hold transitions (consume / release / expire) are single-use: each is an
UPDATE guarded by `status = 'active'`, and counters only move when that
guarded update actually changed a row.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from .errors import CapacityRejected, NotFound, ValidationFailed
from .models import AreaBlock, Hold, Resource

logger = logging.getLogger(__name__)

HOLD_KINDS = {"booking", "payment", "waitlist"}


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def lock_resource(s: Session, resource_id: str) -> Resource:
    # populate_existing: counters are changed with UPDATE statements, so the identity map can be stale.
    resource = s.execute(
        select(Resource)
        .where(Resource.id == resource_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if resource is None:
        raise NotFound(detail=f"Resource {resource_id} not found")
    return resource


def available(resource: Resource) -> int | None:
    if resource.capacity is None:
        return None
    return max(0, resource.capacity - resource.committed - resource.held)


def check_service_window(s: Session, resource: Resource, now: datetime) -> None:
    if resource.starts_at is not None and now >= resource.starts_at:
        raise CapacityRejected("outside_service_window", "Resource has already started")
    if resource.bookable_from is not None and now < resource.bookable_from:
        raise CapacityRejected("outside_service_window", "Bookings are not open yet")
    if resource.bookable_until is not None and now >= resource.bookable_until:
        raise CapacityRejected("outside_service_window", "Bookings have closed")

    if resource.kind == "event" and resource.starts_at is not None:
        ends_at = resource.ends_at or resource.starts_at
        venue_block = s.execute(
            select(AreaBlock.id)
            .where(AreaBlock.area.is_(None))
            .where(AreaBlock.starts_at <= ends_at)
            .where(AreaBlock.ends_at > resource.starts_at)
            .limit(1)
        ).first()
        if venue_block is not None:
            raise CapacityRejected("private_booking_blocked", "Venue is reserved for a private booking")


def reclaim_expired(s: Session, resource_id: str, now: datetime) -> int:
    """Stop counting holds whose expiry has passed. Owner entities are expired by the sweep."""
    due = s.execute(
        select(Hold.id)
        .where(Hold.resource_id == resource_id)
        .where(Hold.status == "active")
        .where(Hold.expires_at <= now)
    ).scalars().all()
    reclaimed = 0
    for hold_id in due:
        if release(s, hold_id, now=now, status="expired"):
            reclaimed += 1
    return reclaimed


def reserve(
    s: Session,
    resource_id: str,
    units: int,
    *,
    kind: str,
    expires_at: datetime,
    now: datetime | None = None,
    booking_id: str | None = None,
    waitlist_offer_id: str | None = None,
    enforce_window: bool = True,
) -> Hold:
    """Atomic check-and-reserve. Raises CapacityRejected; never leaves a partial hold."""
    now = now or _now()
    if units < 1:
        raise ValidationFailed(detail="units must be positive")
    if kind not in HOLD_KINDS:
        raise ValidationFailed(detail=f"Unknown hold kind: {kind}")

    resource = lock_resource(s, resource_id)
    if enforce_window:
        check_service_window(s, resource, now)
    reclaim_expired(s, resource_id, now)

    stmt = update(Resource).where(Resource.id == resource_id)
    if resource.capacity is not None:
        stmt = stmt.where(Resource.committed + Resource.held + units <= Resource.capacity)
    result = s.execute(stmt.values(held=Resource.held + units))
    if result.rowcount != 1:
        raise CapacityRejected("no_availability", "Not enough capacity", resource_id=resource_id)

    hold = Hold(
        id=str(uuid4()),
        resource_id=resource_id,
        booking_id=booking_id,
        waitlist_offer_id=waitlist_offer_id,
        kind=kind,
        units=units,
        status="active",
        expires_at=expires_at,
        created_at=now,
    )
    s.add(hold)
    s.flush()
    logger.debug("Reserved %s unit(s) on resource %s (hold=%s kind=%s)", units, resource_id, hold.id, kind)
    return hold


def _resolve(s: Session, hold_id: str, status: str, now: datetime) -> Hold | None:
    result = s.execute(
        update(Hold)
        .where(Hold.id == hold_id)
        .where(Hold.status == "active")
        .values(status=status, resolved_at=now)
    )
    if result.rowcount != 1:
        return None
    return s.get(Hold, hold_id, populate_existing=True)


def release(s: Session, hold_id: str, *, now: datetime | None = None, status: str = "released") -> bool:
    """Return units to the pool. Releasing a non-active hold is a no-op."""
    hold = _resolve(s, hold_id, status, now or _now())
    if hold is None:
        return False
    s.execute(update(Resource).where(Resource.id == hold.resource_id).values(held=Resource.held - hold.units))
    logger.debug("Hold %s %s (%s unit(s) back to %s)", hold_id, status, hold.units, hold.resource_id)
    return True


def consume(s: Session, hold_id: str, *, now: datetime | None = None) -> bool:
    """Move held units to committed. False when the hold is no longer active."""
    hold = _resolve(s, hold_id, "consumed", now or _now())
    if hold is None:
        return False
    s.execute(
        update(Resource)
        .where(Resource.id == hold.resource_id)
        .values(held=Resource.held - hold.units, committed=Resource.committed + hold.units)
    )
    return True


def convert(
    s: Session,
    hold_id: str,
    *,
    kind: str,
    expires_at: datetime,
    now: datetime | None = None,
    booking_id: str | None = None,
) -> Hold | None:
    """
    Replace an active hold with a new one for the same units without touching the
    counters, e.g. a waitlist hold becoming a payment hold on acceptance.
    """
    now = now or _now()
    old = _resolve(s, hold_id, "consumed", now)
    if old is None:
        return None
    new = Hold(
        id=str(uuid4()),
        resource_id=old.resource_id,
        booking_id=booking_id,
        waitlist_offer_id=old.waitlist_offer_id,
        kind=kind,
        units=old.units,
        status="active",
        expires_at=expires_at,
        created_at=now,
    )
    s.add(new)
    s.flush()
    return new


def release_committed(s: Session, resource_id: str, units: int) -> None:
    s.execute(
        update(Resource)
        .where(Resource.id == resource_id)
        .where(Resource.committed >= units)
        .values(committed=Resource.committed - units)
    )


def active_hold_for_booking(s: Session, booking_id: str) -> Hold | None:
    return s.execute(
        select(Hold)
        .where(Hold.booking_id == booking_id)
        .where(Hold.status == "active")
        .order_by(Hold.created_at.desc())
        .limit(1)
    ).scalar_one_or_none()
