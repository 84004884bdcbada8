"""
Manager-approved charges against a card on file.

Staff raise a ChargeRequest; a single-use approval link goes to the operator
address; only a recorded `approved` decision lets an off-session charge run.
Capped kinds may never total more than committed party size x per-head fee
per booking (waived and failed requests don't count).
"""
from __future__ import annotations

import logging
import os
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from sqlalchemy import func, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from . import bookings, tokens
from .db import session
from .errors import ChargeCapExceeded, InvalidTransition, NotFound, PaymentFailed, ValidationFailed
from .models import Booking, ChargeRequest, GuestToken, Payment, Resource
from .payments import Processor

CHARGE_PER_HEAD_FEE = int(os.getenv("CHARGE_PER_HEAD_FEE", "1000"))
MANAGER_APPROVAL_EMAIL = os.getenv("MANAGER_APPROVAL_EMAIL", "manager@venue.example")

CAPPED_KINDS = {"late_cancel", "no_show", "reduction_fee"}
CHARGE_KINDS = CAPPED_KINDS | {"walkout"}

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def charge_cap(booking: Booking) -> int:
    return booking.committed_party_size * CHARGE_PER_HEAD_FEE


def charged_so_far(s: Session, booking_id: str, kind: str, exclude_id: str | None = None) -> int:
    q = (
        select(func.coalesce(func.sum(func.coalesce(ChargeRequest.decided_amount, ChargeRequest.amount)), 0))
        .where(ChargeRequest.booking_id == booking_id)
        .where(ChargeRequest.kind == kind)
        .where(ChargeRequest.charge_status.not_in(("waived", "failed")))
    )
    if exclude_id is not None:
        q = q.where(ChargeRequest.id != exclude_id)
    return int(s.execute(q).scalar_one())


def _check_cap(s: Session, booking: Booking, kind: str, amount: int, exclude_id: str | None = None) -> None:
    if kind not in CAPPED_KINDS:
        return
    cap = charge_cap(booking)
    prior = charged_so_far(s, booking.id, kind, exclude_id=exclude_id)
    if prior + amount > cap:
        raise ChargeCapExceeded(
            detail=f"{kind} charges would total {prior + amount}, cap is {cap}",
            booking_id=booking.id,
            cap=cap,
            already_charged=prior,
        )


def approval_token_expiry(starts_at: datetime | None, now: datetime) -> datetime:
    if starts_at is None:
        return now + timedelta(days=7)
    return min(max(starts_at + timedelta(hours=48), now + timedelta(hours=1)), now + timedelta(days=30))


def request_charge(
    s: Session,
    booking_id: str,
    *,
    kind: str,
    amount: int,
    reason: str,
    requested_by: str | None = None,
    now: datetime | None = None,
) -> tuple[ChargeRequest, str]:
    """
    Record a charge request and issue its manager approval token.

    Returns the request and the approval URL to deliver to MANAGER_APPROVAL_EMAIL.
    The booking row lock serializes cap checks for the same booking.
    """
    now = now or _now()
    if kind not in CHARGE_KINDS:
        raise ValidationFailed(detail=f"kind must be one of {', '.join(sorted(CHARGE_KINDS))}")
    if int(amount) <= 0:
        raise ValidationFailed(detail="amount must be positive")
    reason = (reason or "").strip()
    if not reason:
        raise ValidationFailed(detail="reason is required")

    booking = bookings.lock_booking(s, booking_id)
    _check_cap(s, booking, kind, int(amount))
    resource = s.get(Resource, booking.resource_id)

    charge = ChargeRequest(
        id=str(uuid4()),
        booking_id=booking.id,
        kind=kind,
        amount=int(amount),
        currency=resource.currency if resource else "GBP",
        reason=reason,
        requested_by=requested_by,
        charge_status="pending",
        created_at=now,
        updated_at=now,
        meta={},
    )
    s.add(charge)
    s.flush()
    raw, _ = tokens.issue_token(
        s,
        scope=tokens.TokenScope.APPROVE_CHARGE,
        expires_at=approval_token_expiry(resource.starts_at if resource else None, now),
        booking_id=booking.id,
        charge_request_id=charge.id,
        now=now,
    )
    logger.info("Charge request %s (%s, %s) raised for booking %s", charge.id, kind, amount, booking.id)
    return charge, tokens.action_url("charges/decision", raw)


def reissue_approval(s: Session, charge_request_id: str, *, now: datetime | None = None) -> tuple[ChargeRequest, str]:
    """
    Issue a fresh approval link for an undecided request, e.g. when the first
    notice never reached the operator. Earlier links for the request stop working.
    """
    now = now or _now()
    peek = s.get(ChargeRequest, charge_request_id)
    if peek is None:
        raise NotFound(detail="Charge request not found")
    booking = bookings.lock_booking(s, peek.booking_id)
    charge = s.execute(
        select(ChargeRequest).where(ChargeRequest.id == charge_request_id).with_for_update()
    ).scalar_one()
    if charge.manager_decision is not None:
        raise InvalidTransition(detail=f"Charge request already {charge.manager_decision}", charge_request_id=charge.id)

    s.execute(
        update(GuestToken)
        .where(GuestToken.charge_request_id == charge.id)
        .where(GuestToken.scope == tokens.TokenScope.APPROVE_CHARGE.value)
        .where(GuestToken.consumed_at.is_(None))
        .values(consumed_at=now)
        .execution_options(synchronize_session=False)
    )
    resource = s.get(Resource, booking.resource_id)
    raw, _ = tokens.issue_token(
        s,
        scope=tokens.TokenScope.APPROVE_CHARGE,
        expires_at=approval_token_expiry(resource.starts_at if resource else None, now),
        booking_id=booking.id,
        charge_request_id=charge.id,
        now=now,
    )
    logger.info("Approval link reissued for charge request %s", charge.id)
    return charge, tokens.action_url("charges/decision", raw)


def decide_charge(
    s: Session,
    token_hash: str,
    *,
    decision: str,
    amount: int | None = None,
    now: datetime | None = None,
) -> ChargeRequest:
    """Apply the manager's approve/decline exactly once. An approval may lower the amount, never raise it."""
    now = now or _now()
    if decision not in ("approve", "decline"):
        raise ValidationFailed(detail="decision must be approve or decline")

    token = tokens.resolve_token(s, token_hash, tokens.TokenScope.APPROVE_CHARGE, now=now)
    peek = s.get(ChargeRequest, token.charge_request_id)
    if peek is None:
        raise NotFound(detail="Charge request not found")
    # Same lock order as request_charge: booking, then charge.
    booking = bookings.lock_booking(s, peek.booking_id)
    charge = s.execute(
        select(ChargeRequest).where(ChargeRequest.id == token.charge_request_id).with_for_update()
    ).scalar_one_or_none()
    if charge is None:
        raise NotFound(detail="Charge request not found")
    if charge.manager_decision is not None:
        raise InvalidTransition(detail=f"Charge request already {charge.manager_decision}", charge_request_id=charge.id)

    if decision == "approve":
        decided = charge.amount if amount is None else int(amount)
        if decided <= 0 or decided > charge.amount:
            raise ValidationFailed(detail=f"Approved amount must be between 1 and {charge.amount}")
        _check_cap(s, booking, charge.kind, decided, exclude_id=charge.id)
        values = {"manager_decision": "approved", "decided_amount": decided}
    else:
        values = {"manager_decision": "declined", "charge_status": "waived"}

    result = s.execute(
        update(ChargeRequest)
        .where(ChargeRequest.id == charge.id)
        .where(ChargeRequest.manager_decision.is_(None))
        .values(decided_at=now, updated_at=now, **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise InvalidTransition(detail="Charge request was decided concurrently", charge_request_id=charge.id)
    tokens.consume_token(s, token, now=now)
    s.refresh(charge)
    logger.info("Charge request %s %s (amount=%s)", charge.id, charge.manager_decision, charge.decided_amount)
    return charge


def _finish(engine: Engine, charge_id: str, payment_id: str, *, status: str, now: datetime, ref: str | None = None, error: str | None = None) -> ChargeRequest:
    with session(engine) as s:
        payment = s.get(Payment, payment_id)
        payment.status = status
        payment.payment_intent_ref = ref
        payment.updated_at = now
        charge = s.get(ChargeRequest, charge_id)
        charge.charge_status = status
        charge.payment_intent_ref = ref
        charge.updated_at = now
        if error:
            payment.meta = {**(payment.meta or {}), "error": error}
            charge.meta = {**(charge.meta or {}), "error": error}
        s.commit()
    return charge


def attempt_approved_charge(engine: Engine, processor: Processor, charge_request_id: str, *, now: datetime | None = None) -> ChargeRequest:
    """
    Charge the card on file for an approved request. Without a recorded
    approval this refuses to run. A request already attempted is returned as is.
    """
    now = now or _now()
    with session(engine) as s:
        charge = s.execute(
            select(ChargeRequest).where(ChargeRequest.id == charge_request_id).with_for_update()
        ).scalar_one_or_none()
        if charge is None:
            raise NotFound(detail="Charge request not found")
        if charge.manager_decision != "approved" or charge.decided_at is None:
            raise InvalidTransition("approval_required", "Charge has not been approved by a manager", charge_request_id=charge.id)
        if charge.charge_status != "pending" or (charge.meta or {}).get("attempt_payment_id"):
            return charge

        booking = s.get(Booking, charge.booking_id)
        payment = Payment(
            id=str(uuid4()),
            booking_id=booking.id,
            kind="approved_charge",
            amount=charge.decided_amount,
            currency=charge.currency,
            status="pending",
            charge_request_id=charge.id,
            created_at=now,
            updated_at=now,
            meta={},
        )
        s.add(payment)
        charge.meta = {**(charge.meta or {}), "attempt_payment_id": payment.id}
        s.commit()
        customer_ref = booking.card_customer_ref
        payment_method_ref = booking.card_payment_method_ref

    if not customer_ref or not payment_method_ref:
        logger.warning("No card on file for booking %s (charge_request_id=%s)", booking.id, charge.id)
        return _finish(engine, charge.id, payment.id, status="failed", now=now, error="no_card_on_file")

    try:
        result = processor.charge_off_session(
            customer_ref=customer_ref,
            payment_method_ref=payment_method_ref,
            amount=charge.decided_amount,
            currency=charge.currency,
            idempotency_key=f"charge_request_{charge.id}",
            metadata={"booking_id": booking.id, "charge_request_id": charge.id},
        )
    except Exception as e:
        logger.exception("Approved charge failed (booking_id=%s charge_request_id=%s op=charge_off_session)", booking.id, charge.id)
        _finish(engine, charge.id, payment.id, status="failed", now=now, error=str(e)[:500])
        raise PaymentFailed(detail="Card charge failed", charge_request_id=charge.id) from e

    charge = _finish(engine, charge.id, payment.id, status=result.status, now=now, ref=result.ref)
    logger.info("Approved charge %s %s (amount=%s)", charge.id, charge.charge_status, charge.decided_amount)
    return charge
