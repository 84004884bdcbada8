"""
Payment gate: prepaid checkout, card capture and the processor webhook.

External processor calls never run inside a database transaction: state is
prepared in one short transaction, the processor is called, and the outcome
is applied in a second short transaction. Every processor call carries an
idempotency key derived from our own identifiers.
"""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Protocol
from uuid import uuid4

import stripe
from sqlalchemy import select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from . import bookings, ledger, tokens
from .db import session
from .errors import InvalidTransition, NotFound, PaymentFailed, ValidationFailed, WebhookRejected
from .models import Booking, Payment, Resource, WebhookEvent

STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "")
WEBHOOK_TOLERANCE_SECONDS = int(os.getenv("WEBHOOK_TOLERANCE_SECONDS", "300"))
CHECKOUT_CLAIM_SECONDS = int(os.getenv("CHECKOUT_CLAIM_SECONDS", "60"))

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


@dataclass
class CheckoutSession:
    ref: str
    url: str | None = None


@dataclass
class SetupIntent:
    customer_ref: str | None
    payment_method_ref: str | None


@dataclass
class ChargeResult:
    ref: str
    status: str  # succeeded|failed


class Processor(Protocol):
    def create_checkout_session(
        self, *, amount: int, currency: str, description: str, success_url: str, cancel_url: str,
        expires_at: datetime | None, idempotency_key: str, metadata: dict[str, str],
    ) -> CheckoutSession: ...

    def create_setup_session(
        self, *, customer_email: str | None, success_url: str, cancel_url: str,
        idempotency_key: str, metadata: dict[str, str],
    ) -> CheckoutSession: ...

    def get_setup_intent(self, setup_intent_ref: str) -> SetupIntent: ...

    def charge_off_session(
        self, *, customer_ref: str, payment_method_ref: str, amount: int, currency: str,
        idempotency_key: str, metadata: dict[str, str],
    ) -> ChargeResult: ...

    def refund(self, *, payment_intent_ref: str, amount: int, idempotency_key: str) -> ChargeResult: ...


class StripeProcessor:
    """Processor backed by the Stripe API. Stripe errors surface as PaymentFailed."""

    def __init__(self, secret_key: str = STRIPE_SECRET_KEY):
        self.secret_key = secret_key

    def _call(self, fn, *args, **kwargs):
        try:
            return fn(*args, api_key=self.secret_key, **kwargs)
        except stripe.StripeError as e:
            raise PaymentFailed(detail=f"Processor error: {e.user_message or e.code or type(e).__name__}") from e

    def create_checkout_session(self, *, amount, currency, description, success_url, cancel_url, expires_at, idempotency_key, metadata):
        params = {
            "mode": "payment",
            "success_url": success_url,
            "cancel_url": cancel_url,
            "line_items": [
                {
                    "quantity": 1,
                    "price_data": {"currency": currency.lower(), "unit_amount": amount, "product_data": {"name": description}},
                }
            ],
            "metadata": metadata,
            "payment_intent_data": {"metadata": metadata},
        }
        if expires_at is not None:
            params["expires_at"] = int(expires_at.timestamp())
        checkout = self._call(stripe.checkout.Session.create, idempotency_key=idempotency_key, **params)
        return CheckoutSession(ref=checkout.id, url=checkout.url)

    def create_setup_session(self, *, customer_email, success_url, cancel_url, idempotency_key, metadata):
        params = {
            "mode": "setup",
            "currency": "gbp",
            "customer_creation": "always",
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata,
        }
        if customer_email:
            params["customer_email"] = customer_email
        checkout = self._call(stripe.checkout.Session.create, idempotency_key=idempotency_key, **params)
        return CheckoutSession(ref=checkout.id, url=checkout.url)

    def get_setup_intent(self, setup_intent_ref):
        intent = self._call(stripe.SetupIntent.retrieve, setup_intent_ref)
        return SetupIntent(customer_ref=intent.customer, payment_method_ref=intent.payment_method)

    def charge_off_session(self, *, customer_ref, payment_method_ref, amount, currency, idempotency_key, metadata):
        intent = self._call(
            stripe.PaymentIntent.create,
            idempotency_key=idempotency_key,
            amount=amount,
            currency=currency.lower(),
            customer=customer_ref,
            payment_method=payment_method_ref,
            off_session=True,
            confirm=True,
            metadata=metadata,
        )
        return ChargeResult(ref=intent.id, status="succeeded" if intent.status == "succeeded" else "failed")

    def refund(self, *, payment_intent_ref, amount, idempotency_key):
        refund = self._call(stripe.Refund.create, idempotency_key=idempotency_key, payment_intent=payment_intent_ref, amount=amount)
        return ChargeResult(ref=refund.id, status="succeeded" if refund.status in ("succeeded", "pending") else "failed")


def get_processor() -> Processor:
    return StripeProcessor()


# --- webhook -----------------------------------------------------------------


@dataclass
class WebhookOutcome:
    event_id: str
    type: str
    session_ref: str
    outcome: str  # paid|expired|failed|setup_completed
    payment_intent_ref: str | None = None
    setup_intent_ref: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)


def verify_webhook_signature(
    payload: bytes,
    header: str | None,
    secret: str | None = None,
    *,
    tolerance: int = WEBHOOK_TOLERANCE_SECONDS,
) -> None:
    """Check the `Stripe-Signature` header against the raw body."""
    if secret is None:
        secret = STRIPE_WEBHOOK_SECRET
    if not secret:
        raise WebhookRejected(detail="Webhook secret is not configured")
    if not header:
        raise WebhookRejected(detail="Missing signature header")
    try:
        stripe.Webhook.construct_event(payload, header, secret, tolerance)
    except stripe.SignatureVerificationError as e:
        raise WebhookRejected(detail=str(e.user_message or "Signature mismatch")) from e
    except ValueError as e:
        raise ValidationFailed(detail="Malformed webhook payload") from e


def parse_webhook_event(payload: bytes) -> WebhookOutcome | None:
    """Reduce a processor event to what the gate acts on. None for event types we ignore."""
    try:
        event = json.loads(payload)
        obj = event["data"]["object"]
        event_id = event["id"]
        event_type = event["type"]
    except (ValueError, KeyError, TypeError):
        raise ValidationFailed(detail="Malformed webhook payload")

    if event_type == "checkout.session.completed":
        if obj.get("mode") == "setup":
            outcome = "setup_completed"
        elif obj.get("payment_status") == "paid":
            outcome = "paid"
        else:
            # Async methods settle later via async_payment_succeeded.
            return None
    elif event_type == "checkout.session.async_payment_succeeded":
        outcome = "paid"
    elif event_type == "checkout.session.expired":
        outcome = "expired"
    elif event_type == "checkout.session.async_payment_failed":
        outcome = "failed"
    else:
        return None

    return WebhookOutcome(
        event_id=event_id,
        type=event_type,
        session_ref=obj.get("id", ""),
        outcome=outcome,
        payment_intent_ref=obj.get("payment_intent"),
        setup_intent_ref=obj.get("setup_intent"),
        metadata=obj.get("metadata") or {},
    )


# --- prepaid checkout / card capture ----------------------------------------


def _fail_and_release(engine: Engine, booking_id: str, payment_id: str | None, now: datetime, reason: str) -> int:
    with session(engine) as s:
        if payment_id is not None:
            payment = s.get(Payment, payment_id)
            payment.status = "failed"
            payment.updated_at = now
            payment.meta = {**(payment.meta or {}), "reason": reason}
        _, released = bookings.cancel_booking(s, booking_id, now=now, reason=reason)
        s.commit()
    return released


def _pending_payment_booking(s, booking_id: str, mode: str, now: datetime) -> tuple[Booking, Resource]:
    booking = bookings.lock_booking(s, booking_id)
    if booking.payment_mode != mode:
        raise ValidationFailed(detail=f"Booking payment mode is {booking.payment_mode}, not {mode}")
    if booking.status != "pending_payment":
        raise InvalidTransition(detail=f"Booking is {booking.status}", booking_id=booking.id, status=booking.status)
    hold = ledger.active_hold_for_booking(s, booking.id)
    if hold is None or hold.expires_at <= now:
        raise PaymentFailed("payment_expired", "The payment window for this booking has closed", booking_id=booking.id)
    return booking, s.get(Resource, booking.resource_id)


def start_checkout(engine: Engine, processor: Processor, booking_id: str, *, now: datetime | None = None) -> dict:
    """
    Open a checkout session for a prepaid booking.

    The pending deposit row is the claim: re-requesting while a session is open
    returns that session, and re-requesting while another caller is still at
    the processor returns the claim with no session yet. A claim that never got
    a session within CHECKOUT_CLAIM_SECONDS is abandoned and a new one made.
    On processor failure the booking is cancelled and its hold released before
    PaymentFailed propagates.
    """
    now = now or _now()
    with session(engine) as s:
        booking, resource = _pending_payment_booking(s, booking_id, "prepaid", now)
        existing = s.execute(
            select(Payment)
            .where(Payment.booking_id == booking.id)
            .where(Payment.kind == "deposit")
            .where(Payment.status == "pending")
            .order_by(Payment.created_at.desc())
            .limit(1)
        ).scalar_one_or_none()
        if existing is not None and existing.external_ref is not None:
            return {"booking_id": booking.id, "payment_id": existing.id, "session_ref": existing.external_ref, "checkout_url": (existing.meta or {}).get("url")}
        if existing is not None:
            if existing.created_at > now - timedelta(seconds=CHECKOUT_CLAIM_SECONDS):
                logger.info("Checkout for booking %s already in progress (payment_id=%s)", booking.id, existing.id)
                return {"booking_id": booking.id, "payment_id": existing.id, "session_ref": None, "checkout_url": None, "in_progress": True}
            existing.status = "failed"
            existing.updated_at = now
            existing.meta = {**(existing.meta or {}), "reason": "checkout_abandoned"}

        amount = resource.price_per_unit * booking.party_size
        if amount <= 0:
            raise ValidationFailed(detail="Resource has no price set for prepaid checkout")
        payment = Payment(
            id=str(uuid4()),
            booking_id=booking.id,
            kind="deposit",
            amount=amount,
            currency=resource.currency,
            status="pending",
            created_at=now,
            updated_at=now,
            meta={},
        )
        s.add(payment)
        raw, _ = tokens.issue_token(
            s, scope=tokens.TokenScope.PAY, expires_at=booking.hold_expires_at, booking_id=booking.id, single_use=False, now=now
        )
        s.commit()
        hold_expires_at = booking.hold_expires_at

    try:
        checkout = processor.create_checkout_session(
            amount=amount,
            currency=resource.currency,
            description=f"{resource.name} x{booking.party_size} ({booking.booking_ref})",
            success_url=tokens.action_url("bookings/paid", raw),
            cancel_url=tokens.action_url("bookings/manage", raw),
            expires_at=hold_expires_at,
            idempotency_key=f"checkout_{payment.id}",
            metadata={"booking_id": booking.id, "payment_id": payment.id},
        )
    except Exception as e:
        logger.exception("Checkout failed (booking_id=%s resource_id=%s op=start_checkout)", booking.id, booking.resource_id)
        released = _fail_and_release(engine, booking.id, payment.id, now, "checkout_failed")
        raise PaymentFailed(detail="Could not start checkout", booking_id=booking.id, released_units=released) from e

    with session(engine) as s:
        p = s.get(Payment, payment.id)
        p.external_ref = checkout.ref
        p.meta = {**(p.meta or {}), "url": checkout.url}
        p.updated_at = now
        s.commit()
    logger.info("Checkout session %s opened for booking %s (amount=%s)", checkout.ref, booking.id, amount)
    return {"booking_id": booking.id, "payment_id": payment.id, "session_ref": checkout.ref, "checkout_url": checkout.url}


def capture_card(engine: Engine, processor: Processor, booking_id: str, *, now: datetime | None = None) -> dict:
    """Open a setup session so the guest's card is stored for later approved charges. No money moves."""
    now = now or _now()
    with session(engine) as s:
        booking, _ = _pending_payment_booking(s, booking_id, "card_capture", now)
        if booking.card_setup_session_ref:
            return {"booking_id": booking.id, "session_ref": booking.card_setup_session_ref, "checkout_url": None}
        raw, _ = tokens.issue_token(
            s, scope=tokens.TokenScope.MANAGE_BOOKING, expires_at=booking.hold_expires_at, booking_id=booking.id, single_use=False, now=now
        )
        s.commit()

    try:
        setup = processor.create_setup_session(
            customer_email=booking.email,
            success_url=tokens.action_url("bookings/card-saved", raw),
            cancel_url=tokens.action_url("bookings/manage", raw),
            idempotency_key=f"setup_{booking.id}",
            metadata={"booking_id": booking.id},
        )
    except Exception as e:
        logger.exception("Card capture failed (booking_id=%s resource_id=%s op=capture_card)", booking.id, booking.resource_id)
        released = _fail_and_release(engine, booking.id, None, now, "card_capture_failed")
        raise PaymentFailed(detail="Could not start card capture", booking_id=booking.id, released_units=released) from e

    with session(engine) as s:
        b = s.get(Booking, booking.id)
        b.card_setup_session_ref = setup.ref
        b.updated_at = now
        s.commit()
    return {"booking_id": booking.id, "session_ref": setup.ref, "checkout_url": setup.url}


def _record_event(s, event: WebhookOutcome, now: datetime) -> bool:
    s.add(WebhookEvent(id=event.event_id, type=event.type, received_at=now))
    try:
        s.flush()
    except IntegrityError:
        s.rollback()
        return False
    return True


def _refund(engine: Engine, processor: Processor, payment_id: str, now: datetime) -> dict:
    with session(engine) as s:
        paid = s.get(Payment, payment_id)
        refund = Payment(
            id=str(uuid4()),
            booking_id=paid.booking_id,
            kind="refund",
            amount=paid.amount,
            currency=paid.currency,
            status="pending",
            payment_intent_ref=paid.payment_intent_ref,
            created_at=now,
            updated_at=now,
            meta={"refund_of": paid.id},
        )
        s.add(refund)
        s.commit()

    try:
        result = processor.refund(
            payment_intent_ref=paid.payment_intent_ref, amount=paid.amount, idempotency_key=f"refund_{paid.id}"
        )
        status, ref = result.status, result.ref
    except Exception as e:
        logger.exception("Auto-refund failed (booking_id=%s payment_id=%s op=refund)", paid.booking_id, paid.id)
        status, ref = "failed", None
        refund.meta = {**refund.meta, "error": str(e)[:500]}

    with session(engine) as s:
        r = s.get(Payment, refund.id)
        r.status = status
        r.external_ref = ref
        r.meta = refund.meta
        r.updated_at = now
        if status == "succeeded":
            p = s.get(Payment, paid.id)
            p.status = "refunded"
            p.updated_at = now
        s.commit()
    return {"action": "refunded" if status == "succeeded" else "refund_failed", "booking_id": paid.booking_id}


def on_payment_webhook(engine: Engine, processor: Processor, event: WebhookOutcome, *, now: datetime | None = None) -> dict:
    """
    Apply a verified processor event exactly once (replayed event ids no-op).

    - paid: confirm the booking, consuming its payment hold; if the booking is
      no longer awaiting payment the money is refunded automatically
    - expired / failed: the booking's hold is released
    - setup_completed: store the card references and confirm the booking

    The result carries `released_units` so the caller can advance the waitlist.
    """
    now = now or _now()
    setup: SetupIntent | None = None
    if event.outcome == "setup_completed" and event.setup_intent_ref:
        setup = processor.get_setup_intent(event.setup_intent_ref)

    refund_payment_id = None
    with session(engine) as s:
        if not _record_event(s, event, now):
            logger.info("Webhook event %s already processed", event.event_id)
            return {"action": "duplicate", "booking_id": None, "released_units": 0}

        if event.outcome == "setup_completed":
            booking = s.execute(select(Booking).where(Booking.card_setup_session_ref == event.session_ref)).scalar_one_or_none()
            if booking is None:
                raise NotFound(detail=f"No booking for setup session {event.session_ref}")
            booking = bookings.lock_booking(s, booking.id)
            if booking.status != "pending_payment":
                s.commit()
                return {"action": "ignored", "booking_id": booking.id, "released_units": 0}
            booking.card_customer_ref = setup.customer_ref if setup else None
            booking.card_payment_method_ref = setup.payment_method_ref if setup else None
            s.flush()
            bookings.confirm_booking(s, booking.id, now=now, event="card_captured")
            s.commit()
            return {"action": "confirmed", "booking_id": booking.id, "released_units": 0}

        payment = s.execute(select(Payment).where(Payment.external_ref == event.session_ref)).scalar_one_or_none()
        if payment is None and event.metadata.get("payment_id"):
            # Session opened by a claim that never recorded its ref.
            payment = s.get(Payment, event.metadata["payment_id"])
        if payment is None:
            raise NotFound(detail=f"No payment for checkout session {event.session_ref}")
        booking = bookings.lock_booking(s, payment.booking_id)

        if event.outcome == "paid":
            if payment.status in ("succeeded", "refunded"):
                s.commit()
                return {"action": "ignored", "booking_id": booking.id, "released_units": 0}
            payment.status = "succeeded"
            payment.external_ref = event.session_ref
            payment.payment_intent_ref = event.payment_intent_ref
            payment.updated_at = now
            hold = ledger.active_hold_for_booking(s, booking.id)
            if booking.status == "pending_payment" and hold is not None and hold.expires_at > now:
                bookings.confirm_booking(s, booking.id, now=now, event="payment_received", payment_id=payment.id)
                s.commit()
                return {"action": "confirmed", "booking_id": booking.id, "released_units": 0}
            if booking.status == "confirmed":
                other_paid = s.execute(
                    select(Payment.id)
                    .where(Payment.booking_id == booking.id)
                    .where(Payment.kind == "deposit")
                    .where(Payment.status.in_(("succeeded", "refunded")))
                    .where(Payment.id != payment.id)
                    .limit(1)
                ).scalar_one_or_none()
                if other_paid is None:
                    s.commit()
                    return {"action": "ignored", "booking_id": booking.id, "released_units": 0}
                # A second checkout for an already-paid booking.
                logger.warning("Booking %s paid twice (payment_id=%s, first=%s)", booking.id, payment.id, other_paid)
                released = 0
            else:
                # Paid after the booking expired or was cancelled.
                released = bookings.expire_booking(s, booking.id, now=now, reason="payment_expired") or 0
            refund_payment_id = payment.id
            s.commit()
        else:
            payment.status = "failed"
            payment.updated_at = now
            payment.meta = {**(payment.meta or {}), "reason": event.outcome}
            if event.outcome == "expired":
                released = bookings.expire_booking(s, booking.id, now=now, reason="payment_expired") or 0
            else:
                _, released = bookings.cancel_booking(s, booking.id, now=now, reason="payment_failed")
            s.commit()
            return {"action": f"payment_{event.outcome}", "booking_id": booking.id, "released_units": released}

    result = _refund(engine, processor, refund_payment_id, now)
    result["released_units"] = released
    return result
