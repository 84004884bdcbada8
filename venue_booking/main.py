from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal

from fastapi import Depends, FastAPI, Header, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.engine import Engine

from . import bookings, charges, events, intake, payments, tables, throttle, tokens, waitlist
from .db import get_engine, session
from .errors import BookingError, NotFound, RateLimited, status_code_for
from .models import Booking, WaitlistEntry
from .notifications import SmsSender, get_sms_sender
from .security import STAFF_ROLES, SYSTEM_ROLES, caller_identity, require_roles
from .sweep import advance_waitlist, run_sweep

app = FastAPI(
    title="Venue Booking Core",
    version="0.1.0",
    description="Capacity holds, waitlist offers, payment-gated confirmation, table allocation and approved charges.",
)


def get_db() -> Engine:
    return get_engine()


def get_sender() -> SmsSender:
    return get_sms_sender()


def get_payment_processor() -> payments.Processor:
    return payments.get_processor()


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


@app.exception_handler(BookingError)
async def booking_error_handler(_request: Request, exc: BookingError):
    headers = None
    if isinstance(exc, RateLimited) and exc.context.get("retry_after"):
        headers = {"Retry-After": str(exc.context["retry_after"])}
    return JSONResponse(status_code=status_code_for(exc), content={"detail": exc.as_dict()}, headers=headers)


def _release_followups(engine: Engine, sender: SmsSender, resource_id: str) -> list[tuple[str, dict]]:
    """Advance the resource's waitlist after capacity came back and send any new offers."""
    published: list[tuple[str, dict]] = []
    for offer in advance_waitlist(engine, resource_id):
        if offer.status == "pending_send":
            waitlist.send_offer(engine, sender, offer.id)
        published.append(
            (
                "waitlist.offered",
                {
                    "waitlist_offer_id": offer.id,
                    "entry_id": offer.entry_id,
                    "resource_id": offer.resource_id,
                    "status": offer.status,
                    "scheduled_send_at": offer.scheduled_send_at.isoformat(),
                    "expires_at": offer.expires_at.isoformat(),
                },
            )
        )
    return published


@app.get("/health")
def health():
    return {"status": "ok"}


# --- bookings -----------------------------------------------------------------


class BookingRequest(BaseModel):
    resource_id: str
    party_size: int = Field(ge=1)
    customer_name: str = Field(min_length=1)
    phone: str | None = None
    email: str | None = None
    payment_mode: Literal["cash", "prepaid", "card_capture"] | None = None


class BookingOut(BaseModel):
    booking_id: str
    booking_ref: str
    resource_id: str
    status: str
    party_size: int
    payment_mode: str
    source: str
    hold_expires_at: datetime | None = None
    confirmed_at: datetime | None = None
    tables: list[str] = Field(default_factory=list)
    checkout: dict | None = None


def _booking_out(s, booking: Booking) -> BookingOut:
    return BookingOut(**bookings.booking_view(booking, tables.table_ids_for(s, [booking.id])[booking.id]))


@app.post("/bookings", response_model=BookingOut)
async def create_booking(
    payload: BookingRequest,
    request: Request,
    idempotency_key: str = Header(alias="Idempotency-Key", min_length=1, max_length=255),
    engine: Engine = Depends(get_db),
    sender: SmsSender = Depends(get_sender),
    processor: payments.Processor = Depends(get_payment_processor),
):
    result = await run_in_threadpool(
        intake.submit_booking,
        engine,
        payload.model_dump(),
        idempotency_key=idempotency_key,
        caller=caller_identity(request),
        processor=processor,
        sender=sender,
    )
    await events.publish_all(result.events)
    return BookingOut(**result.response)


@app.get("/bookings/{booking_id}", response_model=BookingOut)
def get_booking(
    booking_id: str,
    engine: Engine = Depends(get_db),
    _principal=Depends(require_roles(*STAFF_ROLES)),
):
    with session(engine) as s:
        booking = s.get(Booking, booking_id)
        if booking is None:
            raise NotFound(detail=f"Booking {booking_id} not found")
        return _booking_out(s, booking)


@app.post("/bookings/{booking_id}/confirm", response_model=BookingOut)
async def confirm_booking(
    booking_id: str,
    engine: Engine = Depends(get_db),
    _principal=Depends(require_roles(*STAFF_ROLES)),
):
    with session(engine) as s:
        booking = bookings.confirm_booking(s, booking_id, now=_now())
        out = _booking_out(s, booking)
        s.commit()

    await events.publish("booking.confirmed", {"booking_id": out.booking_id, "resource_id": out.resource_id})
    return out


class CancelRequest(BaseModel):
    reason: str = "guest_cancelled"


@app.post("/bookings/{booking_id}/cancel", response_model=BookingOut)
async def cancel_booking(
    booking_id: str,
    payload: CancelRequest,
    engine: Engine = Depends(get_db),
    sender: SmsSender = Depends(get_sender),
    _principal=Depends(require_roles(*STAFF_ROLES)),
):
    with session(engine) as s:
        booking, released = bookings.cancel_booking(s, booking_id, now=_now(), reason=payload.reason)
        out = _booking_out(s, booking)
        s.commit()

    published = [("booking.cancelled", {"booking_id": out.booking_id, "resource_id": out.resource_id, "released_units": released})]
    if released:
        published += await run_in_threadpool(_release_followups, engine, sender, out.resource_id)
    await events.publish_all(published)
    return out


class PartySizeRequest(BaseModel):
    party_size: int = Field(ge=1)


@app.post("/bookings/{booking_id}/party-size", response_model=BookingOut)
async def change_party_size(
    booking_id: str,
    payload: PartySizeRequest,
    engine: Engine = Depends(get_db),
    sender: SmsSender = Depends(get_sender),
    _principal=Depends(require_roles(*STAFF_ROLES)),
):
    with session(engine) as s:
        booking, released = bookings.change_party_size(s, booking_id, payload.party_size, now=_now())
        out = _booking_out(s, booking)
        s.commit()
    if released:
        await events.publish_all(await run_in_threadpool(_release_followups, engine, sender, out.resource_id))
    return out


# --- waitlist -------------------------------------------------------------------


class WaitlistRequest(BaseModel):
    resource_id: str
    party_size: int = Field(ge=1)
    customer_name: str = Field(min_length=1)
    phone: str = Field(min_length=1)


class WaitlistOut(BaseModel):
    waitlist_entry_id: str
    status: str


@app.post("/waitlist", response_model=WaitlistOut)
async def join_waitlist(
    payload: WaitlistRequest,
    engine: Engine = Depends(get_db),
    sender: SmsSender = Depends(get_sender),
):
    with session(engine) as s:
        entry = waitlist.enqueue(s, **payload.model_dump(), now=_now())
        s.commit()

    # Capacity may already be free (e.g. a lapsed hold); offer straight away if so.
    published = await run_in_threadpool(_release_followups, engine, sender, entry.resource_id)
    await events.publish_all(published)
    with session(engine) as s:
        status = s.get(WaitlistEntry, entry.id).status
    return WaitlistOut(waitlist_entry_id=entry.id, status=status)


@app.post("/waitlist/{entry_id}/withdraw", response_model=WaitlistOut)
async def withdraw_waitlist(
    entry_id: str,
    engine: Engine = Depends(get_db),
    sender: SmsSender = Depends(get_sender),
    _principal=Depends(require_roles(*STAFF_ROLES)),
):
    with session(engine) as s:
        released = waitlist.withdraw(s, entry_id, now=_now())
        s.commit()
        entry = s.get(WaitlistEntry, entry_id)
    if released:
        await events.publish_all(await run_in_threadpool(_release_followups, engine, sender, entry.resource_id))
    return WaitlistOut(waitlist_entry_id=entry_id, status="withdrawn")


class TokenAction(BaseModel):
    token: str = Field(min_length=1)


@app.post("/waitlist/offers/accept", response_model=BookingOut)
async def accept_waitlist_offer(
    payload: TokenAction,
    request: Request,
    engine: Engine = Depends(get_db),
    processor: payments.Processor = Depends(get_payment_processor),
):
    token_hash = tokens.hash_token(payload.token)
    throttle.enforce(engine, token_hash, tokens.TokenScope.WAITLIST_OFFER.value, caller_identity(request))
    now = _now()
    with session(engine) as s:
        booking = waitlist.accept_offer(s, token_hash, now=now)
        out = _booking_out(s, booking)
        s.commit()

    if booking.payment_mode == "prepaid":
        out.checkout = await run_in_threadpool(payments.start_checkout, engine, processor, booking.id, now=now)
    elif booking.payment_mode == "card_capture":
        out.checkout = await run_in_threadpool(payments.capture_card, engine, processor, booking.id, now=now)

    await events.publish(
        "booking.confirmed" if out.status == "confirmed" else "booking.held",
        {"booking_id": out.booking_id, "resource_id": out.resource_id, "source": "waitlist"},
    )
    return out


# --- payments -------------------------------------------------------------------


@app.post("/payments/{booking_id}/checkout")
def start_checkout(
    booking_id: str,
    engine: Engine = Depends(get_db),
    processor: payments.Processor = Depends(get_payment_processor),
    _principal=Depends(require_roles("guest", *STAFF_ROLES)),
):
    return payments.start_checkout(engine, processor, booking_id)


@app.post("/payments/{booking_id}/card-capture")
def capture_card(
    booking_id: str,
    engine: Engine = Depends(get_db),
    processor: payments.Processor = Depends(get_payment_processor),
    _principal=Depends(require_roles("guest", *STAFF_ROLES)),
):
    return payments.capture_card(engine, processor, booking_id)


@app.post("/payments/webhook")
async def payment_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None, alias="Stripe-Signature"),
    engine: Engine = Depends(get_db),
    sender: SmsSender = Depends(get_sender),
    processor: payments.Processor = Depends(get_payment_processor),
):
    body = await request.body()
    payments.verify_webhook_signature(body, stripe_signature)
    event = payments.parse_webhook_event(body)
    if event is None:
        return {"action": "ignored"}

    result = await run_in_threadpool(payments.on_payment_webhook, engine, processor, event)
    published: list[tuple[str, dict]] = []
    if result["action"] == "confirmed":
        published.append(("booking.confirmed", {"booking_id": result["booking_id"]}))
    elif result["action"] in ("payment_expired", "refunded", "refund_failed"):
        published.append(("booking.expired", {"booking_id": result["booking_id"], "reason": "payment_expired"}))
    elif result["action"] == "payment_failed":
        published.append(("booking.cancelled", {"booking_id": result["booking_id"], "reason": "payment_failed"}))

    if result.get("released_units") and result.get("booking_id"):
        with session(engine) as s:
            resource_id = s.get(Booking, result["booking_id"]).resource_id
        published += await run_in_threadpool(_release_followups, engine, sender, resource_id)
    await events.publish_all(published)
    return result


# --- charges --------------------------------------------------------------------


class ChargeRequestIn(BaseModel):
    booking_id: str
    kind: Literal["late_cancel", "no_show", "reduction_fee", "walkout"]
    amount: int = Field(gt=0, description="Minor units")
    reason: str = Field(min_length=1)


class ChargeOut(BaseModel):
    charge_request_id: str
    booking_id: str
    kind: str
    amount: int
    currency: str
    manager_decision: str | None = None
    decided_amount: int | None = None
    charge_status: str


def _charge_out(c) -> ChargeOut:
    return ChargeOut(
        charge_request_id=c.id,
        booking_id=c.booking_id,
        kind=c.kind,
        amount=c.amount,
        currency=c.currency,
        manager_decision=c.manager_decision,
        decided_amount=c.decided_amount,
        charge_status=c.charge_status,
    )


def _approval_notice(charge, approval_url: str, reissued: bool = False) -> dict:
    return {
        "charge_request_id": charge.id,
        "booking_id": charge.booking_id,
        "kind": charge.kind,
        "amount": charge.amount,
        "currency": charge.currency,
        "reason": charge.reason,
        "to": charges.MANAGER_APPROVAL_EMAIL,
        "approval_url": approval_url,
        "reissued": reissued,
    }


@app.post("/charges", response_model=ChargeOut)
async def request_charge(
    payload: ChargeRequestIn,
    engine: Engine = Depends(get_db),
    principal=Depends(require_roles(*STAFF_ROLES)),
):
    with session(engine) as s:
        charge, approval_url = charges.request_charge(
            s,
            payload.booking_id,
            kind=payload.kind,
            amount=payload.amount,
            reason=payload.reason,
            requested_by=principal.get("sub"),
            now=_now(),
        )
        s.commit()

    await events.publish("charge.approval_requested", _approval_notice(charge, approval_url))
    return _charge_out(charge)


@app.post("/charges/{charge_request_id}/approval-link", response_model=ChargeOut)
async def reissue_approval_link(
    charge_request_id: str,
    engine: Engine = Depends(get_db),
    _principal=Depends(require_roles(*STAFF_ROLES)),
):
    with session(engine) as s:
        charge, approval_url = charges.reissue_approval(s, charge_request_id, now=_now())
        s.commit()

    await events.publish("charge.approval_requested", _approval_notice(charge, approval_url, reissued=True))
    return _charge_out(charge)


class ChargeDecisionIn(BaseModel):
    token: str = Field(min_length=1)
    decision: Literal["approve", "decline"]
    amount: int | None = Field(default=None, gt=0)


@app.post("/charges/decision", response_model=ChargeOut)
async def decide_charge(
    payload: ChargeDecisionIn,
    request: Request,
    engine: Engine = Depends(get_db),
    processor: payments.Processor = Depends(get_payment_processor),
):
    token_hash = tokens.hash_token(payload.token)
    throttle.enforce(engine, token_hash, tokens.TokenScope.APPROVE_CHARGE.value, caller_identity(request))
    with session(engine) as s:
        charge = charges.decide_charge(s, token_hash, decision=payload.decision, amount=payload.amount, now=_now())
        s.commit()

    await events.publish(
        "charge.decided",
        {"charge_request_id": charge.id, "decision": charge.manager_decision, "amount": charge.decided_amount},
    )
    if charge.manager_decision == "approved":
        charge = await run_in_threadpool(charges.attempt_approved_charge, engine, processor, charge.id)
    return _charge_out(charge)


# --- tables ---------------------------------------------------------------------


class MoveRequest(BaseModel):
    table_id: str


class TablesOut(BaseModel):
    booking_id: str
    tables: list[str]


@app.post("/tables/bookings/{booking_id}/move", response_model=TablesOut)
def move_booking(
    booking_id: str,
    payload: MoveRequest,
    engine: Engine = Depends(get_db),
    _principal=Depends(require_roles(*STAFF_ROLES)),
):
    with session(engine) as s:
        tables.move_booking(s, booking_id, payload.table_id)
        s.commit()
        return TablesOut(booking_id=booking_id, tables=tables.table_ids_for(s, [booking_id])[booking_id])


@app.post("/tables/bookings/{booking_id}/reallocate", response_model=TablesOut)
def reallocate_booking(
    booking_id: str,
    engine: Engine = Depends(get_db),
    _principal=Depends(require_roles(*STAFF_ROLES)),
):
    with session(engine) as s:
        assignment = tables.reallocate(s, booking_id)
        s.commit()
    return TablesOut(booking_id=booking_id, tables=list(assignment.table_ids))


# --- sweep ----------------------------------------------------------------------


@app.post("/sweep")
async def sweep(
    engine: Engine = Depends(get_db),
    sender: SmsSender = Depends(get_sender),
    _principal=Depends(require_roles(*SYSTEM_ROLES, "manager")),
):
    summary = await run_in_threadpool(run_sweep, engine, sender)
    await events.publish_all(
        [("booking.expired", {"booking_id": booking_id}) for booking_id in summary["expired_booking_ids"]]
    )
    return summary
