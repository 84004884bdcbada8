import json
import time
from datetime import timedelta

import pytest
from conftest import FakeProcessor, add_resource, counters, sign_webhook_payload

from venue_booking import bookings, holds, payments
from venue_booking.db import session
from venue_booking.errors import NotFound, PaymentFailed, ValidationFailed, WebhookRejected
from venue_booking.models import Booking, Payment

SECRET = "whsec_test"


def _event(event_id, event_type, session_ref, **obj) -> bytes:
    body = {"id": event_id, "type": event_type, "data": {"object": {"id": session_ref, **obj}}}
    return json.dumps(body).encode()


def _pending(engine, now, mode="prepaid", price=1500, party=2):
    rid = add_resource(engine, capacity=10, payment_mode=mode, price_per_unit=price)
    with session(engine) as s:
        booking = bookings.create_booking_hold(
            s, resource_id=rid, party_size=party, customer_name="Ada", email="ada@example.com", now=now
        )
        bookings.mark_pending_payment(s, booking.id, now=now)
        s.commit()
    return rid, booking.id


def _status(engine, booking_id):
    with session(engine) as s:
        return s.get(Booking, booking_id).status


def _webhook(engine, processor, payload, now):
    return payments.on_payment_webhook(engine, processor, payments.parse_webhook_event(payload), now=now)


def test_signature_roundtrip_and_rejections():
    payload = _event("evt_1", "checkout.session.expired", "cs_1")
    header = sign_webhook_payload(payload, SECRET)
    payments.verify_webhook_signature(payload, header, SECRET)

    with pytest.raises(WebhookRejected):
        payments.verify_webhook_signature(payload + b" ", header, SECRET)
    with pytest.raises(WebhookRejected):
        payments.verify_webhook_signature(payload, header, "whsec_other")
    stale = sign_webhook_payload(payload, SECRET, timestamp=int(time.time()) - 301)
    with pytest.raises(WebhookRejected):
        payments.verify_webhook_signature(payload, stale, SECRET)
    with pytest.raises(WebhookRejected):
        payments.verify_webhook_signature(payload, None, SECRET)
    with pytest.raises(WebhookRejected):
        payments.verify_webhook_signature(payload, "v1=abc", SECRET)
    with pytest.raises(WebhookRejected):
        payments.verify_webhook_signature(payload, header, "")


def test_parse_reduces_events_to_outcomes():
    paid = payments.parse_webhook_event(
        _event("evt_1", "checkout.session.completed", "cs_1", mode="payment", payment_status="paid", payment_intent="pi_1")
    )
    assert (paid.outcome, paid.session_ref, paid.payment_intent_ref) == ("paid", "cs_1", "pi_1")

    setup = payments.parse_webhook_event(
        _event("evt_2", "checkout.session.completed", "cs_2", mode="setup", setup_intent="seti_1")
    )
    assert (setup.outcome, setup.setup_intent_ref) == ("setup_completed", "seti_1")

    assert payments.parse_webhook_event(_event("evt_3", "checkout.session.async_payment_failed", "cs_3")).outcome == "failed"
    assert payments.parse_webhook_event(_event("evt_4", "checkout.session.completed", "cs_4", payment_status="unpaid")) is None
    assert payments.parse_webhook_event(_event("evt_5", "invoice.paid", "in_1")) is None
    with pytest.raises(ValidationFailed):
        payments.parse_webhook_event(b"not json")


def test_checkout_amount_and_idempotency_key(engine, now, processor):
    _, booking_id = _pending(engine, now, party=3)
    out = payments.start_checkout(engine, processor, booking_id, now=now)

    assert out["session_ref"] == "cs_test_1"
    kind, call = processor.calls[0]
    assert kind == "checkout"
    assert call["amount"] == 4500
    assert call["idempotency_key"] == f"checkout_{out['payment_id']}"

    again = payments.start_checkout(engine, processor, booking_id, now=now)
    assert again["payment_id"] == out["payment_id"]
    assert len(processor.calls) == 1


def test_checkout_failure_releases_capacity(engine, now):
    rid, booking_id = _pending(engine, now)
    with pytest.raises(PaymentFailed) as exc:
        payments.start_checkout(engine, FakeProcessor(fail=True), booking_id, now=now)
    assert exc.value.context["released_units"] == 2
    assert _status(engine, booking_id) == "cancelled"
    assert counters(engine, rid) == (0, 0)
    with session(engine) as s:
        assert s.query(Payment).one().status == "failed"


def test_checkout_refused_after_payment_window(engine, now, processor):
    _, booking_id = _pending(engine, now)
    with pytest.raises(PaymentFailed) as exc:
        payments.start_checkout(engine, processor, booking_id, now=now + timedelta(days=2))
    assert exc.value.reason == "payment_expired"
    assert processor.calls == []


def test_paid_webhook_confirms_once(engine, now, processor):
    rid, booking_id = _pending(engine, now)
    out = payments.start_checkout(engine, processor, booking_id, now=now)
    payload = _event(
        "evt_paid", "checkout.session.completed", out["session_ref"], mode="payment", payment_status="paid", payment_intent="pi_1"
    )

    result = _webhook(engine, processor, payload, now)
    assert result["action"] == "confirmed"
    assert _status(engine, booking_id) == "confirmed"
    assert counters(engine, rid) == (2, 0)

    replay = _webhook(engine, processor, payload, now)
    assert replay["action"] == "duplicate"
    assert counters(engine, rid) == (2, 0)


class ReentrantProcessor(FakeProcessor):
    """Opens a second checkout for the same booking while the first is still at the processor."""

    def __init__(self, engine, booking_id, now):
        super().__init__()
        self.engine, self.booking_id, self.now = engine, booking_id, now
        self.nested = None

    def create_checkout_session(self, **kwargs):
        if self.nested is None:
            self.nested = payments.start_checkout(self.engine, FakeProcessor(), self.booking_id, now=self.now)
        return super().create_checkout_session(**kwargs)


def test_checkout_requested_while_in_flight_returns_the_claim(engine, now):
    _, booking_id = _pending(engine, now)
    processor = ReentrantProcessor(engine, booking_id, now)

    out = payments.start_checkout(engine, processor, booking_id, now=now)

    assert processor.nested == {
        "booking_id": booking_id,
        "payment_id": out["payment_id"],
        "session_ref": None,
        "checkout_url": None,
        "in_progress": True,
    }
    assert out["session_ref"] == "cs_test_1"
    with session(engine) as s:
        assert [(p.kind, p.status) for p in s.query(Payment).all()] == [("deposit", "pending")]


def test_second_paid_checkout_is_refunded(engine, now, processor):
    rid, booking_id = _pending(engine, now)
    stale = now - timedelta(seconds=payments.CHECKOUT_CLAIM_SECONDS + 1)
    with session(engine) as s:
        s.add(
            Payment(
                id="pay-lost", booking_id=booking_id, kind="deposit", amount=3000, currency="GBP",
                status="pending", created_at=stale, updated_at=stale, meta={},
            )
        )
        s.commit()

    out = payments.start_checkout(engine, processor, booking_id, now=now)
    assert out["payment_id"] != "pay-lost"
    with session(engine) as s:
        assert s.get(Payment, "pay-lost").status == "failed"

    first = _event(
        "evt_a", "checkout.session.completed", out["session_ref"], mode="payment", payment_status="paid", payment_intent="pi_1"
    )
    assert _webhook(engine, processor, first, now)["action"] == "confirmed"

    # The abandoned claim's session was opened and paid too.
    second = _event(
        "evt_b", "checkout.session.completed", "cs_lost", mode="payment", payment_status="paid",
        payment_intent="pi_2", metadata={"booking_id": booking_id, "payment_id": "pay-lost"},
    )
    result = _webhook(engine, processor, second, now)

    assert result["action"] == "refunded"
    assert _status(engine, booking_id) == "confirmed"
    assert counters(engine, rid) == (2, 0)
    refund_call = [c for k, c in processor.calls if k == "refund"][0]
    assert refund_call == {"payment_intent_ref": "pi_2", "amount": 3000, "idempotency_key": "refund_pay-lost"}
    with session(engine) as s:
        assert s.get(Payment, out["payment_id"]).status == "succeeded"
        assert s.get(Payment, "pay-lost").status == "refunded"


def test_payment_after_expiry_is_refunded(engine, now, processor):
    rid, booking_id = _pending(engine, now)
    out = payments.start_checkout(engine, processor, booking_id, now=now)
    later = now + timedelta(minutes=bookings.PAYMENT_HOLD_MINUTES + 5)
    holds.expire_due(engine, now=later)
    assert _status(engine, booking_id) == "expired"

    payload = _event(
        "evt_late", "checkout.session.completed", out["session_ref"], mode="payment", payment_status="paid", payment_intent="pi_9"
    )
    result = _webhook(engine, processor, payload, later)

    assert result["action"] == "refunded"
    assert _status(engine, booking_id) == "expired"
    assert counters(engine, rid) == (0, 0)
    refund_call = [c for k, c in processor.calls if k == "refund"][0]
    assert refund_call == {"payment_intent_ref": "pi_9", "amount": 3000, "idempotency_key": f"refund_{out['payment_id']}"}
    with session(engine) as s:
        assert s.get(Payment, out["payment_id"]).status == "refunded"
        assert s.query(Payment).filter_by(kind="refund").one().status == "succeeded"


def test_expired_session_releases_hold(engine, now, processor):
    rid, booking_id = _pending(engine, now)
    out = payments.start_checkout(engine, processor, booking_id, now=now)

    result = _webhook(engine, processor, _event("evt_exp", "checkout.session.expired", out["session_ref"]), now)

    assert result == {"action": "payment_expired", "booking_id": booking_id, "released_units": 2}
    assert _status(engine, booking_id) == "expired"
    assert counters(engine, rid) == (0, 0)


def test_card_capture_confirms_and_stores_card(engine, now, processor):
    rid, booking_id = _pending(engine, now, mode="card_capture", price=0)
    out = payments.capture_card(engine, processor, booking_id, now=now)
    assert processor.calls[0][1]["idempotency_key"] == f"setup_{booking_id}"
    assert processor.calls[0][1]["customer_email"] == "ada@example.com"

    payload = _event("evt_setup", "checkout.session.completed", out["session_ref"], mode="setup", setup_intent="seti_1")
    result = _webhook(engine, processor, payload, now)

    assert result["action"] == "confirmed"
    with session(engine) as s:
        booking = s.get(Booking, booking_id)
        assert booking.status == "confirmed"
        assert (booking.card_customer_ref, booking.card_payment_method_ref) == ("cus_123", "pm_123")
    assert counters(engine, rid) == (2, 0)


def test_unknown_session_is_not_found(engine, now, processor):
    with pytest.raises(NotFound):
        _webhook(engine, processor, _event("evt_x", "checkout.session.expired", "cs_missing"), now)
