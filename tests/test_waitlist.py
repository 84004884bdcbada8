from datetime import datetime, timedelta, timezone

import pytest
from conftest import RecordingSms, add_resource, counters

from venue_booking import bookings, holds, intake, tokens, waitlist
from venue_booking.db import session
from venue_booking.errors import TokenRejected, ValidationFailed
from venue_booking.models import OutboundMessage, WaitlistEntry, WaitlistOffer

LATE = datetime(2026, 1, 15, 22, 0, tzinfo=timezone.utc)
NINE_AM = datetime(2026, 1, 16, 9, 0, tzinfo=timezone.utc)


def _fill(engine, rid, party, now) -> str:
    with session(engine) as s:
        booking = bookings.create_booking_hold(
            s, resource_id=rid, party_size=party, customer_name="Filler", payment_mode="cash", now=now
        )
        bookings.confirm_booking(s, booking.id, now=now)
        s.commit()
    return booking.id


def _enqueue(engine, rid, party, now, name="Bo", phone="07700 900456") -> str:
    with session(engine) as s:
        entry = waitlist.enqueue(s, resource_id=rid, party_size=party, customer_name=name, phone=phone, now=now)
        s.commit()
    return entry.id


def _cancel_and_advance(engine, booking_id, rid, now, **kw) -> list[WaitlistOffer]:
    with session(engine) as s:
        bookings.cancel_booking(s, booking_id, now=now)
        offers = waitlist.on_capacity_released(s, rid, now=now, **kw)
        s.commit()
    return offers


def _entry_status(engine, entry_id) -> str:
    with session(engine) as s:
        return s.get(WaitlistEntry, entry_id).status


def _offer(engine, offer_id) -> WaitlistOffer:
    with session(engine) as s:
        return s.get(WaitlistOffer, offer_id)


def test_enqueue_requires_phone(engine, now):
    rid = add_resource(engine)
    with pytest.raises(ValidationFailed):
        _enqueue(engine, rid, 2, now, phone=None)


def test_earliest_entry_that_fits_gets_the_offer(engine, now):
    rid = add_resource(engine, capacity=6)
    booking_id = _fill(engine, rid, 3, now)
    _fill(engine, rid, 3, now)
    too_big = _enqueue(engine, rid, 5, now, name="Big")
    first = _enqueue(engine, rid, 2, now + timedelta(seconds=1), name="First")
    second = _enqueue(engine, rid, 2, now + timedelta(seconds=2), name="Second")

    offers = _cancel_and_advance(engine, booking_id, rid, now + timedelta(minutes=1))

    assert [o.entry_id for o in offers] == [first]
    assert _entry_status(engine, too_big) == "waiting"
    assert _entry_status(engine, second) == "waiting"
    assert counters(engine, rid) == (3, 2)


def test_offers_never_exceed_released_capacity(engine, now):
    rid = add_resource(engine, capacity=4)
    booking_id = _fill(engine, rid, 4, now)
    entries = [_enqueue(engine, rid, 2, now + timedelta(seconds=i)) for i in range(3)]

    offers = _cancel_and_advance(engine, booking_id, rid, now + timedelta(minutes=1))

    assert [o.entry_id for o in offers] == entries[:2]
    assert counters(engine, rid) == (0, 4)


def test_late_evening_booking_confirmation_waits_for_morning(engine, sms):
    rid = add_resource(engine, capacity=10, starts_at=datetime(2026, 1, 16, 10, 0, tzinfo=timezone.utc))
    result = intake.submit_booking(
        engine,
        {"resource_id": rid, "party_size": 2, "customer_name": "Ada", "phone": "07700 900123"},
        idempotency_key="late-1",
        caller="10.0.0.9",
        sender=sms,
        now=LATE,
    )
    assert result.response["status"] == "confirmed"
    assert sms.sent[-1]["scheduled_for"] == NINE_AM


def test_offer_that_cannot_get_a_full_window_expires_unsent(engine, sms):
    rid = add_resource(engine, capacity=2, starts_at=datetime(2026, 1, 16, 10, 0, tzinfo=timezone.utc))
    booking_id = _fill(engine, rid, 2, LATE - timedelta(hours=2))
    entry_id = _enqueue(engine, rid, 2, LATE - timedelta(hours=1))

    offers = _cancel_and_advance(engine, booking_id, rid, LATE)

    assert len(offers) == 1
    offer = _offer(engine, offers[0].id)
    assert offer.status == "expired"
    assert offer.expiry_reason == "insufficient_response_window"
    assert offer.scheduled_send_at == NINE_AM
    assert _entry_status(engine, entry_id) == "expired"
    assert counters(engine, rid) == (0, 0)

    assert waitlist.dispatch_pending_offers(engine, sms, now=LATE) == 0
    assert sms.sent == []


def test_short_window_offer_fits_before_start(engine, sms):
    rid = add_resource(engine, capacity=2, starts_at=datetime(2026, 1, 16, 10, 0, tzinfo=timezone.utc))
    booking_id = _fill(engine, rid, 2, LATE - timedelta(hours=2))
    _enqueue(engine, rid, 2, LATE - timedelta(hours=1))

    offers = _cancel_and_advance(engine, booking_id, rid, LATE, window=timedelta(minutes=30))

    offer = _offer(engine, offers[0].id)
    assert offer.status == "pending_send"
    assert offer.scheduled_send_at == NINE_AM
    assert offer.expires_at == NINE_AM + timedelta(minutes=30)
    assert counters(engine, rid) == (0, 2)


def test_response_window_starts_at_send_time(engine, sms):
    rid = add_resource(engine, capacity=2)
    booking_id = _fill(engine, rid, 2, LATE - timedelta(hours=2))
    _enqueue(engine, rid, 2, LATE - timedelta(hours=1))

    (offer,) = _cancel_and_advance(engine, booking_id, rid, LATE)
    assert offer.scheduled_send_at == NINE_AM
    assert offer.expires_at == NINE_AM + timedelta(minutes=holds.WAITLIST_OFFER_WINDOW_MINUTES)

    assert waitlist.send_offer(engine, sms, offer.id, now=LATE)
    assert sms.sent[-1]["scheduled_for"] == NINE_AM
    assert _offer(engine, offer.id).sent_at == NINE_AM


def _offered(engine, now, payment_mode="cash", price=0):
    rid = add_resource(engine, capacity=2, payment_mode=payment_mode, price_per_unit=price)
    booking_id = _fill(engine, rid, 2, now)
    entry_id = _enqueue(engine, rid, 2, now)
    (offer,) = _cancel_and_advance(engine, booking_id, rid, now)
    return rid, entry_id, offer


def test_accepting_offer_confirms_cash_booking(engine, now, sms):
    rid, entry_id, offer = _offered(engine, now)
    assert waitlist.send_offer(engine, sms, offer.id, now=now)
    raw = sms.last_token()

    with session(engine) as s:
        booking = waitlist.accept_offer(s, tokens.hash_token(raw), now=now)
        s.commit()

    assert booking.status == "confirmed"
    assert booking.source == "waitlist"
    assert booking.party_size == 2
    assert counters(engine, rid) == (2, 0)
    assert _offer(engine, offer.id).status == "accepted"
    assert _offer(engine, offer.id).booking_id == booking.id
    assert _entry_status(engine, entry_id) == "accepted"

    with session(engine) as s:
        with pytest.raises(TokenRejected) as exc:
            waitlist.accept_offer(s, tokens.hash_token(raw), now=now)
    assert exc.value.reason == "token_used"


def test_accepting_offer_on_prepaid_resource_awaits_payment(engine, now, sms):
    rid, _, offer = _offered(engine, now, payment_mode="prepaid", price=1500)
    waitlist.send_offer(engine, sms, offer.id, now=now)

    with session(engine) as s:
        booking = waitlist.accept_offer(s, tokens.hash_token(sms.last_token()), now=now)
        s.commit()

    assert booking.status == "pending_payment"
    assert counters(engine, rid) == (0, 2)


def test_unknown_token_is_rejected(engine, now):
    with session(engine) as s:
        with pytest.raises(TokenRejected) as exc:
            waitlist.accept_offer(s, tokens.hash_token("nope"), now=now)
    assert exc.value.reason == "invalid_token"


def test_lapsed_offer_moves_queue_on(engine, now, sms):
    rid = add_resource(engine, capacity=2)
    booking_id = _fill(engine, rid, 2, now)
    first = _enqueue(engine, rid, 2, now, name="First")
    second = _enqueue(engine, rid, 2, now + timedelta(seconds=1), name="Second")
    (offer,) = _cancel_and_advance(engine, booking_id, rid, now)
    waitlist.send_offer(engine, sms, offer.id, now=now)
    raw = sms.last_token()

    later = offer.expires_at + timedelta(minutes=1)
    expired = holds.expire_due(engine, now=later)
    assert {"type": "waitlist_offer", "id": offer.id, "resource_id": rid, "reason": "response_window_elapsed"} in expired
    assert _entry_status(engine, first) == "expired"
    assert counters(engine, rid) == (0, 0)

    with session(engine) as s:
        (next_offer,) = waitlist.on_capacity_released(s, rid, now=later)
        s.commit()
    assert next_offer.entry_id == second

    with session(engine) as s:
        with pytest.raises(TokenRejected) as exc:
            waitlist.accept_offer(s, tokens.hash_token(raw), now=later)
    assert exc.value.reason == "token_expired"


def test_withdraw_releases_open_offer(engine, now):
    rid, entry_id, offer = _offered(engine, now)
    assert counters(engine, rid) == (0, 2)

    with session(engine) as s:
        released = waitlist.withdraw(s, entry_id, now=now)
        s.commit()
    assert released == 2
    assert _entry_status(engine, entry_id) == "withdrawn"
    assert _offer(engine, offer.id).expiry_reason == "withdrawn"
    assert counters(engine, rid) == (0, 0)

    with session(engine) as s:
        assert waitlist.withdraw(s, entry_id, now=now) == 0
        s.commit()


def test_failed_offer_sms_is_retried(engine, now):
    _, _, offer = _offered(engine, now)

    broken = RecordingSms(fail=True)
    assert waitlist.send_offer(engine, broken, offer.id, now=now) is False
    assert _offer(engine, offer.id).status == "pending_send"
    with session(engine) as s:
        assert [m.status for m in s.query(OutboundMessage).all()] == ["failed"]

    working = RecordingSms()
    assert waitlist.dispatch_pending_offers(engine, working, now=now) == 1
    assert _offer(engine, offer.id).status == "sent"
    assert waitlist.dispatch_pending_offers(engine, working, now=now) == 0


EVENING = datetime(2026, 1, 15, 20, 30, tzinfo=timezone.utc)


def _failed_evening_offer(engine, starts_at=None, second_entry=False):
    rid = add_resource(engine, capacity=2, starts_at=starts_at)
    booking_id = _fill(engine, rid, 2, EVENING - timedelta(hours=2))
    entry_id = _enqueue(engine, rid, 2, EVENING - timedelta(hours=1))
    if second_entry:
        _enqueue(engine, rid, 2, EVENING - timedelta(minutes=30), name="Cy", phone="07700 900789")
    (offer,) = _cancel_and_advance(engine, booking_id, rid, EVENING, window=timedelta(minutes=60))
    assert offer.expires_at == EVENING + timedelta(minutes=60)
    assert waitlist.send_offer(engine, RecordingSms(fail=True), offer.id, now=EVENING) is False
    return rid, entry_id, offer


def test_offer_retried_in_quiet_hours_gets_a_fresh_window(engine, sms):
    rid, _, offer = _failed_evening_offer(engine)

    retry_at = datetime(2026, 1, 15, 21, 5, tzinfo=timezone.utc)
    assert waitlist.send_offer(engine, sms, offer.id, now=retry_at)

    (msg,) = sms.sent
    assert msg["scheduled_for"] == NINE_AM
    assert "16 Jan 10:00" in msg["body"]
    sent = _offer(engine, offer.id)
    assert sent.status == "sent"
    assert sent.sent_at == NINE_AM
    assert sent.expires_at == NINE_AM + timedelta(minutes=60)
    assert sent.expires_at > msg["scheduled_for"]
    with session(engine) as s:
        assert holds.hold_for_offer(s, offer.id).expires_at == sent.expires_at
    assert counters(engine, rid) == (0, 2)


def test_offer_retry_that_no_longer_fits_before_start_expires(engine, sms):
    starts_at = datetime(2026, 1, 16, 9, 30, tzinfo=timezone.utc)
    rid, entry_id, offer = _failed_evening_offer(engine, starts_at=starts_at, second_entry=True)

    retry_at = datetime(2026, 1, 15, 21, 5, tzinfo=timezone.utc)
    assert waitlist.send_offer(engine, sms, offer.id, now=retry_at) is False

    assert sms.sent == []
    expired = _offer(engine, offer.id)
    assert expired.status == "expired"
    assert expired.expiry_reason == "insufficient_response_window"
    assert _entry_status(engine, entry_id) == "expired"
    with session(engine) as s:
        # The queue moved on; the next entry cannot get a window either.
        assert [e.status for e in s.query(WaitlistEntry).order_by(WaitlistEntry.created_at).all()] == ["expired", "expired"]
    assert counters(engine, rid) == (0, 0)
