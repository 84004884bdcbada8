import hashlib
import hmac
import time
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from venue_booking import events
from venue_booking.db import make_engine, session
from venue_booking.models import Base, Resource, Table
from venue_booking.payments import ChargeResult, CheckoutSession, SetupIntent

# 2026-01-15 is GMT, so London local time equals UTC in most tests.
NOON = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def engine(tmp_path):
    # File-backed so several sessions/threads see the same database.
    eng = make_engine(f"sqlite+pysqlite:///{tmp_path / 'venue.db'}")
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def now():
    return NOON


@pytest.fixture(autouse=True)
def published(monkeypatch):
    """Capture domain events instead of talking to RabbitMQ."""
    sent: list[tuple[str, dict]] = []

    async def _publish(routing_key, payload):
        sent.append((routing_key, payload))

    monkeypatch.setattr(events, "publish", _publish)
    return sent


class RecordingSms:
    def __init__(self, fail: bool = False):
        self.sent: list[dict] = []
        self.fail = fail

    def send(self, to, body, scheduled_for):
        if self.fail:
            raise RuntimeError("gateway down")
        self.sent.append({"to": to, "body": body, "scheduled_for": scheduled_for})
        return f"sms-{len(self.sent)}"

    def last_token(self) -> str:
        return self.sent[-1]["body"].rsplit("/", 1)[-1]


class FakeProcessor:
    def __init__(self, fail: bool = False, charge_status: str = "succeeded"):
        self.calls: list[tuple[str, dict]] = []
        self.fail = fail
        self.charge_status = charge_status

    def create_checkout_session(self, **kwargs):
        self.calls.append(("checkout", kwargs))
        if self.fail:
            raise RuntimeError("processor unavailable")
        return CheckoutSession(ref=f"cs_test_{len(self.calls)}", url="https://pay.example/cs")

    def create_setup_session(self, **kwargs):
        self.calls.append(("setup", kwargs))
        if self.fail:
            raise RuntimeError("processor unavailable")
        return CheckoutSession(ref=f"cs_setup_{len(self.calls)}", url="https://pay.example/setup")

    def get_setup_intent(self, setup_intent_ref):
        self.calls.append(("setup_intent", {"ref": setup_intent_ref}))
        return SetupIntent(customer_ref="cus_123", payment_method_ref="pm_123")

    def charge_off_session(self, **kwargs):
        self.calls.append(("charge", kwargs))
        if self.fail:
            raise RuntimeError("card declined")
        return ChargeResult(ref="pi_charge_1", status=self.charge_status)

    def refund(self, **kwargs):
        self.calls.append(("refund", kwargs))
        return ChargeResult(ref="re_1", status="succeeded")


@pytest.fixture
def sms():
    return RecordingSms()


@pytest.fixture
def processor():
    return FakeProcessor()


def add_resource(
    engine,
    *,
    capacity=10,
    starts_at=None,
    kind="event",
    payment_mode="cash",
    price_per_unit=0,
    bookable_from=None,
    bookable_until=None,
    ends_at=None,
    name="Quiz Night",
) -> str:
    rid = str(uuid4())
    with session(engine) as s:
        s.add(
            Resource(
                id=rid,
                name=name,
                kind=kind,
                unit="cover" if kind == "table_pool" else "seat",
                capacity=capacity,
                committed=0,
                held=0,
                starts_at=starts_at or NOON + timedelta(days=10),
                ends_at=ends_at,
                bookable_from=bookable_from,
                bookable_until=bookable_until,
                payment_mode=payment_mode,
                price_per_unit=price_per_unit,
                currency="GBP",
            )
        )
        s.commit()
    return rid


def add_tables(engine, *specs) -> None:
    """specs: (id, capacity) or (id, capacity, area)."""
    with session(engine) as s:
        for spec in specs:
            tid, cap = spec[0], spec[1]
            area = spec[2] if len(spec) > 2 else "main"
            s.add(Table(id=tid, name=tid.upper(), capacity=cap, area=area, bookable=True))
        s.commit()


def counters(engine, resource_id) -> tuple[int, int]:
    with session(engine) as s:
        r = s.get(Resource, resource_id)
        return r.committed, r.held


def sign_webhook_payload(payload: bytes, secret: str, timestamp: int | None = None) -> str:
    """Build a `Stripe-Signature` header the way the processor signs webhooks."""
    ts = int(time.time()) if timestamp is None else timestamp
    sig = hmac.new(secret.encode("utf-8"), f"{ts}.".encode("utf-8") + payload, hashlib.sha256).hexdigest()
    return f"t={ts},v1={sig}"
