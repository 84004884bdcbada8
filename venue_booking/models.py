from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware datetimes on every backend.

    SQLite drops tzinfo on the way in and out; values are normalised to UTC
    before binding and re-tagged as UTC when loaded.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    pass


class Resource(Base):
    """
    A finite (or unlimited) pool of bookable units: event seats or table covers.

    `committed` and `held` are the only shared counters in the system and are
    only ever changed by `venue_booking.ledger` under the row lock.
    """

    __tablename__ = "resources"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String)
    kind: Mapped[str] = mapped_column(String, index=True)  # event|table_pool
    unit: Mapped[str] = mapped_column(String, default="seat")  # seat|cover

    capacity: Mapped[int | None] = mapped_column(Integer, nullable=True)  # None = unlimited
    committed: Mapped[int] = mapped_column(Integer, default=0)
    held: Mapped[int] = mapped_column(Integer, default=0)

    starts_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True, index=True)
    ends_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    bookable_from: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    bookable_until: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    payment_mode: Mapped[str] = mapped_column(String, default="cash")  # default for waitlist bookings
    price_per_unit: Mapped[int] = mapped_column(Integer, default=0)  # minor units
    currency: Mapped[str] = mapped_column(String, default="GBP")


class Booking(Base):
    __tablename__ = "bookings"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    booking_ref: Mapped[str] = mapped_column(String, index=True)
    resource_id: Mapped[str] = mapped_column(String, ForeignKey("resources.id"), index=True)

    customer_name: Mapped[str] = mapped_column(String)
    phone: Mapped[str | None] = mapped_column(String, index=True)  # E.164
    email: Mapped[str | None] = mapped_column(String)

    party_size: Mapped[int] = mapped_column(Integer)
    committed_party_size: Mapped[int] = mapped_column(Integer)

    status: Mapped[str] = mapped_column(String, index=True)  # pending_hold|pending_payment|confirmed|cancelled|expired
    payment_mode: Mapped[str] = mapped_column(String)  # cash|prepaid|card_capture
    source: Mapped[str] = mapped_column(String, default="direct")  # direct|waitlist

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, index=True)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime)
    hold_expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, index=True)
    confirmed_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    cancelled_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    reminder_sent_at: Mapped[datetime | None] = mapped_column(UTCDateTime)

    card_setup_session_ref: Mapped[str | None] = mapped_column(String, index=True)
    card_customer_ref: Mapped[str | None] = mapped_column(String)
    card_payment_method_ref: Mapped[str | None] = mapped_column(String)


class BookingAudit(Base):
    __tablename__ = "booking_audit"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    booking_id: Mapped[str] = mapped_column(String, index=True)
    event: Mapped[str] = mapped_column(String)
    old_status: Mapped[str | None] = mapped_column(String)
    new_status: Mapped[str | None] = mapped_column(String)
    meta: Mapped[dict] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, index=True)


class Hold(Base):
    __tablename__ = "holds"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    resource_id: Mapped[str] = mapped_column(String, ForeignKey("resources.id"), index=True)
    booking_id: Mapped[str | None] = mapped_column(String, index=True)
    waitlist_offer_id: Mapped[str | None] = mapped_column(String, index=True)

    kind: Mapped[str] = mapped_column(String)  # booking|payment|waitlist
    units: Mapped[int] = mapped_column(Integer)
    status: Mapped[str] = mapped_column(String, index=True)  # active|consumed|released|expired

    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, index=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime)
    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime)


class WaitlistEntry(Base):
    __tablename__ = "waitlist_entries"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    resource_id: Mapped[str] = mapped_column(String, ForeignKey("resources.id"), index=True)
    customer_name: Mapped[str] = mapped_column(String)
    phone: Mapped[str] = mapped_column(String)
    party_size: Mapped[int] = mapped_column(Integer)

    status: Mapped[str] = mapped_column(String, index=True)  # waiting|offered|accepted|expired|withdrawn
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, index=True)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime)


class WaitlistOffer(Base):
    __tablename__ = "waitlist_offers"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    entry_id: Mapped[str] = mapped_column(String, ForeignKey("waitlist_entries.id"), index=True)
    resource_id: Mapped[str] = mapped_column(String, index=True)
    units: Mapped[int] = mapped_column(Integer)

    status: Mapped[str] = mapped_column(String, index=True)  # pending_send|sent|accepted|expired
    created_at: Mapped[datetime] = mapped_column(UTCDateTime)
    scheduled_send_at: Mapped[datetime] = mapped_column(UTCDateTime)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, index=True)
    sent_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    booking_id: Mapped[str | None] = mapped_column(String)
    expiry_reason: Mapped[str | None] = mapped_column(String)


class GuestToken(Base):
    """Hashed single-purpose capability for a guest or a manager."""

    __tablename__ = "guest_tokens"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    token_hash: Mapped[str] = mapped_column(String, unique=True, index=True)
    holder: Mapped[str] = mapped_column(String)  # guest|manager
    scope: Mapped[str] = mapped_column(String)

    booking_id: Mapped[str | None] = mapped_column(String, index=True)
    charge_request_id: Mapped[str | None] = mapped_column(String, index=True)
    waitlist_offer_id: Mapped[str | None] = mapped_column(String, index=True)

    single_use: Mapped[bool] = mapped_column(Boolean, default=True)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime)
    consumed_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime)


class Payment(Base):
    __tablename__ = "payments"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    booking_id: Mapped[str] = mapped_column(String, ForeignKey("bookings.id"), index=True)
    kind: Mapped[str] = mapped_column(String)  # deposit|balance|seat_increase|approved_charge|refund
    amount: Mapped[int] = mapped_column(Integer)  # minor units
    currency: Mapped[str] = mapped_column(String, default="GBP")
    status: Mapped[str] = mapped_column(String, index=True)  # pending|succeeded|failed|refunded

    external_ref: Mapped[str | None] = mapped_column(String, index=True)  # checkout session id
    payment_intent_ref: Mapped[str | None] = mapped_column(String)
    charge_request_id: Mapped[str | None] = mapped_column(String, index=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime)
    meta: Mapped[dict] = mapped_column(JSON, default=dict)


class ChargeRequest(Base):
    __tablename__ = "charge_requests"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    booking_id: Mapped[str] = mapped_column(String, ForeignKey("bookings.id"), index=True)
    kind: Mapped[str] = mapped_column(String, index=True)  # late_cancel|no_show|reduction_fee|walkout
    amount: Mapped[int] = mapped_column(Integer)
    currency: Mapped[str] = mapped_column(String, default="GBP")
    reason: Mapped[str] = mapped_column(String)
    requested_by: Mapped[str | None] = mapped_column(String)

    manager_decision: Mapped[str | None] = mapped_column(String)  # approved|declined
    decided_amount: Mapped[int | None] = mapped_column(Integer)
    decided_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    charge_status: Mapped[str] = mapped_column(String, index=True)  # pending|succeeded|failed|waived
    payment_intent_ref: Mapped[str | None] = mapped_column(String)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime)
    meta: Mapped[dict] = mapped_column(JSON, default=dict)


class Table(Base):
    __tablename__ = "tables"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String)
    capacity: Mapped[int] = mapped_column(Integer)
    area: Mapped[str | None] = mapped_column(String, index=True)
    bookable: Mapped[bool] = mapped_column(Boolean, default=True)


class TableJoinLink(Base):
    __tablename__ = "table_join_links"
    __table_args__ = (UniqueConstraint("table_a_id", "table_b_id", name="uq_table_join_links_pair"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    table_a_id: Mapped[str] = mapped_column(String, ForeignKey("tables.id"), index=True)
    table_b_id: Mapped[str] = mapped_column(String, ForeignKey("tables.id"), index=True)


class AreaBlock(Base):
    """An area taken out of service for a window, e.g. by a private booking."""

    __tablename__ = "area_blocks"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    area: Mapped[str | None] = mapped_column(String, index=True)  # None blocks the whole venue
    starts_at: Mapped[datetime] = mapped_column(UTCDateTime, index=True)
    ends_at: Mapped[datetime] = mapped_column(UTCDateTime, index=True)
    reason: Mapped[str] = mapped_column(String, default="private_booking")


class TableAssignment(Base):
    __tablename__ = "table_assignments"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    booking_id: Mapped[str] = mapped_column(String, ForeignKey("bookings.id"), index=True)
    table_id: Mapped[str] = mapped_column(String, ForeignKey("tables.id"), index=True)
    starts_at: Mapped[datetime] = mapped_column(UTCDateTime, index=True)
    ends_at: Mapped[datetime] = mapped_column(UTCDateTime, index=True)


class IdempotencyRecord(Base):
    __tablename__ = "idempotency_keys"

    key: Mapped[str] = mapped_column(String, primary_key=True)
    request_hash: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String)  # in_progress|completed
    response: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, index=True)


class ThrottleCounter(Base):
    __tablename__ = "throttle_counters"

    bucket: Mapped[str] = mapped_column(String, primary_key=True)
    window_started_at: Mapped[datetime] = mapped_column(UTCDateTime)
    count: Mapped[int] = mapped_column(Integer, default=0)


class WebhookEvent(Base):
    __tablename__ = "webhook_events"

    id: Mapped[str] = mapped_column(String, primary_key=True)  # processor event id
    type: Mapped[str] = mapped_column(String)
    received_at: Mapped[datetime] = mapped_column(UTCDateTime)


class OutboundMessage(Base):
    __tablename__ = "outbound_messages"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    booking_id: Mapped[str | None] = mapped_column(String, index=True)
    waitlist_offer_id: Mapped[str | None] = mapped_column(String, index=True)
    kind: Mapped[str] = mapped_column(String)  # booking_confirmed|waitlist_offer|reminder
    to_number: Mapped[str] = mapped_column(String)
    body: Mapped[str] = mapped_column(String)
    scheduled_for: Mapped[datetime] = mapped_column(UTCDateTime)
    status: Mapped[str] = mapped_column(String)  # scheduled|failed
    provider_ref: Mapped[str | None] = mapped_column(String)
    error: Mapped[str | None] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime)
