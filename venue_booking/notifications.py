from __future__ import annotations

import logging
import os
import re
from datetime import datetime, timezone
from typing import Protocol
from uuid import uuid4

import httpx
from sqlalchemy.engine import Engine

from . import quiet_hours
from .db import session
from .models import OutboundMessage

SMS_API_URL = os.getenv("SMS_API_URL", "")
SMS_API_TOKEN = os.getenv("SMS_API_TOKEN", "")
SMS_FROM = os.getenv("SMS_FROM", "")
DEFAULT_COUNTRY_CODE = os.getenv("DEFAULT_COUNTRY_CODE", "44")

logger = logging.getLogger(__name__)

_PHONE_JUNK = re.compile(r"[\s\-().]")


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def normalize_phone(raw: str | None) -> str | None:
    """
    Canonical E.164 form: "07700 900123", "+44 7700-900123" and "0044 7700900123"
    all become "+447700900123".
    """
    if raw is None:
        return None
    value = _PHONE_JUNK.sub("", raw.strip())
    if not value:
        return None
    if value.startswith("00"):
        value = "+" + value[2:]
    elif value.startswith("0"):
        value = f"+{DEFAULT_COUNTRY_CODE}{value[1:]}"
    elif not value.startswith("+"):
        value = "+" + value
    if not value[1:].isdigit() or not 8 <= len(value) - 1 <= 15:
        raise ValueError(f"Invalid phone number: {raw!r}")
    return value


class SmsSender(Protocol):
    def send(self, to: str, body: str, scheduled_for: datetime) -> str:
        """Hand a message to the provider for delivery at `scheduled_for`. Returns the provider reference."""
        ...


class HttpSmsSender:
    """Provider-agnostic HTTP gateway client (JSON body, bearer auth)."""

    def __init__(self, url: str = SMS_API_URL, token: str = SMS_API_TOKEN, sender: str = SMS_FROM, timeout: float = 10.0):
        self.url = url
        self.token = token
        self.sender = sender
        self.timeout = timeout

    def send(self, to: str, body: str, scheduled_for: datetime) -> str:
        # Ignore HTTP(S)_PROXY env vars for provider calls.
        with httpx.Client(timeout=self.timeout, trust_env=False) as client:
            r = client.post(
                self.url,
                json={"to": to, "from": self.sender, "body": body, "send_at": scheduled_for.isoformat()},
                headers={"Authorization": f"Bearer {self.token}"},
            )
        r.raise_for_status()
        return str(r.json().get("id") or "")


class LogOnlySmsSender:
    """Used when no gateway is configured (local/dev)."""

    def send(self, to: str, body: str, scheduled_for: datetime) -> str:
        logger.info("SMS (not sent, no gateway) to=%s at=%s: %s", to, scheduled_for.isoformat(), body)
        return f"local-{uuid4()}"


def get_sms_sender() -> SmsSender:
    if SMS_API_URL:
        return HttpSmsSender()
    return LogOnlySmsSender()


def dispatch_sms(
    engine: Engine,
    sender: SmsSender,
    *,
    kind: str,
    to: str,
    body: str,
    scheduled_for: datetime,
    booking_id: str | None = None,
    waitlist_offer_id: str | None = None,
    gate: quiet_hours.QuietHours | None = None,
) -> OutboundMessage:
    """
    Hand one message to the provider and log it.

    `scheduled_for` must already satisfy the quiet-hours gate; callers derive it
    from `next_permitted_instant` so dependent expiries use the same instant.
    Provider failures are logged and recorded, not raised.
    """
    if not quiet_hours.is_permitted(scheduled_for, gate):
        raise ValueError(f"scheduled_for {scheduled_for.isoformat()} falls inside quiet hours")

    msg = OutboundMessage(
        id=str(uuid4()),
        booking_id=booking_id,
        waitlist_offer_id=waitlist_offer_id,
        kind=kind,
        to_number=to,
        body=body,
        scheduled_for=scheduled_for,
        status="scheduled",
        created_at=_now(),
    )
    try:
        msg.provider_ref = sender.send(to, body, scheduled_for)
    except Exception as e:
        logger.warning("SMS dispatch failed (kind=%s booking_id=%s offer_id=%s): %s", kind, booking_id, waitlist_offer_id, e)
        msg.status = "failed"
        msg.error = str(e)[:500]

    with session(engine) as s:
        s.add(msg)
        s.commit()
    return msg


def notify_booking(
    engine: Engine,
    sender: SmsSender,
    *,
    kind: str,
    booking,
    body: str,
    now: datetime | None = None,
    gate: quiet_hours.QuietHours | None = None,
) -> OutboundMessage | None:
    """Gate `now` through quiet hours and send a booking-related SMS, if the guest has a phone."""
    if not booking.phone:
        return None
    send_at = quiet_hours.next_permitted_instant(now or _now(), gate)
    return dispatch_sms(
        engine,
        sender,
        kind=kind,
        to=booking.phone,
        body=body,
        scheduled_for=send_at,
        booking_id=booking.id,
        gate=gate,
    )
