"""
Guest and manager action tokens.

The raw token only ever exists in the link sent to its holder; the store keeps
its SHA-256. Each token is issued for exactly one action scope and is never
accepted for another.
"""
from __future__ import annotations

import hashlib
import os
import secrets
from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from .errors import TokenRejected
from .models import GuestToken

APP_BASE_URL = os.getenv("APP_BASE_URL", "http://localhost:8000").rstrip("/")


class TokenScope(str, Enum):
    MANAGE_BOOKING = "manage_booking"
    PAY = "pay"
    PRE_ORDER = "pre_order"
    APPROVE_CHARGE = "approve_charge"
    FEEDBACK = "feedback"
    WAITLIST_OFFER = "waitlist_offer"


MANAGER_SCOPES = {TokenScope.APPROVE_CHARGE}


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def hash_token(raw: str) -> str:
    return hashlib.sha256((raw or "").encode("utf-8")).hexdigest()


def issue_token(
    s: Session,
    *,
    scope: TokenScope,
    expires_at: datetime,
    booking_id: str | None = None,
    charge_request_id: str | None = None,
    waitlist_offer_id: str | None = None,
    single_use: bool = True,
    now: datetime | None = None,
) -> tuple[str, GuestToken]:
    scope = TokenScope(scope)
    raw = secrets.token_urlsafe(32)
    token = GuestToken(
        id=str(uuid4()),
        token_hash=hash_token(raw),
        holder="manager" if scope in MANAGER_SCOPES else "guest",
        scope=scope.value,
        booking_id=booking_id,
        charge_request_id=charge_request_id,
        waitlist_offer_id=waitlist_offer_id,
        single_use=single_use,
        expires_at=expires_at,
        created_at=now or _now(),
    )
    s.add(token)
    s.flush()
    return raw, token


def resolve_token(s: Session, token_hash: str, scope: TokenScope, *, now: datetime | None = None) -> GuestToken:
    """Look up and lock a token for `scope`. Raises TokenRejected with the precise reason."""
    now = now or _now()
    token = s.execute(
        select(GuestToken).where(GuestToken.token_hash == token_hash).with_for_update()
    ).scalar_one_or_none()
    if token is None:
        raise TokenRejected("invalid_token")
    if token.scope != TokenScope(scope).value:
        raise TokenRejected("wrong_scope", f"Token is not valid for {TokenScope(scope).value}")
    if token.single_use and token.consumed_at is not None:
        raise TokenRejected("token_used")
    if token.expires_at <= now:
        raise TokenRejected("token_expired")
    return token


def consume_token(s: Session, token: GuestToken, *, now: datetime | None = None) -> None:
    if not token.single_use:
        return
    result = s.execute(
        update(GuestToken)
        .where(GuestToken.id == token.id)
        .where(GuestToken.consumed_at.is_(None))
        .values(consumed_at=now or _now())
    )
    if result.rowcount != 1:
        raise TokenRejected("token_used")


def action_url(path: str, raw_token: str) -> str:
    return f"{APP_BASE_URL}/{path.strip('/')}/{raw_token}"
