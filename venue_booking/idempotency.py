"""
Idempotency guard for externally-submitted mutating requests.

A key is claimed by inserting its row (primary key) in a short transaction
before the operation runs, so concurrent callers with the same key serialize
on the database: the loser waits for the winner's stored response instead of
executing the operation a second time.
"""
from __future__ import annotations

import hashlib
import json
import logging
import os
import time
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable

from sqlalchemy import delete
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from .db import session
from .errors import IdempotencyConflict, IdempotencyInProgress, ValidationFailed
from .models import IdempotencyRecord
from .notifications import normalize_phone

IDEMPOTENCY_TTL_HOURS = int(os.getenv("IDEMPOTENCY_TTL_HOURS", "24"))
IDEMPOTENCY_WAIT_SECONDS = float(os.getenv("IDEMPOTENCY_WAIT_SECONDS", "10"))

PHONE_FIELDS = {"phone", "mobile", "mobile_number", "phone_number"}

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _canonical_value(key: str | None, value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _canonical_value(k, v) for k, v in sorted(value.items()) if v is not None}
    if isinstance(value, (list, tuple)):
        return [_canonical_value(None, v) for v in value]
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, str):
        value = value.strip()
        if key in PHONE_FIELDS:
            try:
                return normalize_phone(value)
            except ValueError:
                return value
        return value
    return value


def canonicalize(payload: dict) -> dict:
    """Normalize volatile encodings (phone formats, timezones, whitespace, missing vs null)."""
    return _canonical_value(None, payload)


def request_hash(payload: dict) -> str:
    body = json.dumps(canonicalize(payload), sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


def _claim(engine: Engine, key: str, digest: str, now: datetime) -> bool:
    with session(engine) as s:
        existing = s.get(IdempotencyRecord, key)
        if existing is not None and existing.expires_at <= now:
            s.execute(
                delete(IdempotencyRecord)
                .where(IdempotencyRecord.key == key)
                .where(IdempotencyRecord.expires_at <= now)
            )
            s.commit()
            s.expunge_all()
        elif existing is not None:
            return False

        s.add(
            IdempotencyRecord(
                key=key,
                request_hash=digest,
                status="in_progress",
                response=None,
                created_at=now,
                expires_at=now + timedelta(hours=IDEMPOTENCY_TTL_HOURS),
            )
        )
        try:
            s.commit()
        except IntegrityError:
            s.rollback()
            return False
    return True


def _abandon(engine: Engine, key: str) -> None:
    with session(engine) as s:
        s.execute(
            delete(IdempotencyRecord)
            .where(IdempotencyRecord.key == key)
            .where(IdempotencyRecord.status == "in_progress")
        )
        s.commit()


def _complete(engine: Engine, key: str, response: dict) -> None:
    with session(engine) as s:
        rec = s.get(IdempotencyRecord, key)
        rec.status = "completed"
        rec.response = response
        s.commit()


def guard(
    engine: Engine,
    key: str,
    payload: dict,
    operation: Callable[[], dict],
    *,
    now: datetime | None = None,
    wait_seconds: float | None = None,
    poll_interval: float = 0.05,
) -> dict:
    """
    Run `operation` at most once per (key, payload).

    - same key, same canonical payload: cached response, no re-execution
    - same key, different payload: IdempotencyConflict
    - concurrent twin still running: wait for its response (IdempotencyInProgress on timeout)

    If the operation raises, the claim is dropped so a retry can run it again.
    """
    key = (key or "").strip()
    if not key or len(key) > 255:
        raise ValidationFailed(detail="Idempotency key must be 1-255 characters")

    digest = request_hash(payload)
    deadline = time.monotonic() + (IDEMPOTENCY_WAIT_SECONDS if wait_seconds is None else wait_seconds)

    while True:
        if _claim(engine, key, digest, now or _now()):
            try:
                response = operation()
            except Exception:
                _abandon(engine, key)
                raise
            _complete(engine, key, response)
            return response

        with session(engine) as s:
            rec = s.get(IdempotencyRecord, key)
        if rec is not None:
            if rec.request_hash != digest:
                raise IdempotencyConflict(detail="Idempotency key was used with a different request")
            if rec.status == "completed":
                logger.info("Idempotent replay for key %s", key)
                return rec.response or {}

        if time.monotonic() >= deadline:
            raise IdempotencyInProgress(detail="A request with this key is still being processed")
        time.sleep(poll_interval)


def purge_expired(engine: Engine, now: datetime | None = None) -> int:
    with session(engine) as s:
        result = s.execute(
            delete(IdempotencyRecord)
            .where(IdempotencyRecord.expires_at <= (now or _now()))
            .where(IdempotencyRecord.status == "completed")
        )
        s.commit()
    return result.rowcount or 0
