"""
Rate limiting for token-bearing guest/manager actions.

Counters live in the shared database so the limit holds across service
instances. If the store is unreachable the check falls back to an in-process
counter with a lower limit: an outage makes the throttle stricter, never off.
"""
from __future__ import annotations

import hashlib
import logging
import os
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .db import session
from .errors import RateLimited
from .models import ThrottleCounter

THROTTLE_LIMIT = int(os.getenv("THROTTLE_LIMIT", "10"))
THROTTLE_CALLER_LIMIT = int(os.getenv("THROTTLE_CALLER_LIMIT", "30"))
THROTTLE_WINDOW_SECONDS = int(os.getenv("THROTTLE_WINDOW_SECONDS", "60"))
THROTTLE_FALLBACK_LIMIT = int(os.getenv("THROTTLE_FALLBACK_LIMIT", "3"))

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


@dataclass(frozen=True)
class ThrottleDecision:
    allowed: bool
    count: int
    limit: int
    retry_after_seconds: int = 0
    degraded: bool = False


class _LocalCounter:
    def __init__(self):
        self._lock = threading.Lock()
        self._buckets: dict[str, tuple[datetime, int]] = {}

    def record(self, bucket: str, now: datetime, window: timedelta) -> int:
        with self._lock:
            self._prune(now - window)
            started, count = self._buckets.get(bucket, (now, 0))
            count += 1
            self._buckets[bucket] = (started, count)
            return count

    def _prune(self, cutoff: datetime) -> None:
        for key in [k for k, (started, _) in self._buckets.items() if started <= cutoff]:
            del self._buckets[key]

    def __len__(self) -> int:
        return len(self._buckets)


_fallback = _LocalCounter()


def _bucket(*parts: str) -> str:
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()


def _record_persisted(engine: Engine, bucket: str, now: datetime, window: timedelta) -> int:
    for _ in range(3):
        with session(engine) as s:
            bumped = s.execute(
                update(ThrottleCounter)
                .where(ThrottleCounter.bucket == bucket)
                .where(ThrottleCounter.window_started_at > now - window)
                .values(count=ThrottleCounter.count + 1)
            )
            if bumped.rowcount != 1:
                # Window elapsed (only one concurrent caller wins the reset) or first use.
                reset = s.execute(
                    update(ThrottleCounter)
                    .where(ThrottleCounter.bucket == bucket)
                    .where(ThrottleCounter.window_started_at <= now - window)
                    .values(count=1, window_started_at=now)
                )
                if reset.rowcount != 1:
                    s.add(ThrottleCounter(bucket=bucket, window_started_at=now, count=1))
                    try:
                        s.flush()
                    except IntegrityError:
                        s.rollback()
                        continue
            count = s.execute(select(ThrottleCounter.count).where(ThrottleCounter.bucket == bucket)).scalar_one()
            s.commit()
            return count
    raise RuntimeError(f"Could not record throttle bucket {bucket}")


def check_and_record(
    engine: Engine,
    token_hash: str,
    action_scope: str,
    caller: str,
    *,
    now: datetime | None = None,
    limit: int = THROTTLE_LIMIT,
    caller_limit: int = THROTTLE_CALLER_LIMIT,
    window_seconds: int = THROTTLE_WINDOW_SECONDS,
) -> ThrottleDecision:
    """
    Count one attempt against two buckets: the token itself (per scope) and the
    caller across all tokens of that scope, which is what blunts enumeration.
    """
    now = now or _now()
    window = timedelta(seconds=window_seconds)
    token_bucket = _bucket("token", action_scope, token_hash)
    caller_bucket = _bucket("caller", action_scope, caller or "unknown")

    try:
        token_count = _record_persisted(engine, token_bucket, now, window)
        caller_count = _record_persisted(engine, caller_bucket, now, window)
        degraded = False
    except SQLAlchemyError as e:
        logger.warning("Throttle store unavailable, using in-process fallback (scope=%s): %s", action_scope, e)
        token_count = _fallback.record(token_bucket, now, window)
        caller_count = _fallback.record(caller_bucket, now, window)
        limit = min(limit, THROTTLE_FALLBACK_LIMIT)
        caller_limit = min(caller_limit, THROTTLE_FALLBACK_LIMIT)
        degraded = True

    allowed = token_count <= limit and caller_count <= caller_limit
    if not allowed:
        logger.info("Rate limited %s attempt (token_count=%s caller_count=%s)", action_scope, token_count, caller_count)
    return ThrottleDecision(
        allowed=allowed,
        count=max(token_count, caller_count),
        limit=limit,
        retry_after_seconds=0 if allowed else window_seconds,
        degraded=degraded,
    )


def enforce(engine: Engine, token_hash: str, action_scope: str, caller: str, **kwargs) -> ThrottleDecision:
    decision = check_and_record(engine, token_hash, action_scope, caller, **kwargs)
    if not decision.allowed:
        raise RateLimited(detail="Too many attempts, try again later", retry_after=decision.retry_after_seconds)
    return decision
