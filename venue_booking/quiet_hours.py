"""
Quiet-hours gate for outbound messages.

Pure functions of the venue's local civil calendar: no SMS may be scheduled
inside the daily quiet window (21:00-09:00 local by default). Callers must use
the instant returned by `next_permitted_instant` as the basis for any expiry
that depends on when the guest actually receives the message.
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

VENUE_TIMEZONE = os.getenv("VENUE_TIMEZONE", "Europe/London")


def _parse_clock(value: str) -> time:
    hh, _, mm = (value or "").strip().partition(":")
    return time(hour=int(hh), minute=int(mm or 0))


QUIET_HOURS_START = _parse_clock(os.getenv("QUIET_HOURS_START", "21:00"))
QUIET_HOURS_END = _parse_clock(os.getenv("QUIET_HOURS_END", "09:00"))


def _as_utc(instant: datetime) -> datetime:
    if instant.tzinfo is None:
        return instant.replace(tzinfo=timezone.utc)
    return instant


@dataclass(frozen=True)
class QuietHours:
    start: time
    end: time
    tz: ZoneInfo

    @property
    def wraps_midnight(self) -> bool:
        return self.start > self.end

    def _in_window(self, local_time: time) -> bool:
        if self.start == self.end:
            return False
        if self.wraps_midnight:
            return local_time >= self.start or local_time < self.end
        return self.start <= local_time < self.end

    def is_permitted(self, instant: datetime) -> bool:
        local = _as_utc(instant).astimezone(self.tz)
        return not self._in_window(local.time())

    def next_permitted_instant(self, candidate: datetime) -> datetime:
        """Identity for permitted instants; otherwise the end of the current quiet window (UTC)."""
        candidate = _as_utc(candidate)
        local = candidate.astimezone(self.tz)
        if not self._in_window(local.time()):
            return candidate

        day = local.date()
        if self.wraps_midnight and local.time() >= self.start:
            day = day + timedelta(days=1)
        resume = datetime.combine(day, self.end, tzinfo=self.tz)
        return resume.astimezone(timezone.utc)


default_gate = QuietHours(start=QUIET_HOURS_START, end=QUIET_HOURS_END, tz=ZoneInfo(VENUE_TIMEZONE))


def is_permitted(instant: datetime, gate: QuietHours | None = None) -> bool:
    return (gate or default_gate).is_permitted(instant)


def next_permitted_instant(candidate: datetime, gate: QuietHours | None = None) -> datetime:
    return (gate or default_gate).next_permitted_instant(candidate)
