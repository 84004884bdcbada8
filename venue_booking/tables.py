"""
Table allocation.

`allocate` is a pure function over plain table descriptions so it can be
tested without a database. The persistence helpers below it gather the
inputs (free tables, join links, tables inside blocked areas) for a
booking's service window and record the chosen assignment.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable
from uuid import uuid4

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from .errors import CapacityRejected, MoveNotAllowed, NotFound, ValidationFailed
from .models import AreaBlock, Booking, Resource, Table, TableAssignment, TableJoinLink

TABLE_JOIN_MAX = int(os.getenv("TABLE_JOIN_MAX", "4"))
DEFAULT_SITTING_MINUTES = int(os.getenv("DEFAULT_SITTING_MINUTES", "120"))

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TableSpec:
    id: str
    capacity: int


@dataclass(frozen=True)
class Assignment:
    table_ids: tuple[str, ...]
    total_capacity: int

    @property
    def joined(self) -> bool:
        return len(self.table_ids) > 1


def _adjacency(tables: dict[str, TableSpec], join_links: Iterable[tuple[str, str]]) -> dict[str, set[str]]:
    adj: dict[str, set[str]] = {tid: set() for tid in tables}
    for a, b in join_links:
        if a in adj and b in adj and a != b:
            adj[a].add(b)
            adj[b].add(a)
    return adj


def _connected_groups(tables: dict[str, TableSpec], adj: dict[str, set[str]], max_join: int) -> set[frozenset[str]]:
    """All connected sets of 2..max_join tables (breadth-first growth from each table)."""
    frontier = {frozenset([tid]) for tid in tables}
    groups: set[frozenset[str]] = set()
    for _ in range(max_join - 1):
        grown: set[frozenset[str]] = set()
        for group in frontier:
            for tid in group:
                for neighbour in adj[tid] - group:
                    grown.add(group | {neighbour})
        grown -= groups
        groups |= grown
        frontier = grown
    return groups


def _best_fit(
    party_size: int,
    tables: dict[str, TableSpec],
    join_links: list[tuple[str, str]],
    max_join: int,
) -> Assignment | None:
    singles = sorted((t for t in tables.values() if t.capacity >= party_size), key=lambda t: (t.capacity, t.id))
    if singles:
        return Assignment(table_ids=(singles[0].id,), total_capacity=singles[0].capacity)

    if max_join < 2:
        return None
    best: tuple[int, int, tuple[str, ...]] | None = None
    for group in _connected_groups(tables, _adjacency(tables, join_links), max_join):
        total = sum(tables[tid].capacity for tid in group)
        if total < party_size:
            continue
        key = (total - party_size, len(group), tuple(sorted(group)))
        if best is None or key < best:
            best = key
    if best is None:
        return None
    excess, _, ids = best
    return Assignment(table_ids=ids, total_capacity=party_size + excess)


def allocate(
    party_size: int,
    candidate_tables: Iterable[TableSpec],
    join_links: Iterable[tuple[str, str]],
    blocked_tables: Iterable[str] = (),
    max_join: int = TABLE_JOIN_MAX,
) -> Assignment:
    """
    Seat `party_size` on one table or a connected group of up to `max_join` joined tables.

    Single tables are preferred (smallest that fits); otherwise the joined group
    with the least spare capacity wins, ties broken by fewer tables then table id.
    Blocked tables are never used. Raises CapacityRejected with
    `private_booking_blocked` when only the blocks prevent a fit, otherwise
    `no_availability`.
    """
    if party_size < 1:
        raise ValidationFailed(detail="party_size must be positive")

    every = {t.id: t for t in candidate_tables}
    blocked = set(blocked_tables)
    links = list(join_links)
    free = {tid: t for tid, t in every.items() if tid not in blocked}

    found = _best_fit(party_size, free, links, max_join)
    if found is not None:
        return found
    if blocked and _best_fit(party_size, every, links, max_join) is not None:
        raise CapacityRejected("private_booking_blocked", "Tables are reserved for a private booking")
    raise CapacityRejected("no_availability", "No table or joined tables fit this party")


def sitting_window(resource: Resource) -> tuple[datetime, datetime]:
    if resource.starts_at is None:
        raise ValidationFailed(detail=f"Resource {resource.id} has no service time")
    return resource.starts_at, resource.ends_at or resource.starts_at + timedelta(minutes=DEFAULT_SITTING_MINUTES)


def load_join_links(s: Session) -> list[tuple[str, str]]:
    return [(a, b) for a, b in s.execute(select(TableJoinLink.table_a_id, TableJoinLink.table_b_id)).all()]


def link_tables(s: Session, table_a_id: str, table_b_id: str) -> TableJoinLink:
    a, b = sorted((table_a_id, table_b_id))
    if a == b:
        raise ValidationFailed(detail="A table cannot be joined to itself")
    link = TableJoinLink(id=str(uuid4()), table_a_id=a, table_b_id=b)
    s.add(link)
    s.flush()
    return link


def blocked_table_ids(s: Session, tables: Iterable[Table], starts_at: datetime, ends_at: datetime) -> set[str]:
    blocks = s.execute(
        select(AreaBlock).where(AreaBlock.starts_at < ends_at).where(AreaBlock.ends_at > starts_at)
    ).scalars().all()
    if not blocks:
        return set()
    if any(b.area is None for b in blocks):
        return {t.id for t in tables}
    areas = {b.area for b in blocks}
    return {t.id for t in tables if t.area in areas}


def occupied_table_ids(
    s: Session, starts_at: datetime, ends_at: datetime, exclude_booking_id: str | None = None
) -> set[str]:
    q = (
        select(TableAssignment.table_id)
        .where(TableAssignment.starts_at < ends_at)
        .where(TableAssignment.ends_at > starts_at)
    )
    if exclude_booking_id is not None:
        q = q.where(TableAssignment.booking_id != exclude_booking_id)
    return set(s.execute(q).scalars().all())


def assignments_for(s: Session, booking_id: str) -> list[TableAssignment]:
    return list(
        s.execute(
            select(TableAssignment).where(TableAssignment.booking_id == booking_id).order_by(TableAssignment.table_id)
        ).scalars().all()
    )


def assign_tables(s: Session, booking: Booking, resource: Resource) -> Assignment:
    """Allocate and record tables for `booking` within the caller's transaction."""
    starts_at, ends_at = sitting_window(resource)
    # Lock the floor plan so two allocations for overlapping windows serialize.
    tables = s.execute(select(Table).where(Table.bookable.is_(True)).order_by(Table.id).with_for_update()).scalars().all()
    occupied = occupied_table_ids(s, starts_at, ends_at, exclude_booking_id=booking.id)
    blocked = blocked_table_ids(s, tables, starts_at, ends_at)

    assignment = allocate(
        booking.party_size,
        [TableSpec(id=t.id, capacity=t.capacity) for t in tables if t.id not in occupied],
        load_join_links(s),
        blocked,
    )
    for tid in assignment.table_ids:
        s.add(
            TableAssignment(id=str(uuid4()), booking_id=booking.id, table_id=tid, starts_at=starts_at, ends_at=ends_at)
        )
    s.flush()
    logger.info("Booking %s assigned table(s) %s", booking.id, ",".join(assignment.table_ids))
    return assignment


def unassign_tables(s: Session, booking_id: str) -> int:
    result = s.execute(delete(TableAssignment).where(TableAssignment.booking_id == booking_id))
    return result.rowcount or 0


def move_booking(s: Session, booking_id: str, table_id: str) -> TableAssignment:
    """
    Move a single-table assignment to another free table.

    Joined assignments cannot be moved; they must be reallocated.
    """
    booking = s.execute(select(Booking).where(Booking.id == booking_id).with_for_update()).scalar_one_or_none()
    if booking is None:
        raise NotFound(detail=f"Booking {booking_id} not found")
    current = assignments_for(s, booking_id)
    if not current:
        raise NotFound(detail=f"Booking {booking_id} has no table assignment")
    if len(current) > 1:
        raise MoveNotAllowed(detail="Joined-table bookings must be reallocated, not moved")

    tables = s.execute(select(Table).where(Table.bookable.is_(True)).order_by(Table.id).with_for_update()).scalars().all()
    target = next((t for t in tables if t.id == table_id), None)
    if target is None:
        raise NotFound(detail=f"Table {table_id} not found")
    if target.capacity < booking.party_size:
        raise CapacityRejected("no_availability", "Table is too small for this party")

    assignment = current[0]
    if table_id in occupied_table_ids(s, assignment.starts_at, assignment.ends_at, exclude_booking_id=booking_id):
        raise CapacityRejected("no_availability", "Table is already taken")
    if table_id in blocked_table_ids(s, [target], assignment.starts_at, assignment.ends_at):
        raise CapacityRejected("private_booking_blocked", "Table is reserved for a private booking")

    old_table = assignment.table_id
    assignment.table_id = table_id
    s.flush()
    logger.info("Booking %s moved from table %s to %s", booking_id, old_table, table_id)
    return assignment


def reallocate(s: Session, booking_id: str) -> Assignment:
    booking = s.execute(select(Booking).where(Booking.id == booking_id).with_for_update()).scalar_one_or_none()
    if booking is None:
        raise NotFound(detail=f"Booking {booking_id} not found")
    if booking.status not in ("pending_hold", "pending_payment", "confirmed"):
        raise ValidationFailed(detail=f"Cannot reallocate a {booking.status} booking")
    resource = s.get(Resource, booking.resource_id)
    unassign_tables(s, booking_id)
    s.flush()
    return assign_tables(s, booking, resource)


def table_ids_for(s: Session, booking_ids: list[str]) -> dict[str, list[str]]:
    out: dict[str, list[str]] = {bid: [] for bid in booking_ids}
    if not booking_ids:
        return out
    rows = s.execute(
        select(TableAssignment.booking_id, TableAssignment.table_id)
        .where(TableAssignment.booking_id.in_(booking_ids))
        .order_by(TableAssignment.table_id)
    ).all()
    for bid, tid in rows:
        out[bid].append(tid)
    return out
