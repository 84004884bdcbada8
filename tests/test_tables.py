import itertools
import random
from datetime import timedelta
from uuid import uuid4

import pytest
from conftest import add_resource, add_tables

from venue_booking import bookings, tables
from venue_booking.db import session
from venue_booking.errors import CapacityRejected, MoveNotAllowed
from venue_booking.models import AreaBlock, Booking
from venue_booking.tables import TableSpec, allocate

FLOOR = [TableSpec("t1", 2), TableSpec("t2", 2), TableSpec("t3", 4), TableSpec("t4", 6)]
LINKS = [("t1", "t2"), ("t2", "t3"), ("t3", "t4")]


def test_smallest_single_table_wins():
    assert allocate(3, FLOOR, LINKS).table_ids == ("t3",)
    assert allocate(2, FLOOR, LINKS).table_ids == ("t1",)


def test_joins_tables_with_least_spare_capacity():
    # t3+t4 seats 10 exactly; t2+t3+t4 would seat 12.
    result = allocate(10, FLOOR, LINKS)
    assert result.table_ids == ("t3", "t4")
    assert result.joined
    assert result.total_capacity == 10


def test_only_linked_tables_join():
    # t1 and t4 are not adjacent, so 8 needs t3+t4.
    result = allocate(8, FLOOR, LINKS)
    assert result.table_ids == ("t3", "t4")


def test_blocked_tables_are_never_used():
    assert allocate(5, FLOOR, LINKS, blocked_tables={"t4"}).table_ids == ("t2", "t3")


def test_block_that_prevents_any_fit_is_reported():
    with pytest.raises(CapacityRejected) as exc:
        allocate(6, FLOOR, LINKS, blocked_tables={"t4", "t3"})
    assert exc.value.reason == "private_booking_blocked"


def test_party_too_big_for_floor():
    with pytest.raises(CapacityRejected) as exc:
        allocate(30, FLOOR, LINKS)
    assert exc.value.reason == "no_availability"


def test_join_count_is_bounded():
    row = [TableSpec(f"r{i}", 2) for i in range(6)]
    links = [(f"r{i}", f"r{i + 1}") for i in range(5)]
    assert len(allocate(8, row, links, max_join=4).table_ids) == 4
    with pytest.raises(CapacityRejected):
        allocate(10, row, links, max_join=4)


def test_allocation_is_minimal_on_random_floors():
    rng = random.Random(7)
    for _ in range(40):
        floor = [TableSpec(f"x{i}", rng.choice((2, 2, 4, 4, 6, 8))) for i in range(6)]
        links = [(a.id, b.id) for a, b in itertools.combinations(floor, 2) if rng.random() < 0.4]
        party = rng.randint(1, 14)
        by_id = {t.id: t for t in floor}
        try:
            result = allocate(party, floor, links, max_join=3)
        except CapacityRejected:
            continue
        assert result.total_capacity >= party
        assert result.total_capacity == sum(by_id[t].capacity for t in result.table_ids)
        assert len(result.table_ids) <= 3
        singles = [t.capacity for t in floor if t.capacity >= party]
        if singles:
            assert result.table_ids and not result.joined
            assert result.total_capacity == min(singles)


def _table_resource(engine, now, **kw):
    starts = now + timedelta(days=2)
    return add_resource(engine, capacity=None, kind="table_pool", starts_at=starts, ends_at=starts + timedelta(hours=2), **kw)


def _hold(engine, rid, party, now) -> Booking:
    with session(engine) as s:
        booking = bookings.create_booking_hold(s, resource_id=rid, party_size=party, customer_name="Ada", now=now)
        s.commit()
    return booking


def _tables_of(engine, booking_id):
    with session(engine) as s:
        return tables.table_ids_for(s, [booking_id])[booking_id]


def _floor(engine):
    add_tables(engine, ("t1", 2), ("t2", 2), ("t3", 4), ("t4", 6, "terrace"))
    with session(engine) as s:
        for a, b in LINKS:
            tables.link_tables(s, a, b)
        s.commit()


def test_table_booking_is_bound_at_intake(engine, now):
    _floor(engine)
    rid = _table_resource(engine, now)
    first = _hold(engine, rid, 4, now)
    second = _hold(engine, rid, 4, now)
    assert _tables_of(engine, first.id) == ["t3"]
    assert _tables_of(engine, second.id) == ["t4"]


def test_full_floor_rejects_booking(engine, now):
    _floor(engine)
    rid = _table_resource(engine, now)
    _hold(engine, rid, 10, now)
    with pytest.raises(CapacityRejected):
        _hold(engine, rid, 6, now)
    with session(engine) as s:
        assert s.query(Booking).count() == 1


def test_area_block_excludes_its_tables(engine, now):
    _floor(engine)
    rid = _table_resource(engine, now)
    with session(engine) as s:
        starts = now + timedelta(days=2)
        s.add(AreaBlock(id=str(uuid4()), area="terrace", starts_at=starts, ends_at=starts + timedelta(hours=4)))
        s.commit()
    with pytest.raises(CapacityRejected) as exc:
        _hold(engine, rid, 9, now)
    assert exc.value.reason == "private_booking_blocked"


def test_cancel_frees_tables(engine, now):
    _floor(engine)
    rid = _table_resource(engine, now)
    booking = _hold(engine, rid, 6, now)
    with session(engine) as s:
        bookings.cancel_booking(s, booking.id, now=now)
        s.commit()
    assert _tables_of(engine, booking.id) == []
    assert _tables_of(engine, _hold(engine, rid, 6, now).id) == ["t4"]


def test_joined_assignment_cannot_be_moved(engine, now):
    _floor(engine)
    rid = _table_resource(engine, now)
    booking = _hold(engine, rid, 10, now)
    assert _tables_of(engine, booking.id) == ["t3", "t4"]
    with session(engine) as s:
        with pytest.raises(MoveNotAllowed):
            tables.move_booking(s, booking.id, "t1")


def test_single_assignment_moves_to_free_table(engine, now):
    _floor(engine)
    rid = _table_resource(engine, now)
    booking = _hold(engine, rid, 2, now)
    assert _tables_of(engine, booking.id) == ["t1"]
    with session(engine) as s:
        tables.move_booking(s, booking.id, "t3")
        s.commit()
    assert _tables_of(engine, booking.id) == ["t3"]

    other = _hold(engine, rid, 2, now)
    with session(engine) as s:
        with pytest.raises(CapacityRejected):
            tables.move_booking(s, other.id, "t3")


def test_reallocate_picks_best_fit_again(engine, now):
    _floor(engine)
    rid = _table_resource(engine, now)
    booking = _hold(engine, rid, 2, now)
    with session(engine) as s:
        tables.move_booking(s, booking.id, "t4")
        s.commit()
    with session(engine) as s:
        result = tables.reallocate(s, booking.id)
        s.commit()
    assert result.table_ids == ("t1",)
    assert _tables_of(engine, booking.id) == ["t1"]
