import sys
from datetime import date
from pathlib import Path

import pytest
from sqlalchemy import create_engine

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from app import availability  # noqa: E402
from app.db import session  # noqa: E402
from app.errors import UpstreamError  # noqa: E402
from app.models import Base, Booking, Warehouse, WarehouseAvailability  # noqa: E402
from app.store import SqlWarehouseStore  # noqa: E402


@pytest.fixture()
def engine():
    eng = create_engine("sqlite+pysqlite:///:memory:", future=True)
    Base.metadata.create_all(eng)
    with session(eng) as s:
        s.add(Warehouse(id="wh-1", name="Dock 1", total_pallet_slots=1000, available_pallet_slots=1000, total_area_sq_ft=80_000, available_area_sq_ft=80_000))
        s.add_all(
            [
                Booking(id="b-june", warehouse_id="wh-1", type="pallet", pallet_count=300, start_date=date(2024, 6, 1), end_date=date(2024, 6, 10), status="confirmed"),
                Booking(id="b-open", warehouse_id="wh-1", type="pallet", pallet_count=50, start_date=date(2024, 6, 8), end_date=None, status="active"),
                Booking(id="b-gone", warehouse_id="wh-1", type="pallet", pallet_count=500, start_date=date(2024, 6, 1), end_date=date(2024, 6, 30), status="cancelled"),
                Booking(id="b-other", warehouse_id="wh-2", type="pallet", pallet_count=500, start_date=date(2024, 6, 1), end_date=date(2024, 6, 30), status="confirmed"),
            ]
        )
        s.add(WarehouseAvailability(id="c-1", warehouse_id="wh-1", day=date(2024, 6, 18), is_blocked=True))
        s.add(WarehouseAvailability(id="c-2", warehouse_id="wh-1", day=date(2024, 6, 14), available_pallet_slots=120))
        s.commit()
    return eng


def test_capacity_snapshot(engine):
    store = SqlWarehouseStore(engine)
    snap = store.capacity("wh-1")
    assert snap.total_pallet_slots == 1000
    assert snap.total_for("area-rental") == 80_000
    assert store.capacity("nope") is None


def test_overlap_query_matches_inclusive_ranges(engine):
    store = SqlWarehouseStore(engine)

    ids = {b.id for b in store.overlapping_bookings("wh-1", date(2024, 6, 5), date(2024, 6, 15))}
    assert ids == {"b-june", "b-open"}

    ids = {b.id for b in store.overlapping_bookings("wh-1", date(2024, 6, 11), date(2024, 6, 20))}
    assert ids == {"b-open"}

    ids = {b.id for b in store.overlapping_bookings("wh-1", date(2024, 5, 1), date(2024, 5, 31))}
    assert ids == set()


def test_calendar_is_ordered_and_bounded(engine):
    store = SqlWarehouseStore(engine)
    entries = store.calendar("wh-1", date(2024, 6, 1), date(2024, 6, 30))
    assert [e.day for e in entries] == [date(2024, 6, 14), date(2024, 6, 18)]
    assert entries[1].is_blocked is True
    assert store.calendar("wh-1", date(2024, 6, 15), date(2024, 6, 17)) == []


def test_resolve_against_database(engine):
    store = SqlWarehouseStore(engine)

    r = availability.resolve(store, "wh-1", "pallet", 100, date(2024, 6, 5), date(2024, 6, 9))
    assert r.available_quantity == 650  # 300 + 50 on Jun 8-9
    assert r.utilization_percent == 35

    r = availability.resolve(store, "wh-1", "pallet", 100, date(2024, 6, 12), date(2024, 6, 16))
    assert r.available_quantity == 120
    assert r.available is True

    r = availability.resolve(store, "wh-1", "pallet", 1, date(2024, 6, 17), date(2024, 6, 19))
    assert r.available is False
    assert r.conflicting_dates == [date(2024, 6, 18)]


def test_storage_failure_surfaces_as_upstream_error():
    eng = create_engine("sqlite+pysqlite:///:memory:", future=True)  # no tables
    store = SqlWarehouseStore(eng)
    with pytest.raises(UpstreamError):
        store.capacity("wh-1")
    with pytest.raises(UpstreamError):
        availability.resolve(store, "wh-1", "pallet", 1, date(2024, 6, 1), date(2024, 6, 2))


def test_add_booking_is_visible_to_the_overlap_query(engine):
    store = SqlWarehouseStore(engine)
    store.add_booking(Booking(id="b-new", warehouse_id="wh-1", type="pallet", pallet_count=10, start_date=date(2024, 7, 1), end_date=date(2024, 7, 2), status="pending"))

    ids = {b.id for b in store.overlapping_bookings("wh-1", date(2024, 7, 2), date(2024, 7, 3))}
    assert ids == {"b-open", "b-new"}


def test_add_booking_failure_surfaces_as_upstream_error(engine):
    store = SqlWarehouseStore(engine)
    duplicate = Booking(id="b-june", warehouse_id="wh-1", type="pallet", pallet_count=1, start_date=date(2024, 7, 1), end_date=date(2024, 7, 2), status="pending")
    with pytest.raises(UpstreamError):
        store.add_booking(duplicate)
