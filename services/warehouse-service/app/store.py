from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date
from typing import Iterator, Protocol

from sqlalchemy import or_
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from .db import session
from .errors import UpstreamError
from .models import Booking, Warehouse, WarehouseAvailability

logger = logging.getLogger(__name__)

# Bookings in these states hold capacity; completed/cancelled release it.
ACTIVE_STATUSES: tuple[str, ...] = ("pending", "confirmed", "active")


@dataclass(frozen=True)
class CapacitySnapshot:
    total_pallet_slots: int
    available_pallet_slots: int
    total_area_sq_ft: int
    available_area_sq_ft: int

    def total_for(self, booking_type: str) -> int:
        if booking_type == "pallet":
            return int(self.total_pallet_slots or 0)
        return int(self.total_area_sq_ft or 0)


@dataclass(frozen=True)
class BookingSpan:
    id: str
    type: str
    start_date: date
    end_date: date | None
    status: str = "confirmed"
    pallet_count: int | None = None
    area_sq_ft: int | None = None

    def quantity_for(self, booking_type: str) -> int:
        if self.type != booking_type:
            return 0
        if booking_type == "pallet":
            return int(self.pallet_count or 0)
        return int(self.area_sq_ft or 0)

    def occupies(self, day: date) -> bool:
        return self.start_date <= day and (self.end_date is None or self.end_date >= day)

    def overlaps(self, start: date, end: date) -> bool:
        return self.start_date <= end and (self.end_date is None or self.end_date >= start)


@dataclass(frozen=True)
class CalendarEntry:
    day: date
    available_pallet_slots: int | None = None
    available_area_sq_ft: int | None = None
    is_blocked: bool = False

    def slots_for(self, booking_type: str) -> int | None:
        if booking_type == "pallet":
            return self.available_pallet_slots
        return self.available_area_sq_ft


class WarehouseStore(Protocol):
    def capacity(self, warehouse_id: str) -> CapacitySnapshot | None: ...

    def overlapping_bookings(self, warehouse_id: str, start: date, end: date) -> list[BookingSpan]: ...

    def calendar(self, warehouse_id: str, start: date, end: date) -> list[CalendarEntry]: ...


@contextmanager
def _upstream(op: str, warehouse_id: str) -> Iterator[None]:
    try:
        yield
    except SQLAlchemyError as e:
        logger.error("Warehouse store %s failed (warehouse_id=%s): %s", op, warehouse_id, e)
        raise UpstreamError(f"Storage unavailable during {op}") from e


class SqlWarehouseStore:
    """Reads capacity, bookings and calendar overrides from a tenant database and records new bookings."""

    def __init__(self, engine: Engine):
        self.engine = engine

    def capacity(self, warehouse_id: str) -> CapacitySnapshot | None:
        with _upstream("capacity", warehouse_id), session(self.engine) as s:
            w = s.get(Warehouse, warehouse_id)
            if w is None:
                return None
            return CapacitySnapshot(
                total_pallet_slots=w.total_pallet_slots or 0,
                available_pallet_slots=w.available_pallet_slots or 0,
                total_area_sq_ft=w.total_area_sq_ft or 0,
                available_area_sq_ft=w.available_area_sq_ft or 0,
            )

    def overlapping_bookings(self, warehouse_id: str, start: date, end: date) -> list[BookingSpan]:
        with _upstream("bookings", warehouse_id), session(self.engine) as s:
            rows = (
                s.query(Booking)
                .filter(Booking.warehouse_id == warehouse_id)
                .filter(Booking.status.in_(ACTIVE_STATUSES))
                .filter(Booking.start_date <= end)
                .filter(or_(Booking.end_date.is_(None), Booking.end_date >= start))
                .all()
            )
        return [
            BookingSpan(
                id=r.id,
                type=r.type,
                start_date=r.start_date,
                end_date=r.end_date,
                status=r.status,
                pallet_count=r.pallet_count,
                area_sq_ft=r.area_sq_ft,
            )
            for r in rows
        ]

    def calendar(self, warehouse_id: str, start: date, end: date) -> list[CalendarEntry]:
        with _upstream("calendar", warehouse_id), session(self.engine) as s:
            rows = (
                s.query(WarehouseAvailability)
                .filter(WarehouseAvailability.warehouse_id == warehouse_id)
                .filter(WarehouseAvailability.day >= start)
                .filter(WarehouseAvailability.day <= end)
                .order_by(WarehouseAvailability.day.asc())
                .all()
            )
        return [
            CalendarEntry(
                day=r.day,
                available_pallet_slots=r.available_pallet_slots,
                available_area_sq_ft=r.available_area_sq_ft,
                is_blocked=bool(r.is_blocked),
            )
            for r in rows
        ]

    def add_booking(self, booking: Booking) -> None:
        with _upstream("booking insert", booking.warehouse_id), session(self.engine) as s:
            s.add(booking)
            s.commit()


@dataclass
class InMemoryWarehouseStore:
    """Same read contract over plain collections (local tooling and tests)."""

    warehouses: dict[str, CapacitySnapshot] = field(default_factory=dict)
    bookings: dict[str, list[BookingSpan]] = field(default_factory=dict)
    entries: dict[str, list[CalendarEntry]] = field(default_factory=dict)

    def capacity(self, warehouse_id: str) -> CapacitySnapshot | None:
        return self.warehouses.get(warehouse_id)

    def overlapping_bookings(self, warehouse_id: str, start: date, end: date) -> list[BookingSpan]:
        return [
            b
            for b in self.bookings.get(warehouse_id, [])
            if b.status in ACTIVE_STATUSES and b.overlaps(start, end)
        ]

    def calendar(self, warehouse_id: str, start: date, end: date) -> list[CalendarEntry]:
        return sorted(
            (e for e in self.entries.get(warehouse_id, []) if start <= e.day <= end),
            key=lambda e: e.day,
        )
