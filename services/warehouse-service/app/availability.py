from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Iterator

from .domain import BOOKING_TYPES
from .errors import NotFoundError, ValidationError
from .store import BookingSpan, CalendarEntry, WarehouseStore

logger = logging.getLogger(__name__)

# Longest range (in days, inclusive) a single availability or calendar query may span.
MAX_RANGE_DAYS = int(os.getenv("AVAILABILITY_MAX_RANGE_DAYS", "1830"))


@dataclass(frozen=True)
class AvailabilityResult:
    available: bool
    requested_quantity: int
    available_quantity: int
    utilization_percent: int
    conflicting_dates: list[date] = field(default_factory=list)


@dataclass(frozen=True)
class BookingOnDay:
    booking_id: str
    type: str
    quantity: int
    start_date: date
    end_date: date | None


@dataclass(frozen=True)
class DayAvailability:
    warehouse_id: str
    day: date
    available_pallets: int
    available_sq_ft: int
    is_blocked: bool
    is_available: bool
    bookings: list[BookingOnDay] = field(default_factory=list)


def _days(start: date, end: date) -> Iterator[date]:
    for i in range((end - start).days + 1):
        yield start + timedelta(days=i)


def _validate_range(start_date: date, end_date: date) -> None:
    if start_date is None:
        raise ValidationError("start_date", "start_date is required")
    if end_date is None:
        raise ValidationError("end_date", "end_date is required")
    if start_date > end_date:
        raise ValidationError("end_date", "end_date must not be before start_date")
    if (end_date - start_date).days + 1 > MAX_RANGE_DAYS:
        raise ValidationError("end_date", f"date range must not exceed {MAX_RANGE_DAYS} days")


def _consumed_on(bookings: list[BookingSpan], booking_type: str, day: date) -> int:
    return sum(b.quantity_for(booking_type) for b in bookings if b.occupies(day))


def _available_on(total: int, consumed: int, entry: CalendarEntry | None, booking_type: str) -> int:
    remaining = total - consumed
    slots = entry.slots_for(booking_type) if entry is not None else None
    if slots is not None:
        remaining = min(int(slots), remaining)
    return max(0, remaining)


def utilization_percent(consumed: int, total: int) -> int:
    if total <= 0:
        return 0
    return max(0, min(100, round(consumed / total * 100)))


def resolve(
    store: WarehouseStore,
    warehouse_id: str,
    booking_type: str,
    quantity: int,
    start_date: date,
    end_date: date,
) -> AvailabilityResult:
    """
    Decide whether `quantity` units of `booking_type` fit in the warehouse for
    every day of [start_date, end_date] (both inclusive).

    The range figure is the tightest day: a booking has to fit on each day it
    occupies. Any blocked calendar day makes the whole range unavailable.
    Read-only; two concurrent callers can both see capacity that only one of
    them will get. The booking write owns that race.
    """
    if booking_type not in BOOKING_TYPES:
        raise ValidationError("type", f"type must be one of {', '.join(BOOKING_TYPES)}")
    if quantity is None or int(quantity) <= 0:
        raise ValidationError("quantity", "quantity must be greater than zero")
    _validate_range(start_date, end_date)
    quantity = int(quantity)

    snapshot = store.capacity(warehouse_id)
    if snapshot is None:
        raise NotFoundError("warehouse", warehouse_id)
    total = snapshot.total_for(booking_type)

    bookings = store.overlapping_bookings(warehouse_id, start_date, end_date)
    entries = {e.day: e for e in store.calendar(warehouse_id, start_date, end_date)}

    days = list(_days(start_date, end_date))
    consumed = {d: _consumed_on(bookings, booking_type, d) for d in days}
    utilization = utilization_percent(max(consumed.values(), default=0), total)

    blocked = sorted(d for d, e in entries.items() if e.is_blocked)
    if blocked:
        logger.info(
            "Warehouse %s blocked on %d day(s) in %s..%s",
            warehouse_id,
            len(blocked),
            start_date.isoformat(),
            end_date.isoformat(),
        )
        return AvailabilityResult(
            available=False,
            requested_quantity=quantity,
            available_quantity=0,
            utilization_percent=utilization,
            conflicting_dates=blocked,
        )

    available_quantity = min(_available_on(total, consumed[d], entries.get(d), booking_type) for d in days)
    return AvailabilityResult(
        available=available_quantity >= quantity,
        requested_quantity=quantity,
        available_quantity=available_quantity,
        utilization_percent=utilization,
    )


def daily_calendar(store: WarehouseStore, warehouse_id: str, start_date: date, end_date: date) -> list[DayAvailability]:
    """Per-day pallet and area availability, with the bookings occupying each day."""
    _validate_range(start_date, end_date)

    snapshot = store.capacity(warehouse_id)
    if snapshot is None:
        raise NotFoundError("warehouse", warehouse_id)

    bookings = store.overlapping_bookings(warehouse_id, start_date, end_date)
    entries = {e.day: e for e in store.calendar(warehouse_id, start_date, end_date)}

    out: list[DayAvailability] = []
    for d in _days(start_date, end_date):
        entry = entries.get(d)
        pallets = _available_on(snapshot.total_for("pallet"), _consumed_on(bookings, "pallet", d), entry, "pallet")
        sq_ft = _available_on(snapshot.total_for("area-rental"), _consumed_on(bookings, "area-rental", d), entry, "area-rental")
        blocked = bool(entry and entry.is_blocked)
        out.append(
            DayAvailability(
                warehouse_id=warehouse_id,
                day=d,
                available_pallets=0 if blocked else pallets,
                available_sq_ft=0 if blocked else sq_ft,
                is_blocked=blocked,
                is_available=not blocked and (pallets > 0 or sq_ft > 0),
                bookings=[
                    BookingOnDay(
                        booking_id=b.id,
                        type=b.type,
                        quantity=b.quantity_for(b.type),
                        start_date=b.start_date,
                        end_date=b.end_date,
                    )
                    for b in bookings
                    if b.occupies(d)
                ],
            )
        )
    return out
