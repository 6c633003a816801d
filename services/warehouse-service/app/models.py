from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import JSON, Boolean, Date, DateTime, Float, Integer, String, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class Warehouse(Base):
    __tablename__ = "warehouses"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    company_id: Mapped[str | None] = mapped_column(String, index=True)
    name: Mapped[str] = mapped_column(String, default="")

    total_pallet_slots: Mapped[int] = mapped_column(Integer, default=0)
    available_pallet_slots: Mapped[int] = mapped_column(Integer, default=0)
    total_area_sq_ft: Mapped[int] = mapped_column(Integer, default=0)
    available_area_sq_ft: Mapped[int] = mapped_column(Integer, default=0)


class Booking(Base):
    __tablename__ = "bookings"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    company_id: Mapped[str | None] = mapped_column(String, index=True)
    warehouse_id: Mapped[str] = mapped_column(String, index=True)
    customer_id: Mapped[str | None] = mapped_column(String, index=True)

    type: Mapped[str] = mapped_column(String, index=True)  # pallet|area-rental
    pallet_count: Mapped[int | None] = mapped_column(Integer)
    area_sq_ft: Mapped[int | None] = mapped_column(Integer)

    start_date: Mapped[date] = mapped_column(Date, index=True)
    end_date: Mapped[date | None] = mapped_column(Date, index=True)  # NULL = open-ended

    status: Mapped[str] = mapped_column(String, index=True)  # pending|confirmed|active|completed|cancelled
    created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    quote_total: Mapped[float | None] = mapped_column(Float)
    quote_breakdown: Mapped[dict | None] = mapped_column(JSON)


class WarehouseAvailability(Base):
    """
    Day-level calendar override for a warehouse.

    No row for a date means warehouse-level capacity applies and the day is open.
    A row with a NULL slot figure only overrides the types it names.
    """

    __tablename__ = "warehouse_availability"
    __table_args__ = (UniqueConstraint("warehouse_id", "date", name="uq_warehouse_availability_warehouse_date"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    warehouse_id: Mapped[str] = mapped_column(String, index=True)
    day: Mapped[date] = mapped_column("date", Date, index=True)

    available_pallet_slots: Mapped[int | None] = mapped_column(Integer)
    available_area_sq_ft: Mapped[int | None] = mapped_column(Integer)
    is_blocked: Mapped[bool] = mapped_column(Boolean, default=False)
