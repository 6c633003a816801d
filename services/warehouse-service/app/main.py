from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from typing import Annotated, Literal, Union
from uuid import uuid4

from fastapi import Body, Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from . import availability, domain, events, persistence
from .cache import Cache, calendar_key
from .cache import cache as _cache
from .db import session
from .errors import NotFoundError, UpstreamError, ValidationError
from .models import Booking, Warehouse, WarehouseAvailability
from .security import get_principal_optional, require_roles
from .store import SqlWarehouseStore
from .tenancy import get_company_id, get_tenant_engine

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Warehouse Availability & Pricing Service",
    version="0.1.0",
    description="Warehouse capacity checks, availability calendars, pallet/area-rental quotes and booking intake for the marketplace.",
)

_RATE_BOOK = persistence.load_rate_book()


@app.exception_handler(ValidationError)
async def _validation_error(_request: Request, exc: ValidationError):
    return JSONResponse(status_code=400, content={"detail": {"field": exc.field, "message": exc.message}})


@app.exception_handler(NotFoundError)
async def _not_found(_request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": f"{exc.resource.capitalize()} not found"})


@app.exception_handler(UpstreamError)
async def _upstream_error(_request: Request, exc: UpstreamError):
    return JSONResponse(status_code=502, content={"detail": "Storage temporarily unavailable"})


def get_store(tenant_engine=Depends(get_tenant_engine)) -> SqlWarehouseStore:
    return SqlWarehouseStore(tenant_engine)


def get_rate_book() -> domain.RateBook:
    return _RATE_BOOK


def get_cache() -> Cache:
    return _cache


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


class AvailabilityOut(BaseModel):
    warehouse_id: str
    type: domain.BookingType
    start_date: date
    end_date: date
    available: bool
    requested_quantity: int
    available_quantity: int
    utilization_percent: int
    conflicting_dates: list[date] = Field(default_factory=list)


class DayBookingOut(BaseModel):
    booking_id: str
    type: str
    quantity: int
    start_date: date
    end_date: date | None


class DayAvailabilityOut(BaseModel):
    warehouse_id: str
    day: date
    available_pallets: int
    available_sq_ft: int
    is_blocked: bool
    is_available: bool
    bookings: list[DayBookingOut]


class CalendarEntryIn(BaseModel):
    available_pallet_slots: int | None = Field(default=None, ge=0)
    available_area_sq_ft: int | None = Field(default=None, ge=0)
    is_blocked: bool = False


class CalendarEntryOut(BaseModel):
    warehouse_id: str
    day: date
    available_pallet_slots: int | None
    available_area_sq_ft: int | None
    is_blocked: bool


class PalletDetailIn(BaseModel):
    weight_kg: float = Field(ge=0)
    height_cm: float = Field(ge=0)
    product_type: str = domain.DEFAULT_PRODUCT_TYPE
    size: str = domain.DEFAULT_PALLET_SIZE
    quantity: int = 1


class PalletQuoteIn(BaseModel):
    type: Literal["pallet"]
    warehouse_id: str
    quantity: int = Field(description="Number of pallets")
    start_date: date
    end_date: date
    pallet_details: list[PalletDetailIn] = Field(default_factory=list)
    membership_tier: str | None = None

    def to_domain(self) -> domain.PalletBookingRequest:
        return domain.PalletBookingRequest(
            warehouse_id=self.warehouse_id,
            quantity=self.quantity,
            start_date=self.start_date,
            end_date=self.end_date,
            pallet_details=[
                domain.PalletDetail(
                    weight_kg=d.weight_kg,
                    height_cm=d.height_cm,
                    quantity=d.quantity,
                    product_type=d.product_type,
                    size=d.size,
                )
                for d in self.pallet_details
            ],
            membership_tier=self.membership_tier,
        )


class AreaRentalQuoteIn(BaseModel):
    type: Literal["area-rental"]
    warehouse_id: str
    quantity: int = Field(description="Area in square feet")
    start_date: date
    end_date: date
    membership_tier: str | None = None

    def to_domain(self) -> domain.AreaRentalBookingRequest:
        return domain.AreaRentalBookingRequest(
            warehouse_id=self.warehouse_id,
            quantity=self.quantity,
            start_date=self.start_date,
            end_date=self.end_date,
            membership_tier=self.membership_tier,
        )


class PalletBookingIn(PalletQuoteIn):
    customer_id: str | None = None


class AreaRentalBookingIn(AreaRentalQuoteIn):
    customer_id: str | None = None


QuoteIn = Annotated[Union[PalletQuoteIn, AreaRentalQuoteIn], Body(discriminator="type")]
BookingIn = Annotated[Union[PalletBookingIn, AreaRentalBookingIn], Body(discriminator="type")]


class LineItemOut(BaseModel):
    code: str
    description: str
    unit_price: float
    quantity: int
    days: int
    line_total: float


class QuoteOut(BaseModel):
    warehouse_id: str
    type: domain.BookingType
    currency: str
    duration_days: int
    tax_rate: float
    lines: list[LineItemOut]
    subtotal: float
    tax: float
    total: float


class BookingOut(BaseModel):
    id: str
    status: str
    warehouse_id: str
    customer_id: str | None
    type: str
    pallet_count: int | None
    area_sq_ft: int | None
    start_date: date
    end_date: date | None
    created_at: datetime | None
    quote: dict


class RateOverridesIn(BaseModel):
    base_rates: dict[str, float] | None = Field(default=None, description='Keyed "PRODUCT_TYPE|SIZE", per pallet per day')
    baseline_rate: float | None = Field(default=None, gt=0)
    weight_rate_per_kg: float | None = Field(default=None, ge=0)
    height_rate_per_cm: float | None = Field(default=None, ge=0)
    tax_rate: float | None = Field(default=None, ge=0, le=1)
    area_rate_per_sq_ft_per_year: float | None = Field(default=None, gt=0)
    minimum_area_sq_ft: int | None = Field(default=None, ge=0)
    volume_discounts: dict[int, float] | None = Field(default=None, description="Pallet threshold -> fraction off, replaces the default table")


class RatesOut(BaseModel):
    warehouse_id: str
    company_id: str
    currency: str
    base_rates: dict[str, float]
    baseline_rate: float
    weight_rate_per_kg: float
    height_rate_per_cm: float
    tax_rate: float
    area_rate_per_sq_ft_per_year: float
    minimum_area_sq_ft: int
    volume_discounts: dict[int, float]
    membership_discounts: dict[str, float]


def _quote_out(warehouse_id: str, booking_type: str, b: domain.PriceBreakdown) -> QuoteOut:
    return QuoteOut(warehouse_id=warehouse_id, type=booking_type, **b.presented())


def _booking_out(b: Booking) -> BookingOut:
    return BookingOut(
        id=b.id,
        status=b.status,
        warehouse_id=b.warehouse_id,
        customer_id=b.customer_id,
        type=b.type,
        pallet_count=b.pallet_count,
        area_sq_ft=b.area_sq_ft,
        start_date=b.start_date,
        end_date=b.end_date,
        created_at=b.created_at,
        quote=b.quote_breakdown or {},
    )


def _rates_out(company_id: str, warehouse_id: str, cfg: domain.RateConfig) -> RatesOut:
    return RatesOut(
        warehouse_id=warehouse_id,
        company_id=company_id,
        currency=cfg.currency,
        base_rates={f"{k[0]}|{k[1]}": v for k, v in sorted(cfg.base_rates.items())},
        baseline_rate=cfg.baseline_rate,
        weight_rate_per_kg=cfg.weight_rate_per_kg,
        height_rate_per_cm=cfg.height_rate_per_cm,
        tax_rate=cfg.tax_rate,
        area_rate_per_sq_ft_per_year=cfg.area_rate_per_sq_ft_per_year,
        minimum_area_sq_ft=cfg.minimum_area_sq_ft,
        volume_discounts=dict(sorted(cfg.volume_discounts.items())),
        membership_discounts=dict(cfg.membership_discounts),
    )


@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/warehouses/{warehouse_id}/availability", response_model=AvailabilityOut)
def check_availability(
    warehouse_id: str,
    booking_type: Annotated[domain.BookingType, Query(alias="type")],
    quantity: Annotated[int, Query()],
    start_date: Annotated[date, Query()],
    end_date: Annotated[date, Query()],
    store: SqlWarehouseStore = Depends(get_store),
    _principal=Depends(get_principal_optional),
):
    r = availability.resolve(store, warehouse_id, booking_type, quantity, start_date, end_date)
    return AvailabilityOut(
        warehouse_id=warehouse_id,
        type=booking_type,
        start_date=start_date,
        end_date=end_date,
        available=r.available,
        requested_quantity=r.requested_quantity,
        available_quantity=r.available_quantity,
        utilization_percent=r.utilization_percent,
        conflicting_dates=r.conflicting_dates,
    )


@app.get("/warehouses/{warehouse_id}/availability/calendar", response_model=list[DayAvailabilityOut])
def get_availability_calendar(
    warehouse_id: str,
    start_date: Annotated[date, Query()],
    end_date: Annotated[date, Query()],
    company_id: str = Depends(get_company_id),
    store: SqlWarehouseStore = Depends(get_store),
    cache: Cache = Depends(get_cache),
    _principal=Depends(get_principal_optional),
):
    key = calendar_key(company_id, warehouse_id, start_date.isoformat(), end_date.isoformat())
    cached = cache.get(key)
    if cached is not None:
        return cached

    days = availability.daily_calendar(store, warehouse_id, start_date, end_date)
    out = [
        DayAvailabilityOut(
            warehouse_id=d.warehouse_id,
            day=d.day,
            available_pallets=d.available_pallets,
            available_sq_ft=d.available_sq_ft,
            is_blocked=d.is_blocked,
            is_available=d.is_available,
            bookings=[
                DayBookingOut(
                    booking_id=b.booking_id,
                    type=b.type,
                    quantity=b.quantity,
                    start_date=b.start_date,
                    end_date=b.end_date,
                )
                for b in d.bookings
            ],
        )
        for d in days
    ]
    cache.set(key, [o.model_dump(mode="json") for o in out])
    return out


@app.put("/warehouses/{warehouse_id}/availability/{day}", response_model=CalendarEntryOut)
def upsert_calendar_entry(
    warehouse_id: str,
    day: date,
    payload: CalendarEntryIn,
    company_id: str = Depends(get_company_id),
    tenant_engine=Depends(get_tenant_engine),
    cache: Cache = Depends(get_cache),
    _principal=Depends(require_roles("warehouse_owner", "warehouse_staff", "admin")),
):
    with session(tenant_engine) as s:
        if s.get(Warehouse, warehouse_id) is None:
            raise HTTPException(status_code=404, detail="Warehouse not found")
        entry = (
            s.query(WarehouseAvailability)
            .filter(WarehouseAvailability.warehouse_id == warehouse_id)
            .filter(WarehouseAvailability.day == day)
            .first()
        )
        if entry is None:
            entry = WarehouseAvailability(id=str(uuid4()), warehouse_id=warehouse_id, day=day)
        entry.available_pallet_slots = payload.available_pallet_slots
        entry.available_area_sq_ft = payload.available_area_sq_ft
        entry.is_blocked = payload.is_blocked
        s.add(entry)
        s.commit()
        s.refresh(entry)

    cache.delete_pattern(calendar_key(company_id, warehouse_id))
    return CalendarEntryOut(
        warehouse_id=entry.warehouse_id,
        day=entry.day,
        available_pallet_slots=entry.available_pallet_slots,
        available_area_sq_ft=entry.available_area_sq_ft,
        is_blocked=entry.is_blocked,
    )


@app.post("/quote", response_model=QuoteOut)
def create_quote(
    payload: QuoteIn,
    company_id: str = Depends(get_company_id),
    store: SqlWarehouseStore = Depends(get_store),
    rates: domain.RateBook = Depends(get_rate_book),
    _principal=Depends(get_principal_optional),
):
    breakdown = domain.calculate_for_warehouse(store, payload.to_domain(), rates, company_id)
    return _quote_out(payload.warehouse_id, payload.type, breakdown)


@app.get("/warehouses/{warehouse_id}/rates", response_model=RatesOut)
def get_rates(
    warehouse_id: str,
    company_id: str = Depends(get_company_id),
    rates: domain.RateBook = Depends(get_rate_book),
    _principal=Depends(get_principal_optional),
):
    return _rates_out(company_id, warehouse_id, rates.for_warehouse(company_id, warehouse_id))


@app.put("/warehouses/{warehouse_id}/rates", response_model=RatesOut)
def set_rates(
    warehouse_id: str,
    payload: RateOverridesIn,
    company_id: str = Depends(get_company_id),
    store: SqlWarehouseStore = Depends(get_store),
    rates: domain.RateBook = Depends(get_rate_book),
    _principal=Depends(require_roles("warehouse_owner", "admin")),
):
    if store.capacity(warehouse_id) is None:
        raise NotFoundError("warehouse", warehouse_id)

    base_rates = None
    if payload.base_rates:
        base_rates = {}
        for k, v in payload.base_rates.items():
            parts = k.split("|")
            if len(parts) != 2 or not all(p.strip() for p in parts):
                raise ValidationError("base_rates", f'base rate key {k!r} must look like "PRODUCT_TYPE|SIZE"')
            if v <= 0:
                raise ValidationError("base_rates", f"base rate for {k!r} must be greater than zero")
            base_rates[(parts[0], parts[1])] = v

    if payload.volume_discounts:
        for threshold, pct in payload.volume_discounts.items():
            if threshold <= 0 or not 0 <= pct < 1:
                raise ValidationError("volume_discounts", f"volume discount {threshold}: {pct} needs a positive threshold and a fraction in [0, 1)")

    overrides = domain.RateOverrides(
        base_rates=base_rates,
        baseline_rate=payload.baseline_rate,
        weight_rate_per_kg=payload.weight_rate_per_kg,
        height_rate_per_cm=payload.height_rate_per_cm,
        tax_rate=payload.tax_rate,
        area_rate_per_sq_ft_per_year=payload.area_rate_per_sq_ft_per_year,
        minimum_area_sq_ft=payload.minimum_area_sq_ft,
        volume_discounts=payload.volume_discounts,
    )
    # Persist first; the live book only changes once the file is written.
    updated = rates.with_override(company_id, warehouse_id, overrides)
    try:
        persistence.save_rate_book(updated)
    except OSError as e:
        logger.error("Could not persist rates for warehouse %s (company %s): %s", warehouse_id, company_id, e)
        raise UpstreamError("Could not persist rates") from e
    rates.overrides = updated.overrides
    logger.info("Rates updated for warehouse %s (company %s)", warehouse_id, company_id)
    return _rates_out(company_id, warehouse_id, rates.for_warehouse(company_id, warehouse_id))


@app.post("/bookings", response_model=BookingOut, status_code=201)
async def create_booking(
    payload: BookingIn,
    company_id=Depends(get_company_id),
    tenant_engine=Depends(get_tenant_engine),
    rates: domain.RateBook = Depends(get_rate_book),
    cache: Cache = Depends(get_cache),
    _principal=Depends(require_roles("customer", "warehouse_owner", "warehouse_staff", "admin")),
):
    store = SqlWarehouseStore(tenant_engine)

    # Check-then-act: a concurrent request can pass the same check before either row
    # is written. Capacity guarantees belong to the storage layer, not this handler.
    check = availability.resolve(
        store,
        payload.warehouse_id,
        payload.type,
        payload.quantity,
        payload.start_date,
        payload.end_date,
    )
    if not check.available:
        raise HTTPException(
            status_code=409,
            detail={
                "message": "Insufficient capacity",
                "available_quantity": check.available_quantity,
                "conflicting_dates": [d.isoformat() for d in check.conflicting_dates],
            },
        )

    breakdown = domain.calculate(payload.to_domain(), rates.for_warehouse(company_id, payload.warehouse_id))
    quote = _quote_out(payload.warehouse_id, payload.type, breakdown)

    now = _now()
    booking = Booking(
        id=str(uuid4()),
        company_id=company_id,
        warehouse_id=payload.warehouse_id,
        customer_id=payload.customer_id,
        type=payload.type,
        pallet_count=payload.quantity if payload.type == "pallet" else None,
        area_sq_ft=payload.quantity if payload.type == "area-rental" else None,
        start_date=payload.start_date,
        end_date=payload.end_date,
        status="pending",
        created_at=now,
        updated_at=now,
        quote_total=quote.total,
        quote_breakdown=quote.model_dump(mode="json"),
    )
    store.add_booking(booking)

    cache.delete_pattern(calendar_key(company_id, payload.warehouse_id))
    logger.info("Booking %s created for warehouse %s (%s x%d)", booking.id, booking.warehouse_id, booking.type, payload.quantity)

    await events.publish(
        "booking.created",
        {
            "company_id": company_id,
            "booking_id": booking.id,
            "warehouse_id": booking.warehouse_id,
            "customer_id": booking.customer_id,
            "type": booking.type,
            "start_date": booking.start_date.isoformat(),
            "end_date": booking.end_date.isoformat() if booking.end_date else None,
            "total": quote.total,
            "currency": quote.currency,
        },
    )

    return _booking_out(booking)


@app.get("/bookings/{booking_id}", response_model=BookingOut)
def get_booking(
    booking_id: str,
    tenant_engine=Depends(get_tenant_engine),
    _principal=Depends(require_roles("customer", "warehouse_owner", "warehouse_staff", "admin")),
):
    with session(tenant_engine) as s:
        booking = s.get(Booking, booking_id)
        if booking is None:
            raise HTTPException(status_code=404, detail="Booking not found")
    return _booking_out(booking)
