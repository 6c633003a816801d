from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Literal, Protocol

from .errors import NotFoundError, ValidationError

BookingType = Literal["pallet", "area-rental"]
BOOKING_TYPES: tuple[str, ...] = ("pallet", "area-rental")

DEFAULT_PRODUCT_TYPE = "GENERAL"
DEFAULT_PALLET_SIZE = "STANDARD"

_DEFAULT_BASE_RATES: dict[tuple[str, str], float] = {
    ("GENERAL", "STANDARD"): 15.00,
    ("GENERAL", "EURO"): 14.00,
    ("GENERAL", "CUSTOM"): 19.00,
    ("FOOD", "STANDARD"): 18.00,
    ("FOOD", "EURO"): 17.00,
    ("COLD_CHAIN", "STANDARD"): 25.00,
    ("HAZMAT", "STANDARD"): 32.00,
}

# pallet count threshold -> fraction off
_DEFAULT_VOLUME_DISCOUNTS: dict[int, float] = {50: 0.10, 100: 0.15, 250: 0.20}

_DEFAULT_MEMBERSHIP_DISCOUNTS: dict[str, float] = {
    "bronze": 0.0,
    "silver": 0.05,
    "gold": 0.10,
    "platinum": 0.15,
}


def _norm(code: str | None, default: str) -> str:
    return (code or "").strip().upper() or default


@dataclass(frozen=True)
class RateConfig:
    """
    Rate table used by the price calculator.

    All rates are in the marketplace currency:
    - base_rates / baseline_rate: per pallet per day, keyed by (product_type, pallet_size)
    - weight_rate_per_kg / height_rate_per_cm: additive per pallet per day
    - area_rate_per_sq_ft_per_year: prorated by days / 365
    - volume_discounts: pallet bookings only; the highest threshold reached applies
    - membership_discounts: by customer tier, taken after the volume discount
    """

    base_rates: dict[tuple[str, str], float] = field(default_factory=lambda: dict(_DEFAULT_BASE_RATES))
    baseline_rate: float = 15.00
    weight_rate_per_kg: float = 0.05
    height_rate_per_cm: float = 0.10
    tax_rate: float = 0.07
    area_rate_per_sq_ft_per_year: float = 20.00
    minimum_area_sq_ft: int = 40_000
    volume_discounts: dict[int, float] = field(default_factory=lambda: dict(_DEFAULT_VOLUME_DISCOUNTS))
    membership_discounts: dict[str, float] = field(default_factory=lambda: dict(_DEFAULT_MEMBERSHIP_DISCOUNTS))
    currency: str = "USD"

    def base_rate(self, product_type: str | None, pallet_size: str | None) -> float:
        key = (_norm(product_type, DEFAULT_PRODUCT_TYPE), _norm(pallet_size, DEFAULT_PALLET_SIZE))
        return float(self.base_rates.get(key, self.baseline_rate))

    def volume_discount(self, pallet_count: int) -> tuple[int, float]:
        reached = [t for t in self.volume_discounts if pallet_count >= t]
        if not reached:
            return 0, 0.0
        threshold = max(reached)
        return threshold, float(self.volume_discounts[threshold])

    def membership_discount(self, tier: str | None) -> float:
        if not tier:
            return 0.0
        key = tier.strip().lower()
        if key not in self.membership_discounts:
            raise ValidationError("membership_tier", f"membership_tier must be one of {', '.join(sorted(self.membership_discounts))}")
        return float(self.membership_discounts[key])


@dataclass(frozen=True)
class RateOverrides:
    """Per-warehouse adjustments merged over the marketplace defaults. None keeps the default."""

    base_rates: dict[tuple[str, str], float] | None = None
    baseline_rate: float | None = None
    weight_rate_per_kg: float | None = None
    height_rate_per_cm: float | None = None
    tax_rate: float | None = None
    area_rate_per_sq_ft_per_year: float | None = None
    minimum_area_sq_ft: int | None = None
    # Replaces the whole table; {} turns volume discounts off for the warehouse.
    volume_discounts: dict[int, float] | None = None


def apply_overrides(config: RateConfig, overrides: RateOverrides | None) -> RateConfig:
    if overrides is None:
        return config
    changes: dict = {}
    if overrides.base_rates:
        merged = dict(config.base_rates)
        for (product_type, size), rate in overrides.base_rates.items():
            merged[(_norm(product_type, DEFAULT_PRODUCT_TYPE), _norm(size, DEFAULT_PALLET_SIZE))] = float(rate)
        changes["base_rates"] = merged
    if overrides.volume_discounts is not None:
        changes["volume_discounts"] = {int(t): float(p) for t, p in overrides.volume_discounts.items()}
    for name in (
        "baseline_rate",
        "weight_rate_per_kg",
        "height_rate_per_cm",
        "tax_rate",
        "area_rate_per_sq_ft_per_year",
        "minimum_area_sq_ft",
    ):
        value = getattr(overrides, name)
        if value is not None:
            changes[name] = value
    return replace(config, **changes)


def _company_key(company_id: str | None) -> str:
    return (company_id or "").strip()


@dataclass
class RateBook:
    """
    Marketplace default rates plus the overrides warehouse owners have configured.

    Warehouse ids are only unique inside a tenant database, so overrides are
    keyed by (company_id, warehouse_id).
    """

    defaults: RateConfig = field(default_factory=RateConfig)
    overrides: dict[tuple[str, str], RateOverrides] = field(default_factory=dict)

    def for_warehouse(self, company_id: str | None, warehouse_id: str | None) -> RateConfig:
        key = (_company_key(company_id), (warehouse_id or "").strip())
        return apply_overrides(self.defaults, self.overrides.get(key))

    def with_override(self, company_id: str, warehouse_id: str, overrides: RateOverrides) -> RateBook:
        """Copy of this book with one warehouse's overrides replaced. The original is untouched."""
        merged = dict(self.overrides)
        merged[(_company_key(company_id), warehouse_id.strip())] = overrides
        return RateBook(defaults=self.defaults, overrides=merged)


@dataclass(frozen=True)
class PalletDetail:
    weight_kg: float
    height_cm: float
    quantity: int
    product_type: str = DEFAULT_PRODUCT_TYPE
    size: str = DEFAULT_PALLET_SIZE


@dataclass(frozen=True)
class PalletBookingRequest:
    warehouse_id: str
    quantity: int
    start_date: date
    end_date: date
    pallet_details: list[PalletDetail] = field(default_factory=list)
    membership_tier: str | None = None
    type: Literal["pallet"] = "pallet"


@dataclass(frozen=True)
class AreaRentalBookingRequest:
    warehouse_id: str
    quantity: int  # square feet
    start_date: date
    end_date: date
    membership_tier: str | None = None
    type: Literal["area-rental"] = "area-rental"


PriceCalculationRequest = PalletBookingRequest | AreaRentalBookingRequest


@dataclass(frozen=True)
class LineItem:
    code: str
    description: str
    unit_price: float
    quantity: int
    days: int
    line_total: float


@dataclass(frozen=True)
class PriceBreakdown:
    """
    Full-precision breakdown. Nothing here is rounded; use `presented()` for the
    two-decimal figures shown to customers.
    """

    currency: str
    duration_days: int
    tax_rate: float
    lines: list[LineItem]
    subtotal: float
    tax: float
    total: float

    def presented(self) -> dict:
        return {
            "currency": self.currency,
            "duration_days": self.duration_days,
            "tax_rate": self.tax_rate,
            "lines": [
                {
                    "code": l.code,
                    "description": l.description,
                    "unit_price": money(l.unit_price),
                    "quantity": l.quantity,
                    "days": l.days,
                    "line_total": money(l.line_total),
                }
                for l in self.lines
            ],
            "subtotal": money(self.subtotal),
            "tax": money(self.tax),
            "total": money(self.total),
        }


def money(amount: float) -> float:
    """Round half-up to cents. Only for presentation."""
    return float(Decimal(str(amount)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


class CapacityReader(Protocol):
    def capacity(self, warehouse_id: str): ...


def duration_days(start_date: date, end_date: date) -> int:
    days = (end_date - start_date).days
    if days <= 0:
        raise ValidationError("end_date", "end_date must be after start_date (minimum duration is one day)")
    return days


def _require_quantity(quantity: int | None, booking_type: str) -> int:
    if quantity is None:
        raise ValidationError("quantity", f"quantity is required for {booking_type} bookings")
    if int(quantity) <= 0:
        raise ValidationError("quantity", "quantity must be greater than zero")
    return int(quantity)


def _pallet_lines(req: PalletBookingRequest, days: int, config: RateConfig) -> list[LineItem]:
    quantity = _require_quantity(req.quantity, "pallet")

    if not req.pallet_details:
        rate = config.base_rate(DEFAULT_PRODUCT_TYPE, DEFAULT_PALLET_SIZE)
        return [
            LineItem(
                code=f"pallet.{DEFAULT_PRODUCT_TYPE}.{DEFAULT_PALLET_SIZE}",
                description=f"Pallet storage x{quantity} ({days} day{'s' if days != 1 else ''})",
                unit_price=rate,
                quantity=quantity,
                days=days,
                line_total=rate * quantity * days,
            )
        ]

    lines: list[LineItem] = []
    for i, d in enumerate(req.pallet_details):
        if d.quantity is None or int(d.quantity) <= 0:
            raise ValidationError(f"pallet_details[{i}].quantity", "quantity must be greater than zero")
        if d.weight_kg is None or d.weight_kg < 0:
            raise ValidationError(f"pallet_details[{i}].weight_kg", "weight_kg must be zero or positive")
        if d.height_cm is None or d.height_cm < 0:
            raise ValidationError(f"pallet_details[{i}].height_cm", "height_cm must be zero or positive")

        product_type = _norm(d.product_type, DEFAULT_PRODUCT_TYPE)
        size = _norm(d.size, DEFAULT_PALLET_SIZE)
        unit = (
            config.base_rate(product_type, size)
            + float(d.weight_kg) * config.weight_rate_per_kg
            + float(d.height_cm) * config.height_rate_per_cm
        )
        lines.append(
            LineItem(
                code=f"pallet.{product_type}.{size}",
                description=f"{product_type.title()} {size.lower()} pallet, {d.weight_kg:g}kg / {d.height_cm:g}cm x{d.quantity}",
                unit_price=unit,
                quantity=int(d.quantity),
                days=days,
                line_total=unit * int(d.quantity) * days,
            )
        )

    detailed = sum(l.quantity for l in lines)
    if detailed != quantity:
        raise ValidationError("pallet_details", f"pallet_details quantities add up to {detailed}, expected {quantity}")
    return lines


def _area_lines(req: AreaRentalBookingRequest, days: int, config: RateConfig) -> list[LineItem]:
    sq_ft = _require_quantity(req.quantity, "area-rental")
    if sq_ft < config.minimum_area_sq_ft:
        raise ValidationError("quantity", f"Minimum area rental is {config.minimum_area_sq_ft} sq ft")
    rate = config.area_rate_per_sq_ft_per_year
    return [
        LineItem(
            code="area_rental",
            description=f"Area rental {sq_ft} sq ft ({days} day{'s' if days != 1 else ''})",
            unit_price=rate,
            quantity=sq_ft,
            days=days,
            line_total=sq_ft * rate * (days / 365),
        )
    ]


def _discount_lines(req: PriceCalculationRequest, days: int, charges: float, config: RateConfig) -> list[LineItem]:
    """
    Negative lines so the subtotal is already net of discounts. Volume applies
    to pallet bookings only; membership is taken on what remains after it.
    """
    lines: list[LineItem] = []
    remaining = charges

    if isinstance(req, PalletBookingRequest):
        threshold, pct = config.volume_discount(int(req.quantity))
        if pct > 0:
            amount = charges * pct
            remaining -= amount
            lines.append(
                LineItem(
                    code="discount.volume",
                    description=f"Volume discount {pct * 100:g}% ({threshold}+ pallets)",
                    unit_price=-amount,
                    quantity=1,
                    days=days,
                    line_total=-amount,
                )
            )

    pct = config.membership_discount(req.membership_tier)
    if pct > 0:
        amount = remaining * pct
        lines.append(
            LineItem(
                code="discount.membership",
                description=f"{req.membership_tier.strip().title()} member discount {pct * 100:g}%",
                unit_price=-amount,
                quantity=1,
                days=days,
                line_total=-amount,
            )
        )
    return lines


def calculate(req: PriceCalculationRequest, config: RateConfig) -> PriceBreakdown:
    if not (req.warehouse_id or "").strip():
        raise ValidationError("warehouse_id", "warehouse_id is required")
    if req.start_date is None:
        raise ValidationError("start_date", "start_date is required")
    if req.end_date is None:
        raise ValidationError("end_date", "end_date is required")
    days = duration_days(req.start_date, req.end_date)

    if isinstance(req, PalletBookingRequest):
        lines = _pallet_lines(req, days, config)
    elif isinstance(req, AreaRentalBookingRequest):
        lines = _area_lines(req, days, config)
    else:
        raise ValidationError("type", f"type must be one of {', '.join(BOOKING_TYPES)}")
    lines += _discount_lines(req, days, sum(l.line_total for l in lines), config)

    subtotal = sum(l.line_total for l in lines)
    tax = subtotal * config.tax_rate
    return PriceBreakdown(
        currency=config.currency,
        duration_days=days,
        tax_rate=config.tax_rate,
        lines=lines,
        subtotal=subtotal,
        tax=tax,
        total=subtotal + tax,
    )


def calculate_for_warehouse(
    store: CapacityReader,
    req: PriceCalculationRequest,
    rates: RateBook,
    company_id: str,
) -> PriceBreakdown:
    if store.capacity(req.warehouse_id) is None:
        raise NotFoundError("warehouse", req.warehouse_id)
    return calculate(req, rates.for_warehouse(company_id, req.warehouse_id))
