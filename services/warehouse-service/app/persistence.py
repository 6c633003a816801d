import json
import logging
import os
from dataclasses import asdict, fields, replace

from . import domain

RATES_FILE_PATH = os.getenv("RATES_FILE_PATH", "warehouse_rates.json")

logger = logging.getLogger(__name__)

_TABLE_FIELDS = ("base_rates", "volume_discounts")
_SCALAR_FIELDS = [f.name for f in fields(domain.RateOverrides) if f.name not in _TABLE_FIELDS]


def _rates_to_json(base_rates: dict | None) -> dict | None:
    # JSON needs string keys: (product_type, size) -> "PRODUCT|SIZE"
    if base_rates is None:
        return None
    return {f"{k[0]}|{k[1]}": v for k, v in base_rates.items()}


def _rates_from_json(raw: dict | None) -> dict | None:
    if not raw:
        return None
    out = {}
    for k_str, v in raw.items():
        parts = k_str.split("|")
        if len(parts) == 2:
            out[(parts[0].strip().upper(), parts[1].strip().upper())] = float(v)
        else:
            logger.warning("Ignoring malformed base rate key %r", k_str)
    return out


def _volume_from_json(raw: dict | None) -> dict | None:
    if raw is None:
        return None
    out = {}
    for k_str, v in raw.items():
        try:
            out[int(k_str)] = float(v)
        except (TypeError, ValueError):
            logger.warning("Ignoring malformed volume discount %r: %r", k_str, v)
    return out


def _overrides_from_json(raw: dict) -> domain.RateOverrides:
    return domain.RateOverrides(
        base_rates=_rates_from_json(raw.get("base_rates")),
        volume_discounts=_volume_from_json(raw.get("volume_discounts")),
        **{name: raw.get(name) for name in _SCALAR_FIELDS},
    )


def _overrides_to_json(o: domain.RateOverrides) -> dict:
    row = {name: getattr(o, name) for name in _SCALAR_FIELDS if getattr(o, name) is not None}
    if o.base_rates:
        row["base_rates"] = _rates_to_json(o.base_rates)
    if o.volume_discounts is not None:
        row["volume_discounts"] = {str(t): p for t, p in o.volume_discounts.items()}
    return row


def save_rate_book(book: domain.RateBook, path: str | None = None) -> None:
    defaults = asdict(book.defaults)
    defaults["base_rates"] = _rates_to_json(book.defaults.base_rates)
    defaults["volume_discounts"] = {str(t): p for t, p in book.defaults.volume_discounts.items()}

    # company_id -> warehouse_id -> overrides
    companies: dict[str, dict] = {}
    for (company_id, warehouse_id), o in sorted(book.overrides.items()):
        companies.setdefault(company_id, {})[warehouse_id] = _overrides_to_json(o)

    with open(path or RATES_FILE_PATH, "w") as f:
        json.dump({"defaults": defaults, "companies": companies}, f, indent=2)


def load_rate_book(path: str | None = None) -> domain.RateBook:
    """
    Load marketplace rates. A missing or unreadable file yields the built-in
    defaults so the service can start without any configuration.
    """
    path = path or RATES_FILE_PATH
    if not os.path.exists(path):
        return domain.RateBook()

    with open(path, "r") as f:
        try:
            data = json.load(f)
        except json.JSONDecodeError as e:
            logger.error("Rates file %s is not valid JSON, using defaults: %s", path, e)
            return domain.RateBook()

    raw_defaults = data.get("defaults") or {}
    defaults = domain.apply_overrides(domain.RateConfig(), _overrides_from_json(raw_defaults))
    if raw_defaults.get("currency"):
        defaults = replace(defaults, currency=str(raw_defaults["currency"]).strip().upper())
    if isinstance(raw_defaults.get("membership_discounts"), dict):
        tiers = {str(t).strip().lower(): float(p) for t, p in raw_defaults["membership_discounts"].items()}
        defaults = replace(defaults, membership_discounts=tiers)

    overrides = {}
    for company_id, warehouses in (data.get("companies") or {}).items():
        for warehouse_id, raw in (warehouses or {}).items():
            overrides[(str(company_id), str(warehouse_id))] = _overrides_from_json(raw or {})
    return domain.RateBook(defaults=defaults, overrides=overrides)
