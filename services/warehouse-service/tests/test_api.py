import sys
from datetime import date
from pathlib import Path

import jwt
import pytest
from fastapi import Depends
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from app import domain, events, persistence  # noqa: E402
from app import main as service  # noqa: E402
from app.cache import Cache, MemoryCache  # noqa: E402
from app.db import session  # noqa: E402
from app.main import app, get_cache, get_rate_book  # noqa: E402
from app.models import Base, Booking, Warehouse  # noqa: E402
from app.tenancy import get_company_id, get_tenant_engine  # noqa: E402

COMPANY = "company-1"
OTHER_COMPANY = "globex"


def _headers(role: str | None = None, company_id: str | None = COMPANY, tenant: str = COMPANY) -> dict[str, str]:
    h = {"X-Company-Id": tenant}
    if role:
        token = jwt.encode({"role": role, "company_id": company_id}, "dev-secret-change-me", algorithm="HS256")
        h["Authorization"] = f"Bearer {token}"
    return h


@pytest.fixture()
def published(monkeypatch):
    sent = []

    async def _record(routing_key, payload):
        sent.append((routing_key, payload))

    monkeypatch.setattr(events, "publish", _record)
    return sent


def _engine():
    eng = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(eng)
    return eng


@pytest.fixture()
def client(monkeypatch, tmp_path):
    eng = _engine()
    other = _engine()
    with session(other) as s:
        s.add(Warehouse(id="wh-1", company_id=OTHER_COMPANY, name="Globex Yard", total_pallet_slots=50, available_pallet_slots=50, total_area_sq_ft=0, available_area_sq_ft=0))
        s.commit()
    engines = {COMPANY: eng, OTHER_COMPANY: other}

    def _tenant_engine(company_id: str = Depends(get_company_id)):
        return engines[company_id]

    with session(eng) as s:
        s.add(Warehouse(id="wh-1", company_id=COMPANY, name="North Dock", total_pallet_slots=1000, available_pallet_slots=1000, total_area_sq_ft=60_000, available_area_sq_ft=60_000))
        s.add(
            Booking(
                id="existing",
                company_id=COMPANY,
                warehouse_id="wh-1",
                type="pallet",
                pallet_count=200,
                start_date=date(2024, 7, 1),
                end_date=date(2024, 7, 31),
                status="confirmed",
            )
        )
        s.commit()

    monkeypatch.setattr(persistence, "RATES_FILE_PATH", str(tmp_path / "rates.json"))
    book = domain.RateBook()
    mem = Cache(MemoryCache())
    app.dependency_overrides[get_tenant_engine] = _tenant_engine
    app.dependency_overrides[get_rate_book] = lambda: book
    app.dependency_overrides[get_cache] = lambda: mem
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_availability_endpoint_reports_capacity(client):
    params = {"type": "pallet", "quantity": 700, "start_date": "2024-07-10", "end_date": "2024-07-20"}
    r = client.get("/warehouses/wh-1/availability", params=params, headers=_headers())
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["available"] is True
    assert body["available_quantity"] == 800
    assert body["utilization_percent"] == 20

    r = client.get("/warehouses/wh-1/availability", params={**params, "quantity": 900}, headers=_headers())
    assert r.json()["available"] is False


def test_availability_validation_and_not_found(client):
    r = client.get(
        "/warehouses/wh-1/availability",
        params={"type": "pallet", "quantity": 5, "start_date": "2024-07-20", "end_date": "2024-07-10"},
        headers=_headers(),
    )
    assert r.status_code == 400
    assert r.json()["detail"]["field"] == "end_date"

    r = client.get(
        "/warehouses/nope/availability",
        params={"type": "pallet", "quantity": 5, "start_date": "2024-07-10", "end_date": "2024-07-20"},
        headers=_headers(),
    )
    assert r.status_code == 404


def test_blocking_a_day_updates_availability_and_calendar(client):
    r = client.get(
        "/warehouses/wh-1/availability/calendar",
        params={"start_date": "2024-07-14", "end_date": "2024-07-16"},
        headers=_headers(),
    )
    assert r.status_code == 200, r.text
    assert [d["is_available"] for d in r.json()] == [True, True, True]

    r = client.put("/warehouses/wh-1/availability/2024-07-15", json={"is_blocked": True}, headers=_headers("customer"))
    assert r.status_code == 403

    r = client.put("/warehouses/wh-1/availability/2024-07-15", json={"is_blocked": True}, headers=_headers("warehouse_staff", company_id="other"))
    assert r.status_code == 403

    r = client.put("/warehouses/wh-1/availability/2024-07-15", json={"is_blocked": True}, headers=_headers("warehouse_staff"))
    assert r.status_code == 200, r.text
    assert r.json()["day"] == "2024-07-15"

    # cached calendar is invalidated by the write
    r = client.get(
        "/warehouses/wh-1/availability/calendar",
        params={"start_date": "2024-07-14", "end_date": "2024-07-16"},
        headers=_headers(),
    )
    assert [d["is_blocked"] for d in r.json()] == [False, True, False]

    r = client.get(
        "/warehouses/wh-1/availability",
        params={"type": "pallet", "quantity": 1, "start_date": "2024-07-10", "end_date": "2024-07-20"},
        headers=_headers(),
    )
    assert r.json()["available"] is False
    assert r.json()["conflicting_dates"] == ["2024-07-15"]


def test_quote_endpoint_matches_rate_table(client):
    r = client.post(
        "/quote",
        json={
            "type": "pallet",
            "warehouse_id": "wh-1",
            "quantity": 10,
            "start_date": "2024-07-01",
            "end_date": "2024-07-06",
            "pallet_details": [{"weight_kg": 50, "height_cm": 100, "product_type": "GENERAL", "size": "STANDARD", "quantity": 10}],
        },
        headers=_headers(),
    )
    assert r.status_code == 200, r.text
    q = r.json()
    assert q["subtotal"] == 1375.0
    assert q["tax"] == 96.25
    assert q["total"] == 1471.25
    assert q["lines"][0]["unit_price"] == 27.5


def test_quote_area_rental_minimum(client):
    body = {"type": "area-rental", "warehouse_id": "wh-1", "quantity": 39_999, "start_date": "2025-01-01", "end_date": "2026-01-01"}
    r = client.post("/quote", json=body, headers=_headers())
    assert r.status_code == 400
    assert r.json()["detail"]["field"] == "quantity"

    r = client.post("/quote", json={**body, "quantity": 40_000}, headers=_headers())
    assert r.status_code == 200, r.text
    assert r.json()["subtotal"] == 800_000.0


def test_quote_rejects_unknown_type_and_warehouse(client):
    r = client.post(
        "/quote",
        json={"type": "container", "warehouse_id": "wh-1", "quantity": 1, "start_date": "2024-07-01", "end_date": "2024-07-02"},
        headers=_headers(),
    )
    assert r.status_code == 422

    r = client.post(
        "/quote",
        json={"type": "pallet", "warehouse_id": "nope", "quantity": 1, "start_date": "2024-07-01", "end_date": "2024-07-02"},
        headers=_headers(),
    )
    assert r.status_code == 404


def test_warehouse_rates_can_be_overridden(client):
    r = client.put("/warehouses/wh-1/rates", json={"base_rates": {"GENERAL|STANDARD": 20}, "tax_rate": 0}, headers=_headers("warehouse_owner"))
    assert r.status_code == 200, r.text
    assert r.json()["base_rates"]["GENERAL|STANDARD"] == 20.0

    r = client.post(
        "/quote",
        json={"type": "pallet", "warehouse_id": "wh-1", "quantity": 2, "start_date": "2024-07-01", "end_date": "2024-07-04"},
        headers=_headers(),
    )
    assert r.json()["total"] == 120.0

    r = client.put("/warehouses/wh-1/rates", json={"base_rates": {"GENERAL": 20}}, headers=_headers("admin"))
    assert r.status_code == 400
    assert r.json()["detail"]["field"] == "base_rates"


def test_booking_is_created_when_capacity_allows(client, published):
    body = {"type": "pallet", "warehouse_id": "wh-1", "quantity": 700, "start_date": "2024-07-10", "end_date": "2024-07-20", "customer_id": "cust-1"}

    r = client.post("/bookings", json=body, headers=_headers())
    assert r.status_code == 401

    r = client.post("/bookings", json=body, headers=_headers("customer"))
    assert r.status_code == 201, r.text
    booking = r.json()
    assert booking["status"] == "pending"
    assert booking["pallet_count"] == 700
    # 700 pallets reach the 250+ volume tier (20% off)
    assert booking["quote"]["total"] == pytest.approx(15.0 * 700 * 10 * 0.8 * 1.07)
    assert published[0][0] == "booking.created"
    assert published[0][1]["booking_id"] == booking["id"]

    r = client.get(f"/bookings/{booking['id']}", headers=_headers("customer"))
    assert r.status_code == 200
    assert r.json()["id"] == booking["id"]

    # the pending booking now holds capacity
    r = client.post("/bookings", json={**body, "quantity": 200}, headers=_headers("customer"))
    assert r.status_code == 409
    assert r.json()["detail"]["available_quantity"] == 100


def test_get_missing_booking(client):
    r = client.get("/bookings/nope", headers=_headers("admin"))
    assert r.status_code == 404


def test_rate_overrides_stay_with_their_company(client):
    r = client.put(
        "/warehouses/wh-1/rates",
        json={"base_rates": {"GENERAL|STANDARD": 999}},
        headers=_headers("warehouse_owner"),
    )
    assert r.status_code == 200, r.text
    assert r.json()["company_id"] == COMPANY

    quote = {"type": "pallet", "warehouse_id": "wh-1", "quantity": 1, "start_date": "2024-07-01", "end_date": "2024-07-02"}
    r = client.post("/quote", json=quote, headers=_headers(tenant=OTHER_COMPANY))
    assert r.status_code == 200, r.text
    assert r.json()["total"] == 16.05

    r = client.get("/warehouses/wh-1/rates", headers=_headers(tenant=OTHER_COMPANY))
    assert r.json()["base_rates"]["GENERAL|STANDARD"] == 15.0

    r = client.post("/quote", json=quote, headers=_headers())
    assert r.json()["subtotal"] == 999.0


def test_owner_cannot_set_rates_for_another_company(client):
    r = client.put(
        "/warehouses/wh-1/rates",
        json={"tax_rate": 0.5},
        headers=_headers("warehouse_owner", company_id=COMPANY, tenant=OTHER_COMPANY),
    )
    assert r.status_code == 403


def test_failed_rate_save_leaves_rates_unchanged(client, monkeypatch):
    def _disk_full(book, path=None):
        raise OSError("disk full")

    monkeypatch.setattr(persistence, "save_rate_book", _disk_full)

    r = client.put("/warehouses/wh-1/rates", json={"tax_rate": 0.5}, headers=_headers("warehouse_owner"))
    assert r.status_code == 502

    r = client.get("/warehouses/wh-1/rates", headers=_headers())
    assert r.json()["tax_rate"] == 0.07

    r = client.post(
        "/quote",
        json={"type": "pallet", "warehouse_id": "wh-1", "quantity": 1, "start_date": "2024-07-01", "end_date": "2024-07-02"},
        headers=_headers(),
    )
    assert r.json()["tax"] == 1.05


def test_quote_shows_discount_lines(client):
    r = client.post(
        "/quote",
        json={
            "type": "pallet",
            "warehouse_id": "wh-1",
            "quantity": 10,
            "start_date": "2024-07-01",
            "end_date": "2024-07-02",
            "membership_tier": "silver",
        },
        headers=_headers(),
    )
    assert r.status_code == 200, r.text
    q = r.json()
    assert [l["code"] for l in q["lines"]] == ["pallet.GENERAL.STANDARD", "discount.membership"]
    assert q["lines"][1]["line_total"] == -7.5
    assert q["subtotal"] == 142.5

    r = client.post(
        "/quote",
        json={"type": "pallet", "warehouse_id": "wh-1", "quantity": 1, "start_date": "2024-07-01", "end_date": "2024-07-02", "membership_tier": "diamond"},
        headers=_headers(),
    )
    assert r.status_code == 400
    assert r.json()["detail"]["field"] == "membership_tier"


def test_booking_insert_failure_maps_to_502(client, published, monkeypatch):
    # reuse the seeded booking's id so the insert violates the primary key
    monkeypatch.setattr(service, "uuid4", lambda: "existing")

    body = {"type": "pallet", "warehouse_id": "wh-1", "quantity": 10, "start_date": "2024-08-01", "end_date": "2024-08-05"}
    r = client.post("/bookings", json=body, headers=_headers("customer"))
    assert r.status_code == 502
    assert published == []


def test_malformed_company_header_is_rejected(client):
    r = client.post(
        "/quote",
        json={"type": "pallet", "warehouse_id": "wh-1", "quantity": 1, "start_date": "2024-07-01", "end_date": "2024-07-02"},
        headers={"X-Company-Id": "company-*"},
    )
    assert r.status_code == 400


def test_overlong_calendar_range_is_rejected(client):
    r = client.get(
        "/warehouses/wh-1/availability/calendar",
        params={"start_date": "0001-01-01", "end_date": "9999-12-31"},
        headers=_headers(),
    )
    assert r.status_code == 400
    assert r.json()["detail"]["field"] == "end_date"
