"""
Tests for the services catalogue and clinic price overrides.
"""

from decimal import Decimal

import pytest

from clinic_portal.catalog import (
    PriceOverrideFeed, clear_clinic_price, create_service, delete_service, effective_prices,
    find_by_name, group_by_category, list_clinic_prices, list_services, price_lookup,
    priced_services, save_clinic_prices, service_names, toggle_service, update_service,
)
from clinic_portal.models import ClinicServicePrice, DentalService


def _service(service_id, name, price, category="General"):
    return DentalService(id=service_id, service_name=name, category=category,
                         default_price=Decimal(str(price)))


def _override(row_id, service_id, price, clinic_id="c1"):
    return ClinicServicePrice(id=row_id, clinic_id=clinic_id, service_id=service_id,
                              price=Decimal(str(price)))


# ── Tests: pricing helpers ───────────────────────────────────────────

def test_effective_prices_prefers_clinic_override():
    services = [_service("s1", "Scaling", 3000), _service("s2", "X-Ray", 750)]
    priced = effective_prices(services, [_override("o1", "s1", 2500)])
    assert [p.effective_price for p in priced] == [Decimal("2500"), Decimal("750")]


def test_group_find_and_lookup():
    priced = effective_prices([
        _service("s1", "Scaling", 3000, "Preventive"),
        _service("s2", "Root Canal", 15000, "Endodontics"),
        _service("s3", "Fluoride", 1500, "Preventive"),
    ], [])
    grouped = group_by_category(priced)
    assert list(grouped) == ["Preventive", "Endodontics"]
    assert [p.service_name for p in grouped["Preventive"]] == ["Scaling", "Fluoride"]

    assert find_by_name(priced, " root canal ").service.id == "s2"
    assert find_by_name(priced, "Whitening") is None
    assert price_lookup(priced)["scaling"] == Decimal("3000")


def test_service_names_sorted_case_insensitively():
    names = service_names([_service("a", "scaling", 1), _service("b", "Bridge", 1), _service("c", "Crown", 1)])
    assert names == ["Bridge", "Crown", "scaling"]


# ── Tests: services table ────────────────────────────────────────────

def test_service_crud(engine):
    sid = create_service(engine, {"service_name": "Scaling", "category": "Preventive", "default_price": 3000})
    assert [s.service_name for s in list_services(engine)] == ["Scaling"]

    update_service(engine, sid, {"service_name": "Scaling & Polish", "category": "Preventive",
                                 "default_price": "3500"})
    assert list_services(engine)[0].default_price == Decimal("3500")

    assert toggle_service(engine, sid) is False
    assert list_services(engine) == []
    assert len(list_services(engine, active_only=False)) == 1
    assert toggle_service(engine, sid) is True

    delete_service(engine, sid)
    assert list_services(engine, active_only=False) == []


def test_service_validation(engine):
    with pytest.raises(ValueError):
        create_service(engine, {"service_name": "  "})
    with pytest.raises(ValueError):
        create_service(engine, {"service_name": "Odd", "default_price": -1})
    with pytest.raises(LookupError):
        toggle_service(engine, "nope")
    with pytest.raises(LookupError):
        update_service(engine, "nope", {"service_name": "X"})


# ── Tests: clinic prices ─────────────────────────────────────────────

def test_save_clinic_prices_upserts_and_skips_blanks(seeded):
    s1 = create_service(seeded, {"service_name": "Scaling", "default_price": 3000})
    s2 = create_service(seeded, {"service_name": "X-Ray", "default_price": 750})
    s3 = create_service(seeded, {"service_name": "Crown", "default_price": 20000})

    written = save_clinic_prices(seeded, "c1", {s1: "2500", s2: "", s3: "abc"})
    assert written == 1
    written = save_clinic_prices(seeded, "c1", {s1: 2400, s2: "700"})
    assert written == 2

    rows = {p.service_id: p.price for p in list_clinic_prices(seeded, "c1")}
    assert rows == {s1: Decimal("2400"), s2: Decimal("700")}
    assert list_clinic_prices(seeded, "c2") == []

    prices = {p.service_name: p.effective_price for p in priced_services(seeded, "c1")}
    assert prices == {"Scaling": Decimal("2400"), "X-Ray": Decimal("700"), "Crown": Decimal("20000")}

    defaults = {p.service_name: p.effective_price for p in priced_services(seeded, None)}
    assert defaults["Scaling"] == Decimal("3000")

    clear_clinic_price(seeded, "c1", s1)
    assert [p.service_id for p in list_clinic_prices(seeded, "c1")] == [s2]


def test_delete_service_removes_its_overrides(seeded):
    sid = create_service(seeded, {"service_name": "Scaling", "default_price": 3000})
    save_clinic_prices(seeded, "c1", {sid: 2500})
    delete_service(seeded, sid)
    assert list_clinic_prices(seeded, "c1") == []


# ── Tests: live feed ─────────────────────────────────────────────────

def _row(row_id, service_id, price, clinic_id="c1"):
    return {"id": row_id, "clinic_id": clinic_id, "service_id": service_id, "price": price}


def test_feed_insert_replaces_same_service():
    feed = PriceOverrideFeed("c1", [_override("o1", "s1", 2500)])
    feed.apply({"eventType": "INSERT", "new": _row("o2", "s1", 2300)})
    assert [(r.id, r.price) for r in feed.rows] == [("o2", Decimal("2300"))]


def test_feed_update_and_delete():
    feed = PriceOverrideFeed("c1", [_override("o1", "s1", 2500), _override("o2", "s2", 700)])
    feed.apply({"eventType": "UPDATE", "new": _row("o1", "s1", 2600)})
    assert feed.price_for(_service("s1", "Scaling", 3000)) == Decimal("2600")

    feed.apply({"eventType": "DELETE", "old": {"id": "o1"}})
    assert feed.price_for(_service("s1", "Scaling", 3000)) == Decimal("3000")
    assert [r.id for r in feed.rows] == ["o2"]


def test_feed_update_for_unseen_row_replaces_service_override():
    feed = PriceOverrideFeed("c1", [_override("o1", "s1", 2500)])
    feed.apply({"eventType": "UPDATE", "new": _row("o7", "s1", 2800)})
    assert [(r.id, r.price) for r in feed.rows] == [("o7", Decimal("2800"))]

    feed.apply({"eventType": "UPDATE", "new": _row("o8", "s2", 650)})
    assert feed.price_for(_service("s2", "Polishing", 900)) == Decimal("650")


def test_feed_ignores_other_clinics_and_empty_events():
    feed = PriceOverrideFeed("c1")
    feed.apply({"eventType": "INSERT", "new": _row("o9", "s1", 1, clinic_id="c2")})
    feed.apply({"eventType": "INSERT", "new": {}})
    feed.apply({"eventType": "TRUNCATE"})
    assert feed.rows == []


def test_feed_events_applied_in_order():
    feed = PriceOverrideFeed("c1")
    for event in (
        {"eventType": "INSERT", "new": _row("o1", "s1", 2500)},
        {"eventType": "UPDATE", "new": _row("o1", "s1", 2700)},
        {"eventType": "INSERT", "new": _row("o2", "s2", 900)},
        {"eventType": "DELETE", "old": {"id": "o2"}},
    ):
        feed.apply(event)
    assert [(r.id, r.price) for r in feed.rows] == [("o1", Decimal("2700"))]
