"""
Dental services catalogue: services, clinic price overrides and the live
override feed.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional

from sqlalchemy import delete, insert, select, update

from clinic_portal.database import clinic_service_prices, dental_services, new_id, utcnow
from clinic_portal.models import ClinicServicePrice, DentalService, to_decimal


@dataclass
class PricedService:
    """A service together with the price a clinic actually charges."""
    service: DentalService
    effective_price: Decimal

    @property
    def service_name(self) -> str:
        return self.service.service_name

    @property
    def category(self) -> str:
        return self.service.category

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.service.id,
            "service_name": self.service.service_name,
            "category": self.service.category,
            "description": self.service.description,
            "default_price": float(self.service.default_price),
            "effective_price": float(self.effective_price),
        }


# ── Pricing ──────────────────────────────────────────────────────────

def effective_prices(services: Iterable[DentalService],
                     overrides: Iterable[ClinicServicePrice]) -> List[PricedService]:
    by_service = {}
    for row in overrides:
        by_service.setdefault(row.service_id, row.price)
    return [
        PricedService(svc, by_service.get(svc.id, svc.default_price))
        for svc in services
    ]


def group_by_category(priced: Iterable[PricedService]) -> Dict[str, List[PricedService]]:
    grouped: Dict[str, List[PricedService]] = {}
    for item in priced:
        grouped.setdefault(item.category, []).append(item)
    return grouped


def find_by_name(priced: Iterable[PricedService], name: str) -> Optional[PricedService]:
    wanted = (name or "").strip().lower()
    for item in priced:
        if item.service_name.lower() == wanted:
            return item
    return None


def service_names(services: Iterable[DentalService]) -> List[str]:
    return sorted((s.service_name for s in services), key=str.casefold)


def price_lookup(priced: Iterable[PricedService]) -> Dict[str, Decimal]:
    """Lower-cased service name -> effective price."""
    return {item.service_name.lower(): item.effective_price for item in priced}


# ── Services ─────────────────────────────────────────────────────────

def list_services(engine, active_only: bool = True) -> List[DentalService]:
    stmt = select(dental_services).order_by(dental_services.c.category, dental_services.c.sort_order)
    if active_only:
        stmt = stmt.where(dental_services.c.is_active.is_(True))
    with engine.connect() as conn:
        return [DentalService.from_row(r) for r in conn.execute(stmt).mappings().all()]


def priced_services(engine, clinic_id: Optional[str]) -> List[PricedService]:
    """Active services at the price *clinic_id* charges (defaults without a clinic)."""
    overrides = list_clinic_prices(engine, clinic_id) if clinic_id else []
    return effective_prices(list_services(engine), overrides)


def _service_values(data: Mapping[str, Any]) -> Dict[str, Any]:
    name = (data.get("service_name") or "").strip()
    if not name:
        raise ValueError("Service name is required.")
    price = to_decimal(data.get("default_price"))
    if price < 0:
        raise ValueError("Price cannot be negative.")
    return {
        "service_name": name,
        "category": data.get("category") or "General",
        "default_price": price,
        "description": (data.get("description") or "").strip(),
    }


def create_service(engine, data: Mapping[str, Any]) -> str:
    service_id = new_id()
    with engine.begin() as conn:
        conn.execute(insert(dental_services).values(
            id=service_id, is_active=True, created_at=utcnow(), **_service_values(data),
        ))
    return service_id


def update_service(engine, service_id: str, data: Mapping[str, Any]) -> None:
    with engine.begin() as conn:
        result = conn.execute(
            update(dental_services)
            .where(dental_services.c.id == service_id)
            .values(**_service_values(data))
        )
    if result.rowcount == 0:
        raise LookupError(f"Service {service_id} not found.")


def toggle_service(engine, service_id: str) -> bool:
    """Flip the active flag; returns the new value."""
    with engine.begin() as conn:
        current = conn.execute(
            select(dental_services.c.is_active).where(dental_services.c.id == service_id)
        ).scalar()
        if current is None:
            raise LookupError(f"Service {service_id} not found.")
        conn.execute(
            update(dental_services)
            .where(dental_services.c.id == service_id)
            .values(is_active=not current)
        )
    return not current


def delete_service(engine, service_id: str) -> None:
    with engine.begin() as conn:
        conn.execute(delete(clinic_service_prices).where(clinic_service_prices.c.service_id == service_id))
        conn.execute(delete(dental_services).where(dental_services.c.id == service_id))


# ── Clinic prices ────────────────────────────────────────────────────

def list_clinic_prices(engine, clinic_id: str) -> List[ClinicServicePrice]:
    stmt = select(clinic_service_prices).where(clinic_service_prices.c.clinic_id == clinic_id)
    with engine.connect() as conn:
        return [ClinicServicePrice.from_row(r) for r in conn.execute(stmt).mappings().all()]


def save_clinic_prices(engine, clinic_id: str, edits: Mapping[str, Any]) -> int:
    """Upsert price overrides keyed by service id.

    Blank and non-numeric edits are skipped. Returns the number of rows
    written.
    """
    prices = {}
    for service_id, raw in edits.items():
        if raw is None or str(raw).strip() == "":
            continue
        try:
            prices[service_id] = to_decimal(str(raw).strip())
        except ValueError:
            continue

    with engine.begin() as conn:
        for service_id, price in prices.items():
            existing = conn.execute(
                select(clinic_service_prices.c.id).where(
                    clinic_service_prices.c.clinic_id == clinic_id,
                    clinic_service_prices.c.service_id == service_id,
                )
            ).scalar()
            if existing:
                conn.execute(
                    update(clinic_service_prices)
                    .where(clinic_service_prices.c.id == existing)
                    .values(price=price)
                )
            else:
                conn.execute(insert(clinic_service_prices).values(
                    id=new_id(), clinic_id=clinic_id, service_id=service_id,
                    price=price, created_at=utcnow(),
                ))
    return len(prices)


def clear_clinic_price(engine, clinic_id: str, service_id: str) -> None:
    with engine.begin() as conn:
        conn.execute(
            delete(clinic_service_prices).where(
                clinic_service_prices.c.clinic_id == clinic_id,
                clinic_service_prices.c.service_id == service_id,
            )
        )


# ── Live override feed ───────────────────────────────────────────────

class PriceOverrideFeed:
    """In-memory copy of one clinic's price overrides, kept current by
    change events (``{"eventType", "new", "old"}``) applied in delivery order.
    """

    def __init__(self, clinic_id: str, initial: Iterable[ClinicServicePrice] = ()):
        self.clinic_id = clinic_id
        self.rows: List[ClinicServicePrice] = list(initial)

    def apply(self, event: Mapping[str, Any]) -> None:
        kind = event.get("eventType")
        new_row = event.get("new") or None
        old_row = event.get("old") or None

        if kind in ("INSERT", "UPDATE") and new_row:
            row = ClinicServicePrice.from_row(new_row)
            if row.clinic_id != self.clinic_id:
                return
            # one override per service; an update for an unseen id still lands
            self.rows = [p for p in self.rows if p.id != row.id and p.service_id != row.service_id] + [row]
        elif kind == "DELETE" and old_row:
            old_id = str(old_row.get("id"))
            self.rows = [p for p in self.rows if p.id != old_id]

    def price_for(self, service: DentalService) -> Decimal:
        for row in self.rows:
            if row.service_id == service.id:
                return row.price
        return service.default_price
