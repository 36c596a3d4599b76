"""
Prescription validity classifier, prescription records and the medicines
master list.
"""

import sys
from datetime import date
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import delete, func, insert, or_, select, update

from clinic_portal.config import RECENT_PRESCRIPTIONS_LIMIT
from clinic_portal.database import medicines, new_id, patients, prescriptions, users_profile, utcnow
from clinic_portal.models import (
    MEDICINE_TYPES, Medicine, Prescription, PrescriptionMedicine, Profile, parse_date,
)
from clinic_portal.rbac import ClinicScope, resolve_doctor_id

CUSTOM_PLACEHOLDER = "__custom__"


class Validity(Enum):
    NONE = "none"
    ACTIVE = "active"
    UPCOMING = "upcoming"
    EXPIRED = "expired"


VALIDITY_LABELS = {
    Validity.ACTIVE: "Active",
    Validity.UPCOMING: "Upcoming",
    Validity.EXPIRED: "Expired",
    Validity.NONE: "No dates",
}


def classify(start_date: Any, end_date: Any, today: Optional[date] = None) -> Validity:
    """Classify a prescription period relative to *today*.

    The end date is checked before the start date, so an inverted range with
    a past end reads as expired even when the start lies in the future.
    Same-day boundaries count as active.
    """
    today = parse_date(today) or date.today()
    start = parse_date(start_date)
    end = parse_date(end_date)
    if start is None and end is None:
        return Validity.NONE
    if end is not None and end < today:
        return Validity.EXPIRED
    if start is not None and start > today:
        return Validity.UPCOMING
    return Validity.ACTIVE


# ── Queries ──────────────────────────────────────────────────────────

_doctor = users_profile.alias("doctor")


def _prescription_select():
    return (
        select(
            prescriptions,
            patients.c.id.label("patient_ref_id"),
            patients.c.name.label("patient_name"),
            patients.c.contact.label("patient_contact"),
            _doctor.c.id.label("doctor_ref_id"),
            _doctor.c.name.label("doctor_name"),
        )
        .select_from(
            prescriptions
            .outerjoin(patients, patients.c.id == prescriptions.c.patient_id)
            .outerjoin(_doctor, _doctor.c.id == prescriptions.c.doctor_id)
        )
    )


def _scoped(stmt, scope: Optional[ClinicScope]):
    if scope is None:
        return stmt
    if scope.own_doctor_id:
        stmt = stmt.where(prescriptions.c.doctor_id == scope.own_doctor_id)
    if scope.clinic_id:
        stmt = stmt.where(patients.c.clinic_id == scope.clinic_id)
    return stmt


def list_prescriptions(engine, scope: Optional[ClinicScope],
                       search: Optional[str] = None) -> List[Prescription]:
    """Newest first; search matches id, patient name/contact or treatments."""
    stmt = _scoped(_prescription_select(), scope).order_by(prescriptions.c.created_at.desc())
    with engine.connect() as conn:
        rows = conn.execute(stmt).mappings().all()
    items = [Prescription.from_row(r) for r in rows]

    term = (search or "").strip().lower()
    if not term:
        return items
    return [
        rx for rx in items
        if term in rx.id.lower()
        or term in (rx.patient.name if rx.patient else "").lower()
        or term in (rx.patient.contact if rx.patient else "").lower()
        or term in rx.treatments.lower()
    ]


def get_prescription(engine, prescription_id: str, scope: Optional[ClinicScope] = None) -> Prescription:
    """One prescription; LookupError when missing or outside *scope*."""
    stmt = _scoped(_prescription_select().where(prescriptions.c.id == prescription_id), scope)
    with engine.connect() as conn:
        row = conn.execute(stmt).mappings().first()
    if not row:
        raise LookupError(f"Prescription {prescription_id} not found.")
    return Prescription.from_row(row)


def patient_prescriptions(engine, patient_id: str) -> List[Prescription]:
    stmt = (
        _prescription_select()
        .where(prescriptions.c.patient_id == patient_id)
        .order_by(prescriptions.c.created_at.desc())
    )
    with engine.connect() as conn:
        return [Prescription.from_row(r) for r in conn.execute(stmt).mappings().all()]


def active_prescriptions(engine, today: Optional[date] = None,
                         limit: int = RECENT_PRESCRIPTIONS_LIMIT,
                         scope: Optional[ClinicScope] = None) -> List[Prescription]:
    """Prescriptions still running (or undated), newest start first."""
    today = today or date.today()
    stmt = (
        _scoped(_prescription_select(), scope)
        .where(or_(prescriptions.c.end_date >= today, prescriptions.c.end_date.is_(None)))
        .order_by(prescriptions.c.start_date.desc())
        .limit(limit)
    )
    with engine.connect() as conn:
        rows = conn.execute(stmt).mappings().all()
    keep = (Validity.ACTIVE, Validity.UPCOMING, Validity.NONE)
    return [
        rx for rx in (Prescription.from_row(r) for r in rows)
        if classify(rx.start_date, rx.end_date, today) in keep
    ]


# ── Mutations ────────────────────────────────────────────────────────

def clean_medicines(entries: List[Mapping[str, Any]]) -> List[PrescriptionMedicine]:
    """Drop rows without a name and blank out "custom" placeholders."""
    cleaned = []
    for entry in entries or []:
        med = PrescriptionMedicine.from_dict(entry)
        if not med.medicine_name.strip():
            continue
        for attr in ("dose_quantity", "duration", "special_instructions"):
            if getattr(med, attr) == CUSTOM_PLACEHOLDER:
                setattr(med, attr, "")
        cleaned.append(med)
    return cleaned


def create_prescription(engine, profile: Profile, data: Mapping[str, Any]) -> str:
    patient_id = (data.get("patient_id") or "").strip()
    if not patient_id:
        raise ValueError("Please select a patient.")

    meds = clean_medicines(data.get("medicines") or [])
    for med in meds:
        if med.medicine_type:
            ensure_medicine(engine, med.medicine_name, med.medicine_type, med.strength, profile)

    rx_id = new_id()
    values = {
        "id": rx_id,
        "patient_id": patient_id,
        "doctor_id": resolve_doctor_id(profile, data.get("doctor_id")),
        "treatments": data.get("treatments") or "",
        "medicines": [m.to_dict() for m in meds],
        "notes": data.get("notes") or "",
        "start_date": parse_date(data.get("start_date")),
        "end_date": parse_date(data.get("end_date")),
        "created_at": utcnow(),
    }
    with engine.begin() as conn:
        conn.execute(insert(prescriptions).values(**values))
    return rx_id


def delete_prescription(engine, prescription_id: str, scope: Optional[ClinicScope] = None) -> None:
    if scope is not None:
        get_prescription(engine, prescription_id, scope)
    with engine.begin() as conn:
        result = conn.execute(delete(prescriptions).where(prescriptions.c.id == prescription_id))
    if result.rowcount == 0:
        raise LookupError(f"Prescription {prescription_id} not found.")


# ── Medicines master list ────────────────────────────────────────────

def list_medicines(engine, search: Optional[str] = None,
                   medicine_type: Optional[str] = None) -> List[Medicine]:
    stmt = select(medicines).order_by(medicines.c.medicine_name)
    if search:
        stmt = stmt.where(func.lower(medicines.c.medicine_name).contains(search.strip().lower()))
    if medicine_type:
        stmt = stmt.where(medicines.c.medicine_type == medicine_type)
    with engine.connect() as conn:
        return [Medicine.from_row(r) for r in conn.execute(stmt).mappings().all()]


def _medicine_values(data: Mapping[str, Any]) -> Dict[str, str]:
    name = (data.get("medicine_name") or "").strip()
    if not name:
        raise ValueError("Medicine name is required.")
    medicine_type = data.get("medicine_type") or "Tablet"
    if medicine_type not in MEDICINE_TYPES:
        raise ValueError(f"Unknown medicine type '{medicine_type}'.")
    return {
        "medicine_name": name,
        "medicine_type": medicine_type,
        "strength": (data.get("strength") or "").strip(),
        "form": (data.get("form") or "").strip(),
        "default_dosage": (data.get("default_dosage") or "").strip(),
    }


def create_medicine(engine, profile: Profile, data: Mapping[str, Any]) -> str:
    med_id = new_id()
    values = _medicine_values(data)
    values.update(id=med_id, clinic_id=profile.clinic_id, created_by=profile.id, created_at=utcnow())
    with engine.begin() as conn:
        conn.execute(insert(medicines).values(**values))
    return med_id


def update_medicine(engine, medicine_id: str, data: Mapping[str, Any]) -> None:
    with engine.begin() as conn:
        result = conn.execute(
            update(medicines).where(medicines.c.id == medicine_id).values(**_medicine_values(data))
        )
    if result.rowcount == 0:
        raise LookupError(f"Medicine {medicine_id} not found.")


def delete_medicine(engine, medicine_id: str) -> None:
    with engine.begin() as conn:
        conn.execute(delete(medicines).where(medicines.c.id == medicine_id))


def ensure_medicine(engine, name: str, medicine_type: str, strength: str,
                    profile: Profile) -> Optional[str]:
    """Add a medicine typed into a prescription to the master list.

    Names already known (case-insensitive) are left alone; returns the new
    id, or None when nothing was inserted.
    """
    name = (name or "").strip()
    if not name or not medicine_type:
        return None
    with engine.connect() as conn:
        existing = conn.execute(
            select(medicines.c.id).where(func.lower(medicines.c.medicine_name) == name.lower())
        ).first()
    if existing:
        return None
    try:
        return create_medicine(engine, profile, {
            "medicine_name": name, "medicine_type": medicine_type, "strength": strength,
        })
    except ValueError as e:
        print(f"[WARN] Medicine '{name}' not added to master list: {e}", file=sys.stderr)
        return None
