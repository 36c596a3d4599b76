"""
Domain dataclasses used across the application.

Rows coming back from the database are turned into these records through the
``from_row`` helpers, which validate the shape at the boundary instead of
passing loose mappings around.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Mapping, Optional

from clinic_portal.config import ROLES

INVOICE_STATUSES = ("unpaid", "paid", "partial", "cancelled")
APPOINTMENT_STATUSES = ("scheduled", "confirmed", "completed", "cancelled", "no-show")
MEDICINE_TYPES = (
    "Tablet", "Capsule", "Syrup", "Suspension", "Mouthwash", "Gel", "Cream",
    "Drops", "Injection", "Powder", "Spray", "Ointment", "Other",
)


# ── Coercion helpers ─────────────────────────────────────────────────

def to_decimal(value: Any) -> Decimal:
    """Coerce a stored or user-entered amount to Decimal (blank -> 0)."""
    if value is None or value == "":
        return Decimal("0")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"Not a valid amount: {value!r}")
    if not amount.is_finite():
        raise ValueError(f"Not a valid amount: {value!r}")
    return amount


def parse_date(value: Any) -> Optional[date]:
    """Accept date, datetime or ISO string; return a date or None."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        raise ValueError(f"Not a valid date: {value!r}")


def _require(row: Mapping[str, Any], key: str, what: str) -> Any:
    if key not in row or row[key] is None:
        raise ValueError(f"Malformed {what} row: missing '{key}'")
    return row[key]


# ── Auth / identity ──────────────────────────────────────────────────

@dataclass
class Session:
    """Platform session: identity plus the token pair."""
    user_id: str
    access_token: str
    refresh_token: str
    expires_at: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Session":
        return cls(
            user_id=str(_require(data, "user_id", "session")),
            access_token=str(_require(data, "access_token", "session")),
            refresh_token=str(_require(data, "refresh_token", "session")),
            expires_at=data.get("expires_at"),
        )


@dataclass
class Profile:
    """Application-level identity record; authoritative for authorization."""
    id: str
    role: str                  # one of ROLES
    clinic_id: Optional[str]
    is_active: bool
    name: str = ""
    email: str = ""
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Profile":
        role = str(_require(row, "role", "profile")).strip().lower()
        if role not in ROLES:
            raise ValueError(f"Unsupported role '{row['role']}' in users_profile.")
        return cls(
            id=str(_require(row, "id", "profile")),
            role=role,
            clinic_id=row.get("clinic_id"),
            is_active=bool(row.get("is_active")),
            name=row.get("name") or "",
            email=row.get("email") or "",
            created_at=row.get("created_at"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "role": self.role,
            "clinic_id": self.clinic_id,
            "is_active": self.is_active,
        }


# ── Join projections ─────────────────────────────────────────────────

@dataclass
class PersonRef:
    """Projection of a joined patient or staff member."""
    id: str
    name: str
    contact: str = ""

    @classmethod
    def from_prefixed(cls, row: Mapping[str, Any], prefix: str) -> Optional["PersonRef"]:
        if row.get(f"{prefix}_ref_id") is None:
            return None
        return cls(
            id=str(row[f"{prefix}_ref_id"]),
            name=row.get(f"{prefix}_name") or "",
            contact=row.get(f"{prefix}_contact") or "",
        )


@dataclass
class ClinicRef:
    id: str
    clinic_name: str
    address: str = ""
    phone: str = ""

    @classmethod
    def from_prefixed(cls, row: Mapping[str, Any], prefix: str = "clinic") -> Optional["ClinicRef"]:
        if row.get(f"{prefix}_ref_id") is None:
            return None
        return cls(
            id=str(row[f"{prefix}_ref_id"]),
            clinic_name=row.get(f"{prefix}_name") or "",
            address=row.get(f"{prefix}_address") or "",
            phone=row.get(f"{prefix}_phone") or "",
        )


# ── Records ──────────────────────────────────────────────────────────

@dataclass
class Clinic:
    id: str
    clinic_name: str
    address: str = ""
    phone: str = ""
    email: str = ""
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Clinic":
        return cls(
            id=str(_require(row, "id", "clinic")),
            clinic_name=row.get("clinic_name") or "",
            address=row.get("address") or "",
            phone=row.get("phone") or "",
            email=row.get("email") or "",
            created_at=row.get("created_at"),
        )


@dataclass
class Patient:
    id: str
    name: str
    age: Optional[int] = None
    gender: str = ""
    contact: str = ""
    email: str = ""
    address: str = ""
    medical_history: str = ""
    dental_history: str = ""
    notes: str = ""
    doctor_id: Optional[str] = None
    clinic_id: Optional[str] = None
    created_at: Optional[datetime] = None
    doctor: Optional[PersonRef] = None
    clinic: Optional[ClinicRef] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Patient":
        return cls(
            id=str(_require(row, "id", "patient")),
            name=row.get("name") or "",
            age=row.get("age"),
            gender=row.get("gender") or "",
            contact=row.get("contact") or "",
            email=row.get("email") or "",
            address=row.get("address") or "",
            medical_history=row.get("medical_history") or "",
            dental_history=row.get("dental_history") or "",
            notes=row.get("notes") or "",
            doctor_id=row.get("doctor_id"),
            clinic_id=row.get("clinic_id"),
            created_at=row.get("created_at"),
            doctor=PersonRef.from_prefixed(row, "doctor"),
            clinic=ClinicRef.from_prefixed(row),
        )


@dataclass
class PatientFile:
    id: str
    patient_id: str
    file_url: str
    file_type: str
    file_name: str
    uploaded_by: Optional[str] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "PatientFile":
        return cls(
            id=str(_require(row, "id", "patient file")),
            patient_id=str(_require(row, "patient_id", "patient file")),
            file_url=row.get("file_url") or "",
            file_type=row.get("file_type") or "document",
            file_name=row.get("file_name") or "",
            uploaded_by=row.get("uploaded_by"),
            created_at=row.get("created_at"),
        )


@dataclass
class Appointment:
    id: str
    patient_id: str
    appointment_date: date
    appointment_time: str
    status: str = "scheduled"
    notes: str = ""
    doctor_id: Optional[str] = None
    clinic_id: Optional[str] = None
    created_at: Optional[datetime] = None
    patient: Optional[PersonRef] = None
    doctor: Optional[PersonRef] = None
    clinic: Optional[ClinicRef] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Appointment":
        return cls(
            id=str(_require(row, "id", "appointment")),
            patient_id=str(_require(row, "patient_id", "appointment")),
            appointment_date=parse_date(_require(row, "appointment_date", "appointment")),
            appointment_time=str(row.get("appointment_time") or "")[:5],
            status=row.get("status") or "scheduled",
            notes=row.get("notes") or "",
            doctor_id=row.get("doctor_id"),
            clinic_id=row.get("clinic_id"),
            created_at=row.get("created_at"),
            patient=PersonRef.from_prefixed(row, "patient"),
            doctor=PersonRef.from_prefixed(row, "doctor"),
            clinic=ClinicRef.from_prefixed(row),
        )


@dataclass
class DentalService:
    id: str
    service_name: str
    category: str
    default_price: Decimal
    description: str = ""
    is_active: bool = True
    sort_order: int = 0
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "DentalService":
        return cls(
            id=str(_require(row, "id", "dental service")),
            service_name=row.get("service_name") or "",
            category=row.get("category") or "",
            default_price=to_decimal(row.get("default_price")),
            description=row.get("description") or "",
            is_active=bool(row.get("is_active", True)),
            sort_order=int(row.get("sort_order") or 0),
            created_at=row.get("created_at"),
        )


@dataclass
class ClinicServicePrice:
    id: str
    clinic_id: str
    service_id: str
    price: Decimal
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "ClinicServicePrice":
        return cls(
            id=str(_require(row, "id", "clinic price")),
            clinic_id=str(_require(row, "clinic_id", "clinic price")),
            service_id=str(_require(row, "service_id", "clinic price")),
            price=to_decimal(row.get("price")),
            created_at=row.get("created_at"),
        )


@dataclass
class Medicine:
    id: str
    medicine_name: str
    medicine_type: str
    strength: str = ""
    form: str = ""
    default_dosage: str = ""
    clinic_id: Optional[str] = None
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Medicine":
        return cls(
            id=str(_require(row, "id", "medicine")),
            medicine_name=row.get("medicine_name") or "",
            medicine_type=row.get("medicine_type") or "Other",
            strength=row.get("strength") or "",
            form=row.get("form") or "",
            default_dosage=row.get("default_dosage") or "",
            clinic_id=row.get("clinic_id"),
            created_by=row.get("created_by"),
            created_at=row.get("created_at"),
        )


@dataclass
class PrescriptionMedicine:
    medicine_name: str
    medicine_type: str = ""
    strength: str = ""
    dose_quantity: str = ""
    frequency: str = ""
    duration: str = ""
    special_instructions: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PrescriptionMedicine":
        return cls(**{k: str(data.get(k) or "") for k in (
            "medicine_name", "medicine_type", "strength", "dose_quantity",
            "frequency", "duration", "special_instructions",
        )})

    def to_dict(self) -> Dict[str, str]:
        return dict(self.__dict__)


@dataclass
class Prescription:
    id: str
    patient_id: str
    doctor_id: Optional[str] = None
    treatments: str = ""
    medicines: List[PrescriptionMedicine] = field(default_factory=list)
    notes: str = ""
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    created_at: Optional[datetime] = None
    patient: Optional[PersonRef] = None
    doctor: Optional[PersonRef] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Prescription":
        return cls(
            id=str(_require(row, "id", "prescription")),
            patient_id=str(_require(row, "patient_id", "prescription")),
            doctor_id=row.get("doctor_id"),
            treatments=row.get("treatments") or "",
            medicines=[PrescriptionMedicine.from_dict(m) for m in (row.get("medicines") or [])],
            notes=row.get("notes") or "",
            start_date=parse_date(row.get("start_date")),
            end_date=parse_date(row.get("end_date")),
            created_at=row.get("created_at"),
            patient=PersonRef.from_prefixed(row, "patient"),
            doctor=PersonRef.from_prefixed(row, "doctor"),
        )


@dataclass
class InvoiceLine:
    description: str
    quantity: int
    unit_price: Decimal

    def __post_init__(self):
        if self.quantity < 0:
            raise ValueError("Line quantity cannot be negative.")
        if self.unit_price < 0:
            raise ValueError("Line unit price cannot be negative.")

    @property
    def total(self) -> Decimal:
        return self.quantity * self.unit_price

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "InvoiceLine":
        return cls(
            description=str(data.get("description") or ""),
            quantity=int(data.get("quantity") or 0),
            unit_price=to_decimal(data.get("unit_price")),
        )

    def to_dict(self) -> Dict[str, Any]:
        # JSON column; amounts stored as plain numbers like the hosted schema
        return {
            "description": self.description,
            "quantity": self.quantity,
            "unit_price": float(self.unit_price),
            "total": float(self.total),
        }


@dataclass
class Invoice:
    id: str
    patient_id: str
    items: List[InvoiceLine]
    doctor_fee: Decimal
    total_amount: Decimal
    amount_paid: Decimal
    status: str                # one of INVOICE_STATUSES
    clinic_id: Optional[str] = None
    doctor_id: Optional[str] = None
    created_at: Optional[datetime] = None
    patient: Optional[PersonRef] = None
    doctor: Optional[PersonRef] = None
    clinic: Optional[ClinicRef] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Invoice":
        status = row.get("status") or "unpaid"
        if status not in INVOICE_STATUSES:
            raise ValueError(f"Unsupported invoice status '{status}'.")
        return cls(
            id=str(_require(row, "id", "invoice")),
            patient_id=str(_require(row, "patient_id", "invoice")),
            items=[InvoiceLine.from_dict(i) for i in (row.get("items") or [])],
            doctor_fee=to_decimal(row.get("doctor_fee")),
            total_amount=to_decimal(row.get("total_amount")),
            amount_paid=to_decimal(row.get("amount_paid")),
            status=status,
            clinic_id=row.get("clinic_id"),
            doctor_id=row.get("doctor_id"),
            created_at=row.get("created_at"),
            patient=PersonRef.from_prefixed(row, "patient"),
            doctor=PersonRef.from_prefixed(row, "doctor"),
            clinic=ClinicRef.from_prefixed(row),
        )


# ── Serialisation ────────────────────────────────────────────────────

def as_json(value: Any) -> Any:
    """Recursively convert records into JSON-friendly structures."""
    if hasattr(value, "__dataclass_fields__"):
        return {k: as_json(getattr(value, k)) for k in value.__dataclass_fields__}
    if isinstance(value, dict):
        return {k: as_json(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [as_json(v) for v in value]
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return value
