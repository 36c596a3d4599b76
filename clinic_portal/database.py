"""
Database engine initialisation and the table metadata of the hosted schema.

The schema itself is owned by the platform; the tables below only mirror the
columns this application reads and writes. ``create_schema`` exists so tests
and local development can stand up an equivalent SQLite database.
"""

import sys
import uuid
from datetime import datetime

from sqlalchemy import (
    JSON, Boolean, Column, Date, DateTime, ForeignKey, Integer, MetaData,
    Numeric, String, Table, Text, Time, UniqueConstraint, create_engine, text,
)

from clinic_portal.config import get_env

metadata = MetaData()


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.utcnow()


def _id_column():
    return Column("id", String(36), primary_key=True, default=new_id)


def _created_at():
    return Column("created_at", DateTime, nullable=False, default=utcnow)


clinics = Table(
    "clinics", metadata,
    _id_column(),
    Column("clinic_name", String(200), nullable=False),
    Column("address", Text, default=""),
    Column("phone", String(50), default=""),
    Column("email", String(200), default=""),
    _created_at(),
)

users_profile = Table(
    "users_profile", metadata,
    _id_column(),
    Column("name", String(200), default=""),
    Column("email", String(200), default=""),
    Column("role", String(20), nullable=False, default="receptionist"),
    Column("clinic_id", String(36), ForeignKey("clinics.id"), nullable=True),
    Column("avatar_url", Text, default=""),
    Column("is_active", Boolean, nullable=False, default=True),
    _created_at(),
)

patients = Table(
    "patients", metadata,
    _id_column(),
    Column("name", String(200), nullable=False),
    Column("age", Integer, nullable=True),
    Column("gender", String(10), default="other"),
    Column("contact", String(50), default=""),
    Column("email", String(200), default=""),
    Column("address", Text, default=""),
    Column("medical_history", Text, default=""),
    Column("dental_history", Text, default=""),
    Column("notes", Text, default=""),
    Column("doctor_id", String(36), ForeignKey("users_profile.id"), nullable=True),
    Column("clinic_id", String(36), ForeignKey("clinics.id"), nullable=True),
    _created_at(),
)

patient_files = Table(
    "patient_files", metadata,
    _id_column(),
    Column("patient_id", String(36), ForeignKey("patients.id"), nullable=False),
    Column("file_url", Text, nullable=False),
    Column("file_type", String(20), default="document"),
    Column("file_name", String(300), default=""),
    Column("uploaded_by", String(36), nullable=True),
    _created_at(),
)

appointments = Table(
    "appointments", metadata,
    _id_column(),
    Column("patient_id", String(36), ForeignKey("patients.id"), nullable=False),
    Column("doctor_id", String(36), ForeignKey("users_profile.id"), nullable=True),
    Column("clinic_id", String(36), ForeignKey("clinics.id"), nullable=True),
    Column("appointment_date", Date, nullable=False),
    Column("appointment_time", Time, nullable=False),
    Column("status", String(20), nullable=False, default="scheduled"),
    Column("notes", Text, default=""),
    _created_at(),
)

prescriptions = Table(
    "prescriptions", metadata,
    _id_column(),
    Column("patient_id", String(36), ForeignKey("patients.id"), nullable=False),
    Column("doctor_id", String(36), ForeignKey("users_profile.id"), nullable=True),
    Column("treatments", Text, default=""),
    Column("medicines", JSON, default=list),
    Column("notes", Text, default=""),
    Column("start_date", Date, nullable=True),
    Column("end_date", Date, nullable=True),
    _created_at(),
)

invoices = Table(
    "invoices", metadata,
    _id_column(),
    Column("patient_id", String(36), ForeignKey("patients.id"), nullable=False),
    Column("clinic_id", String(36), ForeignKey("clinics.id"), nullable=True),
    Column("doctor_id", String(36), ForeignKey("users_profile.id"), nullable=True),
    Column("items", JSON, default=list),
    Column("doctor_fee", Numeric(12, 2), nullable=False, default=0),
    Column("total_amount", Numeric(12, 2), nullable=False, default=0),
    Column("amount_paid", Numeric(12, 2), nullable=False, default=0),
    Column("status", String(20), nullable=False, default="unpaid"),
    _created_at(),
)

medicines = Table(
    "medicines", metadata,
    _id_column(),
    Column("medicine_name", String(200), nullable=False, unique=True),
    Column("medicine_type", String(30), nullable=False, default="Tablet"),
    Column("strength", String(100), default=""),
    Column("form", String(100), default=""),
    Column("default_dosage", String(200), default=""),
    Column("clinic_id", String(36), ForeignKey("clinics.id"), nullable=True),
    Column("created_by", String(36), nullable=True),
    _created_at(),
)

dental_services = Table(
    "dental_services", metadata,
    _id_column(),
    Column("service_name", String(200), nullable=False),
    Column("category", String(100), nullable=False, default="General"),
    Column("default_price", Numeric(12, 2), nullable=False, default=0),
    Column("description", Text, default=""),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("sort_order", Integer, nullable=False, default=0),
    _created_at(),
)

clinic_service_prices = Table(
    "clinic_service_prices", metadata,
    _id_column(),
    Column("clinic_id", String(36), ForeignKey("clinics.id"), nullable=False),
    Column("service_id", String(36), ForeignKey("dental_services.id"), nullable=False),
    Column("price", Numeric(12, 2), nullable=False),
    _created_at(),
    UniqueConstraint("clinic_id", "service_id", name="uq_clinic_service"),
)


def init_engine():
    """Create a SQLAlchemy engine and verify the connection."""
    db_uri = get_env("DB_URI")
    engine = create_engine(db_uri, echo=False, future=True)
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception as e:
        print("ERROR: could not connect to DB:", e, file=sys.stderr)
        sys.exit(1)
    print("[init] Connected to DB.")
    return engine


def create_schema(engine) -> None:
    """Create the mirrored tables (local/test databases only)."""
    metadata.create_all(engine)
