"""
Portal records: patients, appointments, clinics, staff and patient files.

Every list query takes a ``ClinicScope`` and applies its filters in the query
itself; callers never see rows outside their clinic.
"""

import sys
from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Any, Dict, List, Mapping, Optional, Tuple

from sqlalchemy import delete, func, insert, or_, select, update

from clinic_portal.config import MAX_UPLOAD_BYTES, PATIENTS_PAGE_SIZE
from clinic_portal.database import (
    appointments, clinics, new_id, patient_files, patients, users_profile, utcnow,
)
from clinic_portal.models import (
    APPOINTMENT_STATUSES, Appointment, Clinic, ClinicRef, Patient, PatientFile,
    Prescription, Profile, parse_date,
)
from clinic_portal.prescriptions import patient_prescriptions
from clinic_portal.rbac import ClinicScope
from clinic_portal.storage import (
    StorageClient, StorageError, build_object_path, classify_file_type, extract_storage_path,
)

_doctor = users_profile.alias("doctor")

GENDERS = ("male", "female", "other")


def _ilike(column, term: str):
    return func.lower(column).contains(term.strip().lower())


# ── Patients ─────────────────────────────────────────────────────────

def _patient_select():
    return (
        select(
            patients,
            _doctor.c.id.label("doctor_ref_id"),
            _doctor.c.name.label("doctor_name"),
            clinics.c.id.label("clinic_ref_id"),
            clinics.c.clinic_name.label("clinic_name"),
        )
        .select_from(
            patients
            .outerjoin(_doctor, _doctor.c.id == patients.c.doctor_id)
            .outerjoin(clinics, clinics.c.id == patients.c.clinic_id)
        )
    )


def list_patients(engine, scope: ClinicScope, search: Optional[str] = None,
                  clinic_id: Optional[str] = None, doctor_id: Optional[str] = None,
                  page: int = 1) -> Tuple[List[Patient], int]:
    """One page of patients, newest first, plus the total matching count."""
    conditions = []
    if scope.clinic_id:
        conditions.append(patients.c.clinic_id == scope.clinic_id)
    if search:
        conditions.append(_ilike(patients.c.name, search))
    if clinic_id:
        conditions.append(patients.c.clinic_id == clinic_id)
    if doctor_id:
        conditions.append(patients.c.doctor_id == doctor_id)

    page = max(1, int(page))
    stmt = _patient_select()
    count_stmt = select(func.count()).select_from(patients)
    for cond in conditions:
        stmt = stmt.where(cond)
        count_stmt = count_stmt.where(cond)
    stmt = (
        stmt.order_by(patients.c.created_at.desc())
        .offset((page - 1) * PATIENTS_PAGE_SIZE)
        .limit(PATIENTS_PAGE_SIZE)
    )
    with engine.connect() as conn:
        rows = conn.execute(stmt).mappings().all()
        total = conn.execute(count_stmt).scalar() or 0
    return [Patient.from_row(r) for r in rows], int(total)


def patient_options(engine, scope: ClinicScope) -> List[Dict[str, str]]:
    """(id, name) pairs for pick lists, ordered by name."""
    stmt = select(patients.c.id, patients.c.name).order_by(patients.c.name)
    if scope.clinic_id:
        stmt = stmt.where(patients.c.clinic_id == scope.clinic_id)
    with engine.connect() as conn:
        return [dict(r) for r in conn.execute(stmt).mappings().all()]


def _scope_patients(stmt, scope: Optional[ClinicScope]):
    if scope is not None and scope.clinic_id:
        stmt = stmt.where(patients.c.clinic_id == scope.clinic_id)
    return stmt


def get_patient(engine, patient_id: str, scope: Optional[ClinicScope] = None) -> Patient:
    """One patient; LookupError when missing or outside *scope*."""
    stmt = _scope_patients(_patient_select().where(patients.c.id == patient_id), scope)
    with engine.connect() as conn:
        row = conn.execute(stmt).mappings().first()
    if not row:
        raise LookupError(f"Patient {patient_id} not found.")
    return Patient.from_row(row)


def _patient_values(data: Mapping[str, Any]) -> Dict[str, Any]:
    name = (data.get("name") or "").strip()
    if not name:
        raise ValueError("Patient name is required.")
    gender = data.get("gender") or "other"
    if gender not in GENDERS:
        raise ValueError(f"Unknown gender '{gender}'.")
    try:
        age = int(data.get("age") or 0)
    except (TypeError, ValueError):
        age = 0
    values = {"name": name, "age": age, "gender": gender}
    for key in ("contact", "email", "address", "medical_history", "dental_history", "notes"):
        values[key] = data.get(key) or ""
    values["doctor_id"] = data.get("doctor_id") or None
    values["clinic_id"] = data.get("clinic_id") or None
    return values


def create_patient(engine, data: Mapping[str, Any]) -> str:
    patient_id = new_id()
    with engine.begin() as conn:
        conn.execute(insert(patients).values(id=patient_id, created_at=utcnow(), **_patient_values(data)))
    return patient_id


def update_patient(engine, patient_id: str, data: Mapping[str, Any],
                   scope: Optional[ClinicScope] = None) -> None:
    stmt = _scope_patients(update(patients).where(patients.c.id == patient_id), scope)
    with engine.begin() as conn:
        result = conn.execute(stmt.values(**_patient_values(data)))
    if result.rowcount == 0:
        raise LookupError(f"Patient {patient_id} not found.")


def delete_patient(engine, patient_id: str, scope: Optional[ClinicScope] = None) -> None:
    stmt = _scope_patients(delete(patients).where(patients.c.id == patient_id), scope)
    with engine.begin() as conn:
        result = conn.execute(stmt)
    if result.rowcount == 0:
        raise LookupError(f"Patient {patient_id} not found.")


@dataclass
class PatientHistory:
    patient: Patient
    appointments: List[Appointment]
    prescriptions: List[Prescription]
    files: List[PatientFile]


def patient_history(engine, patient_id: str, storage: Optional[StorageClient] = None,
                    scope: Optional[ClinicScope] = None) -> PatientHistory:
    """Everything recorded against one patient, newest first."""
    patient = get_patient(engine, patient_id, scope)
    stmt = (
        _appointment_select()
        .where(appointments.c.patient_id == patient_id)
        .order_by(appointments.c.appointment_date.desc())
    )
    with engine.connect() as conn:
        appts = [Appointment.from_row(r) for r in conn.execute(stmt).mappings().all()]
    return PatientHistory(
        patient=patient,
        appointments=appts,
        prescriptions=patient_prescriptions(engine, patient_id),
        files=list_patient_files(engine, patient_id, storage),
    )


# ── Appointments ─────────────────────────────────────────────────────

_appt_patient = patients.alias("appt_patient")


def _appointment_select():
    return (
        select(
            appointments,
            _appt_patient.c.id.label("patient_ref_id"),
            _appt_patient.c.name.label("patient_name"),
            _appt_patient.c.contact.label("patient_contact"),
            _doctor.c.id.label("doctor_ref_id"),
            _doctor.c.name.label("doctor_name"),
            clinics.c.id.label("clinic_ref_id"),
            clinics.c.clinic_name.label("clinic_name"),
        )
        .select_from(
            appointments
            .outerjoin(_appt_patient, _appt_patient.c.id == appointments.c.patient_id)
            .outerjoin(_doctor, _doctor.c.id == appointments.c.doctor_id)
            .outerjoin(clinics, clinics.c.id == appointments.c.clinic_id)
        )
    )


def _scope_appointments(stmt, scope: ClinicScope):
    # doctors see their own; everyone else with a clinic sees that clinic
    if scope.own_doctor_id:
        return stmt.where(appointments.c.doctor_id == scope.own_doctor_id)
    if scope.clinic_id:
        return stmt.where(appointments.c.clinic_id == scope.clinic_id)
    return stmt


def list_appointments(engine, scope: ClinicScope, search: Optional[str] = None,
                      status: Optional[str] = None,
                      on_date: Optional[date] = None) -> List[Appointment]:
    stmt = _scope_appointments(_appointment_select(), scope).order_by(
        appointments.c.appointment_date.desc(), appointments.c.appointment_time.asc(),
    )
    if status:
        stmt = stmt.where(appointments.c.status == status)
    if on_date:
        stmt = stmt.where(appointments.c.appointment_date == on_date)
    if search:
        stmt = stmt.where(_ilike(_appt_patient.c.name, search))
    with engine.connect() as conn:
        return [Appointment.from_row(r) for r in conn.execute(stmt).mappings().all()]


def _parse_time(value: Any) -> time:
    if isinstance(value, time):
        return value
    text = str(value or "09:00").strip()
    try:
        return datetime.strptime(text[:5], "%H:%M").time()
    except ValueError:
        raise ValueError(f"Not a valid time: {value!r}")


def save_appointment(engine, profile: Profile, data: Mapping[str, Any],
                     appointment_id: Optional[str] = None,
                     scope: Optional[ClinicScope] = None) -> str:
    """Create, or update when *appointment_id* is given and inside *scope*."""
    patient_id = (data.get("patient_id") or "").strip()
    if not patient_id:
        raise ValueError("Please select a patient.")
    status = data.get("status") or "scheduled"
    if status not in APPOINTMENT_STATUSES:
        raise ValueError(f"Unsupported appointment status '{status}'.")
    appt_date = parse_date(data.get("appointment_date")) or date.today()

    doctor_id = data.get("doctor_id") or (profile.id if profile.role == "doctor" else None)
    values = {
        "patient_id": patient_id,
        "doctor_id": doctor_id,
        "clinic_id": data.get("clinic_id") or profile.clinic_id or None,
        "appointment_date": appt_date,
        "appointment_time": _parse_time(data.get("appointment_time")),
        "status": status,
        "notes": data.get("notes") or "",
    }
    with engine.begin() as conn:
        if appointment_id:
            stmt = update(appointments).where(appointments.c.id == appointment_id)
            if scope is not None:
                stmt = _scope_appointments(stmt, scope)
            result = conn.execute(stmt.values(**values))
            if result.rowcount == 0:
                raise LookupError(f"Appointment {appointment_id} not found.")
            return appointment_id
        appointment_id = new_id()
        conn.execute(insert(appointments).values(id=appointment_id, created_at=utcnow(), **values))
    return appointment_id


def delete_appointment(engine, appointment_id: str, scope: Optional[ClinicScope] = None) -> None:
    stmt = delete(appointments).where(appointments.c.id == appointment_id)
    if scope is not None:
        stmt = _scope_appointments(stmt, scope)
    with engine.begin() as conn:
        result = conn.execute(stmt)
    if result.rowcount == 0:
        raise LookupError(f"Appointment {appointment_id} not found.")


# ── Clinics ──────────────────────────────────────────────────────────

def list_clinics(engine) -> List[Clinic]:
    with engine.connect() as conn:
        rows = conn.execute(select(clinics).order_by(clinics.c.clinic_name)).mappings().all()
    return [Clinic.from_row(r) for r in rows]


def get_clinic(engine, clinic_id: str) -> Optional[Clinic]:
    with engine.connect() as conn:
        row = conn.execute(select(clinics).where(clinics.c.id == clinic_id)).mappings().first()
    return Clinic.from_row(row) if row else None


def _clinic_values(data: Mapping[str, Any]) -> Dict[str, str]:
    name = (data.get("clinic_name") or "").strip()
    if not name:
        raise ValueError("Clinic name is required.")
    return {
        "clinic_name": name,
        "address": data.get("address") or "",
        "phone": data.get("phone") or "",
        "email": data.get("email") or "",
    }


def save_clinic(engine, data: Mapping[str, Any], clinic_id: Optional[str] = None) -> str:
    values = _clinic_values(data)
    with engine.begin() as conn:
        if clinic_id:
            conn.execute(update(clinics).where(clinics.c.id == clinic_id).values(**values))
            return clinic_id
        clinic_id = new_id()
        conn.execute(insert(clinics).values(id=clinic_id, created_at=utcnow(), **values))
    return clinic_id


def delete_clinic(engine, clinic_id: str) -> None:
    with engine.begin() as conn:
        conn.execute(delete(clinics).where(clinics.c.id == clinic_id))


# ── Staff ────────────────────────────────────────────────────────────

def list_doctors(engine, scope: ClinicScope) -> List[Dict[str, str]]:
    stmt = (
        select(users_profile.c.id, users_profile.c.name, users_profile.c.clinic_id)
        .where(users_profile.c.role == "doctor")
        .order_by(users_profile.c.name)
    )
    if scope.clinic_id:
        stmt = stmt.where(users_profile.c.clinic_id == scope.clinic_id)
    with engine.connect() as conn:
        return [dict(r) for r in conn.execute(stmt).mappings().all()]


@dataclass
class StaffMember:
    profile: Profile
    clinic: Optional[ClinicRef] = None


def list_users(engine, scope: ClinicScope, search: Optional[str] = None,
               role: Optional[str] = None) -> List[StaffMember]:
    stmt = (
        select(
            users_profile,
            clinics.c.id.label("clinic_ref_id"),
            clinics.c.clinic_name.label("clinic_name"),
        )
        .select_from(users_profile.outerjoin(clinics, clinics.c.id == users_profile.c.clinic_id))
        .order_by(users_profile.c.created_at.desc())
    )
    if scope.clinic_id:
        stmt = stmt.where(users_profile.c.clinic_id == scope.clinic_id)
    if search:
        stmt = stmt.where(or_(_ilike(users_profile.c.name, search), _ilike(users_profile.c.email, search)))
    if role:
        stmt = stmt.where(users_profile.c.role == role)
    with engine.connect() as conn:
        rows = conn.execute(stmt).mappings().all()
    return [StaffMember(Profile.from_row(r), ClinicRef.from_prefixed(r)) for r in rows]


# ── Patient files ────────────────────────────────────────────────────

def list_patient_files(engine, patient_id: str,
                       storage: Optional[StorageClient] = None) -> List[PatientFile]:
    """Files newest first; with *storage*, ``file_url`` is resolved to a public URL."""
    stmt = (
        select(patient_files)
        .where(patient_files.c.patient_id == patient_id)
        .order_by(patient_files.c.created_at.desc())
    )
    with engine.connect() as conn:
        files = [PatientFile.from_row(r) for r in conn.execute(stmt).mappings().all()]
    if storage is not None:
        for f in files:
            f.file_url = storage.public_url(extract_storage_path(f.file_url))
    return files


def upload_patient_file(engine, storage: StorageClient, patient_id: str, filename: str,
                        content: bytes, content_type: Optional[str],
                        uploaded_by: Optional[str], now: Optional[datetime] = None) -> PatientFile:
    if len(content) > MAX_UPLOAD_BYTES:
        raise ValueError("File too large. Maximum size is 50MB.")

    path = build_object_path(patient_id, filename, now)
    storage.upload(path, content, content_type or "application/octet-stream")

    record = {
        "id": new_id(),
        "patient_id": patient_id,
        "file_url": path,
        "file_type": classify_file_type(content_type),
        "file_name": filename,
        "uploaded_by": uploaded_by,
        "created_at": utcnow(),
    }
    try:
        with engine.begin() as conn:
            conn.execute(insert(patient_files).values(**record))
    except Exception as e:
        print(f"[storage] Object {path} stored but record failed: {e}", file=sys.stderr)
        try:
            storage.remove([path])
        except StorageError as cleanup_err:
            print(f"[storage] ORPHANED object {path}: cleanup failed: {cleanup_err}", file=sys.stderr)
        raise ValueError(f"File saved to storage but record failed: {e}")
    return PatientFile.from_row(record)


def delete_patient_file(engine, storage: StorageClient, file_id: str,
                        patient_id: Optional[str] = None) -> None:
    """Remove the stored object, then the row.

    With *patient_id*, a file belonging to another patient is treated as
    missing. A failed object removal is logged and the row is still deleted.
    """
    stmt = select(patient_files).where(patient_files.c.id == file_id)
    if patient_id is not None:
        stmt = stmt.where(patient_files.c.patient_id == patient_id)
    with engine.connect() as conn:
        row = conn.execute(stmt).mappings().first()
    if not row:
        raise LookupError(f"File {file_id} not found.")

    path = extract_storage_path(row["file_url"] or "")
    if path:
        try:
            storage.remove([path])
        except StorageError as e:
            print(f"[storage] {e}", file=sys.stderr)

    with engine.begin() as conn:
        conn.execute(delete(patient_files).where(patient_files.c.id == file_id))
