"""
Dashboard summaries built from pandas frames.
"""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional

import pandas as pd
from sqlalchemy import select

from clinic_portal.config import DASHBOARD_RECENT_PATIENTS
from clinic_portal.database import appointments, invoices, patients
from clinic_portal.models import Prescription, Profile, to_decimal
from clinic_portal.prescriptions import active_prescriptions
from clinic_portal.rbac import ClinicScope


@dataclass
class DashboardSummary:
    total_patients: int
    today_appointments: int
    upcoming_appointments: int
    total_invoices: int
    total_revenue: Decimal
    unpaid_invoices: int
    recent_patients: pd.DataFrame
    today_schedule: pd.DataFrame
    active_prescriptions: List[Prescription] = field(default_factory=list)

    @property
    def active_prescriptions_count(self) -> int:
        return len(self.active_prescriptions)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_patients": self.total_patients,
            "today_appointments": self.today_appointments,
            "upcoming_appointments": self.upcoming_appointments,
            "total_invoices": self.total_invoices,
            "total_revenue": float(self.total_revenue),
            "unpaid_invoices": self.unpaid_invoices,
            "active_prescriptions_count": self.active_prescriptions_count,
            "recent_patients": _records(self.recent_patients),
            "today_schedule": _records(self.today_schedule),
        }


def _records(df: pd.DataFrame) -> List[Dict[str, Any]]:
    return df.astype(object).where(df.notna(), None).to_dict(orient="records")


def greeting(hour: int) -> str:
    if hour < 12:
        return "Good morning"
    if hour < 17:
        return "Good afternoon"
    return "Good evening"


def _read(engine, stmt) -> pd.DataFrame:
    with engine.connect() as conn:
        return pd.read_sql_query(stmt, conn)


def build_dashboard(engine, profile: Profile, today: Optional[date] = None) -> DashboardSummary:
    """Clinic-level counts for everyone but admins, who see every clinic."""
    today = today or date.today()
    clinic_id = None if profile.role == "admin" else profile.clinic_id

    patient_q = select(patients.c.id, patients.c.name, patients.c.contact, patients.c.created_at)
    appt_q = (
        select(
            appointments.c.id, appointments.c.appointment_date, appointments.c.appointment_time,
            appointments.c.status, patients.c.name.label("patient_name"),
        )
        .select_from(appointments.outerjoin(patients, patients.c.id == appointments.c.patient_id))
    )
    invoice_q = select(invoices.c.total_amount, invoices.c.status)
    if clinic_id:
        patient_q = patient_q.where(patients.c.clinic_id == clinic_id)
        appt_q = appt_q.where(appointments.c.clinic_id == clinic_id)
        invoice_q = invoice_q.where(invoices.c.clinic_id == clinic_id)

    patient_df = _read(engine, patient_q)
    appt_df = _read(engine, appt_q)
    invoice_df = _read(engine, invoice_q)

    appt_dates = pd.to_datetime(appt_df["appointment_date"]).dt.date if not appt_df.empty else pd.Series(dtype=object)
    today_mask = appt_dates == today
    upcoming_mask = (appt_dates > today) & (appt_df["status"] == "scheduled") if not appt_df.empty else today_mask

    today_schedule = appt_df[today_mask].copy() if not appt_df.empty else appt_df
    if not today_schedule.empty:
        today_schedule["appointment_time"] = today_schedule["appointment_time"].astype(str).str[:5]
        today_schedule = today_schedule.sort_values("appointment_time")
    today_schedule = today_schedule[["id", "appointment_time", "status", "patient_name"]]

    recent = patient_df.sort_values("created_at", ascending=False).head(DASHBOARD_RECENT_PATIENTS)
    recent = recent.assign(created_at=recent["created_at"].astype(str))

    paid = invoice_df[invoice_df["status"] == "paid"]
    revenue = sum((to_decimal(v) for v in paid["total_amount"]), Decimal("0"))

    scope = ClinicScope(clinic_id=clinic_id, own_doctor_id=None, is_admin=profile.role == "admin")
    return DashboardSummary(
        total_patients=len(patient_df),
        today_appointments=int(today_mask.sum()),
        upcoming_appointments=int(upcoming_mask.sum()),
        total_invoices=len(invoice_df),
        total_revenue=revenue,
        unpaid_invoices=int((invoice_df["status"] == "unpaid").sum()),
        recent_patients=recent.reset_index(drop=True),
        today_schedule=today_schedule.reset_index(drop=True),
        active_prescriptions=active_prescriptions(engine, today, scope=scope),
    )
