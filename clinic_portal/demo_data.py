"""
Synthetic clinic data for local development and demos.

Fills an empty database with clinics, staff profiles, patients and their
appointments, prescriptions and invoices. Staff rows are profiles only; no
platform auth users are created, so nobody can sign in as them.
"""

import random
from datetime import date, datetime, time, timedelta
from decimal import Decimal

from faker import Faker
from sqlalchemy import insert

from clinic_portal.billing import apply_payment, invoice_total
from clinic_portal.database import (
    appointments, clinics, dental_services, invoices, medicines, new_id, patients,
    prescriptions, users_profile,
)
from clinic_portal.models import APPOINTMENT_STATUSES, INVOICE_STATUSES, InvoiceLine

NUM_CLINICS = 3
DOCTORS_PER_CLINIC = 2
NUM_PATIENTS = 40

# min, max rows per patient
PER_PATIENT = {
    "appointments": (0, 3),
    "prescriptions": (0, 2),
    "invoices": (0, 2),
}

SERVICES = [
    ("Consultation", "General", 1500),
    ("Scaling & Polishing", "Preventive", 4000),
    ("Composite Filling", "Restorative", 5000),
    ("Root Canal Treatment", "Endodontics", 18000),
    ("Tooth Extraction", "Surgery", 3500),
    ("Porcelain Crown", "Prosthodontics", 20000),
    ("Teeth Whitening", "Cosmetic", 25000),
    ("Digital X-Ray", "Diagnostics", 750),
]

MEDICINES = [
    ("Amoxicillin", "Capsule", "500mg", "1 capsule"),
    ("Ibuprofen", "Tablet", "400mg", "1 tablet"),
    ("Metronidazole", "Tablet", "400mg", "1 tablet"),
    ("Chlorhexidine", "Mouthwash", "0.2%", "10ml"),
    ("Paracetamol", "Tablet", "500mg", "2 tablets"),
    ("Benzocaine", "Gel", "20%", "Apply thinly"),
]

FREQUENCIES = ("Once daily", "Twice daily", "Three times daily", "When required")


# ── Helpers ──────────────────────────────────────────────────────────

def per_patient_count(rng, table_name):
    lo, hi = PER_PATIENT.get(table_name, (0, 0))
    if hi <= 0:
        return 0
    return rng.randint(lo, hi)


def random_datetime_within(rng, now, days_back=365):
    delta = timedelta(days=rng.randint(0, days_back), seconds=rng.randint(0, 86400))
    return now - delta


# ── Seed functions ───────────────────────────────────────────────────

def seed_clinics(conn, fake, n=NUM_CLINICS):
    rows = []
    for _ in range(n):
        rows.append({
            "id": new_id(),
            "clinic_name": f"{fake.city()} Dental Clinic",
            "address": fake.street_address(),
            "phone": fake.phone_number(),
            "email": fake.email(),
            "created_at": fake.date_time_this_decade(),
        })
    conn.execute(insert(clinics), rows)
    return [r["id"] for r in rows]


def seed_staff(conn, fake, rng, clinic_ids):
    """One clinic admin and receptionist plus doctors per clinic.

    Returns ``{clinic_id: [doctor_id, ...]}``.
    """
    rows = []
    doctors = {}
    for clinic_id in clinic_ids:
        roles = ["clinic_admin", "receptionist"] + ["doctor"] * DOCTORS_PER_CLINIC
        for role in roles:
            profile_id = new_id()
            name = fake.name()
            if role == "doctor":
                name = f"Dr. {name}"
                doctors.setdefault(clinic_id, []).append(profile_id)
            rows.append({
                "id": profile_id,
                "name": name,
                "email": fake.unique.email(),
                "role": role,
                "clinic_id": clinic_id,
                "is_active": rng.random() < 0.9,
                "created_at": fake.date_time_this_decade(),
            })
    conn.execute(insert(users_profile), rows)
    return doctors


def seed_catalog(conn):
    conn.execute(insert(dental_services), [
        {"id": new_id(), "service_name": name, "category": category,
         "default_price": Decimal(price), "sort_order": i, "is_active": True,
         "created_at": datetime.utcnow()}
        for i, (name, category, price) in enumerate(SERVICES)
    ])
    conn.execute(insert(medicines), [
        {"id": new_id(), "medicine_name": name, "medicine_type": kind, "strength": strength,
         "default_dosage": dosage, "created_at": datetime.utcnow()}
        for name, kind, strength, dosage in MEDICINES
    ])


def seed_patients(conn, fake, rng, doctors, now, n=NUM_PATIENTS):
    rows = []
    for _ in range(n):
        clinic_id = rng.choice(list(doctors))
        rows.append({
            "id": new_id(),
            "name": fake.name(),
            "age": rng.randint(5, 85),
            "gender": rng.choice(["male", "female", "other"]),
            "contact": fake.phone_number(),
            "email": fake.email(),
            "address": fake.address().replace("\n", ", "),
            "medical_history": rng.choice(["", "Diabetic", "Hypertension", "Penicillin allergy"]),
            "dental_history": rng.choice(["", "Previous RCT", "Braces 2019", "Frequent sensitivity"]),
            "doctor_id": rng.choice(doctors[clinic_id]),
            "clinic_id": clinic_id,
            "created_at": random_datetime_within(rng, now),
        })
    conn.execute(insert(patients), rows)
    return rows


def seed_appointments(conn, fake, rng, patient_rows, today):
    rows = []
    for p in patient_rows:
        for _ in range(per_patient_count(rng, "appointments")):
            rows.append({
                "id": new_id(),
                "patient_id": p["id"],
                "doctor_id": p["doctor_id"],
                "clinic_id": p["clinic_id"],
                "appointment_date": today + timedelta(days=rng.randint(-60, 30)),
                "appointment_time": time(rng.randint(9, 19), rng.choice([0, 30])),
                "status": rng.choice(APPOINTMENT_STATUSES),
                "notes": fake.sentence(nb_words=6) if rng.random() < 0.3 else "",
                "created_at": datetime.utcnow(),
            })
    if rows:
        conn.execute(insert(appointments), rows)


def seed_prescriptions(conn, fake, rng, patient_rows, today):
    rows = []
    for p in patient_rows:
        for _ in range(per_patient_count(rng, "prescriptions")):
            start = today + timedelta(days=rng.randint(-40, 10))
            end = start + timedelta(days=rng.randint(3, 14)) if rng.random() < 0.8 else None
            meds = []
            for name, kind, strength, dosage in rng.sample(MEDICINES, rng.randint(1, 3)):
                meds.append({
                    "medicine_name": name, "medicine_type": kind, "strength": strength,
                    "dose_quantity": dosage, "frequency": rng.choice(FREQUENCIES),
                    "duration": f"{rng.randint(3, 7)} days", "special_instructions": "",
                })
            rows.append({
                "id": new_id(),
                "patient_id": p["id"],
                "doctor_id": p["doctor_id"],
                "treatments": rng.choice([s[0] for s in SERVICES]),
                "medicines": meds,
                "notes": fake.sentence(nb_words=8) if rng.random() < 0.3 else "",
                "start_date": start,
                "end_date": end,
                "created_at": datetime.combine(start, time(10, 0)),
            })
    if rows:
        conn.execute(insert(prescriptions), rows)


def seed_invoices(conn, rng, patient_rows, now):
    rows = []
    for p in patient_rows:
        for _ in range(per_patient_count(rng, "invoices")):
            lines = [
                InvoiceLine(description=name, quantity=rng.randint(1, 2), unit_price=Decimal(price))
                for name, _, price in rng.sample(SERVICES, rng.randint(1, 3))
            ]
            fee = Decimal(rng.choice([0, 500, 1000]))
            total = invoice_total(lines, fee)
            status = rng.choice(INVOICE_STATUSES)
            share = Decimal(rng.choice(["0.25", "0.5", "0.75"]))
            payment = apply_payment(status, (total * share).quantize(Decimal("0.01")), total)
            rows.append({
                "id": new_id(),
                "patient_id": p["id"],
                "clinic_id": p["clinic_id"],
                "doctor_id": p["doctor_id"],
                "items": [line.to_dict() for line in lines],
                "doctor_fee": fee,
                "total_amount": total,
                "amount_paid": payment.amount_paid,
                "status": payment.status,
                "created_at": random_datetime_within(rng, now, days_back=180),
            })
    if rows:
        conn.execute(insert(invoices), rows)


def seed_demo_data(engine, seed=42, today=None):
    """Populate *engine* with a reproducible demo dataset; returns row counts."""
    fake = Faker()
    Faker.seed(seed)
    rng = random.Random(seed)
    today = today or date.today()
    now = datetime.combine(today, time(18, 0))

    with engine.begin() as conn:
        print("[seed] Clinics and staff...")
        clinic_ids = seed_clinics(conn, fake)
        doctors = seed_staff(conn, fake, rng, clinic_ids)

        print("[seed] Services and medicines...")
        seed_catalog(conn)

        print("[seed] Patients...")
        patient_rows = seed_patients(conn, fake, rng, doctors, now)

        print("[seed] Appointments, prescriptions, invoices...")
        seed_appointments(conn, fake, rng, patient_rows, today)
        seed_prescriptions(conn, fake, rng, patient_rows, today)
        seed_invoices(conn, rng, patient_rows, now)

    print("[seed] Done!")
    return {"clinics": len(clinic_ids), "patients": len(patient_rows)}
