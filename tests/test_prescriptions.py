"""
Tests for the prescription validity classifier and prescription records.
"""

from datetime import date, datetime

import pytest
from sqlalchemy import insert, select

from clinic_portal.database import medicines, prescriptions as rx_table
from clinic_portal.models import Profile
from clinic_portal.prescriptions import (
    CUSTOM_PLACEHOLDER, VALIDITY_LABELS, Validity, active_prescriptions, classify,
    clean_medicines, create_medicine, create_prescription, delete_prescription,
    ensure_medicine, get_prescription, list_medicines, list_prescriptions,
    patient_prescriptions, update_medicine,
)
from clinic_portal.rbac import build_scope

TODAY = date(2025, 6, 15)
PAST = date(2025, 6, 1)
FUTURE = date(2025, 7, 1)


def _doctor(user_id="doc", clinic_id="c1"):
    return Profile(id=user_id, role="doctor", clinic_id=clinic_id, is_active=True, name="Sara Khan")


def _admin():
    return Profile(id="admin", role="admin", clinic_id=None, is_active=True, name="Ayesha Admin")


def _add_rx(engine, rx_id, patient_id, doctor_id, start=None, end=None, treatments="",
            created_at=datetime(2025, 6, 1)):
    with engine.begin() as conn:
        conn.execute(insert(rx_table).values(
            id=rx_id, patient_id=patient_id, doctor_id=doctor_id, treatments=treatments,
            medicines=[], notes="", start_date=start, end_date=end, created_at=created_at,
        ))


# ── Tests: classify ──────────────────────────────────────────────────

@pytest.mark.parametrize("start,end,expected", [
    (None, None, Validity.NONE),
    (None, PAST, Validity.EXPIRED),
    (None, TODAY, Validity.ACTIVE),
    (None, FUTURE, Validity.ACTIVE),
    (PAST, None, Validity.ACTIVE),
    (PAST, PAST, Validity.EXPIRED),
    (PAST, TODAY, Validity.ACTIVE),
    (PAST, FUTURE, Validity.ACTIVE),
    (TODAY, None, Validity.ACTIVE),
    (TODAY, PAST, Validity.EXPIRED),
    (TODAY, TODAY, Validity.ACTIVE),
    (TODAY, FUTURE, Validity.ACTIVE),
    (FUTURE, None, Validity.UPCOMING),
    (FUTURE, PAST, Validity.EXPIRED),
    (FUTURE, TODAY, Validity.UPCOMING),
    (FUTURE, FUTURE, Validity.UPCOMING),
])
def test_classify_decision_table(start, end, expected):
    assert classify(start, end, TODAY) is expected


def test_classify_accepts_iso_strings_and_datetimes():
    assert classify("2025-06-01", "2025-06-30", TODAY) is Validity.ACTIVE
    assert classify(datetime(2025, 7, 1, 9, 30), None, TODAY) is Validity.UPCOMING
    assert classify("", "", TODAY) is Validity.NONE


def test_classify_inverted_range_reads_expired():
    assert classify(date(2025, 8, 1), date(2025, 6, 10), TODAY) is Validity.EXPIRED


def test_classify_rejects_garbage():
    with pytest.raises(ValueError):
        classify("next tuesday", None, TODAY)


def test_validity_labels():
    assert VALIDITY_LABELS[Validity.NONE] == "No dates"
    assert VALIDITY_LABELS[Validity.ACTIVE] == "Active"


# ── Tests: clean_medicines ───────────────────────────────────────────

def test_clean_medicines_drops_blank_names_and_custom_placeholders():
    cleaned = clean_medicines([
        {"medicine_name": "Amoxicillin", "medicine_type": "Capsule", "strength": "500mg",
         "dose_quantity": CUSTOM_PLACEHOLDER, "frequency": "TDS", "duration": "5 days",
         "special_instructions": CUSTOM_PLACEHOLDER},
        {"medicine_name": "   "},
        {},
    ])
    assert len(cleaned) == 1
    med = cleaned[0]
    assert med.medicine_name == "Amoxicillin"
    assert med.dose_quantity == ""
    assert med.special_instructions == ""
    assert med.duration == "5 days"


# ── Tests: records ───────────────────────────────────────────────────

def test_create_prescription_requires_patient(seeded):
    with pytest.raises(ValueError, match="Please select a patient."):
        create_prescription(seeded, _doctor(), {"patient_id": ""})


def test_create_prescription_persists_and_learns_medicines(seeded):
    rx_id = create_prescription(seeded, _doctor(), {
        "patient_id": "p1",
        "doctor_id": "someone-else",
        "treatments": "Scaling and polishing",
        "medicines": [
            {"medicine_name": "Ibuprofen", "medicine_type": "Tablet", "strength": "400mg",
             "dose_quantity": "1", "frequency": "BD", "duration": "3 days"},
            {"medicine_name": "Chlorhexidine", "medicine_type": ""},
        ],
        "start_date": "2025-06-10",
        "end_date": "2025-06-20",
    })

    rx = get_prescription(seeded, rx_id)
    assert rx.doctor_id == "doc"
    assert rx.patient.name == "Ali Raza"
    assert rx.doctor.name == "Sara Khan"
    assert rx.start_date == date(2025, 6, 10)
    assert [m.medicine_name for m in rx.medicines] == ["Ibuprofen", "Chlorhexidine"]

    names = [m.medicine_name for m in list_medicines(seeded)]
    assert names == ["Ibuprofen"]


def test_admin_may_record_for_a_doctor(seeded):
    rx_id = create_prescription(seeded, _admin(), {"patient_id": "p1", "doctor_id": "doc"})
    assert get_prescription(seeded, rx_id).doctor_id == "doc"


def test_list_prescriptions_scoped_to_own_doctor(seeded):
    _add_rx(seeded, "rx-a", "p1", "doc", treatments="Filling")
    _add_rx(seeded, "rx-b", "p2", "doc2", treatments="Extraction")

    mine = list_prescriptions(seeded, build_scope(_doctor()))
    assert [rx.id for rx in mine] == ["rx-a"]

    everyone = list_prescriptions(seeded, build_scope(_admin()))
    assert {rx.id for rx in everyone} == {"rx-a", "rx-b"}


def test_list_prescriptions_search(seeded):
    _add_rx(seeded, "rx-a", "p1", "doc", treatments="Root canal")
    _add_rx(seeded, "rx-b", "p2", "doc2", treatments="Extraction")
    scope = build_scope(_admin())

    assert [rx.id for rx in list_prescriptions(seeded, scope, "zainab")] == ["rx-b"]
    assert [rx.id for rx in list_prescriptions(seeded, scope, "ROOT")] == ["rx-a"]
    assert [rx.id for rx in list_prescriptions(seeded, scope, "0300")] == ["rx-a"]
    assert list_prescriptions(seeded, scope, "nothing-matches") == []


def test_active_prescriptions_filters_expired(seeded):
    _add_rx(seeded, "running", "p1", "doc", start=PAST, end=FUTURE)
    _add_rx(seeded, "undated", "p1", "doc")
    _add_rx(seeded, "soon", "p1", "doc", start=FUTURE, end=date(2025, 8, 1))
    _add_rx(seeded, "done", "p1", "doc", start=date(2025, 5, 1), end=PAST)

    found = {rx.id for rx in active_prescriptions(seeded, TODAY)}
    assert found == {"running", "undated", "soon"}


def test_patient_prescriptions_newest_first(seeded):
    _add_rx(seeded, "old", "p1", "doc", created_at=datetime(2025, 1, 1))
    _add_rx(seeded, "new", "p1", "doc", created_at=datetime(2025, 5, 1))
    assert [rx.id for rx in patient_prescriptions(seeded, "p1")] == ["new", "old"]


def test_get_and_delete_missing_prescription(seeded):
    with pytest.raises(LookupError):
        get_prescription(seeded, "nope")
    with pytest.raises(LookupError):
        delete_prescription(seeded, "nope")


def test_prescription_by_id_respects_scope(seeded):
    _add_rx(seeded, "rx-c2", "p2", "doc2")
    front = Profile(id="front", role="receptionist", clinic_id="c1", is_active=True)
    for scope in (build_scope(_doctor()), build_scope(front)):
        with pytest.raises(LookupError):
            get_prescription(seeded, "rx-c2", scope)
        with pytest.raises(LookupError):
            delete_prescription(seeded, "rx-c2", scope)

    assert get_prescription(seeded, "rx-c2", build_scope(_admin())).doctor_id == "doc2"
    delete_prescription(seeded, "rx-c2", build_scope(_doctor("doc2", "c2")))
    with seeded.connect() as conn:
        assert conn.execute(select(rx_table.c.id)).first() is None


def test_delete_prescription(seeded):
    _add_rx(seeded, "rx-a", "p1", "doc")
    delete_prescription(seeded, "rx-a")
    with seeded.connect() as conn:
        assert conn.execute(select(rx_table.c.id)).first() is None


# ── Tests: medicines ─────────────────────────────────────────────────

def test_ensure_medicine_is_case_insensitive(seeded):
    assert ensure_medicine(seeded, "Paracetamol", "Tablet", "500mg", _doctor()) is not None
    assert ensure_medicine(seeded, "paracetamol", "Tablet", "", _doctor()) is None
    assert ensure_medicine(seeded, "", "Tablet", "", _doctor()) is None
    assert len(list_medicines(seeded)) == 1


def test_ensure_medicine_skips_unknown_type(seeded):
    assert ensure_medicine(seeded, "Mystery", "Potion", "", _doctor()) is None
    assert list_medicines(seeded) == []


def test_medicine_crud_and_filters(seeded):
    med_id = create_medicine(seeded, _doctor(), {"medicine_name": "Metronidazole", "medicine_type": "Tablet"})
    create_medicine(seeded, _doctor(), {"medicine_name": "Benzydamine", "medicine_type": "Mouthwash"})

    assert [m.medicine_name for m in list_medicines(seeded, search="metro")] == ["Metronidazole"]
    assert [m.medicine_name for m in list_medicines(seeded, medicine_type="Mouthwash")] == ["Benzydamine"]

    update_medicine(seeded, med_id, {"medicine_name": "Metronidazole", "medicine_type": "Syrup"})
    with seeded.connect() as conn:
        kind = conn.execute(select(medicines.c.medicine_type).where(medicines.c.id == med_id)).scalar()
    assert kind == "Syrup"

    with pytest.raises(ValueError):
        create_medicine(seeded, _doctor(), {"medicine_name": ""})
    with pytest.raises(LookupError):
        update_medicine(seeded, "nope", {"medicine_name": "X", "medicine_type": "Tablet"})
