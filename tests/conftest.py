"""
Shared fixtures: an in-memory SQLite copy of the schema and a scripted
stand-in for the platform auth service.
"""

from datetime import datetime

import pytest
from sqlalchemy import create_engine, insert
from sqlalchemy.pool import StaticPool

from clinic_portal.auth_client import AuthClient, AuthError
from clinic_portal.database import clinics, create_schema, patients, users_profile
from clinic_portal.models import Session


class FakeAuthClient(AuthClient):
    """Auth client that answers from a user table instead of the network.

    ``users`` maps email -> (password, user_id). The error attributes make
    the matching call fail with that message.
    """

    def __init__(self, users=None, calls=None):
        super().__init__("http://platform.test", "anon-key", http=object())
        self.users = users if users is not None else {}
        self.calls = calls if calls is not None else []
        self.sign_in_error = None
        self.sign_out_error = None
        self.refresh_error = None
        self.get_user_error = None
        self._tokens = {}
        self._counter = 0

    def fork(self):
        return FakeAuthClient(self.users, self.calls)

    def _issue(self, user_id):
        self._counter += 1
        session = Session(
            user_id=user_id,
            access_token=f"access-{user_id}-{self._counter}",
            refresh_token=f"refresh-{user_id}-{self._counter}",
        )
        self._tokens[session.access_token] = user_id
        self._tokens[session.refresh_token] = user_id
        return session

    def sign_in_with_password(self, email, password):
        self.calls.append(("sign_in", email))
        if self.sign_in_error:
            raise AuthError(self.sign_in_error, status=400)
        entry = self.users.get(email)
        if entry is None or entry[0] != password:
            raise AuthError("Invalid login credentials", status=400)
        session = self._issue(entry[1])
        self._emit("SIGNED_IN", session)
        return session

    def refresh_session(self, refresh_token):
        self.calls.append(("refresh", refresh_token))
        if self.refresh_error:
            raise AuthError(self.refresh_error, status=400)
        user_id = self._tokens.get(refresh_token)
        if user_id is None:
            raise AuthError("Invalid Refresh Token: Refresh Token Not Found", status=400)
        session = self._issue(user_id)
        self._emit("TOKEN_REFRESHED", session)
        return session

    def sign_out(self, access_token, scope="global"):
        self.calls.append(("sign_out", scope))
        try:
            if self.sign_out_error and scope != "local":
                raise AuthError(self.sign_out_error, status=500)
        finally:
            self._emit("SIGNED_OUT", None)

    def get_user(self, access_token):
        self.calls.append(("get_user", access_token))
        if self.get_user_error:
            raise self.get_user_error
        user_id = self._tokens.get(access_token)
        if user_id is None:
            raise AuthError("invalid JWT: token is expired", status=401)
        return {"id": user_id}


@pytest.fixture
def fake_auth():
    return FakeAuthClient()


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://", future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    create_schema(eng)
    yield eng
    eng.dispose()


def add_clinic(engine, clinic_id, name="Main Clinic", address="", phone=""):
    with engine.begin() as conn:
        conn.execute(insert(clinics).values(
            id=clinic_id, clinic_name=name, address=address, phone=phone,
            email="", created_at=datetime(2025, 1, 1),
        ))
    return clinic_id


def add_profile(engine, user_id, role, clinic_id=None, name=None, is_active=True, email=None):
    with engine.begin() as conn:
        conn.execute(insert(users_profile).values(
            id=user_id, name=name or user_id.title(), email=email or f"{user_id}@clinic.test",
            role=role, clinic_id=clinic_id, is_active=is_active,
            created_at=datetime(2025, 1, 1),
        ))
    return user_id


def add_patient(engine, patient_id, name, clinic_id=None, doctor_id=None, contact="",
                created_at=None):
    with engine.begin() as conn:
        conn.execute(insert(patients).values(
            id=patient_id, name=name, age=30, gender="other", contact=contact,
            clinic_id=clinic_id, doctor_id=doctor_id,
            created_at=created_at or datetime(2025, 1, 1),
        ))
    return patient_id


@pytest.fixture
def seeded(engine):
    """Two clinics, one member of staff per role, a patient in each clinic."""
    add_clinic(engine, "c1", "Gulberg Clinic", "12 Main Blvd, Lahore", "042-111-222")
    add_clinic(engine, "c2", "DHA Clinic")
    add_profile(engine, "admin", "admin", name="Ayesha Admin")
    add_profile(engine, "manager", "clinic_admin", "c1", name="Bilal Manager")
    add_profile(engine, "doc", "doctor", "c1", name="Sara Khan")
    add_profile(engine, "doc2", "doctor", "c2", name="Umar Farooq")
    add_profile(engine, "front", "receptionist", "c1", name="Hina Desk")
    add_profile(engine, "gone", "doctor", "c1", name="Old Doctor", is_active=False)
    add_patient(engine, "p1", "Ali Raza", "c1", "doc", contact="0300-1234567",
                created_at=datetime(2025, 3, 1))
    add_patient(engine, "p2", "Zainab Noor", "c2", "doc2", contact="0321-7654321",
                created_at=datetime(2025, 3, 2))
    return engine
