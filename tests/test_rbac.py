"""
Unit tests for RBAC – the route gate, profile loading and clinic scoping.
"""

import itertools

import pytest

from clinic_portal.config import LOGIN_PATH, PORTAL_PATH, PORTAL_ROUTES, ROLES, get_env
from clinic_portal.models import Profile
from clinic_portal.rbac import (
    GateDecision, allowed_roles_for, build_scope, can_choose_doctor, check_access,
    load_profile, redirect_for, resolve_doctor_id,
)


def _profile(role="doctor", is_active=True, clinic_id="c1", user_id="u1"):
    return Profile(id=user_id, role=role, clinic_id=clinic_id, is_active=is_active)


# ── Tests: get_env ───────────────────────────────────────────────────

def test_get_env_ok(monkeypatch):
    monkeypatch.setenv("X", "123")
    assert get_env("X") == "123"


def test_get_env_missing_exits(monkeypatch, capsys):
    monkeypatch.delenv("MISSING_ENV", raising=False)
    with pytest.raises(SystemExit) as e:
        get_env("MISSING_ENV")
    assert e.value.code == 1
    err = capsys.readouterr().err
    assert "ERROR: env var MISSING_ENV is not set" in err


# ── Tests: check_access ──────────────────────────────────────────────

def test_loading_is_pending_regardless_of_everything_else():
    for has_user, profile, allowed in itertools.product(
        (True, False),
        (None, _profile(), _profile(is_active=False)),
        (None, {"admin"}),
    ):
        assert check_access(True, has_user, profile, allowed) is GateDecision.PENDING


def test_no_user_goes_to_login():
    assert check_access(False, False, None) is GateDecision.DENY_LOGIN
    assert check_access(False, False, _profile(), {"doctor"}) is GateDecision.DENY_LOGIN


def test_deactivated_profile_goes_to_login_even_with_matching_role():
    decision = check_access(False, True, _profile(is_active=False), {"doctor"})
    assert decision is GateDecision.DENY_LOGIN


def test_role_mismatch_goes_to_portal():
    decision = check_access(False, True, _profile(role="receptionist"), {"admin", "doctor"})
    assert decision is GateDecision.DENY_PORTAL


def test_allowed_role_passes():
    assert check_access(False, True, _profile(role="doctor"), {"admin", "doctor"}) is GateDecision.ALLOW


def test_no_allow_list_lets_any_active_user_in():
    for role in ROLES:
        assert check_access(False, True, _profile(role=role), None) is GateDecision.ALLOW


def test_missing_profile_with_allow_list_is_allowed():
    assert check_access(False, True, None, {"admin"}) is GateDecision.ALLOW


@pytest.mark.parametrize("route", sorted(PORTAL_ROUTES))
def test_route_table_matches_gate(route):
    allowed = allowed_roles_for(route)
    for role in ROLES:
        decision = check_access(False, True, _profile(role=role), allowed)
        expected = GateDecision.ALLOW if allowed is None or role in allowed else GateDecision.DENY_PORTAL
        assert decision is expected, (route, role)


def test_billing_and_prescriptions_are_admin_and_doctor_only():
    assert allowed_roles_for("billing") == {"admin", "doctor"}
    assert allowed_roles_for("prescriptions") == {"admin", "doctor"}
    assert allowed_roles_for("users") == {"admin"}


def test_unknown_route_raises():
    with pytest.raises(KeyError):
        allowed_roles_for("nowhere")


def test_redirect_targets():
    assert redirect_for(GateDecision.DENY_LOGIN) == LOGIN_PATH
    assert redirect_for(GateDecision.DENY_PORTAL) == PORTAL_PATH
    assert redirect_for(GateDecision.ALLOW) is None
    assert redirect_for(GateDecision.PENDING) is None


# ── Tests: load_profile ──────────────────────────────────────────────

def test_load_profile_found(seeded):
    profile = load_profile(seeded, "doc")
    assert profile.role == "doctor"
    assert profile.clinic_id == "c1"
    assert profile.is_active is True
    assert profile.name == "Sara Khan"


def test_load_profile_inactive(seeded):
    assert load_profile(seeded, "gone").is_active is False


def test_load_profile_missing(seeded):
    assert load_profile(seeded, "nobody") is None


# ── Tests: scoping ───────────────────────────────────────────────────

def test_admin_scope_sees_every_clinic():
    scope = build_scope(_profile(role="admin", clinic_id=None))
    assert scope.clinic_id is None
    assert scope.own_doctor_id is None
    assert scope.is_admin


def test_doctor_scope_is_own_clinic_and_own_records():
    scope = build_scope(_profile(role="doctor", clinic_id="c1", user_id="d7"))
    assert scope.clinic_id == "c1"
    assert scope.own_doctor_id == "d7"
    assert not scope.is_admin


def test_receptionist_scope_is_clinic_only():
    scope = build_scope(_profile(role="receptionist", clinic_id="c2"))
    assert scope.clinic_id == "c2"
    assert scope.own_doctor_id is None


def test_resolve_doctor_id():
    admin = _profile(role="admin", user_id="a1")
    doctor = _profile(role="doctor", user_id="d1")
    assert can_choose_doctor(admin)
    assert not can_choose_doctor(doctor)
    assert resolve_doctor_id(admin, "d9") == "d9"
    assert resolve_doctor_id(admin, None) == "a1"
    assert resolve_doctor_id(doctor, "d9") == "d1"
