"""
Role-Based Access Control: profile loading, the route gate and clinic scoping.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional

from sqlalchemy import text

from clinic_portal.config import LOGIN_PATH, PORTAL_PATH, PORTAL_ROUTES
from clinic_portal.models import Profile


class GateDecision(Enum):
    PENDING = "pending"
    ALLOW = "allow"
    DENY_LOGIN = "deny-to-login"
    DENY_PORTAL = "deny-to-portal"


def load_profile(engine, user_id: str) -> Optional[Profile]:
    """Fetch the users_profile row for *user_id* (None when absent)."""
    sql = text("""
        SELECT id, name, email, role, clinic_id, is_active, created_at
        FROM users_profile
        WHERE id = :uid
    """)
    with engine.connect() as conn:
        row = conn.execute(sql, {"uid": user_id}).mappings().first()
    if not row:
        return None
    return Profile.from_row(row)


def check_access(is_loading: bool, has_user: bool, profile: Optional[Profile],
                 allowed_roles: Optional[Iterable[str]] = None) -> GateDecision:
    """Decide whether protected content may be shown.

    Precedence: loading, no user, deactivated profile, role mismatch, allow.
    The role check only applies once a profile is known.
    """
    if is_loading:
        return GateDecision.PENDING
    if not has_user:
        return GateDecision.DENY_LOGIN
    if profile is not None and profile.is_active is False:
        return GateDecision.DENY_LOGIN
    if allowed_roles is not None and profile is not None and profile.role not in set(allowed_roles):
        return GateDecision.DENY_PORTAL
    return GateDecision.ALLOW


def redirect_for(decision: GateDecision) -> Optional[str]:
    if decision is GateDecision.DENY_LOGIN:
        return LOGIN_PATH
    if decision is GateDecision.DENY_PORTAL:
        return PORTAL_PATH
    return None


def allowed_roles_for(route: str):
    """Allow-list for a portal route; KeyError for unknown routes."""
    return PORTAL_ROUTES[route]


# ── Clinic scoping ───────────────────────────────────────────────────

@dataclass
class ClinicScope:
    """Row filters a profile's queries must carry."""
    clinic_id: Optional[str]       # None -> every clinic
    own_doctor_id: Optional[str]   # set for doctors on doctor-owned records
    is_admin: bool


def build_scope(profile: Profile) -> ClinicScope:
    """Derive the clinic scope for *profile*.

    Admins see every clinic. Everyone else with a clinic assignment is
    restricted to it. Doctors additionally only see their own prescriptions,
    invoices and appointments.
    """
    is_admin = profile.role == "admin"
    return ClinicScope(
        clinic_id=None if is_admin else profile.clinic_id,
        own_doctor_id=profile.id if profile.role == "doctor" else None,
        is_admin=is_admin,
    )


def can_choose_doctor(profile: Profile) -> bool:
    """Admins and clinic admins may record work on behalf of a doctor."""
    return profile.role in ("admin", "clinic_admin")


def resolve_doctor_id(profile: Profile, requested: Optional[str]) -> str:
    if can_choose_doctor(profile):
        return requested or profile.id
    return profile.id
