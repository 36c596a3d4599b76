"""
Privileged user provisioning: one endpoint, four actions.

The caller's bearer token is resolved with the platform, and the caller's own
profile must carry a provisioning role before anything is changed. On
``create``, a failed profile write removes the auth user that was just
created, so no credential is left without a profile.
"""

import sys
import traceback
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import insert, select, update
from sqlalchemy.exc import SQLAlchemyError

from clinic_portal.auth_client import AdminAuthClient, AuthError
from clinic_portal.config import (
    BOOTSTRAP_ADMIN_EMAIL, BOOTSTRAP_ADMIN_NAME, DEFAULT_NEW_USER_ROLE,
    MIN_PASSWORD_LENGTH, PROVISIONING_ROLES, ROLES,
)
from clinic_portal.database import users_profile, utcnow

Response = Tuple[int, Dict[str, Any]]

_PROFILE_FIELDS = ("name", "role", "clinic_id", "is_active")


def _error(status: int, message: str) -> Response:
    return status, {"error": message}


def _password_error(password: Any) -> Optional[Response]:
    if not isinstance(password, str):
        return _error(400, "Password must be a string.")
    if len(password) < MIN_PASSWORD_LENGTH:
        return _error(400, f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")
    return None


def _caller_role(engine, user_id: str) -> Optional[str]:
    with engine.connect() as conn:
        row = conn.execute(
            select(users_profile.c.role).where(users_profile.c.id == user_id)
        ).first()
    return row[0] if row else None


def upsert_profile(engine, user_id: str, values: Dict[str, Any]) -> None:
    """Insert or overwrite the profile row for *user_id*."""
    role = values.get("role")
    if role is not None and role not in ROLES:
        raise ValueError(f"invalid role '{role}'")
    with engine.begin() as conn:
        exists = conn.execute(
            select(users_profile.c.id).where(users_profile.c.id == user_id)
        ).first()
        if exists:
            conn.execute(update(users_profile).where(users_profile.c.id == user_id).values(**values))
        else:
            conn.execute(insert(users_profile).values(id=user_id, created_at=utcnow(), **values))


# ── Actions ──────────────────────────────────────────────────────────

def _update_password(body: Dict[str, Any], auth_admin: AdminAuthClient) -> Response:
    user_id, password = body.get("user_id"), body.get("password")
    if not user_id or not password:
        return _error(400, "user_id and password are required.")
    bad = _password_error(password)
    if bad:
        return bad
    try:
        auth_admin.update_user(user_id, {"password": password})
    except AuthError as e:
        return _error(400, e.message)
    return 200, {"success": True}


def _delete(body: Dict[str, Any], caller_id: str, auth_admin: AdminAuthClient) -> Response:
    user_id = body.get("user_id")
    if not user_id:
        return _error(400, "user_id is required.")
    if user_id == caller_id:
        return _error(400, "You cannot delete your own account.")
    try:
        auth_admin.delete_user(user_id)
    except AuthError as e:
        return _error(400, e.message)
    return 200, {"success": True}


def _update_profile(body: Dict[str, Any], auth_admin: AdminAuthClient, engine) -> Response:
    user_id = body.get("user_id")
    if not user_id:
        return _error(400, "user_id is required.")

    changes = {k: body[k] for k in _PROFILE_FIELDS if k in body}
    if "role" in changes and changes["role"] not in ROLES:
        return _error(400, f"invalid role '{changes['role']}'")
    if changes:
        try:
            with engine.begin() as conn:
                conn.execute(update(users_profile).where(users_profile.c.id == user_id).values(**changes))
        except SQLAlchemyError as e:
            return _error(400, str(getattr(e, "orig", None) or e))

    meta = {k: body[k] for k in ("name", "role") if k in body}
    if meta:
        try:
            auth_admin.update_user(user_id, {"user_metadata": meta})
        except AuthError as e:
            print(f"[provision] Metadata update for {user_id} failed: {e.message}", file=sys.stderr)
    return 200, {"success": True}


def _create(body: Dict[str, Any], auth_admin: AdminAuthClient, engine) -> Response:
    name, email, password = body.get("name"), body.get("email"), body.get("password")
    if not email or not password or not name:
        return _error(400, "Name, email, and password are required.")
    if not isinstance(name, str) or not isinstance(email, str):
        return _error(400, "Name and email must be strings.")
    bad = _password_error(password)
    if bad:
        return bad

    role = body.get("role") or DEFAULT_NEW_USER_ROLE
    try:
        user = auth_admin.create_user(
            email, password, user_metadata={"name": name, "role": role}, email_confirm=True,
        )
    except AuthError as e:
        return _error(400, e.message)

    try:
        upsert_profile(engine, user["id"], {
            "name": name,
            "email": email,
            "role": role,
            "clinic_id": body.get("clinic_id") or None,
            "is_active": True,
        })
    except (SQLAlchemyError, ValueError) as e:
        reason = str(getattr(e, "orig", None) or e)
        try:
            auth_admin.delete_user(user["id"])
        except AuthError as cleanup_err:
            print(f"[provision] ORPHANED auth user {user['id']} ({email}): "
                  f"cleanup failed: {cleanup_err.message}", file=sys.stderr)
        return _error(400, f"Profile error: {reason}")

    return 200, {"user": user}


# ── Entry point ──────────────────────────────────────────────────────

def handle_provisioning(authorization: Optional[str], body: Any,
                        auth_admin: AdminAuthClient, engine) -> Response:
    """Authorize the caller, then dispatch on ``body["action"]``.

    Returns ``(http_status, json_payload)``.
    """
    try:
        if not authorization:
            return _error(401, "Unauthorized: No Authorization header")

        token = authorization.replace("Bearer ", "", 1)
        try:
            caller = auth_admin.get_user(token)
        except AuthError as e:
            return _error(401, f"Unauthorized: {e.message}")

        role = _caller_role(engine, caller["id"])
        if role not in PROVISIONING_ROLES:
            return _error(403, f"Access denied. Role: {role or 'no profile found'}")

        if not isinstance(body, dict):
            return _error(400, "Invalid JSON body")

        action = body.get("action") or "create"
        print(f"[provision] {action} requested by {caller['id']} ({role})")
        if action == "update_password":
            return _update_password(body, auth_admin)
        if action == "delete":
            return _delete(body, caller["id"], auth_admin)
        if action == "update_profile":
            return _update_profile(body, auth_admin, engine)
        return _create(body, auth_admin, engine)
    except Exception as e:
        traceback.print_exc()
        return _error(500, f"Unexpected error: {e}")


def bootstrap_admin(auth_admin: AdminAuthClient, engine, password: str,
                    email: str = BOOTSTRAP_ADMIN_EMAIL) -> Dict[str, Any]:
    """Recreate the initial admin account, replacing any existing one."""
    existing = [u for u in auth_admin.list_users() if u.get("email") == email]
    for user in existing:
        with engine.begin() as conn:
            conn.execute(users_profile.delete().where(users_profile.c.id == user["id"]))
        auth_admin.delete_user(user["id"])
        print(f"[provision] Removed previous admin {user['id']}")

    user = auth_admin.create_user(
        email, password, user_metadata={"name": BOOTSTRAP_ADMIN_NAME, "role": "admin"},
    )
    upsert_profile(engine, user["id"], {
        "name": BOOTSTRAP_ADMIN_NAME,
        "email": email,
        "role": "admin",
        "clinic_id": None,
        "is_active": True,
    })
    return {"message": "Admin created successfully", "email": email, "user_id": user["id"]}
