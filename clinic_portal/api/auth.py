"""
App tokens, the per-token session registry and the route decorators.
"""

import sys
import uuid
from datetime import datetime, timedelta
from functools import wraps
from typing import Any, Dict, Optional

import jwt
from flask import jsonify, request

from clinic_portal.config import SECRET_KEY, TOKEN_EXPIRY_HOURS
from clinic_portal.models import Profile
from clinic_portal.rbac import GateDecision, allowed_roles_for, check_access, redirect_for

# In-memory registry: one SessionStore per issued token.
# Structure: {token: {"store": SessionStore, "created_at": datetime, "last_activity": datetime}}
sessions: Dict[str, Dict[str, Any]] = {}


def generate_token(profile: Profile) -> str:
    """Generate a JWT token for a signed-in staff member."""
    payload = {
        "user_id": profile.id,
        "role": profile.role,
        "name": profile.name,
        "jti": uuid.uuid4().hex,
        "iat": datetime.utcnow(),
        "exp": datetime.utcnow() + timedelta(hours=TOKEN_EXPIRY_HOURS),
    }
    return jwt.encode(payload, SECRET_KEY, algorithm="HS256")


def verify_token(token: str) -> Optional[Dict[str, Any]]:
    """Verify a JWT token and return the decoded payload (or None)."""
    try:
        return jwt.decode(token, SECRET_KEY, algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        return None
    except jwt.InvalidTokenError:
        return None


def drop_session(token: str) -> None:
    data = sessions.pop(token, None)
    if data:
        data["store"].close()


def token_required(f):
    """Decorator that protects endpoints with JWT authentication."""
    @wraps(f)
    def decorated(*args, **kwargs):
        token = None

        if "Authorization" in request.headers:
            auth_header = request.headers["Authorization"]
            try:
                token = auth_header.split(" ")[1]
            except IndexError:
                return jsonify({"error": "Invalid authorization header format"}), 401

        if not token:
            token = request.args.get("token")

        if not token:
            return jsonify({"error": "Authentication token is missing"}), 401

        payload = verify_token(token)
        if not payload:
            drop_session(token)
            return jsonify({"error": "Invalid or expired token"}), 401

        if token not in sessions:
            return jsonify({"error": "Session not found. Please login again."}), 401

        request.session_data = sessions[token]
        request.token = token
        sessions[token]["last_activity"] = datetime.utcnow()

        return f(*args, **kwargs)

    return decorated


def portal_route(name: str):
    """Guard a portal endpoint with the role gate for route *name*."""
    allowed = allowed_roles_for(name)

    def wrapper(f):
        @wraps(f)
        @token_required
        def decorated(*args, **kwargs):
            store = request.session_data["store"]
            # picks up deactivation and role changes made since sign-in
            store.refresh_profile()
            decision = check_access(store.is_loading, store.has_user, store.profile, allowed)

            if decision is GateDecision.PENDING:
                return jsonify({"error": "Session is still loading"}), 503
            if decision is GateDecision.DENY_LOGIN:
                drop_session(request.token)
                return jsonify({"error": "Please sign in again.", "redirect": redirect_for(decision)}), 401
            if decision is GateDecision.DENY_PORTAL:
                return jsonify({"error": "Not permitted", "redirect": redirect_for(decision)}), 403

            if store.profile is None:
                print(f"[WARN] No profile for user {store.user_id}", file=sys.stderr)
                return jsonify({"error": "User profile not available"}), 403
            return f(*args, **kwargs)

        return decorated

    return wrapper


def current_store():
    return request.session_data["store"]


def current_profile() -> Profile:
    return request.session_data["store"].profile


def cleanup_expired_sessions():
    """Remove sessions that have been inactive beyond TOKEN_EXPIRY_HOURS."""
    now = datetime.utcnow()
    expired = [
        tok for tok, data in sessions.items()
        if (now - data["last_activity"]).total_seconds() > TOKEN_EXPIRY_HOURS * 3600
    ]
    for tok in expired:
        drop_session(tok)
    if expired:
        print(f"[cleanup] Removed {len(expired)} expired sessions")
