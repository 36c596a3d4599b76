"""
Session/Profile Store: the authenticated identity and its profile.

A store is constructed explicitly for each signed-in principal (one per API
token, one per CLI process) and handed to whatever needs it. Sign-in is a
state of the store rather than a side flag, and the session-change handler
consults that state: while a sign-in is in flight, platform events are ignored
so the handler can neither clear what sign-in is about to set nor repeat the
profile fetch sign-in already does.
"""

import json
import os
import sys
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from clinic_portal.auth_client import (
    SIGNED_IN, SIGNED_OUT, TOKEN_REFRESHED, AuthClient, AuthError,
)
from clinic_portal.models import Profile, Session

UNRECOVERABLE_MARKERS = ("Invalid Refresh Token", "Refresh Token Not Found", "JWT")

GENERIC_LOGIN_ERROR = "Invalid email or password. Please try again."


class AuthState(Enum):
    IDLE = "idle"
    SIGNING_IN = "signing_in"
    SIGNED_IN = "signed_in"


@dataclass
class AuthResult:
    """Outcome of sign_in: error is None on success."""
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def is_session_unrecoverable(message: Optional[str]) -> bool:
    """True for errors that mean the refresh token can no longer be used."""
    if not message:
        return False
    return any(marker in message for marker in UNRECOVERABLE_MARKERS)


class SessionStore:
    """Holds session, user id and profile for one principal."""

    def __init__(self, auth_client: AuthClient,
                 profile_loader: Callable[[str], Optional[Profile]]):
        self._auth = auth_client
        self._load_profile = profile_loader
        self.session: Optional[Session] = None
        self.user_id: Optional[str] = None
        self.profile: Optional[Profile] = None
        self.state = AuthState.IDLE
        self.is_loading = False
        self._unsubscribe = auth_client.on_auth_state_change(self.handle_auth_event)

    @property
    def has_user(self) -> bool:
        return self.user_id is not None

    def close(self) -> None:
        self._unsubscribe()

    def _clear(self) -> None:
        self.session = None
        self.user_id = None
        self.profile = None
        self.state = AuthState.IDLE

    def _set_session(self, session: Session) -> None:
        self.session = session
        self.user_id = session.user_id

    def _force_local_sign_out(self) -> None:
        """Drop the session without touching the network."""
        print("[auth] Session unrecoverable, signing out locally", file=sys.stderr)
        self._auth.sign_out(None, scope="local")
        self._clear()

    # ── Sign in / out ────────────────────────────────────────────────

    def sign_in(self, email: str, password: str) -> AuthResult:
        """Exchange credentials, then load and validate the profile.

        Any failure leaves the store with no session, user or profile.
        """
        self.state = AuthState.SIGNING_IN
        self.is_loading = True
        try:
            try:
                session = self._auth.sign_in_with_password(email.strip(), password)
            except AuthError as e:
                print(f"[auth] Sign in error: {e.message}", file=sys.stderr)
                self._clear()
                return AuthResult(error=e.message)

            try:
                profile = self._load_profile(session.user_id)
            except Exception as e:
                print(f"[auth] Profile fetch error during sign in: {e}", file=sys.stderr)
                return self._abort_sign_in(session, "Unable to load user profile. Please try again.")

            if profile is None:
                return self._abort_sign_in(session, "User profile not found. Please contact administrator.")
            if not profile.is_active:
                return self._abort_sign_in(
                    session, "Your account has been deactivated. Please contact administrator.")

            self._set_session(session)
            self.profile = profile
            self.state = AuthState.SIGNED_IN
            print(f"[auth] Signed in: {profile.email or profile.id} (role={profile.role})")
            return AuthResult()
        finally:
            self.is_loading = False

    def _abort_sign_in(self, session: Session, message: str) -> AuthResult:
        try:
            self._auth.sign_out(session.access_token)
        except AuthError as e:
            print(f"[auth] Sign out after failed sign in failed: {e.message}", file=sys.stderr)
        self._clear()
        return AuthResult(error=message)

    def sign_out(self) -> None:
        """Clear all identity state; remote failures are logged only."""
        token = self.session.access_token if self.session else None
        try:
            self._auth.sign_out(token)
        except AuthError as e:
            print(f"[auth] Sign out error: {e.message}", file=sys.stderr)
        finally:
            self._clear()

    # ── Refresh ──────────────────────────────────────────────────────

    def refresh_profile(self) -> None:
        if not self.user_id:
            return
        try:
            profile = self._load_profile(self.user_id)
        except Exception as e:
            print(f"[auth] Error fetching profile: {e}", file=sys.stderr)
            if is_session_unrecoverable(str(e)):
                self._force_local_sign_out()
            return
        if profile is not None:
            self.profile = profile

    def refresh_session(self) -> bool:
        """Exchange the refresh token; the TOKEN_REFRESHED event applies it."""
        if not self.session:
            return False
        try:
            self._auth.refresh_session(self.session.refresh_token)
        except AuthError as e:
            print(f"[auth] Token refresh failed: {e.message}", file=sys.stderr)
            if is_session_unrecoverable(e.message):
                self._force_local_sign_out()
            return False
        return True

    def restore(self, session: Session) -> bool:
        """Re-establish state from a persisted session.

        An expired access token is refreshed once; anything unrecoverable
        degrades to logged out rather than raising.
        """
        self.is_loading = True
        try:
            self._set_session(session)
            self.state = AuthState.SIGNED_IN
            try:
                self._auth.get_user(session.access_token)
            except AuthError as e:
                if e.status != 401 and not is_session_unrecoverable(e.message):
                    print(f"[auth] Session error: {e.message}", file=sys.stderr)
                    self._clear()
                    return False
                if not self.refresh_session():
                    if self.has_user:
                        self._force_local_sign_out()
                    return False
            self.refresh_profile()
            return self.has_user
        finally:
            self.is_loading = False

    # ── Platform events ──────────────────────────────────────────────

    def handle_auth_event(self, event: str, session: Optional[Session]) -> None:
        if self.state is AuthState.SIGNING_IN:
            return

        if event == TOKEN_REFRESHED:
            if session is not None:
                self._set_session(session)
            return

        if event == SIGNED_IN:
            return

        if event == SIGNED_OUT or session is None:
            self._clear()
            return

        self._set_session(session)
        self.state = AuthState.SIGNED_IN
        self.refresh_profile()


# ── Persistence (CLI) ────────────────────────────────────────────────

def save_session(path: str, session: Optional[Session]) -> None:
    if session is None:
        if os.path.exists(path):
            os.remove(path)
        return
    with open(path, "w", encoding="utf-8") as fh:
        json.dump(session.to_dict(), fh)
    os.chmod(path, 0o600)


def load_session(path: str) -> Optional[Session]:
    if not os.path.exists(path):
        return None
    try:
        with open(path, encoding="utf-8") as fh:
            return Session.from_dict(json.load(fh))
    except (OSError, ValueError) as e:
        print(f"[auth] Ignoring unreadable session file: {e}", file=sys.stderr)
        return None
