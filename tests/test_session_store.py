"""
Unit tests for the session/profile store.
"""

import os

import pytest

from clinic_portal.auth_client import AuthError
from clinic_portal.models import Profile, Session
from clinic_portal.session_store import (
    AuthState, SessionStore, is_session_unrecoverable, load_session, save_session,
)


# ── Helpers / Fakes ──────────────────────────────────────────────────

class ProfileTable:
    """Profile loader backed by a dict; counts lookups."""
    def __init__(self, profiles=None, error=None):
        self.profiles = profiles or {}
        self.error = error
        self.lookups = 0

    def __call__(self, user_id):
        self.lookups += 1
        if self.error:
            raise self.error
        return self.profiles.get(user_id)


def _profile(user_id="u1", role="doctor", is_active=True, clinic_id="c1"):
    return Profile(id=user_id, role=role, clinic_id=clinic_id, is_active=is_active,
                   name="Sara Khan", email="sara@clinic.test")


@pytest.fixture
def auth(fake_auth):
    fake_auth.users["sara@clinic.test"] = ("secret1", "u1")
    return fake_auth


def _empty(store):
    return store.session is None and store.user_id is None and store.profile is None


# ── Tests: sign_in ───────────────────────────────────────────────────

def test_sign_in_success_sets_session_and_profile(auth):
    table = ProfileTable({"u1": _profile()})
    store = SessionStore(auth, table)

    result = store.sign_in("  sara@clinic.test ", "secret1")

    assert result.ok
    assert result.error is None
    assert store.user_id == "u1"
    assert store.profile.role == "doctor"
    assert store.session.access_token.startswith("access-u1")
    assert store.state is AuthState.SIGNED_IN
    assert store.is_loading is False
    assert ("sign_in", "sara@clinic.test") in auth.calls


def test_sign_in_fetches_profile_once(auth):
    # the SIGNED_IN event fired during sign-in must not trigger a second fetch
    table = ProfileTable({"u1": _profile()})
    store = SessionStore(auth, table)
    store.sign_in("sara@clinic.test", "secret1")
    assert table.lookups == 1


def test_sign_in_wrong_password_returns_platform_message(auth):
    store = SessionStore(auth, ProfileTable({"u1": _profile()}))
    result = store.sign_in("sara@clinic.test", "nope")
    assert not result.ok
    assert result.error == "Invalid login credentials"
    assert _empty(store)
    assert store.is_loading is False


def test_sign_in_missing_profile_signs_out(auth):
    store = SessionStore(auth, ProfileTable({}))
    result = store.sign_in("sara@clinic.test", "secret1")
    assert result.error == "User profile not found. Please contact administrator."
    assert ("sign_out", "global") in auth.calls
    assert _empty(store)


def test_sign_in_deactivated_profile_signs_out(auth):
    store = SessionStore(auth, ProfileTable({"u1": _profile(is_active=False)}))
    result = store.sign_in("sara@clinic.test", "secret1")
    assert result.error == "Your account has been deactivated. Please contact administrator."
    assert ("sign_out", "global") in auth.calls
    assert _empty(store)
    assert store.state is AuthState.IDLE


def test_sign_in_profile_fetch_error(auth):
    store = SessionStore(auth, ProfileTable(error=RuntimeError("connection reset")))
    result = store.sign_in("sara@clinic.test", "secret1")
    assert result.error == "Unable to load user profile. Please try again."
    assert _empty(store)


def test_sign_in_abort_survives_sign_out_failure(auth):
    auth.sign_out_error = "network down"
    store = SessionStore(auth, ProfileTable({}))
    result = store.sign_in("sara@clinic.test", "secret1")
    assert result.error == "User profile not found. Please contact administrator."
    assert _empty(store)


# ── Tests: sign_out ──────────────────────────────────────────────────

def test_sign_out_clears_state(auth):
    store = SessionStore(auth, ProfileTable({"u1": _profile()}))
    store.sign_in("sara@clinic.test", "secret1")
    store.sign_out()
    assert _empty(store)
    assert not store.has_user


def test_sign_out_clears_even_when_remote_fails(auth):
    store = SessionStore(auth, ProfileTable({"u1": _profile()}))
    store.sign_in("sara@clinic.test", "secret1")
    auth.sign_out_error = "network down"
    store.sign_out()
    assert _empty(store)


# ── Tests: refresh ───────────────────────────────────────────────────

def test_refresh_session_applies_new_tokens(auth):
    store = SessionStore(auth, ProfileTable({"u1": _profile()}))
    store.sign_in("sara@clinic.test", "secret1")
    old_token = store.session.access_token

    assert store.refresh_session() is True
    assert store.session.access_token != old_token
    assert store.user_id == "u1"
    assert store.profile is not None


def test_refresh_session_unrecoverable_signs_out_locally(auth):
    store = SessionStore(auth, ProfileTable({"u1": _profile()}))
    store.sign_in("sara@clinic.test", "secret1")
    auth.refresh_error = "Invalid Refresh Token: Already Used"

    assert store.refresh_session() is False
    assert _empty(store)
    assert ("sign_out", "local") in auth.calls


def test_refresh_session_transient_error_keeps_session(auth):
    store = SessionStore(auth, ProfileTable({"u1": _profile()}))
    store.sign_in("sara@clinic.test", "secret1")
    auth.refresh_error = "Auth service unreachable: timeout"

    assert store.refresh_session() is False
    assert store.user_id == "u1"


def test_refresh_session_without_session(auth):
    store = SessionStore(auth, ProfileTable())
    assert store.refresh_session() is False


def test_refresh_profile_picks_up_changes(auth):
    table = ProfileTable({"u1": _profile()})
    store = SessionStore(auth, table)
    store.sign_in("sara@clinic.test", "secret1")
    table.profiles["u1"] = _profile(is_active=False)
    store.refresh_profile()
    assert store.profile.is_active is False


def test_refresh_profile_keeps_previous_when_missing(auth):
    table = ProfileTable({"u1": _profile()})
    store = SessionStore(auth, table)
    store.sign_in("sara@clinic.test", "secret1")
    table.profiles.clear()
    store.refresh_profile()
    assert store.profile.id == "u1"


def test_refresh_profile_jwt_error_signs_out(auth):
    table = ProfileTable({"u1": _profile()})
    store = SessionStore(auth, table)
    store.sign_in("sara@clinic.test", "secret1")
    table.error = RuntimeError("JWT expired")
    store.refresh_profile()
    assert _empty(store)


# ── Tests: restore ───────────────────────────────────────────────────

def test_restore_valid_session(auth):
    store = SessionStore(auth, ProfileTable({"u1": _profile()}))
    store.sign_in("sara@clinic.test", "secret1")
    saved = store.session

    fresh = SessionStore(auth.fork(), ProfileTable({"u1": _profile()}))
    fresh._auth._tokens.update(auth._tokens)
    assert fresh.restore(saved) is True
    assert fresh.profile.id == "u1"
    assert fresh.is_loading is False


def test_restore_expired_token_refreshes(auth):
    saved = Session(user_id="u1", access_token="stale", refresh_token="r-1")
    auth._tokens["r-1"] = "u1"
    store = SessionStore(auth, ProfileTable({"u1": _profile()}))

    assert store.restore(saved) is True
    assert store.session.access_token != "stale"
    assert ("refresh", "r-1") in auth.calls


def test_restore_unusable_refresh_token_signs_out(auth):
    saved = Session(user_id="u1", access_token="stale", refresh_token="unknown")
    store = SessionStore(auth, ProfileTable({"u1": _profile()}))

    assert store.restore(saved) is False
    assert _empty(store)
    assert ("sign_out", "local") in auth.calls


def test_restore_other_error_clears(auth):
    auth.get_user_error = AuthError("Auth service unreachable: timeout", status=None)
    saved = Session(user_id="u1", access_token="a", refresh_token="r")
    store = SessionStore(auth, ProfileTable({"u1": _profile()}))

    assert store.restore(saved) is False
    assert _empty(store)


# ── Tests: platform events ───────────────────────────────────────────

def test_external_sign_out_event_clears(auth):
    store = SessionStore(auth, ProfileTable({"u1": _profile()}))
    store.sign_in("sara@clinic.test", "secret1")
    auth._emit("SIGNED_OUT", None)
    assert _empty(store)


def test_user_updated_event_reloads_profile(auth):
    table = ProfileTable({"u1": _profile()})
    store = SessionStore(auth, table)
    session = Session(user_id="u1", access_token="a", refresh_token="r")
    auth._emit("USER_UPDATED", session)
    assert store.user_id == "u1"
    assert store.profile.id == "u1"
    assert store.state is AuthState.SIGNED_IN


def test_events_ignored_while_signing_in(auth):
    store = SessionStore(auth, ProfileTable())
    store.state = AuthState.SIGNING_IN
    auth._emit("USER_UPDATED", Session(user_id="u9", access_token="a", refresh_token="r"))
    assert store.user_id is None


def test_close_unsubscribes(auth):
    store = SessionStore(auth, ProfileTable({"u1": _profile()}))
    store.sign_in("sara@clinic.test", "secret1")
    store.close()
    auth._emit("SIGNED_OUT", None)
    assert store.user_id == "u1"


def test_forked_clients_do_not_share_events(auth):
    a = SessionStore(auth.fork(), ProfileTable({"u1": _profile()}))
    b = SessionStore(auth.fork(), ProfileTable({"u1": _profile()}))
    a.sign_in("sara@clinic.test", "secret1")
    b.sign_in("sara@clinic.test", "secret1")
    a.sign_out()
    assert a.user_id is None
    assert b.user_id == "u1"


# ── Tests: helpers ───────────────────────────────────────────────────

@pytest.mark.parametrize("message,expected", [
    ("Invalid Refresh Token: Already Used", True),
    ("Refresh Token Not Found", True),
    ("invalid JWT: unable to parse", True),
    ("Auth service unreachable", False),
    ("", False),
    (None, False),
])
def test_is_session_unrecoverable(message, expected):
    assert is_session_unrecoverable(message) is expected


def test_save_and_load_session(tmp_path):
    path = str(tmp_path / "session.json")
    session = Session(user_id="u1", access_token="a", refresh_token="r", expires_at=1700000000)
    save_session(path, session)
    assert oct(os.stat(path).st_mode & 0o777) == "0o600"
    assert load_session(path) == session

    save_session(path, None)
    assert not os.path.exists(path)
    assert load_session(path) is None


def test_load_session_ignores_garbage(tmp_path):
    path = tmp_path / "session.json"
    path.write_text("{not json")
    assert load_session(str(path)) is None
