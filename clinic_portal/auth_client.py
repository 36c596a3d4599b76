"""
Thin adapter over the hosted platform's authentication REST endpoints.

Besides the request/response calls, the client keeps a list of listeners and
emits session-change events (SIGNED_IN, SIGNED_OUT, TOKEN_REFRESHED) the same
way the platform's own SDKs do, so a session store can react to them.
"""

import sys
from typing import Any, Callable, Dict, List, Optional

import requests

from clinic_portal.config import PLATFORM_TIMEOUT_SECONDS, get_env
from clinic_portal.models import Session

SIGNED_IN = "SIGNED_IN"
SIGNED_OUT = "SIGNED_OUT"
TOKEN_REFRESHED = "TOKEN_REFRESHED"
USER_UPDATED = "USER_UPDATED"

AuthListener = Callable[[str, Optional[Session]], None]


class AuthError(Exception):
    """Raised for any failed platform auth call."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status = status


def _session_from_payload(data: Dict[str, Any]) -> Session:
    user = data.get("user") or {}
    if not user.get("id") or not data.get("access_token"):
        raise AuthError("No user returned from sign in")
    return Session(
        user_id=str(user["id"]),
        access_token=data["access_token"],
        refresh_token=data.get("refresh_token") or "",
        expires_at=data.get("expires_at"),
    )


class AuthClient:
    """Public (anon key) auth client: sign in/out, refresh, current user."""

    def __init__(self, base_url: str, api_key: str, http=None,
                 timeout: float = PLATFORM_TIMEOUT_SECONDS):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._http = http or requests.Session()
        self._listeners: List[AuthListener] = []

    def fork(self) -> "AuthClient":
        """Same endpoint and connection pool, separate listener list.

        Each signed-in principal gets its own fork so one session's events
        never reach another session's store.
        """
        return type(self)(self.base_url, self.api_key, http=self._http, timeout=self.timeout)

    # ── Events ───────────────────────────────────────────────────────

    def on_auth_state_change(self, listener: AuthListener) -> Callable[[], None]:
        """Register *listener*; returns a callable that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, event: str, session: Optional[Session]) -> None:
        for listener in list(self._listeners):
            listener(event, session)

    # ── HTTP ─────────────────────────────────────────────────────────

    def _headers(self, bearer: Optional[str] = None) -> Dict[str, str]:
        return {
            "apikey": self.api_key,
            "Authorization": f"Bearer {bearer or self.api_key}",
            "Content-Type": "application/json",
        }

    def _request(self, method: str, path: str, bearer: Optional[str] = None,
                 json: Optional[Dict[str, Any]] = None,
                 params: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        url = f"{self.base_url}/auth/v1{path}"
        try:
            resp = self._http.request(
                method, url, headers=self._headers(bearer), json=json,
                params=params, timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise AuthError(f"Auth service unreachable: {e}")

        try:
            payload = resp.json() if resp.content else {}
        except ValueError:
            payload = {}

        if resp.status_code >= 400:
            message = (
                payload.get("error_description")
                or payload.get("msg")
                or payload.get("message")
                or payload.get("error")
                or f"HTTP {resp.status_code}"
            )
            raise AuthError(str(message), status=resp.status_code)
        return payload

    # ── Operations ───────────────────────────────────────────────────

    def sign_in_with_password(self, email: str, password: str) -> Session:
        data = self._request(
            "POST", "/token", params={"grant_type": "password"},
            json={"email": email, "password": password},
        )
        session = _session_from_payload(data)
        self._emit(SIGNED_IN, session)
        return session

    def refresh_session(self, refresh_token: str) -> Session:
        if not refresh_token:
            raise AuthError("Refresh Token Not Found")
        data = self._request(
            "POST", "/token", params={"grant_type": "refresh_token"},
            json={"refresh_token": refresh_token},
        )
        session = _session_from_payload(data)
        self._emit(TOKEN_REFRESHED, session)
        return session

    def sign_out(self, access_token: Optional[str], scope: str = "global") -> None:
        """Revoke the session remotely unless *scope* is "local".

        SIGNED_OUT is emitted even when the remote call fails.
        """
        try:
            if scope != "local" and access_token:
                self._request("POST", "/logout", bearer=access_token, params={"scope": scope})
        finally:
            self._emit(SIGNED_OUT, None)

    def get_user(self, access_token: str) -> Dict[str, Any]:
        user = self._request("GET", "/user", bearer=access_token)
        if not user.get("id"):
            raise AuthError("no user found", status=401)
        return user


class AdminAuthClient(AuthClient):
    """Service-key client for privileged user management.

    Admin endpoints authenticate with the service key itself, so calls are
    made without a user bearer token.
    """

    def create_user(self, email: str, password: str,
                    user_metadata: Optional[Dict[str, Any]] = None,
                    email_confirm: bool = True) -> Dict[str, Any]:
        data = self._request("POST", "/admin/users", json={
            "email": email,
            "password": password,
            "email_confirm": email_confirm,
            "user_metadata": user_metadata or {},
        })
        user = data.get("user", data)
        if not user.get("id"):
            raise AuthError("Platform did not return the created user")
        return user

    def update_user(self, user_id: str, attributes: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("PUT", f"/admin/users/{user_id}", json=attributes)

    def delete_user(self, user_id: str) -> None:
        self._request("DELETE", f"/admin/users/{user_id}")

    def list_users(self) -> List[Dict[str, Any]]:
        data = self._request("GET", "/admin/users")
        return list(data.get("users") or [])


def init_auth_client() -> AuthClient:
    """Build the public auth client from the environment."""
    client = AuthClient(get_env("PLATFORM_URL"), get_env("PLATFORM_ANON_KEY"))
    print(f"[init] Auth client for {client.base_url}")
    return client


def init_admin_client() -> AdminAuthClient:
    """Build the service-key client; only the provisioning function needs it."""
    try:
        return AdminAuthClient(get_env("PLATFORM_URL"), get_env("PLATFORM_SERVICE_KEY"))
    except SystemExit:
        print("[init] PLATFORM_SERVICE_KEY missing; user provisioning disabled.", file=sys.stderr)
        raise
