"""
Object storage adapter for patient files, plus the path helpers used to name
and locate uploaded objects.
"""

import re
from datetime import datetime
from typing import List, Optional
from urllib.parse import unquote

import requests

from clinic_portal.config import PATIENT_FILES_BUCKET, PLATFORM_TIMEOUT_SECONDS, get_env

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9._-]")

_URL_MARKERS = (
    f"/object/public/{PATIENT_FILES_BUCKET}/",
    f"/object/authenticated/{PATIENT_FILES_BUCKET}/",
    f"/object/sign/{PATIENT_FILES_BUCKET}/",
)


class StorageError(Exception):
    """Raised when an upload, removal or lookup against storage fails."""


# ── Path helpers ─────────────────────────────────────────────────────

def sanitize_filename(name: str) -> str:
    return _UNSAFE_CHARS.sub("_", name)


def build_object_path(patient_id: str, filename: str, now: Optional[datetime] = None) -> str:
    """``{patient_id}/{epoch_ms}_{sanitized filename}``."""
    now = now or datetime.now()
    stamp = int(now.timestamp() * 1000)
    return f"{patient_id}/{stamp}_{sanitize_filename(filename)}"


def classify_file_type(content_type: Optional[str]) -> str:
    content_type = content_type or ""
    if content_type.startswith("image/"):
        return "image"
    if content_type == "application/pdf":
        return "pdf"
    return "document"


def extract_storage_path(file_url: str) -> str:
    """Recover the object key from a stored URL.

    Values that are not http(s) URLs are already keys and are returned as-is.
    """
    if not file_url.startswith("http"):
        return file_url
    for marker in _URL_MARKERS:
        idx = file_url.find(marker)
        if idx != -1:
            return unquote(file_url[idx + len(marker):].split("?", 1)[0])
    generic = "/storage/v1/object/"
    idx = file_url.find(generic)
    if idx != -1:
        rest = file_url[idx + len(generic):]
        # drop the leading segment
        return unquote("/".join(rest.split("/")[1:]).split("?", 1)[0])
    return file_url


# ── Client ───────────────────────────────────────────────────────────

class StorageClient:
    """Upload, remove and resolve objects in one bucket."""

    def __init__(self, base_url: str, api_key: str, bucket: str = PATIENT_FILES_BUCKET,
                 http=None, timeout: float = PLATFORM_TIMEOUT_SECONDS):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.bucket = bucket
        self.timeout = timeout
        self._http = http or requests.Session()

    def _headers(self, content_type: Optional[str] = None):
        headers = {"apikey": self.api_key, "Authorization": f"Bearer {self.api_key}"}
        if content_type:
            headers["Content-Type"] = content_type
        return headers

    def _check(self, resp, action: str) -> None:
        if resp.status_code >= 400:
            try:
                detail = resp.json().get("message") or resp.text
            except ValueError:
                detail = resp.text
            raise StorageError(f"{action} failed ({resp.status_code}): {detail}")

    def upload(self, path: str, content: bytes, content_type: str) -> str:
        url = f"{self.base_url}/storage/v1/object/{self.bucket}/{path}"
        try:
            resp = self._http.post(
                url, data=content, headers=self._headers(content_type or "application/octet-stream"),
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise StorageError(f"Upload failed: {e}")
        self._check(resp, "Upload")
        return path

    def remove(self, paths: List[str]) -> None:
        url = f"{self.base_url}/storage/v1/object/{self.bucket}"
        try:
            resp = self._http.delete(
                url, json={"prefixes": list(paths)}, headers=self._headers("application/json"),
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise StorageError(f"Remove failed: {e}")
        self._check(resp, "Remove")

    def public_url(self, path: str) -> str:
        return f"{self.base_url}/storage/v1/object/public/{self.bucket}/{path}"


def init_storage_client() -> StorageClient:
    client = StorageClient(get_env("PLATFORM_URL"), get_env("PLATFORM_SERVICE_KEY"))
    print(f"[init] Storage bucket '{client.bucket}'")
    return client
