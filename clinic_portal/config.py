"""
Centralised configuration constants and environment helpers.
"""

import os
import sys

from dotenv import load_dotenv

load_dotenv()

# ── Roles / routing ──────────────────────────────────────────────────
ROLES = ("admin", "clinic_admin", "doctor", "receptionist")

LOGIN_PATH = "/staff-login"
PORTAL_PATH = "/portal"

# None means "any authenticated, active staff member".
PORTAL_ROUTES = {
    "dashboard": None,
    "patients": None,
    "appointments": None,
    "prescriptions": {"admin", "doctor"},
    "billing": {"admin", "doctor"},
    "medicines": {"admin", "clinic_admin", "doctor"},
    "services": {"admin", "doctor", "receptionist"},
    "users": {"admin"},
    "clinics": {"admin"},
}

# ── User provisioning ────────────────────────────────────────────────
PROVISIONING_ROLES = {"admin", "clinic_admin"}
MIN_PASSWORD_LENGTH = 6
DEFAULT_NEW_USER_ROLE = "receptionist"

BOOTSTRAP_ADMIN_EMAIL = os.getenv("BOOTSTRAP_ADMIN_EMAIL", "admin@dralidental.com")
BOOTSTRAP_ADMIN_NAME = "Super Admin"

# ── Storage ──────────────────────────────────────────────────────────
PATIENT_FILES_BUCKET = "patient-files"
MAX_UPLOAD_BYTES = 50 * 1024 * 1024

# ── Listing limits ───────────────────────────────────────────────────
PATIENTS_PAGE_SIZE = 10
RECENT_PRESCRIPTIONS_LIMIT = 10
DASHBOARD_RECENT_PATIENTS = 5

# ── Printing ─────────────────────────────────────────────────────────
PRINT_DELAY_MS = 250
PDF_PRINT_DELAY_MS = 500
PDF_PAGE_SIZE = "A4"
PDF_PAGE_MARGIN = "10mm"

CLINIC_DISPLAY_NAME = os.getenv("CLINIC_DISPLAY_NAME", "Dr Ali Dental Centre")
CURRENCY_CODE = "PKR"

# ── API server ───────────────────────────────────────────────────────
SECRET_KEY = os.getenv("JWT_SECRET_KEY", "dev-secret-key-change-in-production")
TOKEN_EXPIRY_HOURS = 24
PLATFORM_TIMEOUT_SECONDS = 10

# ── CLI ──────────────────────────────────────────────────────────────
SESSION_FILE = os.getenv(
    "CLINIC_PORTAL_SESSION_FILE",
    os.path.join(os.path.expanduser("~"), ".clinic_portal_session.json"),
)


def get_env(name: str) -> str:
    """Return an environment variable or exit with an error message."""
    value = os.getenv(name)
    if not value:
        print(f"ERROR: env var {name} is not set", file=sys.stderr)
        sys.exit(1)
    return value
