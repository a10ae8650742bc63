# config.py
from __future__ import annotations
import os, re
from typing import Optional
from pathlib import Path
from dotenv import load_dotenv, find_dotenv
from qrcode.constants import ERROR_CORRECT_H

# Load .env once, globally
load_dotenv(find_dotenv() or (Path(__file__).parent / ".env"))

def _clean(val: Optional[str], default: Optional[str] = None) -> Optional[str]:
    if val is None:
        return default
    v = val.strip()
    if (v.startswith('"') and v.endswith('"')) or (v.startswith("'") and v.endswith("'")):
        v = v[1:-1].strip()
    return v or default


def _maybe_int(name: str, default: Optional[int] = None) -> Optional[int]:
    v = _clean(os.getenv(name))
    try:
        return int(v) if v is not None else default
    except ValueError:
        return default

def _maybe_float(name: str, default: float) -> float:
    v = _clean(os.getenv(name))
    try:
        return float(v) if v is not None else default
    except ValueError:
        return default

def _maybe_bool(name: str, default: bool = False) -> bool:
    v = _clean(os.getenv(name))
    if v is None:
        return default
    return v.lower() in {"1", "true", "yes", "y", "on"}

# App timezone (ticket issue time in emails)
APP_TZ = _clean(os.getenv("APP_TZ"), "Asia/Kolkata")
LOG_LEVEL = _clean(os.getenv("LOG_LEVEL"), "INFO")

# ----- App Defaults -----
EVENT_NAME = _clean(os.getenv("EVENT_NAME"), "maJIStic 2025")
EVENT_DATES = _clean(os.getenv("EVENT_DATES"), "April 11th-12th, 2025")
EVENT_VENUE = _clean(os.getenv("EVENT_VENUE"), "JIS College of Engineering, Kalyani")
EVENT_TIME = _clean(os.getenv("EVENT_TIME"), "10:00 AM - 8:00 PM")
TICKET_ID_PREFIX = _clean(os.getenv("TICKET_ID_PREFIX"), "MJ25-")

# ----- QR ticket rendering -----
# Fixed output size in pixels; the matrix is scaled to fit exactly.
QR_IMAGE_OPTS = {
    "version": None,                 # let qrcode fit automatically
    "error_correction": ERROR_CORRECT_H,
    "box_size": 10,
    "border": 2,
    "size_px": 300,
}
QR_UNKNOWN_PLACEHOLDER = "N/A"

# ----- Ticket pipeline -----
TICKET_SEND_DELAY_SECONDS = _maybe_float("TICKET_SEND_DELAY_SECONDS", 1.0)
DELIVERY_MODE = _clean(os.getenv("DELIVERY_MODE"), "smtp")  # "smtp" | "http"
SEND_ENDPOINT_URL = _clean(os.getenv("SEND_ENDPOINT_URL"), "http://localhost:3000/api/send-qr-email")
SEND_ENDPOINT_TIMEOUT = _maybe_float("SEND_ENDPOINT_TIMEOUT", 30.0)
TICKET_API_KEY = _clean(os.getenv("TICKET_API_KEY"))

# ── SMTP / Email config ───────────────────────────────────────
SMTP_HOST = _clean(os.getenv("SMTP_HOST"), "smtp.gmail.com")
SMTP_PORT = _maybe_int("SMTP_PORT", 465) or 465
SMTP_SECURITY = _clean(os.getenv("SMTP_SECURITY"), "ssl")  # "ssl" | "starttls" | "none"

# Auth (app password recommended for Gmail); checked when a message is sent
SMTP_USERNAME = _clean(os.getenv("GMAIL_ADDRESS"))
SMTP_PASSWORD = _clean(os.getenv("GMAIL_PASSWORD"))

SENDER_EMAIL   = _clean(os.getenv("SENDER_EMAIL"), SMTP_USERNAME or "noreply@majistic.org")
SENDER_NAME    = _clean(os.getenv("SENDER_NAME"), EVENT_NAME)
DEFAULT_BCC    = _clean(os.getenv("DEFAULT_BCC"))
REPLY_TO       = _clean(os.getenv("REPLY_TO"))  # optional
EMAIL_SUBJECT_PREFIX = _clean(os.getenv("EMAIL_SUBJECT_PREFIX"))
EMAIL_DRY_RUN = _maybe_bool("EMAIL_DRY_RUN", False)   # True → log instead of sending
EMAIL_ALLOWLIST_REGEX = _clean(os.getenv("EMAIL_ALLOWLIST_REGEX"))  # e.g. r"@example\.com$"
EVENT_LOGO_URL = _clean(os.getenv("EVENT_LOGO_URL"))

# Optional org header (helps mail clients surface unsubscribe)
ORG_LIST_UNSUBSCRIBE = _clean(os.getenv("ORG_LIST_UNSUBSCRIBE"))

# ----- Database -----
DB_HOST = _clean(os.getenv("DB_HOST"), "localhost")
DB_PORT = _maybe_int("DB_PORT", 5432) or 5432
DB_NAME = _clean(os.getenv("DB_NAME"), "majistic2k25")
DB_USER = _clean(os.getenv("DB_USER"), "postgres")
DB_PASSWORD = _clean(os.getenv("DB_PASSWORD"), "")

SQLALCHEMY_URL = _clean(
    os.getenv("DATABASE_URL"),
    f"postgresql+psycopg2://{DB_USER}:{DB_PASSWORD}@{DB_HOST}:{DB_PORT}/{DB_NAME}",
)

# registration category -> table holding that cohort
REGISTRATION_TABLES = {
    "student": _clean(os.getenv("STUDENT_TABLE"), "registrations"),
    "alumni": _clean(os.getenv("ALUMNI_TABLE"), "alumni_registrations"),
}

# Upload schema controls
UPLOAD_COLUMN_ALIASES = {
    "student_name": "name",
    "alumni_name": "name",
    "full_name": "name",
    "attendee_name": "name",
    "username": "name",
    "email_address": "email",
    "e_mail": "email",
    "mail": "email",
    "jis_id": "institutional_id",
    "student_id": "institutional_id",
    "roll_no": "institutional_id",
    "phone": "mobile",
    "mobile_number": "mobile",
    "dept": "department",
    "registration_type": "category",
    "type": "category",
    "registration_id": "id",
    "transaction_id": "id",
}

UPLOAD_REQUIRED_COLS = ["name", "email"]

UPLOAD_TEXT_COLS = [
    "id", "name", "email", "institutional_id", "department", "mobile",
    "gender", "payment_status", "passout_year", "current_organization", "category",
]

UPLOAD_DEFAULTS = {
    "institutional_id": "",
    "department": "",
    "mobile": "",
    "gender": "",
    "payment_status": "",
    "passout_year": "",
    "current_organization": "",
    "category": "student",
    "ticket_generated": False,
}

UPLOAD_EMAIL_REGEX = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

def validate_config() -> None:
    if SMTP_SECURITY not in {"ssl", "starttls", "none"}:
        raise RuntimeError("SMTP_SECURITY must be 'ssl', 'starttls', or 'none'")
    if DELIVERY_MODE not in {"smtp", "http"}:
        raise RuntimeError("DELIVERY_MODE must be 'smtp' or 'http'")
    if DELIVERY_MODE == "http" and not SEND_ENDPOINT_URL.lower().startswith(("http://", "https://")):
        raise RuntimeError("SEND_ENDPOINT_URL must be an absolute http(s) URL")
    if TICKET_SEND_DELAY_SECONDS < 0:
        raise RuntimeError("TICKET_SEND_DELAY_SECONDS must not be negative")
