import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./zonemeet.db")

# Security - CRITICAL: No default secret key in production
SECRET_KEY = os.getenv("SECRET_KEY")
if not SECRET_KEY:
    import warnings

    warnings.warn(
        "SECRET_KEY not set! Using insecure default - DO NOT USE IN PRODUCTION", RuntimeWarning, stacklevel=2
    )
    SECRET_KEY = "INSECURE-DEV-KEY-CHANGE-IN-PRODUCTION"  # noqa: S105 - Dev fallback only

JWT_ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "60"))
REFRESH_TOKEN_EXPIRE_DAYS = int(os.getenv("REFRESH_TOKEN_EXPIRE_DAYS", "7"))

# Magic links e-mailed to customers (confirm / cancel / reschedule)
MAGIC_LINK_EXPIRY_HOURS = int(os.getenv("MAGIC_LINK_EXPIRY_HOURS", "24"))

# Scheduling defaults
DEFAULT_TIMEZONE = os.getenv("DEFAULT_TIMEZONE", "America/New_York")
DEFAULT_ALLOWED_DURATIONS = [
    int(d) for d in os.getenv("DEFAULT_ALLOWED_DURATIONS", "15,30,45,60,90").split(",")
]
DEFAULT_ADVANCE_BOOKING_DAYS = int(os.getenv("DEFAULT_ADVANCE_BOOKING_DAYS", "30"))
# Slots starting sooner than this are not offered
SLOT_LEAD_MINUTES = int(os.getenv("SLOT_LEAD_MINUTES", "15"))

# Account lockout
LOCKOUT_MAX_ATTEMPTS = int(os.getenv("LOCKOUT_MAX_ATTEMPTS", "5"))
LOCKOUT_PERMANENT_THRESHOLD = int(os.getenv("LOCKOUT_PERMANENT_THRESHOLD", "10"))
LOCKOUT_RESET_WINDOW_MINUTES = int(os.getenv("LOCKOUT_RESET_WINDOW_MINUTES", "30"))

# Frontend base URL for magic links and OAuth redirects
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")
API_BASE_URL = os.getenv("API_BASE_URL", "http://localhost:8000")

# Shared store for lockout counters, token blacklist and rate limits.
# Empty means in-process memory (single worker / tests).
REDIS_URL = os.getenv("REDIS_URL")

# Resend Email Configuration
RESEND_API_KEY = os.getenv("RESEND_API_KEY")
EMAIL_FROM_ADDRESS = os.getenv("EMAIL_FROM_ADDRESS", "Zone Meet <noreply@zone-meet.com>")

# Calendar token encryption key (generate with: python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())")
CALENDAR_ENCRYPTION_KEY = os.getenv("CALENDAR_ENCRYPTION_KEY")

# Google Calendar OAuth Configuration
GOOGLE_CLIENT_ID = os.getenv("GOOGLE_CLIENT_ID")
GOOGLE_CLIENT_SECRET = os.getenv("GOOGLE_CLIENT_SECRET")
GOOGLE_REDIRECT_URI = os.getenv(
    "GOOGLE_REDIRECT_URI", f"{API_BASE_URL}/api/provider/calendar/auth/google/callback"
)

# Outlook (Microsoft Graph) OAuth Configuration
OUTLOOK_CLIENT_ID = os.getenv("OUTLOOK_CLIENT_ID")
OUTLOOK_CLIENT_SECRET = os.getenv("OUTLOOK_CLIENT_SECRET")
OUTLOOK_REDIRECT_URI = os.getenv(
    "OUTLOOK_REDIRECT_URI", f"{API_BASE_URL}/api/provider/calendar/auth/microsoft/callback"
)

# Teams uses its own Azure app registration against the same Graph endpoints
TEAMS_CLIENT_ID = os.getenv("TEAMS_CLIENT_ID")
TEAMS_CLIENT_SECRET = os.getenv("TEAMS_CLIENT_SECRET")
TEAMS_REDIRECT_URI = os.getenv(
    "TEAMS_REDIRECT_URI", f"{API_BASE_URL}/api/provider/calendar/auth/microsoft/callback"
)

# Environment
ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower()
IS_PRODUCTION = ENVIRONMENT == "production"
FRONTEND_ORIGINS = [
    origin.strip() for origin in os.getenv("FRONTEND_ORIGINS", FRONTEND_URL).split(",") if origin.strip()
]

# CSRF double-submit cookie
CSRF_ENABLED = os.getenv("CSRF_ENABLED", "true").lower() == "true"
CSRF_COOKIE_SECURE = os.getenv("CSRF_COOKIE_SECURE", "true" if IS_PRODUCTION else "false").lower() == "true"
