import os
import secrets


def _env_or(key: str, default: str) -> str:
    v = os.getenv(key)
    return v if v is not None else default


def _csv(key: str) -> list[str]:
    return [x.strip() for x in (os.getenv(key) or "").split(",") if x.strip()]


ENV = _env_or("ENV", "dev").lower()
_DEV_LIKE = ENV in ("dev", "test")

DB_URL = _env_or("DB_URL", "sqlite+pysqlite:////tmp/omw.db")
DB_SCHEMA = os.getenv("DB_SCHEMA") if not DB_URL.startswith("sqlite") else None
AUTO_CREATE_TABLES = _env_or("AUTO_CREATE_TABLES", "true").lower() == "true"

# JWT
JWT_SECRET = os.getenv("JWT_SECRET") or ""
if not JWT_SECRET and _DEV_LIKE:
    # Tokens from a previous process stop verifying after a restart.
    JWT_SECRET = secrets.token_hex(32)
JWT_ALGORITHM = "HS256"
JWT_EXPIRATION = _env_or("JWT_EXPIRATION", "15h")

# HTTP
ALLOWED_ORIGINS = _env_or("ALLOWED_ORIGINS", "")
FRONTEND_URL = _env_or("FRONTEND_URL", "http://localhost:5173").rstrip("/")
BACKEND_URL = _env_or("BACKEND_URL", "http://localhost:8000").rstrip("/")

# OTP login
_AUTH_EXPOSE_DEFAULT = "true" if _DEV_LIKE else "false"
AUTH_EXPOSE_CODES = _env_or("AUTH_EXPOSE_CODES", _AUTH_EXPOSE_DEFAULT).lower() == "true"
LOGIN_CODE_TTL_SECS = int(_env_or("LOGIN_CODE_TTL_SECS", "300"))
AUTH_RATE_WINDOW_SECS = int(_env_or("AUTH_RATE_WINDOW_SECS", "60"))
AUTH_MAX_PER_PHONE = int(_env_or("AUTH_MAX_PER_PHONE", "5"))

# Google
GOOGLE_CLIENT_ID = _env_or("GOOGLE_CLIENT_ID", "")
GOOGLE_CLIENT_SECRET = _env_or("GOOGLE_CLIENT_SECRET", "")
GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = _env_or("GOOGLE_TOKEN_URL", "https://oauth2.googleapis.com/token")
OAUTH_STATE_TTL_SECS = int(_env_or("OAUTH_STATE_TTL_SECS", "600"))
OAUTH_STATE_COOKIE = "omw_oauth_state"
COOKIE_SECURE = _env_or("COOKIE_SECURE", "false" if _DEV_LIKE else "true").lower() == "true"
GOOGLE_MAPS_API_KEY = _env_or("GOOGLE_MAPS_API_KEY", "")
DISTANCE_MATRIX_URL = "https://maps.googleapis.com/maps/api/distancematrix/json"


def google_audiences() -> list[str]:
    """Client ids accepted as the audience of a mobile ID token."""
    out: list[str] = []
    for key in ("GOOGLE_CLIENT_ID", "GOOGLE_MOBILE_CLIENT_ID", "GOOGLE_ANDROID_CLIENT_ID", "GOOGLE_RELEASE_CLIENT_ID"):
        for cid in _csv(key):
            if cid not in out:
                out.append(cid)
    return out


# Razorpay
# RAZORPAY_KEY_ID / RAZORPAY_KEY_SECRET are env fallbacks for payment_settings.get_api_key.
RAZORPAY_BASE_URL = _env_or("RAZORPAY_BASE_URL", "https://api.razorpay.com/v1").rstrip("/")
RAZORPAY_WEBHOOK_SECRET = _env_or("RAZORPAY_WEBHOOK_SECRET", "")
CURRENCY = _env_or("CURRENCY", "INR")

# Stored API keys are sealed with this key (32 bytes, hex or base64).
PAYMENT_SETTINGS_KEY = _env_or("PAYMENT_SETTINGS_KEY", "")

# Email
SMTP_HOST = _env_or("SMTP_HOST", "")
SMTP_PORT = int(_env_or("SMTP_PORT", "587"))
SMTP_USER = _env_or("SMTP_USER", "")
SMTP_PASSWORD = _env_or("SMTP_PASSWORD", "")
EMAIL_FROM = _env_or("EMAIL_FROM", "OMW <no-reply@omw.local>")

# Payouts: 0 disables timer-driven completion of processing batches.
PAYOUT_AUTO_COMPLETE_SECS = float(_env_or("PAYOUT_AUTO_COMPLETE_SECS", "5"))

# Quotes
QUOTE_TTL_SECS = int(_env_or("QUOTE_TTL_SECS", "600"))
PICKUP_ETA_MINUTES = int(_env_or("PICKUP_ETA_MINUTES", "5"))
CITY_SPEED_KMH = float(_env_or("CITY_SPEED_KMH", "30"))
# Wall-clock zone used for night-fare hours.
TIMEZONE = _env_or("TIMEZONE", "UTC")

DEFAULT_ADMIN_PASSWORD = _env_or("DEFAULT_ADMIN_PASSWORD", "User@123")


def assert_production_ready() -> None:
    if ENV in ("prod", "production", "staging") and not os.getenv("JWT_SECRET"):
        raise RuntimeError("JWT_SECRET must be set outside dev/test")
