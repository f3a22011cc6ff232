import os
from pathlib import Path

from dotenv import load_dotenv

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

APP_ENV = os.environ.get("APP_ENV") or os.environ.get("ENV") or "development"
IS_PROD = APP_ENV.lower() in {"prod", "production"}

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

# JWT Settings
_DEFAULT_JWT_SECRET = "habit-tracker-secret-key-2024"
_jwt_secret_env = os.environ.get("JWT_SECRET")
JWT_SECRET = _jwt_secret_env or _DEFAULT_JWT_SECRET
JWT_SECRET_SOURCE = "env" if _jwt_secret_env else "default"
JWT_ALGORITHM = "HS256"
JWT_EXPIRATION_HOURS = 24

CORS_ORIGINS = os.environ.get('CORS_ORIGINS', '*')

# Reminder scheduling
DEFAULT_TIMEZONE = "UTC"
REMINDER_SEND_TIMEOUT = float(os.environ.get("REMINDER_SEND_TIMEOUT", "10"))
UPCOMING_WINDOW_HOURS = int(os.environ.get("UPCOMING_WINDOW_HOURS", "24"))
# Tolerated client clock skew when checking that a start date is not in the past.
START_DATE_SKEW_SECONDS = 60
