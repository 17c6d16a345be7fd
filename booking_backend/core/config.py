import os

from dotenv import load_dotenv


load_dotenv()


def _get_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _get_list(value: str | None, default: list[str]) -> list[str]:
    if value is None:
        return default
    return [item.strip() for item in value.split(",") if item.strip()]

APP_ENV = os.getenv("APP_ENV", "development")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./booking.db")
DATABASE_ECHO = _get_bool(os.getenv("DATABASE_ECHO"), default=False)

CORS_ALLOW_ORIGINS = _get_list(os.getenv("CORS_ALLOW_ORIGINS"), ["http://localhost:3000"])

JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "change-me")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_EXPIRES_MINUTES = int(os.getenv("JWT_EXPIRES_MINUTES", "60"))

APPOINTMENT_DURATION_MINUTES = int(os.getenv("APPOINTMENT_DURATION_MINUTES", "60"))
SLOT_STEP_MINUTES = int(os.getenv("SLOT_STEP_MINUTES", "30"))
MAX_SYMPTOMS_LENGTH = 1000

PERSISTENCE_TIMEOUT_SECONDS = float(os.getenv("PERSISTENCE_TIMEOUT_SECONDS", "5"))
SLOT_QUERY_ATTEMPTS = int(os.getenv("SLOT_QUERY_ATTEMPTS", "2"))

# memory | database
RATE_LIMIT_BACKEND = os.getenv("RATE_LIMIT_BACKEND", "memory")
RATE_LIMIT_QUERY_WINDOW_MS = int(os.getenv("RATE_LIMIT_QUERY_WINDOW_MS", str(15 * 60 * 1000)))
RATE_LIMIT_QUERY_MAX = int(os.getenv("RATE_LIMIT_QUERY_MAX", "100"))
RATE_LIMIT_BOOKING_WINDOW_MS = int(os.getenv("RATE_LIMIT_BOOKING_WINDOW_MS", str(60 * 60 * 1000)))
RATE_LIMIT_BOOKING_MAX = int(os.getenv("RATE_LIMIT_BOOKING_MAX", "10"))
RATE_LIMIT_SCHEDULE_WINDOW_MS = int(os.getenv("RATE_LIMIT_SCHEDULE_WINDOW_MS", str(15 * 60 * 1000)))
RATE_LIMIT_SCHEDULE_MAX = int(os.getenv("RATE_LIMIT_SCHEDULE_MAX", "100"))

NOTIFICATION_WORKERS = int(os.getenv("NOTIFICATION_WORKERS", "2"))
REMINDER_LOOKAHEAD_HOURS = int(os.getenv("REMINDER_LOOKAHEAD_HOURS", "24"))


def validate_runtime_config() -> None:
    if APP_ENV.lower() == "production" and JWT_SECRET_KEY == "change-me":
        raise RuntimeError("JWT_SECRET_KEY must be set in production.")
    if APPOINTMENT_DURATION_MINUTES <= 0 or SLOT_STEP_MINUTES <= 0:
        raise RuntimeError("APPOINTMENT_DURATION_MINUTES and SLOT_STEP_MINUTES must be positive.")
    if RATE_LIMIT_BACKEND not in {"memory", "database"}:
        raise RuntimeError("RATE_LIMIT_BACKEND must be 'memory' or 'database'.")
