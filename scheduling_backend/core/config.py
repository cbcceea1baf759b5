import os

from dotenv import load_dotenv


load_dotenv()


def _get_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _get_int(value: str | None, default: int) -> int:
    if value is None or not value.strip():
        return default
    return int(value)


def _get_list(value: str | None, default: list[str]) -> list[str]:
    if value is None:
        return default
    return [item.strip() for item in value.split(",") if item.strip()]

APP_ENV = os.getenv("APP_ENV", "development")

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./scheduling.db")
DATABASE_ECHO = _get_bool(os.getenv("DATABASE_ECHO"), default=False)

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

CORS_ALLOWED_ORIGINS = _get_list(os.getenv("CORS_ALLOWED_ORIGINS"), ["http://localhost:4200"])

JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "change-me")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_EXPIRES_MINUTES = _get_int(os.getenv("JWT_EXPIRES_MINUTES"), 60)

# Scheduling policy
CANCELLATION_NOTICE_HOURS = _get_int(os.getenv("CANCELLATION_NOTICE_HOURS"), 24)
DEFAULT_APPOINTMENT_DURATION_MINUTES = _get_int(os.getenv("DEFAULT_APPOINTMENT_DURATION_MINUTES"), 50)
DEFAULT_BUFFER_TIME_MINUTES = _get_int(os.getenv("DEFAULT_BUFFER_TIME_MINUTES"), 10)
MAX_APPOINTMENT_DURATION_MINUTES = _get_int(os.getenv("MAX_APPOINTMENT_DURATION_MINUTES"), 240)
MAX_SLOT_RANGE_DAYS = _get_int(os.getenv("MAX_SLOT_RANGE_DAYS"), 90)

VIRTUAL_LINK_BASE_URL = os.getenv("VIRTUAL_LINK_BASE_URL", "https://meet.example.com").rstrip("/")

def validate_runtime_config() -> None:
    if APP_ENV.lower() == "production" and JWT_SECRET_KEY == "change-me":
        raise RuntimeError("JWT_SECRET_KEY must be set in production.")
    if CANCELLATION_NOTICE_HOURS < 0:
        raise RuntimeError("CANCELLATION_NOTICE_HOURS must not be negative.")
    if MAX_APPOINTMENT_DURATION_MINUTES <= 0:
        raise RuntimeError("MAX_APPOINTMENT_DURATION_MINUTES must be positive.")
    if MAX_SLOT_RANGE_DAYS <= 0:
        raise RuntimeError("MAX_SLOT_RANGE_DAYS must be positive.")
