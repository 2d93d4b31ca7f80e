import os

from dotenv import load_dotenv


load_dotenv()


def _get_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _get_list(value: str | None, default: list[str]) -> list[str]:
    if not value:
        return default
    return [item.strip() for item in value.split(",") if item.strip()]

APP_ENV = os.getenv("APP_ENV", "development")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./therapy_booking.db")
DATABASE_ECHO = _get_bool(os.getenv("DATABASE_ECHO"), default=False)

CORS_ORIGINS = _get_list(os.getenv("CORS_ORIGINS"), ["http://localhost:3000"])

JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "change-me")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_EXPIRES_MINUTES = int(os.getenv("JWT_EXPIRES_MINUTES", "60"))

# Bound on each calendar/email call made after a booking commits.
COLLABORATOR_TIMEOUT_SECONDS = float(os.getenv("COLLABORATOR_TIMEOUT_SECONDS", "10"))
AVAILABILITY_MAX_RETRIES = int(os.getenv("AVAILABILITY_MAX_RETRIES", "5"))

GOOGLE_CALENDAR_API_URL = os.getenv("GOOGLE_CALENDAR_API_URL", "https://www.googleapis.com/calendar/v3")
GOOGLE_CALENDAR_ID = os.getenv("GOOGLE_CALENDAR_ID", "primary")
GOOGLE_CALENDAR_ACCESS_TOKEN = os.getenv("GOOGLE_CALENDAR_ACCESS_TOKEN", "")
BOOKING_TIMEZONE = os.getenv("BOOKING_TIMEZONE", "Asia/Kolkata")

SENDGRID_API_KEY = os.getenv("SENDGRID_API_KEY", "")
SENDGRID_FROM_EMAIL = os.getenv("SENDGRID_FROM_EMAIL", "noreply@example.com")
SENDGRID_FROM_NAME = os.getenv("SENDGRID_FROM_NAME", "Therapy Booking")

def validate_runtime_config() -> None:
    if APP_ENV.lower() == "production" and JWT_SECRET_KEY == "change-me":
        raise RuntimeError("JWT_SECRET_KEY must be set in production.")
    if APP_ENV.lower() == "production" and DATABASE_URL.startswith("sqlite"):
        raise RuntimeError("DATABASE_URL must point at Postgres in production.")
    if COLLABORATOR_TIMEOUT_SECONDS <= 0:
        raise RuntimeError("COLLABORATOR_TIMEOUT_SECONDS must be positive.")
