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


APP_ENV = os.getenv("APP_ENV", "development")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./booking.db")
DATABASE_ECHO = _get_bool(os.getenv("DATABASE_ECHO"), default=False)

JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "change-me")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_EXPIRES_MINUTES = _get_int(os.getenv("JWT_EXPIRES_MINUTES"), 60)

# Status every new appointment lands in. Some deployments skip "pending".
INITIAL_APPOINTMENT_STATUS = os.getenv("INITIAL_APPOINTMENT_STATUS", "pending").strip().lower()

# "shifts" reads per-staff shifts, "business_hours" uses the fixed window below.
AVAILABILITY_MODE = os.getenv("AVAILABILITY_MODE", "shifts").strip().lower()
BUSINESS_OPEN_TIME = os.getenv("BUSINESS_OPEN_TIME", "09:00")
BUSINESS_CLOSE_TIME = os.getenv("BUSINESS_CLOSE_TIME", "18:00")

DEFAULT_SLOT_GRANULARITY_MINUTES = _get_int(os.getenv("DEFAULT_SLOT_GRANULARITY_MINUTES"), 15)
DEFAULT_APPOINTMENT_DURATION_MINUTES = _get_int(os.getenv("DEFAULT_APPOINTMENT_DURATION_MINUTES"), 60)
REQUIRE_SHIFT_COVERAGE = _get_bool(os.getenv("REQUIRE_SHIFT_COVERAGE"), default=True)
MAX_APPOINTMENT_NOTES_LENGTH = _get_int(os.getenv("MAX_APPOINTMENT_NOTES_LENGTH"), 600)
BOOKED_SLOTS_RANGE_DAYS = _get_int(os.getenv("BOOKED_SLOTS_RANGE_DAYS"), 31)

REMINDER_INTERVAL_MINUTES = _get_int(os.getenv("REMINDER_INTERVAL_MINUTES"), 60)
# day horizons ("day:1") or minute horizons ("hour:60m") checked every REMINDER_SHORT_INTERVAL_MINUTES
REMINDER_HORIZONS = os.getenv("REMINDER_HORIZONS", "week:7,day:1,hour:60m")
REMINDER_SHORT_INTERVAL_MINUTES = _get_int(os.getenv("REMINDER_SHORT_INTERVAL_MINUTES"), 15)
REMINDER_ITEM_TIMEOUT_SECONDS = _get_int(os.getenv("REMINDER_ITEM_TIMEOUT_SECONDS"), 30)
REMINDER_WORKERS = _get_int(os.getenv("REMINDER_WORKERS"), 4)

NOTIFICATION_GATEWAY_URL = os.getenv("NOTIFICATION_GATEWAY_URL", "")
NOTIFICATION_GATEWAY_TOKEN = os.getenv("NOTIFICATION_GATEWAY_TOKEN", "")
NOTIFICATION_TIMEOUT_SECONDS = _get_int(os.getenv("NOTIFICATION_TIMEOUT_SECONDS"), 10)

VALID_INITIAL_STATUSES = {"pending", "confirmed"}
VALID_AVAILABILITY_MODES = {"shifts", "business_hours"}


def validate_runtime_config() -> None:
    if APP_ENV.lower() == "production" and JWT_SECRET_KEY == "change-me":
        raise RuntimeError("JWT_SECRET_KEY must be set in production.")
    if INITIAL_APPOINTMENT_STATUS not in VALID_INITIAL_STATUSES:
        raise RuntimeError(
            f"INITIAL_APPOINTMENT_STATUS must be one of {sorted(VALID_INITIAL_STATUSES)}."
        )
    if AVAILABILITY_MODE not in VALID_AVAILABILITY_MODES:
        raise RuntimeError(f"AVAILABILITY_MODE must be one of {sorted(VALID_AVAILABILITY_MODES)}.")
    if DEFAULT_SLOT_GRANULARITY_MINUTES <= 0:
        raise RuntimeError("DEFAULT_SLOT_GRANULARITY_MINUTES must be positive.")
