import logging
import os

from dotenv import load_dotenv

load_dotenv()


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


def _parse_bool_env(name: str, default: str) -> bool:
    return str(os.environ.get(name, default)).strip().lower() in {"1", "true", "yes", "on"}


def _parse_int_env(name: str, default: int) -> int:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


LENDING_DB_URL = (os.environ.get("LENDING_DB_URL") or "sqlite+pysqlite:///./var/lending.db").strip()
LENDING_ADMIN_SECRET = (os.environ.get("LENDING_ADMIN_SECRET") or "").strip()

CORS_ALLOW_ORIGINS = _parse_csv_env(
    "CORS_ALLOW_ORIGINS",
    "http://127.0.0.1,http://localhost,http://127.0.0.1:5001,http://localhost:5001",
)
CORS_ALLOW_CREDENTIALS = _parse_bool_env("CORS_ALLOW_CREDENTIALS", "true")
if "*" in CORS_ALLOW_ORIGINS:
    # Browsers reject wildcard origins with credentials.
    CORS_ALLOW_CREDENTIALS = False

OVERDUE_HOURS = _parse_int_env("OVERDUE_HOURS", 24)
BLOCK_OVERDUE_BORROWERS = _parse_bool_env("BLOCK_OVERDUE_BORROWERS", "true")
LOW_STOCK_THRESHOLD = _parse_int_env("LOW_STOCK_THRESHOLD", 3)

AUTH_ATTEMPT_WINDOW_SECONDS = _parse_int_env("AUTH_ATTEMPT_WINDOW_SECONDS", 300)
AUTH_MAX_ATTEMPTS_PER_TENANT = _parse_int_env("AUTH_MAX_ATTEMPTS_PER_TENANT", 8)
AUTH_LOCKOUT_SECONDS = _parse_int_env("AUTH_LOCKOUT_SECONDS", 900)

EVENT_DISPATCH_MODE = (os.environ.get("EVENT_DISPATCH_MODE") or "background").strip().lower()
EVENT_WORKERS = _parse_int_env("EVENT_WORKERS", 2)

LOG_LEVEL = (os.environ.get("LOG_LEVEL") or "INFO").strip().upper()


def configure_logging() -> None:
    logging.basicConfig(
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        level=getattr(logging, LOG_LEVEL, logging.INFO),
    )
