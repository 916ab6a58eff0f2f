import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parents[1]

DB_PATH = Path(os.getenv("SURPASS_DB_PATH", BASE_DIR / "database" / "surpass.db"))
EXPORTS_DIR = Path(os.getenv("SURPASS_EXPORTS_DIR", BASE_DIR / "exports"))
OPERATOR_KEY = os.getenv("SURPASS_OPERATOR_KEY", "surpass-operator-key-change-me").strip()
LOG_LEVEL = (os.getenv("SURPASS_LOG_LEVEL", "INFO").strip() or "INFO").upper()


def _parse_bool(value: str | None, fallback: bool) -> bool:
    if value is None:
        return fallback
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return fallback


def _parse_csv(value: str | None, fallback: list[str]) -> list[str]:
    if not value:
        return fallback
    parsed = [item.strip() for item in value.split(",") if item.strip()]
    return parsed or fallback


def _parse_positive_int(value: str | None, fallback: int) -> int:
    if not value:
        return fallback
    try:
        parsed = int(value.strip())
    except ValueError:
        return fallback
    return parsed if parsed > 0 else fallback


def _parse_name(value: str | None, fallback: str) -> str:
    return (value or "").strip() or fallback


CORS_ALLOW_ORIGINS = _parse_csv(
    os.getenv("SURPASS_CORS_ALLOW_ORIGINS"),
    ["http://localhost:5173", "http://127.0.0.1:5173"],
)
CORS_ALLOW_CREDENTIALS = _parse_bool(os.getenv("SURPASS_CORS_ALLOW_CREDENTIALS"), True)

# Ledger tables
LEDGER_TABLE = _parse_name(os.getenv("SURPASS_LEDGER_TABLE"), "Access Log")
ARCHIVE_TABLE = _parse_name(os.getenv("SURPASS_ARCHIVE_TABLE"), "Archived History")
DRILL_TABLE_PREFIX = _parse_name(os.getenv("SURPASS_DRILL_TABLE_PREFIX"), "Drill_")

# Reconciliation tuning
PRESENCE_WINDOW = _parse_positive_int(os.getenv("SURPASS_PRESENCE_WINDOW"), 100)
RECENT_WINDOW = _parse_positive_int(os.getenv("SURPASS_RECENT_WINDOW"), 300)
LOCK_TIMEOUT_SECONDS = float(os.getenv("SURPASS_LOCK_TIMEOUT_SECONDS", "20"))
DIRECTORY_TTL_SECONDS = _parse_positive_int(os.getenv("SURPASS_DIRECTORY_TTL_SECONDS"), 600)
