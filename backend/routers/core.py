from fastapi import APIRouter, Depends

from backend.config import (
    ARCHIVE_TABLE,
    DIRECTORY_TTL_SECONDS,
    DRILL_TABLE_PREFIX,
    LEDGER_TABLE,
    LOCK_TIMEOUT_SECONDS,
    PRESENCE_WINDOW,
    RECENT_WINDOW,
)
from backend.services.engine import ReconciliationEngine, get_engine
from database.ledger import LEDGER_HEADER

router = APIRouter()


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/config/ledger")
def ledger_config(engine: ReconciliationEngine = Depends(get_engine)):
    return {
        "ledger_table": LEDGER_TABLE,
        "archive_table": ARCHIVE_TABLE,
        "drill_table_prefix": DRILL_TABLE_PREFIX,
        "presence_window": PRESENCE_WINDOW,
        "recent_window": RECENT_WINDOW,
        "lock_timeout_seconds": LOCK_TIMEOUT_SECONDS,
        "directory_ttl_seconds": DIRECTORY_TTL_SECONDS,
        "columns": dict(LEDGER_HEADER),
        "directory_size": len(engine.directory),
    }
