from fastapi import APIRouter, Depends, HTTPException

from backend.security import require_operator
from backend.services.engine import ReconciliationEngine, get_engine
from database.db import StorageError

router = APIRouter()


@router.get("/admin/statistics")
def ledger_statistics(engine: ReconciliationEngine = Depends(get_engine)):
    try:
        return engine.statistics()
    except StorageError as exc:
        raise HTTPException(status_code=503, detail=f"Storage unavailable: {exc}")


@router.post("/admin/shift/close", dependencies=[Depends(require_operator)])
def close_shift(engine: ReconciliationEngine = Depends(get_engine)):
    result = engine.close_shift()
    if result["success"]:
        return {"ok": True, **result}
    if "retry_after_seconds" in result:
        raise HTTPException(
            status_code=503,
            detail=result["message"],
            headers={"Retry-After": str(result["retry_after_seconds"])},
        )
    if result["message"].startswith("Storage unavailable"):
        raise HTTPException(status_code=503, detail=result["message"])
    return {"ok": False, **result}


@router.post("/admin/directory/rebuild", dependencies=[Depends(require_operator)])
def rebuild_directory(engine: ReconciliationEngine = Depends(get_engine)):
    try:
        size = engine.directory.rebuild()
    except StorageError as exc:
        raise HTTPException(status_code=503, detail=f"Storage unavailable: {exc}")
    return {"ok": True, "message": "Directory index rebuilt.", "size": size}
