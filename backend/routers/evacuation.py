import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from backend.security import require_operator
from backend.services.engine import ReconciliationEngine, get_engine
from backend.services.reports import evacuation_statistics
from database.db import StorageError

logger = logging.getLogger(__name__)

router = APIRouter()


class CloseOutRequest(BaseModel):
    identifiers: list[str]
    mode: str


class EvacuationStatisticsRequest(BaseModel):
    evacuated: list[str] = []
    roster: list[dict[str, Any]] | None = None


@router.get("/evacuation/roster")
def roster(recent: bool = False, engine: ReconciliationEngine = Depends(get_engine)):
    try:
        people = engine.recent_inside() if recent else engine.snapshot_inside()
    except StorageError as exc:
        raise HTTPException(status_code=503, detail=f"Storage unavailable: {exc}")
    return {
        "count": len(people),
        "people": people,
        "timestamp": engine.now().isoformat(timespec="seconds"),
    }


@router.post("/evacuation/close-out")
def close_out(
    payload: CloseOutRequest,
    _operator: dict = Depends(require_operator),
    engine: ReconciliationEngine = Depends(get_engine),
):
    result = engine.close_out(payload.identifiers, payload.mode)
    if not result["success"]:
        if result["table"] is None and not result["errors"]:
            raise HTTPException(status_code=400, detail=result["message"])
        raise HTTPException(status_code=503, detail=result["message"])
    return result


@router.post("/evacuation/statistics")
def statistics(payload: EvacuationStatisticsRequest, engine: ReconciliationEngine = Depends(get_engine)):
    people = payload.roster
    if people is None:
        try:
            people = engine.snapshot_inside()
        except StorageError as exc:
            raise HTTPException(status_code=503, detail=f"Storage unavailable: {exc}")
    return evacuation_statistics(people, payload.evacuated)


@router.post("/evacuation/export")
def export_roster(
    _operator: dict = Depends(require_operator),
    engine: ReconciliationEngine = Depends(get_engine),
):
    try:
        path = engine.export_snapshot()
    except StorageError as exc:
        raise HTTPException(status_code=503, detail=f"Storage unavailable: {exc}")
    except OSError as exc:
        logger.error("Roster export failed: %s", exc)
        raise HTTPException(status_code=503, detail=f"Export failed: {exc}")
    return {"ok": True, "path": path}
