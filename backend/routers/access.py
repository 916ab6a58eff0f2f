from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from backend.services.engine import ReconciliationEngine, ScanResult, get_engine
from database.db import StorageError

router = APIRouter()


class ScanRequest(BaseModel):
    identifier: str
    action: str


class JustificationRequest(BaseModel):
    identifier: str
    comment: str


class VisitorRequest(BaseModel):
    identifier: str
    name: str
    organization: str = ""
    reason: str = ""
    action: str = "check_in"


class CommentRequest(BaseModel):
    identifier: str
    comment: str


def raise_for_result(result: ScanResult) -> ScanResult:
    decision = result["decision_code"]
    if decision == "INVALID_INPUT":
        raise HTTPException(status_code=400, detail=result["reason"])
    if decision == "BUSY":
        raise HTTPException(
            status_code=503,
            detail=result["reason"],
            headers={"Retry-After": str(result["retry_after_seconds"] or 1)},
        )
    if decision == "STORAGE_ERROR":
        raise HTTPException(status_code=503, detail=result["reason"])
    return result


@router.post("/access/scan")
def scan(payload: ScanRequest, engine: ReconciliationEngine = Depends(get_engine)):
    return raise_for_result(engine.process_scan(payload.identifier, payload.action))


@router.post("/access/justify")
def justify(payload: JustificationRequest, engine: ReconciliationEngine = Depends(get_engine)):
    result = raise_for_result(engine.submit_justification(payload.identifier, payload.comment))
    if result["decision_code"] == "NOT_FOUND":
        raise HTTPException(status_code=404, detail=result["reason"])
    return result


@router.post("/access/visitor")
def register_visitor(payload: VisitorRequest, engine: ReconciliationEngine = Depends(get_engine)):
    return raise_for_result(
        engine.register_visitor(
            payload.identifier,
            payload.name,
            payload.organization,
            payload.reason,
            payload.action,
        )
    )


@router.post("/access/comment")
def add_comment(payload: CommentRequest, engine: ReconciliationEngine = Depends(get_engine)):
    result = raise_for_result(engine.add_comment(payload.identifier, payload.comment))
    if result["decision_code"] == "NOT_FOUND":
        raise HTTPException(status_code=404, detail=result["reason"])
    return result


@router.get("/access/open/{identifier}")
def open_entry(identifier: str, engine: ReconciliationEngine = Depends(get_engine)):
    clean_id = identifier.strip()
    if not clean_id:
        raise HTTPException(status_code=400, detail="Identifier is required.")
    try:
        state = engine.open_entry(clean_id)
    except StorageError as exc:
        raise HTTPException(status_code=503, detail=f"Storage unavailable: {exc}")
    return {"identifier": clean_id, **state}


@router.get("/access/history")
def history(
    identifier: str | None = None,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=100, ge=1, le=500),
    engine: ReconciliationEngine = Depends(get_engine),
):
    try:
        return engine.history(identifier, page=page, page_size=page_size)
    except StorageError as exc:
        raise HTTPException(status_code=503, detail=f"Storage unavailable: {exc}")
