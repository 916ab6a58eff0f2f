import logging
import sqlite3

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from backend.security import require_operator
from backend.services.engine import ReconciliationEngine, get_engine
from database.db import Person, StorageError

logger = logging.getLogger(__name__)

router = APIRouter()


class PersonCreate(BaseModel):
    identifier: str
    full_name: str
    organization: str = ""
    area: str = ""
    role: str = ""
    active: bool = True


class PersonUpdate(BaseModel):
    full_name: str | None = None
    organization: str | None = None
    area: str | None = None
    role: str | None = None
    active: bool | None = None


@router.get("/personnel")
def list_personnel(engine: ReconciliationEngine = Depends(get_engine)):
    try:
        people = engine.personnel.read_all()
    except StorageError as exc:
        raise HTTPException(status_code=503, detail=f"Storage unavailable: {exc}")
    return [p.as_dict() for p in people]


@router.get("/personnel/search")
def search_personnel(
    q: str,
    limit: int = Query(default=20, ge=1, le=100),
    engine: ReconciliationEngine = Depends(get_engine),
):
    if not q.strip():
        raise HTTPException(status_code=400, detail="Search text is required.")
    try:
        matches = engine.directory.search(q, limit=limit)
    except StorageError as exc:
        raise HTTPException(status_code=503, detail=f"Storage unavailable: {exc}")
    return [p.as_dict() for p in matches]


@router.post("/personnel")
def create_person(
    payload: PersonCreate,
    _operator: dict = Depends(require_operator),
    engine: ReconciliationEngine = Depends(get_engine),
):
    identifier = payload.identifier.strip()
    full_name = payload.full_name.strip()
    if not identifier or not full_name:
        raise HTTPException(status_code=400, detail="Identifier and full name are required.")

    person = Person(
        identifier=identifier,
        full_name=full_name,
        organization=payload.organization.strip(),
        area=payload.area.strip(),
        role=payload.role.strip(),
        active=payload.active,
    )
    try:
        engine.personnel.add_person(person)
    except sqlite3.IntegrityError:
        raise HTTPException(status_code=409, detail="Identifier already exists.")
    except StorageError as exc:
        raise HTTPException(status_code=503, detail=f"Storage unavailable: {exc}")

    engine.directory.invalidate()
    logger.info("Personnel added: %s", identifier)
    return person.as_dict()


@router.patch("/personnel/{identifier}")
def update_person(
    identifier: str,
    payload: PersonUpdate,
    _operator: dict = Depends(require_operator),
    engine: ReconciliationEngine = Depends(get_engine),
):
    fields = {k: v.strip() if isinstance(v, str) else v for k, v in payload.model_dump().items()}
    if fields.get("full_name") == "":
        raise HTTPException(status_code=400, detail="Full name cannot be empty.")
    try:
        if engine.personnel.get(identifier) is None:
            raise HTTPException(status_code=404, detail="Person not found.")
        person = engine.personnel.update_person(identifier, **fields)
    except StorageError as exc:
        raise HTTPException(status_code=503, detail=f"Storage unavailable: {exc}")

    engine.directory.invalidate()
    logger.info("Personnel updated: %s", identifier)
    return person.as_dict()
