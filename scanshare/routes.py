import csv
import io
import re
from typing import Optional
from urllib.parse import quote

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import Response
from sqlalchemy.orm import Session

from scanshare.config import Settings, get_settings
from scanshare.database import get_db
from scanshare.exceptions import SessionNotFoundError
from scanshare.models import (
    AddScansRequest,
    AddScansResponse,
    CreateSessionRequest,
    DeleteScansRequest,
    SessionCreatedResponse,
    SessionDetail,
    SessionFlags,
)
from scanshare.session_service import EXPORT_FIELDS, SessionService

router = APIRouter(prefix="/sessions", tags=["sessions"])


def get_session_service(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> SessionService:
    return SessionService(db, settings)


def _not_found(e: SessionNotFoundError) -> HTTPException:
    return HTTPException(status_code=404, detail=str(e))


@router.post("", response_model=SessionCreatedResponse, status_code=201)
def create_session(
    request: CreateSessionRequest,
    service: SessionService = Depends(get_session_service),
):
    """Create a session from the scanner's first sync."""
    flags = SessionFlags(
        askInternalCode=request.askInternalCode,
        askProductName=request.askProductName,
        askPrice=request.askPrice,
    )
    return service.create_session(request.name, request.type, request.scans, flags)


@router.post("/{short_code}/scans", response_model=AddScansResponse)
def add_scans(
    short_code: str,
    request: AddScansRequest,
    service: SessionService = Depends(get_session_service),
):
    """Merge scans into the session: existing codes are incremented, new ones inserted."""
    try:
        return service.add_scans(short_code, request.scans)
    except SessionNotFoundError as e:
        raise _not_found(e)


@router.delete("/{short_code}/scans", response_model=AddScansResponse)
def delete_scans(
    short_code: str,
    request: DeleteScansRequest,
    service: SessionService = Depends(get_session_service),
):
    """Delete scans by code. Unknown codes are ignored."""
    try:
        return service.delete_scans(short_code, request.codes)
    except SessionNotFoundError as e:
        raise _not_found(e)


@router.get("/{short_code}", response_model=SessionDetail)
def get_session(short_code: str, service: SessionService = Depends(get_session_service)):
    """Get a session with its scans in scan order."""
    try:
        return service.get_session(short_code)
    except SessionNotFoundError as e:
        raise _not_found(e)


@router.get("/{short_code}/export")
def export_session(
    short_code: str,
    fields: Optional[str] = Query(None, description="Comma separated columns, e.g. code,quantity"),
    service: SessionService = Depends(get_session_service),
):
    """
    Export the session's scans as CSV.

    Columns default to all of code, quantity, internalCode, productName, price.
    """
    selected = [f.strip() for f in fields.split(",") if f.strip()] if fields else None
    try:
        session_name, rows = service.export_rows(short_code, selected)
    except SessionNotFoundError as e:
        raise _not_found(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=selected or list(EXPORT_FIELDS))
    writer.writeheader()
    writer.writerows(rows)

    safe_name = re.sub(r'[/\\:*?"<>|]', "_", session_name).strip() or short_code
    return Response(
        content="\ufeff" + buffer.getvalue(),  # BOM so spreadsheet apps pick UTF-8
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f"attachment; filename*=UTF-8''{quote(safe_name)}.csv"},
    )
