from fastapi import APIRouter, Depends, HTTPException

from scanshare.exceptions import SessionNotFoundError
from scanshare.models import ErrorResponse, SessionDetail, VerifyAccessRequest
from scanshare.routes import get_session_service
from scanshare.session_service import SessionService

router = APIRouter(prefix="/viewer", tags=["viewer"])


@router.post(
    "/{short_code}/verify",
    response_model=SessionDetail,
    responses={401: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
def verify_access(
    short_code: str,
    request: VerifyAccessRequest,
    service: SessionService = Depends(get_session_service),
):
    """Return the session to a viewer that knows its 4-digit access code."""
    try:
        session = service.verify_access(short_code, request.accessCode)
    except SessionNotFoundError:
        raise HTTPException(status_code=404, detail="Session not found")
    if session is None:
        raise HTTPException(status_code=401, detail="Wrong access code")
    return session
