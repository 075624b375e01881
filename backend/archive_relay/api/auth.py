"""API endpoints for credential validation and session lifecycle."""

from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from ..errors import InvalidSession, MissingField
from ..logging import get_logger
from ..sessions import SessionStore
from ..storage import RemoteStorageClient
from .deps import get_sessions, get_storage

logger = get_logger("api")

router = APIRouter(prefix="/api", tags=["auth"])


# --- Request/Response Models ---

class CredentialsRequest(BaseModel):
    """archive.org S3 key pair (https://archive.org/account/s3.php)."""
    model_config = ConfigDict(populate_by_name=True)

    access_key: str = Field(default="", alias="accessKey")
    secret_key: str = Field(default="", alias="secretKey")


class SessionCreatedResponse(BaseModel):
    success: bool = True
    session_id: str
    username: str
    message: str = "Credentials valid"


class LogoutRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: Optional[str] = Field(default=None, alias="sessionId")


# --- Endpoints ---

@router.post("/validate-credentials", response_model=SessionCreatedResponse)
async def validate_credentials(
    request: CredentialsRequest,
    sessions: SessionStore = Depends(get_sessions),
    storage: RemoteStorageClient = Depends(get_storage),
):
    """Check a key pair against archive.org and open a session for it."""
    missing = [
        name for name, value in (("access_key", request.access_key), ("secret_key", request.secret_key))
        if not value.strip()
    ]
    if missing:
        raise MissingField(missing)

    display_name = await storage.check_credentials(
        request.access_key.strip(), request.secret_key.strip()
    )
    session_id = sessions.create(request.access_key.strip(), request.secret_key.strip(), display_name)
    return SessionCreatedResponse(session_id=session_id, username=display_name)


@router.get("/session/{session_id}")
async def get_session(session_id: str, sessions: SessionStore = Depends(get_sessions)):
    """Who a session belongs to. Does not refresh its idle timer."""
    session = sessions.get(session_id)
    if session is None:
        raise InvalidSession()
    return {"success": True, **session.to_dict()}


@router.post("/logout")
async def logout(request: LogoutRequest, sessions: SessionStore = Depends(get_sessions)):
    """Forget a session and its credentials."""
    if sessions.remove(request.session_id):
        return {"success": True, "message": "Session closed"}
    return JSONResponse(
        status_code=400,
        content={"success": False, "message": "Session not found"},
    )
