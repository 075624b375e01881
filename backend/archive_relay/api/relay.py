"""API endpoints for submitting, polling and cancelling relay jobs."""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from ..jobs import JobRegistry, RelayRequest
from ..logging import get_logger
from .deps import get_jobs

logger = get_logger("api")

router = APIRouter(prefix="/api", tags=["relay"])


# --- Request/Response Models ---

class UploadRequest(BaseModel):
    """Relay a file at `source_url` into a new archive.org item.

    Required fields are checked by the registry so that a missing one is
    reported as MissingField rather than a schema error.
    """
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(default="", alias="sessionId")
    source_url: str = Field(
        default="", validation_alias=AliasChoices("sourceUrl", "fileUrl", "source_url")
    )
    title: str = ""
    collection: str = ""
    description: Optional[str] = None
    file_name: Optional[str] = Field(default=None, alias="fileName")
    subscriber_id: Optional[str] = Field(default=None, alias="subscriberId")


class UploadAcceptedResponse(BaseModel):
    success: bool = True
    job_id: str
    status_url: str
    message: str = (
        "Upload started. A failed job is not rolled back: an item may remain "
        "on archive.org under the generated identifier."
    )


class JobStatusResponse(BaseModel):
    job_id: str
    state: str
    source_url: str
    title: str
    collection: str
    destination_id: Optional[str] = None
    file_name: Optional[str] = None
    bytes_transferred: int
    total_bytes: Optional[int] = None
    percent: float
    last_error: Optional[str] = None
    error_kind: Optional[str] = None
    result: Optional[dict] = None
    partial_upload_possible: bool = False
    created_at: float
    finished_at: Optional[float] = None


# --- Endpoints ---

@router.post("/upload", status_code=202, response_model=UploadAcceptedResponse)
async def submit_upload(request: UploadRequest, jobs: JobRegistry = Depends(get_jobs)):
    """Start a relay job. Progress is pushed to /ws/progress/{subscriber_id}."""
    job_id = jobs.submit(RelayRequest(
        session_id=request.session_id,
        source_url=request.source_url,
        title=request.title,
        collection=request.collection,
        description=request.description or "",
        file_name=request.file_name,
        subscriber_id=request.subscriber_id,
    ))
    return UploadAcceptedResponse(job_id=job_id, status_url=f"/api/jobs/{job_id}")


@router.get("/jobs/{job_id}", response_model=JobStatusResponse)
async def get_job(job_id: str, jobs: JobRegistry = Depends(get_jobs)):
    """Poll a job's state."""
    status = jobs.get_status(job_id)
    if status is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return status


@router.post("/jobs/{job_id}/cancel")
async def cancel_job(job_id: str, jobs: JobRegistry = Depends(get_jobs)):
    """Stop a running job between chunks."""
    if jobs.get(job_id) is None:
        raise HTTPException(status_code=404, detail="Job not found")
    if not jobs.cancel(job_id):
        raise HTTPException(status_code=409, detail="Job already finished")
    return {"success": True, "job_id": job_id, "message": "Cancellation requested"}
