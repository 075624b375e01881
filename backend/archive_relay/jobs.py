"""Relay job state machine and the registry that runs and tracks jobs."""

import asyncio
import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

from .errors import ErrorKind, InvalidSession, MissingField, RelayError
from .logging import get_logger
from .sessions import SessionStore

logger = get_logger("jobs")


class JobState(str, Enum):
    """Lifecycle of a relay job."""
    IDLE = "idle"
    VERIFYING = "verifying"
    DOWNLOADING = "downloading"
    UPLOADING = "uploading"
    FINALIZING = "finalizing"
    COMPLETE = "complete"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.COMPLETE, JobState.ERROR)


# Each non-terminal state has exactly one successor besides ERROR
_NEXT_STATE = {
    JobState.IDLE: JobState.VERIFYING,
    JobState.VERIFYING: JobState.DOWNLOADING,
    JobState.DOWNLOADING: JobState.UPLOADING,
    JobState.UPLOADING: JobState.FINALIZING,
    JobState.FINALIZING: JobState.COMPLETE,
}


class InvalidTransition(RuntimeError):
    pass


@dataclass
class RelayRequest:
    """A job submission as received from a client."""
    session_id: str = ""
    source_url: str = ""
    title: str = ""
    collection: str = ""
    description: str = ""
    file_name: Optional[str] = None
    subscriber_id: Optional[str] = None

    def missing_fields(self) -> list[str]:
        return [
            name for name in ("source_url", "title", "collection")
            if not (getattr(self, name) or "").strip()
        ]


@dataclass
class RelayJob:
    """One end-to-end transfer. Mutated only by the task running it."""

    id: str
    source_url: str
    title: str
    collection: str
    description: str = ""
    file_name: Optional[str] = None
    destination_id: Optional[str] = None
    session_id: str = ""
    subscriber_id: Optional[str] = None

    state: JobState = JobState.IDLE
    bytes_transferred: int = 0
    total_bytes: Optional[int] = None
    last_error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    failed_during: Optional[JobState] = None
    result: Optional[dict] = None
    created_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None

    cancel_event: asyncio.Event = field(default_factory=asyncio.Event, repr=False)
    task: Optional[asyncio.Task] = field(default=None, repr=False)

    def advance(self, new_state: JobState, now: Optional[float] = None) -> None:
        """Move to `new_state`. Only the next state in line, or ERROR, is allowed."""
        if self.state.is_terminal:
            raise InvalidTransition(f"job {self.id} is already {self.state.value}")
        if new_state is not JobState.ERROR and _NEXT_STATE[self.state] is not new_state:
            raise InvalidTransition(
                f"job {self.id}: {self.state.value} -> {new_state.value} skips a state"
            )
        if new_state is JobState.ERROR:
            self.failed_during = self.state
        self.state = new_state
        if new_state.is_terminal:
            self.finished_at = now if now is not None else time.time()

    def fail(self, error: RelayError, now: Optional[float] = None) -> bool:
        """Record a terminal failure. Returns False if already terminal."""
        if self.state.is_terminal:
            return False
        self.last_error = error.message
        self.error_kind = error.kind
        self.advance(JobState.ERROR, now=now)
        return True

    @property
    def cancel_requested(self) -> bool:
        return self.cancel_event.is_set()

    @property
    def percent(self) -> float:
        """Overall progress: download is 0-50, upload 50-100."""
        state = self.failed_during if self.state is JobState.ERROR else self.state
        if state in (JobState.FINALIZING, JobState.COMPLETE):
            return 100.0
        if state not in (JobState.DOWNLOADING, JobState.UPLOADING) or not self.total_bytes:
            return 50.0 if state is JobState.UPLOADING else 0.0
        fraction = min(self.bytes_transferred / self.total_bytes, 1.0)
        base = 50.0 if state is JobState.UPLOADING else 0.0
        return base + fraction * 50.0

    @property
    def partial_upload_possible(self) -> bool:
        """A failed job may still have left an object behind on archive.org."""
        return self.state is JobState.ERROR and self.failed_during in (
            JobState.UPLOADING, JobState.FINALIZING,
        )

    def to_dict(self) -> dict:
        return {
            "job_id": self.id,
            "state": self.state.value,
            "source_url": self.source_url,
            "title": self.title,
            "collection": self.collection,
            "destination_id": self.destination_id,
            "file_name": self.file_name,
            "bytes_transferred": self.bytes_transferred,
            "total_bytes": self.total_bytes,
            "percent": round(self.percent, 2),
            "last_error": self.last_error,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "result": self.result,
            "partial_upload_possible": self.partial_upload_possible,
            "created_at": self.created_at,
            "finished_at": self.finished_at,
        }


class JobRegistry:
    """Accepts submissions, runs each as an asyncio task, keeps status for polling."""

    def __init__(
        self,
        sessions: SessionStore,
        pipeline,
        retention: float = 3600.0,
        clock: Callable[[], float] = time.time,
    ):
        self.sessions = sessions
        self.pipeline = pipeline
        self.retention = retention
        self._clock = clock
        self._jobs: dict[str, RelayJob] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    def submit(self, request: RelayRequest, subscriber_id: Optional[str] = None) -> str:
        """Validate and start a job. Must be called from a running event loop.

        `subscriber_id`, when given, overrides the one on the request.
        Raises InvalidSession or MissingField without creating an entry.
        """
        session = self.sessions.get(request.session_id)
        if session is None:
            raise InvalidSession()

        missing = request.missing_fields()
        if missing:
            raise MissingField(missing)

        self.sessions.touch(session.id)

        job = RelayJob(
            id=str(uuid.uuid4()),
            source_url=request.source_url.strip(),
            title=request.title.strip(),
            collection=request.collection.strip(),
            description=request.description or "",
            file_name=(request.file_name or "").strip() or None,
            session_id=session.id,
            subscriber_id=subscriber_id or request.subscriber_id,
            created_at=self._clock(),
        )
        with self._lock:
            self._jobs[job.id] = job

        job.task = asyncio.create_task(
            self.pipeline.run(job, session.credentials),
            name=f"relay-{job.id[:8]}",
        )

        # Log unhandled exceptions from the task instead of silently swallowing
        def _on_done(task: asyncio.Task, job_id=job.id):
            if task.cancelled():
                return
            exc = task.exception()
            if exc:
                logger.error(f"Relay task {job_id[:8]} crashed: {type(exc).__name__}: {exc}")

        job.task.add_done_callback(_on_done)

        logger.info(f"Job {job.id[:8]} accepted for {session.display_name}: {job.source_url}")
        return job.id

    def _expired(self, job: RelayJob, now: float) -> bool:
        return (
            job.state.is_terminal
            and job.finished_at is not None
            and now - job.finished_at > self.retention
        )

    def get(self, job_id: str) -> Optional[RelayJob]:
        """The live job, or None if unknown or evicted."""
        now = self._clock()
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None
            if self._expired(job, now):
                del self._jobs[job_id]
                return None
            return job

    def get_status(self, job_id: str) -> Optional[dict]:
        """Point-in-time snapshot of a job for polling clients."""
        job = self.get(job_id)
        return job.to_dict() if job else None

    def cancel(self, job_id: str) -> bool:
        """Ask a running job to stop. Returns False if it is unknown or finished."""
        job = self.get(job_id)
        if job is None or job.state.is_terminal:
            return False
        job.cancel_event.set()
        if job.task and not job.task.done():
            job.task.cancel()
        logger.info(f"Job {job_id[:8]} cancellation requested")
        return True

    def jobs_for_subscriber(self, subscriber_id: str) -> list[str]:
        with self._lock:
            return [
                job.id for job in self._jobs.values()
                if job.subscriber_id == subscriber_id and not job.state.is_terminal
            ]

    def sweep(self) -> int:
        """Evict terminal jobs past their retention period."""
        now = self._clock()
        with self._lock:
            expired = [jid for jid, job in self._jobs.items() if self._expired(job, now)]
            for jid in expired:
                del self._jobs[jid]
        if expired:
            logger.info(f"Evicted {len(expired)} finished job(s)")
        return len(expired)

    async def shutdown(self):
        """Cancel running jobs (called on app shutdown)."""
        with self._lock:
            tasks = [
                job.task for job in self._jobs.values()
                if job.task is not None and not job.task.done()
            ]
            for job in self._jobs.values():
                job.cancel_event.set()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info(f"Cancelled {len(tasks)} running job(s)")
