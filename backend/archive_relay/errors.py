"""Error kinds surfaced by the relay, one exception class per kind."""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Closed set of failure categories reported to callers."""
    INVALID_SESSION = "InvalidSession"
    MISSING_FIELD = "MissingField"
    SOURCE_UNREACHABLE = "SourceUnreachable"
    SOURCE_TOO_LARGE = "SourceTooLarge"
    DOWNLOAD_FAILED = "DownloadFailed"
    UPLOAD_FAILED = "UploadFailed"
    REMOTE_ERROR = "RemoteError"
    CANCELLED = "Cancelled"
    UNKNOWN = "Unknown"


class RelayError(Exception):
    """Base class for every error the relay reports to a caller."""

    kind: ErrorKind = ErrorKind.UNKNOWN
    http_status: int = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"success": False, "kind": self.kind.value, "message": self.message}


class InvalidSession(RelayError):
    kind = ErrorKind.INVALID_SESSION
    http_status = 401

    def __init__(self, message: str = "Invalid or expired session"):
        super().__init__(message)


class MissingField(RelayError):
    kind = ErrorKind.MISSING_FIELD
    http_status = 400

    def __init__(self, fields: list[str]):
        super().__init__(f"Missing required fields: {', '.join(fields)}")
        self.fields = fields


class SourceUnreachable(RelayError):
    kind = ErrorKind.SOURCE_UNREACHABLE
    http_status = 502


class SourceTooLarge(RelayError):
    kind = ErrorKind.SOURCE_TOO_LARGE
    http_status = 413

    def __init__(self, size: int, limit: int):
        super().__init__(f"Source is {size} bytes, limit is {limit} bytes")
        self.size = size
        self.limit = limit


class DownloadFailed(RelayError):
    kind = ErrorKind.DOWNLOAD_FAILED
    http_status = 502


class UploadFailed(RelayError):
    kind = ErrorKind.UPLOAD_FAILED
    http_status = 502


class RemoteError(RelayError):
    """Non-2xx answer from a remote endpoint."""

    kind = ErrorKind.REMOTE_ERROR
    http_status = 502

    def __init__(self, status: int, body: str = "", url: Optional[str] = None):
        snippet = body.strip()[:300]
        message = f"Remote returned HTTP {status}"
        if snippet:
            message += f": {snippet}"
        super().__init__(message)
        self.status = status
        self.body = body
        self.url = url

    @property
    def is_transient(self) -> bool:
        return self.status >= 500


class JobCancelled(RelayError):
    kind = ErrorKind.CANCELLED
    http_status = 409

    def __init__(self, message: str = "Job was cancelled"):
        super().__init__(message)


class UnknownError(RelayError):
    kind = ErrorKind.UNKNOWN
    http_status = 500
