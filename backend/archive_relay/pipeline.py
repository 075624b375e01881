"""
Relay pipeline - moves one file from a source URL into archive.org.

    IDLE -> VERIFYING -> DOWNLOADING -> UPLOADING -> FINALIZING -> COMPLETE

Any non-terminal state may instead move to ERROR.

The body is spooled to memory (then disk past a threshold) before upload so
the upload can be retried chunk by chunk. Progress is published at every
chunk boundary: download maps to 0-50%, upload to 50-100%.

Failed jobs are not rolled back. Once UPLOADING has started an object may
exist under the generated identifier even though the job reports ERROR.
"""

import asyncio
import mimetypes
import posixpath
import re
import tempfile
import time
from collections.abc import AsyncIterator
from functools import partial
from typing import IO, Callable, Optional
from urllib.parse import quote, unquote, urlsplit

import httpx

from .config import RelayConfig
from .errors import (
    DownloadFailed,
    JobCancelled,
    RelayError,
    RemoteError,
    SourceTooLarge,
    SourceUnreachable,
    UnknownError,
    UploadFailed,
)
from .jobs import JobState, RelayJob
from .logging import get_logger
from .progress import Phase, ProgressChannel, ProgressEvent
from .retry import retry_async
from .storage import Credentials, HeadResult

logger = get_logger("pipeline")

DEFAULT_FILE_NAME = "video.mp4"
DEFAULT_CONTENT_TYPE = "video/mp4"
_GENERIC_CONTENT_TYPES = {"application/octet-stream", "binary/octet-stream", "text/html", "text/plain"}
_NON_ALNUM = re.compile(r"[^a-z0-9]")

_PHASE_FOR_STATE = {
    JobState.VERIFYING: Phase.VERIFYING,
    JobState.DOWNLOADING: Phase.DOWNLOADING,
    JobState.UPLOADING: Phase.UPLOADING,
    JobState.FINALIZING: Phase.FINALIZING,
    JobState.COMPLETE: Phase.COMPLETE,
    JobState.ERROR: Phase.ERROR,
}


def make_destination_id(title: str, now: float) -> str:
    """`title` lower-cased, non-alphanumerics replaced, plus epoch milliseconds."""
    return f"{_NON_ALNUM.sub('_', title.lower())}_{int(now * 1000)}"


def file_name_from_url(url: str) -> str:
    """Last path segment of `url` without query string, or video.mp4."""
    try:
        path = urlsplit(url).path
    except ValueError:
        return DEFAULT_FILE_NAME
    name = unquote(posixpath.basename(path)).strip()
    name = name.replace("/", "_").replace("\\", "_")
    if not name or not posixpath.splitext(name)[1]:
        return DEFAULT_FILE_NAME
    return name


def pick_content_type(file_name: str, declared: Optional[str]) -> str:
    guessed, _ = mimetypes.guess_type(file_name)
    if guessed:
        return guessed
    if declared:
        declared = declared.split(";")[0].strip().lower()
        if declared and declared not in _GENERIC_CONTENT_TYPES:
            return declared
    return DEFAULT_CONTENT_TYPE


class RelayPipeline:
    """Drives a RelayJob through its states against a storage client."""

    def __init__(
        self,
        storage,
        progress: ProgressChannel,
        config: RelayConfig,
        sleep: Callable = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.storage = storage
        self.progress = progress
        self.config = config
        self._sleep = sleep
        self._clock = clock

    # ---------- Entry Point ----------

    async def run(self, job: RelayJob, credentials: Credentials) -> RelayJob:
        """Run `job` to a terminal state. Never raises, except on task cancellation."""
        logger.info(f"Job {job.id[:8]} starting: {job.source_url}")
        try:
            head = await self._verify(job)
            body = await self._download(job)
            try:
                await self._upload(job, body, credentials, head)
            finally:
                body.close()
            await self._finalize(job)

        except asyncio.CancelledError:
            self._fail(job, JobCancelled())
            raise
        except RelayError as e:
            self._fail(job, e)
        except Exception as e:
            logger.exception(f"Job {job.id[:8]} hit an unexpected error")
            self._fail(job, UnknownError(f"{type(e).__name__}: {e}"))

        return job

    # ---------- Helpers ----------

    def _publish(self, job: RelayJob, message: str = "") -> None:
        if not job.subscriber_id:
            return
        self.progress.publish(job.subscriber_id, ProgressEvent(
            job_id=job.id,
            subscriber_id=job.subscriber_id,
            phase=_PHASE_FOR_STATE.get(job.state, Phase.VERIFYING),
            percent=job.percent,
            message=message,
            bytes_transferred=job.bytes_transferred,
        ))

    def _fail(self, job: RelayJob, error: RelayError) -> None:
        if not job.fail(error, now=self._clock()):
            return
        logger.error(f"Job {job.id[:8]} failed [{error.kind.value}]: {error.message}")
        if job.partial_upload_possible:
            logger.warning(
                f"Job {job.id[:8]}: {job.destination_id} may exist on the remote without all data"
            )
        self._publish(job, error.message)

    @staticmethod
    def _check_cancelled(job: RelayJob) -> None:
        if job.cancel_requested:
            raise JobCancelled()

    @staticmethod
    def _record_bytes(job: RelayJob, count: int) -> None:
        # Retries may re-send bytes already counted; never go backwards
        if count > job.bytes_transferred:
            job.bytes_transferred = count

    def _retry(self, operation, label: str):
        return retry_async(
            operation,
            max_retries=self.config.max_retries,
            delay=self.config.retry_delay,
            jitter=self.config.retry_jitter,
            sleep=self._sleep,
            label=label,
        )

    # ---------- Phases ----------

    async def _verify(self, job: RelayJob) -> HeadResult:
        job.advance(JobState.VERIFYING)
        self._publish(job, "Checking source URL")

        head = await self.storage.head_exists(job.source_url)
        if not head.ok:
            raise SourceUnreachable(f"Source URL answered HTTP {head.status}")
        if head.content_length is not None and head.content_length > self.config.max_source_bytes:
            raise SourceTooLarge(head.content_length, self.config.max_source_bytes)

        job.total_bytes = head.content_length
        return head

    async def _download(self, job: RelayJob) -> IO[bytes]:
        job.advance(JobState.DOWNLOADING)
        job.bytes_transferred = 0
        self._publish(job, "Downloading source")

        limit = self.config.max_source_bytes
        buffer = tempfile.SpooledTemporaryFile(max_size=self.config.spool_max_memory)

        async def attempt():
            self._check_cancelled(job)
            received = buffer.tell()
            async with self.storage.stream_download(job.source_url, start=received) as stream:
                if stream.offset != received:
                    if stream.offset > received:
                        raise DownloadFailed(
                            f"Source resumed at byte {stream.offset}, expected {received}"
                        )
                    # Range ignored or partially honoured: drop what we can't keep
                    buffer.seek(stream.offset)
                    buffer.truncate()
                    received = stream.offset
                elif received:
                    logger.info(f"Job {job.id[:8]} resuming download at byte {received}")

                if stream.total_length is not None:
                    if stream.total_length > limit:
                        raise SourceTooLarge(stream.total_length, limit)
                    job.total_bytes = stream.total_length

                async for chunk in stream.chunks():
                    self._check_cancelled(job)
                    buffer.write(chunk)
                    received += len(chunk)
                    if received > limit:
                        raise SourceTooLarge(received, limit)
                    self._record_bytes(job, received)
                    self._publish(job)
            return received

        try:
            size = await self._retry(attempt, label=f"download {job.id[:8]}")
        except (SourceTooLarge, JobCancelled, DownloadFailed):
            buffer.close()
            raise
        except (httpx.HTTPError, RemoteError) as e:
            buffer.close()
            raise DownloadFailed(f"Download failed: {e}") from e
        except BaseException:
            buffer.close()
            raise

        job.total_bytes = size
        self._record_bytes(job, size)
        buffer.seek(0)
        logger.info(f"Job {job.id[:8]} downloaded {size} bytes")
        return buffer

    async def _upload(
        self,
        job: RelayJob,
        body: IO[bytes],
        credentials: Credentials,
        head: HeadResult,
    ) -> None:
        size = job.total_bytes or 0
        job.destination_id = make_destination_id(job.title, self._clock())
        job.file_name = job.file_name or file_name_from_url(job.source_url)

        job.advance(JobState.UPLOADING)
        job.bytes_transferred = 0
        job.total_bytes = size
        self._publish(job, f"Uploading to {job.destination_id}")

        content_type = pick_content_type(job.file_name, head.content_type)
        metadata = {
            "mediatype": self.config.media_type,
            "title": job.title,
            "description": job.description,
            "collection": job.collection,
        }

        try:
            if size < self.config.chunked_threshold:
                await self._upload_single(job, body, size, metadata, credentials, content_type)
            else:
                await self._upload_chunked(job, body, size, metadata, credentials, content_type)
        except RemoteError as e:
            if e.is_transient:
                raise UploadFailed(f"Upload failed after retries: {e.message}") from e
            raise
        except httpx.HTTPError as e:
            raise UploadFailed(f"Upload failed after retries: {type(e).__name__}: {e}") from e

        logger.info(f"Job {job.id[:8]} uploaded {size} bytes to {job.destination_id}")

    async def _iter_body(self, job: RelayJob, body: IO[bytes]) -> AsyncIterator[bytes]:
        body.seek(0)
        sent = 0
        while True:
            self._check_cancelled(job)
            piece = body.read(self.config.io_chunk_size)
            if not piece:
                break
            yield piece
            sent += len(piece)
            self._record_bytes(job, sent)
            self._publish(job)

    async def _upload_single(self, job, body, size, metadata, credentials, content_type):
        async def attempt():
            self._check_cancelled(job)
            await self.storage.put_object(
                job.destination_id,
                job.file_name,
                self._iter_body(job, body),
                metadata,
                credentials,
                size=size,
                content_type=content_type,
            )

        await self._retry(attempt, label=f"upload {job.id[:8]}")
        self._record_bytes(job, size)

    async def _upload_chunked(self, job, body, size, metadata, credentials, content_type):
        chunk_size = self.config.chunk_size
        for start in range(0, size, chunk_size):
            self._check_cancelled(job)
            end = min(start + chunk_size, size)
            body.seek(start)
            chunk = body.read(end - start)

            await self._retry(
                partial(
                    self.storage.put_chunk,
                    job.destination_id,
                    job.file_name,
                    chunk,
                    start,
                    end,
                    size,
                    credentials,
                    # Bucket metadata travels with the first chunk only
                    metadata=metadata if start == 0 else None,
                    content_type=content_type,
                ),
                label=f"chunk {start}-{end} of {job.id[:8]}",
            )
            self._record_bytes(job, end)
            self._publish(job)

    async def _finalize(self, job: RelayJob) -> None:
        job.advance(JobState.FINALIZING)
        self._publish(job, "Waiting for archive.org to register the upload")

        # archive.org indexes new items asynchronously
        await self._sleep(self.config.finalize_grace)

        confirmed = False
        remote_status = None
        try:
            metadata = await self.storage.get_metadata(job.destination_id)
            files = metadata.get("files") or []
            confirmed = any(f.get("name") == job.file_name for f in files)
            remote_status = (metadata.get("metadata") or {}).get("status")
        except (httpx.HTTPError, RemoteError, ValueError, AttributeError) as e:
            logger.warning(f"Job {job.id[:8]}: metadata confirmation skipped ({e})")

        base = self.config.public_base_url
        job.result = {
            "identifier": job.destination_id,
            "archive_url": f"{base}/details/{job.destination_id}",
            "download_url": f"{base}/download/{job.destination_id}/{quote(job.file_name)}",
            "confirmed": confirmed,
            "remote_status": remote_status or "processing",
        }
        job.advance(JobState.COMPLETE, now=self._clock())
        self._publish(job, "Upload complete")
        logger.info(f"Job {job.id[:8]} complete: {job.result['archive_url']} (confirmed={confirmed})")
