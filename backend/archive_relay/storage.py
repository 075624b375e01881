"""Async HTTP client for archive.org's S3-compatible storage API."""

import re
from collections.abc import AsyncIterable, AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional, Union
from urllib.parse import quote

import httpx

from .config import RelayConfig
from .errors import InvalidSession, RemoteError, SourceUnreachable
from .logging import get_logger

logger = get_logger("storage")

Credentials = tuple[str, str]
Body = Union[bytes, AsyncIterable[bytes]]

_DISPLAY_NAME_RE = re.compile(r"<DisplayName>(.+?)</DisplayName>", re.DOTALL)
_CONTENT_RANGE_RE = re.compile(r"bytes\s+(\d+)-(\d+)/(\d+|\*)")


def auth_header(credentials: Credentials) -> str:
    """archive.org's S3 auth scheme: `LOW access:secret`."""
    access_key, secret_key = credentials
    return f"LOW {access_key}:{secret_key}"


def _header_safe(value: str) -> str:
    """Encode values that cannot travel as a plain ASCII header.

    archive.org accepts `uri(<percent-encoded>)` for non-ASCII metadata.
    """
    if value.isascii() and value.isprintable():
        return value
    return f"uri({quote(value, safe='')})"


def metadata_headers(metadata: dict[str, Optional[str]]) -> dict[str, str]:
    """Render opaque metadata pairs as `x-archive-meta-*` headers."""
    headers = {}
    for key, value in metadata.items():
        if value is None or value == "":
            continue
        headers[f"x-archive-meta-{key}"] = _header_safe(str(value))
    return headers


def _parse_int(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


@dataclass
class HeadResult:
    """Outcome of probing a source URL."""
    ok: bool
    status: int
    content_length: Optional[int] = None
    content_type: Optional[str] = None


class DownloadStream:
    """An open GET on a source, possibly resumed mid-file."""

    def __init__(self, response: httpx.Response, requested_start: int, chunk_size: int):
        self.response = response
        self._chunk_size = chunk_size
        self.offset = 0
        self.total_length: Optional[int] = None

        length = _parse_int(response.headers.get("content-length"))
        if response.status_code == 206 and requested_start:
            match = _CONTENT_RANGE_RE.match(response.headers.get("content-range", ""))
            if match:
                self.offset = int(match.group(1))
                if match.group(3) != "*":
                    self.total_length = int(match.group(3))
            elif length is not None:
                self.offset = requested_start
            if self.total_length is None and length is not None:
                self.total_length = self.offset + length
        else:
            self.total_length = length

    @property
    def resumed(self) -> bool:
        return self.offset > 0

    def chunks(self) -> AsyncIterator[bytes]:
        return self.response.aiter_bytes(self._chunk_size)


class RemoteStorageClient:
    """GET/HEAD/PUT against sources and the archive.org storage endpoint."""

    def __init__(self, config: RelayConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config
        self.s3_endpoint = config.s3_endpoint
        self.metadata_endpoint = config.metadata_endpoint
        self._metadata_timeout = httpx.Timeout(config.metadata_timeout)
        # Bulk transfers: bounded connect, idle read/write timeouts, no overall cap
        self._transfer_timeout = httpx.Timeout(
            config.transfer_idle_timeout,
            connect=config.metadata_timeout,
            pool=config.metadata_timeout,
        )
        self._client = httpx.AsyncClient(
            headers={"User-Agent": config.user_agent},
            timeout=self._metadata_timeout,
            transport=transport,
        )

    async def close(self):
        await self._client.aclose()

    def object_url(self, destination_id: str, file_name: str) -> str:
        return f"{self.s3_endpoint}/{quote(destination_id)}/{quote(file_name)}"

    async def check_credentials(self, access_key: str, secret_key: str) -> str:
        """Validate a key pair against the storage endpoint.

        Returns the account display name, or raises InvalidSession.
        """
        resp = await self._client.get(
            self.s3_endpoint,
            headers={"Authorization": auth_header((access_key, secret_key))},
        )
        if not resp.is_success:
            logger.info(f"Credential check rejected with HTTP {resp.status_code}")
            raise InvalidSession("Invalid credentials")

        match = _DISPLAY_NAME_RE.search(resp.text)
        return match.group(1).strip() if match else "User"

    async def head_exists(self, url: str) -> HeadResult:
        """Probe a source URL. Raises SourceUnreachable on transport failure."""
        try:
            resp = await self._client.head(url, follow_redirects=True)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise SourceUnreachable(f"Could not reach {url}: {type(e).__name__}: {e}") from e

        return HeadResult(
            ok=resp.is_success,
            status=resp.status_code,
            content_length=_parse_int(resp.headers.get("content-length")),
            content_type=resp.headers.get("content-type"),
        )

    @asynccontextmanager
    async def stream_download(self, url: str, start: int = 0):
        """Open a streaming GET on `url`, asking to resume at `start`.

        Yields a DownloadStream; check its `offset` to see where the server
        actually started. Non-2xx answers raise RemoteError.
        """
        headers = {"Range": f"bytes={start}-"} if start else {}
        async with self._client.stream(
            "GET",
            url,
            headers=headers,
            timeout=self._transfer_timeout,
            follow_redirects=True,
        ) as resp:
            if not resp.is_success:
                await resp.aread()
                raise RemoteError(resp.status_code, resp.text, url=url)
            yield DownloadStream(resp, start, self.config.io_chunk_size)

    def _upload_headers(
        self,
        credentials: Credentials,
        metadata: Optional[dict],
        content_type: str,
        content_length: int,
    ) -> dict[str, str]:
        headers = {
            "Authorization": auth_header(credentials),
            "Content-Type": content_type,
            "Content-Length": str(content_length),
            "x-archive-auto-make-bucket": "1",
            "x-archive-queue-derive": "0",
        }
        if metadata:
            headers.update(metadata_headers(metadata))
        return headers

    async def put_object(
        self,
        destination_id: str,
        file_name: str,
        body: Body,
        metadata: dict,
        credentials: Credentials,
        *,
        size: int,
        content_type: str = "video/mp4",
    ) -> None:
        """Upload a whole object in one PUT."""
        url = self.object_url(destination_id, file_name)
        resp = await self._client.put(
            url,
            content=body,
            headers=self._upload_headers(credentials, metadata, content_type, size),
            timeout=self._transfer_timeout,
        )
        if not resp.is_success:
            raise RemoteError(resp.status_code, resp.text, url=url)
        logger.debug(f"PUT {destination_id}/{file_name} ({size} bytes) -> {resp.status_code}")

    async def put_chunk(
        self,
        destination_id: str,
        file_name: str,
        chunk: bytes,
        range_start: int,
        range_end: int,
        total_size: int,
        credentials: Credentials,
        *,
        metadata: Optional[dict] = None,
        content_type: str = "video/mp4",
    ) -> None:
        """Upload bytes [range_start, range_end) of an object."""
        if range_end - range_start != len(chunk):
            raise ValueError(
                f"chunk is {len(chunk)} bytes but range is {range_end - range_start}"
            )
        url = self.object_url(destination_id, file_name)
        headers = self._upload_headers(credentials, metadata, content_type, len(chunk))
        headers["Content-Range"] = f"bytes {range_start}-{range_end - 1}/{total_size}"

        resp = await self._client.put(
            url, content=chunk, headers=headers, timeout=self._transfer_timeout
        )
        if not resp.is_success:
            raise RemoteError(resp.status_code, resp.text, url=url)
        logger.debug(
            f"PUT {destination_id}/{file_name} range {range_start}-{range_end - 1}"
            f"/{total_size} -> {resp.status_code}"
        )

    async def get_metadata(self, identifier: str) -> dict:
        """Fetch the item's metadata document (`files[]`, `metadata`, ...)."""
        url = f"{self.metadata_endpoint}/{quote(identifier)}"
        resp = await self._client.get(url)
        if not resp.is_success:
            raise RemoteError(resp.status_code, resp.text, url=url)
        return resp.json()
