"""Tests for the archive.org storage client against a mocked transport."""

import httpx
import pytest

from archive_relay.errors import InvalidSession, RemoteError, SourceUnreachable
from archive_relay.storage import RemoteStorageClient, metadata_headers

ACCOUNT_XML = """<?xml version="1.0" encoding="UTF-8"?>
<ListAllMyBucketsResult>
  <Owner><ID>OpaqueIDStringGoesHere</ID><DisplayName>alice_archivist</DisplayName></Owner>
  <Buckets></Buckets>
</ListAllMyBucketsResult>"""


class Recorder:
    """MockTransport handler that records requests and replays a script."""

    def __init__(self, handler):
        self.handler = handler
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.handler(request)


def make_client(config, handler) -> tuple[RemoteStorageClient, Recorder]:
    recorder = Recorder(handler)
    return RemoteStorageClient(config, transport=httpx.MockTransport(recorder)), recorder


async def test_check_credentials_returns_display_name(config):
    client, recorder = make_client(config, lambda r: httpx.Response(200, text=ACCOUNT_XML))

    assert await client.check_credentials("AK", "SK") == "alice_archivist"

    request = recorder.requests[0]
    assert request.method == "GET"
    assert str(request.url).startswith("https://s3.us.archive.org")
    assert request.headers["Authorization"] == "LOW AK:SK"
    assert request.headers["User-Agent"].startswith("archive-relay/")
    await client.close()


async def test_check_credentials_without_display_name(config):
    client, _ = make_client(config, lambda r: httpx.Response(200, text="<ok/>"))

    assert await client.check_credentials("AK", "SK") == "User"
    await client.close()


async def test_check_credentials_rejected(config):
    client, _ = make_client(config, lambda r: httpx.Response(403, text="denied"))

    with pytest.raises(InvalidSession):
        await client.check_credentials("AK", "bad")
    await client.close()


async def test_head_exists_reports_length_and_type(config):
    client, recorder = make_client(config, lambda r: httpx.Response(
        200, headers={"content-length": "12345", "content-type": "video/webm"}
    ))

    head = await client.head_exists("https://cdn.example.com/clip.webm")

    assert head.ok
    assert head.content_length == 12345
    assert head.content_type == "video/webm"
    assert recorder.requests[0].method == "HEAD"
    assert "Authorization" not in recorder.requests[0].headers
    await client.close()


async def test_head_exists_not_ok(config):
    client, _ = make_client(config, lambda r: httpx.Response(404))

    head = await client.head_exists("https://cdn.example.com/missing.mp4")

    assert not head.ok
    assert head.status == 404
    await client.close()


async def test_head_exists_unreachable(config):
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    client, _ = make_client(config, refuse)

    with pytest.raises(SourceUnreachable):
        await client.head_exists("https://down.example.com/a.mp4")
    await client.close()


async def test_stream_download_full(config):
    body = b"0123456789" * 50
    client, _ = make_client(config, lambda r: httpx.Response(200, content=body))

    async with client.stream_download("https://cdn.example.com/a.mp4") as stream:
        assert stream.offset == 0
        assert stream.total_length == len(body)
        data = b"".join([chunk async for chunk in stream.chunks()])

    assert data == body
    await client.close()


async def test_stream_download_resumes_with_range(config):
    body = b"0123456789" * 50

    def handler(request):
        assert request.headers["Range"] == "bytes=200-"
        return httpx.Response(
            206,
            content=body[200:],
            headers={"content-range": f"bytes 200-{len(body) - 1}/{len(body)}"},
        )

    client, _ = make_client(config, handler)

    async with client.stream_download("https://cdn.example.com/a.mp4", start=200) as stream:
        assert stream.offset == 200
        assert stream.resumed
        assert stream.total_length == len(body)
        data = b"".join([chunk async for chunk in stream.chunks()])

    assert data == body[200:]
    await client.close()


async def test_stream_download_range_ignored(config):
    body = b"abc" * 10
    client, _ = make_client(config, lambda r: httpx.Response(200, content=body))

    async with client.stream_download("https://cdn.example.com/a.mp4", start=7) as stream:
        assert stream.offset == 0
        assert stream.total_length == len(body)
    await client.close()


async def test_stream_download_error_status(config):
    client, _ = make_client(config, lambda r: httpx.Response(503, text="busy"))

    with pytest.raises(RemoteError) as info:
        async with client.stream_download("https://cdn.example.com/a.mp4"):
            pass

    assert info.value.status == 503
    assert info.value.is_transient
    await client.close()


async def test_put_object_headers(config):
    client, recorder = make_client(config, lambda r: httpx.Response(200))

    await client.put_object(
        "my_video_1700000000000",
        "clip one.mp4",
        b"payload",
        {"mediatype": "movies", "title": "Café night", "description": "", "collection": "opensource_movies"},
        ("AK", "SK"),
        size=7,
    )

    request = recorder.requests[0]
    assert request.method == "PUT"
    assert request.url.raw_path == b"/my_video_1700000000000/clip%20one.mp4"
    assert request.headers["Authorization"] == "LOW AK:SK"
    assert request.headers["Content-Length"] == "7"
    assert request.headers["x-archive-auto-make-bucket"] == "1"
    assert request.headers["x-archive-meta-mediatype"] == "movies"
    assert request.headers["x-archive-meta-title"] == "uri(Caf%C3%A9%20night)"
    assert request.headers["x-archive-meta-collection"] == "opensource_movies"
    assert "x-archive-meta-description" not in request.headers
    assert request.content == b"payload"
    await client.close()


async def test_put_object_streams_async_body(config):
    client, recorder = make_client(config, lambda r: httpx.Response(200))

    async def body():
        yield b"abc"
        yield b"def"

    await client.put_object("id", "a.mp4", body(), {}, ("AK", "SK"), size=6)

    request = recorder.requests[0]
    assert request.headers["Content-Length"] == "6"
    assert "Transfer-Encoding" not in request.headers
    await client.close()


async def test_put_object_error(config):
    client, _ = make_client(config, lambda r: httpx.Response(403, text="bad key"))

    with pytest.raises(RemoteError) as info:
        await client.put_object("id", "a.mp4", b"x", {}, ("AK", "SK"), size=1)

    assert info.value.status == 403
    assert not info.value.is_transient
    await client.close()


async def test_put_chunk_sends_content_range(config):
    client, recorder = make_client(config, lambda r: httpx.Response(200))

    await client.put_chunk("id", "a.mp4", b"x" * 5, 10, 15, 20, ("AK", "SK"))

    request = recorder.requests[0]
    assert request.headers["Content-Range"] == "bytes 10-14/20"
    assert request.headers["Content-Length"] == "5"
    await client.close()


async def test_put_chunk_rejects_mismatched_range(config):
    client, _ = make_client(config, lambda r: httpx.Response(200))

    with pytest.raises(ValueError):
        await client.put_chunk("id", "a.mp4", b"x" * 4, 0, 5, 5, ("AK", "SK"))
    await client.close()


async def test_get_metadata(config):
    doc = {"files": [{"name": "a.mp4", "format": "MPEG4"}], "metadata": {"identifier": "id"}}
    client, recorder = make_client(config, lambda r: httpx.Response(200, json=doc))

    assert await client.get_metadata("id") == doc
    assert str(recorder.requests[0].url) == "https://archive.org/metadata/id"
    await client.close()


def test_metadata_headers_skip_empty_and_encode_newlines():
    headers = metadata_headers({"title": "Plain", "description": "line one\nline two", "subject": None})

    assert headers == {
        "x-archive-meta-title": "Plain",
        "x-archive-meta-description": "uri(line%20one%0Aline%20two)",
    }
