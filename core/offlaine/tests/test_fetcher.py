"""
Tests for HttpFetcher against an in-process transport.

These tests verify that:
- a plain GET writes the whole body
- a 206 reply appends from the requested offset
- a 200 reply to a range request restarts from zero
- 416 means the partial file is already complete
- HTTP errors become TransportFailure
"""

import asyncio
import threading

import httpx
import pytest

from offlaine.errors import TransportFailure
from offlaine.models.fetcher import HttpFetcher

BODY = bytes(range(256)) * 4  # 1024 bytes
URL = "https://models.example/v/m/model.gguf"


def make_fetcher(handler, chunk_size=128):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpFetcher(chunk_size=chunk_size, client=client)


def range_handler(request: httpx.Request) -> httpx.Response:
    header = request.headers.get("range")
    if not header:
        return httpx.Response(200, content=BODY)

    start = int(header.removeprefix("bytes=").rstrip("-"))
    if start >= len(BODY):
        return httpx.Response(416)
    return httpx.Response(206, content=BODY[start:])


class TestHttpFetcher:
    """Streaming, resume and failure handling."""

    @pytest.mark.asyncio
    async def test_full_download(self, tmp_path):
        dest = tmp_path / "model.gguf.part"
        seen = []

        result = await make_fetcher(range_handler).fetch(
            URL, dest, on_chunk=lambda done, total: seen.append((done, total))
        )

        assert result.completed
        assert result.bytes_written == len(BODY)
        assert result.total_bytes == len(BODY)
        assert dest.read_bytes() == BODY
        assert seen[-1] == (len(BODY), len(BODY))
        assert [done for done, _ in seen] == sorted(done for done, _ in seen)

    @pytest.mark.asyncio
    async def test_resume_with_range(self, tmp_path):
        dest = tmp_path / "model.gguf.part"
        dest.write_bytes(BODY[:300])

        result = await make_fetcher(range_handler).fetch(URL, dest, offset=300)

        assert result.completed
        assert result.resumed_from == 300
        assert result.total_bytes == len(BODY)
        assert dest.read_bytes() == BODY

    @pytest.mark.asyncio
    async def test_ignored_range_restarts(self, tmp_path):
        dest = tmp_path / "model.gguf.part"
        dest.write_bytes(b"stale" * 60)

        def no_range(request):
            return httpx.Response(200, content=BODY)

        result = await make_fetcher(no_range).fetch(URL, dest, offset=300)

        assert result.completed
        assert result.resumed_from == 0
        assert dest.read_bytes() == BODY

    @pytest.mark.asyncio
    async def test_range_not_satisfiable_means_complete(self, tmp_path):
        dest = tmp_path / "model.gguf.part"
        dest.write_bytes(BODY)

        result = await make_fetcher(range_handler).fetch(URL, dest, offset=len(BODY))

        assert result.completed
        assert result.bytes_written == len(BODY)
        assert dest.read_bytes() == BODY

    @pytest.mark.asyncio
    async def test_http_error(self, tmp_path):
        def missing(request):
            return httpx.Response(404)

        with pytest.raises(TransportFailure) as exc_info:
            await make_fetcher(missing).fetch(URL, tmp_path / "x.part")

        assert exc_info.value.status_code == 404
        assert exc_info.value.recoverable

    @pytest.mark.asyncio
    async def test_connection_error(self, tmp_path):
        def unreachable(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(TransportFailure):
            await make_fetcher(unreachable).fetch(URL, tmp_path / "x.part")

    @pytest.mark.asyncio
    async def test_stop_event_ends_early(self, tmp_path):
        dest = tmp_path / "model.gguf.part"
        stop = asyncio.Event()

        def stop_after_first(done, total):
            if done >= 128:
                stop.set()

        result = await make_fetcher(range_handler).fetch(
            URL, dest, on_chunk=stop_after_first, stop_event=stop
        )

        assert not result.completed
        assert result.bytes_written < len(BODY)
        assert dest.stat().st_size == result.bytes_written

    @pytest.mark.asyncio
    async def test_file_writes_run_in_worker_threads(self, tmp_path, monkeypatch):
        write_threads = set()
        to_thread = asyncio.to_thread

        async def recording_to_thread(fn, *args, **kwargs):
            def call():
                if getattr(fn, "__name__", "") == "write":
                    write_threads.add(threading.get_ident())
                return fn(*args, **kwargs)

            return await to_thread(call)

        monkeypatch.setattr(asyncio, "to_thread", recording_to_thread)
        dest = tmp_path / "model.gguf.part"

        result = await make_fetcher(range_handler).fetch(URL, dest)

        assert result.completed
        assert dest.read_bytes() == BODY
        assert write_threads
        assert threading.get_ident() not in write_threads
