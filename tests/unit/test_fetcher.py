"""
Unit tests for RetryingFetcher and StreamHandle.

Tests cover:
- Authorization header handling
- Retry on network errors / non-2xx answers
- Terminal failures returned as FetchResult, never raised
- Content-Length requirement and idle timeout of streams
"""
import aiohttp
import pytest

from core.exceptions import (
    MissingContentLengthException,
    NetworkException,
    StreamInterruptedException,
)
from services.network.fetcher import RetryingFetcher
from tests.fakes import TOKEN, FakeResponse, FakeSession, Stall, image_response

URL = "https://kf.example.org/api/v2/assets/?format=json"
ASSET_URL = "https://kf.example.org/api/v2/assets/aXk3/?format=json"


class TestRetryingFetcher:
    def test_headers_with_token(self, run_config):
        fetcher = RetryingFetcher(FakeSession(), run_config)
        assert fetcher.headers() == {"Authorization": f"Token {TOKEN}"}

    def test_headers_anonymous(self, make_config):
        fetcher = RetryingFetcher(FakeSession(), make_config(token=None))
        assert fetcher.headers() == {}

    def test_media_url(self, run_config):
        fetcher = RetryingFetcher(FakeSession(), run_config)
        assert fetcher.media_url("/media/original?x=1") == "https://kc.example.org/media/original?x=1"
        assert fetcher.media_url("https://cdn.example.org/a.jpg") == "https://cdn.example.org/a.jpg"

    @pytest.mark.asyncio
    async def test_fetch_json_success(self, run_config):
        session = FakeSession({URL: [FakeResponse(json_data={"results": []})]})
        fetcher = RetryingFetcher(session, run_config)

        result = await fetcher.fetch_json(URL)

        assert result.ok
        assert result.value == {"results": []}
        assert result.attempts == 1
        _, kwargs = session.get.call_args
        assert kwargs["headers"]["Authorization"] == f"Token {TOKEN}"

    @pytest.mark.asyncio
    async def test_fetch_json_retries_then_succeeds(self, run_config):
        ok = FakeResponse(json_data=[1, 2])
        failing = FakeResponse(status=502)
        session = FakeSession({URL: [aiohttp.ClientConnectionError("reset"), failing, ok]})
        fetcher = RetryingFetcher(session, run_config)

        result = await fetcher.fetch_json(URL)

        assert result.value == [1, 2]
        assert result.attempts == 3
        failing.release.assert_called()
        ok.release.assert_called_once()

    @pytest.mark.asyncio
    async def test_fetch_json_exhausted_returns_error(self, run_config):
        session = FakeSession({URL: [FakeResponse(status=500)]})
        fetcher = RetryingFetcher(session, run_config)

        result = await fetcher.fetch_json(URL)

        assert not result.ok
        assert isinstance(result.error, NetworkException)
        assert result.attempts == run_config.max_request_retries
        assert result.error.details["endpoint"] == URL
        assert session.calls_to(URL) == run_config.max_request_retries
        with pytest.raises(NetworkException):
            result.unwrap()

    @pytest.mark.asyncio
    async def test_fetch_json_invalid_body_is_retried(self, run_config):
        bad = FakeResponse()
        bad.json = _raise_value_error
        session = FakeSession({URL: [bad, FakeResponse(json_data={"ok": True})]})

        result = await RetryingFetcher(session, run_config).fetch_json(URL)

        assert result.value == {"ok": True}
        assert result.attempts == 2

    @pytest.mark.asyncio
    async def test_stream_requires_content_length(self, run_config):
        response = FakeResponse(chunks=[b"data"])
        session = FakeSession({URL: [response]})

        result = await RetryingFetcher(session, run_config).fetch_stream(URL)

        assert isinstance(result.error, MissingContentLengthException)
        assert result.attempts == 1
        response.release.assert_called_once()

    @pytest.mark.asyncio
    async def test_stream_chunks_and_progress(self, run_config):
        session = FakeSession({URL: [image_response(b"0123456789", chunk_size=4)]})
        progress = []

        result = await RetryingFetcher(session, run_config).fetch_stream(URL)
        handle = result.unwrap()
        async with handle:
            data = b"".join([chunk async for chunk in handle.iter_chunks(lambda got, total: progress.append(got))])

        assert data == b"0123456789"
        assert handle.content_length == 10
        assert progress == [4, 8, 10]
        handle.response.release.assert_called_once()

    @pytest.mark.asyncio
    async def test_stream_idle_timeout(self, make_config):
        config = make_config(download_timeout=0.05)
        response = FakeResponse(chunks=[b"abc", Stall(1.0), b"def"], headers={"Content-Length": "6"})
        session = FakeSession({URL: [response]})

        handle = (await RetryingFetcher(session, config).fetch_stream(URL)).unwrap()

        with pytest.raises(StreamInterruptedException, match="stalled"):
            async for _ in handle.iter_chunks():
                pass
        assert handle.bytes_read == 3

    @pytest.mark.asyncio
    async def test_slow_but_progressing_stream_is_not_aborted(self, make_config):
        config = make_config(download_timeout=0.2)
        chunks = [b"a", Stall(0.05), b"b", Stall(0.05), b"c", Stall(0.05), b"d", Stall(0.05), b"e"]
        session = FakeSession({URL: [FakeResponse(chunks=chunks, headers={"Content-Length": "5"})]})

        handle = (await RetryingFetcher(session, config).fetch_stream(URL)).unwrap()
        data = b"".join([chunk async for chunk in handle.iter_chunks()])

        assert data == b"abcde"

    @pytest.mark.asyncio
    async def test_stream_read_timeout_follows_download_timeout(self, make_config):
        config = make_config(request_timeout=1.0, download_timeout=7.0)
        session = FakeSession({URL: [image_response(b"abc")], ASSET_URL: [FakeResponse(json_data={})]})
        fetcher = RetryingFetcher(session, config)

        await fetcher.fetch_stream(URL)
        stream_timeout = session.get.call_args.kwargs["timeout"]
        await fetcher.fetch_json(ASSET_URL)
        json_timeout = session.get.call_args.kwargs["timeout"]

        assert stream_timeout.sock_read == 7.0
        assert json_timeout.sock_read == 1.0
        assert stream_timeout.sock_connect == config.connection_timeout


async def _raise_value_error(content_type=None):
    raise ValueError("Expecting value")
