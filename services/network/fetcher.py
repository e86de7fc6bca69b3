import asyncio
from typing import Any, AsyncIterator, Callable, Dict, Generic, Optional, TypeVar

import aiohttp

from core import constants
from core.config import RunConfig
from core.exceptions import (
    MissingContentLengthException,
    NetworkException,
    StreamInterruptedException,
    SyncException,
)
from core.logger import get_logger
from core.retry import AttemptCounter, retry_async
from core.utils import join_url

logger = get_logger(__name__)

T = TypeVar("T")

ProgressCallback = Callable[[int, int], None]


class FetchResult(Generic[T]):
    """Value or terminal error of a retried remote call. Never raised by the fetcher."""

    def __init__(
        self,
        endpoint: str,
        value: Optional[T] = None,
        error: Optional[SyncException] = None,
        attempts: int = 0,
    ):
        self.endpoint = endpoint
        self.value = value
        self.error = error
        self.attempts = attempts

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        if self.error is not None:
            raise self.error
        return self.value

    def __repr__(self):
        state = "ok" if self.ok else f"error={self.error}"
        return f"FetchResult({self.endpoint}, {state}, attempts={self.attempts})"


class StreamHandle:
    """
    Open streaming response plus its declared length.
    The idle timer restarts on every received chunk.
    """

    def __init__(
        self,
        response: aiohttp.ClientResponse,
        content_length: int,
        url: str,
        idle_timeout: float,
        chunk_size: int = constants.DOWNLOAD_CHUNK_SIZE,
    ):
        self.response = response
        self.content_length = content_length
        self.url = url
        self.idle_timeout = idle_timeout
        self.chunk_size = chunk_size
        self.bytes_read = 0

    async def iter_chunks(self, on_progress: Optional[ProgressCallback] = None) -> AsyncIterator[bytes]:
        iterator = self.response.content.iter_chunked(self.chunk_size).__aiter__()
        while True:
            try:
                chunk = await asyncio.wait_for(iterator.__anext__(), timeout=self.idle_timeout)
            except StopAsyncIteration:
                return
            except asyncio.TimeoutError:
                raise StreamInterruptedException(
                    f"Download stalled: no data for {self.idle_timeout}s",
                    {"url": self.url, "bytes_read": self.bytes_read},
                )
            except aiohttp.ClientError as e:
                raise StreamInterruptedException(
                    "Download interrupted",
                    {"url": self.url, "bytes_read": self.bytes_read, "error": str(e)},
                )
            self.bytes_read += len(chunk)
            if on_progress:
                on_progress(self.bytes_read, self.content_length)
            yield chunk

    def close(self) -> None:
        self.response.release()

    async def __aenter__(self) -> "StreamHandle":
        return self

    async def __aexit__(self, *exc) -> None:
        self.close()


class RetryingFetcher:
    """
    Wraps single remote calls (JSON GET or streaming GET) with bounded
    retries and a per-attempt connection timeout.
    """

    def __init__(self, session: aiohttp.ClientSession, config: RunConfig):
        self.session = session
        self.config = config
        self.timeout = aiohttp.ClientTimeout(
            total=None,
            sock_connect=config.connection_timeout,
            sock_read=config.request_timeout,
        )
        # Streams are bounded by the per-chunk idle timer of StreamHandle
        self.stream_timeout = aiohttp.ClientTimeout(
            total=None,
            sock_connect=config.connection_timeout,
            sock_read=config.download_timeout,
        )

    @staticmethod
    def create_session(config: RunConfig) -> aiohttp.ClientSession:
        """Creates and returns a new aiohttp session."""
        connector = aiohttp.TCPConnector(limit=10, limit_per_host=5)
        return aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(
                total=None,
                sock_connect=config.connection_timeout,
                sock_read=config.request_timeout,
            ),
            connector=connector,
            headers={"Accept": "application/json"},
        )

    def headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers: Dict[str, str] = {}
        if self.config.token:
            headers["Authorization"] = f"{self.config.auth_scheme} {self.config.token}"
        if extra:
            headers.update(extra)
        return headers

    def api_url(self, path: str) -> str:
        return join_url(self.config.api_server_url, path)

    def media_url(self, download_url: str) -> str:
        return join_url(self.config.media_server_url, download_url)

    async def _open(
        self,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[aiohttp.ClientTimeout] = None,
    ) -> aiohttp.ClientResponse:
        """One request attempt; returns the response with headers read."""
        try:
            resp = await self.session.get(url, headers=self.headers(headers), timeout=timeout or self.timeout)
        except asyncio.TimeoutError:
            raise NetworkException(f"Timeout fetching {url}", {"url": url})
        except aiohttp.ClientError as e:
            raise NetworkException(f"HTTP error fetching {url}", {"url": url, "error": str(e)})

        try:
            resp.raise_for_status()
        except aiohttp.ClientResponseError as e:
            resp.release()
            raise NetworkException(f"HTTP {e.status} fetching {url}", {"url": url, "status": e.status})
        return resp

    async def _get_json_once(self, url: str) -> Any:
        resp = await self._open(url)
        try:
            return await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise NetworkException(f"Failed reading body of {url}", {"url": url, "error": str(e)})
        except ValueError as e:
            raise NetworkException(f"Invalid JSON from {url}", {"url": url, "error": str(e)})
        finally:
            resp.release()

    async def _open_stream_once(self, url: str) -> StreamHandle:
        resp = await self._open(url, {"Connection": "keep-alive"}, self.stream_timeout)
        raw_length = resp.headers.get("Content-Length")
        try:
            content_length = int(raw_length)
            if content_length < 0:
                raise ValueError(raw_length)
        except (TypeError, ValueError):
            resp.release()
            raise MissingContentLengthException(
                "Stream response has no usable Content-Length header",
                {"url": url, "content_length": raw_length},
            )
        return StreamHandle(resp, content_length, url, self.config.download_timeout)

    async def _run(self, url: str, operation: Callable[[], Any], kind: str) -> FetchResult:
        counter = AttemptCounter()
        try:
            value = await retry_async(
                operation,
                attempts=self.config.max_request_retries,
                attempt_timeout=self.config.connection_timeout,
                label=f"{kind} {url}",
                counter=counter,
            )
        except SyncException as e:
            logger.error(
                f"[FETCHER] Giving up on {url} after {counter.attempts}/{self.config.max_request_retries} attempts: {e}"
            )
            if isinstance(e, NetworkException):
                e.details.setdefault("endpoint", url)
                e.details["attempts"] = counter.attempts
            return FetchResult(url, error=e, attempts=counter.attempts)

        logger.debug(f"[FETCHER] {kind} {url} ok (attempts={counter.attempts})")
        return FetchResult(url, value=value, attempts=counter.attempts)

    async def fetch_json(self, url: str) -> FetchResult:
        return await self._run(url, lambda: self._get_json_once(url), "GET")

    async def fetch_stream(self, url: str) -> FetchResult:
        """Value is an open StreamHandle; the caller must close it."""
        return await self._run(url, lambda: self._open_stream_once(url), "STREAM")
