import os
from pathlib import Path

from core import constants
from core.config import RunConfig
from core.exceptions import PartialDownloadException, StreamInterruptedException, SyncException
from core.logger import get_logger
from core.retry import AttemptCounter, retry_async
from models.submission import Attachment
from repositories.content_store import ContentStore
from services.network.fetcher import RetryingFetcher, StreamHandle

logger = get_logger(__name__)


def is_download_retryable(error: BaseException) -> bool:
    """
    Streaming failures are retried at download level. Failing to open the
    stream is not: the fetcher already spent its own retries on that.
    """
    return isinstance(error, (PartialDownloadException, StreamInterruptedException))


class DownloadResult:
    def __init__(self, path: Path, size: int, digest: bytes, attempts: int):
        self.path = path
        self.size = size
        self.digest = digest
        self.attempts = attempts


class ImageDownloader:
    """
    Streams an attachment to `<target>.part` while hashing it, checks the
    received length against Content-Length, then moves the file into place.
    """

    def __init__(self, fetcher: RetryingFetcher, config: RunConfig, store: ContentStore):
        self.fetcher = fetcher
        self.config = config
        self.store = store

    async def _write_stream(self, handle: StreamHandle, part_path: Path, label: str):
        hasher = self.store.new_hasher()
        size = 0
        next_mark = constants.PROGRESS_LOG_STEP

        def on_progress(received: int, total: int) -> None:
            nonlocal next_mark
            if total <= 0:
                return
            percent = received * 100 // total
            if percent >= next_mark:
                logger.debug(f"[DOWNLOAD] {label}: {percent}% ({received}/{total} bytes)")
                while next_mark <= percent:
                    next_mark += constants.PROGRESS_LOG_STEP

        with open(part_path, "wb") as f:
            async for chunk in handle.iter_chunks(on_progress):
                f.write(chunk)
                hasher.update(chunk)
                size += len(chunk)
            f.flush()
            os.fsync(f.fileno())

        if size != handle.content_length:
            raise PartialDownloadException(
                f"Received {size} of {handle.content_length} bytes",
                {"url": handle.url, "received": size, "expected": handle.content_length},
            )
        return size, hasher.digest()

    async def download(self, attachment: Attachment, target: Path) -> DownloadResult:
        target = self.store.resolve(target)
        part_path = target.with_name(target.name + constants.PARTIAL_DOWNLOAD_SUFFIX)
        url = self.fetcher.media_url(attachment.download_url)
        label = f"attachment {attachment.id} -> {target.name}"
        self.store.ensure_dir(target.parent)

        async def attempt():
            result = await self.fetcher.fetch_stream(url)
            handle: StreamHandle = result.unwrap()
            try:
                return await self._write_stream(handle, part_path, label)
            finally:
                handle.close()

        counter = AttemptCounter()
        try:
            size, digest = await retry_async(
                attempt,
                attempts=self.config.max_download_retries,
                classifier=is_download_retryable,
                label=f"download {label}",
                counter=counter,
            )
        except (SyncException, OSError):
            self.store.remove(part_path)
            raise

        self.store.move(part_path, target)
        logger.info(f"[DOWNLOAD] {label}: {size} bytes (attempts={counter.attempts})")
        return DownloadResult(target, size, digest, counter.attempts)
