"""
Fetching and unpacking the remote dump.

Both collaborators sit behind small protocols so the orchestrator can be
driven with other transports (or test doubles):
- Fetcher: copies the bytes at a URL to a local staging file
- Extractor: unpacks a compressed archive into a directory of plain files
"""

import asyncio
import tarfile
import zlib
from pathlib import Path
from typing import Protocol

import httpx
import structlog

from dump_ingest.errors import ExtractionError, FetchError

log = structlog.get_logger()

CHUNK_SIZE = 1024 * 1024


class Fetcher(Protocol):
    async def fetch(self, url: str, dest: str) -> None:
        """Download url to dest, raising FetchError on failure."""
        ...


class Extractor(Protocol):
    async def extract(self, archive: str, dest_dir: str) -> list[str]:
        """Unpack archive into dest_dir, returning the extracted file names."""
        ...


class HttpFetcher:
    """Streams a URL to disk with httpx."""

    def __init__(
        self,
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.timeout = timeout
        self.transport = transport

    async def fetch(self, url: str, dest: str) -> None:
        """
        Download url to dest without holding the body in memory.

        A partially written file is removed on any failure or cancellation
        (best effort).

        Raises:
            FetchError: On any network, HTTP status or disk error
        """
        dest_path = Path(dest)
        size = 0
        try:
            dest_path.parent.mkdir(parents=True, exist_ok=True)
            async with httpx.AsyncClient(
                timeout=self.timeout,
                transport=self.transport,
                follow_redirects=True,
            ) as client:
                async with client.stream("GET", url) as response:
                    response.raise_for_status()
                    with open(dest_path, "wb") as f:
                        async for chunk in response.aiter_bytes(CHUNK_SIZE):
                            f.write(chunk)
                            size += len(chunk)
        except (httpx.HTTPError, OSError) as e:
            self._discard(dest_path)
            raise FetchError(f"Failed to download {url}: {e}", stage="fetch") from e
        except BaseException:
            self._discard(dest_path)
            raise

        log.info("archive_downloaded", url=url, path=str(dest_path), size_bytes=size)

    def _discard(self, path: Path) -> None:
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            log.warning("partial_download_not_removed", path=str(path), error=str(e))


class TarExtractor:
    """Unpacks (optionally compressed) tar archives."""

    async def extract(self, archive: str, dest_dir: str) -> list[str]:
        """
        Unpack archive into dest_dir.

        Raises:
            ExtractionError: If the archive is missing, corrupt or unsafe
        """
        names = await asyncio.to_thread(self._extract, archive, dest_dir)
        log.info("archive_extracted", archive=archive, dest_dir=dest_dir, files=len(names))
        return names

    def _extract(self, archive: str, dest_dir: str) -> list[str]:
        try:
            Path(dest_dir).mkdir(parents=True, exist_ok=True)
            with tarfile.open(archive, "r:*") as tar:
                # The "data" filter rejects absolute paths, links out of
                # dest_dir and device files
                tar.extractall(dest_dir, filter="data")
                return [m.name for m in tar.getmembers() if m.isfile()]
        except (tarfile.TarError, OSError, EOFError, zlib.error) as e:
            raise ExtractionError(
                f"Failed to extract {archive}: {e}", stage="extract"
            ) from e
