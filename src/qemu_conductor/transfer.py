"""Redirect-following HTTP downloads with progress reporting.

Used to fetch install media and driver ISOs. Redirects are followed by hand
rather than by httpx so the hop limit, the relative Location resolution and
the Content-Disposition rename all apply per hop.
"""

import re
import time
from collections.abc import Callable
from pathlib import Path, PurePosixPath
from types import TracebackType
from typing import Self
from urllib.parse import unquote

import aiofiles
import httpx

from qemu_conductor._logging import get_logger
from qemu_conductor.constants import (
    INFERRED_FILENAME_EXTENSIONS,
    MAX_REDIRECTS,
    PROGRESS_INTERVAL_SECONDS,
    REDIRECT_STATUS_CODES,
    TRANSFER_CHUNK_BYTES,
)
from qemu_conductor.exceptions import (
    MissingRedirectTargetError,
    TooManyRedirectsError,
    TransferError,
    TransferHttpError,
)
from qemu_conductor.models import TransferProgress
from qemu_conductor.resource_cleanup import cleanup_file

logger = get_logger(__name__)

ProgressCallback = Callable[[TransferProgress], None]

_CONTENT_DISPOSITION_FILENAME = re.compile(r"filename[^;=\n]*=((['\"]).*?\2|[^;\n]*)")


def filename_from_content_disposition(header: str | None) -> str | None:
    """Extract a media filename from a Content-Disposition header.

    Quotes and path components are stripped and percent-encoding decoded.
    Only names ending in .iso or .img are accepted.
    """
    if not header:
        return None
    match = _CONTENT_DISPOSITION_FILENAME.search(header)
    if not match or not match.group(1):
        return None
    raw = match.group(1).replace('"', "").replace("'", "").strip()
    name = unquote(PurePosixPath(raw.replace("\\", "/")).name)
    if name and name.lower().endswith(INFERRED_FILENAME_EXTENSIONS):
        return name
    return None


class _ProgressThrottle:
    """Forwards at most one progress update per interval."""

    def __init__(self, callback: ProgressCallback | None, total: int | None, interval: float) -> None:
        self.callback = callback
        self.total = total
        self.interval = interval
        self.downloaded = 0
        self._last = time.monotonic()

    def advance(self, size: int) -> None:
        self.downloaded += size
        if self.callback is None:
            return
        now = time.monotonic()
        if now - self._last >= self.interval:
            self._last = now
            self.callback(TransferProgress(downloaded=self.downloaded, total=self.total, percent=self._percent()))

    def finish(self) -> None:
        if self.callback is not None:
            self.callback(TransferProgress(downloaded=self.downloaded, total=self.total, percent=100.0))

    def _percent(self) -> float | None:
        if not self.total:
            return None
        return round(min(self.downloaded / self.total, 1.0) * 100, 1)


class TransferManager:
    """Downloads files over HTTP(S).

    Usage:
        async with TransferManager() as transfers:
            path = await transfers.download(url, media_dir / "virtio-win.iso", on_progress=print)

    Attributes:
        max_redirects: Redirect hops allowed per download
        progress_interval: Minimum seconds between progress callbacks
    """

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        *,
        max_redirects: int = MAX_REDIRECTS,
        progress_interval: float = PROGRESS_INTERVAL_SECONDS,
    ):
        self._owns_client = client is None
        # No timeout: ISO downloads run for minutes on slow mirrors
        self._client = client or httpx.AsyncClient(follow_redirects=False, timeout=None)
        self.max_redirects = max_redirects
        self.progress_interval = progress_interval

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def download(
        self,
        url: str,
        destination: Path | str,
        on_progress: ProgressCallback | None = None,
        infer_filename: bool = False,
    ) -> Path:
        """Download url to destination, following redirects.

        The destination directory must exist. With infer_filename, a
        Content-Disposition filename (.iso/.img) on the first response
        replaces the destination's basename and the request is repeated.

        Returns:
            Final path of the downloaded file

        Raises:
            TooManyRedirectsError: More than max_redirects hops
            MissingRedirectTargetError: Redirect without a Location header
            TransferHttpError: Terminal status other than 200
            TransferError: Transport or file system failure
        """
        dest = Path(destination)
        request_url = url
        hops = 0
        first_response = True
        completed = False

        try:
            while True:
                async with self._client.stream("GET", request_url, follow_redirects=False) as response:
                    if response.status_code in REDIRECT_STATUS_CODES:
                        first_response = False
                        location = response.headers.get("location")
                        if not location:
                            raise MissingRedirectTargetError(
                                f"Redirect from {request_url} has no Location header",
                                {"url": request_url, "status_code": response.status_code},
                            )
                        hops += 1
                        if hops > self.max_redirects:
                            raise TooManyRedirectsError(
                                f"Exceeded {self.max_redirects} redirects while downloading {url}",
                                {"url": url, "max_redirects": self.max_redirects},
                            )
                        request_url = str(response.url.join(location))
                        logger.debug("Following redirect", extra={"url": request_url, "hop": hops})
                        continue

                    if infer_filename and first_response:
                        first_response = False
                        name = filename_from_content_disposition(response.headers.get("content-disposition"))
                        if name and name != dest.name:
                            dest = dest.with_name(name)
                            logger.debug("Using server-supplied filename", extra={"url": url, "path": str(dest)})
                            continue
                    first_response = False

                    if response.status_code != 200:
                        raise TransferHttpError(
                            response.status_code,
                            response.reason_phrase,
                            {"url": request_url, "path": str(dest)},
                        )

                    await self._write_body(response, dest, on_progress)
                    completed = True
                    break
        except (httpx.HTTPError, OSError) as e:
            raise TransferError(
                f"Download of {url} failed: {e}",
                {"url": url, "path": str(dest), "error_type": type(e).__name__},
            ) from e
        finally:
            if not completed:
                # Runs on cancellation too: no partial file survives
                await cleanup_file(dest, url, "partial download")

        logger.info("Download complete", extra={"url": url, "path": str(dest), "redirects": hops})
        return dest

    async def _write_body(
        self,
        response: httpx.Response,
        dest: Path,
        on_progress: ProgressCallback | None,
    ) -> None:
        length = response.headers.get("content-length")
        total = int(length) if length and length.isdigit() else None
        throttle = _ProgressThrottle(on_progress, total, self.progress_interval)

        async with aiofiles.open(dest, "wb") as f:
            async for chunk in response.aiter_bytes(TRANSFER_CHUNK_BYTES):
                await f.write(chunk)
                throttle.advance(len(chunk))
        throttle.finish()
