"""Whole-file fetcher for package archives and database files.

Provides HttpFetcher, a thin wrapper over a keep-alive `httpx.Client` that
streams a URL to a local file with retry/backoff. `file://` URLs are copied
from disk so local repositories configured in pacman.conf work too.

Classes:
    HttpFetcher: Streams remote resources to local files.
"""

import email.utils
import logging
import shutil
import threading
import time
from pathlib import Path
from typing import Callable
from urllib.parse import unquote, urlsplit

import httpx

from . import __version__
from .Errors import DownloadFailed

logger = logging.getLogger(__name__)

CHUNK_SIZE = 128 * 1024  # 128 KB
MAX_ATTEMPTS = 5

ProgressCallback = Callable[[int, "int | None"], None]


class HttpFetcher:
    """Downloads URLs into local files.

    The client is shared by every worker thread of a run; httpx clients are
    safe to use concurrently and keep connections alive across requests to
    the same mirror.

    Attributes:
        client (httpx.Client): HTTP client used for requests.
        attempts (int): Maximum number of tries per URL.
    """

    def __init__(self, client: httpx.Client | None = None, attempts: int = MAX_ATTEMPTS, sleep=time.sleep) -> None:
        headers = {
            "User-Agent": f"paccat/{__version__}",
            "Accept": "*/*",
            "Connection": "keep-alive"}
        self.client = client or httpx.Client(headers=headers, follow_redirects=True,
                                             timeout=httpx.Timeout(10.0, read=300.0))
        self.attempts = attempts
        self._sleep = sleep

    def __enter__(self) -> "HttpFetcher":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def fetch(self, url: str, dest: Path, progress_callback: ProgressCallback | None = None,
              cancelled: threading.Event | None = None, modified_since: float | None = None) -> bool:
        """Stream `url` into `dest`, overwriting it.

        Args:
            url (str): http(s) or file URL.
            dest (Path): Local file to write.
            progress_callback (callable|None): Called with (bytes_written, total)
                after each chunk; total is None when the size is unknown.
            cancelled (threading.Event|None): Aborts the transfer when set.
            modified_since (float|None): Timestamp for a conditional request.

        Returns:
            bool: False if the server reported the resource as not modified.

        Raises:
            DownloadFailed: On network errors, HTTP errors, cancellation or an
                unsupported URL scheme.
        """
        scheme = urlsplit(url).scheme
        if scheme == "file":
            return self._copy_local(url, dest, progress_callback, modified_since)
        if scheme not in ("http", "https"):
            raise DownloadFailed(f"unsupported URL scheme '{scheme}': {url}")

        headers = {}
        if modified_since is not None:
            headers["If-Modified-Since"] = email.utils.formatdate(modified_since, usegmt=True)

        for attempt in range(self.attempts):
            last_attempt = attempt == self.attempts - 1
            try:
                with self.client.stream("GET", url, headers=headers) as response:
                    if response.status_code == 429 and not last_attempt:
                        # Server asks us to retry later; follow Retry-After if present.
                        try:
                            wait_time = max(int(response.headers.get("Retry-After", 3)), 1)
                        except ValueError:
                            wait_time = 3
                        logger.warning("%s: too many requests, retrying after %d seconds", url, wait_time)
                        self._sleep(wait_time)
                        continue
                    if response.status_code == 304:
                        return False
                    response.raise_for_status()
                    total = int(response.headers["Content-Length"]) if "Content-Length" in response.headers else None
                    self._write(response.iter_bytes(CHUNK_SIZE), dest, total, progress_callback, cancelled)
                return True
            except httpx.HTTPStatusError as e:
                status = e.response.status_code
                if status < 500 or last_attempt:
                    raise DownloadFailed(f"{url}: server returned {status}") from e
                error = f"server returned {status}"
            except httpx.TransportError as e:
                if last_attempt:
                    raise DownloadFailed(f"{url}: {e}") from e
                error = str(e)

            wait_time = (attempt + 1) * 2
            logger.warning("%s: %s (attempt %d), retrying after %d seconds", url, error, attempt + 1, wait_time)
            self._sleep(wait_time)

        raise DownloadFailed(f"{url}: giving up after {self.attempts} attempts")

    def _write(self, chunks, dest: Path, total: int | None, progress_callback, cancelled) -> None:
        try:
            with open(dest, "wb") as target_file:
                for chunk in chunks:
                    if cancelled is not None and cancelled.is_set():
                        raise DownloadFailed("download cancelled")
                    target_file.write(chunk)
                    if progress_callback:
                        progress_callback(len(chunk), total)
        except OSError as e:
            raise DownloadFailed(f"failed to write {dest}: {e.strerror}") from e

    def _copy_local(self, url: str, dest: Path, progress_callback, modified_since) -> bool:
        source = Path(unquote(urlsplit(url).path))
        try:
            if modified_since is not None and source.stat().st_mtime <= modified_since:
                return False
            size = source.stat().st_size
            with open(source, "rb") as source_file, open(dest, "wb") as target_file:
                shutil.copyfileobj(source_file, target_file, CHUNK_SIZE)
        except OSError as e:
            raise DownloadFailed(f"{url}: {e.strerror}") from e
        if progress_callback:
            progress_callback(size, size)
        return True

    def close(self) -> None:
        """Close the underlying HTTP client."""
        self.client.close()
