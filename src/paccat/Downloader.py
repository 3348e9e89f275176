"""Concurrent download manager.

Pending downloads are fetched by a bounded thread pool into uniquely named
`.part` files inside a per-user scratch directory, verified, handed over to
the invoking user and then either served from the scratch directory (and
removed when the manager closes) or moved into the permanent cache
directory.
"""

import base64
import binascii
import enum
import hashlib
import logging
import os
import shutil
import stat
import subprocess
import tempfile
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Sequence, Set

from .Errors import DownloadFailed, EmptyFile, PaccatError, PermissionDenied, VerificationFailed
from .FileIO import HttpFetcher
from .Models import PendingDownload
from .Privileges import Privileges

logger = logging.getLogger(__name__)

DEFAULT_JOBS = 5


class DownloadEventKind(enum.Enum):
    STARTED = "started"
    PROGRESS = "progress"
    COMPLETED = "completed"
    FAILED = "failed"
    UP_TO_DATE = "up-to-date"


@dataclass(frozen=True)
class DownloadEvent:
    kind: DownloadEventKind
    filename: str
    advance: int = 0
    total: int | None = None


EventCallback = Callable[[DownloadEvent], None]


def file_digest(path: Path, algorithm: str) -> str:
    digest = hashlib.new(algorithm)
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def _private_to(path: Path, uid: int) -> bool:
    st = path.lstat()
    return stat.S_ISDIR(st.st_mode) and st.st_uid == uid and stat.S_IMODE(st.st_mode) & 0o077 == 0


def scratch_directory(privileges: Privileges, base: Path | None = None) -> Path:
    """Create (if needed) and return the per-user scratch directory.

    The name includes the invoking user so concurrent runs by different
    users never share a directory. An existing directory is only reused
    when it is a real directory owned by that user and closed to everyone
    else; otherwise a fresh private directory is created next to it.

    Raises:
        PermissionDenied: If the directory cannot be created or is not
            writable.
    """
    base = Path(base or tempfile.gettempdir())
    path = base / f"paccat-{privileges.user}"
    try:
        try:
            path.mkdir(mode=0o700)
            privileges.hand_over(path)
        except FileExistsError:
            if not _private_to(path, privileges.owner):
                logger.warning("not reusing %s: wrong owner, mode or file type", path)
                path = Path(tempfile.mkdtemp(prefix=f"paccat-{privileges.user}-", dir=base))
                privileges.hand_over(path)
    except OSError as e:
        raise PermissionDenied(f"failed to create scratch directory {path}: {e.strerror}") from e
    if not os.access(path, os.W_OK):
        raise PermissionDenied(f"scratch directory {path} is not writable")
    return path


class SignatureVerifier:
    """Checks detached package signatures with the gpg command line tool."""

    def __init__(self, gpgdir: Path | None, gpg: str = "gpg") -> None:
        self.gpgdir = gpgdir
        self.gpg = gpg

    @property
    def available(self) -> bool:
        return self.gpgdir is not None and shutil.which(self.gpg) is not None

    def verify(self, path: Path, base64_sig: str) -> bool:
        sig_path = path.with_name(path.name + ".sig")
        try:
            signature = base64.b64decode(base64_sig, validate=True)
        except (binascii.Error, ValueError) as e:
            raise VerificationFailed(f"{path.name}: malformed PGP signature") from e
        sig_path.write_bytes(signature)
        try:
            result = subprocess.run(
                [self.gpg, "--homedir", str(self.gpgdir), "--batch", "--quiet", "--verify", str(sig_path), str(path)],
                capture_output=True,
            )
        finally:
            sig_path.unlink(missing_ok=True)
        if result.returncode != 0:
            logger.debug("gpg: %s", result.stderr.decode(errors="replace").strip())
        return result.returncode == 0


class DownloadManager:
    """Materializes pending downloads into local files.

    Use as a context manager; closing cancels outstanding work and removes
    every scratch file the manager created.

    Attributes:
        scratch (Path): Directory receiving `.part` files.
        cachedir (Path | None): Permanent cache; verified downloads are moved
            here and kept when set.
        jobs (int): Maximum number of concurrent downloads.
    """

    def __init__(self, fetcher: HttpFetcher, scratch: Path, privileges: Privileges,
                 cachedir: Path | None = None, jobs: int = DEFAULT_JOBS,
                 verifier: SignatureVerifier | None = None, on_event: EventCallback | None = None) -> None:
        self.fetcher = fetcher
        self.scratch = scratch
        self.privileges = privileges
        self.cachedir = cachedir
        self.jobs = max(1, jobs)
        self.verifier = verifier
        self.on_event = on_event
        self.cancelled = threading.Event()
        self._executor = ThreadPoolExecutor(max_workers=self.jobs, thread_name_prefix="paccat-dl")
        self._created: List[Path] = []
        self._placed: Set[Path] = set()
        self._lock = threading.Lock()

    def __enter__(self) -> "DownloadManager":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def start(self, pending: Sequence[PendingDownload]) -> List[Future]:
        """Submit downloads; futures are returned in input order.

        Each future resolves to the local path of the verified archive or
        raises the `PaccatError` describing why that target failed.
        """
        return [self._executor.submit(self._download, item) for item in pending]

    def download(self, pending: PendingDownload) -> Path:
        return self.start([pending])[0].result()

    def cancel(self) -> None:
        """Cancel queued downloads and abort the ones in flight."""
        self.cancelled.set()
        self._executor.shutdown(wait=False, cancel_futures=True)

    def close(self) -> None:
        self.cancel()
        self._executor.shutdown(wait=True)
        with self._lock:
            created, self._created = self._created, []
        for path in created:
            path.unlink(missing_ok=True)

    def _emit(self, kind: DownloadEventKind, filename: str, advance: int = 0, total: int | None = None) -> None:
        if self.on_event:
            self.on_event(DownloadEvent(kind, filename, advance, total))

    def _download(self, pending: PendingDownload) -> Path:
        if self.cancelled.is_set():
            raise DownloadFailed("download cancelled", target=pending.target)

        self._emit(DownloadEventKind.STARTED, pending.filename)
        try:
            path = self._fetch(pending)
        except PaccatError as e:
            self._emit(DownloadEventKind.FAILED, pending.filename)
            if e.target is None:
                e.target = pending.target
            raise
        self._emit(DownloadEventKind.COMPLETED, pending.filename)
        return path

    def _fetch(self, pending: PendingDownload) -> Path:
        if not pending.urls:
            raise DownloadFailed(f"no server configured for {pending.filename}")

        try:
            fd, name = tempfile.mkstemp(prefix=f"{pending.filename}.", suffix=".part", dir=self.scratch)
        except OSError as e:
            raise PermissionDenied(f"failed to create file in {self.scratch}: {e.strerror}") from e
        os.close(fd)
        part = Path(name)
        with self._lock:
            self._created.append(part)

        def progress(advance: int, total: int | None) -> None:
            self._emit(DownloadEventKind.PROGRESS, pending.filename, advance, total)

        error = None
        for url in pending.urls:
            try:
                self.fetcher.fetch(url, part, progress_callback=progress, cancelled=self.cancelled)
                error = None
                break
            except DownloadFailed as e:
                logger.debug("mirror failed: %s", e)
                error = e
                if self.cancelled.is_set():
                    break
        if error is not None:
            self._discard(part)
            raise DownloadFailed(error.message, target=pending.target) from error

        if part.stat().st_size == 0:
            self._discard(part)
            raise EmptyFile(f"{pending.filename} is empty", target=pending.target)

        try:
            self._verify(pending, part)
        except VerificationFailed:
            self._discard(part)
            raise

        self.privileges.hand_over(part)
        return self._place(pending, part)

    def _verify(self, pending: PendingDownload, path: Path) -> None:
        if pending.sha256sum:
            algorithm, expected = "sha256", pending.sha256sum
        elif pending.md5sum:
            algorithm, expected = "md5", pending.md5sum
        else:
            algorithm = expected = None

        if expected is not None and file_digest(path, algorithm) != expected.lower():
            raise VerificationFailed(f"{pending.filename}: {algorithm} checksum mismatch", target=pending.target)

        if pending.base64_sig and self.verifier is not None:
            if not self.verifier.available:
                logger.debug("skipping signature check for %s: gpg unavailable", pending.filename)
            elif not self.verifier.verify(path, pending.base64_sig):
                raise VerificationFailed(f"{pending.filename}: invalid or corrupted package (PGP signature)",
                                         target=pending.target)

    def _place(self, pending: PendingDownload, part: Path) -> Path:
        if self.cachedir is None:
            return part
        dest = self.cachedir / pending.filename
        with self._lock:
            if dest in self._placed:
                # another source of this run already owns the name; serve from scratch
                logger.debug("%s already placed, keeping %s", dest, part)
                return part
            self._placed.add(dest)
        try:
            # filenames carry name and version, so an existing file is identical
            shutil.move(part, dest)
        except OSError as e:
            self._discard(part)
            raise PermissionDenied(f"failed to write {dest}: {e.strerror}", target=pending.target) from e
        with self._lock:
            self._created.remove(part)
        return dest

    def _discard(self, part: Path) -> None:
        part.unlink(missing_ok=True)
        with self._lock:
            if part in self._created:
                self._created.remove(part)
