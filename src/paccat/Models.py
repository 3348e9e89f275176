"""Value objects shared by the resolver, downloader, reader and pipeline."""

from __future__ import annotations

import enum
import posixpath
import tarfile
from dataclasses import dataclass, field
from pathlib import Path

from .Errors import PaccatError


class TargetKind(enum.Enum):
    INSTALLED_PACKAGE = "installed"
    REPO_PACKAGE = "repo"
    URL = "url"
    LOCAL_FILE = "file"


class QueryMode(enum.Enum):
    """Which database bare package names are looked up in."""

    SYNC = "sync"
    INSTALLED = "installed"  # -Q
    FILES = "files"  # -F


class MatchPolicy(enum.Enum):
    FIRST_PER_TARGET = "first"
    ALL_MATCHES = "all"


class RepoPrecedence(enum.Enum):
    """How `repo/name` targets are treated in installed-package mode."""

    REPO = "repo"
    INSTALLED = "installed"


@dataclass(frozen=True)
class Target:
    """A classified target string.

    `repo` is only set for repo-qualified package targets; bare sync
    package names are REPO_PACKAGE with `repo` None.
    """

    raw: str
    kind: TargetKind
    name: str
    repo: str | None = None


@dataclass(frozen=True)
class PackageInfo:
    """Metadata of one package as reported by the database collaborator."""

    name: str
    version: str
    repo: str | None = None
    filename: str | None = None
    arch: str | None = None
    sha256sum: str | None = None
    md5sum: str | None = None
    base64_sig: str | None = None
    servers: tuple[str, ...] = ()
    files: tuple[str, ...] | None = None

    @property
    def download_urls(self) -> tuple[str, ...]:
        if not self.filename:
            return ()
        return tuple(f"{server.rstrip('/')}/{self.filename}" for server in self.servers)


@dataclass(frozen=True)
class PendingDownload:
    """Descriptor of an archive that still has to be fetched.

    `urls` are mirrors tried in order. `filename` names the file once it
    lands in the cache.
    """

    target: str
    filename: str
    urls: tuple[str, ...]
    sha256sum: str | None = None
    md5sum: str | None = None
    base64_sig: str | None = None


@dataclass(frozen=True)
class ArchiveSource:
    """Either a path to an already present archive or a pending download."""

    path: Path | None = None
    pending: PendingDownload | None = None

    def __post_init__(self) -> None:
        if (self.path is None) == (self.pending is None):
            raise ValueError("ArchiveSource needs exactly one of path or pending")

    @property
    def key(self) -> str:
        """Identity used to drop duplicate sources."""
        if self.path is not None:
            return f"path:{self.path.resolve()}"
        # distinct URLs may share a basename
        return f"download:{self.pending.filename}:{' '.join(self.pending.urls)}"

    @classmethod
    def local(cls, path: Path) -> ArchiveSource:
        return cls(path=path)

    @classmethod
    def download(cls, pending: PendingDownload) -> ArchiveSource:
        return cls(pending=pending)


@dataclass(frozen=True)
class Resolution:
    """Result of resolving one target: a source or an error.

    `files` is the package's file list when the database knows it; the
    pipeline uses it to skip archives that cannot satisfy any pattern.
    """

    target: Target
    source: ArchiveSource | None = None
    error: PaccatError | None = None
    files: tuple[str, ...] | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class ArchiveMember:
    path: str
    size: int
    is_regular_file: bool
    info: tarfile.TarInfo | None = field(default=None, repr=False, compare=False)

    @property
    def name(self) -> str:
        return posixpath.basename(self.path)
