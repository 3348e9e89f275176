"""Run-wide settings assembled from the command line."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from pathlib import Path

from .Models import MatchPolicy, QueryMode, RepoPrecedence


class ColorMode(enum.Enum):
    AUTO = "auto"
    ALWAYS = "always"
    NEVER = "never"


@dataclass(slots=True, frozen=True)
class Settings:
    """Every switch that shapes one paccat run.

    `files` holds the raw file arguments in command line order; `targets`
    may be empty in installed/files query mode.
    """

    targets: tuple[str, ...]
    files: tuple[str, ...]
    regex: bool = False
    policy: MatchPolicy = MatchPolicy.FIRST_PER_TARGET
    quiet: bool = False
    binary: bool = False
    mode: QueryMode = QueryMode.SYNC
    refresh: int = 0
    root: str | None = None
    dbpath: str | None = None
    config: Path | None = None
    cachedir: str | None = None
    jobs: int | None = None
    color: ColorMode = ColorMode.AUTO
    highlighter: str | None = None
    prefer: RepoPrecedence = RepoPrecedence.REPO
    verify_signatures: bool = True
    debug: bool = False

    @property
    def open_ended(self) -> bool:
        """No explicit targets: search every installed or sync package."""
        return not self.targets and self.mode is not QueryMode.SYNC


@dataclass(frozen=True)
class PacmanSettings:
    """What paccat needs from pacman.conf.

    Attributes:
        root (Path): Installation root.
        dbpath (Path): Database directory.
        gpgdir (Path | None): Keyring used for signature checks.
        cachedirs (tuple[Path, ...]): Package caches, the user supplied one
            first.
        repos (dict[str, tuple[str, ...]]): Sync repositories in configured
            order with their expanded server URLs.
        parallel_downloads (int | None): `ParallelDownloads`, if set.
    """

    root: Path
    dbpath: Path
    gpgdir: Path | None = None
    cachedirs: tuple[Path, ...] = ()
    repos: dict[str, tuple[str, ...]] = field(default_factory=dict)
    parallel_downloads: int | None = None
