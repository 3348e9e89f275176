"""Collaborator protocol definitions.

The pipeline talks to the package database and to the optional syntax
highlighter only through these protocols. `AlpmDatabase.AlpmDatabase` is the
libalpm-backed implementation; tests substitute in-memory fakes.
"""

from pathlib import Path
from typing import Iterator, Protocol, Sequence

from .Models import PackageInfo


class PackageDatabase(Protocol):
    """Query interface over the local and sync package databases."""

    cachedirs: Sequence[Path]

    def installed(self, name: str) -> PackageInfo | None:
        """Return the installed package called `name`, if any."""
        ...

    def sync(self, name: str, repo: str | None = None) -> PackageInfo | None:
        """Find `name` in `repo`, or in every sync repo in configured order.

        Implementations prefer an exact name match and fall back to a
        package providing `name`.
        """
        ...

    def installed_packages(self) -> Iterator[PackageInfo]:
        ...

    def sync_packages(self) -> Iterator[PackageInfo]:
        ...

    def has_sync_data(self) -> bool:
        """Whether at least one sync database is present on disk."""
        ...

    def refresh(self, force: bool = False) -> None:
        """Refresh the sync databases.

        Raises:
            RefreshFailed: If any database could not be updated.
        """
        ...


class Highlighter(Protocol):
    """Styles text content for terminal output."""

    def highlight(self, data: bytes, filename: str) -> bytes:
        """Return `data` styled for display, using `filename` as a hint."""
        ...
