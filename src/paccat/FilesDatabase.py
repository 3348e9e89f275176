"""File lists of sync packages from pacman's `.files` databases.

A `<repo>.files` database is a compressed tar holding, per package, a
`<name>-<version>/desc` entry and a `<name>-<version>/files` entry. Both
use pacman's sectioned text format::

    %NAME%
    grub

    %FILES%
    etc/
    etc/default/grub

The lists let `-F` searches skip packages that cannot contain the requested
files before anything is downloaded.
"""

import logging
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Sequence

from .Errors import DownloadFailed, PaccatError, RefreshFailed
from .FileIO import HttpFetcher
from .TarArchive import PackageArchive

logger = logging.getLogger(__name__)


def parse_sections(text: str) -> Dict[str, List[str]]:
    """Parse pacman's `%SECTION%` text format into lists of values."""
    sections: Dict[str, List[str]] = {}
    current = None
    for line in text.splitlines():
        line = line.strip()
        if not line:
            current = None
        elif line.startswith("%") and line.endswith("%") and len(line) > 2:
            current = sections.setdefault(line[1:-1], [])
        elif current is not None:
            current.append(line)
    return sections


class FilesDatabase:
    """Lazily loaded file lists, one `.files` database per repository.

    Attributes:
        syncdir (Path): `<dbpath>/sync`.
        repos (Mapping[str, Sequence[str]]): Repository name to server URLs,
            in configured order.
    """

    def __init__(self, dbpath: Path, repos: Mapping[str, Sequence[str]],
                 fetcher: HttpFetcher | None = None, on_status: Callable[[str], None] | None = None) -> None:
        self.syncdir = Path(dbpath) / "sync"
        self.repos = repos
        self.fetcher = fetcher
        self.on_status = on_status
        self._lists: Dict[str, Dict[str, tuple]] = {}

    def path(self, repo: str) -> Path:
        return self.syncdir / f"{repo}.files"

    def exists(self, repo: str) -> bool:
        return self.path(repo).is_file()

    def files(self, repo: str, name: str) -> tuple | None:
        """Return the file list of package `name` in `repo`, or None if unknown."""
        if repo not in self._lists:
            self._lists[repo] = self._load(repo)
        return self._lists[repo].get(name)

    def _load(self, repo: str) -> Dict[str, tuple]:
        path = self.path(repo)
        if not path.is_file():
            logger.debug("no files database for %s", repo)
            return {}

        names: Dict[str, str] = {}
        lists: Dict[str, tuple] = {}
        try:
            with PackageArchive(path, target=path.name) as archive:
                for member in archive.members():
                    directory, _, entry = member.path.rpartition("/")
                    if entry not in ("desc", "files"):
                        continue
                    text = b"".join(archive.iter_chunks(member)).decode("utf-8", errors="replace")
                    sections = parse_sections(text)
                    if entry == "desc" and sections.get("NAME"):
                        names[directory] = sections["NAME"][0]
                    elif entry == "files":
                        lists[directory] = tuple(sections.get("FILES", ()))
        except PaccatError as e:
            logger.warning("ignoring unreadable files database: %s", e)
            return {}

        return {names[directory]: files for directory, files in lists.items() if directory in names}

    def refresh(self, force: bool = False) -> None:
        """Download fresh `.files` databases from the first working server.

        Without `force` the request is conditional on the local file's
        modification time.

        Raises:
            RefreshFailed: Naming every repository that could not be updated.
        """
        if self.fetcher is None:
            raise RefreshFailed("no fetcher configured for files databases")

        failed = []
        for repo, servers in self.repos.items():
            if not self._refresh_repo(repo, servers, force):
                failed.append(repo)
        self._lists.clear()
        if failed:
            raise RefreshFailed(f"failed to synchronise files databases: {', '.join(failed)}")

    def _refresh_repo(self, repo: str, servers: Sequence[str], force: bool) -> bool:
        path = self.path(repo)
        part = path.with_name(path.name + ".part")
        modified_since = None
        if not force and path.is_file():
            modified_since = path.stat().st_mtime

        for server in servers:
            url = f"{server.rstrip('/')}/{repo}.files"
            try:
                self.syncdir.mkdir(parents=True, exist_ok=True)
                if not self.fetcher.fetch(url, part, modified_since=modified_since):
                    self._status(f"{repo}.files is up to date")
                    return True
                part.replace(path)
                self._status(f"{repo}.files downloaded")
                return True
            except (DownloadFailed, OSError) as e:
                logger.debug("failed to refresh %s from %s: %s", repo, server, e)
                part.unlink(missing_ok=True)
        self._status(f"{repo}.files failed to download")
        return False

    def _status(self, message: str) -> None:
        if self.on_status:
            self.on_status(message)
