"""libalpm-backed database and configuration collaborators.

Reads pacman.conf through `pycman.config.PacmanConfig`, builds a
`pyalpm.Handle` from it and answers package queries against the local and
sync databases. Requires the optional `pyalpm` dependency
(`pip install 'paccat[alpm]'`) and the system libalpm.
"""

import logging
from pathlib import Path
from typing import Iterator, List

import pyalpm
from pycman import config as pycman_config

from .Config import PacmanSettings
from .Errors import ConfigError, RefreshFailed
from .FilesDatabase import FilesDatabase
from .Models import PackageInfo

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = Path("/etc/pacman.conf")
DEFAULT_CACHEDIR = Path("/var/cache/pacman/pkg")


def open_alpm(config: Path | None = None, root: str | None = None, dbpath: str | None = None,
              cachedir: str | None = None):
    """Load pacman.conf and initialise libalpm.

    `root` without `dbpath` places the database under the new root, like
    pacman does.

    Returns:
        tuple: The `pyalpm.Handle` and the derived `PacmanSettings`.

    Raises:
        ConfigError: If the configuration cannot be read or libalpm fails to
            initialise.
    """
    config = Path(config or DEFAULT_CONFIG)
    try:
        conf = pycman_config.PacmanConfig(conf=str(config))
    except (OSError, ValueError, KeyError) as e:
        raise ConfigError(f"failed to read {config}: {e}") from e

    if root:
        conf.options["RootDir"] = root
        if not dbpath:
            conf.options["DBPath"] = str(Path(root) / "var/lib/pacman")
    if dbpath:
        conf.options["DBPath"] = dbpath

    try:
        handle = conf.initialize_alpm()
    except pyalpm.error as e:
        raise ConfigError(
            f"failed to initialize alpm (root: {conf.options['RootDir']}, dbpath: {conf.options['DBPath']}): {e}"
        ) from e

    cachedirs = [Path(d) for d in conf.options.get("CacheDir") or [DEFAULT_CACHEDIR]]
    if cachedir:
        cachedirs.insert(0, Path(cachedir))

    parallel = conf.options.get("ParallelDownloads")
    try:
        parallel = int(parallel) if parallel else None
    except ValueError:
        logger.warning("ignoring invalid ParallelDownloads value: %s", parallel)
        parallel = None

    gpgdir = conf.options.get("GPGDir")
    settings = PacmanSettings(
        root=Path(conf.options["RootDir"]),
        dbpath=Path(conf.options["DBPath"]),
        gpgdir=Path(gpgdir) if gpgdir else None,
        cachedirs=tuple(cachedirs),
        repos={db.name: tuple(db.servers) for db in handle.get_syncdbs()},
        parallel_downloads=parallel,
    )
    return handle, settings


def _installed_info(pkg) -> PackageInfo:
    return PackageInfo(
        name=pkg.name,
        version=pkg.version,
        repo="local",
        arch=pkg.arch or None,
        files=tuple(entry[0] for entry in pkg.files),
    )


class AlpmDatabase:
    """`PackageDatabase` implementation over a `pyalpm.Handle`."""

    def __init__(self, handle, settings: PacmanSettings, files_db: FilesDatabase | None = None) -> None:
        self.handle = handle
        self.settings = settings
        self.files_db = files_db
        self.cachedirs = settings.cachedirs

    def installed(self, name: str) -> PackageInfo | None:
        pkg = self.handle.get_localdb().get_pkg(name)
        return _installed_info(pkg) if pkg is not None else None

    def sync(self, name: str, repo: str | None = None) -> PackageInfo | None:
        dbs = [db for db in self.handle.get_syncdbs() if repo is None or db.name == repo]
        for db in dbs:
            pkg = db.get_pkg(name)
            if pkg is not None:
                return self._sync_info(pkg)
        for db in dbs:
            pkg = pyalpm.find_satisfier(db.pkgcache, name)
            if pkg is not None:
                logger.debug("%s is provided by %s/%s", name, db.name, pkg.name)
                return self._sync_info(pkg)
        return None

    def installed_packages(self) -> Iterator[PackageInfo]:
        for pkg in self.handle.get_localdb().pkgcache:
            yield _installed_info(pkg)

    def sync_packages(self) -> Iterator[PackageInfo]:
        for db in self.handle.get_syncdbs():
            for pkg in db.pkgcache:
                yield self._sync_info(pkg)

    def missing_databases(self) -> List[str]:
        sync = self.settings.dbpath / "sync"
        return [repo for repo in self.settings.repos if not (sync / f"{repo}.db").is_file()]

    def has_sync_data(self) -> bool:
        return len(self.missing_databases()) < len(self.settings.repos)

    def refresh(self, force: bool = False) -> None:
        failed = []
        try:
            transaction = self.handle.init_transaction()
        except pyalpm.error as e:
            raise RefreshFailed(f"failed to synchronise package databases: {e}") from e
        try:
            for db in self.handle.get_syncdbs():
                try:
                    db.update(force)
                except pyalpm.error as e:
                    logger.debug("failed to update %s: %s", db.name, e)
                    failed.append(db.name)
        finally:
            transaction.release()

        if self.files_db is not None:
            try:
                self.files_db.refresh(force)
            except RefreshFailed as e:
                failed.append(e.message)

        if failed:
            raise RefreshFailed(f"failed to synchronise {', '.join(failed)}")

    def _sync_info(self, pkg) -> PackageInfo:
        db = pkg.db
        files = self.files_db.files(db.name, pkg.name) if self.files_db is not None else None
        return PackageInfo(
            name=pkg.name,
            version=pkg.version,
            repo=db.name,
            filename=pkg.filename or None,
            arch=pkg.arch or None,
            sha256sum=pkg.sha256sum or None,
            md5sum=pkg.md5sum or None,
            base64_sig=pkg.base64_sig or None,
            servers=tuple(db.servers),
            files=files,
        )
