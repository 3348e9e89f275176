"""Target classification and resolution.

A target string is classified, in order of precedence, as a URL, an
existing local file, a `repo/name` package or a bare package name. Package
targets are looked up in the database and turn into either a cached archive
path or a pending download. Failures are attached to the target instead of
aborting the run.
"""

import logging
import os
import posixpath
import re
from pathlib import Path
from typing import Callable, Iterator, List, Sequence
from urllib.parse import unquote, urlsplit

from .Downloader import file_digest
from .Errors import PaccatError, TargetNotFound
from .Matcher import MatchPattern, unmatchable
from .Models import (
    ArchiveSource,
    PackageInfo,
    PendingDownload,
    QueryMode,
    RepoPrecedence,
    Resolution,
    Target,
    TargetKind,
)
from .Protocols import PackageDatabase

logger = logging.getLogger(__name__)

URL_RE = re.compile(r"^[A-Za-z][A-Za-z0-9+.-]*://")
REPO_TARGET_RE = re.compile(r"^([^/\s]+)/([^/\s]+)$")
LOCAL_REPO = "local"


def url_filename(url: str) -> str:
    return posixpath.basename(unquote(urlsplit(url).path)) or "download"


def classify(raw: str, mode: QueryMode = QueryMode.SYNC) -> Target:
    """Classify a raw target string.

    Precedence: URL, readable local file, `repo/name`, bare package name.
    `local/name` always names an installed package. A bare name is an
    installed package in installed mode and a sync package otherwise.
    """
    if URL_RE.match(raw):
        return Target(raw, TargetKind.URL, url_filename(raw))
    if os.path.isfile(raw) and os.access(raw, os.R_OK):
        return Target(raw, TargetKind.LOCAL_FILE, os.path.basename(raw))
    match = REPO_TARGET_RE.match(raw)
    if match:
        repo, name = match.groups()
        if repo == LOCAL_REPO:
            return Target(raw, TargetKind.INSTALLED_PACKAGE, name)
        return Target(raw, TargetKind.REPO_PACKAGE, name, repo=repo)
    if mode is QueryMode.INSTALLED:
        return Target(raw, TargetKind.INSTALLED_PACKAGE, raw)
    return Target(raw, TargetKind.REPO_PACKAGE, raw)


class TargetResolver:
    """Turns target strings into archive sources.

    Attributes:
        database (PackageDatabase): Database collaborator.
        mode (QueryMode): Which database bare names resolve against.
        prefer (RepoPrecedence): Whether `repo/name` may resolve to an
            installed package in installed mode.
        cachedirs (Sequence[Path]): Package caches searched before
            downloading.
    """

    def __init__(self, database: PackageDatabase, mode: QueryMode = QueryMode.SYNC,
                 prefer: RepoPrecedence = RepoPrecedence.REPO, cachedirs: Sequence[Path] | None = None,
                 on_warning: Callable[[str], None] | None = None) -> None:
        self.database = database
        self.mode = mode
        self.prefer = prefer
        self.cachedirs = [Path(d) for d in (database.cachedirs if cachedirs is None else cachedirs)]
        self.on_warning = on_warning or logger.warning

    def resolve(self, targets: Sequence[str]) -> List[Resolution]:
        """Resolve every target, preserving input order.

        A target whose archive source duplicates an earlier target's is
        dropped so the same archive is never scanned twice.
        """
        results = []
        seen = set()
        for raw in targets:
            resolution = self.resolve_one(raw)
            if resolution.source is not None:
                key = resolution.source.key
                if key in seen:
                    logger.debug("skipping duplicate target %s", raw)
                    continue
                seen.add(key)
            results.append(resolution)
        return results

    def resolve_one(self, raw: str) -> Resolution:
        target = classify(raw, self.mode)
        logger.debug("classified %r as %s", raw, target.kind.value)
        try:
            return self._resolve(target)
        except PaccatError as e:
            if e.target is None:
                e.target = raw
            return Resolution(target, error=e)

    def candidates(self, patterns: Sequence[MatchPattern]) -> Iterator[Resolution]:
        """Lazily yield packages whose known file list can satisfy a pattern.

        Used when no target was given in installed or files mode. Packages
        without a known file list are skipped; nothing is resolved until the
        caller asks for the next candidate.
        """
        if self.mode is QueryMode.INSTALLED:
            packages = self.database.installed_packages()
        else:
            packages = self.database.sync_packages()

        for pkg in packages:
            if pkg.files is None or len(unmatchable(patterns, pkg.files)) == len(patterns):
                continue
            if self.mode is QueryMode.INSTALLED:
                target = Target(pkg.name, TargetKind.INSTALLED_PACKAGE, pkg.name)
            else:
                target = Target(f"{pkg.repo}/{pkg.name}", TargetKind.REPO_PACKAGE, pkg.name, repo=pkg.repo)
            try:
                if self.mode is QueryMode.INSTALLED:
                    yield self._installed_resolution(target, pkg)
                else:
                    yield Resolution(target, self._source_for(target.raw, pkg), files=pkg.files)
            except PaccatError as e:
                if e.target is None:
                    e.target = target.raw
                yield Resolution(target, error=e)

    def _resolve(self, target: Target) -> Resolution:
        if not target.raw:
            raise TargetNotFound("empty target")

        if target.kind is TargetKind.URL:
            pending = PendingDownload(target.raw, filename=target.name, urls=(target.raw,))
            return Resolution(target, ArchiveSource.download(pending))

        if target.kind is TargetKind.LOCAL_FILE:
            return Resolution(target, ArchiveSource.local(Path(target.raw)))

        if target.kind is TargetKind.INSTALLED_PACKAGE:
            pkg = self.database.installed(target.name)
            if pkg is not None:
                return self._installed_resolution(target, pkg)
            if target.raw.startswith(LOCAL_REPO + "/"):
                raise TargetNotFound(f"package not installed: {target.name}")
            logger.debug("%s is not installed, trying sync databases", target.name)

        elif target.repo is not None and self.mode is QueryMode.INSTALLED and self.prefer is RepoPrecedence.INSTALLED:
            pkg = self.database.installed(target.name)
            if pkg is not None:
                return self._installed_resolution(target, pkg)

        pkg = self.database.sync(target.name, target.repo)
        if pkg is None:
            raise TargetNotFound(f"could not find package: {target.raw}")
        return Resolution(target, self._source_for(target.raw, pkg), files=pkg.files)

    def _installed_resolution(self, target: Target, pkg: PackageInfo) -> Resolution:
        cached = self._cached_installed(pkg)
        if cached is not None:
            logger.debug("using cached archive %s", cached)
            return Resolution(target, ArchiveSource.local(cached), files=pkg.files)

        sync = self.database.sync(pkg.name)
        if sync is None:
            raise TargetNotFound(f"no package archive available for {pkg.name}-{pkg.version}")
        if sync.version != pkg.version:
            self.on_warning(f"{pkg.name}: installed version {pkg.version} is not available, using {sync.version}")
            return Resolution(target, self._source_for(target.raw, sync), files=sync.files)
        return Resolution(target, self._source_for(target.raw, sync), files=pkg.files)

    def _cached_installed(self, pkg: PackageInfo) -> Path | None:
        pattern = f"{pkg.name}-{pkg.version}-{pkg.arch or '*'}.pkg.tar*"
        for cachedir in self.cachedirs:
            for candidate in sorted(cachedir.glob(pattern)):
                if candidate.suffix not in (".sig", ".part") and candidate.is_file():
                    return candidate
        return None

    def _source_for(self, raw: str, pkg: PackageInfo) -> ArchiveSource:
        if not pkg.filename:
            raise TargetNotFound(f"no package file known for {pkg.name}")

        for cachedir in self.cachedirs:
            candidate = cachedir / pkg.filename
            if candidate.is_file() and self._cache_valid(candidate, pkg):
                logger.debug("cache hit for %s in %s", pkg.filename, cachedir)
                return ArchiveSource.local(candidate)

        return ArchiveSource.download(PendingDownload(
            raw,
            filename=pkg.filename,
            urls=pkg.download_urls,
            sha256sum=pkg.sha256sum,
            md5sum=pkg.md5sum,
            base64_sig=pkg.base64_sig,
        ))

    @staticmethod
    def _cache_valid(path: Path, pkg: PackageInfo) -> bool:
        if pkg.sha256sum:
            valid = file_digest(path, "sha256") == pkg.sha256sum.lower()
        elif pkg.md5sum:
            valid = file_digest(path, "md5") == pkg.md5sum.lower()
        else:
            valid = True
        if not valid:
            logger.debug("cached %s does not match the database checksum", path)
        return valid
