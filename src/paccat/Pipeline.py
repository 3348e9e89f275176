"""Resolution -> acquisition -> extraction pipeline.

Downloads for all targets are started together on the download manager's
pool, then archives are scanned strictly in target order, each waiting only
for its own download. Output order therefore always follows the order of
the targets on the command line. Every archive is read once, with all of
its patterns evaluated against each member during that single pass.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Sequence

from .Downloader import DownloadManager
from .Errors import PaccatError, PatternNotFound
from .Matcher import MatchPattern, PatternScan, unmatchable
from .Models import MatchPolicy, QueryMode, Resolution, Target
from .Output import OutputStreamer
from .TarArchive import PackageArchive
from .Targets import TargetResolver

logger = logging.getLogger(__name__)


@dataclass
class RunReport:
    """Outcome of a run.

    Attributes:
        emitted (int): Members printed (content or, in quiet mode, paths).
        scanned (int): Archives that were opened and scanned.
        errors (List[PaccatError]): Every per-target and per-pattern error.
    """

    emitted: int = 0
    scanned: int = 0
    errors: List[PaccatError] = field(default_factory=list)

    @property
    def exit_code(self) -> int:
        return 0 if self.emitted else 1


class Pipeline:
    def __init__(self, resolver: TargetResolver, downloads: DownloadManager, patterns: Sequence[MatchPattern],
                 streamer: OutputStreamer, policy: MatchPolicy = MatchPolicy.FIRST_PER_TARGET,
                 on_error: Callable[[PaccatError], None] | None = None) -> None:
        self.resolver = resolver
        self.downloads = downloads
        self.patterns = list(patterns)
        self.streamer = streamer
        self.policy = policy
        self.on_error = on_error

    def run(self, targets: Sequence[str]) -> RunReport:
        """Process `targets`; an empty list searches the whole database.

        Raises:
            KeyboardInterrupt: After cancelling outstanding downloads.
        """
        report = RunReport()
        try:
            if targets:
                self._run_targets(targets, report)
            else:
                self._run_open_ended(report)
        except KeyboardInterrupt:
            self.downloads.cancel()
            raise
        return report

    def _run_targets(self, targets: Sequence[str], report: RunReport) -> None:
        work = []
        for resolution in self.resolver.resolve(targets):
            if not resolution.ok:
                self._fail(report, resolution.error)
                continue
            patterns = self._applicable(resolution, report)
            if patterns:
                work.append((resolution, patterns))
            else:
                logger.debug("%s cannot contain any requested file, not fetching it", resolution.target.raw)

        pending = [resolution.source.pending for resolution, _ in work if resolution.source.pending is not None]
        futures = iter(self.downloads.start(pending))
        fetches = [next(futures) if resolution.source.pending is not None else None for resolution, _ in work]

        for (resolution, patterns), fetch in zip(work, fetches):
            if self.streamer.closed:
                break
            try:
                path = fetch.result() if fetch is not None else resolution.source.path
            except PaccatError as e:
                self._fail(report, e)
                continue
            scan = self._scan(resolution.target, path, patterns, report)
            if scan is not None and not self.streamer.closed:
                self._report_unmatched(resolution.target, scan, report)

    def _run_open_ended(self, report: RunReport) -> None:
        # only the first package that matches is used
        for resolution in self.resolver.candidates(self.patterns):
            if self.streamer.closed:
                return
            if not resolution.ok:
                self._fail(report, resolution.error)
                continue
            patterns = self._applicable(resolution, report, quiet=True)
            try:
                if resolution.source.pending is not None:
                    path = self.downloads.download(resolution.source.pending)
                else:
                    path = resolution.source.path
            except PaccatError as e:
                self._fail(report, e)
                continue
            scan = self._scan(resolution.target, path, patterns, report)
            if scan is not None and len(scan.unmatched()) < len(scan.patterns):
                if not self.streamer.closed:
                    self._report_unmatched(resolution.target, scan, report)
                return

        scope = "installed packages" if self.resolver.mode is QueryMode.INSTALLED else "sync packages"
        for pattern in self.patterns:
            self._fail(report, PatternNotFound(scope, pattern.raw))

    def _applicable(self, resolution: Resolution, report: RunReport, quiet: bool = False) -> List[MatchPattern]:
        """Drop patterns the package's known file list rules out."""
        if resolution.files is None:
            return list(self.patterns)
        missing = unmatchable(self.patterns, resolution.files)
        if not quiet:
            for pattern in missing:
                self._fail(report, PatternNotFound(resolution.target.raw, pattern.raw))
        return [pattern for pattern in self.patterns if pattern not in missing]

    def _scan(self, target: Target, path: Path, patterns: Sequence[MatchPattern],
              report: RunReport) -> PatternScan | None:
        """Read one archive once, emitting members as patterns match.

        Returns:
            PatternScan | None: The finished scan state, or None if the
            archive could not be read to the end.
        """
        scan = PatternScan(patterns, self.policy)
        try:
            with PackageArchive(path, target=target.raw) as archive:
                report.scanned += 1
                for member in archive.members():
                    if not scan.offer(member):
                        continue
                    if self.streamer.emit(member, archive.iter_chunks(member)):
                        report.emitted += 1
                    if self.streamer.closed or scan.done:
                        break
        except PaccatError as e:
            self._fail(report, e)
            return None
        return scan

    def _report_unmatched(self, target: Target, scan: PatternScan, report: RunReport) -> None:
        for pattern in scan.unmatched():
            self._fail(report, PatternNotFound(target.raw, pattern.raw))

    def _fail(self, report: RunReport, error: PaccatError) -> None:
        report.errors.append(error)
        if self.on_error:
            self.on_error(error)
