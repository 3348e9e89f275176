"""paccat CLI entrypoint.

This module provides the `paccat` click command which resolves package
targets, obtains their archives (cache, local file or download) and prints
the archive members matching the requested files.

Usage example (from shell):
    paccat grub -- etc/default/grub
    paccat -x -a pacman mkinitcpio -- '\\.conf$'
    paccat -Q -- usr/bin/ls

Diagnostics go to stderr through a rich console; stdout only ever carries
member content.
"""

import logging
import os
import sys
from pathlib import Path
from typing import Sequence, Tuple

import click
from rich.console import Console
from rich.logging import RichHandler

from . import __version__
from .Config import ColorMode, PacmanSettings, Settings
from .Downloader import DEFAULT_JOBS, DownloadManager, SignatureVerifier, scratch_directory
from .Errors import ConfigError, PaccatError, PermissionDenied, RefreshFailed
from .FileIO import HttpFetcher
from .FilesDatabase import FilesDatabase
from .Matcher import compile_patterns
from .Models import MatchPolicy, QueryMode, RepoPrecedence
from .Output import CommandHighlighter, OutputStreamer, SyntaxHighlighter
from .Pipeline import Pipeline
from .Privileges import Privileges
from .Protocols import Highlighter, PackageDatabase
from .Reporting import ConsoleReporter
from .Targets import TargetResolver

logger = logging.getLogger(__name__)

FILES_KEY = "paccat.files"

# Create a single console instance for diagnostics (rich handles colors/formatting)
console = Console(stderr=True)


class TargetsCommand(click.Command):
    """Command that splits `<target>... -- <file>...` before parsing.

    click drops a bare `--` while parsing, so the file list after it is
    set aside in `ctx.meta` first.
    """

    def parse_args(self, ctx: click.Context, args: list) -> list:
        if "--" in args:
            index = args.index("--")
            ctx.meta[FILES_KEY] = args[index + 1:]
            args = args[:index]
        return super().parse_args(ctx, args)


def split_arguments(positional: Sequence[str], files: Sequence[str] | None,
                    mode: QueryMode) -> Tuple[Tuple[str, ...], Tuple[str, ...]]:
    """Separate targets from files.

    Without `--` the last argument is the file. In installed or files mode
    a lone argument is a file searched across the whole database.
    """
    if files is not None:
        targets, files = tuple(positional), tuple(files)
    elif len(positional) == 1 and mode is not QueryMode.SYNC:
        targets, files = (), tuple(positional)
    else:
        targets, files = tuple(positional[:-1]), tuple(positional[-1:])

    if not files:
        raise click.UsageError("no files specified")
    if not targets and mode is QueryMode.SYNC:
        raise click.UsageError("no targets specified (use -Q or -F to search all packages)")
    return targets, files


def configure_logging(debug: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=debug)],
        force=True,
    )


def open_database(settings: Settings, fetcher: HttpFetcher,
                  reporter: ConsoleReporter) -> Tuple[PackageDatabase, PacmanSettings]:
    """Load pacman.conf and the package databases through libalpm.

    Raises:
        ConfigError: If pyalpm is missing or the configuration is unusable.
    """
    try:
        from . import AlpmDatabase
    except ImportError as e:
        raise ConfigError("reading pacman databases needs pyalpm (pip install 'paccat[alpm]')") from e

    handle, pacman = AlpmDatabase.open_alpm(settings.config, settings.root, settings.dbpath, settings.cachedir)
    files_db = None
    if settings.mode is QueryMode.FILES:
        files_db = FilesDatabase(pacman.dbpath, pacman.repos, fetcher, on_status=reporter.notice)
    database = AlpmDatabase.AlpmDatabase(handle, pacman, files_db)

    if not settings.refresh:
        for repo in database.missing_databases():
            reporter.warning(f"database file for {repo} does not exist (use -y to download)")
    return database, pacman


def refresh_databases(database: PackageDatabase, force: bool, reporter: ConsoleReporter) -> None:
    """Refresh sync databases, tolerating failure while stale data exists.

    Raises:
        ConfigError: If the refresh failed and no database is available.
    """
    reporter.notice("synchronising package databases...")
    try:
        database.refresh(force)
    except RefreshFailed as e:
        if not database.has_sync_data():
            raise ConfigError(f"{e.message} and no package databases are available") from e
        reporter.warning(f"{e.message}; using existing databases")


def make_highlighter(settings: Settings, is_tty: bool) -> Highlighter | None:
    if settings.color is ColorMode.NEVER:
        return None
    if settings.highlighter:
        return CommandHighlighter(settings.highlighter)
    if settings.color is ColorMode.ALWAYS or is_tty:
        return SyntaxHighlighter()
    return None


def prepare_cachedir(cachedir: str | None, privileges: Privileges) -> Path | None:
    if not cachedir:
        return None
    path = Path(cachedir)
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise PermissionDenied(f"failed to create cache directory {path}: {e.strerror}") from e
    if not os.access(path, os.W_OK):
        raise PermissionDenied(f"cache directory {path} is not writable")
    privileges.hand_over(path)
    return path


def silence_stdout() -> None:
    """Point stdout at /dev/null so shutdown does not hit the closed pipe again."""
    try:
        devnull = os.open(os.devnull, os.O_WRONLY)
        os.dup2(devnull, sys.stdout.fileno())
    except (OSError, ValueError) as e:
        logger.debug("could not redirect stdout: %s", e)


def run(settings: Settings, database: PackageDatabase, pacman: PacmanSettings, stdout,
        reporter: ConsoleReporter, fetcher: HttpFetcher, privileges: Privileges | None = None,
        is_tty: bool = False, scratch_base: Path | None = None) -> int:
    """Run the pipeline for `settings` and return the exit status.

    Raises:
        PaccatError: For run-wide failures (configuration, scratch directory).
    """
    privileges = privileges or Privileges.from_environment()
    if settings.refresh:
        refresh_databases(database, settings.refresh > 1, reporter)

    patterns = compile_patterns(settings.files, settings.regex)
    streamer = OutputStreamer(
        stdout,
        binary=settings.binary,
        quiet=settings.quiet,
        highlighter=make_highlighter(settings, is_tty),
        on_notice=reporter.notice,
    )
    scratch = scratch_directory(privileges, scratch_base)
    cachedir = prepare_cachedir(settings.cachedir, privileges)
    jobs = settings.jobs or pacman.parallel_downloads or DEFAULT_JOBS
    verifier = SignatureVerifier(pacman.gpgdir) if settings.verify_signatures else None

    with reporter, DownloadManager(fetcher, scratch, privileges, cachedir=cachedir, jobs=jobs,
                                   verifier=verifier, on_event=reporter.on_download_event) as downloads:
        resolver = TargetResolver(database, settings.mode, settings.prefer, pacman.cachedirs,
                                  on_warning=reporter.warning)
        pipeline = Pipeline(resolver, downloads, patterns, streamer, settings.policy, on_error=reporter.error)
        report = pipeline.run(settings.targets)

    if streamer.closed:
        silence_stdout()
    logger.debug("emitted %d member(s) from %d archive(s), %d error(s)",
                  report.emitted, report.scanned, len(report.errors))
    return report.exit_code


@click.command(cls=TargetsCommand, context_settings=dict(help_option_names=["-h", "--help"]))
@click.argument("arguments", nargs=-1, metavar="<target>... [--] <file>...")
@click.option("--regex", "-x", is_flag=True, help="Enable searching using regular expressions")
@click.option("--all", "-a", "all_matches", is_flag=True, help="Print all matches of files instead of just the first")
@click.option("--quiet", "-q", is_flag=True, help="Print file names instead of file content")
@click.option("--binary", is_flag=True, help="Print binary files")
@click.option("--files", "-F", "filedb", is_flag=True,
              help="Use files database to search for files before deciding to download")
@click.option("--query", "-Q", "localdb", is_flag=True,
              help="Use local database to search for files before deciding to download")
@click.option("--refresh", "-y", count=True, help="Download fresh package databases (twice to force)")
@click.option("--root", "-r", metavar="path", help="Set an alternative root directory")
@click.option("--dbpath", "-b", metavar="path", help="Set an alternative database location")
@click.option("--config", metavar="file", type=click.Path(dir_okay=False, path_type=Path),
              help="Use an alternative pacman.conf")
@click.option("--cachedir", metavar="path", help="Set an alternative cache directory")
@click.option("--jobs", "-j", type=click.IntRange(min=1), help="Number of parallel downloads")
@click.option("--color", type=click.Choice([m.value for m in ColorMode]), default=ColorMode.AUTO.value,
              show_default=True, help="Highlight text files")
@click.option("--highlighter", metavar="command",
              help="External filter used to highlight text files; {name} is replaced by the file name")
@click.option("--prefer", type=click.Choice([p.value for p in RepoPrecedence]), default=RepoPrecedence.REPO.value,
              show_default=True, help="What <repo>/<pkgname> resolves to with -Q when the package is installed")
@click.option("--verify-signatures/--no-verify-signatures", default=True, show_default=True,
              help="Check package signatures of downloads")
@click.option("--debug", is_flag=True, help="Show debug logging")
@click.version_option(__version__, "--version", "-V", prog_name="paccat", message="%(prog)s v%(version)s")
@click.pass_context
def paccat(ctx: click.Context, arguments, regex, all_matches, quiet, binary, filedb, localdb, refresh,
           root, dbpath, config, cachedir, jobs, color, highlighter, prefer, verify_signatures, debug):
    """Print pacman package files.

    A target can be specified as <pkgname>, <repo>/<pkgname>, <url> or <file>.

    Files can be specified as just the filename or the full path.
    """
    if filedb and localdb:
        raise click.UsageError("--files and --query cannot be used together")
    mode = QueryMode.FILES if filedb else QueryMode.INSTALLED if localdb else QueryMode.SYNC
    targets, files = split_arguments(arguments, ctx.meta.get(FILES_KEY), mode)

    try:
        compile_patterns(files, regex)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="file") from e
    if highlighter is not None and not highlighter.strip():
        raise click.BadParameter("empty command", param_hint="--highlighter")

    configure_logging(debug)
    stdout = click.get_binary_stream("stdout")
    is_tty = stdout.isatty()
    settings = Settings(
        targets=targets,
        files=files,
        regex=regex,
        policy=MatchPolicy.ALL_MATCHES if all_matches else MatchPolicy.FIRST_PER_TARGET,
        quiet=quiet,
        # binary content is always printed when stdout is not a terminal
        binary=binary or not is_tty,
        mode=mode,
        refresh=refresh,
        root=root,
        dbpath=dbpath,
        config=config,
        cachedir=cachedir,
        jobs=jobs,
        color=ColorMode(color),
        highlighter=highlighter,
        prefer=RepoPrecedence(prefer),
        verify_signatures=verify_signatures,
        debug=debug,
    )

    reporter = ConsoleReporter(console)
    try:
        with HttpFetcher() as fetcher:
            database, pacman = open_database(settings, fetcher, reporter)
            code = run(settings, database, pacman, stdout, reporter, fetcher, is_tty=is_tty)
    except PaccatError as e:
        reporter.error(e)
        ctx.exit(1)
    ctx.exit(code)
