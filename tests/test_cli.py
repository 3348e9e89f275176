"""Tests for paccat.CLI - argument handling and the end to end command."""

import tempfile

import click
import pytest
from click.testing import CliRunner

from paccat import CLI, __version__
from paccat.Config import ColorMode, PacmanSettings, Settings
from paccat.Errors import ConfigError, RefreshFailed
from paccat.Models import QueryMode
from paccat.Output import CommandHighlighter, SyntaxHighlighter

ENTRIES = {
    "etc/default/grub": b"GRUB_TIMEOUT=5\n",
    "usr/bin/grub-install": b"\x7fELF\x00\x00\x00",
}


@pytest.fixture
def invoke(monkeypatch, tmp_path, database):
    """Invoke the command against the fake database."""
    monkeypatch.setattr(tempfile, "tempdir", str(tmp_path))
    pacman = PacmanSettings(root=tmp_path, dbpath=tmp_path / "db", cachedirs=tuple(database.cachedirs))
    monkeypatch.setattr(CLI, "open_database", lambda settings, fetcher, reporter: (database, pacman))

    def invoke(*args):
        return CliRunner().invoke(CLI.paccat, list(args))

    return invoke


@pytest.fixture
def package(make_package):
    return str(make_package(ENTRIES, name="grub-2.12-1-x86_64.pkg.tar.zst"))


class TestSplitArguments:
    """Tests for split_arguments()."""

    def test_explicit_separator(self):
        """Everything after -- is a file."""
        assert CLI.split_arguments(["a", "b"], ["x", "y"], QueryMode.SYNC) == (("a", "b"), ("x", "y"))

    def test_last_positional_is_file(self):
        """Without -- the last argument is the file."""
        assert CLI.split_arguments(["a", "b", "x"], None, QueryMode.SYNC) == (("a", "b"), ("x",))

    def test_single_argument_in_query_mode(self):
        """In installed or files mode a lone argument is a file."""
        assert CLI.split_arguments(["x"], None, QueryMode.INSTALLED) == ((), ("x",))

    def test_missing_targets(self):
        """Sync mode needs a target."""
        with pytest.raises(click.UsageError):
            CLI.split_arguments(["x"], None, QueryMode.SYNC)

    def test_missing_files(self):
        """An empty file list after -- is an error."""
        with pytest.raises(click.UsageError):
            CLI.split_arguments(["a"], [], QueryMode.SYNC)


class TestMakeHighlighter:
    """Tests for make_highlighter()."""

    def settings(self, **kwargs):
        return Settings(targets=("a",), files=("b",), **kwargs)

    def test_auto_follows_terminal(self):
        """Auto colour only highlights on a terminal."""
        assert CLI.make_highlighter(self.settings(), is_tty=False) is None
        assert isinstance(CLI.make_highlighter(self.settings(), is_tty=True), SyntaxHighlighter)

    def test_never(self):
        """--color never disables every highlighter."""
        assert CLI.make_highlighter(self.settings(color=ColorMode.NEVER, highlighter="cat"), is_tty=True) is None

    def test_external_command(self):
        """--highlighter selects the external filter."""
        highlighter = CLI.make_highlighter(self.settings(highlighter="cat"), is_tty=False)
        assert isinstance(highlighter, CommandHighlighter)


class TestRefreshDatabases:
    """Tests for refresh_databases()."""

    def test_failure_with_stale_data_warns(self, database, recorder):
        """A failed refresh with existing databases only warns."""
        database.refresh_error = RefreshFailed("failed to synchronise core")
        CLI.refresh_databases(database, True, recorder)
        assert database.refreshed == [True]
        assert recorder.notices == ["synchronising package databases..."]
        assert "failed to synchronise core" in recorder.warnings[0]

    def test_failure_without_data_is_fatal(self, database, recorder):
        """A failed refresh without any database is fatal."""
        database.refresh_error = RefreshFailed("failed to synchronise core")
        database.sync_data = False
        with pytest.raises(ConfigError):
            CLI.refresh_databases(database, False, recorder)


class TestCommand:
    """End to end runs of the paccat command."""

    def test_prints_file(self, invoke, package):
        """Matching content goes to stdout byte for byte."""
        result = invoke(package, "--", "/etc/default/grub")
        assert result.exit_code == 0
        assert result.stdout_bytes == b"GRUB_TIMEOUT=5\n"

    def test_without_separator(self, invoke, package):
        """The last positional argument is the file."""
        result = invoke(package, "grub")
        assert result.stdout_bytes == b"GRUB_TIMEOUT=5\n"

    def test_quiet(self, invoke, package):
        """-q prints matching paths."""
        result = invoke("-q", "-a", "-x", package, "--", "grub")
        assert result.stdout_bytes == b"etc/default/grub\nusr/bin/grub-install\n"

    def test_binary_printed_when_piped(self, invoke, package):
        """Binary members are printed when stdout is not a terminal."""
        result = invoke(package, "grub-install")
        assert result.stdout_bytes == b"\x7fELF\x00\x00\x00"

    def test_not_found(self, invoke, package):
        """A missing file exits 1 with an error on stderr."""
        result = invoke(package, "--", "missing.conf")
        assert result.exit_code == 1
        assert result.stdout_bytes == b""
        assert "could not find 'missing.conf'" in result.stderr

    def test_unknown_package(self, invoke):
        """An unknown package is reported."""
        result = invoke("nosuchpkg", "--", "grub")
        assert result.exit_code == 1
        assert "could not find package: nosuchpkg" in result.stderr

    def test_refresh_flag_counted(self, invoke, package, database):
        """-yy forces the refresh."""
        invoke("-yy", package, "--", "grub")
        assert database.refreshed == [True]

    def test_conflicting_modes(self, invoke, package):
        """-Q and -F cannot be combined."""
        result = invoke("-Q", "-F", package, "grub")
        assert result.exit_code == 2

    def test_invalid_regex(self, invoke, package):
        """A broken regex is a usage error."""
        result = invoke("-x", package, "--", "(")
        assert result.exit_code == 2
        assert "invalid regex" in result.stderr

    def test_missing_targets(self, invoke):
        """Sync mode without targets is a usage error."""
        assert invoke("grub").exit_code == 2

    def test_config_error_is_fatal(self, monkeypatch, package):
        """Database initialisation failures exit 1."""

        def fail(settings, fetcher, reporter):
            raise ConfigError("failed to initialize alpm")

        monkeypatch.setattr(CLI, "open_database", fail)
        result = CliRunner().invoke(CLI.paccat, [package, "grub"])
        assert result.exit_code == 1
        assert "error: failed to initialize alpm" in result.stderr

    def test_version(self):
        """--version prints the version."""
        result = CliRunner().invoke(CLI.paccat, ["--version"])
        assert result.output.strip() == f"paccat v{__version__}"
