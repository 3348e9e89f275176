"""Tests for paccat.Pipeline - ordering, policies and error isolation."""

import io
import time

import httpx
import pytest

from paccat.Downloader import DownloadManager
from paccat.Errors import ArchiveCorrupt, PatternNotFound, TargetNotFound
from paccat.FileIO import HttpFetcher
from paccat.Matcher import compile_patterns
from paccat.Models import MatchPolicy, QueryMode
from paccat.Output import OutputStreamer
from paccat.Pipeline import Pipeline
from paccat.Targets import TargetResolver

ONE = {"etc/a.conf": b"one:etc\n", "usr/share/a.conf": b"one:usr\n", "etc/b.conf": b"one:b\n"}
TWO = {"etc/a.conf": b"two:etc\n"}


class Served:
    """Mock mirror serving built archives, with an optional delay per path."""

    def __init__(self, make_package, directory):
        self.make_package = make_package
        self.directory = directory
        self.bodies = {}
        self.delays = {}
        self.requested = []

    def add(self, name, entries, delay=0.0):
        self.bodies[f"/{name}"] = self.make_package(entries, name=name, directory=self.directory).read_bytes()
        self.delays[f"/{name}"] = delay
        return f"https://mirror.test/{name}"

    def __call__(self, request):
        path = request.url.raw_path.decode()
        self.requested.append(path)
        time.sleep(self.delays.get(path, 0))
        if path not in self.bodies:
            return httpx.Response(404)
        return httpx.Response(200, content=self.bodies[path])


@pytest.fixture
def served(make_package, tmp_path):
    return Served(make_package, tmp_path / "served")


@pytest.fixture
def run(served, database, privileges, recorder, tmp_path):
    """Run a pipeline and return (stdout bytes, report)."""

    def run(targets, files, policy=MatchPolicy.FIRST_PER_TARGET, mode=QueryMode.SYNC, regex=False):
        stdout = io.BytesIO()
        scratch = tmp_path / "scratch"
        scratch.mkdir(exist_ok=True)
        client = httpx.Client(transport=httpx.MockTransport(served))
        with HttpFetcher(client=client, sleep=lambda _: None) as fetcher, \
                DownloadManager(fetcher, scratch, privileges, jobs=4) as downloads:
            pipeline = Pipeline(
                TargetResolver(database, mode),
                downloads,
                compile_patterns(files, regex),
                OutputStreamer(stdout, binary=True),
                policy,
                on_error=recorder.error,
            )
            report = pipeline.run(targets)
        return stdout.getvalue(), report

    return run


class TestPolicies:
    """Match policy behaviour."""

    def test_first_match_per_target(self, run, make_package):
        """Only the first member matching a pattern is printed."""
        path = make_package(ONE)
        out, report = run([str(path)], ["a.conf"])
        assert out == b"one:etc\n"
        assert report.exit_code == 0

    def test_all_matches(self, run, make_package):
        """Every match is printed in archive order."""
        path = make_package(ONE)
        out, _ = run([str(path)], ["a.conf"], policy=MatchPolicy.ALL_MATCHES)
        assert out == b"one:etc\none:usr\n"

    def test_patterns_share_one_pass(self, run, make_package):
        """Several patterns are served in archive order from a single scan."""
        path = make_package(ONE)
        out, report = run([str(path)], ["b.conf", "a.conf"])
        assert out == b"one:etc\none:b\n"
        assert report.scanned == 1

    def test_regex(self, run, make_package):
        """Regex patterns match full paths."""
        path = make_package(ONE)
        out, _ = run([str(path)], [r"^usr/.*\.conf$"], regex=True)
        assert out == b"one:usr\n"


class TestOrdering:
    """Output order follows target order."""

    def test_slow_first_download(self, run, served):
        """A slow first download still prints first."""
        slow = served.add("one.pkg.tar.zst", ONE, delay=0.3)
        fast = served.add("two.pkg.tar.zst", TWO)
        out, report = run([slow, fast], ["etc/a.conf"])
        assert out == b"one:etc\ntwo:etc\n"
        assert report.emitted == 2

    def test_local_and_remote_mixed(self, run, served, make_package):
        """Local files and downloads interleave in target order."""
        remote = served.add("one.pkg.tar.zst", ONE, delay=0.1)
        local = make_package(TWO)
        out, _ = run([remote, str(local)], ["etc/a.conf"])
        assert out == b"one:etc\ntwo:etc\n"

    def test_urls_sharing_a_basename(self, run, served):
        """URLs that differ only in their query are separate targets."""
        first = served.add("get?id=1", ONE)
        second = served.add("get?id=2", TWO)
        out, _ = run([first, second], ["etc/a.conf"])
        assert out == b"one:etc\ntwo:etc\n"
        assert sorted(served.requested) == ["/get?id=1", "/get?id=2"]

    def test_same_url_twice(self, run, served):
        """Repeating a URL still downloads and prints it once."""
        url = served.add("one.pkg.tar.zst", ONE)
        out, _ = run([url, url], ["etc/a.conf"])
        assert out == b"one:etc\n"
        assert served.requested == ["/one.pkg.tar.zst"]


class TestErrors:
    """Per-target failures are isolated."""

    def test_corrupt_sibling(self, run, make_package, tmp_path, recorder):
        """A corrupt archive is reported and the next target still prints."""
        bad = tmp_path / "bad.pkg.tar.zst"
        bad.write_bytes(b"not an archive" * 64)
        good = make_package(TWO)
        out, report = run([str(bad), str(good)], ["a.conf"])
        assert out == b"two:etc\n"
        assert report.exit_code == 0
        assert [type(e) for e in recorder.errors] == [ArchiveCorrupt]

    def test_unresolvable_target(self, run, make_package, recorder):
        """An unknown package is reported without stopping the others."""
        good = make_package(TWO)
        out, report = run(["nosuchpkg", str(good)], ["a.conf"])
        assert out == b"two:etc\n"
        assert isinstance(recorder.errors[0], TargetNotFound)

    def test_pattern_not_found(self, run, make_package, recorder):
        """A pattern without a match is reported per target; no output means exit 1."""
        path = make_package(TWO, name="two.pkg.tar.zst")
        out, report = run([str(path)], ["missing.conf"])
        assert out == b""
        assert report.exit_code == 1
        (error,) = recorder.errors
        assert isinstance(error, PatternNotFound)
        assert error.pattern == "missing.conf"
        assert error.target == str(path)

    def test_partial_match_still_succeeds(self, run, make_package, recorder):
        """One found pattern is enough for exit status 0."""
        path = make_package(TWO)
        out, report = run([str(path)], ["a.conf", "missing.conf"])
        assert out == b"two:etc\n"
        assert report.exit_code == 0
        assert [e.pattern for e in recorder.errors] == ["missing.conf"]

    def test_failed_download(self, run, recorder):
        """A download failure becomes that target's error."""
        out, report = run(["https://mirror.test/absent.pkg.tar.zst"], ["a.conf"])
        assert report.exit_code == 1
        assert recorder.errors[0].target == "https://mirror.test/absent.pkg.tar.zst"


class TestKnownFileLists:
    """Packages whose file lists are known."""

    def test_unmatchable_package_not_downloaded(self, run, served, database, recorder):
        """A package that cannot contain the file is never fetched."""
        served.add("grub-1.0-1-x86_64.pkg.tar.zst", ONE)
        database.add_sync("core", "grub", servers=("https://mirror.test",), files=["etc/default/grub"])
        out, report = run(["grub"], ["a.conf"], mode=QueryMode.FILES)
        assert served.requested == []
        assert report.exit_code == 1
        assert isinstance(recorder.errors[0], PatternNotFound)

    def test_open_ended_first_package(self, run, served, database):
        """Without targets the first package that can match is used."""
        served.add("one-1.0-1-x86_64.pkg.tar.zst", ONE)
        served.add("two-1.0-1-x86_64.pkg.tar.zst", TWO)
        database.add_sync("core", "bash", servers=("https://mirror.test",), files=["usr/bin/bash"])
        database.add_sync("core", "one", servers=("https://mirror.test",), files=list(ONE))
        database.add_sync("core", "two", servers=("https://mirror.test",), files=list(TWO))
        out, report = run([], ["etc/a.conf"], mode=QueryMode.FILES)
        assert out == b"one:etc\n"
        assert served.requested == ["/one-1.0-1-x86_64.pkg.tar.zst"]
        assert report.exit_code == 0

    def test_open_ended_installed_from_cache(self, run, database, cachedir, make_package):
        """Installed mode reads the cached archive of the installed package."""
        make_package(TWO, name="two-1.0-1-x86_64.pkg.tar.zst", directory=cachedir)
        database.add_installed("two", files=list(TWO))
        out, _ = run([], ["a.conf"], mode=QueryMode.INSTALLED)
        assert out == b"two:etc\n"

    def test_metadata_member_of_installed_package(self, run, database, cachedir, make_package):
        """.PKGINFO is read from the archive though the file list omits it."""
        entries = dict(TWO, **{".PKGINFO": b"pkgname = two\n"})
        make_package(entries, name="two-1.0-1-x86_64.pkg.tar.zst", directory=cachedir)
        database.add_installed("two", files=list(TWO))
        out, report = run(["two"], [".PKGINFO"], mode=QueryMode.INSTALLED)
        assert out == b"pkgname = two\n"
        assert report.exit_code == 0

    def test_open_ended_nothing(self, run, database, recorder):
        """No package carrying the file reports it against the searched scope."""
        database.add_installed("bash", files=["usr/bin/bash"])
        out, report = run([], ["a.conf"], mode=QueryMode.INSTALLED)
        assert report.exit_code == 1
        assert str(recorder.errors[0]) == "installed packages: could not find 'a.conf'"


class TestBrokenPipe:
    """A closed reader stops the run."""

    def test_stops_after_pipe_closes(self, database, privileges, make_package, tmp_path):
        """Later targets are not scanned once the output is gone."""

        class Closed(io.BytesIO):
            def write(self, data):
                raise BrokenPipeError

        first = make_package(ONE, name="one.pkg.tar.zst")
        second = make_package(TWO, name="two.pkg.tar.zst")
        streamer = OutputStreamer(Closed(), binary=True)
        with HttpFetcher() as fetcher, DownloadManager(fetcher, tmp_path, privileges) as downloads:
            pipeline = Pipeline(TargetResolver(database), downloads, compile_patterns(["a.conf"]), streamer)
            report = pipeline.run([str(first), str(second)])
        assert streamer.closed
        assert report.scanned == 1
