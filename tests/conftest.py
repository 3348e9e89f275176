"""Shared fixtures: real package archives and an in-memory package database."""

import io
import os
import tarfile
from pathlib import Path

import pytest
import zstandard

from paccat.Models import PackageInfo
from paccat.Privileges import Privileges


def build_tar(entries, compression="zst") -> bytes:
    """Build a tar archive in memory.

    `entries` maps member paths to bytes; a value of None adds a directory
    and a value starting with "->" adds a symlink to the rest of the string.
    """
    buffer = io.BytesIO()
    mode = "w" if compression in ("", "zst") else f"w:{compression}"
    with tarfile.open(fileobj=buffer, mode=mode) as archive:
        for name, data in entries.items():
            info = tarfile.TarInfo(name)
            if data is None:
                info.type = tarfile.DIRTYPE
                info.mode = 0o755
                archive.addfile(info)
            elif isinstance(data, str) and data.startswith("->"):
                info.type = tarfile.SYMTYPE
                info.linkname = data[2:]
                archive.addfile(info)
            else:
                info.size = len(data)
                info.mode = 0o644
                archive.addfile(info, io.BytesIO(data))
    raw = buffer.getvalue()
    if compression == "zst":
        return zstandard.ZstdCompressor().compress(raw)
    return raw


@pytest.fixture
def make_package(tmp_path):
    """Factory writing a package archive and returning its path."""

    def make(entries, name="pkg-1.0-1-x86_64.pkg.tar.zst", compression="zst", directory=None):
        directory = Path(directory or tmp_path)
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / name
        path.write_bytes(build_tar(entries, compression))
        return path

    return make


class FakeDatabase:
    """In-memory `PackageDatabase` with sync repos in insertion order."""

    def __init__(self, cachedirs=()):
        self.cachedirs = [Path(d) for d in cachedirs]
        self.local = {}
        self.repos = {}
        self.refreshed = []
        self.refresh_error = None
        self.sync_data = True
        self.listed = []

    def add_sync(self, repo, name, version="1.0-1", filename=None, servers=("https://mirror.test/repo",),
                 files=None, **kwargs):
        pkg = PackageInfo(
            name=name,
            version=version,
            repo=repo,
            filename=filename or f"{name}-{version}-x86_64.pkg.tar.zst",
            arch="x86_64",
            servers=tuple(servers),
            files=tuple(files) if files is not None else None,
            **kwargs,
        )
        self.repos.setdefault(repo, {})[name] = pkg
        return pkg

    def add_installed(self, name, version="1.0-1", files=()):
        pkg = PackageInfo(name=name, version=version, repo="local", arch="x86_64", files=tuple(files))
        self.local[name] = pkg
        return pkg

    def installed(self, name):
        return self.local.get(name)

    def sync(self, name, repo=None):
        for repo_name, packages in self.repos.items():
            if repo is None or repo == repo_name:
                if name in packages:
                    return packages[name]
        return None

    def installed_packages(self):
        for pkg in self.local.values():
            self.listed.append(pkg.name)
            yield pkg

    def sync_packages(self):
        for packages in self.repos.values():
            for pkg in packages.values():
                self.listed.append(pkg.name)
                yield pkg

    def has_sync_data(self):
        return self.sync_data

    def refresh(self, force=False):
        self.refreshed.append(force)
        if self.refresh_error is not None:
            raise self.refresh_error


@pytest.fixture
def cachedir(tmp_path):
    path = tmp_path / "cache"
    path.mkdir()
    return path


@pytest.fixture
def database(cachedir):
    return FakeDatabase(cachedirs=[cachedir])


@pytest.fixture
def privileges():
    return Privileges(euid=os.geteuid(), user="tester")


class Recorder:
    """Collects reporter callbacks."""

    def __init__(self):
        self.errors = []
        self.warnings = []
        self.notices = []
        self.events = []

    def error(self, error):
        self.errors.append(error)

    def warning(self, message):
        self.warnings.append(message)

    def notice(self, message):
        self.notices.append(message)

    def on_download_event(self, event):
        self.events.append(event)


@pytest.fixture
def recorder():
    return Recorder()
