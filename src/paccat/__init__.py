"""paccat package initializer.

Prints files straight out of pacman package archives without installing or
extracting them. The package-level surface exports a few convenience
symbols:

- __version__: Package version string.
- PackageArchive: Streaming reader over a compressed package archive.
- compile_patterns: Turns file arguments into match patterns.
- TargetResolver: Resolves target strings to archive sources.
- DownloadManager: Bounded, verified parallel downloads.
- OutputStreamer: Writes matched member content to stdout.
- Pipeline: Runs resolution, download and extraction in target order.
- cli: The CLI entrypoint function (click command).

Example:
    from paccat import PackageArchive
    with PackageArchive("grub-2.12-1-x86_64.pkg.tar.zst") as archive:
        for member in archive.members():
            print(member.path)
"""

# Public version string
__version__ = "1.3.1"

from .TarArchive import PackageArchive
from .Matcher import compile_patterns
from .Targets import TargetResolver
from .Downloader import DownloadManager
from .Output import OutputStreamer
from .Pipeline import Pipeline

# Expose the CLI command object so callers can reuse or register it in other tools.
from .CLI import paccat as cli

__all__ = [
    "__version__",
    "PackageArchive",
    "compile_patterns",
    "TargetResolver",
    "DownloadManager",
    "OutputStreamer",
    "Pipeline",
    "cli",
]
