"""Forward-only reader for compressed package archives.

`PackageArchive` opens a `.pkg.tar.*` file in tarfile's stream mode and
yields its regular file members one at a time. The stream is never seeked:
the content of a member must be consumed (or skipped) before the next
member is requested, and each archive can be scanned once.

Compression is detected from magic bytes rather than the file extension so
renamed or extension-less downloads still open. zstd is handled through the
`zstandard` stream reader since tarfile has no native support for it.
"""

import logging
import lzma
import tarfile
import zlib
from pathlib import Path
from typing import Iterator

import zstandard

from .Errors import ArchiveCorrupt, EmptyFile
from .Models import ArchiveMember

logger = logging.getLogger(__name__)

TAR_COMPRESSION_TYPES = {
    b"\x1f\x8b": "gz",  # GZIP compressed
    b"\xfd7zXZ\x00": "xz",  # XZ compressed
    b"BZh": "bz2",  # BZIP2 compressed
    b"\x28\xb5\x2f\xfd": "zst",  # ZSTD compressed
}

# Uncompressed tar carries its magic inside the first header block
USTAR_MAGIC = b"ustar"
USTAR_OFFSET = 257
HEADER_SIZE = 512

CHUNK_SIZE = 128 * 1024  # 128 KB

CORRUPTION_ERRORS = (
    tarfile.TarError,
    zstandard.ZstdError,
    zlib.error,
    lzma.LZMAError,
    EOFError,
    OSError,
)


def detect_compression(header: bytes) -> str:
    """Return the tarfile compression suffix for an archive header.

    Args:
        header (bytes): At least the first 512 bytes of the file.

    Returns:
        str: One of "gz", "xz", "bz2", "zst", or "" for a plain tar.

    Raises:
        ArchiveCorrupt: If the header matches no known format.
    """
    for signature, comp in TAR_COMPRESSION_TYPES.items():
        if header.startswith(signature):
            return comp
    if header[USTAR_OFFSET:USTAR_OFFSET + len(USTAR_MAGIC)] == USTAR_MAGIC:
        return ""
    raise ArchiveCorrupt(f"unrecognized archive format (signature {header[:8].hex().upper()})")


def normalize_member_path(name: str) -> str:
    while name.startswith("./"):
        name = name[2:]
    return name.lstrip("/")


class PackageArchive:
    """One read session over a package archive.

    Use as a context manager::

        with PackageArchive(path, target="grub") as archive:
            for member in archive.members():
                data = b"".join(archive.iter_chunks(member))

    Attributes:
        path (Path): Archive file on disk.
        target (str): Target identifier used in error messages.
        compression (str | None): Detected compression once opened.
    """

    def __init__(self, path: Path, target: str | None = None) -> None:
        self.path = Path(path)
        self.target = target if target is not None else str(path)
        self.compression: str | None = None
        self.archive: tarfile.TarFile | None = None
        self._file = None
        self._reader = None
        self._scanned = False

    def __enter__(self) -> "PackageArchive":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def open(self) -> None:
        try:
            self._file = open(self.path, "rb")
            header = self._file.read(HEADER_SIZE)
        except OSError as e:
            self.close()
            raise ArchiveCorrupt(f"failed to open {self.path}: {e.strerror}", target=self.target) from e

        if not header:
            self.close()
            raise EmptyFile(f"{self.path} is empty", target=self.target)

        try:
            self.compression = detect_compression(header)
        except ArchiveCorrupt as e:
            self.close()
            e.target = self.target
            raise

        self._file.seek(0)
        logger.debug("opening %s (compression: %s)", self.path, self.compression or "none")
        try:
            if self.compression == "zst":
                # tarfile has no zstd support; decompress through a stream reader
                self._reader = zstandard.ZstdDecompressor().stream_reader(self._file, read_across_frames=True)
                self.archive = tarfile.open(fileobj=self._reader, mode="r|")
            else:
                mode = f"r|{self.compression}" if self.compression else "r|"
                self.archive = tarfile.open(fileobj=self._file, mode=mode)
        except CORRUPTION_ERRORS as e:
            self.close()
            raise ArchiveCorrupt(f"failed to read {self.path}: {e}", target=self.target) from e

    def members(self) -> Iterator[ArchiveMember]:
        """Yield regular file members in archive order.

        Directories, symbolic links, hard links and device entries are
        skipped. Corruption part way through raises `ArchiveCorrupt` after
        the members before it have been yielded.

        Raises:
            ArchiveCorrupt: If the stream is truncated or malformed.
            RuntimeError: If the archive was already scanned.
        """
        if self.archive is None:
            raise RuntimeError("archive is not open")
        if self._scanned:
            raise RuntimeError("a package archive stream can only be scanned once")
        self._scanned = True

        try:
            for info in self.archive:
                # stream mode keeps every TarInfo; drop them to bound memory.
                # TarFile.__iter__ reads from members only while its index is
                # inside the list, otherwise next() continues from the stream.
                self.archive.members = []
                if not info.isreg():
                    continue
                yield ArchiveMember(
                    path=normalize_member_path(info.name),
                    size=info.size,
                    is_regular_file=True,
                    info=info,
                )
        except CORRUPTION_ERRORS as e:
            raise ArchiveCorrupt(f"failed to read {self.path}: {e}", target=self.target) from e

    def iter_chunks(self, member: ArchiveMember, chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
        """Yield the content of the current member in chunks.

        Only valid for the member most recently yielded by `members()`.
        """
        try:
            source = self.archive.extractfile(member.info)
            if source is None:
                return
            with source:
                while chunk := source.read(chunk_size):
                    yield chunk
        except CORRUPTION_ERRORS as e:
            raise ArchiveCorrupt(f"failed to extract {member.path}: {e}", target=self.target) from e

    def close(self) -> None:
        for handle in (self.archive, self._reader, self._file):
            if handle is not None:
                handle.close()
        self.archive = self._reader = self._file = None
