"""Writing matched archive members to standard output.

Member content is copied byte for byte. A text member may instead be sent
through a highlighter (the built-in rich syntax highlighter or an external
filter command); binary members always bypass it. A reader that closes the
pipe early ends the output quietly.
"""

import io
import logging
import shlex
import subprocess
from typing import BinaryIO, Callable, Iterable

from rich.console import Console
from rich.syntax import Syntax

from .Errors import HighlightFailed
from .Models import ArchiveMember
from .Protocols import Highlighter

logger = logging.getLogger(__name__)

BINARY_PROBE_SIZE = 512


def is_binary(data: bytes) -> bool:
    """Treat content with a NUL byte in its first 512 bytes as binary."""
    return b"\x00" in data[:BINARY_PROBE_SIZE]


class SyntaxHighlighter:
    """Highlights text with rich's pygments-based `Syntax`.

    Files whose name does not map to a known lexer are returned unchanged.
    """

    def __init__(self, theme: str = "ansi_dark", color_system: str = "256") -> None:
        self.theme = theme
        self.color_system = color_system

    def highlight(self, data: bytes, filename: str) -> bytes:
        try:
            code = data.decode("utf-8")
        except UnicodeDecodeError as e:
            raise HighlightFailed(f"{filename} is not valid UTF-8") from e

        lexer = Syntax.guess_lexer(filename, code)
        if lexer == "default":
            return data

        syntax = Syntax(code, lexer, theme=self.theme, background_color="default")
        buffer = io.StringIO()
        console = Console(file=buffer, force_terminal=True, color_system=self.color_system)
        console.print(syntax.highlight(code), end="", soft_wrap=True)
        return buffer.getvalue().encode("utf-8")


class CommandHighlighter:
    """Pipes content through an external filter, e.g. `bat -pp --color=always --file-name {name}`.

    `{name}` in the command is replaced with the member's file name.
    """

    def __init__(self, command: str) -> None:
        self.args = shlex.split(command)
        if not self.args:
            raise ValueError("empty highlighter command")

    def highlight(self, data: bytes, filename: str) -> bytes:
        args = [arg.replace("{name}", filename) for arg in self.args]
        try:
            result = subprocess.run(args, input=data, capture_output=True, check=True)
        except OSError as e:
            raise HighlightFailed(f"failed to run {args[0]}: {e.strerror}") from e
        except subprocess.CalledProcessError as e:
            raise HighlightFailed(f"{args[0]} exited with status {e.returncode}") from e
        return result.stdout


class OutputStreamer:
    """Copies matched members to a binary stream.

    Attributes:
        stream (BinaryIO): Destination, normally `sys.stdout.buffer`.
        binary (bool): Print members that look binary instead of skipping them.
        quiet (bool): Print member paths instead of their content.
        highlighter (Highlighter | None): Optional styler for text members.
        closed (bool): Set once the reader has gone away.
    """

    def __init__(self, stream: BinaryIO, binary: bool = False, quiet: bool = False,
                 highlighter: Highlighter | None = None, on_notice: Callable[[str], None] | None = None) -> None:
        self.stream = stream
        self.binary = binary
        self.quiet = quiet
        self.highlighter = highlighter
        self.on_notice = on_notice or logger.warning
        self.closed = False

    def emit(self, member: ArchiveMember, chunks: Iterable[bytes]) -> bool:
        """Write one member.

        Args:
            member (ArchiveMember): The matched member.
            chunks (Iterable[bytes]): Its content, read lazily.

        Returns:
            bool: False if nothing was printed because the member is binary
            (or the output is already closed), True otherwise, including when
            the reader closed the pipe part way through.
        """
        if self.closed:
            return False

        if self.quiet:
            self._write(member.path.encode("utf-8", errors="surrogateescape") + b"\n")
            self._flush()
            return True

        chunks = iter(chunks)
        first = next(chunks, b"")
        binary = is_binary(first)
        if binary and not self.binary:
            self.on_notice(f"{member.path} is a binary file -- use --binary to print")
            return False

        if self.highlighter is not None and not binary:
            self._write(self._highlight(first + b"".join(chunks), member.name))
        elif self._write(first):
            for chunk in chunks:
                if not self._write(chunk):
                    break
        self._flush()
        return True

    def _highlight(self, data: bytes, filename: str) -> bytes:
        try:
            return self.highlighter.highlight(data, filename)
        except HighlightFailed as e:
            logger.warning("not highlighting: %s", e)
            return data

    def _write(self, data: bytes) -> bool:
        if self.closed:
            return False
        try:
            self.stream.write(data)
        except BrokenPipeError:
            logger.debug("output closed by reader")
            self.closed = True
            return False
        return True

    def _flush(self) -> None:
        if self.closed:
            return
        try:
            self.stream.flush()
        except BrokenPipeError:
            logger.debug("output closed by reader")
            self.closed = True
