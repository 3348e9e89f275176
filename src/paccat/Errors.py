"""Error taxonomy for paccat.

Every failure the pipeline can report derives from `PaccatError`. Errors
scoped to a single target (or a single target/pattern pair) carry that
context so they stay unambiguous when many targets are processed in one
invocation. `ConfigError` is the only run-wide error; it aborts before any
work begins.
"""


class PaccatError(Exception):
    """Base class for all paccat errors.

    Attributes:
        message (str): Human readable description without context prefix.
        target (str | None): Raw target string the error belongs to, if any.
        pattern (str | None): File pattern the error belongs to, if any.
    """

    def __init__(self, message: str, target: str | None = None, pattern: str | None = None) -> None:
        self.message = message
        self.target = target
        self.pattern = pattern
        super().__init__(str(self))

    def __str__(self) -> str:
        if self.target is not None:
            return f"{self.target}: {self.message}"
        return self.message


class ConfigError(PaccatError):
    """Configuration or database initialisation failed."""


class TargetNotFound(PaccatError):
    pass


class DownloadFailed(PaccatError):
    pass


class VerificationFailed(PaccatError):
    pass


class EmptyFile(PaccatError):
    pass


class ArchiveCorrupt(PaccatError):
    pass


class PatternNotFound(PaccatError):
    """A pattern produced no match in a target's archive."""

    def __init__(self, target: str, pattern: str) -> None:
        super().__init__(f"could not find '{pattern}'", target=target, pattern=pattern)


class RefreshFailed(PaccatError):
    pass


class PermissionDenied(PaccatError):
    pass


class HighlightFailed(PaccatError):
    """The highlighter could not style a member; raw bytes are printed instead."""
