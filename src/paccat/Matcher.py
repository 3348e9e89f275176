"""File pattern matching against archive members.

Patterns come in four kinds:

- NAME: a bare file name, compared with the member's basename.
- PATH: anything containing "/", matched as a path suffix that must start
  on a path segment boundary ("default/grub" matches "etc/default/grub",
  "ult/grub" does not).
- REGEX: a regular expression searched in the member's full path.
- ALL: the wildcard "*", matching every regular file.

`PatternScan` holds the per-target state of one pass over an archive so all
pending patterns are evaluated against each member before the stream moves
on.
"""

import enum
import logging
import posixpath
import re
from dataclasses import dataclass
from typing import Iterable, List, Sequence

from .Models import ArchiveMember, MatchPolicy

logger = logging.getLogger(__name__)

WILDCARD = "*"

# members every package archive carries that database file lists leave out
PACKAGE_METADATA = (".PKGINFO", ".BUILDINFO", ".MTREE", ".INSTALL", ".CHANGELOG")


class PatternKind(enum.Enum):
    NAME = "name"
    PATH = "path"
    REGEX = "regex"
    ALL = "all"


@dataclass(frozen=True)
class MatchPattern:
    raw: str
    kind: PatternKind
    regex: re.Pattern | None = None

    def matches(self, path: str) -> bool:
        if not path:
            return False
        if self.kind is PatternKind.ALL:
            return True
        if self.kind is PatternKind.NAME:
            return posixpath.basename(path) == self.raw
        if self.kind is PatternKind.PATH:
            return path == self.raw or path.endswith("/" + self.raw)
        return self.regex.search(path) is not None

    def __str__(self) -> str:
        return self.raw


def compile_patterns(files: Sequence[str], regex: bool = False) -> List[MatchPattern]:
    """Turn the user's file arguments into match patterns.

    Leading slashes are stripped so absolute paths match archive paths,
    which are always relative.

    Args:
        files: File arguments in command line order.
        regex: Interpret every argument as a regular expression.

    Raises:
        ValueError: On an empty list, an empty pattern or an invalid regex.
    """
    if not files:
        raise ValueError("no files to search for")

    patterns = []
    for raw in files:
        pattern = raw.lstrip("/")
        if not pattern:
            raise ValueError(f"invalid file pattern: '{raw}'")
        if pattern == WILDCARD:
            patterns.append(MatchPattern(pattern, PatternKind.ALL))
        elif regex:
            try:
                patterns.append(MatchPattern(pattern, PatternKind.REGEX, re.compile(pattern)))
            except re.error as e:
                raise ValueError(f"invalid regex '{pattern}': {e}") from e
        elif "/" in pattern:
            patterns.append(MatchPattern(pattern, PatternKind.PATH))
        else:
            patterns.append(MatchPattern(pattern, PatternKind.NAME))
    return patterns


def unmatchable(patterns: Iterable[MatchPattern], files: Iterable[str]) -> List[MatchPattern]:
    """Return the patterns that match none of a package's listed files.

    Directory entries (trailing "/") in database file lists are ignored and
    the archive metadata members are treated as listed.
    """
    paths = [path for path in files if path and not path.endswith("/")]
    paths.extend(PACKAGE_METADATA)
    return [pattern for pattern in patterns if not any(pattern.matches(path) for path in paths)]


class PatternScan:
    """Matching state for a single pass over one target's archive.

    Under FIRST_PER_TARGET a pattern retires after its first hit while the
    others keep being evaluated; `done` turns true once every pattern has
    retired so the caller can stop reading the stream early.
    """

    def __init__(self, patterns: Sequence[MatchPattern], policy: MatchPolicy) -> None:
        self.patterns = list(patterns)
        self.policy = policy
        self.counts = [0] * len(self.patterns)
        self._active = list(range(len(self.patterns)))

    def offer(self, member: ArchiveMember) -> List[MatchPattern]:
        """Evaluate every still active pattern against `member`.

        Returns:
            List[MatchPattern]: Patterns the member satisfies, empty if none.
        """
        if not member.is_regular_file:
            return []

        hits = [i for i in self._active if self.patterns[i].matches(member.path)]
        for i in hits:
            self.counts[i] += 1
        if hits and self.policy is MatchPolicy.FIRST_PER_TARGET:
            self._active = [i for i in self._active if i not in hits]
        return [self.patterns[i] for i in hits]

    @property
    def done(self) -> bool:
        return self.policy is MatchPolicy.FIRST_PER_TARGET and not self._active

    def unmatched(self) -> List[MatchPattern]:
        return [pattern for pattern, count in zip(self.patterns, self.counts) if count == 0]
