"""Privilege capability passed to code that creates files.

paccat never changes the process identity. When it runs elevated (for
example through sudo) it hands each file it creates over to the invoking
user, one operation at a time, so downloads never stay owned by root.
"""

import logging
import os
import pwd
from dataclasses import dataclass
from pathlib import Path

from .Errors import PermissionDenied

logger = logging.getLogger(__name__)


def _user_name(uid: int) -> str:
    try:
        return pwd.getpwuid(uid).pw_name
    except KeyError:
        return str(uid)


@dataclass(frozen=True)
class Privileges:
    """Effective identity of the process and the user who invoked it.

    `invoker_uid`/`invoker_gid` are only set when the process runs as root
    on behalf of another user and that user could be determined.
    """

    euid: int
    user: str
    invoker_uid: int | None = None
    invoker_gid: int | None = None

    @classmethod
    def from_environment(cls, environ=None, euid: int | None = None) -> "Privileges":
        environ = os.environ if environ is None else environ
        euid = os.geteuid() if euid is None else euid
        if euid != 0:
            return cls(euid=euid, user=_user_name(euid))

        uid = gid = None
        try:
            if "SUDO_UID" in environ:
                uid = int(environ["SUDO_UID"])
                gid = int(environ.get("SUDO_GID", uid))
            elif "PKEXEC_UID" in environ:
                uid = int(environ["PKEXEC_UID"])
                gid = pwd.getpwuid(uid).pw_gid
        except (ValueError, KeyError):
            logger.debug("ignoring malformed invoking user information")
            uid = gid = None

        if uid is None:
            return cls(euid=euid, user=_user_name(euid))
        return cls(euid=euid, user=environ.get("SUDO_USER") or _user_name(uid), invoker_uid=uid, invoker_gid=gid)

    @property
    def elevated(self) -> bool:
        return self.euid == 0 and self.invoker_uid is not None and self.invoker_uid != 0

    @property
    def owner(self) -> int:
        """Uid that should own the files paccat creates."""
        return self.invoker_uid if self.elevated else self.euid

    def hand_over(self, path: Path) -> None:
        """Give `path` to the invoking user when running elevated.

        Does nothing when the process is not elevated or the invoking user
        is unknown.

        Raises:
            PermissionDenied: If the ownership change is refused.
        """
        if not self.elevated:
            return
        try:
            os.chown(path, self.invoker_uid, self.invoker_gid)
        except PermissionError as e:
            raise PermissionDenied(f"failed to change owner of {path}: {e.strerror}") from e
        logger.debug("handed %s over to uid %d", path, self.invoker_uid)
