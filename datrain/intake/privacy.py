"""Restrict cached files to the owning user.

Two enforcers: ``OwnerOnlyEnforcer`` sets POSIX owner-only permission bits,
``CommandEnforcer`` hands the path to an external ACL tool. Both are
best-effort: a failure is logged and reported as False, it never undoes a
cache commit.
"""

import logging
import stat
import subprocess
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)

FILE_MODE = stat.S_IRUSR | stat.S_IWUSR  # 0o600
DIR_MODE = stat.S_IRWXU  # 0o700

DEFAULT_COMMAND_TIMEOUT = 30.0


class PrivacyEnforcer(Protocol):
    def protect(self, path: Path) -> bool: ...


class OwnerOnlyEnforcer:
    """chmod 600 for files, 700 for directories."""

    def protect(self, path: Path) -> bool:
        path = Path(path)
        try:
            if path.is_dir():
                path.chmod(DIR_MODE)
            elif path.is_file():
                path.chmod(FILE_MODE)
            else:
                logger.warning("Path does not exist, cannot protect: %s", path)
                return False
        except OSError as exc:
            logger.warning("Failed to restrict permissions on %s: %s", path, exc)
            return False
        logger.debug("Protected %s", path)
        return True


class CommandEnforcer:
    """Run ``<command> <path>`` and treat exit status 0 as success."""

    def __init__(self, command: str, *, timeout: float = DEFAULT_COMMAND_TIMEOUT) -> None:
        self._command = command
        self._timeout = timeout

    def protect(self, path: Path) -> bool:
        try:
            result = subprocess.run(
                [self._command, str(path)],
                capture_output=True,
                text=True,
                timeout=self._timeout,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            logger.warning("Privacy command %s failed for %s: %s", self._command, path, exc)
            return False
        if result.returncode != 0:
            logger.warning(
                "Privacy command %s exited %d for %s: %s",
                self._command,
                result.returncode,
                path,
                result.stderr.strip(),
            )
            return False
        logger.debug("Privacy command protected %s", path)
        return True


class NullEnforcer:
    """Leaves permissions alone."""

    def protect(self, path: Path) -> bool:
        return True


def build_enforcer(command: str | None, *, enabled: bool = True) -> PrivacyEnforcer:
    if not enabled:
        return NullEnforcer()
    if command:
        return CommandEnforcer(command)
    return OwnerOnlyEnforcer()
