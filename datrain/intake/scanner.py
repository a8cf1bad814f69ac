"""Scanner client: the trust gate's view of an external content classifier.

The scanner is an opaque executable invoked as ``<scanner> <path>``. It must
print exactly ``OK`` or ``MALICIOUS`` on stdout. Anything else, a non-zero
exit, a timeout, or a failure to launch is treated as INDETERMINATE, which the
gate handles the same way as a rejection.
"""

import asyncio
import contextlib
import logging
import os
import signal
from pathlib import Path
from typing import Protocol

from datrain.errors import ScannerError
from datrain.schemas.intake import ScanVerdict

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 60.0
# How long to wait for the killed process group to be reaped.
KILL_WAIT_SECONDS = 5.0

ACCEPT_TOKEN = "OK"
REJECT_TOKEN = "MALICIOUS"


class Scanner(Protocol):
    async def scan(self, path: Path) -> ScanVerdict: ...


def parse_scanner_output(stdout: str, returncode: int) -> ScanVerdict:
    """Map raw scanner output and exit status to a verdict."""
    if returncode != 0:
        return ScanVerdict.INDETERMINATE
    answer = stdout.strip()
    if answer == ACCEPT_TOKEN:
        return ScanVerdict.ACCEPTED
    if answer == REJECT_TOKEN:
        return ScanVerdict.REJECTED
    return ScanVerdict.INDETERMINATE


class SubprocessScanner:
    """Runs the external scanner executable once per file.

    Usage::

        scanner = SubprocessScanner("filesafe/malicious_detector", timeout=30)
        verdict = await scanner.scan(Path("/downloads/setup.exe"))
    """

    def __init__(self, executable: str | Path, *, timeout: float = DEFAULT_TIMEOUT_SECONDS) -> None:
        self._executable = str(executable)
        self._timeout = timeout

    @property
    def executable(self) -> str:
        return self._executable

    async def scan(self, path: Path) -> ScanVerdict:
        try:
            stdout, returncode = await self._run(path)
        except ScannerError as exc:
            logger.warning("Scanner failed for %s: %s", path.name, exc)
            return ScanVerdict.INDETERMINATE

        verdict = parse_scanner_output(stdout, returncode)
        if verdict == ScanVerdict.INDETERMINATE:
            logger.warning(
                "Scanner gave no usable answer for %s (exit=%d, output=%r)",
                path.name,
                returncode,
                stdout.strip()[:80],
            )
        else:
            logger.debug("Scanner verdict for %s: %s", path.name, verdict)
        return verdict

    async def _run(self, path: Path) -> tuple[str, int]:
        try:
            proc = await asyncio.create_subprocess_exec(
                self._executable,
                str(path),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as exc:
            raise ScannerError(f"could not launch {self._executable}: {exc}") from exc

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self._timeout)
        except TimeoutError:
            await _kill(proc)
            raise ScannerError(f"timed out after {self._timeout:g}s") from None
        except asyncio.CancelledError:
            await _kill(proc)
            raise

        if stderr:
            logger.debug("Scanner stderr for %s: %s", path.name, stderr.decode(errors="replace").strip())
        return stdout.decode(errors="replace"), proc.returncode


async def _kill(proc: asyncio.subprocess.Process) -> None:
    """Kill the scanner and anything it spawned, then reap it.

    The scanner runs in its own session, so its pid is also the process
    group id. Killing the group stops wrapper scripts whose children would
    otherwise hold stdout open and keep ``wait()`` from returning.
    """
    if hasattr(os, "killpg"):
        with contextlib.suppress(ProcessLookupError, PermissionError):
            os.killpg(proc.pid, signal.SIGKILL)
    with contextlib.suppress(ProcessLookupError):
        proc.kill()
    try:
        await asyncio.wait_for(proc.wait(), timeout=KILL_WAIT_SECONDS)
    except TimeoutError:
        logger.error("Scanner process %d did not exit after kill", proc.pid)


class StaticScanner:
    """In-memory scanner with canned verdicts, keyed by file name.

    Unknown names get ``default``. Every call is recorded in ``calls``.
    """

    def __init__(
        self,
        verdicts: dict[str, ScanVerdict] | None = None,
        *,
        default: ScanVerdict = ScanVerdict.INDETERMINATE,
    ) -> None:
        self.verdicts = dict(verdicts or {})
        self.default = default
        self.calls: list[Path] = []

    async def scan(self, path: Path) -> ScanVerdict:
        self.calls.append(path)
        return self.verdicts.get(path.name, self.default)
