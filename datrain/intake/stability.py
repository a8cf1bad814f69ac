"""Stability check: is a file still being written?

A file is stable when two stats taken ``delay`` seconds apart agree on size
and mtime and the file opens for reading. Unstable files are deferred to the
next tick, never rejected.
"""

import asyncio
import logging
import os
from collections.abc import Awaitable, Callable
from pathlib import Path

from datrain.errors import TransientIOError

logger = logging.getLogger(__name__)

DEFAULT_STABILITY_DELAY = 1.0


def _signature(st: os.stat_result) -> tuple[int, int]:
    return st.st_size, st.st_mtime_ns


async def is_stable(
    path: Path,
    *,
    delay: float = DEFAULT_STABILITY_DELAY,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> bool:
    """Return True if ``path`` has the same size and mtime across ``delay``.

    Raises:
        TransientIOError: If the file cannot be stat'd (vanished, permission
            denied), or cannot be opened for reading. The caller retries
            on the next tick.
    """
    try:
        before = _signature(path.stat())
        await sleep(delay)
        after = _signature(path.stat())
    except OSError as exc:
        raise TransientIOError(f"cannot stat {path.name}: {exc}") from exc
    if before != after:
        logger.debug(
            "%s still changing (size %d -> %d)", path.name, before[0], after[0]
        )
        return False

    # stat succeeds on unreadable files, so prove the scanner can open it.
    try:
        with path.open("rb"):
            pass
    except OSError as exc:
        raise TransientIOError(f"cannot read {path.name}: {exc}") from exc
    return True
