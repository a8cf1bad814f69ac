"""Intake scheduler: list the inbound directory and feed the gate.

Ticks run one after another on the asyncio loop. Within a tick, files go
through the gate concurrently, bounded by ``max_workers``. Between ticks the
loop sleeps for the poll interval, or less if the ``watchdog`` Observer sees
a file land in the inbound directory.
"""

import asyncio
import fnmatch
import logging
import stat
from datetime import UTC, datetime
from pathlib import Path

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from datrain.errors import TransientIOError
from datrain.intake.cache_store import CacheStore, validate_cache_name
from datrain.intake.gate import DecisionGate
from datrain.schemas.intake import GateOutcome, InboundFile, TickReport

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 30.0
DEFAULT_MAX_WORKERS = 4


def matches_patterns(name: str, patterns: list[str]) -> bool:
    """Case-insensitive glob match against any of ``patterns``."""
    name_lower = name.lower()
    return any(fnmatch.fnmatch(name_lower, p) for p in patterns)


class InboundEventHandler(FileSystemEventHandler):
    """Wakes the intake loop when something lands in the inbound directory.

    The handler runs on the Observer thread, so it only sets an asyncio
    event on the loop. The next tick does the actual work.
    """

    def __init__(self, *, loop: asyncio.AbstractEventLoop, wake: asyncio.Event) -> None:
        super().__init__()
        self._loop = loop
        self._wake = wake

    def _nudge(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        logger.debug("Filesystem event %s on %s", event.event_type, event.src_path)
        self._loop.call_soon_threadsafe(self._wake.set)

    def on_created(self, event: FileSystemEvent) -> None:
        self._nudge(event)

    def on_closed(self, event: FileSystemEvent) -> None:
        self._nudge(event)

    def on_moved(self, event: FileSystemEvent) -> None:
        self._nudge(event)


class IntakeScheduler:
    """Drives the download cache pipeline over one inbound directory.

    Usage::

        scheduler = IntakeScheduler(inbound_dir, gate=gate, cache=cache)
        report = await scheduler.run_tick()          # one pass
        await scheduler.run_forever(stop_event)      # until stop_event is set
    """

    def __init__(
        self,
        inbound_dir: str | Path,
        *,
        gate: DecisionGate,
        cache: CacheStore,
        file_patterns: list[str] | None = None,
        max_workers: int = DEFAULT_MAX_WORKERS,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        use_observer: bool = True,
    ) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self._inbound_dir = Path(inbound_dir).expanduser()
        self._gate = gate
        self._cache = cache
        self._file_patterns = [p.lower() for p in (file_patterns or ["*"])]
        self._max_workers = max_workers
        self._poll_interval = poll_interval
        self._use_observer = use_observer

    @property
    def inbound_dir(self) -> Path:
        return self._inbound_dir

    def tick(self) -> list[InboundFile]:
        """List inbound files that are not cached yet. Read-only."""
        candidates, _unreadable = self._list_inbound()
        return candidates

    def _list_inbound(self) -> tuple[list[InboundFile], list[tuple[Path, TransientIOError]]]:
        try:
            items = sorted(self._inbound_dir.iterdir())
        except FileNotFoundError:
            logger.error("Inbound directory does not exist: %s", self._inbound_dir)
            return [], []
        except OSError as exc:
            logger.error("Cannot list inbound directory %s: %s", self._inbound_dir, exc)
            return [], []

        candidates: list[InboundFile] = []
        unreadable: list[tuple[Path, TransientIOError]] = []
        for item in items:
            if not matches_patterns(item.name, self._file_patterns):
                continue
            try:
                validate_cache_name(item.name)
            except ValueError:
                logger.debug("Ignoring reserved name %s", item.name)
                continue

            try:
                st = item.stat(follow_symlinks=False)
            except FileNotFoundError:
                continue  # removed between listing and stat
            except OSError as exc:
                logger.warning("Cannot stat %s, will retry next tick: %s", item.name, exc)
                unreadable.append((item, TransientIOError(f"cannot stat {item.name}: {exc}")))
                continue

            if not stat.S_ISREG(st.st_mode):
                continue
            if self._cache.exists(item.name):
                continue

            candidates.append(
                InboundFile(
                    path=str(item.absolute()),
                    name=item.name,
                    size_bytes=st.st_size,
                    modified_at=datetime.fromtimestamp(st.st_mtime, UTC),
                )
            )
        return candidates, unreadable

    async def run_tick(self) -> TickReport:
        """One full pass: list, gate every candidate, summarize."""
        report = TickReport(started_at=datetime.now(UTC))
        candidates, unreadable = self._list_inbound()
        report.candidates = len(candidates)

        for path, exc in unreadable:
            report.records.append(self._gate.report_unreadable(path, exc))

        semaphore = asyncio.Semaphore(self._max_workers)

        async def _bounded(inbound: InboundFile):
            async with semaphore:
                return await self._gate.process(inbound)

        if candidates:
            report.records.extend(await asyncio.gather(*(_bounded(c) for c in candidates)))

        report.finished_at = datetime.now(UTC)
        if report.records:
            logger.info(
                "Tick done: %d candidate(s), cached=%d rejected=%d deferred=%d failed=%d",
                report.candidates,
                report.count(GateOutcome.ACCEPTED_COMMITTED),
                report.count(GateOutcome.REJECTED_LOGGED),
                report.count(GateOutcome.DEFERRED),
                report.count(GateOutcome.COMMIT_FAILED) + report.count(GateOutcome.ERROR),
            )
        return report

    async def run_forever(self, stop_event: asyncio.Event) -> None:
        """Run ticks until ``stop_event`` is set.

        A tick that is already running when the stop arrives is allowed to
        finish, so in-flight scans complete or time out and no commit is cut
        short.
        """
        loop = asyncio.get_running_loop()
        wake = asyncio.Event()
        observer = self._start_observer(loop, wake) if self._use_observer else None

        try:
            while not stop_event.is_set():
                wake.clear()
                await self.run_tick()
                await _wait_any(stop_event, wake, timeout=self._poll_interval)
        finally:
            if observer is not None:
                observer.stop()
                observer.join()
            logger.info("Intake loop stopped.")

    def _start_observer(self, loop: asyncio.AbstractEventLoop, wake: asyncio.Event):
        handler = InboundEventHandler(loop=loop, wake=wake)
        observer = Observer()
        try:
            observer.schedule(handler, str(self._inbound_dir), recursive=False)
            observer.start()
        except OSError as exc:
            logger.warning("Filesystem notifications unavailable, polling only: %s", exc)
            return None
        logger.info("Watching %s for new files…", self._inbound_dir)
        return observer


async def _wait_any(*events: asyncio.Event, timeout: float) -> None:
    """Wait until any event is set or the timeout passes."""
    waiters = [asyncio.create_task(e.wait()) for e in events]
    try:
        await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for w in waiters:
            w.cancel()
        await asyncio.gather(*waiters, return_exceptions=True)
