"""Decision gate: stability check, scan, then commit or refuse.

Per-file state machine::

    NEW -> DEFERRED            (still being written, retried next tick)
    NEW -> SCANNING
    SCANNING -> ACCEPTED_COMMITTED
    SCANNING -> REJECTED_LOGGED (REJECTED or INDETERMINATE)

Every pass through the gate yields exactly one AuditRecord.
"""

import asyncio
import logging
import shutil
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from pathlib import Path

from datrain.errors import AlreadyCachedError, CommitError, TransientIOError
from datrain.intake.audit import AuditLog
from datrain.intake.cache_store import CacheStore
from datrain.intake.privacy import NullEnforcer, PrivacyEnforcer
from datrain.intake.scanner import Scanner
from datrain.intake.stability import DEFAULT_STABILITY_DELAY, is_stable
from datrain.schemas.intake import AuditRecord, GateOutcome, InboundFile, ScanVerdict

logger = logging.getLogger(__name__)


def quarantine_file(source: Path, quarantine_dir: Path) -> Path:
    """Move a rejected file into the quarantine directory.

    If a file with the same name is already quarantined, appends a numeric
    suffix (e.g. ``setup_1.exe``, ``setup_2.exe``).

    Returns:
        The final destination path.
    """
    quarantine_dir.mkdir(parents=True, exist_ok=True)
    dest = quarantine_dir / source.name

    if dest.exists():
        stem = source.stem
        suffix = source.suffix
        counter = 1
        while dest.exists():
            dest = quarantine_dir / f"{stem}_{counter}{suffix}"
            counter += 1

    shutil.move(str(source), str(dest))
    return dest


class DecisionGate:
    """Runs one inbound file through the gate and audits the outcome."""

    def __init__(
        self,
        *,
        scanner: Scanner,
        cache: CacheStore,
        audit_log: AuditLog,
        enforcer: PrivacyEnforcer | None = None,
        stability_delay: float = DEFAULT_STABILITY_DELAY,
        quarantine_dir: Path | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._scanner = scanner
        self._cache = cache
        self._audit_log = audit_log
        self._enforcer = enforcer or NullEnforcer()
        self._stability_delay = stability_delay
        self._quarantine_dir = quarantine_dir
        self._sleep = sleep

    async def process(self, inbound: InboundFile) -> AuditRecord:
        """Process a single file and record what happened.

        Never raises for per-file problems; they come back as ERROR or
        COMMIT_FAILED records so the rest of the tick carries on.
        """
        try:
            record = await self._process(inbound)
        except Exception as exc:
            logger.exception("Unexpected failure processing %s", inbound.name)
            record = self._record(inbound, GateOutcome.ERROR, "skipped", error=str(exc))
        self._audit_log.record(record)
        return record

    def report_unreadable(self, path: Path, exc: Exception) -> AuditRecord:
        """Audit a file the scheduler could not even stat this tick."""
        record = AuditRecord(
            timestamp=datetime.now(UTC),
            file_name=path.name,
            source_path=str(path.absolute()),
            outcome=GateOutcome.ERROR,
            action="skipped",
            error_message=str(exc),
        )
        self._audit_log.record(record)
        return record

    async def _process(self, inbound: InboundFile) -> AuditRecord:
        path = Path(inbound.path)

        try:
            stable = await is_stable(path, delay=self._stability_delay, sleep=self._sleep)
        except TransientIOError as exc:
            logger.warning("Skipped %s, will retry next tick: %s", inbound.name, exc)
            return self._record(inbound, GateOutcome.ERROR, "skipped", error=str(exc))

        if not stable:
            logger.info("Deferred %s: still being written", inbound.name)
            return self._record(inbound, GateOutcome.DEFERRED, "deferred")

        # Another worker or a previous run may have cached it since listing.
        if self._cache.exists(inbound.name):
            logger.info("Skipped %s: already cached", inbound.name)
            return self._record(inbound, GateOutcome.ALREADY_CACHED, "left_in_place")

        verdict = await self._scanner.scan(path)

        if verdict == ScanVerdict.ACCEPTED:
            return await self._commit(inbound, path, verdict)
        return await self._refuse(inbound, path, verdict)

    async def _commit(self, inbound: InboundFile, path: Path, verdict: ScanVerdict) -> AuditRecord:
        try:
            # Shielded so a shutdown never interrupts a commit halfway.
            entry = await asyncio.shield(
                asyncio.to_thread(self._cache.commit, path, inbound.name, verdict)
            )
        except AlreadyCachedError:
            logger.info("Lost commit race for %s, keeping the first cached copy", inbound.name)
            return self._record(inbound, GateOutcome.ALREADY_CACHED, "left_in_place", verdict=verdict)
        except CommitError as exc:
            logger.error("Commit failed for %s, will retry next tick: %s", inbound.name, exc)
            return self._record(
                inbound, GateOutcome.COMMIT_FAILED, "left_in_place", verdict=verdict, error=str(exc)
            )

        dest = self._cache.path_for(entry.name)
        error = ""
        if not await asyncio.to_thread(self._enforcer.protect, dest):
            error = "privacy enforcement failed"
        logger.info("Accepted %s -> %s", inbound.name, dest)
        return self._record(
            inbound,
            GateOutcome.ACCEPTED_COMMITTED,
            "cached",
            verdict=verdict,
            destination=str(dest),
            error=error,
        )

    async def _refuse(self, inbound: InboundFile, path: Path, verdict: ScanVerdict) -> AuditRecord:
        if verdict == ScanVerdict.REJECTED:
            logger.warning("Malicious file detected: %s - not cached", inbound.name)
        else:
            logger.warning("Could not determine if %s is safe - not cached", inbound.name)

        if verdict == ScanVerdict.REJECTED and self._quarantine_dir is not None:
            try:
                dest = await asyncio.to_thread(quarantine_file, path, self._quarantine_dir)
            except OSError as exc:
                logger.error("Failed to quarantine %s: %s", inbound.name, exc)
                return self._record(
                    inbound, GateOutcome.REJECTED_LOGGED, "left_in_place", verdict=verdict, error=str(exc)
                )
            return self._record(
                inbound, GateOutcome.REJECTED_LOGGED, "quarantined", verdict=verdict, destination=str(dest)
            )

        return self._record(inbound, GateOutcome.REJECTED_LOGGED, "left_in_place", verdict=verdict)

    @staticmethod
    def _record(
        inbound: InboundFile,
        outcome: GateOutcome,
        action: str,
        *,
        verdict: ScanVerdict | None = None,
        destination: str = "",
        error: str = "",
    ) -> AuditRecord:
        return AuditRecord(
            timestamp=datetime.now(UTC),
            file_name=inbound.name,
            source_path=inbound.path,
            verdict=verdict,
            outcome=outcome,
            action=action,
            destination=destination,
            error_message=error,
            file_size_bytes=inbound.size_bytes,
        )
