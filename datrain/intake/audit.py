"""Append-only JSONL audit log for gate decisions.

Records are buffered in memory and written by a background thread so a slow
disk never stalls the intake loop. The buffer is bounded: when it is full the
oldest pending record is dropped and ``dropped_count`` goes up.
"""

import logging
import threading
from collections import deque
from datetime import datetime
from pathlib import Path

from datrain.schemas.intake import AuditRecord, GateOutcome

logger = logging.getLogger(__name__)

DEFAULT_BUFFER_SIZE = 1000


class AuditLog:
    """Buffered append-only JSONL audit log.

    Usage::

        audit = AuditLog("/path/to/audit.jsonl")
        audit.record(record)
        ...
        audit.close()
        entries = audit.read_entries(outcome=GateOutcome.REJECTED_LOGGED)
    """

    def __init__(self, path: str | Path, *, buffer_size: int = DEFAULT_BUFFER_SIZE) -> None:
        if buffer_size < 1:
            raise ValueError("buffer_size must be at least 1")
        self._path = Path(path).expanduser()
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._buffer: deque[AuditRecord] = deque()
        self._buffer_size = buffer_size
        self._cond = threading.Condition()
        self._write_lock = threading.Lock()
        self._dropped = 0
        self._closed = False
        self._writer = threading.Thread(target=self._run_writer, name="audit-writer", daemon=True)
        self._writer.start()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def dropped_count(self) -> int:
        """Number of records discarded because the buffer was full."""
        with self._cond:
            return self._dropped

    @property
    def pending_count(self) -> int:
        with self._cond:
            return len(self._buffer)

    def record(self, record: AuditRecord) -> None:
        """Queue a record for writing. Never blocks on disk I/O."""
        with self._cond:
            if self._closed:
                raise RuntimeError("audit log is closed")
            if len(self._buffer) >= self._buffer_size:
                self._buffer.popleft()
                self._dropped += 1
                logger.warning("Audit buffer full, dropped oldest record (total dropped=%d)", self._dropped)
            self._buffer.append(record)
            self._cond.notify()
        logger.debug(
            "Audit: %s verdict=%s outcome=%s",
            record.file_name,
            record.verdict,
            record.outcome,
        )

    def flush(self) -> None:
        """Write every buffered record before returning."""
        self._drain()

    def close(self) -> None:
        """Stop the writer thread after draining the buffer."""
        with self._cond:
            if self._closed:
                return
            self._closed = True
            self._cond.notify()
        self._writer.join()
        self._drain()

    def __enter__(self) -> "AuditLog":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def _run_writer(self) -> None:
        while True:
            with self._cond:
                while not self._buffer and not self._closed:
                    self._cond.wait()
                if self._closed and not self._buffer:
                    return
            self._drain()

    def _drain(self) -> None:
        with self._write_lock:
            with self._cond:
                batch = list(self._buffer)
                self._buffer.clear()
            if not batch:
                return
            try:
                with self._path.open("a") as f:
                    for rec in batch:
                        f.write(rec.model_dump_json() + "\n")
            except OSError:
                logger.exception("Failed to write %d audit record(s) to %s", len(batch), self._path)

    def read_entries(
        self,
        *,
        since: datetime | None = None,
        outcome: GateOutcome | None = None,
        limit: int | None = None,
    ) -> list[AuditRecord]:
        """Read audit records with optional filtering.

        Pending records are flushed first.

        Args:
            since: Only return records after this timestamp.
            outcome: Only return records with this gate outcome.
            limit: Maximum number of records to return (newest after filtering).

        Returns:
            List of AuditRecord objects, oldest first.
        """
        self.flush()
        return read_audit_file(self._path, since=since, outcome=outcome, limit=limit)


def read_audit_file(
    path: str | Path,
    *,
    since: datetime | None = None,
    outcome: GateOutcome | None = None,
    limit: int | None = None,
) -> list[AuditRecord]:
    """Read an audit JSONL file without starting a writer."""
    path = Path(path).expanduser()
    if not path.exists():
        return []

    entries: list[AuditRecord] = []
    with path.open() as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            rec = AuditRecord.model_validate_json(line)
            if since and rec.timestamp <= since:
                continue
            if outcome and rec.outcome != outcome:
                continue
            entries.append(rec)

    if limit is not None:
        entries = entries[-limit:]

    return entries
