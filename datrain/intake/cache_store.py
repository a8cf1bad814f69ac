"""Cache store for files that passed the scanner gate.

Accepted files are copied into the cache directory under their inbound name.
A SQLite index next to them records where each file came from and what it
hashed to. The index plus the files on disk are the authoritative answer to
"has this name been cached already".
"""

import hashlib
import logging
import os
import sqlite3
import tempfile
import threading
from datetime import UTC, datetime
from pathlib import Path

from datrain.errors import AlreadyCachedError, CommitError
from datrain.schemas.intake import CacheEntry, ScanVerdict

logger = logging.getLogger(__name__)

COPY_CHUNK_SIZE = 65536  # 64 KB chunks for copy + hash

# Everything the store itself owns inside the cache dir starts with this.
RESERVED_PREFIX = ".datrain"
INDEX_DIRNAME = RESERVED_PREFIX
PARTIAL_PREFIX = f"{RESERVED_PREFIX}-incoming-"
PARTIAL_SUFFIX = ".tmp"


def validate_cache_name(name: str) -> None:
    """Reject names that would escape the cache dir or collide with its internals."""
    if not name or name in (".", ".."):
        raise ValueError(f"Invalid cache name: {name!r}")
    if "/" in name or "\\" in name or "\x00" in name:
        raise ValueError(f"Cache name must not contain path separators: {name!r}")
    if name.startswith(RESERVED_PREFIX):
        raise ValueError(f"Cache name uses reserved prefix {RESERVED_PREFIX!r}: {name!r}")


class CacheStore:
    """Idempotent store of accepted files.

    ``commit`` is the single synchronization point: the existence check and
    the write happen under one lock, so concurrent commits of the same name
    produce exactly one entry and the others get ``AlreadyCachedError``.

    Usage::

        with CacheStore("~/DownloadCache") as cache:
            if not cache.exists("report.pdf"):
                entry = cache.commit(Path("~/Downloads/report.pdf"), "report.pdf")
    """

    def __init__(self, cache_dir: str | Path) -> None:
        self._cache_dir = Path(cache_dir).expanduser()
        self._cache_dir.mkdir(parents=True, exist_ok=True)
        index_dir = self._cache_dir / INDEX_DIRNAME
        index_dir.mkdir(exist_ok=True)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(str(index_dir / "index.db"), check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS cache_entries (
                name        TEXT PRIMARY KEY,
                origin_path TEXT NOT NULL,
                accepted_at TEXT NOT NULL,
                verdict     TEXT NOT NULL,
                sha256      TEXT NOT NULL,
                size_bytes  INTEGER NOT NULL
            )
            """
        )
        self._conn.commit()
        self._sweep_partials()

    @property
    def cache_dir(self) -> Path:
        return self._cache_dir

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def __enter__(self) -> "CacheStore":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def _sweep_partials(self) -> None:
        """Remove temp files left behind by an interrupted commit."""
        for item in self._cache_dir.glob(f"{PARTIAL_PREFIX}*{PARTIAL_SUFFIX}"):
            logger.info("Removing partial cache write %s", item.name)
            item.unlink(missing_ok=True)

    def _exists_locked(self, name: str) -> bool:
        row = self._conn.execute(
            "SELECT 1 FROM cache_entries WHERE name = ?", (name,)
        ).fetchone()
        return row is not None or (self._cache_dir / name).exists()

    def exists(self, name: str) -> bool:
        """Check whether a name is already cached (indexed or present on disk)."""
        with self._lock:
            return self._exists_locked(name)

    def path_for(self, name: str) -> Path:
        return self._cache_dir / name

    def commit(
        self,
        source_path: str | Path,
        name: str,
        verdict: ScanVerdict = ScanVerdict.ACCEPTED,
    ) -> CacheEntry:
        """Copy an accepted file into the cache under ``name``.

        The content is written to a temp file in the cache dir, fsynced, then
        renamed into place, so a crash never leaves a half-written entry
        under the final name.

        Raises:
            ValueError: If the verdict is not ACCEPTED or the name is invalid.
            AlreadyCachedError: If ``name`` is already cached. Nothing is written.
            CommitError: If the copy or the index update fails. The cache is
                left without an entry for ``name``.
        """
        if verdict != ScanVerdict.ACCEPTED:
            raise ValueError(f"Refusing to cache {name!r} with verdict {verdict}")
        validate_cache_name(name)
        source = Path(source_path)
        dest = self._cache_dir / name

        with self._lock:
            if self._exists_locked(name):
                raise AlreadyCachedError(name)

            try:
                sha256, size = self._write_atomic(source, dest)
            except OSError as exc:
                raise CommitError(f"Could not write {name} into cache: {exc}") from exc

            entry = CacheEntry(
                name=name,
                origin_path=str(source),
                accepted_at=datetime.now(UTC),
                verdict=verdict,
                sha256=sha256,
                size_bytes=size,
            )
            try:
                self._conn.execute(
                    "INSERT INTO cache_entries"
                    " (name, origin_path, accepted_at, verdict, sha256, size_bytes)"
                    " VALUES (?, ?, ?, ?, ?, ?)",
                    (
                        entry.name,
                        entry.origin_path,
                        entry.accepted_at.isoformat(),
                        entry.verdict.value,
                        entry.sha256,
                        entry.size_bytes,
                    ),
                )
                self._conn.commit()
            except sqlite3.Error as exc:
                self._conn.rollback()
                dest.unlink(missing_ok=True)
                raise CommitError(f"Could not index {name}: {exc}") from exc

        logger.info("Cached %s (sha256=%s…)", name, sha256[:12])
        return entry

    def _write_atomic(self, source: Path, dest: Path) -> tuple[str, int]:
        """Copy source to dest via temp file + rename. Returns (sha256, size)."""
        fd, tmp_path = tempfile.mkstemp(
            dir=str(self._cache_dir), prefix=PARTIAL_PREFIX, suffix=PARTIAL_SUFFIX
        )
        sha256 = hashlib.sha256()
        size = 0
        try:
            with os.fdopen(fd, "wb") as out, source.open("rb") as src:
                while chunk := src.read(COPY_CHUNK_SIZE):
                    sha256.update(chunk)
                    out.write(chunk)
                    size += len(chunk)
                out.flush()
                os.fsync(out.fileno())
            os.replace(tmp_path, dest)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
        return sha256.hexdigest(), size

    def get(self, name: str) -> CacheEntry | None:
        """Retrieve the entry for a name, or None if not indexed."""
        with self._lock:
            row = self._conn.execute(
                "SELECT name, origin_path, accepted_at, verdict, sha256, size_bytes"
                " FROM cache_entries WHERE name = ?",
                (name,),
            ).fetchone()
        if row is None:
            return None
        return _row_to_entry(row)

    def entries(self) -> list[CacheEntry]:
        """All indexed entries, oldest first."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT name, origin_path, accepted_at, verdict, sha256, size_bytes"
                " FROM cache_entries ORDER BY accepted_at"
            ).fetchall()
        return [_row_to_entry(row) for row in rows]

    def count(self) -> int:
        """Return the total number of indexed entries."""
        with self._lock:
            row = self._conn.execute("SELECT COUNT(*) FROM cache_entries").fetchone()
        return row[0]


def _row_to_entry(row: tuple) -> CacheEntry:
    return CacheEntry(
        name=row[0],
        origin_path=row[1],
        accepted_at=datetime.fromisoformat(row[2]),
        verdict=ScanVerdict(row[3]),
        sha256=row[4],
        size_bytes=row[5],
    )
