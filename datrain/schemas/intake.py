"""Schemas for the download cache pipeline.

Covers inbound file snapshots, scanner verdicts, cache entries, and the
per-file audit records written by the gate.
"""

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, Field


class ScanVerdict(StrEnum):
    """Normalized answer from the external content scanner."""

    ACCEPTED = "accepted"
    REJECTED = "rejected"
    INDETERMINATE = "indeterminate"


class GateOutcome(StrEnum):
    """Where a file ended up after one pass through the decision gate."""

    ACCEPTED_COMMITTED = "accepted_committed"
    REJECTED_LOGGED = "rejected_logged"
    DEFERRED = "deferred"
    ALREADY_CACHED = "already_cached"
    COMMIT_FAILED = "commit_failed"
    ERROR = "error"


class InboundFile(BaseModel):
    """A regular file seen in the inbound directory during one tick."""

    path: str = Field(description="Absolute path in the inbound directory")
    name: str
    size_bytes: int = Field(ge=0)
    modified_at: datetime


class CacheEntry(BaseModel):
    """A file admitted into the cache. Written once, never updated."""

    name: str = Field(description="Cache-relative file name")
    origin_path: str
    accepted_at: datetime
    verdict: ScanVerdict = ScanVerdict.ACCEPTED
    sha256: str = Field(description="SHA-256 hex digest of the committed content")
    size_bytes: int = Field(default=0, ge=0)


class AuditRecord(BaseModel):
    """An audit record for a single gate decision."""

    timestamp: datetime
    file_name: str
    source_path: str
    verdict: ScanVerdict | None = Field(
        default=None, description="Scanner verdict, absent when no scan happened"
    )
    outcome: GateOutcome
    action: str = Field(description="What was done with the file")
    destination: str = Field(default="", description="Cache or quarantine path, if any")
    error_message: str = Field(default="")
    file_size_bytes: int = Field(default=0, ge=0)


class TickReport(BaseModel):
    """Summary of one intake tick."""

    started_at: datetime
    finished_at: datetime | None = None
    candidates: int = 0
    records: list[AuditRecord] = Field(default_factory=list)

    def count(self, outcome: GateOutcome) -> int:
        return sum(1 for r in self.records if r.outcome == outcome)
