"""Exception types for the download cache pipeline.

Only ConfigError is meant to end the process. Everything else is caught at
the per-file boundary in the gate and surfaced through the audit log.
"""


class DatRainError(Exception):
    """Base class for all DatRain errors."""


class ConfigError(DatRainError):
    """Raised when a required directory or setting is missing or unusable."""


class TransientIOError(DatRainError):
    """Raised for per-file permission or lock conflicts. Retried next tick."""


class ScannerError(DatRainError):
    """Raised when the external scanner cannot produce a usable answer.

    The scanner client converts this to an INDETERMINATE verdict.
    """


class CommitError(DatRainError):
    """Raised when an accepted file could not be written into the cache."""


class AlreadyCachedError(CommitError):
    """Raised when committing a name that is already present in the cache."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Already cached: {name}")
        self.name = name
