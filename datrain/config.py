"""Single source of truth for all configuration.

All modules import from here, never from os.environ directly.

Values come from secrets/internal.env (or secrets/internal.env.enc via SOPS
when DATRAIN_USE_SOPS=true). Process environment variables with the same
name take precedence over the file.
"""

import os
from pathlib import Path

from datrain.secrets import load_settings

PROJECT_ROOT = Path(__file__).resolve().parent.parent

USE_SOPS = os.environ.get("DATRAIN_USE_SOPS", "false").lower() == "true"


def _load(scope: str) -> dict[str, str]:
    """Load settings for a given scope, overlaid with DATRAIN_* env vars."""
    suffix = ".env.enc" if USE_SOPS else ".env"
    return load_settings(PROJECT_ROOT / "secrets" / f"{scope}{suffix}", encrypted=USE_SOPS)


_internal = _load("internal")


def _get(key: str, default: str) -> str:
    return _internal.get(key, default)


_home = Path.home()

# --- Download cache pipeline ---
INBOUND_DIR: str = _get("DATRAIN_INBOUND_DIR", str(_home / "Downloads"))
CACHE_DIR: str = _get("DATRAIN_CACHE_DIR", str(_home / "DownloadCache"))
SCANNER_PATH: str = _get("DATRAIN_SCANNER_PATH", "filesafe/malicious_detector")
SCANNER_TIMEOUT: float = float(_get("DATRAIN_SCANNER_TIMEOUT", "60"))
POLL_INTERVAL: float = float(_get("DATRAIN_POLL_INTERVAL", "30"))
STABILITY_DELAY: float = float(_get("DATRAIN_STABILITY_DELAY", "1.0"))
MAX_WORKERS: int = int(_get("DATRAIN_MAX_WORKERS", "4"))
FILE_PATTERNS: str = _get("DATRAIN_FILE_PATTERNS", "*")
QUARANTINE_DIR: str = _get("DATRAIN_QUARANTINE_DIR", "")

# --- Privacy enforcement (empty command = built-in owner-only chmod) ---
PRIVACY_ENABLED: bool = _get("DATRAIN_PRIVACY_ENABLED", "true").lower() == "true"
PRIVACY_COMMAND: str = _get("DATRAIN_PRIVACY_COMMAND", "")

# --- Audit ---
AUDIT_LOG_PATH: str = _get(
    "DATRAIN_AUDIT_LOG_PATH", str(PROJECT_ROOT / "data" / "cache_audit.log")
)
AUDIT_BUFFER_SIZE: int = int(_get("DATRAIN_AUDIT_BUFFER_SIZE", "1000"))
