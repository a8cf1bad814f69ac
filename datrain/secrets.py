"""Settings loading for DatRain.

Settings live in a dotenv file, optionally SOPS-encrypted. ``DATRAIN_*``
variables in the process environment override whatever the file says, so a
one-off run can redirect the cache without editing the file.
"""

import os
import subprocess
from collections.abc import Mapping
from io import StringIO
from pathlib import Path

from dotenv import dotenv_values

from datrain.errors import ConfigError

ENV_PREFIX = "DATRAIN_"


def _decrypt(path: Path) -> str:
    try:
        result = subprocess.run(
            ["sops", "--decrypt", str(path)],
            capture_output=True,
            text=True,
            check=True,
        )
    except FileNotFoundError as exc:
        raise ConfigError("DATRAIN_USE_SOPS is set but the sops binary is not installed") from exc
    except subprocess.CalledProcessError as exc:
        raise ConfigError(f"sops could not decrypt {path}: {exc.stderr.strip()}") from exc
    return result.stdout


def read_settings_file(path: str | Path, *, encrypted: bool = False) -> dict[str, str]:
    """Read ``DATRAIN_*`` keys from a settings file.

    A missing plain file yields no settings so the built-in defaults apply.
    A missing encrypted file is a ConfigError: asking for SOPS and getting
    defaults would silently point the pipeline somewhere unexpected.
    Keys without the ``DATRAIN_`` prefix and keys with no value are dropped.
    """
    path = Path(path)
    if not path.exists():
        if encrypted:
            raise ConfigError(f"Encrypted settings file not found: {path}")
        return {}

    if encrypted:
        raw = dotenv_values(stream=StringIO(_decrypt(path)))
    else:
        raw = dotenv_values(path)
    return {k: v for k, v in raw.items() if k.startswith(ENV_PREFIX) and v is not None}


def env_overrides(environ: Mapping[str, str] | None = None) -> dict[str, str]:
    """Return the ``DATRAIN_*`` variables set in ``environ`` (default: os.environ)."""
    environ = os.environ if environ is None else environ
    return {k: v for k, v in environ.items() if k.startswith(ENV_PREFIX)}


def load_settings(
    path: str | Path,
    *,
    encrypted: bool = False,
    environ: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """File settings overlaid with environment overrides."""
    settings = read_settings_file(path, encrypted=encrypted)
    settings.update(env_overrides(environ))
    return settings
