"""Shared fixtures for DatRain tests."""

from pathlib import Path

import pytest


@pytest.fixture(autouse=True)
def _no_sops(monkeypatch):
    """Ensure tests never try to invoke SOPS."""
    monkeypatch.setenv("DATRAIN_USE_SOPS", "false")


@pytest.fixture()
def make_script(tmp_path):
    """Write an executable shell script and return its path."""

    def _make(body: str, name: str = "scanner.sh") -> Path:
        bin_dir = tmp_path / "bin"
        bin_dir.mkdir(exist_ok=True)
        path = bin_dir / name
        path.write_text("#!/bin/sh\n" + body + "\n")
        path.chmod(0o755)
        return path

    return _make
