"""Tests for settings loading."""

import subprocess

import pytest

from datrain.errors import ConfigError
from datrain.secrets import env_overrides, load_settings, read_settings_file


def _write_env(tmp_path, text: str):
    env_file = tmp_path / "internal.env"
    env_file.write_text(text)
    return env_file


class TestReadSettingsFile:
    def test_reads_datrain_keys(self, tmp_path):
        env_file = _write_env(tmp_path, "DATRAIN_CACHE_DIR=/srv/cache\nDATRAIN_MAX_WORKERS=8\n")
        assert read_settings_file(env_file) == {
            "DATRAIN_CACHE_DIR": "/srv/cache",
            "DATRAIN_MAX_WORKERS": "8",
        }

    def test_drops_foreign_and_valueless_keys(self, tmp_path):
        env_file = _write_env(tmp_path, "OLLAMA_HOST=http://x\nDATRAIN_QUARANTINE_DIR\nDATRAIN_MAX_WORKERS=2\n")
        assert read_settings_file(env_file) == {"DATRAIN_MAX_WORKERS": "2"}

    def test_missing_plain_file_is_empty(self, tmp_path):
        assert read_settings_file(tmp_path / "nope.env") == {}

    def test_missing_encrypted_file_is_config_error(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            read_settings_file(tmp_path / "internal.env.enc", encrypted=True)

    def test_encrypted_file_is_decrypted_with_sops(self, tmp_path, monkeypatch):
        enc = tmp_path / "internal.env.enc"
        enc.write_text("ciphertext")
        calls = []

        def _fake_run(cmd, **kwargs):
            calls.append(cmd)
            return subprocess.CompletedProcess(cmd, 0, stdout="DATRAIN_INBOUND_DIR=/dl\n", stderr="")

        monkeypatch.setattr("datrain.secrets.subprocess.run", _fake_run)

        assert read_settings_file(enc, encrypted=True) == {"DATRAIN_INBOUND_DIR": "/dl"}
        assert calls == [["sops", "--decrypt", str(enc)]]

    def test_sops_failure_is_config_error(self, tmp_path, monkeypatch):
        enc = tmp_path / "internal.env.enc"
        enc.write_text("ciphertext")

        def _fail(cmd, **kwargs):
            raise subprocess.CalledProcessError(128, cmd, stderr="no key\n")

        monkeypatch.setattr("datrain.secrets.subprocess.run", _fail)

        with pytest.raises(ConfigError, match="no key"):
            read_settings_file(enc, encrypted=True)


class TestLoadSettings:
    def test_env_overrides_file(self, tmp_path):
        env_file = _write_env(tmp_path, "DATRAIN_CACHE_DIR=/srv/cache\nDATRAIN_MAX_WORKERS=8\n")
        settings = load_settings(env_file, environ={"DATRAIN_MAX_WORKERS": "2", "HOME": "/root"})
        assert settings == {"DATRAIN_CACHE_DIR": "/srv/cache", "DATRAIN_MAX_WORKERS": "2"}

    def test_env_only(self, tmp_path):
        settings = load_settings(tmp_path / "nope.env", environ={"DATRAIN_POLL_INTERVAL": "5"})
        assert settings == {"DATRAIN_POLL_INTERVAL": "5"}

    def test_env_overrides_reads_process_environment(self, monkeypatch):
        monkeypatch.setenv("DATRAIN_SCANNER_TIMEOUT", "12")
        assert env_overrides()["DATRAIN_SCANNER_TIMEOUT"] == "12"
