"""Tests for the scanner client."""

import time

import pytest

from datrain.intake.scanner import StaticScanner, SubprocessScanner, parse_scanner_output
from datrain.schemas.intake import ScanVerdict

# ------------------------------------------------------------------
# parse_scanner_output
# ------------------------------------------------------------------


@pytest.mark.parametrize(
    ("stdout", "returncode", "expected"),
    [
        ("OK\n", 0, ScanVerdict.ACCEPTED),
        ("  OK  ", 0, ScanVerdict.ACCEPTED),
        ("MALICIOUS\n", 0, ScanVerdict.REJECTED),
        ("ok", 0, ScanVerdict.INDETERMINATE),
        ("OK MALICIOUS", 0, ScanVerdict.INDETERMINATE),
        ("", 0, ScanVerdict.INDETERMINATE),
        ("OK", 1, ScanVerdict.INDETERMINATE),
        ("MALICIOUS", 2, ScanVerdict.INDETERMINATE),
    ],
)
def test_parse_scanner_output(stdout, returncode, expected):
    assert parse_scanner_output(stdout, returncode) == expected


# ------------------------------------------------------------------
# SubprocessScanner
# ------------------------------------------------------------------


@pytest.fixture
def sample_file(tmp_path):
    f = tmp_path / "download.zip"
    f.write_bytes(b"PK fake zip")
    return f


class TestSubprocessScanner:
    async def test_ok_is_accepted(self, make_script, sample_file):
        scanner = SubprocessScanner(make_script("echo OK"), timeout=5)
        assert await scanner.scan(sample_file) == ScanVerdict.ACCEPTED

    async def test_malicious_is_rejected(self, make_script, sample_file):
        scanner = SubprocessScanner(make_script("echo MALICIOUS"), timeout=5)
        assert await scanner.scan(sample_file) == ScanVerdict.REJECTED

    async def test_nonzero_exit_without_output_is_indeterminate(self, make_script, sample_file):
        scanner = SubprocessScanner(make_script("exit 1"), timeout=5)
        assert await scanner.scan(sample_file) == ScanVerdict.INDETERMINATE

    async def test_ok_with_nonzero_exit_is_indeterminate(self, make_script, sample_file):
        scanner = SubprocessScanner(make_script("echo OK; exit 3"), timeout=5)
        assert await scanner.scan(sample_file) == ScanVerdict.INDETERMINATE

    async def test_unexpected_output_is_indeterminate(self, make_script, sample_file):
        scanner = SubprocessScanner(make_script("echo 'probably fine'"), timeout=5)
        assert await scanner.scan(sample_file) == ScanVerdict.INDETERMINATE

    async def test_stderr_noise_is_ignored(self, make_script, sample_file):
        scanner = SubprocessScanner(make_script("echo warming up >&2; echo OK"), timeout=5)
        assert await scanner.scan(sample_file) == ScanVerdict.ACCEPTED

    async def test_missing_executable_is_indeterminate(self, tmp_path, sample_file):
        scanner = SubprocessScanner(tmp_path / "no-such-scanner", timeout=5)
        assert await scanner.scan(sample_file) == ScanVerdict.INDETERMINATE

    async def test_timeout_is_indeterminate(self, make_script, sample_file):
        scanner = SubprocessScanner(make_script("exec sleep 10"), timeout=0.2)
        start = time.monotonic()
        verdict = await scanner.scan(sample_file)
        assert verdict == ScanVerdict.INDETERMINATE
        assert time.monotonic() - start < 5

    async def test_timeout_kills_child_processes(self, make_script, sample_file):
        # The wrapper forks sleep, which inherits stdout.
        scanner = SubprocessScanner(make_script("sleep 6; echo OK"), timeout=0.3)
        start = time.monotonic()
        verdict = await scanner.scan(sample_file)
        assert verdict == ScanVerdict.INDETERMINATE
        assert time.monotonic() - start < 2

    async def test_receives_file_path_argument(self, make_script, sample_file, tmp_path):
        seen = tmp_path / "seen.txt"
        scanner = SubprocessScanner(make_script(f'echo "$1" > "{seen}"; echo OK'), timeout=5)
        await scanner.scan(sample_file)
        assert seen.read_text().strip() == str(sample_file)


# ------------------------------------------------------------------
# StaticScanner
# ------------------------------------------------------------------


class TestStaticScanner:
    async def test_returns_canned_verdicts(self, tmp_path):
        scanner = StaticScanner({"a.txt": ScanVerdict.ACCEPTED, "b.exe": ScanVerdict.REJECTED})
        assert await scanner.scan(tmp_path / "a.txt") == ScanVerdict.ACCEPTED
        assert await scanner.scan(tmp_path / "b.exe") == ScanVerdict.REJECTED

    async def test_unknown_name_gets_default(self, tmp_path):
        scanner = StaticScanner()
        assert await scanner.scan(tmp_path / "x.bin") == ScanVerdict.INDETERMINATE

    async def test_records_calls(self, tmp_path):
        scanner = StaticScanner(default=ScanVerdict.ACCEPTED)
        await scanner.scan(tmp_path / "a.txt")
        await scanner.scan(tmp_path / "b.txt")
        assert [p.name for p in scanner.calls] == ["a.txt", "b.txt"]
