"""Tests for owner-only access enforcement."""

import stat

from datrain.intake.privacy import (
    CommandEnforcer,
    NullEnforcer,
    OwnerOnlyEnforcer,
    build_enforcer,
)


def _mode(path):
    return stat.S_IMODE(path.stat().st_mode)


class TestOwnerOnlyEnforcer:
    def test_file_becomes_0600(self, tmp_path):
        f = tmp_path / "a.txt"
        f.write_bytes(b"data")
        f.chmod(0o644)
        assert OwnerOnlyEnforcer().protect(f) is True
        assert _mode(f) == 0o600

    def test_directory_becomes_0700(self, tmp_path):
        d = tmp_path / "cache"
        d.mkdir()
        d.chmod(0o755)
        assert OwnerOnlyEnforcer().protect(d) is True
        assert _mode(d) == 0o700

    def test_missing_path_returns_false(self, tmp_path):
        assert OwnerOnlyEnforcer().protect(tmp_path / "nope") is False


class TestCommandEnforcer:
    def test_success_passes_path(self, make_script, tmp_path):
        seen = tmp_path / "seen.txt"
        target = tmp_path / "a.txt"
        target.write_bytes(b"x")
        enforcer = CommandEnforcer(str(make_script(f'echo "$1" > "{seen}"', name="acl.sh")))

        assert enforcer.protect(target) is True
        assert seen.read_text().strip() == str(target)

    def test_nonzero_exit_returns_false(self, make_script, tmp_path):
        enforcer = CommandEnforcer(str(make_script("echo denied >&2; exit 5", name="acl.sh")))
        assert enforcer.protect(tmp_path) is False

    def test_missing_command_returns_false(self, tmp_path):
        enforcer = CommandEnforcer(str(tmp_path / "no-such-tool"))
        assert enforcer.protect(tmp_path) is False

    def test_timeout_returns_false(self, make_script, tmp_path):
        enforcer = CommandEnforcer(str(make_script("exec sleep 10", name="acl.sh")), timeout=0.2)
        assert enforcer.protect(tmp_path) is False


class TestBuildEnforcer:
    def test_default_is_owner_only(self):
        assert isinstance(build_enforcer(None), OwnerOnlyEnforcer)

    def test_command_wins(self):
        assert isinstance(build_enforcer("/usr/local/bin/acl"), CommandEnforcer)

    def test_disabled(self, tmp_path):
        enforcer = build_enforcer("/usr/local/bin/acl", enabled=False)
        assert isinstance(enforcer, NullEnforcer)
        assert enforcer.protect(tmp_path) is True
