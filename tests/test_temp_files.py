# tests/test_temp_files.py
"""Tests for transcoder/infra/temp_files.py — scoped owner-only temp artifacts."""
from __future__ import annotations

import logging
import os
import stat
from pathlib import Path
from unittest.mock import patch

import pytest

from transcoder.errors import ResourceError, ValidationError
from transcoder.infra.security import SecurityPolicy
from transcoder.infra.temp_files import TempArtifact, acquire_temp


def _mode(path: Path) -> int:
    return stat.S_IMODE(path.stat().st_mode)


class TestAcquireTemp:
    def test_creates_file_in_policy_dir(self, policy, temp_root):
        artifact = acquire_temp("arw_output_*.png", policy)
        try:
            assert artifact.path.exists()
            assert artifact.path.parent == temp_root.resolve()
            assert artifact.path.name.startswith("arw_output_")
            assert artifact.path.name.endswith(".png")
        finally:
            artifact.release()

    @pytest.mark.skipif(os.name == "nt", reason="POSIX permissions")
    def test_owner_only_permissions(self, policy):
        with acquire_temp("x_*.png", policy) as artifact:
            assert _mode(artifact.path) == 0o600

    def test_unique_names(self, policy):
        with acquire_temp("x_*.png", policy) as a, acquire_temp("x_*.png", policy) as b:
            assert a.path != b.path

    def test_owner_defaults_to_random_id(self, policy):
        with acquire_temp("x_*", policy) as a, acquire_temp("x_*", policy) as b:
            assert a.owner and b.owner
            assert a.owner != b.owner

    def test_explicit_owner(self, policy):
        with acquire_temp("x_*", policy, owner="call-1") as artifact:
            assert artifact.owner == "call-1"

    def test_missing_temp_dir(self, tmp_path):
        policy = SecurityPolicy(allowed_temp_dir=str(tmp_path / "does-not-exist"))
        with pytest.raises(ResourceError):
            acquire_temp("x_*.png", policy)

    @pytest.mark.parametrize("pattern", ["../x_*.png", "sub/x_*.png", "a*b*c"])
    def test_bad_pattern(self, policy, pattern):
        with pytest.raises(ValidationError) as exc:
            acquire_temp(pattern, policy)
        assert exc.value.field == "pattern"


class TestRelease:
    def test_release_removes_file(self, policy):
        artifact = acquire_temp("x_*.png", policy)
        artifact.release()
        assert not artifact.path.exists()
        assert artifact.released

    def test_release_is_idempotent(self, policy):
        artifact = acquire_temp("x_*.png", policy)
        artifact.release()
        artifact.release()
        assert not artifact.path.exists()

    def test_release_of_missing_file_is_ok(self, policy):
        artifact = acquire_temp("x_*.png", policy)
        artifact.path.unlink()
        artifact.release()
        assert artifact.released

    @pytest.mark.skipif(os.name == "nt", reason="POSIX permissions")
    def test_keep_leaves_file_with_owner_only_mode(self, policy):
        with acquire_temp("x_*.png", policy, keep=True) as artifact:
            artifact.write_bytes(b"data")
        assert artifact.path.exists()
        assert not artifact.released
        assert _mode(artifact.path) == 0o600
        assert artifact.path.read_bytes() == b"data"


class TestContextManager:
    def test_removed_on_normal_exit(self, policy):
        with acquire_temp("x_*.png", policy) as artifact:
            artifact.write_bytes(b"payload")
            assert artifact.read_bytes() == b"payload"
        assert not artifact.path.exists()

    def test_removed_on_error(self, policy, temp_root):
        with pytest.raises(RuntimeError):
            with acquire_temp("x_*.png", policy) as artifact:
                raise RuntimeError("converter failed")
        assert not artifact.path.exists()
        assert list(temp_root.iterdir()) == []

    def test_cleanup_failure_does_not_mask_primary_error(self, policy, caplog):
        caplog.set_level(logging.WARNING)
        artifact = acquire_temp("x_*.png", policy)
        with patch.object(Path, "unlink", side_effect=PermissionError("denied")):
            with pytest.raises(RuntimeError, match="primary"):
                with artifact:
                    raise RuntimeError("primary")
        assert "Cleanup failed" in caplog.text
        assert not artifact.released
        artifact.release()
        assert not artifact.path.exists()

    def test_cleanup_failure_on_clean_exit_raises(self, policy):
        artifact = acquire_temp("x_*.png", policy)
        with patch.object(Path, "unlink", side_effect=PermissionError("denied")):
            with pytest.raises(ResourceError):
                with artifact:
                    pass
        assert not artifact.released
        artifact.release()


class TestReadWrite:
    def test_write_replaces_content(self, policy):
        with acquire_temp("x_*.bin", policy) as artifact:
            artifact.write_bytes(b"first-long-content")
            artifact.write_bytes(b"second")
            assert artifact.read_bytes() == b"second"

    def test_read_after_release_fails(self, policy):
        artifact = acquire_temp("x_*.bin", policy)
        artifact.release()
        with pytest.raises(ResourceError):
            artifact.read_bytes()

    def test_repr(self, policy):
        with acquire_temp("x_*.bin", policy, owner="abc") as artifact:
            assert "abc" in repr(artifact)
            assert isinstance(artifact, TempArtifact)
