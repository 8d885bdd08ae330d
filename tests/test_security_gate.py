# tests/test_security_gate.py
"""Tests for transcoder/infra/security.py — validation predicates and policy."""
from __future__ import annotations

import dataclasses
import os

import pytest

from transcoder.errors import SecurityError, ValidationError
from transcoder.infra.security import (
    SecurityPolicy,
    get_security_policy,
    is_raw_extension,
    validate_arguments,
    validate_bytes_size,
    validate_command_name,
    validate_extension,
    validate_input_file,
    validate_path,
    validate_size,
    validate_within_directory,
)


# ============================================================================
# SecurityPolicy
# ============================================================================

class TestSecurityPolicy:
    def test_default_values(self):
        policy = SecurityPolicy.default()
        assert policy.allowed_commands == frozenset({"darktable-cli"})
        assert policy.max_file_size == 100 * 1024 * 1024
        assert policy.command_timeout == 30.0
        assert policy.validation_enabled is True
        assert os.path.isdir(policy.allowed_temp_dir)

    def test_is_immutable(self):
        policy = SecurityPolicy.default()
        with pytest.raises(dataclasses.FrozenInstanceError):
            policy.max_file_size = 1

    def test_default_returns_new_value_each_time(self):
        assert SecurityPolicy.default() is not SecurityPolicy.default()

    def test_commands_normalized_to_frozenset(self):
        policy = SecurityPolicy(allowed_commands={"darktable-cli", "sleep"})
        assert isinstance(policy.allowed_commands, frozenset)

    def test_with_temp_dir_copies(self, tmp_path):
        policy = SecurityPolicy.default()
        other = policy.with_temp_dir(tmp_path)
        assert other.allowed_temp_dir == str(tmp_path)
        assert policy.allowed_temp_dir != str(tmp_path)

    def test_with_temp_dir_none_keeps_policy(self):
        policy = SecurityPolicy.default()
        assert policy.with_temp_dir(None) is policy

    def test_rejects_nonpositive_limits(self):
        with pytest.raises(ValidationError) as exc:
            SecurityPolicy(max_file_size=0)
        assert exc.value.field == "max_file_size"
        with pytest.raises(ValidationError):
            SecurityPolicy(command_timeout=0)

    def test_from_settings(self, monkeypatch, tmp_path):
        monkeypatch.setattr("transcoder.config.settings.command_timeout_seconds", 5.0)
        monkeypatch.setattr("transcoder.config.settings.max_file_size_mb", 2)
        monkeypatch.setattr("transcoder.config.settings.temp_dir", str(tmp_path))
        policy = get_security_policy()
        assert policy.command_timeout == 5.0
        assert policy.max_file_size == 2 * 1024 * 1024
        assert policy.allowed_temp_dir == str(tmp_path)


# ============================================================================
# Command names
# ============================================================================

class TestValidateCommandName:
    def test_allow_listed_command(self):
        validate_command_name("darktable-cli", SecurityPolicy.default())

    def test_injection_attempt_rejected(self):
        with pytest.raises(SecurityError) as exc:
            validate_command_name("darktable-cli; rm -rf /", SecurityPolicy.default())
        assert exc.value.type == "command_not_allowed"

    def test_unknown_command_rejected(self):
        with pytest.raises(SecurityError):
            validate_command_name("rm", SecurityPolicy.default())

    def test_metacharacters_rejected_even_if_allow_listed(self):
        policy = SecurityPolicy(allowed_commands={"tool|tee"})
        with pytest.raises(SecurityError) as exc:
            validate_command_name("tool|tee", policy)
        assert exc.value.type == "dangerous_characters"

    def test_allow_list_enforced_with_validation_disabled(self):
        policy = SecurityPolicy(validation_enabled=False)
        with pytest.raises(SecurityError):
            validate_command_name("rm", policy)

    def test_empty_name(self):
        with pytest.raises(ValidationError):
            validate_command_name("", SecurityPolicy.default())


# ============================================================================
# Arguments
# ============================================================================

class TestValidateArguments:
    def test_safe_arguments(self):
        validate_arguments([
            "photo.arw",
            "/tmp/arw_output_abc.png",
            "--conf",
            "plugins/imageio/format/png/bpp=16",
        ])

    @pytest.mark.parametrize("arg", [
        "$(whoami)",
        "a;b",
        "a && b",
        "`id`",
        "x > /etc/passwd",
        "it's",
        "line\nbreak",
        "nul\x00byte",
    ])
    def test_dangerous_characters(self, arg):
        with pytest.raises(SecurityError) as exc:
            validate_arguments([arg])
        assert exc.value.type == "dangerous_characters"

    @pytest.mark.parametrize("arg", ["../etc/passwd", "a/../b", "..\\windows", ".."])
    def test_traversal(self, arg):
        with pytest.raises(SecurityError) as exc:
            validate_arguments([arg])
        assert exc.value.type == "path_traversal"

    def test_too_long(self):
        validate_arguments(["a" * 4096])
        with pytest.raises(SecurityError) as exc:
            validate_arguments(["a" * 4097])
        assert exc.value.type == "argument_too_long"

    def test_non_string_argument(self):
        with pytest.raises(ValidationError) as exc:
            validate_arguments(["ok", 42])
        assert exc.value.field == "args[1]"

    def test_skipped_when_validation_disabled(self):
        validate_arguments(["$(whoami)"], SecurityPolicy(validation_enabled=False))


# ============================================================================
# Paths
# ============================================================================

class TestValidatePath:
    def test_relative_path_ok(self):
        assert validate_path("images/photo.png") == os.path.normpath("images/photo.png")

    def test_normalizes(self):
        assert validate_path("images/./photo.png") == os.path.normpath("images/photo.png")

    def test_traversal_rejected(self):
        with pytest.raises(SecurityError) as exc:
            validate_path("a/../../etc/passwd")
        assert exc.value.type == "path_traversal"

    def test_folded_traversal_rejected(self):
        with pytest.raises(SecurityError):
            validate_path("a/../b.png")

    def test_absolute_rejected(self):
        with pytest.raises(SecurityError) as exc:
            validate_path("/etc/passwd")
        assert exc.value.type == "absolute_path"

    def test_windows_drive_rejected(self):
        with pytest.raises(SecurityError) as exc:
            validate_path("C:\\Windows\\photo.png")
        assert exc.value.type == "absolute_path"

    @pytest.mark.skipif(os.name == "nt", reason="POSIX absolute path")
    def test_absolute_allowed_when_requested(self):
        assert validate_path("/srv/out/photo.png", allow_absolute=True) == "/srv/out/photo.png"

    def test_traversal_rejected_even_when_absolute_allowed(self):
        with pytest.raises(SecurityError):
            validate_path("/srv/out/../../etc/passwd", allow_absolute=True)

    @pytest.mark.parametrize("path", ["photo;rm.png", "$(id).png", "a|b.png", "photo\x00.png"])
    def test_dangerous_characters(self, path):
        with pytest.raises(SecurityError) as exc:
            validate_path(path)
        assert exc.value.type == "dangerous_characters"

    def test_too_long(self):
        validate_path("a" * 260)
        with pytest.raises(SecurityError) as exc:
            validate_path("a" * 261)
        assert exc.value.type == "path_too_long"

    @pytest.mark.parametrize("path", ["", "   "])
    def test_empty(self, path):
        with pytest.raises(ValidationError) as exc:
            validate_path(path)
        assert exc.value.field == "path"

    def test_wrong_type(self):
        with pytest.raises(ValidationError):
            validate_path(123)

    def test_accepts_pathlike(self):
        from pathlib import PurePosixPath
        assert validate_path(PurePosixPath("images/photo.png")) == os.path.normpath("images/photo.png")

    def test_validation_disabled(self):
        policy = SecurityPolicy(validation_enabled=False)
        assert validate_path("a/../b.png", policy) == "b.png"


# ============================================================================
# Extensions / size
# ============================================================================

class TestValidateExtension:
    @pytest.mark.parametrize("path", [
        "a.png", "a.jpg", "a.jpeg", "a.webp", "a.tiff", "a.bmp", "a.arw", "a.srf", "a.sr2",
    ])
    def test_allowed(self, path):
        validate_extension(path)

    def test_case_insensitive(self):
        assert validate_extension("photo.PNG") == ".png"

    @pytest.mark.parametrize("path", ["photo.gif", "script.sh", "noext", "photo.png.exe"])
    def test_rejected(self, path):
        with pytest.raises(SecurityError) as exc:
            validate_extension(path)
        assert exc.value.type == "extension_not_allowed"

    def test_raw_extensions(self):
        assert is_raw_extension("photo.ARW")
        assert is_raw_extension("photo.sr2")
        assert not is_raw_extension("photo.tiff")


class TestValidateSize:
    def test_under_limit(self, tmp_path):
        path = tmp_path / "a.png"
        path.write_bytes(b"x" * 10)
        assert validate_size(path, 100) == 10

    def test_over_limit(self, tmp_path):
        path = tmp_path / "a.png"
        path.write_bytes(b"x" * 10)
        with pytest.raises(SecurityError) as exc:
            validate_size(path, 5)
        assert exc.value.type == "size_validation"

    def test_missing_file(self, tmp_path):
        with pytest.raises(ValidationError) as exc:
            validate_size(tmp_path / "missing.png")
        assert exc.value.field == "path"

    def test_directory(self, tmp_path):
        with pytest.raises(ValidationError):
            validate_size(tmp_path)

    def test_bytes_size(self):
        validate_bytes_size(b"x" * 10, 10)
        with pytest.raises(SecurityError):
            validate_bytes_size(b"x" * 11, 10)


class TestValidateInputFile:
    def test_raw_file_under_ceiling(self, workdir, policy):
        # 40 MB sparse file, well under the 100 MB ceiling
        with open("photo.arw", "wb") as fh:
            fh.truncate(40 * 1024 * 1024)
        assert validate_input_file("photo.arw", policy) == "photo.arw"

    def test_over_ceiling(self, workdir, temp_root):
        with open("photo.png", "wb") as fh:
            fh.truncate(2048)
        policy = SecurityPolicy(allowed_temp_dir=str(temp_root), max_file_size=1024)
        with pytest.raises(SecurityError):
            validate_input_file("photo.png", policy)

    def test_bad_extension_before_stat(self, workdir, policy):
        # extension check fails before the missing file is noticed
        with pytest.raises(SecurityError):
            validate_input_file("missing.gif", policy)


class TestValidateWithinDirectory:
    def test_inside(self, tmp_path):
        inner = tmp_path / "file.png"
        inner.write_bytes(b"")
        assert validate_within_directory(inner, tmp_path) == inner.resolve()

    def test_outside(self, tmp_path):
        root = tmp_path / "root"
        root.mkdir()
        with pytest.raises(SecurityError) as exc:
            validate_within_directory(tmp_path / "other.png", root)
        assert exc.value.type == "directory_escape"

    def test_prefix_sibling_is_outside(self, tmp_path):
        root = tmp_path / "root"
        root.mkdir()
        with pytest.raises(SecurityError):
            validate_within_directory(tmp_path / "root2" / "x.png", root)
