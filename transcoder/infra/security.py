# transcoder/infra/security.py
"""
Validation gate for everything that crosses into the filesystem or a subprocess.

Each check is independent and fails fast with a specific reason. Callers layer
them: a command name, every argument and every path are validated separately
before anything is executed, since a single unvalidated string is enough for
an injection.

Security features:
- Executable allow-list (never disabled)
- Shell metacharacter and control character rejection
- Path traversal and absolute path rejection
- Path and argument length ceilings
- Extension allow-list
- File size ceiling (default 100 MB)
- Containment check for temp directories
"""
from __future__ import annotations

import os
import re
import tempfile
from dataclasses import dataclass, field, replace
from pathlib import Path, PureWindowsPath

from transcoder.errors import SecurityError, ValidationError
from transcoder.infra.logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_COMMAND_TIMEOUT = 30.0  # seconds
MAX_FILE_SIZE = 100 * 1024 * 1024  # 100 MB
MAX_ARGUMENT_LENGTH = 4096
MAX_PATH_LENGTH = 260  # Windows MAX_PATH

ALLOWED_IMAGE_EXTENSIONS = frozenset({
    ".png", ".jpg", ".jpeg", ".webp", ".tiff", ".bmp", ".arw", ".srf", ".sr2",
})
RAW_EXTENSIONS = frozenset({".arw", ".srf", ".sr2"})

DEFAULT_ALLOWED_COMMANDS = frozenset({"darktable-cli"})

# Shell metacharacters. Nothing here is executed through a shell, but an
# argument containing these is never legitimate for the converter either.
DANGEROUS_CHARS = re.compile(r"""[;&|`'"(){}\[\]$<>]""")
CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")
TRAVERSAL_SEQUENCE = re.compile(r"\.\.[/\\]")
_PATH_SEPARATORS = re.compile(r"[/\\]")


@dataclass(frozen=True)
class SecurityPolicy:
    """
    Per-call security configuration.

    Immutable: derive variants with ``with_temp_dir`` or ``dataclasses.replace``
    instead of mutating a shared instance.
    """
    allowed_commands: frozenset[str] = DEFAULT_ALLOWED_COMMANDS
    allowed_temp_dir: str = field(default_factory=tempfile.gettempdir)
    max_file_size: int = MAX_FILE_SIZE
    command_timeout: float = DEFAULT_COMMAND_TIMEOUT
    validation_enabled: bool = True

    def __post_init__(self):
        if not isinstance(self.allowed_commands, frozenset):
            object.__setattr__(self, "allowed_commands", frozenset(self.allowed_commands))
        if self.max_file_size <= 0:
            raise ValidationError("max_file_size", self.max_file_size, "must be positive")
        if self.command_timeout <= 0:
            raise ValidationError("command_timeout", self.command_timeout, "must be positive")

    @classmethod
    def default(cls) -> "SecurityPolicy":
        """Safe built-in defaults, independent of environment settings."""
        return cls()

    def with_temp_dir(self, temp_dir: str | os.PathLike | None) -> "SecurityPolicy":
        """Copy of this policy rooted at another temp directory (None keeps the current one)."""
        if not temp_dir:
            return self
        return replace(self, allowed_temp_dir=os.fspath(temp_dir))


def get_security_policy() -> SecurityPolicy:
    """
    Build a SecurityPolicy from application settings.
    A new value is returned on every call.
    """
    from transcoder.config import settings

    return SecurityPolicy(
        allowed_commands=frozenset(settings.allowed_commands),
        allowed_temp_dir=settings.temp_dir or tempfile.gettempdir(),
        max_file_size=settings.max_file_size_bytes,
        command_timeout=settings.command_timeout_seconds,
        validation_enabled=settings.validation_enabled,
    )


def _skip_validation(policy: SecurityPolicy | None, what: str) -> bool:
    if policy is not None and not policy.validation_enabled:
        logger.warning(f"Input validation disabled by policy, skipping {what} checks")
        return True
    return False


def validate_command_name(name: str, policy: SecurityPolicy) -> None:
    """Allow-list check for an executable name. Applies even when validation is disabled."""
    if not isinstance(name, str) or not name:
        raise ValidationError("command", name, "must be a non-empty string")

    if name not in policy.allowed_commands:
        logger.warning(f"Rejected command not in allow-list: {name!r}")
        raise SecurityError("command_not_allowed", f"command not allowed: {name}")

    if DANGEROUS_CHARS.search(name) or CONTROL_CHARS.search(name):
        raise SecurityError("dangerous_characters", f"command contains dangerous characters: {name}")


def validate_arguments(args: list[str] | tuple[str, ...], policy: SecurityPolicy | None = None) -> None:
    """Reject any argument with shell metacharacters, traversal tokens or excessive length."""
    if _skip_validation(policy, "argument"):
        return

    for index, arg in enumerate(args):
        if not isinstance(arg, str):
            raise ValidationError(f"args[{index}]", arg, "arguments must be strings")

        if DANGEROUS_CHARS.search(arg) or CONTROL_CHARS.search(arg):
            raise SecurityError("dangerous_characters", f"argument contains dangerous characters: {arg!r}")

        if TRAVERSAL_SEQUENCE.search(arg) or ".." in _PATH_SEPARATORS.split(arg):
            raise SecurityError("path_traversal", f"argument contains path traversal sequences: {arg!r}")

        # Length check last so the message can stay short
        if len(arg) > MAX_ARGUMENT_LENGTH:
            raise SecurityError(
                "argument_too_long",
                f"argument {index} is {len(arg)} characters (max: {MAX_ARGUMENT_LENGTH})",
            )


def validate_path(
    path: str | os.PathLike,
    policy: SecurityPolicy | None = None,
    allow_absolute: bool = False,
) -> str:
    """
    Normalize and validate a filesystem path.

    Args:
        path: Caller-supplied path
        policy: Security policy (validation may be disabled there)
        allow_absolute: Accept absolute paths (never for sandboxed inputs)

    Returns:
        The normalized path

    Raises:
        ValidationError: If the path is empty or not a string/PathLike
        SecurityError: On traversal, absolute path, dangerous characters or excessive length
    """
    if not isinstance(path, (str, os.PathLike)):
        raise ValidationError("path", path, "must be a string or path-like object")

    raw = os.fspath(path)
    if not isinstance(raw, str) or not raw.strip():
        raise ValidationError("path", raw, "must be a non-empty string")

    if _skip_validation(policy, "path"):
        return os.path.normpath(raw)

    if CONTROL_CHARS.search(raw):
        raise SecurityError("dangerous_characters", f"path contains control characters: {raw!r}")

    # Any '..' component is rejected, even one that normalization would fold away
    if ".." in _PATH_SEPARATORS.split(raw):
        logger.warning(f"Path traversal attempt rejected: {raw!r}")
        raise SecurityError("path_traversal", f"path traversal detected: {raw}")

    clean = os.path.normpath(raw)

    if not allow_absolute and (os.path.isabs(clean) or PureWindowsPath(clean).anchor):
        raise SecurityError("absolute_path", f"absolute paths not allowed: {raw}")

    if DANGEROUS_CHARS.search(clean) or TRAVERSAL_SEQUENCE.search(clean):
        raise SecurityError("dangerous_characters", f"path contains dangerous characters: {raw}")

    if len(clean) > MAX_PATH_LENGTH:
        raise SecurityError("path_too_long", f"path is {len(clean)} characters (max: {MAX_PATH_LENGTH})")

    return clean


def validate_extension(path: str | os.PathLike, policy: SecurityPolicy | None = None) -> str:
    """Check the extension against the allow-list. Returns the lowercased extension."""
    ext = os.path.splitext(os.fspath(path))[1].lower()
    if _skip_validation(policy, "extension"):
        return ext

    if ext not in ALLOWED_IMAGE_EXTENSIONS:
        raise SecurityError("extension_not_allowed", f"file extension not allowed: {ext or '(none)'}")
    return ext


def is_raw_extension(path: str | os.PathLike) -> bool:
    """True for camera RAW files that need conversion before decoding"""
    return os.path.splitext(os.fspath(path))[1].lower() in RAW_EXTENSIONS


def validate_size(path: str | os.PathLike, max_bytes: int = MAX_FILE_SIZE) -> int:
    """
    Check a file against the size ceiling.

    Returns:
        File size in bytes

    Raises:
        ValidationError: If the file does not exist or is not a regular file
        SecurityError: If the file is larger than max_bytes
    """
    try:
        stat = os.stat(path)
    except FileNotFoundError:
        raise ValidationError("path", os.fspath(path), "file does not exist")
    except OSError as exc:
        raise ValidationError("path", os.fspath(path), f"cannot access file: {exc}") from exc

    if not os.path.isfile(path):
        raise ValidationError("path", os.fspath(path), "not a regular file")

    if stat.st_size > max_bytes:
        raise SecurityError(
            "size_validation",
            f"file too large: {stat.st_size} bytes (max: {max_bytes})",
        )
    return stat.st_size


def validate_bytes_size(data: bytes, max_bytes: int = MAX_FILE_SIZE) -> None:
    """Size ceiling for in-memory input (no path to validate)"""
    if len(data) > max_bytes:
        raise SecurityError(
            "size_validation",
            f"input data too large: {len(data)} bytes (max: {max_bytes})",
        )


def validate_input_file(path: str | os.PathLike, policy: SecurityPolicy) -> str:
    """
    Full validation chain for a path input: path, extension, size.
    Returns the normalized path.
    """
    clean = validate_path(path, policy)
    validate_extension(clean, policy)
    validate_size(clean, policy.max_file_size)
    return clean


def validate_within_directory(path: str | os.PathLike, root: str | os.PathLike) -> Path:
    """
    Ensure ``path`` resolves inside ``root`` (symlinks followed).
    Returns the resolved path.
    """
    resolved = Path(path).resolve()
    resolved_root = Path(root).resolve()
    if resolved != resolved_root and resolved_root not in resolved.parents:
        raise SecurityError(
            "directory_escape",
            f"path {resolved} is outside allowed directory {resolved_root}",
        )
    return resolved
