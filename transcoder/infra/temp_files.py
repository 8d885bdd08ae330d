# transcoder/infra/temp_files.py
"""
Scoped temporary artifacts with owner-only permissions.

Usage:
    with acquire_temp("arw_output_*.png", policy) as artifact:
        run_converter(output=artifact.path)
        data = artifact.read_bytes()
    # file is gone here, whatever happened inside the block

A cleanup failure after a primary error is logged and the primary error
propagates. A cleanup failure on a clean exit raises ResourceError.
"""
from __future__ import annotations

import os
import tempfile
import uuid
from pathlib import Path

from transcoder.errors import ResourceError, SecurityError, ValidationError
from transcoder.infra.logging_config import get_logger
from transcoder.infra.security import SecurityPolicy, validate_within_directory

logger = get_logger(__name__)

OWNER_ONLY = 0o600


def _split_pattern(pattern: str) -> tuple[str, str]:
    """'arw_output_*.png' -> ('arw_output_', '.png'); no '*' means prefix only."""
    if os.sep in pattern or "/" in pattern or "\\" in pattern:
        raise ValidationError("pattern", pattern, "must not contain path separators")
    if pattern.count("*") > 1:
        raise ValidationError("pattern", pattern, "at most one '*' placeholder allowed")
    prefix, _, suffix = pattern.partition("*")
    return prefix, suffix


class TempArtifact:
    """A temporary file owned by one call."""

    def __init__(self, path: Path, owner: str, keep: bool = False):
        self.path = path
        self.owner = owner
        self.keep = keep
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def write_bytes(self, data: bytes) -> None:
        """Write data and flush it to disk."""
        try:
            fd = os.open(self.path, os.O_WRONLY | os.O_TRUNC)
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
        except OSError as exc:
            raise ResourceError(f"failed to write temp file {self.path}: {exc}") from exc

    def read_bytes(self) -> bytes:
        try:
            return self.path.read_bytes()
        except OSError as exc:
            raise ResourceError(f"failed to read temp file {self.path}: {exc}") from exc

    def release(self) -> None:
        """
        Remove the file unless ``keep`` is set.
        Idempotent; an already-missing file is not an error.
        """
        if self.keep or self._released:
            return
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            raise ResourceError(f"failed to cleanup file {self.path}: {exc}") from exc
        self._released = True
        logger.debug(f"Released temp artifact {self.path.name} (owner={self.owner})")

    def __enter__(self) -> "TempArtifact":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc is None:
            self.release()
            return
        # Never let a cleanup failure mask the primary error
        try:
            self.release()
        except ResourceError as cleanup_error:
            logger.warning(f"Cleanup failed after error ({type(exc).__name__}): {cleanup_error}")

    def __repr__(self) -> str:
        return f"TempArtifact(path={str(self.path)!r}, owner={self.owner!r}, keep={self.keep})"


def acquire_temp(
    pattern: str,
    policy: SecurityPolicy,
    keep: bool = False,
    owner: str | None = None,
) -> TempArtifact:
    """
    Create an empty owner-only temp file inside the policy's temp directory.

    Args:
        pattern: File name pattern, '*' is replaced by a random string
        policy: Security policy; its allowed_temp_dir is the only place files are created
        keep: Suppress release (diagnostics only, permissions are unchanged)
        owner: Identifier of the owning call (random if omitted)

    Returns:
        TempArtifact, usable as a context manager

    Raises:
        ValidationError: Bad pattern
        ResourceError: Temp directory missing or file creation failed
        SecurityError: Created file escaped the allowed directory
    """
    prefix, suffix = _split_pattern(pattern)
    temp_dir = Path(policy.allowed_temp_dir)

    if not temp_dir.is_dir():
        raise ResourceError(f"temp directory does not exist: {temp_dir}")

    try:
        # mkstemp creates the file with O_EXCL and mode 0600
        fd, name = tempfile.mkstemp(prefix=prefix, suffix=suffix, dir=temp_dir)
    except OSError as exc:
        raise ResourceError(f"failed to create temp file in {temp_dir}: {exc}") from exc

    try:
        os.close(fd)
        os.chmod(name, OWNER_ONLY)
        path = validate_within_directory(name, temp_dir)
    except (OSError, SecurityError) as exc:
        try:
            os.remove(name)
        except OSError as cleanup_error:
            logger.warning(f"Failed to remove rejected temp file {name}: {cleanup_error}")
        if isinstance(exc, SecurityError):
            raise
        raise ResourceError(f"failed to set secure permissions on {name}: {exc}") from exc

    artifact = TempArtifact(path, owner=owner or uuid.uuid4().hex[:12], keep=keep)
    logger.debug(f"Acquired temp artifact {path.name} (owner={artifact.owner}, keep={keep})")
    return artifact
