# transcoder/errors.py
"""
Typed errors for the transcoding pipeline.

Every failure raised by this package is a ``TranscodeError`` subtype so
callers can catch the whole family at once, or pick the specific kind:

- ``ValidationError``     malformed caller input (never retried)
- ``SecurityError``       a policy boundary was violated
- ``ExternalToolError``   the RAW converter failed, classified by ``kind``
- ``CodecError``          decode/encode of a supported format failed
- ``ResourceError``       temp artifact create/write/sync/cleanup failed
- ``OperationCancelledError``  caller asked the encode loop to stop
"""
from __future__ import annotations

from enum import Enum


class TranscodeError(Exception):
    """Base class for all transcoding errors."""


class ValidationError(TranscodeError):
    """Invalid caller-supplied value."""

    def __init__(self, field: str, value: object, reason: str):
        self.field = field
        self.value = value
        self.reason = reason
        super().__init__(
            f"input validation failed for field '{field}': {reason} (value: {value!r})"
        )


class SecurityError(TranscodeError):
    """Operation violated a security policy boundary."""

    def __init__(self, type: str, message: str, cause: BaseException | None = None):
        self.type = type
        self.message = message
        self.cause = cause
        text = f"security error [{type}]: {message}"
        if cause is not None:
            text = f"{text}: {cause}"
        super().__init__(text)


class ToolErrorKind(str, Enum):
    """Why the external converter failed"""
    TIMEOUT = "timeout"
    NONZERO_EXIT = "nonzero_exit"
    UNAVAILABLE = "unavailable"
    INVALID_OUTPUT = "invalid_output"


class ExternalToolError(TranscodeError):
    """External converter failed (not retried here)."""

    def __init__(
        self,
        kind: ToolErrorKind,
        message: str,
        returncode: int | None = None,
        stderr: str = "",
    ):
        self.kind = kind
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(f"external tool error [{kind.value}]: {message}")


class CodecError(TranscodeError):
    """Decoding or encoding a supported image format failed."""


class ResourceError(TranscodeError):
    """Temporary artifact creation, write, sync or cleanup failed."""


class OperationCancelledError(TranscodeError):
    """Cancellation was requested between encode iterations."""
