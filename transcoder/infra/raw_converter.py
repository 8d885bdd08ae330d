# transcoder/infra/raw_converter.py
"""
RAW sensor file -> PNG conversion through darktable-cli.

The converter is the only external executable this package ever runs. The
argument vector has a fixed shape and is built solely from enumerated option
values mapped through static tables; caller strings never reach it except
for the validated input path. No shell is involved.

Failure kinds (ExternalToolError.kind):
- UNAVAILABLE     tool not installed / not allow-listed (probed before running)
- TIMEOUT         wall-clock limit hit, the child is killed
- NONZERO_EXIT    tool ran and failed
- INVALID_OUTPUT  tool "succeeded" but produced nothing usable

Single attempt, no retries.
"""
from __future__ import annotations

import asyncio
import shutil
import subprocess
import uuid
from dataclasses import dataclass
from pathlib import Path

from transcoder.errors import CodecError, ExternalToolError, SecurityError, ToolErrorKind, ValidationError
from transcoder.infra.logging_config import LogContext, get_logger
from transcoder.infra.security import (
    SecurityPolicy,
    get_security_policy,
    is_raw_extension,
    validate_arguments,
    validate_command_name,
    validate_input_file,
)
from transcoder.infra.temp_files import acquire_temp

logger = get_logger(__name__)

# Static option -> darktable value tables. Only these values can reach argv.
COLOR_SPACE_CODES = {
    "sRGB": "2",      # REC.709
    "AdobeRGB": "1",
    "ProPhoto": "3",
}
WHITE_BALANCE_MODES = {
    "camera": "camera",
    "auto": "auto",
    "manual": "manual",
}
ALLOWED_BITNESS = (8, 16)

_STDERR_TAIL = 2000

# Best-effort header sniff, not a container parser
RAW_HEADER_MARKERS = (
    b"ARW",
    b"SONY",
    b"II*\x00",  # little-endian TIFF container
    b"MM\x00*",  # big-endian TIFF container
    b"\x00\x00\x00\x18FTYP",
)
RAW_HEADER_BYTES = 512


@dataclass
class RawConversionOptions:
    """Options for RAW conversion"""
    bitness: int = 16
    compression: int = 6
    color_space: str = "sRGB"
    white_balance: str = "camera"
    # Accepted for API compatibility; darktable applies its own defaults
    exposure: float = 0.0
    contrast: float = 0.0
    saturation: float = 0.0
    temp_dir: str | None = None  # None = policy temp dir
    keep_temp: bool = False

    def validate(self) -> None:
        """Raise ValidationError naming the first offending field."""
        if isinstance(self.bitness, bool) or self.bitness not in ALLOWED_BITNESS:
            raise ValidationError("bitness", self.bitness, "must be 8 or 16")

        if (
            isinstance(self.compression, bool)
            or not isinstance(self.compression, int)
            or not 0 <= self.compression <= 9
        ):
            raise ValidationError("compression", self.compression, "must be between 0 and 9")

        if self.color_space not in COLOR_SPACE_CODES:
            raise ValidationError("color_space", self.color_space, "must be sRGB, AdobeRGB, or ProPhoto")

        if self.white_balance not in WHITE_BALANCE_MODES:
            raise ValidationError("white_balance", self.white_balance, "must be camera, auto, or manual")

        for name in ("exposure", "contrast", "saturation"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValidationError(name, value, "must be a number")


def _default_command() -> str:
    from transcoder.config import settings

    return settings.raw_converter_command


def is_converter_available(command: str, policy: SecurityPolicy) -> bool:
    """Availability probe: allow-listed and found on PATH"""
    return command in policy.allowed_commands and shutil.which(command) is not None


def build_converter_args(input_path: str | Path, output_path: str | Path, options: RawConversionOptions) -> list[str]:
    """
    Build the darktable-cli argument vector.

    Shape: <input> <output> --hq true --core (--conf key=value)...
    Everything after --core is passed to darktable's core.
    """
    options.validate()

    return [
        str(input_path),
        str(output_path),
        "--hq", "true",
        "--core",
        "--conf", f"plugins/imageio/format/png/bpp={options.bitness}",
        "--conf", f"plugins/imageio/format/png/compression={options.compression}",
        "--conf", f"plugins/lighttable/export/colorspace={COLOR_SPACE_CODES[options.color_space]}",
        "--conf", f"plugins/lighttable/export/wb={WHITE_BALANCE_MODES[options.white_balance]}",
        "--conf", "plugins/lighttable/export/overwrite=true",
    ]


def _stderr_tail(stderr: bytes | None) -> str:
    if not stderr:
        return ""
    return stderr.decode("utf-8", errors="replace")[-_STDERR_TAIL:].strip()


def run_allowed_command(
    name: str,
    args: list[str],
    policy: SecurityPolicy,
    cwd: str | Path | None = None,
) -> subprocess.CompletedProcess:
    """
    Execute an allow-listed command without a shell, under the policy timeout.

    Raises:
        SecurityError: Command not allow-listed or arguments unsafe
        ExternalToolError: Unavailable, timed out, or exited nonzero
    """
    validate_command_name(name, policy)
    validate_arguments(args, policy)

    workdir = cwd or policy.allowed_temp_dir
    logger.debug(f"Running {name} with {len(args)} args (cwd={workdir}, timeout={policy.command_timeout}s)")

    try:
        result = subprocess.run(
            [name, *args],
            cwd=workdir,
            stdin=subprocess.DEVNULL,
            capture_output=True,
            timeout=policy.command_timeout,
            check=False,
            shell=False,
        )
    except subprocess.TimeoutExpired as exc:
        # subprocess.run kills the child before re-raising
        logger.warning(f"{name} timed out after {policy.command_timeout}s")
        raise ExternalToolError(
            ToolErrorKind.TIMEOUT,
            f"{name} timed out after {policy.command_timeout}s",
            stderr=_stderr_tail(exc.stderr),
        ) from exc
    except OSError as exc:
        raise ExternalToolError(ToolErrorKind.UNAVAILABLE, f"failed to start {name}: {exc}") from exc

    if result.returncode != 0:
        stderr = _stderr_tail(result.stderr)
        logger.warning(f"{name} exited with code {result.returncode}: {stderr[:200]}")
        raise ExternalToolError(
            ToolErrorKind.NONZERO_EXIT,
            f"{name} exited with code {result.returncode}",
            returncode=result.returncode,
            stderr=stderr,
        )
    return result


async def _kill_and_reap(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
    await proc.wait()


async def run_allowed_command_async(
    name: str,
    args: list[str],
    policy: SecurityPolicy,
    cwd: str | Path | None = None,
) -> tuple[int, bytes, bytes]:
    """
    Async variant of run_allowed_command.

    Timeout and task cancellation both kill the subprocess before propagating.

    Returns:
        (returncode, stdout, stderr) for a zero exit
    """
    validate_command_name(name, policy)
    validate_arguments(args, policy)

    try:
        proc = await asyncio.create_subprocess_exec(
            name,
            *args,
            cwd=cwd or policy.allowed_temp_dir,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        raise ExternalToolError(ToolErrorKind.UNAVAILABLE, f"failed to start {name}: {exc}") from exc

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=policy.command_timeout)
    except asyncio.TimeoutError as exc:
        await _kill_and_reap(proc)
        logger.warning(f"{name} timed out after {policy.command_timeout}s")
        raise ExternalToolError(
            ToolErrorKind.TIMEOUT,
            f"{name} timed out after {policy.command_timeout}s",
        ) from exc
    except asyncio.CancelledError:
        await _kill_and_reap(proc)
        logger.info(f"{name} cancelled, subprocess terminated")
        raise

    if proc.returncode != 0:
        tail = _stderr_tail(stderr)
        raise ExternalToolError(
            ToolErrorKind.NONZERO_EXIT,
            f"{name} exited with code {proc.returncode}",
            returncode=proc.returncode,
            stderr=tail,
        )
    return proc.returncode, stdout, stderr


def _prepare(
    input_path: str | Path,
    options: RawConversionOptions | None,
    policy: SecurityPolicy | None,
    command: str | None,
) -> tuple[RawConversionOptions, SecurityPolicy, str, Path]:
    """Every precondition that must hold before a subprocess is spawned."""
    options = options or RawConversionOptions()
    options.validate()

    policy = (policy or get_security_policy()).with_temp_dir(options.temp_dir)
    command = command or _default_command()

    clean = validate_input_file(input_path, policy)
    if not is_raw_extension(clean):
        raise ValidationError("path", str(input_path), "expected a RAW file (.arw, .srf, .sr2)")

    if not is_converter_available(command, policy):
        raise ExternalToolError(
            ToolErrorKind.UNAVAILABLE,
            f"{command} is not available (not installed or not allow-listed)",
        )

    # The subprocess runs in the temp dir, so hand it an absolute input path
    return options, policy, command, Path(clean).resolve()


def _check_output(data: bytes, policy: SecurityPolicy, command: str) -> bytes:
    if not data:
        raise ExternalToolError(ToolErrorKind.INVALID_OUTPUT, f"{command} produced an empty output file")
    if len(data) > policy.max_file_size:
        raise SecurityError("size_validation", f"output PNG too large: {len(data)} bytes")
    return data


def convert_raw(
    input_path: str | Path,
    options: RawConversionOptions | None = None,
    policy: SecurityPolicy | None = None,
    command: str | None = None,
) -> bytes:
    """
    Convert a RAW file to PNG bytes.

    Args:
        input_path: Relative path to a .arw/.srf/.sr2 file
        options: Conversion options (defaults: 16 bit, compression 6, sRGB, camera WB)
        policy: Security policy (defaults from settings)
        command: Converter executable (defaults to settings.raw_converter_command)

    Returns:
        PNG bytes

    Raises:
        ValidationError: Bad option or input path
        SecurityError: Input/argument/command rejected, or oversized output
        ExternalToolError: Converter unavailable, timed out, failed or produced nothing
        ResourceError: Temp output could not be created, read or removed
    """
    options, policy, command, source = _prepare(input_path, options, policy, command)
    call_id = uuid.uuid4().hex[:12]
    log = LogContext(logger, call_id=call_id, operation="convert_raw", source=str(source))
    log.info(
        f"Converting RAW: bitness={options.bitness}, compression={options.compression}, "
        f"color_space={options.color_space}, wb={options.white_balance}"
    )

    with acquire_temp("arw_output_*.png", policy, keep=options.keep_temp, owner=call_id) as artifact:
        args = build_converter_args(source, artifact.path, options)
        run_allowed_command(command, args, policy)
        data = artifact.read_bytes()

    data = _check_output(data, policy, command)
    log.info(f"RAW conversion complete: {len(data)} bytes")
    return data


async def convert_raw_async(
    input_path: str | Path,
    options: RawConversionOptions | None = None,
    policy: SecurityPolicy | None = None,
    command: str | None = None,
) -> bytes:
    """Same contract as convert_raw; cancelling the task kills the converter."""
    options, policy, command, source = _prepare(input_path, options, policy, command)
    call_id = uuid.uuid4().hex[:12]
    log = LogContext(logger, call_id=call_id, operation="convert_raw_async", source=str(source))

    with acquire_temp("arw_output_*.png", policy, keep=options.keep_temp, owner=call_id) as artifact:
        args = build_converter_args(source, artifact.path, options)
        await run_allowed_command_async(command, args, policy)
        data = artifact.read_bytes()

    data = _check_output(data, policy, command)
    log.info(f"RAW conversion complete: {len(data)} bytes")
    return data


def validate_raw_file(path: str | Path, policy: SecurityPolicy | None = None) -> None:
    """
    Best-effort check that a file looks like a Sony RAW file.

    Only sniffs the first 512 bytes for known markers; a pass does not
    guarantee the converter will accept the file.

    Raises:
        ValidationError: Empty file or non-RAW extension
        SecurityError: Path/extension/size rejected
        CodecError: No RAW marker found in the header
    """
    policy = policy or get_security_policy()
    clean = validate_input_file(path, policy)

    if not is_raw_extension(clean):
        raise ValidationError("path", str(path), "unsupported extension (expected .arw, .srf, or .sr2)")

    try:
        with open(clean, "rb") as fh:
            header = fh.read(RAW_HEADER_BYTES)
    except OSError as exc:
        raise ValidationError("path", str(path), f"failed to read file header: {exc}") from exc

    if not header:
        raise ValidationError("path", str(path), "file is empty")

    if not any(marker in header for marker in RAW_HEADER_MARKERS):
        raise CodecError(f"file does not appear to be a valid RAW file: {clean}")
