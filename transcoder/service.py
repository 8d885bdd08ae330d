# transcoder/service.py
"""
Transcoding pipeline: validate -> [convert RAW] -> decode -> fit to budget.

Responsibilities:
- Validate encoding constraints before any decoding work
- Route RAW path inputs through the sandboxed converter
- Decode and budget-encode everything else
- Write results to a caller path or to a kept owner-only temp file
"""
from __future__ import annotations

import os
import threading
import uuid
from pathlib import Path

from transcoder.errors import ResourceError, ValidationError
from transcoder.infra.image_processor import (
    BytesInput,
    EncodedImage,
    EncodingConstraints,
    ImageInput,
    PathInput,
    decode,
    encode,
)
from transcoder.infra.logging_config import LogContext, get_logger
from transcoder.infra.raw_converter import RawConversionOptions, convert_raw
from transcoder.infra.security import (
    SecurityPolicy,
    get_security_policy,
    is_raw_extension,
    validate_path,
)
from transcoder.infra.temp_files import acquire_temp

logger = get_logger(__name__)

OUTPUT_FILE_MODE = 0o644


def process_image(
    source: ImageInput,
    constraints: EncodingConstraints | None = None,
    *,
    policy: SecurityPolicy | None = None,
    raw_options: RawConversionOptions | None = None,
    cancel_event: threading.Event | None = None,
) -> EncodedImage:
    """
    Produce an encoded image that fits the byte budget.

    Args:
        source: PathInput or BytesInput; RAW paths (.arw/.srf/.sr2) are converted first
        constraints: Budget and output format (defaults from settings)
        policy: Security policy (defaults from settings, fresh per call)
        raw_options: Options for RAW conversion
        cancel_event: Stops the resize loop between iterations when set

    Returns:
        EncodedImage (check ``within_budget`` for best-effort results)
    """
    # Constraints are validated before anything is decoded
    constraints = (constraints or EncodingConstraints.from_settings()).validate()
    policy = policy or get_security_policy()

    if not isinstance(source, (PathInput, BytesInput)):
        raise ValidationError("input_type", type(source).__name__, "expected PathInput or BytesInput")

    call_id = uuid.uuid4().hex[:12]
    source_name = str(source.path) if isinstance(source, PathInput) else f"<{len(source.data)} bytes>"
    log = LogContext(logger, call_id=call_id, operation="process_image", source=source_name)

    if isinstance(source, PathInput) and is_raw_extension(source.path):
        log.info("RAW input, converting before encode")
        png_data = convert_raw(source.path, raw_options, policy)
        source = BytesInput(png_data)

    raster = decode(source, policy)
    try:
        result = encode(raster, constraints, cancel_event=cancel_event)
    finally:
        raster.image.close()

    log.info(
        f"Processed image: {result.width}x{result.height} {result.extension}, "
        f"{result.size_bytes} bytes, within_budget={result.within_budget}"
    )
    return result


def _with_extension(output_path: str, extension: str) -> str:
    """Append the extension unless the path already ends with it (case-insensitive)."""
    if output_path.lower().endswith(extension.lower()):
        return output_path
    return output_path + extension


def process_image_to_file(
    source: ImageInput,
    output_path: str | os.PathLike,
    constraints: EncodingConstraints | None = None,
    *,
    policy: SecurityPolicy | None = None,
    raw_options: RawConversionOptions | None = None,
    cancel_event: threading.Event | None = None,
) -> Path:
    """
    Process an image and write it to ``output_path``.

    The resolved extension (.png/.jpg) is appended if the path lacks it.
    Returns the path actually written.
    """
    policy = policy or get_security_policy()
    # Output may be absolute, but never contains traversal
    clean = validate_path(output_path, policy, allow_absolute=True)

    result = process_image(
        source,
        constraints,
        policy=policy,
        raw_options=raw_options,
        cancel_event=cancel_event,
    )

    target = Path(_with_extension(clean, result.extension))
    try:
        fd = os.open(target, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, OUTPUT_FILE_MODE)
        with os.fdopen(fd, "wb") as fh:
            fh.write(result.data)
    except OSError as exc:
        raise ResourceError(f"failed to write output file {target}: {exc}") from exc

    logger.info(f"Wrote {result.size_bytes} bytes to {target.name}")
    return target


def process_image_to_temp_file(
    source: ImageInput,
    constraints: EncodingConstraints | None = None,
    *,
    policy: SecurityPolicy | None = None,
    raw_options: RawConversionOptions | None = None,
    cancel_event: threading.Event | None = None,
) -> Path:
    """
    Process an image into a new owner-only file in the policy temp directory.

    The file is kept for the caller (who becomes responsible for deleting
    it); it is removed if writing fails.
    """
    policy = policy or get_security_policy()
    result = process_image(
        source,
        constraints,
        policy=policy,
        raw_options=raw_options,
        cancel_event=cancel_event,
    )

    artifact = acquire_temp(f"processed_*{result.extension}", policy)
    with artifact:
        artifact.write_bytes(result.data)
        # Written successfully: hand ownership to the caller
        artifact.keep = True

    logger.info(f"Wrote {result.size_bytes} bytes to temp file {artifact.path.name}")
    return artifact.path
