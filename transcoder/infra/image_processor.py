# transcoder/infra/image_processor.py
"""
Decode arbitrary rasters and re-encode them into a byte budget.

Security features:
- Path inputs go through the full validation chain (path, extension, size)
- Byte inputs are checked against the size ceiling
- Format sniffing by magic bytes, not file extension
- WebP chunk validation (CVE-2023-4863 mitigation)
- Decompression bomb limit
- Truncated JPEG rejection
- Re-encoding strips EXIF/metadata

Budget search:
1. Encode at original size; done if it fits.
2. Pick a base scale from the pixel count (0.60 / 0.75 / 0.85 / 1.00),
   lowered further by caller max width/height if those are tighter.
3. Resize (LANCZOS) to ``min(1, running * base)`` and re-encode. The
   running multiplier starts at 1.0 and becomes ``scale * 0.8`` after each
   miss; the search stops once it drops below 0.1.
4. If nothing fits, return the last (smallest) candidate flagged
   ``within_budget=False``.
Never upscales.
"""
from __future__ import annotations

import io
import os
import struct
import threading
import uuid
from dataclasses import dataclass
from enum import Enum

from PIL import Image, ImageFile

from transcoder.errors import (
    CodecError,
    OperationCancelledError,
    SecurityError,
    ValidationError,
)
from transcoder.infra.logging_config import LogContext, get_logger
from transcoder.infra.security import (
    SecurityPolicy,
    get_security_policy,
    is_raw_extension,
    validate_bytes_size,
    validate_input_file,
)

logger = get_logger(__name__)


def _configure_pillow() -> None:
    from transcoder.config import settings

    # IMPORTANT: Do NOT allow truncated images!
    # Truncated data decodes with black bands at the bottom; reject instead.
    ImageFile.LOAD_TRUNCATED_IMAGES = False

    # SECURITY: Decompression bomb protection. This is the PARSING limit.
    Image.MAX_IMAGE_PIXELS = settings.max_image_pixels


_configure_pillow()


DEFAULT_MAX_BYTES = 7 * 1024 * 1024  # 7 MB
DEFAULT_QUALITY = 85

# (min pixel count, base scale factor), checked in order
SCALE_BREAKPOINTS = (
    (8_000_000, 0.60),
    (4_000_000, 0.75),
    (2_000_000, 0.85),
)
SCALE_DECAY = 0.8
MIN_SCALE_FACTOR = 0.1


class OutputFormat(str, Enum):
    """The two supported output encodings"""
    LOSSY = "jpeg"
    LOSSLESS = "png"

    @property
    def extension(self) -> str:
        return ".jpg" if self is OutputFormat.LOSSY else ".png"

    @property
    def content_type(self) -> str:
        return "image/jpeg" if self is OutputFormat.LOSSY else "image/png"

    @property
    def pil_format(self) -> str:
        return "JPEG" if self is OutputFormat.LOSSY else "PNG"

    @classmethod
    def parse(cls, value: "OutputFormat | str") -> "OutputFormat":
        """Accept an enum member or one of jpeg/jpg/lossy/png/lossless."""
        if isinstance(value, OutputFormat):
            return value
        if isinstance(value, str):
            fmt = _FORMAT_ALIASES.get(value.strip().lower())
            if fmt is not None:
                return fmt
        raise ValidationError("output_format", value, "must be 'jpeg' (lossy) or 'png' (lossless)")


_FORMAT_ALIASES = {
    "jpeg": OutputFormat.LOSSY,
    "jpg": OutputFormat.LOSSY,
    "lossy": OutputFormat.LOSSY,
    "png": OutputFormat.LOSSLESS,
    "lossless": OutputFormat.LOSSLESS,
}


@dataclass
class EncodingConstraints:
    """Byte/dimension budget for encode()"""
    max_bytes: int = DEFAULT_MAX_BYTES
    max_width: int | None = None  # None or <= 0 = unlimited
    max_height: int | None = None
    quality: int = DEFAULT_QUALITY  # 1-100, lossy only
    output_format: OutputFormat | str = OutputFormat.LOSSLESS

    def __post_init__(self):
        self.validate()

    @classmethod
    def from_settings(cls) -> "EncodingConstraints":
        from transcoder.config import settings

        return cls(
            max_bytes=settings.default_max_bytes,
            quality=settings.default_quality,
            output_format=settings.default_output_format,
        )

    def validate(self) -> "EncodingConstraints":
        """Normalize output_format and check every field. Returns self."""
        self.output_format = OutputFormat.parse(self.output_format)

        if isinstance(self.max_bytes, bool) or not isinstance(self.max_bytes, int) or self.max_bytes <= 0:
            raise ValidationError("max_bytes", self.max_bytes, "must be a positive integer")

        for name in ("max_width", "max_height"):
            value = getattr(self, name)
            if value is not None and (isinstance(value, bool) or not isinstance(value, int)):
                raise ValidationError(name, value, "must be an integer or None")

        if isinstance(self.quality, bool) or not isinstance(self.quality, int) or not 1 <= self.quality <= 100:
            raise ValidationError("quality", self.quality, "must be between 1 and 100")

        return self


@dataclass(frozen=True)
class PathInput:
    """Image given as a filesystem path (full validation chain applies)"""
    path: str | os.PathLike


@dataclass(frozen=True)
class BytesInput:
    """Image given as an in-memory buffer (size ceiling only)"""
    data: bytes


ImageInput = PathInput | BytesInput


@dataclass
class Raster:
    """Decoded image owned by one pipeline call"""
    image: Image.Image
    format_hint: str

    @property
    def width(self) -> int:
        return self.image.size[0]

    @property
    def height(self) -> int:
        return self.image.size[1]


@dataclass
class EncodedImage:
    """Result of encode()"""
    data: bytes
    extension: str
    content_type: str
    width: int
    height: int
    within_budget: bool
    attempts: int

    @property
    def size_bytes(self) -> int:
        return len(self.data)


# Magic bytes for format detection
MAGIC_BYTES = {
    b'\x89PNG\r\n\x1a\n': "png",
    b'\xff\xd8\xff': "jpeg",
    b'II*\x00': "tiff",
    b'MM\x00*': "tiff",
    b'BM': "bmp",
}

# Decoders are tried in this order; the first that opens and loads wins
DECODER_ORDER = (
    ("png", "PNG"),
    ("jpeg", "JPEG"),
    ("webp", "WEBP"),
    ("tiff", "TIFF"),
    ("bmp", "BMP"),
)

# WebP chunk types - for validation
# CVE-2023-4863 exploited malformed VP8L (lossless) chunks
WEBP_VALID_CHUNKS = {b'VP8 ', b'VP8L', b'VP8X', b'ANIM', b'ANMF', b'ALPH', b'ICCP', b'EXIF', b'XMP '}
WEBP_MAX_CHUNK_SIZE = 100 * 1024 * 1024  # 100MB max per chunk (sanity check)

_PNG_MODES = {"1", "L", "LA", "I", "I;16", "P", "RGB", "RGBA"}


def detect_format(data: bytes) -> str | None:
    """
    Detect image format from magic bytes.
    More secure than relying on file extension.
    """
    # WebP is RIFF....WEBP
    if data[:4] == b'RIFF' and len(data) > 11 and data[8:12] == b'WEBP':
        return "webp"

    for magic, fmt in MAGIC_BYTES.items():
        if data.startswith(magic):
            return fmt

    return None


def validate_webp_structure(data: bytes) -> None:
    """
    Validate WebP file structure before passing to image decoder.

    SECURITY: Defense-in-depth against WebP parser vulnerabilities like
    CVE-2023-4863 (libwebp heap buffer overflow). Malformed chunk layouts are
    rejected before they reach the vulnerable parser.

    WebP format (RIFF container):
    - Bytes 0-3: "RIFF"
    - Bytes 4-7: File size (little-endian, excludes first 8 bytes)
    - Bytes 8-11: "WEBP"
    - Bytes 12+: Chunks (4-byte type + 4-byte size + data + optional padding)

    Raises:
        CodecError: If WebP structure is invalid
    """
    if len(data) < 12:
        raise CodecError("WebP file too small")

    if data[:4] != b'RIFF':
        raise CodecError("Invalid WebP: missing RIFF header")

    if data[8:12] != b'WEBP':
        raise CodecError("Invalid WebP: missing WEBP signature")

    declared_size = struct.unpack('<I', data[4:8])[0]
    actual_size = len(data) - 8  # RIFF size excludes first 8 bytes

    # Reject if declared >> actual (overflow attempt); allow one padding byte
    if declared_size > actual_size + 1:
        logger.warning(
            f"WebP declared size mismatch: declared={declared_size}, actual={actual_size}"
        )
        raise CodecError("Invalid WebP: size mismatch (possible overflow attempt)")

    offset = 12  # Start after "RIFF" + size + "WEBP"
    chunk_count = 0
    max_chunks = 100  # Sanity limit

    while offset + 8 <= len(data) and chunk_count < max_chunks:
        chunk_type = data[offset:offset + 4]
        chunk_size = struct.unpack('<I', data[offset + 4:offset + 8])[0]

        if chunk_type not in WEBP_VALID_CHUNKS:
            # Extended chunks are allowed if at least printable ASCII
            if not all(32 <= b < 127 for b in chunk_type):
                logger.warning(f"WebP invalid chunk type at offset {offset}: {chunk_type!r}")
                raise CodecError("Invalid WebP: malformed chunk type")

        if chunk_size > WEBP_MAX_CHUNK_SIZE:
            logger.warning(f"WebP chunk too large: {chunk_type!r} size={chunk_size}")
            raise CodecError("Invalid WebP: chunk size exceeds limit")

        chunk_end = offset + 8 + chunk_size
        if chunk_end > len(data) + 1:  # +1 for optional padding byte
            logger.warning(
                f"WebP chunk overflow: {chunk_type!r} at {offset}, size={chunk_size}, "
                f"would end at {chunk_end}, file size={len(data)}"
            )
            raise CodecError("Invalid WebP: chunk extends beyond file (possible exploit)")

        # Chunks are padded to even byte boundary
        offset = chunk_end + (chunk_size % 2)
        chunk_count += 1

    if chunk_count == 0:
        raise CodecError("Invalid WebP: no valid chunks found")

    logger.debug(f"WebP validation passed: {chunk_count} chunks")


def _check_jpeg_complete(data: bytes) -> None:
    """JPEG must end with the EOI marker (0xFFD9), allowing a little trailing padding."""
    tail = data[-10:] if len(data) >= 10 else data
    if b'\xff\xd9' not in tail:
        logger.warning("JPEG missing EOI marker - likely truncated")
        raise CodecError("JPEG image is truncated (missing end marker)")


def _decode_data(data: bytes) -> Raster:
    sniffed = detect_format(data)
    logger.debug(f"Sniffed image format: {sniffed or 'unknown'}")

    if sniffed == "webp":
        validate_webp_structure(data)
    elif sniffed == "jpeg":
        _check_jpeg_complete(data)

    failures = []
    for hint, pil_format in DECODER_ORDER:
        try:
            img = Image.open(io.BytesIO(data), formats=[pil_format])
            # Force decompression now; most malformed-file problems surface here
            img.load()
        except Image.DecompressionBombError as e:
            raise SecurityError("decompression_bomb", "image exceeds pixel limit", e) from e
        except MemoryError as e:
            logger.error(f"Memory error during image decode: {e}")
            raise CodecError("image too large to decode") from e
        except (OSError, SyntaxError, ValueError) as e:
            # UnidentifiedImageError is an OSError; corrupt data raises the others
            failures.append(f"{pil_format}: {e}")
            continue
        return Raster(image=img, format_hint=hint)

    logger.warning(f"No decoder accepted the image (sniffed={sniffed}): {'; '.join(failures)}")
    raise CodecError("unsupported or corrupt image data")


def decode(source: ImageInput, policy: SecurityPolicy | None = None) -> Raster:
    """
    Decode a path or byte-buffer input into a Raster.

    Args:
        source: PathInput or BytesInput
        policy: Security policy (defaults from settings)

    Returns:
        Raster with the loaded image and a format hint

    Raises:
        ValidationError: Unknown input type, missing file, or RAW file (convert first)
        SecurityError: Path/extension/size rejected, decompression bomb
        CodecError: Data is not a supported, intact image
    """
    policy = policy or get_security_policy()

    if isinstance(source, PathInput):
        clean = validate_input_file(source.path, policy)
        if is_raw_extension(clean):
            raise ValidationError("path", str(source.path), "RAW files must be converted with convert_raw first")
        try:
            with open(clean, "rb") as fh:
                data = fh.read()
        except OSError as exc:
            raise ValidationError("path", str(source.path), f"failed to open file: {exc}") from exc
        # The file may have grown since it was stat'ed
        validate_bytes_size(data, policy.max_file_size)
    elif isinstance(source, BytesInput):
        data = source.data
        if not isinstance(data, (bytes, bytearray, memoryview)):
            raise ValidationError("data", type(data).__name__, "must be bytes")
        data = bytes(data)
        validate_bytes_size(data, policy.max_file_size)
    else:
        raise ValidationError("input_type", type(source).__name__, "expected PathInput or BytesInput")

    if not data:
        raise CodecError("empty image data")

    raster = _decode_data(data)
    logger.info(f"Decoded {raster.format_hint} image {raster.width}x{raster.height}")
    return raster


def calculate_scale_factor(pixels: int) -> float:
    """Base scale factor from the original pixel count"""
    for threshold, factor in SCALE_BREAKPOINTS:
        if pixels >= threshold:
            return factor
    return 1.0


def calculate_clamp_factor(
    width: int,
    height: int,
    max_width: int | None,
    max_height: int | None,
) -> float | None:
    """
    Scale factor needed to fit inside max_width x max_height, never above 1.0.
    None when the caller set no dimension limit.
    """
    factors = []
    if max_width and max_width > 0:
        factors.append(max_width / width)
    if max_height and max_height > 0:
        factors.append(max_height / height)
    if not factors:
        return None
    return min(1.0, *factors)


def _prepare_image(img: Image.Image, fmt: OutputFormat) -> Image.Image:
    """Convert the image into a mode the target encoder accepts."""
    if fmt is OutputFormat.LOSSY:
        if img.mode in ("I", "I;16", "I;16B", "I;16L"):
            # JPEG has no 16-bit grayscale
            img = img.convert("I").point(lambda v: v * (1 / 256)).convert("L")
        if img.mode in ("RGBA", "LA", "PA") or (img.mode == "P" and "transparency" in img.info):
            # White background for transparency
            rgba = img.convert("RGBA")
            background = Image.new("RGB", img.size, (255, 255, 255))
            background.paste(rgba, mask=rgba.split()[-1])
            return background
        if img.mode not in ("RGB", "L"):
            return img.convert("RGB")
        return img

    if img.mode in ("I;16B", "I;16L"):
        # Keep 16-bit depth for PNG
        return img.convert("I")
    if img.mode not in _PNG_MODES:
        return img.convert("RGBA" if "A" in img.getbands() else "RGB")
    return img


def _resize(img: Image.Image, width: int, height: int) -> Image.Image:
    # Pillow silently falls back to NEAREST for palette/bilevel images
    if img.mode in ("1", "P"):
        has_alpha = img.mode == "P" and "transparency" in img.info
        img = img.convert("RGBA" if has_alpha else "RGB")
    elif img.mode.startswith("I;16"):
        # Resample in 32-bit integer mode, PNG still writes it as 16-bit
        img = img.convert("I")
    return img.resize((width, height), Image.Resampling.LANCZOS)


def _encode_image(img: Image.Image, constraints: EncodingConstraints) -> bytes:
    output = io.BytesIO()
    try:
        if constraints.output_format is OutputFormat.LOSSY:
            img.save(output, format="JPEG", quality=constraints.quality, optimize=True)
        else:
            img.save(output, format="PNG", optimize=True)
    except (OSError, ValueError) as exc:
        raise CodecError(f"failed to encode {constraints.output_format.value}: {exc}") from exc
    return output.getvalue()


def encode(
    raster: Raster,
    constraints: EncodingConstraints | None = None,
    cancel_event: threading.Event | None = None,
) -> EncodedImage:
    """
    Encode a raster into the requested format within the byte budget.

    Args:
        raster: Decoded image
        constraints: Budget and format (defaults from settings)
        cancel_event: Checked before every resize attempt

    Returns:
        EncodedImage; ``within_budget`` is False when even the smallest
        candidate exceeded max_bytes (the result is still usable)

    Raises:
        ValidationError: Invalid constraints
        CodecError: Encoder failure
        OperationCancelledError: cancel_event was set
    """
    constraints = (constraints or EncodingConstraints.from_settings()).validate()
    fmt = constraints.output_format
    width, height = raster.width, raster.height
    log = LogContext(logger, call_id=uuid.uuid4().hex[:12], operation="encode")

    working = _prepare_image(raster.image, fmt)

    # Step 1: original size
    full_size = _encode_image(working, constraints)
    attempts = 1
    if len(full_size) <= constraints.max_bytes:
        log.info(f"Encoded {fmt.value} at full size {width}x{height}: {len(full_size)} bytes")
        return EncodedImage(
            data=full_size,
            extension=fmt.extension,
            content_type=fmt.content_type,
            width=width,
            height=height,
            within_budget=True,
            attempts=attempts,
        )

    # Step 2: base scale from pixel count, tightened by caller limits
    base = calculate_scale_factor(width * height)
    clamp = calculate_clamp_factor(width, height, constraints.max_width, constraints.max_height)
    if clamp is not None and clamp < base:
        base = clamp

    log.info(
        f"{width}x{height} {fmt.value} is {len(full_size)} bytes "
        f"(budget {constraints.max_bytes}), base scale {base:.3f}"
    )

    # Step 3: decay search. The floor applies to the running multiplier,
    # so the first candidate is always tried even when base < 0.1.
    result, result_width, result_height = full_size, width, height
    running = 1.0
    while running >= MIN_SCALE_FACTOR:
        if cancel_event is not None and cancel_event.is_set():
            raise OperationCancelledError(f"encode cancelled after {attempts} attempts")

        scale = min(1.0, running * base)
        new_width = max(1, int(width * scale))
        new_height = max(1, int(height * scale))

        if (new_width, new_height) != (width, height):
            result = _encode_image(_resize(working, new_width, new_height), constraints)
            attempts += 1
        result_width, result_height = new_width, new_height

        log.debug(f"scale={scale:.3f} -> {new_width}x{new_height}: {len(result)} bytes")

        if len(result) <= constraints.max_bytes:
            log.info(f"Fit budget at {new_width}x{new_height}: {len(result)} bytes after {attempts} attempts")
            return EncodedImage(
                data=result,
                extension=fmt.extension,
                content_type=fmt.content_type,
                width=new_width,
                height=new_height,
                within_budget=True,
                attempts=attempts,
            )

        running = scale * SCALE_DECAY

    # Step 4: best effort
    log.warning(
        f"Budget {constraints.max_bytes} not reached; returning {result_width}x{result_height} "
        f"({len(result)} bytes) after {attempts} attempts"
    )
    return EncodedImage(
        data=result,
        extension=fmt.extension,
        content_type=fmt.content_type,
        width=result_width,
        height=result_height,
        within_budget=False,
        attempts=attempts,
    )
