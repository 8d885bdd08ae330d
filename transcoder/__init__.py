# transcoder/__init__.py
"""
Secure image transcoding.

Decode any supported raster (or convert a camera RAW file through the
sandboxed darktable-cli), then fit it into a byte budget as PNG or JPEG.
"""
from transcoder.errors import (
    CodecError,
    ExternalToolError,
    OperationCancelledError,
    ResourceError,
    SecurityError,
    ToolErrorKind,
    TranscodeError,
    ValidationError,
)
from transcoder.infra.image_processor import (
    BytesInput,
    EncodedImage,
    EncodingConstraints,
    ImageInput,
    OutputFormat,
    PathInput,
    Raster,
    decode,
    encode,
)
from transcoder.infra.raw_converter import (
    RawConversionOptions,
    convert_raw,
    convert_raw_async,
    validate_raw_file,
)
from transcoder.infra.security import SecurityPolicy, get_security_policy
from transcoder.infra.temp_files import TempArtifact, acquire_temp
from transcoder.service import (
    process_image,
    process_image_to_file,
    process_image_to_temp_file,
)

__all__ = [
    "CodecError",
    "ExternalToolError",
    "OperationCancelledError",
    "ResourceError",
    "SecurityError",
    "ToolErrorKind",
    "TranscodeError",
    "ValidationError",
    "BytesInput",
    "EncodedImage",
    "EncodingConstraints",
    "ImageInput",
    "OutputFormat",
    "PathInput",
    "Raster",
    "decode",
    "encode",
    "RawConversionOptions",
    "convert_raw",
    "convert_raw_async",
    "validate_raw_file",
    "SecurityPolicy",
    "get_security_policy",
    "TempArtifact",
    "acquire_temp",
    "process_image",
    "process_image_to_file",
    "process_image_to_temp_file",
]
