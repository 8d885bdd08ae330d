#!/usr/bin/env python3
"""
Transcode an image (or Sony RAW file) into a byte budget.

Usage:
    python scripts/transcode_image.py INPUT OUTPUT [options]

Examples:
    python scripts/transcode_image.py photos/shot.arw out/shot --max-bytes 2000000
    python scripts/transcode_image.py photos/big.png out/big.jpg --format jpeg --quality 80
    python scripts/transcode_image.py photos/big.png out/big --max-width 1920 --max-height 1080

INPUT must be a relative path (absolute paths and '..' are refused).
Exit codes: 0 fits budget, 1 error, 2 best-effort result over budget.
"""
import argparse
import sys
from pathlib import Path

# Allow running from a checkout without installing
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from transcoder import (  # noqa: E402
    EncodingConstraints,
    PathInput,
    RawConversionOptions,
    TranscodeError,
    process_image_to_file,
)
from transcoder.config import settings  # noqa: E402
from transcoder.infra.logging_config import setup_logging  # noqa: E402


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Transcode an image into a byte budget.")
    parser.add_argument("input", help="relative path to the source image")
    parser.add_argument("output", help="output path (extension appended if missing)")
    parser.add_argument("--max-bytes", type=int, default=settings.default_max_bytes)
    parser.add_argument("--format", default=settings.default_output_format,
                        help="png/lossless or jpeg/lossy")
    parser.add_argument("--quality", type=int, default=settings.default_quality)
    parser.add_argument("--max-width", type=int, default=None)
    parser.add_argument("--max-height", type=int, default=None)

    raw = parser.add_argument_group("RAW conversion")
    raw.add_argument("--bitness", type=int, default=16, choices=(8, 16))
    raw.add_argument("--compression", type=int, default=6)
    raw.add_argument("--color-space", default="sRGB", choices=("sRGB", "AdobeRGB", "ProPhoto"))
    raw.add_argument("--white-balance", default="camera", choices=("camera", "auto", "manual"))
    raw.add_argument("--keep-temp", action="store_true", help="keep converter output (diagnostics)")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(settings.log_level, settings.log_json)

    try:
        constraints = EncodingConstraints(
            max_bytes=args.max_bytes,
            max_width=args.max_width,
            max_height=args.max_height,
            quality=args.quality,
            output_format=args.format,
        )
        raw_options = RawConversionOptions(
            bitness=args.bitness,
            compression=args.compression,
            color_space=args.color_space,
            white_balance=args.white_balance,
            keep_temp=args.keep_temp,
        )
        written = process_image_to_file(
            PathInput(args.input),
            args.output,
            constraints,
            raw_options=raw_options,
        )
    except TranscodeError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1

    size = written.stat().st_size
    print(f"{written} ({size} bytes)")
    return 0 if size <= args.max_bytes else 2


if __name__ == "__main__":
    sys.exit(main())
