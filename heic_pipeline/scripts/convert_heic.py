from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import List, Optional

from converter_api.services.conversion import SCALE_MAX, SCALE_MIN, ConversionOptions, ConversionOrchestrator
from converter_api.services.errors import ConversionError, ErrorCode
from converter_api.services.heic_decoder import HeicDecoder
from converter_api.services.logging_setup import configure_logging
from converter_api.services.settings import PROGRAM_NAME, VERSION, default_output_path, get_settings


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=PROGRAM_NAME,
        description="Convert HEIC/HEIF images to JPEG, PNG, BMP, TIFF or WebP, keeping metadata and timestamps",
    )
    parser.add_argument("input", nargs="?", help="Input HEIC/HEIF file")
    parser.add_argument("output", nargs="?", help="Output file (default: input name with the new extension)")
    parser.add_argument("-f", "--format", help="Output format: jpg, png, bmp, tiff, webp")
    parser.add_argument("-q", "--quality", type=int, help="JPEG/WebP quality 1-100 (out-of-range values are clamped)")
    parser.add_argument("-c", "--compression", type=int, help="PNG/TIFF compression level 0-9")
    parser.add_argument("-s", "--scale", type=float, help=f"Scale factor {SCALE_MIN}-{SCALE_MAX} (reserved)")
    parser.add_argument("-o", "--overwrite", action="store_true", help="Overwrite an existing output file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose logging")
    parser.add_argument("--progressive", action="store_true", help="Write progressive JPEG")
    parser.add_argument("--interlace", action="store_true", help="Write Adam7-interlaced PNG")
    parser.add_argument("--lossless", action="store_true", help="Write lossless WebP")
    parser.add_argument("--no-metadata", action="store_true", help="Drop EXIF, XMP, IPTC and GPS (timestamps are still copied)")
    parser.add_argument("--no-timestamps", action="store_true", help="Do not copy file timestamps")
    parser.add_argument("--no-exif", action="store_true", help="Drop the EXIF block")
    parser.add_argument("--no-xmp", action="store_true", help="Drop the XMP block")
    parser.add_argument("--no-iptc", action="store_true", help="Drop the IPTC block")
    parser.add_argument("--no-gps", action="store_true", help="Drop EXIF when it carries GPS data")
    parser.add_argument("--list-formats", action="store_true", help="List supported formats and exit")
    parser.add_argument("--info", action="store_true", help="Print image information without converting")
    parser.add_argument("--version", action="version", version=f"{PROGRAM_NAME} {VERSION}")
    return parser


def options_from_args(args: argparse.Namespace) -> ConversionOptions:
    overrides = {
        "output_format": args.format,
        "quality": args.quality,
        "compression_level": args.compression,
        "scale_factor": args.scale,
        "overwrite": args.overwrite or None,
        "progressive": args.progressive,
        "interlace": args.interlace,
        "lossless": args.lossless,
        "preserve_timestamps": False if args.no_timestamps else None,
        "preserve_exif": False if args.no_exif else None,
        "preserve_xmp": False if args.no_xmp else None,
        "preserve_iptc": False if args.no_iptc else None,
        "preserve_gps": False if args.no_gps else None,
    }
    if args.no_metadata:
        overrides.update(keep_metadata=False, preserve_exif=False, preserve_xmp=False, preserve_iptc=False, preserve_gps=False)
    return ConversionOptions.from_settings(**overrides)


def print_formats(orchestrator: ConversionOrchestrator) -> None:
    print("Input formats:  " + ", ".join(HeicDecoder.get_supported_formats()))
    print("Output formats: " + ", ".join(orchestrator.encoder.get_supported_formats()))


def print_info(decoder: HeicDecoder, path: Path) -> int:
    try:
        info = decoder.probe(path)
    except ConversionError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return int(e.code)
    print(f"File:        {path}")
    print(f"Brand:       {info.brand or 'unknown'}")
    print(f"Dimensions:  {info.width}x{info.height}")
    print(f"Alpha:       {'yes' if info.has_alpha else 'no'}")
    print(f"Bit depth:   {info.bit_depth}")
    print(f"Images:      {info.image_count}")
    print(f"Panorama:    {'yes' if info.is_panorama else 'no'}")
    return int(ErrorCode.SUCCESS)


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    settings = get_settings()
    logger = configure_logging(args.verbose or settings.verbose)
    orchestrator = ConversionOrchestrator(logger=logger)

    if args.list_formats:
        print_formats(orchestrator)
        return int(ErrorCode.SUCCESS)
    if not args.input:
        parser.print_usage(sys.stderr)
        print("Error: an input file is required", file=sys.stderr)
        return int(ErrorCode.INVALID_ARGUMENTS)
    if args.scale is not None and not SCALE_MIN <= args.scale <= SCALE_MAX:
        print(f"Error: scale factor must be between {SCALE_MIN} and {SCALE_MAX}", file=sys.stderr)
        return int(ErrorCode.INVALID_ARGUMENTS)

    input_path = Path(args.input)
    if input_path.is_dir():
        print(f"Error: {input_path} is a directory; convert files one at a time", file=sys.stderr)
        return int(ErrorCode.INVALID_ARGUMENTS)
    if args.info:
        return print_info(orchestrator.decoder, input_path)

    options = options_from_args(args)
    if args.output:
        output_path = Path(args.output)
    else:
        output_path = default_output_path(input_path, options.output_format or settings.default_output_format)

    result = orchestrator.convert(input_path, output_path, options)
    if result.ok:
        print(f"Saved: {result.destination}")
    else:
        print(f"Error: {result.message}", file=sys.stderr)
    return int(result.code)


if __name__ == "__main__":
    sys.exit(main())
