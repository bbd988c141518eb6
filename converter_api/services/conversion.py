from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from converter_api.services.errors import ConversionError, ErrorCode, InputError, TimestampError, UnsupportedFormatError
from converter_api.services.format_encoder import FormatEncoder
from converter_api.services.heic_decoder import HeicDecoder
from converter_api.services.image_models import (
	DecodedImage,
	EncodeOptions,
	MetadataBundle,
	MetadataKind,
	TimestampTriple,
)
from converter_api.services.image_utils import adapt_channels
from converter_api.services.logging_setup import get_logger, log_success
from converter_api.services.metadata import select_blocks
from converter_api.services.settings import (
	ConverterSettings,
	canonical_format,
	default_output_path,
	get_settings,
	normalize_extension,
)
from converter_api.services.timestamps import apply_timestamps, capture_timestamps


SCALE_MIN = 0.1
SCALE_MAX = 10.0


@dataclass
class ConversionOptions:
	output_format: Optional[str] = None  # None: taken from the destination extension
	quality: int = 85
	compression_level: int = 6
	scale_factor: float = 1.0  # accepted and range-checked, not applied
	overwrite: bool = False
	progressive: bool = False
	interlace: bool = False
	lossless: bool = False
	keep_metadata: bool = True
	preserve_timestamps: bool = True
	preserve_exif: bool = True
	preserve_xmp: bool = True
	preserve_iptc: bool = True
	preserve_gps: bool = True

	@classmethod
	def from_settings(cls, settings: Optional[ConverterSettings] = None, **overrides: Any) -> "ConversionOptions":
		"""Defaults from the environment-backed settings; None-valued overrides are ignored."""
		s = settings or get_settings()
		values: Dict[str, Any] = {
			"quality": s.jpeg_quality,
			"compression_level": s.png_compression,
			"scale_factor": s.scale_factor,
			"overwrite": s.overwrite,
			"keep_metadata": s.keep_metadata,
			"preserve_timestamps": s.preserve_timestamps,
			"preserve_exif": s.preserve_exif,
			"preserve_xmp": s.preserve_xmp,
			"preserve_iptc": s.preserve_iptc,
			"preserve_gps": s.preserve_gps,
		}
		values.update({k: v for k, v in overrides.items() if v is not None})
		return cls(**values)

	def resolve_format(self, destination: Path) -> str:
		if self.output_format:
			return normalize_extension(self.output_format)
		return normalize_extension(destination.suffix) or "jpg"


@dataclass
class ConversionResult:
	code: ErrorCode
	message: str
	source: str
	destination: str
	output_format: Optional[str] = None
	embedded: Tuple[MetadataKind, ...] = ()
	warnings: List[str] = field(default_factory=list)

	@property
	def ok(self) -> bool:
		return self.code == ErrorCode.SUCCESS

	def to_dict(self) -> Dict[str, Any]:
		d = asdict(self)
		d["code"] = int(self.code)
		d["code_name"] = self.code.name
		d["embedded"] = [k.value for k in self.embedded]
		return d


class ConversionOrchestrator:
	def __init__(
		self,
		decoder: Optional[HeicDecoder] = None,
		encoder: Optional[FormatEncoder] = None,
		logger: Optional[logging.Logger] = None,
	) -> None:
		self.logger = logger or get_logger("conversion")
		self.decoder = decoder or HeicDecoder(logger=self.logger)
		self.encoder = encoder or FormatEncoder(logger=self.logger)

	def convert(
		self,
		source: Union[str, Path],
		destination: Optional[Union[str, Path]] = None,
		options: Optional[ConversionOptions] = None,
	) -> ConversionResult:
		options = options or ConversionOptions.from_settings()
		src = Path(source)
		fallback = options.output_format or get_settings().default_output_format
		dst = Path(destination) if destination else default_output_path(src, fallback)
		warnings: List[str] = []
		fmt: Optional[str] = None

		def _result(code: ErrorCode, message: str, embedded: Tuple[MetadataKind, ...] = ()) -> ConversionResult:
			return ConversionResult(
				code=code,
				message=message,
				source=str(src),
				destination=str(dst),
				output_format=fmt,
				embedded=embedded,
				warnings=warnings,
			)

		self.logger.info("Converting %s -> %s", src, dst)
		try:
			fmt = self._validate(src, dst, options)
			stamps = self._capture(src, warnings)

			decoded = self.decoder.decode(src)
			if decoded.synthetic:
				warnings.append("decoder substituted a synthetic test pattern")
			bundle = self._select_metadata(src, decoded, options, warnings)

			buf = adapt_channels(decoded.buffer, canonical_format(fmt) or fmt)
			if buf is not decoded.buffer:
				self.logger.info("Adapted %d-channel image to %d channels for %s", decoded.buffer.channels, buf.channels, fmt.upper())
			encode_options = EncodeOptions(
				format=fmt,
				quality=options.quality,
				compression_level=options.compression_level,
				progressive=options.progressive,
				interlace=options.interlace,
				lossless=options.lossless,
				metadata=bundle,
				preserve_metadata=options.keep_metadata,
			)
			encoded = self.encoder.encode(buf, dst, encode_options)
			# the encoder has already logged these
			warnings.extend(encoded.warnings)

			if options.preserve_timestamps and stamps is not None:
				try:
					apply_timestamps(dst, stamps)
					self.logger.info("Copied file timestamps to %s", dst)
				except TimestampError as exc:
					self.logger.warning("%s", exc.message)
					warnings.append(exc.message)
		except ConversionError as exc:
			self.logger.error("Conversion failed [%s]: %s", exc.code.name, exc.message)
			return _result(exc.code, exc.message)
		except Exception as exc:
			self.logger.exception("Unexpected error converting %s", src)
			return _result(ErrorCode.UNKNOWN, f"Unexpected error: {exc}")

		log_success(self.logger, "Successfully converted %s to %s", src, dst)
		return _result(ErrorCode.SUCCESS, "Conversion successful", encoded.embedded)

	# ------------------------------------------------------------ steps

	def _validate(self, src: Path, dst: Path, options: ConversionOptions) -> str:
		if not SCALE_MIN <= options.scale_factor <= SCALE_MAX:
			raise InputError(
				f"Scale factor must be between {SCALE_MIN} and {SCALE_MAX}, got {options.scale_factor}",
				ErrorCode.INVALID_ARGUMENTS,
			)
		if not src.exists():
			raise InputError(f"Input file does not exist: {src}", ErrorCode.FILE_NOT_FOUND)
		if src.is_dir():
			raise InputError(f"Input is a directory, not a file: {src}", ErrorCode.INVALID_ARGUMENTS)
		if not os.access(src, os.R_OK):
			raise InputError(f"Input file is not readable: {src}", ErrorCode.READ_PERMISSION)
		if not self.decoder.is_format_supported(src.suffix):
			raise UnsupportedFormatError(f"Unsupported input format: {src.suffix or '<none>'}")

		fmt = options.resolve_format(dst)
		if not self.encoder.validate_format(fmt):
			raise UnsupportedFormatError(f"Unsupported output format: {fmt}")

		try:
			dst.parent.mkdir(parents=True, exist_ok=True)
		except OSError as exc:
			raise InputError(f"Cannot create output directory {dst.parent}: {exc}", ErrorCode.WRITE_PERMISSION) from exc
		if dst.exists() and not options.overwrite:
			raise InputError(f"Output file already exists: {dst} (enable overwrite)", ErrorCode.WRITE_PERMISSION)
		return fmt

	def _capture(self, src: Path, warnings: List[str]) -> Optional[TimestampTriple]:
		try:
			return capture_timestamps(src)
		except TimestampError as exc:
			self.logger.warning("%s", exc.message)
			warnings.append(exc.message)
			return None

	def _select_metadata(
		self,
		src: Path,
		decoded: DecodedImage,
		options: ConversionOptions,
		warnings: List[str],
	) -> MetadataBundle:
		if not self.decoder.carries_metadata(src):
			self.logger.info("%s containers carry no metadata blocks; skipping", normalize_extension(src.suffix))
			return MetadataBundle()
		bundle, notes = select_blocks(
			decoded.metadata,
			keep_metadata=options.keep_metadata,
			preserve_exif=options.preserve_exif,
			preserve_xmp=options.preserve_xmp,
			preserve_iptc=options.preserve_iptc,
			preserve_gps=options.preserve_gps,
		)
		for note in notes:
			self.logger.warning("%s", note)
			warnings.append(note)
		if bundle:
			self.logger.info("Preserving metadata: %r", bundle)
		return bundle
